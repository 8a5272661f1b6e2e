# Overview: Request decorators and response helpers for API routes.

from functools import wraps
from flask import current_app, g, jsonify, request

from .errors import ERROR_HTTP_STATUS


def require_actor(f):
    """
    Require an acting user id and expose it as g.actor_id.

    Authentication happens upstream (gateway / session layer); this engine
    only needs to know WHO performed the action for its audit trail. The id
    arrives in the X-Actor-Id header.

    Returns 401 if the header is missing or not an integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get("X-Actor-Id")
        if not raw:
            return jsonify({"error": "X-Actor-Id header required"}), 401
        try:
            g.actor_id = int(raw)
        except ValueError:
            return jsonify({"error": "X-Actor-Id must be an integer"}), 401
        return f(*args, **kwargs)

    return decorated_function


def respond(result: dict, success_status: int = 200):
    """Turn an operation result into a JSON response with a matching HTTP status."""
    if result["success"]:
        return jsonify(result["data"]), success_status

    error = result["error"]
    status = ERROR_HTTP_STATUS.get(error["code"], 500)
    if status >= 500:
        current_app.logger.error("%s %s -> %s", request.method, request.path, error["code"])
    return jsonify({"error": error}), status


def json_body() -> dict:
    return request.get_json(silent=True) or {}
