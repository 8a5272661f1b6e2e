# backend/ordercore/routes/system.py
"""
System health endpoint.

Reports database reachability and the number of variants whose counters no
longer match their movement history (should always be zero).
"""

import time
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from ..extensions import db
from ..services import inventory_service
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {"status": "unhealthy", "latency_ms": round(elapsed_ms, 2), "error": "Database error"}


@system_bp.get("/health")
def health():
    database = check_database_health()
    body = {"status": database["status"], "database": database, "checked_at": to_utc_z(utcnow())}
    return jsonify(body), 200 if database["status"] == "healthy" else 503


@system_bp.get("/inventory-audit")
def inventory_audit():
    """Variants whose counters disagree with their movements (empty when healthy)."""
    failing = inventory_service.audit_all()
    return jsonify({"ok": not failing, "problems": failing})
