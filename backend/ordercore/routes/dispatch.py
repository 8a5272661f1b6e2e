# Overview: Flask API routes for rider runs, courier manifests and delivery outcomes.

from flask import Blueprint, g, jsonify

from .. import operations
from ..decorators import json_body, require_actor, respond
from ..services import dispatch_service

dispatch_bp = Blueprint("dispatch", __name__, url_prefix="/api/manifests")


@dispatch_bp.post("")
@require_actor
def create_manifest_route():
    """
    Request body:
    {"order_ids": [1, 2], "rider_id": 3}            // rider run
    {"order_ids": [4], "courier_partner": "Acme"}   // courier handover
    """
    data = json_body()
    if not isinstance(data.get("order_ids"), list):
        return jsonify({"error": "order_ids must be a list"}), 400
    return respond(operations.create_manifest(
        data["order_ids"], actor_id=g.actor_id,
        rider_id=data.get("rider_id"), courier_partner=data.get("courier_partner"),
    ), 201)


@dispatch_bp.get("/<int:manifest_id>")
def get_manifest_route(manifest_id: int):
    return respond(operations.execute(
        lambda: dispatch_service.get_manifest(manifest_id).to_dict(include_items=True), name="get_manifest",
    ))


@dispatch_bp.post("/<int:manifest_id>/start")
@require_actor
def start_run_route(manifest_id: int):
    return respond(operations.start_manifest_run(manifest_id, actor_id=g.actor_id))


@dispatch_bp.post("/<int:manifest_id>/orders/<int:order_id>/outcome")
@require_actor
def record_outcome_route(manifest_id: int, order_id: int):
    data = json_body()
    if not data.get("outcome"):
        return jsonify({"error": "outcome is required"}), 400
    fields = {key: data[key] for key in ("cash_collected_cents", "proof_reference", "notes") if key in data}
    return respond(operations.record_delivery_outcome(
        manifest_id, order_id, data["outcome"], actor_id=g.actor_id, **fields,
    ))


@dispatch_bp.post("/<int:manifest_id>/settle")
@require_actor
def settle_route(manifest_id: int):
    data = json_body()
    if data.get("cash_received_cents") is None:
        return jsonify({"error": "cash_received_cents is required"}), 400
    return respond(operations.settle_manifest(
        manifest_id, data["cash_received_cents"], actor_id=g.actor_id, notes=data.get("notes"),
    ))
