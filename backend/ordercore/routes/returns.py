# Overview: Flask API routes for courier RTO, return verification, item-level returns and exchanges.

from flask import Blueprint, g, jsonify

from .. import operations
from ..decorators import json_body, require_actor, respond

returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.post("/orders/<int:order_id>/rto")
@require_actor
def rto_initiated_route(order_id: int):
    data = json_body()
    return respond(operations.mark_rto_initiated(order_id, actor_id=g.actor_id, reason=data.get("reason")))


@returns_bp.post("/orders/<int:order_id>/rto/arrived")
@require_actor
def rto_verification_pending_route(order_id: int):
    return respond(operations.mark_rto_verification_pending(order_id, actor_id=g.actor_id))


@returns_bp.post("/orders/<int:order_id>/verify")
@require_actor
def verify_return_route(order_id: int):
    """
    Request body:
    {
        "condition": "good|damaged|missing_items|tampered",   // required
        "notes": "...",
        "item_conditions": {"<order_item_id>": "good|damaged|missing|wrong_item"}
    }
    """
    data = json_body()
    if not data.get("condition"):
        return jsonify({"error": "condition is required"}), 400
    return respond(operations.verify_return(
        order_id, data["condition"], inspector_id=g.actor_id,
        notes=data.get("notes"), item_conditions=data.get("item_conditions"),
    ))


@returns_bp.post("/orders/<int:order_id>/lost")
@require_actor
def mark_lost_route(order_id: int):
    data = json_body()
    if not data.get("evidence"):
        return jsonify({"error": "evidence is required"}), 400
    return respond(operations.mark_lost(order_id, actor_id=g.actor_id, evidence=data["evidence"]))


@returns_bp.post("/items/<int:order_item_id>/request")
@require_actor
def request_item_return_route(order_item_id: int):
    data = json_body()
    return respond(operations.request_item_return(order_item_id, actor_id=g.actor_id, reason=data.get("reason")))


@returns_bp.post("/items/<int:order_item_id>/picked-up")
@require_actor
def item_picked_up_route(order_item_id: int):
    return respond(operations.mark_item_picked_up(order_item_id, actor_id=g.actor_id))


@returns_bp.post("/items/<int:order_item_id>/receive")
@require_actor
def receive_item_route(order_item_id: int):
    data = json_body()
    if not data.get("condition"):
        return jsonify({"error": "condition is required"}), 400
    return respond(operations.receive_item_at_hub(
        order_item_id, data["condition"], inspector_id=g.actor_id, notes=data.get("notes"),
    ))


@returns_bp.post("/orders/<int:order_id>/exchange")
@require_actor
def exchange_order_route(order_id: int):
    """
    Request body:
    {
        "reason": "...",                                                   // required
        "return_items": [{"order_item_id": 1, "quantity": 1, "condition": "good"}],   // required
        "new_items": [{"variant_id": 2, "quantity": 1, "unit_price_cents"?: 500}]     // omit for a refund
    }
    """
    data = json_body()
    if not data.get("reason") or not data.get("return_items"):
        return jsonify({"error": "reason and return_items are required"}), 400
    return respond(operations.exchange_order(
        order_id, return_items=data["return_items"], new_items=data.get("new_items"),
        reason=data["reason"], actor_id=g.actor_id,
    ), 201)
