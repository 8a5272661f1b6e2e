# Overview: Flask API routes for orders, status changes and advance payments.

"""
Order Routes

Status changes go through the single transition guard in the service layer.
A privileged move outside the table passes "override_reason" in the body;
the reason is written to the order's activity log.
"""

from flask import Blueprint, g, jsonify

from .. import operations
from ..decorators import json_body, require_actor, respond

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_actor
def create_order_route():
    """
    Request body:
    {
        "customer_phone": "98...",          // required
        "fulfillment_type": "...",          // required
        "items": [{"variant_id": 1, "quantity": 2}],
        "customer_name", "shipping_address", "shipping_city"   // optional
    }
    """
    data = json_body()
    if not data.get("customer_phone") or not data.get("fulfillment_type"):
        return jsonify({"error": "customer_phone and fulfillment_type are required"}), 400

    fields = {
        key: data[key]
        for key in ("customer_name", "shipping_address", "shipping_city", "reserve_stock")
        if key in data
    }
    return respond(operations.create_order(
        actor_id=g.actor_id,
        customer_phone=data["customer_phone"],
        fulfillment_type=data["fulfillment_type"],
        items=data.get("items") or [],
        **fields,
    ), 201)


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    return respond(operations.get_order(order_id))


@orders_bp.get("/by-code/<code>")
def get_order_by_code_route(code: str):
    return respond(operations.get_order_by_code(code))


@orders_bp.get("/<int:order_id>/activity")
def get_order_activity_route(order_id: int):
    return respond(operations.get_order_activity(order_id))


@orders_bp.post("/<int:order_id>/status")
@require_actor
def change_status_route(order_id: int):
    data = json_body()
    if not data.get("status"):
        return jsonify({"error": "status is required"}), 400
    return respond(operations.change_order_status(
        order_id, data["status"], actor_id=g.actor_id,
        reason=data.get("reason"), override_reason=data.get("override_reason"),
    ))


@orders_bp.post("/<int:order_id>/pack")
@require_actor
def pack_route(order_id: int):
    return respond(operations.pack_order(order_id, actor_id=g.actor_id))


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
def cancel_route(order_id: int):
    data = json_body()
    if not data.get("reason"):
        return jsonify({"error": "reason is required"}), 400
    return respond(operations.cancel_order(
        order_id, actor_id=g.actor_id, reason=data["reason"], override_reason=data.get("override_reason"),
    ))


@orders_bp.post("/<int:order_id>/dispatch")
@require_actor
def dispatch_route(order_id: int):
    data = json_body()
    return respond(operations.dispatch_order(
        order_id, actor_id=g.actor_id,
        rider_id=data.get("rider_id"), courier_partner=data.get("courier_partner"),
    ))


@orders_bp.post("/<int:order_id>/payments")
@require_actor
def record_payment_route(order_id: int):
    data = json_body()
    amount = data.get("amount_cents")
    if amount is None or not data.get("method"):
        return jsonify({"error": "amount_cents and method are required"}), 400
    refs = {key: data[key] for key in ("proof_reference", "transaction_reference") if key in data}
    return respond(operations.record_advance_payment(order_id, amount, data["method"], actor_id=g.actor_id, **refs), 201)


@orders_bp.post("/payments/<int:payment_id>/void")
@require_actor
def void_payment_route(payment_id: int):
    data = json_body()
    if not data.get("reason"):
        return jsonify({"error": "reason is required"}), 400
    return respond(operations.void_payment(payment_id, actor_id=g.actor_id, reason=data["reason"]))


@orders_bp.post("/<int:order_id>/redirect")
@require_actor
def redirect_order_route(order_id: int):
    data = json_body()
    if not data.get("target_lead_id") or not data.get("reason"):
        return jsonify({"error": "target_lead_id and reason are required"}), 400
    return respond(operations.redirect_order(
        order_id, data["target_lead_id"], reason=data["reason"], actor_id=g.actor_id,
    ), 201)
