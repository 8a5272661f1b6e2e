# Overview: Flask API routes for stock variants and the inventory ledger.

"""
Inventory Routes

Counters (on_hand, reserved, damaged) are never written directly: every
route here goes through an inventory ledger primitive that records a
StockMovement.
"""

from flask import Blueprint, g, jsonify, request

from .. import operations
from ..decorators import json_body, require_actor, respond
from ..services import inventory_service

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/variants")
@require_actor
def create_variant_route():
    data = json_body()
    if not data.get("sku") or not data.get("name"):
        return jsonify({"error": "sku and name are required"}), 400
    fields = {
        key: data[key]
        for key in ("cost_price_cents", "selling_price_cents", "opening_stock")
        if key in data
    }
    return respond(operations.create_variant(actor_id=g.actor_id, sku=data["sku"], name=data["name"], **fields), 201)


@inventory_bp.get("/variants/<int:variant_id>")
def get_variant_route(variant_id: int):
    return respond(operations.execute(lambda: inventory_service.get_variant(variant_id), name="get_variant"))


@inventory_bp.get("/variants/<int:variant_id>/movements")
def list_movements_route(variant_id: int):
    limit = request.args.get("limit", 100, type=int)
    limit = max(1, min(limit, 500))
    return respond(operations.execute(
        lambda: inventory_service.list_movements(variant_id, limit=limit), name="list_movements",
    ))


@inventory_bp.post("/variants/<int:variant_id>/receive")
@require_actor
def receive_route(variant_id: int):
    data = json_body()
    if data.get("quantity") is None:
        return jsonify({"error": "quantity is required"}), 400
    refs = {key: data[key] for key in ("reference", "note") if key in data}
    return respond(operations.receive_stock(variant_id, data["quantity"], actor_id=g.actor_id, **refs), 201)


@inventory_bp.post("/variants/<int:variant_id>/adjust")
@require_actor
def adjust_route(variant_id: int):
    data = json_body()
    if data.get("delta") is None or not data.get("reason"):
        return jsonify({"error": "delta and reason are required"}), 400
    return respond(operations.adjust_stock(variant_id, data["delta"], reason=data["reason"], actor_id=g.actor_id), 201)


@inventory_bp.post("/variants/<int:variant_id>/restock")
@require_actor
def restock_route(variant_id: int):
    data = json_body()
    if data.get("quantity") is None or not data.get("condition"):
        return jsonify({"error": "quantity and condition are required"}), 400
    fields = {key: data[key] for key in ("order_item_id", "notes") if key in data}
    return respond(operations.restock(
        variant_id, data["quantity"], data["condition"],
        actor_id=g.actor_id, inspector_id=g.actor_id, **fields,
    ), 201)


@inventory_bp.post("/batch/reserve")
@require_actor
def batch_reserve_route():
    data = json_body()
    return respond(operations.batch_reserve(
        data.get("items"), actor_id=g.actor_id, all_or_nothing=bool(data.get("all_or_nothing")),
    ))


@inventory_bp.post("/batch/deduct")
@require_actor
def batch_deduct_route():
    data = json_body()
    return respond(operations.batch_deduct(
        data.get("items"), actor_id=g.actor_id, all_or_nothing=bool(data.get("all_or_nothing")),
    ))


@inventory_bp.get("/audit")
def audit_route():
    variant_id = request.args.get("variant_id", type=int)
    return respond(operations.audit_inventory(variant_id))
