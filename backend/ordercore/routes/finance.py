# Overview: Flask API routes for vendor payables, riders and rider settlements.

from flask import Blueprint, g, jsonify, request

from .. import operations
from ..decorators import json_body, require_actor, respond
from ..services import settlement_service, vendor_service

finance_bp = Blueprint("finance", __name__, url_prefix="/api/finance")


# =============================================================================
# VENDORS
# =============================================================================

@finance_bp.post("/vendors")
@require_actor
def create_vendor_route():
    data = json_body()
    if not data.get("name"):
        return jsonify({"error": "name is required"}), 400
    return respond(operations.create_vendor(
        name=data["name"], phone=data.get("phone"),
        opening_balance_cents=data.get("opening_balance_cents", 0),
    ), 201)


@finance_bp.get("/vendors/<int:vendor_id>")
def get_vendor_route(vendor_id: int):
    return respond(operations.execute(lambda: vendor_service.get_vendor(vendor_id), name="get_vendor"))


@finance_bp.get("/vendors/<int:vendor_id>/ledger")
def vendor_ledger_route(vendor_id: int):
    limit = max(1, min(request.args.get("limit", 100, type=int), 500))
    return respond(operations.execute(
        lambda: vendor_service.get_vendor_ledger(vendor_id, limit=limit), name="get_vendor_ledger",
    ))


@finance_bp.post("/vendors/<int:vendor_id>/adjust")
@require_actor
def adjust_vendor_route(vendor_id: int):
    """
    Request body:
    {"amount_cents": 1000, "kind": "purchase|purchase_return|payment", "reference"?, "note"?}
    """
    data = json_body()
    if data.get("amount_cents") is None or not data.get("kind"):
        return jsonify({"error": "amount_cents and kind are required"}), 400
    refs = {key: data[key] for key in ("reference", "note") if key in data}
    return respond(operations.adjust_vendor_balance(
        vendor_id, data["amount_cents"], data["kind"], actor_id=g.actor_id, **refs,
    ), 201)


@finance_bp.post("/vendors/<int:vendor_id>/purchases")
@require_actor
def record_purchase_route(vendor_id: int):
    data = json_body()
    required = ("variant_id", "quantity", "unit_cost_cents")
    if any(data.get(key) is None for key in required):
        return jsonify({"error": "variant_id, quantity and unit_cost_cents are required"}), 400
    return respond(operations.record_purchase(
        actor_id=g.actor_id, vendor_id=vendor_id,
        variant_id=data["variant_id"], quantity=data["quantity"],
        unit_cost_cents=data["unit_cost_cents"], reference=data.get("reference"),
    ), 201)


@finance_bp.post("/vendors/<int:vendor_id>/purchase-returns")
@require_actor
def record_purchase_return_route(vendor_id: int):
    data = json_body()
    required = ("variant_id", "quantity", "unit_cost_cents")
    if any(data.get(key) is None for key in required):
        return jsonify({"error": "variant_id, quantity and unit_cost_cents are required"}), 400
    return respond(operations.record_purchase_return(
        actor_id=g.actor_id, vendor_id=vendor_id,
        variant_id=data["variant_id"], quantity=data["quantity"],
        unit_cost_cents=data["unit_cost_cents"], reference=data.get("reference"),
    ), 201)


# =============================================================================
# RIDERS & SETTLEMENTS
# =============================================================================

@finance_bp.post("/riders")
@require_actor
def create_rider_route():
    data = json_body()
    if not data.get("name") or not data.get("phone"):
        return jsonify({"error": "name and phone are required"}), 400
    return respond(operations.create_rider(name=data["name"], phone=data["phone"]), 201)


@finance_bp.get("/riders/<int:rider_id>")
def get_rider_route(rider_id: int):
    return respond(operations.execute(lambda: settlement_service.get_rider(rider_id), name="get_rider"))


@finance_bp.post("/riders/<int:rider_id>/settlements")
@require_actor
def init_settlement_route(rider_id: int):
    data = json_body()
    if not data.get("settlement_date"):
        return jsonify({"error": "settlement_date is required"}), 400
    return respond(operations.init_rider_settlement(rider_id, data["settlement_date"], actor_id=g.actor_id), 201)


@finance_bp.get("/settlements")
def list_settlements_route():
    rider_id = request.args.get("rider_id", type=int)
    status = request.args.get("status")
    return respond(operations.execute(
        lambda: settlement_service.list_settlements(rider_id=rider_id, status=status), name="list_settlements",
    ))


@finance_bp.post("/settlements/<int:settlement_id>/complete")
@require_actor
def complete_settlement_route(settlement_id: int):
    data = json_body()
    if data.get("cash_received_cents") is None:
        return jsonify({"error": "cash_received_cents is required"}), 400
    return respond(operations.complete_rider_settlement(
        settlement_id, data["cash_received_cents"], actor_id=g.actor_id,
        deduct_from_wallet=bool(data.get("deduct_from_wallet")), notes=data.get("notes"),
    ))
