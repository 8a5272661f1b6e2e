"""
Operation surface, HTTP routes and CLI commands.
"""

from datetime import date

from conftest import actor_headers
from ordercore import operations
from ordercore.extensions import db
from ordercore.models import ArchiveRecord, RiderSettlement, StockVariant


# =============================================================================
# OPERATION RESULTS
# =============================================================================

def test_operation_success_is_serialized(local_order):
    result = operations.get_order(local_order.id)
    assert result["success"] is True
    assert result["data"]["status"] == "intake"
    assert result["data"]["items"][0]["quantity"] == 2
    assert result["data"]["created_at"].endswith("Z")


def test_operation_business_error(local_order, actor_id):
    result = operations.change_order_status(local_order.id, "delivered", actor_id=actor_id)
    assert result["success"] is False
    assert result["error"]["code"] == "INVALID_TRANSITION"
    assert result["error"]["details"]["from"] == "intake"


def test_operation_override_reason(pos_order, actor_id):
    operations.pack_order(pos_order.id, actor_id=actor_id)
    operations.dispatch_order(pos_order.id, actor_id=actor_id)
    result = operations.change_order_status(
        pos_order.id, "cancelled", actor_id=actor_id, override_reason="counter void",
    )
    assert result["success"] is True
    assert result["data"]["status"] == "cancelled"


def test_unexpected_error_is_internal(db_session):
    def boom():
        raise RuntimeError("disk on fire")

    result = operations.execute(boom, name="boom")
    assert result == {
        "success": False,
        "error": {"code": "INTERNAL_ERROR", "message": "internal error", "details": {}},
    }


def test_settlement_date_accepts_iso_string(rider, actor_id):
    result = operations.init_rider_settlement(rider.id, "2024-05-01", actor_id=actor_id)
    assert result["success"] is True
    assert result["data"]["settlement_date"] == "2024-05-01"


def test_malformed_settlement_date_is_a_validation_error(rider, actor_id):
    for bad in ("2026-13-45", "yesterday", 20240501):
        result = operations.init_rider_settlement(rider.id, bad, actor_id=actor_id)
        assert result["success"] is False
        assert result["error"]["code"] == "VALIDATION_ERROR"
        assert result["error"]["details"] == {"settlement_date": bad}
    assert RiderSettlement.query.count() == 0


def test_malformed_follow_up_is_a_validation_error(variant, actor_id):
    result = operations.create_lead(
        customer={"phone": "9877777777"},
        items=[{"variant_id": variant.id, "quantity": 1}],
        actor_id=actor_id,
        follow_up_at="next tuesday",
    )
    assert result["error"]["code"] == "VALIDATION_ERROR"


def test_non_integer_item_condition_keys_are_rejected(courier_order, actor_id):
    result = operations.verify_return(
        courier_order.id, "good", inspector_id=actor_id, item_conditions={"abc": "good"},
    )
    assert result["success"] is False
    assert result["error"]["code"] == "VALIDATION_ERROR"
    assert result["error"]["details"] == {"order_item_id": "abc"}

    result = operations.verify_return(
        courier_order.id, "good", inspector_id=actor_id, item_conditions=["good"],
    )
    assert result["error"]["code"] == "VALIDATION_ERROR"


def test_opening_balance_must_be_an_integer(db_session):
    result = operations.create_vendor(name="X", opening_balance_cents="100")
    assert result["success"] is False
    assert result["error"]["code"] == "INVALID_AMOUNT"

    result = operations.create_vendor(name="X", opening_balance_cents=None)
    assert result["error"]["code"] == "INVALID_AMOUNT"


# =============================================================================
# HTTP
# =============================================================================

def test_health(client, db_session):
    response = client.get("/api/system/health")
    assert response.status_code == 200
    assert response.get_json()["database"]["status"] == "healthy"


def test_mutations_require_actor(client, variant):
    response = client.post(f"/api/orders/{variant.id}/pack")
    assert response.status_code == 401
    response = client.post(f"/api/orders/{variant.id}/pack", headers={"X-Actor-Id": "ops"})
    assert response.status_code == 401


def test_order_flow_over_http(client, db_session):
    response = client.post(
        "/api/inventory/variants",
        json={"sku": "MUG-1", "name": "Mug", "selling_price_cents": 400, "opening_stock": 3},
        headers=actor_headers(),
    )
    assert response.status_code == 201
    variant_id = response.get_json()["id"]

    response = client.post(
        "/api/orders",
        json={
            "customer_phone": "9866666666",
            "fulfillment_type": "point_of_sale",
            "items": [{"variant_id": variant_id, "quantity": 1}],
        },
        headers=actor_headers(),
    )
    assert response.status_code == 201
    order = response.get_json()
    assert order["total_amount_cents"] == 400

    assert client.post(f"/api/orders/{order['id']}/pack", headers=actor_headers()).status_code == 200
    response = client.post(f"/api/orders/{order['id']}/dispatch", json={}, headers=actor_headers())
    assert response.status_code == 200
    assert response.get_json()["status"] == "delivered"

    response = client.get(f"/api/orders/by-code/{order['order_code']}")
    assert response.status_code == 200
    assert response.get_json()["stock_deducted"] is True

    response = client.get(f"/api/inventory/variants/{variant_id}")
    assert response.get_json()["on_hand"] == 2


def test_error_codes_map_to_http_status(client, local_order, variant):
    assert client.get("/api/orders/999999").status_code == 404

    response = client.post(
        f"/api/orders/{local_order.id}/status", json={"status": "delivered"}, headers=actor_headers(),
    )
    assert response.status_code == 409
    assert response.get_json()["error"]["code"] == "INVALID_TRANSITION"

    response = client.post(
        f"/api/orders/{local_order.id}/payments",
        json={"amount_cents": -5, "method": "cash"},
        headers=actor_headers(),
    )
    assert response.status_code == 422

    response = client.post(
        "/api/orders",
        json={
            "customer_phone": "9877777777",
            "fulfillment_type": "inside_local_delivery",
            "items": [{"variant_id": variant.id, "quantity": 50}],
        },
        headers=actor_headers(),
    )
    assert response.status_code == 409
    assert response.get_json()["error"]["code"] == "INSUFFICIENT_STOCK"


def test_missing_fields_are_rejected(client, db_session):
    response = client.post("/api/orders", json={"items": []}, headers=actor_headers())
    assert response.status_code == 400
    response = client.post("/api/manifests", json={"order_ids": "1,2"}, headers=actor_headers())
    assert response.status_code == 400
    response = client.post("/api/returns/orders/1/exchange", json={"reason": "swap"}, headers=actor_headers())
    assert response.status_code == 400


def test_malformed_input_is_400_not_500(client, rider):
    response = client.post(
        f"/api/finance/riders/{rider.id}/settlements",
        json={"settlement_date": "2026-13-45"}, headers=actor_headers(),
    )
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "VALIDATION_ERROR"

    response = client.post(
        "/api/finance/vendors", json={"name": "X", "opening_balance_cents": "100"}, headers=actor_headers(),
    )
    assert response.status_code == 422


# =============================================================================
# CLI
# =============================================================================

def test_cli_inventory_audit(app, variant):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["inventory", "audit"])
    assert result.exit_code == 0
    assert "PASS" in result.output

    stock = db.session.get(StockVariant, variant.id)
    stock.on_hand = 99
    db.session.commit()

    result = runner.invoke(args=["inventory", "audit", "--variant-id", str(variant.id)])
    assert result.exit_code == 1
    assert "FAIL" in result.output


def test_cli_settlements_init(app, rider):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["settlements", "init", "--date", "2024-05-01"])
    assert result.exit_code == 0
    assert "PASS STL-20240501" in result.output

    runner.invoke(args=["settlements", "init", "--date", "2024-05-01", "--rider-id", str(rider.id)])
    assert RiderSettlement.query.filter_by(rider_id=rider.id, settlement_date=date(2024, 5, 1)).count() == 1

    result = runner.invoke(args=["settlements", "init", "--date", "2024-13-45"])
    assert result.exit_code == 2
    assert "Invalid value" in result.output


def test_cli_archive_sweep(app, local_order, actor_id):
    operations.cancel_order(local_order.id, actor_id=actor_id, reason="duplicate")

    # cancellation already archived the order, a sweep finds nothing new
    result = app.test_cli_runner().invoke(args=["archive", "sweep"])
    assert result.exit_code == 0
    assert "Archived 0 orders" in result.output
    assert ArchiveRecord.query.filter_by(entity_type="order", entity_id=local_order.id).count() == 1
