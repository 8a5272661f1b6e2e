import pytest

from conftest import make_lead, make_order
from ordercore.errors import AlreadyConverted, InvalidTransition, LeadCancelled, ValidationError
from ordercore.extensions import db
from ordercore.models import Lead, Order, StockVariant
from ordercore.services import archive_service, inventory_service, lead_service, order_service
from ordercore.services.state_machine import (
    CHANNEL_LOCAL,
    LEAD_CANCELLED,
    LEAD_CONVERTED,
    LEAD_FOLLOW_UP,
    LEAD_INTAKE,
    Override,
)


def _variant(variant_id):
    return db.session.get(StockVariant, variant_id)


# =============================================================================
# INTAKE
# =============================================================================

def test_create_lead_stores_typed_snapshot(variant):
    lead = make_lead(variant.id, quantity=2)
    assert lead.status == LEAD_INTAKE
    assert lead.customer_snapshot["phone"] == "9811111111"
    assert lead.customer_snapshot["version"] == 1
    assert lead.items == [{"variant_id": variant.id, "quantity": 2, "unit_price_cents": None}]


def test_create_lead_rejects_unknown_snapshot_fields(variant, actor_id):
    with pytest.raises(ValidationError):
        lead_service.create_lead(
            customer={"phone": "98", "favourite_colour": "red"},
            items=[{"variant_id": variant.id}],
            actor_id=actor_id,
        )
    with pytest.raises(ValidationError):
        lead_service.create_lead(customer={"name": "No phone"}, items=[], actor_id=actor_id)


def test_pipeline_moves_and_cancel_archives(variant, actor_id):
    lead = make_lead(variant.id)
    lead_service.change_lead_status(lead.id, LEAD_FOLLOW_UP, actor_id=actor_id, notes="call at 5")
    lead_service.change_lead_status(lead.id, LEAD_CANCELLED, actor_id=actor_id)

    lead = db.session.get(Lead, lead.id)
    assert lead.status == LEAD_CANCELLED
    assert lead.cancelled_at is not None
    record = archive_service.get_archive_record("lead", lead.id)
    assert record is not None
    assert record.reason == "auto_archive_cancelled"


def test_converted_status_is_reserved_for_convert(variant, actor_id):
    lead = make_lead(variant.id)
    with pytest.raises(ValidationError):
        lead_service.change_lead_status(lead.id, LEAD_CONVERTED, actor_id=actor_id)


def test_restore_cancelled_lead_needs_override(variant, actor_id):
    lead = make_lead(variant.id)
    lead_service.change_lead_status(lead.id, LEAD_CANCELLED, actor_id=actor_id)

    with pytest.raises(InvalidTransition):
        lead_service.change_lead_status(lead.id, LEAD_INTAKE, actor_id=actor_id)

    restored = lead_service.restore_lead(
        lead.id, actor_id=actor_id, override=Override(reason="customer called back", actor_id=actor_id),
    )
    assert restored.status == LEAD_INTAKE
    assert "customer called back" in restored.notes


# =============================================================================
# CONVERSION
# =============================================================================

def test_convert_reserves_stock(actor_id):
    variant = inventory_service.create_variant(sku="SHOE-42", name="Shoe", selling_price_cents=2500, opening_stock=5)
    lead = make_lead(variant.id, quantity=2)

    result = lead_service.convert(lead.id, actor_id=actor_id)

    order = db.session.get(Order, result["order"].id)
    assert order.status == "intake"
    assert order.order_code.startswith("ORD-")
    assert order.total_amount_cents == 5000
    assert result["items_created"] == 1
    assert result["units_reserved"] == 2
    assert (_variant(variant.id).on_hand, _variant(variant.id).reserved) == (5, 2)

    lead = db.session.get(Lead, lead.id)
    assert lead.status == LEAD_CONVERTED
    assert lead.converted_order_id == order.id


def test_convert_is_partial_when_stock_is_short(variant, second_variant, actor_id):
    lead = lead_service.create_lead(
        customer={"phone": "9811111111"},
        items=[
            {"variant_id": variant.id, "quantity": 2},
            {"variant_id": second_variant.id, "quantity": 50},
            {"variant_id": 999999, "quantity": 1},
        ],
        actor_id=actor_id,
    )
    result = lead_service.convert(lead.id, actor_id=actor_id)

    assert result["items_created"] == 2
    assert result["units_reserved"] == 2
    assert result["skipped"] == [999999]
    assert result["unreserved"][0]["variant_id"] == second_variant.id
    assert _variant(second_variant.id).reserved == 0

    order = db.session.get(Order, result["order"].id)
    short_item = [i for i in order.items if i.variant_id == second_variant.id][0]
    assert short_item.reserved_quantity == 0


def test_convert_twice_fails(variant, actor_id):
    lead = make_lead(variant.id)
    result = lead_service.convert(lead.id, actor_id=actor_id)
    with pytest.raises(AlreadyConverted) as excinfo:
        lead_service.convert(lead.id, actor_id=actor_id)
    assert excinfo.value.order_id == result["order"].id
    assert _variant(variant.id).reserved == 1


def test_convert_cancelled_lead_fails(variant, actor_id):
    lead = make_lead(variant.id)
    lead_service.change_lead_status(lead.id, LEAD_CANCELLED, actor_id=actor_id)
    with pytest.raises(LeadCancelled):
        lead_service.convert(lead.id, actor_id=actor_id)
    assert Order.query.count() == 0


def test_convert_reuses_customer_by_phone(variant, actor_id):
    first = lead_service.convert(make_lead(variant.id).id, actor_id=actor_id)
    second = lead_service.convert(make_lead(variant.id).id, actor_id=actor_id)
    assert first["customer_id"] == second["customer_id"]


# =============================================================================
# REDIRECT
# =============================================================================

def _reject_local_order(order_id, actor_id):
    order_service.pack_order(order_id, actor_id=actor_id)
    order_service.dispatch_order(order_id, actor_id=actor_id)
    order_service.change_order_status(order_id, "rejected", actor_id=actor_id, reason="customer refused")


def test_redirect_moves_goods_without_touching_stock(variant, actor_id):
    failed = make_order(variant.id, quantity=2, channel=CHANNEL_LOCAL)
    _reject_local_order(failed.id, actor_id)
    assert (_variant(variant.id).on_hand, _variant(variant.id).reserved) == (8, 0)
    movements_before = len(inventory_service.list_movements(variant.id))

    target = make_lead(variant.id, phone="9833333333")
    result = lead_service.redirect(failed.id, target.id, reason="neighbour wants it", actor_id=actor_id)

    new_order = db.session.get(Order, result["order"].id)
    failed = db.session.get(Order, failed.id)
    assert new_order.order_code.startswith("RDR-")
    assert new_order.parent_order_id == failed.id
    assert new_order.stock_deducted is True
    assert result["items_copied"] == 1
    assert failed.status == "redirected"
    assert failed.return_reason == "Redirected: neighbour wants it"
    assert db.session.get(Lead, target.id).status == LEAD_CONVERTED

    assert (_variant(variant.id).on_hand, _variant(variant.id).reserved) == (8, 0)
    assert len(inventory_service.list_movements(variant.id)) == movements_before


def test_redirected_order_departing_does_not_deduct_again(variant, actor_id):
    failed = make_order(variant.id, quantity=2, channel=CHANNEL_LOCAL)
    _reject_local_order(failed.id, actor_id)
    target = make_lead(variant.id, phone="9833333333")
    new_order = lead_service.redirect(failed.id, target.id, reason="resale", actor_id=actor_id)["order"]

    order_service.pack_order(new_order.id, actor_id=actor_id)
    order_service.dispatch_order(new_order.id, actor_id=actor_id)
    assert _variant(variant.id).on_hand == 8


def test_redirect_before_departure_transfers_reservations(variant, actor_id):
    failed = make_order(variant.id, quantity=3, channel=CHANNEL_LOCAL)
    order_service.hold_order(failed.id, actor_id=actor_id, reason="customer travelling")
    target = make_lead(variant.id, phone="9833333333")

    new_order = lead_service.redirect(failed.id, target.id, reason="resale", actor_id=actor_id)["order"]

    new_order = db.session.get(Order, new_order.id)
    assert new_order.items[0].reserved_quantity == 3
    assert db.session.get(Order, failed.id).items[0].reserved_quantity == 0
    assert _variant(variant.id).reserved == 3

    order_service.pack_order(new_order.id, actor_id=actor_id)
    order_service.dispatch_order(new_order.id, actor_id=actor_id)
    assert (_variant(variant.id).on_hand, _variant(variant.id).reserved) == (7, 0)


def test_redirect_requires_failed_order(variant, actor_id):
    order = make_order(variant.id, channel=CHANNEL_LOCAL)
    target = make_lead(variant.id, phone="9833333333")
    with pytest.raises(InvalidTransition):
        lead_service.redirect(order.id, target.id, reason="why not", actor_id=actor_id)
    with pytest.raises(ValidationError):
        lead_service.redirect(order.id, target.id, reason=" ", actor_id=actor_id)
