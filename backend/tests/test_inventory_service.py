import pytest

from ordercore.errors import ImmutableRecordError, InsufficientStock, ValidationError
from ordercore.extensions import db
from ordercore.models import StockMovement, StockVariant
from ordercore.services import inventory_service


def _variant(variant_id):
    return db.session.get(StockVariant, variant_id)


def test_opening_stock_is_a_receive_movement(variant):
    movements = inventory_service.list_movements(variant.id)
    assert [m.movement_type for m in movements] == ["receive"]
    assert movements[0].quantity == 10
    assert _variant(variant.id).on_hand == 10


def test_reserve_release_keep_on_hand(variant):
    inventory_service.reserve(variant.id, 4)
    v = _variant(variant.id)
    assert (v.on_hand, v.reserved, v.available) == (10, 4, 6)

    inventory_service.release(variant.id, 3)
    v = _variant(variant.id)
    assert (v.on_hand, v.reserved) == (10, 1)


def test_reserve_beyond_available_fails_without_effect(variant):
    inventory_service.reserve(variant.id, 8)
    with pytest.raises(InsufficientStock) as excinfo:
        inventory_service.reserve(variant.id, 3)
    assert excinfo.value.available == 2
    assert _variant(variant.id).reserved == 8
    assert StockMovement.query.filter_by(variant_id=variant.id, movement_type="reserve").count() == 1


def test_release_is_floored_at_zero(variant):
    inventory_service.reserve(variant.id, 2)
    movement = inventory_service.release(variant.id, 5)
    assert movement.reserved_delta == -2
    assert _variant(variant.id).reserved == 0


def test_deduct_takes_reserved_and_on_hand(variant):
    inventory_service.reserve(variant.id, 2)
    movement = inventory_service.deduct(variant.id, 2)
    v = _variant(variant.id)
    assert (v.on_hand, v.reserved) == (8, 0)
    assert movement.quantity == -2
    assert movement.reserved_delta == -2


def test_unreserved_deduct_clamps_other_holds(variant):
    inventory_service.reserve(variant.id, 9)
    inventory_service.deduct(variant.id, 5, reserved_quantity=0)
    v = _variant(variant.id)
    assert v.on_hand == 5
    assert v.reserved == 5
    assert inventory_service.audit_variant(variant.id)["ok"]


def test_restock_good_and_damaged(variant):
    inventory_service.restock(variant.id, 2, "good")
    inventory_service.restock(variant.id, 1, "damaged")
    v = _variant(variant.id)
    assert (v.on_hand, v.damaged) == (12, 1)


def test_restock_rejects_unknown_condition(variant):
    with pytest.raises(ValidationError):
        inventory_service.restock(variant.id, 1, "meh")


def test_adjust_cannot_undercut_reservations(variant):
    inventory_service.reserve(variant.id, 6)
    with pytest.raises(InsufficientStock):
        inventory_service.adjust_stock(variant.id, -5, reason="count")
    inventory_service.adjust_stock(variant.id, -4, reason="count")
    assert _variant(variant.id).on_hand == 6


def test_non_positive_quantities_are_rejected(variant):
    for bad in (0, -1, "2", True):
        with pytest.raises(ValidationError):
            inventory_service.reserve(variant.id, bad)


def test_batch_reserve_isolates_failures(variant, second_variant):
    report = inventory_service.batch_reserve([
        {"variant_id": variant.id, "quantity": 3},
        {"variant_id": second_variant.id, "quantity": 50},
        {"variant_id": second_variant.id, "quantity": 2},
    ])
    assert len(report["succeeded"]) == 2
    assert len(report["failed"]) == 1
    assert report["failed"][0]["error"]["code"] == "INSUFFICIENT_STOCK"
    assert _variant(variant.id).reserved == 3
    assert _variant(second_variant.id).reserved == 2


def test_batch_all_or_nothing_rolls_back_everything(variant, second_variant):
    with pytest.raises(InsufficientStock):
        inventory_service.batch_reserve([
            {"variant_id": variant.id, "quantity": 3},
            {"variant_id": second_variant.id, "quantity": 50},
        ], all_or_nothing=True)
    assert _variant(variant.id).reserved == 0
    assert _variant(second_variant.id).reserved == 0


def test_movements_explain_counters(variant):
    inventory_service.reserve(variant.id, 3)
    inventory_service.deduct(variant.id, 3)
    inventory_service.restock(variant.id, 1, "damaged")
    inventory_service.adjust_stock(variant.id, 2, reason="found in back room")

    report = inventory_service.audit_variant(variant.id)
    assert report["ok"], report["problems"]
    assert inventory_service.audit_all() == []


def test_audit_detects_counter_written_outside_ledger(variant):
    v = _variant(variant.id)
    v.on_hand = 99
    db.session.commit()

    report = inventory_service.audit_variant(variant.id)
    assert not report["ok"]
    assert [r["variant_id"] for r in inventory_service.audit_all()] == [variant.id]


def test_stock_movements_are_append_only(variant):
    movement = inventory_service.list_movements(variant.id)[0]
    movement.quantity = 1
    with pytest.raises(ImmutableRecordError):
        db.session.flush()
    db.session.rollback()

    movement = inventory_service.list_movements(variant.id)[0]
    db.session.delete(movement)
    with pytest.raises(ImmutableRecordError):
        db.session.flush()
    db.session.rollback()
