"""
Courier RTO, return verification, lost shipments and item-level returns.
"""

import pytest

from ordercore.errors import InsufficientStock, InvalidTransition, ValidationError
from ordercore.extensions import db
from ordercore.models import Order, OrderActivity, ReturnSettlement, StockMovement, StockVariant
from ordercore.services import inventory_service, order_service, return_service


def _stock(variant_id):
    variant = db.session.get(StockVariant, variant_id)
    return variant.on_hand, variant.reserved, variant.damaged


def _dispatched_courier(order, actor_id):
    order_service.pack_order(order.id, actor_id=actor_id)
    order_service.dispatch_order(order.id, actor_id=actor_id, courier_partner="Pathao")
    return order.id


def _rto_pending(order, actor_id):
    order_id = _dispatched_courier(order, actor_id)
    return_service.mark_rto_initiated(order_id, actor_id=actor_id, reason="customer refused")
    return_service.mark_rto_verification_pending(order_id, actor_id=actor_id)
    return order_id


def test_damaged_return_goes_to_damaged_stock(courier_order, variant, actor_id):
    order_id = _rto_pending(courier_order, actor_id)
    assert _stock(variant.id) == (8, 0, 0)

    result = return_service.verify_return(order_id, "damaged", inspector_id=actor_id, notes="box crushed")

    order = result["order"]
    assert order.status == "returned"
    assert order.return_condition == "damaged"
    assert order.return_verified_by == actor_id
    assert order.returned_at is not None
    assert _stock(variant.id) == (8, 0, 2)

    (settlement,) = result["settlements"]
    assert settlement.condition == "damaged"
    assert settlement.restocked_to_damaged is True
    assert settlement.restocked is False


def test_good_return_restocks_on_hand(courier_order, variant, actor_id):
    order_id = _rto_pending(courier_order, actor_id)
    return_service.verify_return(order_id, "good", inspector_id=actor_id)

    assert _stock(variant.id) == (10, 0, 0)
    restock = StockMovement.query.filter_by(variant_id=variant.id, movement_type="restock").one()
    assert restock.quantity == 2


def test_missing_items_record_qc_without_stock(courier_order, variant, actor_id):
    order_id = _rto_pending(courier_order, actor_id)
    result = return_service.verify_return(order_id, "missing_items", inspector_id=actor_id)

    assert _stock(variant.id) == (8, 0, 0)
    assert result["settlements"][0].condition == "missing"
    assert result["settlements"][0].stock_movement_id is None


def test_item_conditions_override_order_condition(variant, second_variant, actor_id):
    order = order_service.create_order(
        customer_phone="9855555555",
        fulfillment_type="outside_courier_delivery",
        items=[{"variant_id": variant.id, "quantity": 1}, {"variant_id": second_variant.id, "quantity": 1}],
        actor_id=actor_id,
    )
    order_id = _rto_pending(order, actor_id)
    items = {item.variant_id: item.id for item in db.session.get(Order, order_id).items}

    return_service.verify_return(
        order_id, "good", inspector_id=actor_id,
        item_conditions={str(items[second_variant.id]): "wrong_item"},
    )

    assert _stock(variant.id) == (10, 0, 0)
    assert _stock(second_variant.id) == (5, 0, 0)
    conditions = sorted(s.condition for s in ReturnSettlement.query.filter_by(order_id=order_id))
    assert conditions == ["good", "wrong_item"]


def test_verify_rejects_unknown_condition_and_wrong_status(courier_order, actor_id):
    with pytest.raises(ValidationError):
        return_service.verify_return(courier_order.id, "soggy", inspector_id=actor_id)
    with pytest.raises(InvalidTransition):
        return_service.verify_return(courier_order.id, "good", inspector_id=actor_id)


def test_rto_is_courier_only(local_order, actor_id):
    with pytest.raises(InvalidTransition):
        return_service.mark_rto_initiated(local_order.id, actor_id=actor_id)


def test_local_rejection_flow_returns_stock(local_order, variant, rider, actor_id):
    order_service.pack_order(local_order.id, actor_id=actor_id)
    order_service.dispatch_order(local_order.id, actor_id=actor_id, rider_id=rider.id)
    order_service.change_order_status(local_order.id, "rejected", actor_id=actor_id)
    order_service.change_order_status(local_order.id, "return_received", actor_id=actor_id)

    return_service.verify_return(local_order.id, "good", inspector_id=actor_id)
    assert db.session.get(Order, local_order.id).status == "returned"
    assert _stock(variant.id) == (10, 0, 0)


def test_mark_lost_courier(courier_order, variant, actor_id):
    order_id = _dispatched_courier(courier_order, actor_id)
    order = return_service.mark_lost(order_id, actor_id=actor_id, evidence="courier ticket 8812")

    assert order.status == "lost_in_transit"
    assert "MARKED LOST: courier ticket 8812" in order.return_notes
    assert _stock(variant.id) == (8, 0, 0)
    last = OrderActivity.query.filter_by(order_id=order_id).order_by(OrderActivity.id.desc()).first()
    assert last.is_override is False


def test_mark_lost_rider_run_is_an_override(local_order, rider, actor_id):
    order_service.pack_order(local_order.id, actor_id=actor_id)
    order_service.dispatch_order(local_order.id, actor_id=actor_id, rider_id=rider.id)

    return_service.mark_lost(local_order.id, actor_id=actor_id, evidence="rider accident report")

    last = OrderActivity.query.filter_by(order_id=local_order.id).order_by(OrderActivity.id.desc()).first()
    assert last.to_status == "lost_in_transit"
    assert last.is_override is True


def test_mark_lost_needs_evidence_and_transit(courier_order, actor_id):
    with pytest.raises(ValidationError):
        return_service.mark_lost(courier_order.id, actor_id=actor_id, evidence="  ")
    with pytest.raises(InvalidTransition):
        return_service.mark_lost(courier_order.id, actor_id=actor_id, evidence="never shipped")


def test_item_return_flow(pos_order, variant, actor_id):
    order_service.pack_order(pos_order.id, actor_id=actor_id)
    order_service.dispatch_order(pos_order.id, actor_id=actor_id)
    item_id = db.session.get(Order, pos_order.id).items[0].id
    assert _stock(variant.id) == (9, 0, 0)

    assert return_service.request_item_return(item_id, actor_id=actor_id, reason="size").return_status == "pending_pickup"
    with pytest.raises(InvalidTransition):
        return_service.receive_item_at_hub(item_id, "good", inspector_id=actor_id)

    return_service.mark_item_picked_up(item_id, actor_id=actor_id)
    result = return_service.receive_item_at_hub(item_id, "damaged", inspector_id=actor_id)

    assert result["item"].return_status == "damaged_hub"
    assert result["movement"].movement_type == "damage"
    assert result["settlement"].condition == "damaged"
    assert _stock(variant.id) == (9, 0, 1)


def test_item_return_requires_delivered_order(local_order, actor_id):
    item_id = db.session.get(Order, local_order.id).items[0].id
    with pytest.raises(ValidationError):
        return_service.request_item_return(item_id, actor_id=actor_id)


# =============================================================================
# EXCHANGES / REFUNDS
# =============================================================================

def _handed_over(order, actor_id):
    order_service.pack_order(order.id, actor_id=actor_id)
    order_service.dispatch_order(order.id, actor_id=actor_id)
    return db.session.get(Order, order.id).items[0].id


def test_pos_exchange_restocks_and_issues_child_order(pos_order, variant, second_variant, actor_id):
    item_id = _handed_over(pos_order, actor_id)

    result = return_service.exchange_order(
        pos_order.id,
        return_items=[{"order_item_id": item_id, "quantity": 1}],
        new_items=[{"variant_id": second_variant.id, "quantity": 2}],
        reason="wrong size",
        actor_id=actor_id,
    )

    assert result["transaction_type"] == "exchange"
    assert (result["return_total_cents"], result["new_total_cents"], result["net_amount_cents"]) == (500, 600, 100)
    assert result["order"].status == "exchanged"

    child = result["exchange_order"]
    assert child.parent_order_id == pos_order.id
    assert child.source == "exchange"
    assert child.status == "delivered"
    assert child.stock_deducted is True
    assert (child.paid_amount_cents, child.cod_due_cents, child.payment_status) == (500, 100, "partial")

    assert _stock(variant.id) == (10, 0, 0)
    assert _stock(second_variant.id) == (3, 0, 0)
    assert db.session.get(Order, pos_order.id).items[0].return_status == "received_hub"
    assert ReturnSettlement.query.filter_by(order_id=pos_order.id).count() == 1
    assert inventory_service.audit_all() == []


def test_exchange_is_all_or_nothing(pos_order, variant, second_variant, actor_id):
    item_id = _handed_over(pos_order, actor_id)

    with pytest.raises(InsufficientStock):
        return_service.exchange_order(
            pos_order.id,
            return_items=[{"order_item_id": item_id, "quantity": 1}],
            new_items=[{"variant_id": second_variant.id, "quantity": 9}],
            reason="wrong size",
            actor_id=actor_id,
        )

    assert db.session.get(Order, pos_order.id).status == "delivered"
    assert Order.query.count() == 1
    assert _stock(variant.id) == (9, 0, 0)
    assert ReturnSettlement.query.count() == 0


def test_refund_walks_through_return_received(pos_order, variant, actor_id):
    item_id = _handed_over(pos_order, actor_id)

    result = return_service.exchange_order(
        pos_order.id,
        return_items=[{"order_item_id": item_id, "quantity": 1, "condition": "damaged"}],
        reason="stitching came apart",
        actor_id=actor_id,
    )

    assert result["transaction_type"] == "refund"
    assert result["exchange_order"] is None
    assert result["net_amount_cents"] == -500
    assert _stock(variant.id) == (9, 0, 1)
    statuses = [a.to_status for a in order_service.get_order_activity(pos_order.id) if a.activity_type == "status_change"]
    assert statuses[-2:] == ["return_received", "refund_requested"]

    assert order_service.change_order_status(pos_order.id, "refunded", actor_id=actor_id).status == "refunded"


def test_courier_exchange_replacement_waits_for_dispatch(courier_order, variant, actor_id):
    order_id = _dispatched_courier(courier_order, actor_id)
    order_service.change_order_status(order_id, "return_received", actor_id=actor_id)
    item_id = db.session.get(Order, order_id).items[0].id

    result = return_service.exchange_order(
        order_id,
        return_items=[{"order_item_id": item_id, "quantity": 2}],
        new_items=[{"variant_id": variant.id, "quantity": 1}],
        reason="colour swap",
        actor_id=actor_id,
    )

    child = result["exchange_order"]
    assert child.fulfillment_type == "outside_courier_delivery"
    assert child.status == "intake"
    assert child.stock_deducted is False
    assert child.payment_status == "paid"
    assert _stock(variant.id) == (10, 1, 0)


def test_exchange_validation(pos_order, local_order, second_variant, actor_id):
    item_id = _handed_over(pos_order, actor_id)
    new_items = [{"variant_id": second_variant.id, "quantity": 1}]

    with pytest.raises(ValidationError):
        return_service.exchange_order(pos_order.id, return_items=[{"order_item_id": item_id}],
                                      new_items=new_items, reason=" ", actor_id=actor_id)
    with pytest.raises(ValidationError):
        return_service.exchange_order(pos_order.id, return_items=[], new_items=new_items,
                                      reason="swap", actor_id=actor_id)
    with pytest.raises(ValidationError):
        return_service.exchange_order(pos_order.id, return_items=[{"order_item_id": item_id, "quantity": 2}],
                                      new_items=new_items, reason="swap", actor_id=actor_id)
    with pytest.raises(ValidationError):
        return_service.exchange_order(pos_order.id, return_items=[{"order_item_id": 999999}],
                                      new_items=new_items, reason="swap", actor_id=actor_id)
    with pytest.raises(InvalidTransition):
        local_item_id = db.session.get(Order, local_order.id).items[0].id
        return_service.exchange_order(local_order.id, return_items=[{"order_item_id": local_item_id}],
                                      new_items=new_items, reason="swap", actor_id=actor_id)

    return_service.exchange_order(pos_order.id, return_items=[{"order_item_id": item_id}],
                                  new_items=new_items, reason="swap", actor_id=actor_id)
    with pytest.raises(InvalidTransition):
        return_service.exchange_order(pos_order.id, return_items=[{"order_item_id": item_id}],
                                      new_items=new_items, reason="again", actor_id=actor_id)
