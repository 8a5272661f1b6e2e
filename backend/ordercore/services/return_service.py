# Overview: Service-layer operations for courier RTO, return verification, item-level returns and exchanges.

"""
Return / RTO Pipeline

WHY: Goods coming back are not stock until someone has looked at them. A
courier "return to origin" can take days and sometimes never arrives, so
inventory is only incremented at verify_return (whole order) or
receive_item_at_hub (single item of a delivered order).

QC CONDITIONS:
- order level:  good | damaged | missing_items | tampered
- item level:   good | damaged | missing | wrong_item
    good, wrong_item -> restocked to on_hand
    damaged          -> restocked into damaged
    missing          -> QC row only, no stock movement

Item exchange flow on delivered orders:
    none -> pending_pickup -> picked_up -> received_hub | damaged_hub

Exchanges and refunds (exchange_order) take goods back at the counter: the
returned lines are inspected and restocked on the spot, and a replacement
is issued as a child order (parent_order_id) in the same unit of work.
"""

from __future__ import annotations

import logging

from ..errors import InvalidTransition, NotFound, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, ReturnSettlement, StockVariant
from . import events
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import CONDITION_DAMAGED, CONDITION_GOOD, reserve_locked, restock_locked
from .lead_schemas import parse_lead_items
from .order_service import (
    SOURCE_EXCHANGE,
    add_item_locked,
    apply_status_change,
    create_order_locked,
    lock_order,
    log_activity,
)
from .payment_service import record_exchange_credit_locked
from .state_machine import (
    CHANNEL_COURIER,
    CHANNEL_POS,
    Override,
    STATUS_DELIVERED,
    STATUS_DISPATCHED,
    STATUS_EXCHANGED,
    STATUS_LOST_IN_TRANSIT,
    STATUS_PACKED,
    STATUS_REFUND_REQUESTED,
    STATUS_RETURN_RECEIVED,
    STATUS_RETURNED,
    STATUS_RTO_INITIATED,
    STATUS_RTO_VERIFICATION_PENDING,
    STATUS_SENT_FOR_DELIVERY,
    allowed_transitions,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

RETURN_GOOD = "good"
RETURN_DAMAGED = "damaged"
RETURN_MISSING_ITEMS = "missing_items"
RETURN_TAMPERED = "tampered"
RETURN_CONDITIONS = (RETURN_GOOD, RETURN_DAMAGED, RETURN_MISSING_ITEMS, RETURN_TAMPERED)

ITEM_GOOD = "good"
ITEM_DAMAGED = "damaged"
ITEM_MISSING = "missing"
ITEM_WRONG = "wrong_item"
ITEM_CONDITIONS = (ITEM_GOOD, ITEM_DAMAGED, ITEM_MISSING, ITEM_WRONG)

# order-level condition -> default item condition
ORDER_TO_ITEM_CONDITION = {
    RETURN_GOOD: ITEM_GOOD,
    RETURN_DAMAGED: ITEM_DAMAGED,
    RETURN_TAMPERED: ITEM_DAMAGED,
    RETURN_MISSING_ITEMS: ITEM_MISSING,
}

# item QC condition -> inventory restock condition (None: no stock movement)
ITEM_RESTOCK = {
    ITEM_GOOD: CONDITION_GOOD,
    ITEM_WRONG: CONDITION_GOOD,
    ITEM_DAMAGED: CONDITION_DAMAGED,
    ITEM_MISSING: None,
}

RTO_PENDING_STATUSES = (STATUS_RTO_INITIATED, STATUS_RTO_VERIFICATION_PENDING, STATUS_RETURN_RECEIVED)
LOSABLE_STATUSES = (
    STATUS_RTO_INITIATED, STATUS_RTO_VERIFICATION_PENDING, STATUS_DISPATCHED, STATUS_SENT_FOR_DELIVERY,
)

ITEM_RETURN_NONE = "none"
ITEM_RETURN_PENDING_PICKUP = "pending_pickup"
ITEM_RETURN_PICKED_UP = "picked_up"
ITEM_RETURN_RECEIVED_HUB = "received_hub"
ITEM_RETURN_DAMAGED_HUB = "damaged_hub"


def _append_note(existing: str | None, note: str) -> str:
    return f"{existing}\n{note}" if existing else note


def _parse_item_conditions(raw) -> dict[int, str]:
    """order_item_id -> condition; JSON bodies arrive with string keys."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError("item_conditions must be an object of order_item_id -> condition")
    parsed = {}
    for key, value in raw.items():
        if isinstance(key, int) and not isinstance(key, bool):
            parsed[key] = value
        elif isinstance(key, str) and key.strip().isdigit():
            parsed[int(key)] = value
        else:
            raise ValidationError("order item ids must be integers", {"order_item_id": key})
    return parsed


def _settle_item(
    order,
    item: OrderItem,
    condition: str,
    *,
    inspector_id: int,
    notes: str | None,
) -> ReturnSettlement:
    """Write the QC row for one item and move its stock per the condition."""
    restock_as = ITEM_RESTOCK[condition]
    if restock_as is not None:
        _, settlement = restock_locked(
            item.variant_id, item.quantity, restock_as,
            order_item=item, qc_condition=condition, inspector_id=inspector_id,
            notes=notes, reference=order.order_code, actor_id=inspector_id,
        )
        return settlement

    settlement = ReturnSettlement(
        order_id=order.id,
        order_item_id=item.id,
        variant_id=item.variant_id,
        condition=condition,
        quantity=item.quantity,
        restocked=False,
        restocked_to_damaged=False,
        inspected_by=inspector_id,
        notes=notes,
    )
    db.session.add(settlement)
    db.session.flush()
    return settlement


# =============================================================================
# COURIER RTO
# =============================================================================

def mark_rto_initiated(order_id: int, *, actor_id: int, reason: str | None = None) -> Order:
    """Courier reports the parcel is coming back to origin."""
    def _op() -> Order:
        order = lock_order(order_id)
        if order.fulfillment_type != CHANNEL_COURIER:
            raise InvalidTransition(order.status, STATUS_RTO_INITIATED, order.fulfillment_type,
                                    "RTO applies to courier orders only")
        if reason:
            order.return_reason = reason[:255]
        return apply_status_change(order, STATUS_RTO_INITIATED, actor_id=actor_id, reason=reason)

    return run_with_retry(_op)


def mark_rto_verification_pending(order_id: int, *, actor_id: int) -> Order:
    """Parcel arrived at the hub and is waiting for inspection."""
    def _op() -> Order:
        order = lock_order(order_id)
        return apply_status_change(
            order, STATUS_RTO_VERIFICATION_PENDING, actor_id=actor_id, reason="awaiting return inspection",
        )

    return run_with_retry(_op)


# =============================================================================
# VERIFICATION
# =============================================================================

def verify_return(
    order_id: int,
    condition: str,
    *,
    inspector_id: int,
    notes: str | None = None,
    item_conditions: dict | None = None,
) -> dict:
    """
    Inspect a returned order and put its goods back into stock.

    `item_conditions` maps order_item_id -> item condition and overrides the
    default derived from the order-level `condition`.

    Returns {"order": Order, "settlements": [ReturnSettlement, ...]}.
    """
    if condition not in RETURN_CONDITIONS:
        raise ValidationError(f"condition must be one of {RETURN_CONDITIONS}", {"condition": condition})
    item_conditions = _parse_item_conditions(item_conditions)
    for item_id, item_condition in item_conditions.items():
        if item_condition not in ITEM_CONDITIONS:
            raise ValidationError(
                f"item condition must be one of {ITEM_CONDITIONS}",
                {"order_item_id": item_id, "condition": item_condition},
            )

    def _op() -> dict:
        order = lock_order(order_id)
        if order.status not in RTO_PENDING_STATUSES:
            raise InvalidTransition(
                order.status, STATUS_RETURNED, order.fulfillment_type,
                "order is not awaiting return verification",
            )
        if STATUS_RETURNED not in allowed_transitions(order.fulfillment_type, order.status):
            raise InvalidTransition(order.status, STATUS_RETURNED, order.fulfillment_type)

        unknown = set(item_conditions) - {item.id for item in order.items}
        if unknown:
            raise ValidationError("item conditions reference items outside this order",
                                  {"order_item_ids": sorted(unknown)})

        settlements = []
        default_condition = ORDER_TO_ITEM_CONDITION[condition]
        for item in order.items:
            item_condition = item_conditions.get(item.id, default_condition)
            settlements.append(_settle_item(order, item, item_condition, inspector_id=inspector_id, notes=notes))

        order.return_condition = condition
        order.return_verified_by = inspector_id
        if notes:
            order.return_notes = _append_note(order.return_notes, notes)
        apply_status_change(order, STATUS_RETURNED, actor_id=inspector_id, reason=f"return verified: {condition}")
        return {"order": order, "settlements": settlements}

    return run_with_retry(_op)


def mark_lost(order_id: int, *, actor_id: int, evidence: str) -> Order:
    """
    Write off an order that went missing in transit. Inventory is untouched:
    the units already left on_hand when the order departed.
    """
    if not evidence or not evidence.strip():
        raise ValidationError("evidence is required to mark an order lost")

    def _op() -> Order:
        order = lock_order(order_id)
        if order.status not in LOSABLE_STATUSES:
            raise InvalidTransition(
                order.status, STATUS_LOST_IN_TRANSIT, order.fulfillment_type,
                "only in-transit orders can be marked lost",
            )
        override = None
        if STATUS_LOST_IN_TRANSIT not in allowed_transitions(order.fulfillment_type, order.status):
            # A rider run has no lost edge in its table; the write-off is recorded as an override.
            override = Override(reason=f"marked lost: {evidence.strip()}", actor_id=actor_id)
        order.return_notes = _append_note(order.return_notes, f"MARKED LOST: {evidence.strip()}")
        return apply_status_change(
            order, STATUS_LOST_IN_TRANSIT, actor_id=actor_id, reason=evidence.strip(), override=override,
        )

    return run_with_retry(_op)


# =============================================================================
# ITEM-LEVEL RETURNS
# =============================================================================

def _lock_item(order_item_id: int) -> OrderItem:
    item = lock_for_update(db.session.query(OrderItem).filter_by(id=order_item_id)).populate_existing().first()
    if item is None:
        raise NotFound("order item", order_item_id)
    return item


def _move_item(item: OrderItem, expected: str, new_status: str, *, actor_id: int) -> OrderItem:
    if item.return_status != expected:
        raise InvalidTransition(item.return_status, new_status, "order_item")
    log_activity(
        item.order, actor_id=actor_id, activity_type="item_return",
        from_status=item.return_status, to_status=new_status,
        message=f"item {item.id}",
    )
    item.return_status = new_status
    return item


def request_item_return(order_item_id: int, *, actor_id: int, reason: str | None = None) -> OrderItem:
    """Customer wants to send one item of a delivered order back."""
    def _op() -> OrderItem:
        item = _lock_item(order_item_id)
        if item.order.status != STATUS_DELIVERED:
            raise ValidationError("item returns are only available on delivered orders",
                                  {"order_status": item.order.status})
        _move_item(item, ITEM_RETURN_NONE, ITEM_RETURN_PENDING_PICKUP, actor_id=actor_id)
        if reason:
            item.order.return_reason = reason[:255]
        return item

    return run_with_retry(_op)


def mark_item_picked_up(order_item_id: int, *, actor_id: int) -> OrderItem:
    def _op() -> OrderItem:
        item = _lock_item(order_item_id)
        return _move_item(item, ITEM_RETURN_PENDING_PICKUP, ITEM_RETURN_PICKED_UP, actor_id=actor_id)

    return run_with_retry(_op)


def receive_item_at_hub(
    order_item_id: int,
    condition: str,
    *,
    inspector_id: int,
    notes: str | None = None,
) -> dict:
    """
    Inspect a picked-up item and restock it.

    good / wrong_item -> received_hub, on_hand
    damaged           -> damaged_hub, damaged
    """
    if condition not in (ITEM_GOOD, ITEM_DAMAGED, ITEM_WRONG):
        raise ValidationError("condition must be good, damaged or wrong_item", {"condition": condition})

    def _op() -> dict:
        item = _lock_item(order_item_id)
        new_status = ITEM_RETURN_DAMAGED_HUB if condition == ITEM_DAMAGED else ITEM_RETURN_RECEIVED_HUB
        _move_item(item, ITEM_RETURN_PICKED_UP, new_status, actor_id=inspector_id)
        movement, settlement = restock_locked(
            item.variant_id, item.quantity, ITEM_RESTOCK[condition],
            order_item=item, qc_condition=condition, inspector_id=inspector_id,
            notes=notes, reference=item.order.order_code, actor_id=inspector_id,
        )
        logger.info("item %s received at hub as %s", item.id, condition)
        return {"item": item, "movement": movement, "settlement": settlement}

    return run_with_retry(_op)


# =============================================================================
# EXCHANGES / REFUNDS
# =============================================================================

EXCHANGE_RETURN_FIELDS = ("order_item_id", "quantity", "condition")
TRANSACTION_EXCHANGE = "exchange"
TRANSACTION_REFUND = "refund"


def _parse_return_lines(raw_items) -> list[dict]:
    if not isinstance(raw_items, (list, tuple)) or not raw_items:
        raise ValidationError("an exchange needs at least one returned item")
    lines = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise ValidationError("returned item must be an object")
        unknown = set(raw) - set(EXCHANGE_RETURN_FIELDS)
        if unknown:
            raise ValidationError(f"unknown returned item fields: {sorted(unknown)}", {"fields": sorted(unknown)})
        item_id = raw.get("order_item_id")
        quantity = raw.get("quantity", 1)
        condition = raw.get("condition", ITEM_GOOD)
        if isinstance(item_id, bool) or not isinstance(item_id, int):
            raise ValidationError("order_item_id must be an integer", {"order_item_id": item_id})
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer", {"quantity": quantity})
        if condition not in (ITEM_GOOD, ITEM_DAMAGED, ITEM_WRONG):
            raise ValidationError("condition must be good, damaged or wrong_item", {"condition": condition})
        lines.append({"order_item_id": item_id, "quantity": quantity, "condition": condition})

    ids = [line["order_item_id"] for line in lines]
    if len(ids) != len(set(ids)):
        raise ValidationError("each order item can only be returned once per exchange")
    return lines


def _status_path(channel: str, from_status: str, target: str) -> list[str]:
    """The table path to `target`, directly or through return_received."""
    if target in allowed_transitions(channel, from_status):
        return [target]
    if (STATUS_RETURN_RECEIVED in allowed_transitions(channel, from_status)
            and target in allowed_transitions(channel, STATUS_RETURN_RECEIVED)):
        return [STATUS_RETURN_RECEIVED, target]
    raise InvalidTransition(from_status, target, channel, "order cannot be exchanged or refunded from here")


def exchange_order(
    order_id: int,
    *,
    return_items: list,
    new_items: list | None = None,
    reason: str,
    actor_id: int,
) -> dict:
    """
    Take goods back on a fulfilled order and, for an exchange, issue the
    replacement as a child order. One unit of work:

    - returned lines are restocked (good/wrong_item -> on_hand,
      damaged -> damaged) with a QC row each
    - replacement lines are reserved on a new order linked by
      parent_order_id; a POS replacement is handed over at once, so it walks
      to delivered and the departure hook deducts it
    - the value of the returned goods is credited to the replacement order
    - the original moves to exchanged, or to refund_requested when there is
      no replacement

    return_items: [{"order_item_id", "quantity", "condition"?}]
    new_items:    [{"variant_id", "quantity", "unit_price_cents"?}]
    """
    if not reason or not reason.strip():
        raise ValidationError("a reason is required for an exchange or refund")
    return_lines = _parse_return_lines(return_items)
    new_lines = parse_lead_items(new_items)
    transaction_type = TRANSACTION_EXCHANGE if new_lines else TRANSACTION_REFUND
    reason = reason.strip()

    def _op() -> dict:
        parent = lock_order(order_id)
        target = STATUS_EXCHANGED if new_lines else STATUS_REFUND_REQUESTED
        path = _status_path(parent.fulfillment_type, parent.status, target)

        items = {item.id: item for item in parent.items}
        settlements = []
        return_total = 0
        for line in return_lines:
            item = items.get(line["order_item_id"])
            if item is None:
                raise ValidationError("returned item is not part of this order",
                                      {"order_item_id": line["order_item_id"]})
            if item.return_status != ITEM_RETURN_NONE:
                raise ValidationError("item has already been returned",
                                      {"order_item_id": item.id, "return_status": item.return_status})
            if line["quantity"] > item.quantity:
                raise ValidationError(
                    f"cannot return more than was ordered ({item.quantity})",
                    {"order_item_id": item.id, "quantity": line["quantity"]},
                )
            condition = line["condition"]
            _, settlement = restock_locked(
                item.variant_id, line["quantity"], ITEM_RESTOCK[condition],
                order_item=item, qc_condition=condition, inspector_id=actor_id,
                notes=reason, reference=parent.order_code, actor_id=actor_id,
            )
            settlements.append(settlement)
            item.return_status = ITEM_RETURN_DAMAGED_HUB if condition == ITEM_DAMAGED else ITEM_RETURN_RECEIVED_HUB
            return_total += line["quantity"] * item.unit_price_cents

        child = None
        if new_lines:
            child = create_order_locked(
                customer=parent.customer,
                fulfillment_type=parent.fulfillment_type,
                actor_id=actor_id,
                source=SOURCE_EXCHANGE,
                parent_order_id=parent.id,
                shipping={
                    "name": parent.shipping_name, "phone": parent.shipping_phone,
                    "address": parent.shipping_address, "city": parent.shipping_city,
                },
                payment_method=parent.payment_method,
            )
            for line in new_lines:
                reserve_locked(line.variant_id, line.quantity, order_id=child.id,
                               reference=child.order_code, actor_id=actor_id)
                variant = db.session.get(StockVariant, line.variant_id)
                add_item_locked(child, variant, line.quantity,
                                unit_price_cents=line.unit_price_cents, reserved_quantity=line.quantity)
            log_activity(child, actor_id=actor_id, activity_type="created", to_status=child.status,
                         message=f"exchange for {parent.order_code}: {reason}")

            credit = min(return_total, child.total_amount_cents)
            if credit > 0:
                record_exchange_credit_locked(child, credit, actor_id=actor_id, reference=parent.order_code)
            if child.fulfillment_type == CHANNEL_POS:
                apply_status_change(child, STATUS_PACKED, actor_id=actor_id)
                apply_status_change(child, STATUS_DELIVERED, actor_id=actor_id, reason="exchange handover")

        new_total = child.total_amount_cents if child is not None else 0
        link = f"{transaction_type.upper()}: {reason}"
        if child is not None:
            link = f"{link} (see {child.order_code})"
        parent.return_reason = reason[:255]
        parent.return_notes = _append_note(parent.return_notes, link)
        for status in path:
            apply_status_change(parent, status, actor_id=actor_id, reason=reason)

        events.emit(
            "order.exchanged",
            order_id=parent.id,
            order_code=parent.order_code,
            exchange_order_id=child.id if child is not None else None,
            transaction_type=transaction_type,
            return_total_cents=return_total,
            new_total_cents=new_total,
            actor_id=actor_id,
        )
        logger.info("%s on order %s: returned %d, new %d",
                    transaction_type, parent.order_code, return_total, new_total)
        return {
            "order": parent,
            "exchange_order": child,
            "transaction_type": transaction_type,
            "return_total_cents": return_total,
            "new_total_cents": new_total,
            "net_amount_cents": new_total - return_total,
            "settlements": settlements,
        }

    return run_with_retry(_op)
