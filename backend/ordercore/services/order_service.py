# Overview: Service-layer operations for orders; the only writer of Order.status.

"""
Order Lifecycle Service

WHY: Every status change on an order can have physical consequences (stock
leaves the building, reservations are released, the order is archived).
Those consequences used to live in database triggers AND in application
code, which is how the same dispatch got deducted twice. Here they are
explicit post-transition hooks, run synchronously right after the guarded
status write, inside the same unit of work.

STATUS WRITE (apply_status_change):
1. state_machine.check_transition(channel, from, to, override)
2. order.status = to
3. OrderActivity row (records the override reason when one was needed)
4. POST_TRANSITION_HOOKS, in order:
   - stamp milestone timestamps
   - deduct stock when the order first reaches its channel's departure
     status or any later one an override jumped to (guarded by
     Order.stock_deducted, so exactly once)
   - release reservations when cancelled before departure
   - archive designated terminal statuses (savepoint isolated)
   - queue the order.status_changed domain event

If any step raises, the whole unit (status included) rolls back.
"""

from __future__ import annotations

import logging
from typing import Callable

from ..errors import NotFound, ValidationError
from ..extensions import db
from ..models import Customer, Order, OrderActivity, OrderItem, StockVariant
from ..time_utils import utcnow
from . import archive_service, events, sequence_service
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import deduct_locked, release_locked, reserve_locked
from .state_machine import (
    CHANNEL_COURIER,
    CHANNEL_LOCAL,
    CHANNEL_POS,
    CHANNELS,
    Override,
    STATUS_ASSIGNED,
    STATUS_CANCELLED,
    STATUS_DELIVERED,
    STATUS_DISPATCHED,
    STATUS_HOLD,
    STATUS_INTAKE,
    STATUS_NEXT_ATTEMPT,
    STATUS_PACKED,
    STATUS_RETURN_RECEIVED,
    STATUS_RETURNED,
    STATUS_SENT_FOR_DELIVERY,
    check_transition,
    has_departed,
)

logger = logging.getLogger(__name__)

SOURCE_LEAD = "lead"
SOURCE_REDIRECT = "redirect"
SOURCE_MANUAL = "manual"
SOURCE_EXCHANGE = "exchange"


# =============================================================================
# LOOKUPS
# =============================================================================

def lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).populate_existing().first()
    if order is None:
        raise NotFound("order", order_id)
    return order


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("order", order_id)
    return order


def get_order_by_code(code: str) -> Order:
    """Look up by ORD-/RDR- code; malformed legacy codes are rejected."""
    prefix, number = sequence_service.parse_order_code(code)
    canonical = f"{prefix}-{number:06d}"
    order = Order.query.filter_by(order_code=canonical).first()
    if order is None:
        raise NotFound("order", canonical)
    return order


def get_order_activity(order_id: int) -> list[OrderActivity]:
    get_order(order_id)
    return OrderActivity.query.filter_by(order_id=order_id).order_by(OrderActivity.id).all()


# =============================================================================
# CREATION HELPERS (caller's unit of work)
# =============================================================================

def resolve_customer_locked(*, phone: str, name: str | None = None,
                            address: str | None = None, city: str | None = None) -> Customer:
    """Find a customer by phone or create one (name defaults to 'Unknown')."""
    customer = Customer.query.filter_by(phone=phone).first()
    if customer is not None:
        return customer
    customer = Customer(phone=phone, name=name or "Unknown", address=address, city=city)
    db.session.add(customer)
    db.session.flush()
    return customer


def create_order_locked(
    *,
    customer: Customer,
    fulfillment_type: str,
    actor_id: int | None,
    source: str = SOURCE_MANUAL,
    lead_id: int | None = None,
    parent_order_id: int | None = None,
    shipping: dict | None = None,
    payment_method: str = "cod",
) -> Order:
    if fulfillment_type not in CHANNELS:
        raise ValidationError(f"unknown fulfillment channel: {fulfillment_type}", {"channel": fulfillment_type})
    shipping = shipping or {}
    order = Order(
        order_code=sequence_service.next_order_code(redirect=source == SOURCE_REDIRECT),
        customer_id=customer.id,
        lead_id=lead_id,
        parent_order_id=parent_order_id,
        fulfillment_type=fulfillment_type,
        status=STATUS_INTAKE,
        source=source,
        payment_method=payment_method,
        shipping_name=shipping.get("name") or customer.name,
        shipping_phone=shipping.get("phone") or customer.phone,
        shipping_address=shipping.get("address") or customer.address,
        shipping_city=shipping.get("city") or customer.city,
        created_by=actor_id,
    )
    db.session.add(order)
    db.session.flush()
    return order


def add_item_locked(
    order: Order,
    variant: StockVariant,
    quantity: int,
    *,
    unit_price_cents: int | None = None,
    reserved_quantity: int = 0,
) -> OrderItem:
    item = OrderItem(
        order=order,
        variant_id=variant.id,
        quantity=quantity,
        unit_price_cents=variant.selling_price_cents if unit_price_cents is None else unit_price_cents,
        unit_cost_cents=variant.cost_price_cents,
        reserved_quantity=reserved_quantity,
    )
    db.session.add(item)
    db.session.flush()
    order.total_amount_cents += item.line_total_cents
    return item


def log_activity(
    order: Order,
    *,
    actor_id: int | None,
    activity_type: str,
    message: str | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    override: Override | None = None,
) -> OrderActivity:
    activity = OrderActivity(
        order_id=order.id,
        activity_type=activity_type,
        from_status=from_status,
        to_status=to_status,
        message=(message or "")[:255] or None,
        is_override=override is not None,
        override_reason=override.reason if override is not None else None,
        actor_id=actor_id,
    )
    db.session.add(activity)
    return activity


# =============================================================================
# POST-TRANSITION HOOKS
# =============================================================================

def _stamp_milestones(order: Order, from_status: str, to_status: str, *, actor_id) -> None:
    now = utcnow()
    if to_status == STATUS_PACKED and order.packed_at is None:
        order.packed_at = now
    elif to_status in (STATUS_SENT_FOR_DELIVERY, STATUS_DISPATCHED):
        order.dispatched_at = now
    elif to_status == STATUS_DELIVERED:
        order.delivered_at = now
        if order.dispatched_at is None:
            order.dispatched_at = now
    elif to_status == STATUS_RETURN_RECEIVED:
        order.return_received_at = now
    elif to_status == STATUS_RETURNED:
        order.returned_at = now
    elif to_status == STATUS_CANCELLED:
        order.cancelled_at = now


def _deduct_on_departure(order: Order, from_status: str, to_status: str, *, actor_id) -> None:
    if order.stock_deducted or not has_departed(order.fulfillment_type, to_status):
        return
    for item in order.items:
        deduct_locked(
            item.variant_id, item.quantity,
            reserved_quantity=item.reserved_quantity,
            order_id=order.id, reference=order.order_code, actor_id=actor_id,
        )
        item.reserved_quantity = 0
    order.stock_deducted = True


def _release_on_cancel(order: Order, from_status: str, to_status: str, *, actor_id) -> None:
    if to_status != STATUS_CANCELLED or order.stock_deducted:
        return
    for item in order.items:
        if item.reserved_quantity > 0:
            release_locked(
                item.variant_id, item.reserved_quantity,
                order_id=order.id, reference=order.order_code, actor_id=actor_id,
            )
            item.reserved_quantity = 0


def _archive_terminal(order: Order, from_status: str, to_status: str, *, actor_id) -> None:
    db.session.flush()
    archive_service.archive_order_if_terminal(order, actor_id=actor_id)


def _emit_status_changed(order: Order, from_status: str, to_status: str, *, actor_id) -> None:
    events.emit(
        "order.status_changed",
        order_id=order.id,
        order_code=order.order_code,
        from_status=from_status,
        to_status=to_status,
        channel=order.fulfillment_type,
        actor_id=actor_id,
    )


PostTransitionHook = Callable[..., None]

POST_TRANSITION_HOOKS: list[PostTransitionHook] = [
    _stamp_milestones,
    _deduct_on_departure,
    _release_on_cancel,
    _archive_terminal,
    _emit_status_changed,
]


# =============================================================================
# STATUS CHANGES
# =============================================================================

def apply_status_change(
    order: Order,
    new_status: str,
    *,
    actor_id: int | None,
    reason: str | None = None,
    override: Override | None = None,
) -> Order:
    """
    Guarded status write plus hooks. The caller holds the order row lock and
    owns the unit of work.
    """
    from_status = order.status
    used_override = check_transition(order.fulfillment_type, from_status, new_status, override)
    if used_override:
        logger.warning(
            "override on order %s: %s -> %s (%s)",
            order.id, from_status, new_status, override.reason,
        )

    order.status = new_status
    log_activity(
        order,
        actor_id=actor_id,
        activity_type="status_change",
        from_status=from_status,
        to_status=new_status,
        message=reason,
        override=override if used_override else None,
    )
    for hook in POST_TRANSITION_HOOKS:
        hook(order, from_status, new_status, actor_id=actor_id)
    db.session.flush()
    return order


def change_order_status(
    order_id: int,
    new_status: str,
    *,
    actor_id: int,
    reason: str | None = None,
    override: Override | None = None,
) -> Order:
    def _op() -> Order:
        order = lock_order(order_id)
        return apply_status_change(order, new_status, actor_id=actor_id, reason=reason, override=override)

    return run_with_retry(_op)


def pack_order(order_id: int, *, actor_id: int) -> Order:
    return change_order_status(order_id, STATUS_PACKED, actor_id=actor_id)


def cancel_order(order_id: int, *, actor_id: int, reason: str, override: Override | None = None) -> Order:
    if not reason or not reason.strip():
        raise ValidationError("cancellation reason is required")
    return change_order_status(order_id, STATUS_CANCELLED, actor_id=actor_id, reason=reason, override=override)


def dispatch_order(
    order_id: int,
    *,
    actor_id: int,
    rider_id: int | None = None,
    courier_partner: str | None = None,
) -> Order:
    """
    Walk an order to its channel's departure status in one unit of work.

    local:   (packed|hold) -> assigned -> sent_for_delivery
    courier: packed -> dispatched
    POS:     packed -> delivered (handed over at the counter)
    """
    def _op() -> Order:
        order = lock_order(order_id)
        channel = order.fulfillment_type

        if channel == CHANNEL_LOCAL:
            if rider_id is not None:
                order.rider_id = rider_id
            if order.status in (STATUS_PACKED, STATUS_HOLD):
                apply_status_change(order, STATUS_ASSIGNED, actor_id=actor_id)
            return apply_status_change(order, STATUS_SENT_FOR_DELIVERY, actor_id=actor_id)

        if channel == CHANNEL_COURIER:
            if courier_partner:
                order.courier_partner = courier_partner
            return apply_status_change(order, STATUS_DISPATCHED, actor_id=actor_id)

        if channel == CHANNEL_POS:
            return apply_status_change(order, STATUS_DELIVERED, actor_id=actor_id)

        raise ValidationError(f"unknown fulfillment channel: {channel}")

    return run_with_retry(_op)


def hold_order(order_id: int, *, actor_id: int, reason: str) -> Order:
    return change_order_status(order_id, STATUS_HOLD, actor_id=actor_id, reason=reason)


def schedule_next_attempt(order_id: int, *, actor_id: int, reason: str | None = None) -> Order:
    return change_order_status(order_id, STATUS_NEXT_ATTEMPT, actor_id=actor_id, reason=reason)


# =============================================================================
# MANUAL ORDERS
# =============================================================================

def create_order(
    *,
    customer_phone: str,
    fulfillment_type: str,
    items: list[dict],
    actor_id: int,
    customer_name: str | None = None,
    shipping_address: str | None = None,
    shipping_city: str | None = None,
    reserve_stock: bool = True,
) -> Order:
    """
    Create an order directly (counter sale, phone order) without a lead.

    Unlike lead conversion this is all-or-nothing: if any line cannot be
    reserved the whole order is rolled back with InsufficientStock.
    """
    from .lead_schemas import parse_lead_items

    if not customer_phone:
        raise ValidationError("customer phone is required")
    lines = parse_lead_items(items)
    if not lines:
        raise ValidationError("an order needs at least one item")

    def _op() -> Order:
        customer = resolve_customer_locked(
            phone=customer_phone, name=customer_name, address=shipping_address, city=shipping_city,
        )
        order = create_order_locked(
            customer=customer,
            fulfillment_type=fulfillment_type,
            actor_id=actor_id,
            source=SOURCE_MANUAL,
            shipping={"address": shipping_address, "city": shipping_city},
        )
        for line in lines:
            variant = db.session.get(StockVariant, line.variant_id)
            if variant is None:
                raise NotFound("variant", line.variant_id)
            reserved = 0
            if reserve_stock:
                reserve_locked(variant.id, line.quantity, order_id=order.id, actor_id=actor_id)
                reserved = line.quantity
            add_item_locked(
                order, variant, line.quantity,
                unit_price_cents=line.unit_price_cents, reserved_quantity=reserved,
            )
        log_activity(order, actor_id=actor_id, activity_type="created", to_status=order.status)
        events.emit("order.created", order_id=order.id, order_code=order.order_code, source=order.source)
        return order

    return run_with_retry(_op)
