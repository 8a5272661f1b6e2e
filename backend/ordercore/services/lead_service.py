# Overview: Service-layer operations for the sales pipeline and the lead-to-order handoff.

"""
Lead Intake & Conversion

WHY: Sales agents capture leads over the phone and chat, follow up, and
eventually convert them into orders. Conversion is where stock first gets
held, and redirect is where a failed delivery's goods are handed to a new
customer without touching inventory at all.

DESIGN:
- Lead payloads are parsed into CustomerSnapshot / LeadItem at creation;
  conversion trusts the stored shape.
- convert() is tolerant per item: a line whose variant cannot be resolved
  is skipped, a line that cannot be reserved is kept with reserved_quantity
  0, and both are logged as warnings. The conversion itself still commits.
- redirect() moves the failed order's holds to the new order. Goods that
  already left the building stay "deducted" on the new order, so they are
  never deducted a second time.
- CONVERTED and CANCELLED leads are locked; restore_lead needs an Override.
"""

from __future__ import annotations

import logging
from datetime import datetime

from ..errors import (
    AlreadyConverted,
    InsufficientStock,
    InvalidTransition,
    LeadCancelled,
    NotFound,
    ValidationError,
)
from ..extensions import db
from ..models import Lead, StockVariant
from ..time_utils import utcnow
from . import archive_service, events
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import reserve_locked
from .lead_schemas import CustomerSnapshot, parse_lead_items
from .order_service import (
    SOURCE_LEAD,
    SOURCE_REDIRECT,
    add_item_locked,
    apply_status_change,
    create_order_locked,
    lock_order,
    log_activity,
    resolve_customer_locked,
)
from .state_machine import (
    CHANNELS,
    CHANNEL_LOCAL,
    LEAD_CANCELLED,
    LEAD_CONVERTED,
    LEAD_INTAKE,
    LEAD_OPEN_STATUSES,
    Override,
    STATUS_HOLD,
    STATUS_NEXT_ATTEMPT,
    STATUS_REDIRECTED,
    STATUS_REJECTED,
    check_lead_transition,
)

logger = logging.getLogger(__name__)

REDIRECTABLE_STATUSES = (STATUS_REJECTED, STATUS_HOLD, STATUS_NEXT_ATTEMPT)


def _lock_lead(lead_id: int) -> Lead:
    lead = lock_for_update(db.session.query(Lead).filter_by(id=lead_id)).populate_existing().first()
    if lead is None:
        raise NotFound("lead", lead_id)
    return lead


def get_lead(lead_id: int) -> Lead:
    lead = db.session.get(Lead, lead_id)
    if lead is None:
        raise NotFound("lead", lead_id)
    return lead


# =============================================================================
# INTAKE / PIPELINE
# =============================================================================

def create_lead(
    *,
    customer,
    items,
    actor_id: int,
    fulfillment_type: str = CHANNEL_LOCAL,
    assigned_to: int | None = None,
    follow_up_at: datetime | None = None,
    notes: str | None = None,
) -> Lead:
    snapshot = CustomerSnapshot.from_dict(customer)
    lines = parse_lead_items(items)
    if fulfillment_type not in CHANNELS:
        raise ValidationError(f"unknown fulfillment channel: {fulfillment_type}", {"channel": fulfillment_type})

    def _op() -> Lead:
        lead = Lead(
            status=LEAD_INTAKE,
            fulfillment_type=fulfillment_type,
            customer_snapshot=snapshot.as_dict(),
            items=[line.as_dict() for line in lines],
            assigned_to=assigned_to,
            follow_up_at=follow_up_at,
            notes=notes,
            created_by=actor_id,
        )
        db.session.add(lead)
        db.session.flush()
        return lead

    return run_with_retry(_op)


def _apply_lead_status(lead: Lead, new_status: str, *, actor_id: int, override: Override | None = None) -> Lead:
    used_override = check_lead_transition(lead.status, new_status, override)
    if used_override:
        logger.warning("override on lead %s: %s -> %s (%s)", lead.id, lead.status, new_status, override.reason)
    lead.status = new_status
    if new_status == LEAD_CANCELLED:
        lead.cancelled_at = utcnow()
        db.session.flush()
        archive_service.archive_lead_if_terminal(lead, actor_id=actor_id)
    return lead


def change_lead_status(
    lead_id: int,
    new_status: str,
    *,
    actor_id: int,
    follow_up_at: datetime | None = None,
    notes: str | None = None,
) -> Lead:
    """Move a lead through the pipeline. CONVERTED is reserved for convert()."""
    if new_status == LEAD_CONVERTED:
        raise ValidationError("use convert to convert a lead")

    def _op() -> Lead:
        lead = _lock_lead(lead_id)
        _apply_lead_status(lead, new_status, actor_id=actor_id)
        if follow_up_at is not None:
            lead.follow_up_at = follow_up_at
        if notes:
            lead.notes = notes
        return lead

    return run_with_retry(_op)


def restore_lead(lead_id: int, *, actor_id: int, override: Override) -> Lead:
    """Privileged: bring a CANCELLED lead back to INTAKE."""
    if override is None:
        raise ValidationError("restoring a lead requires an override")

    def _op() -> Lead:
        lead = _lock_lead(lead_id)
        _apply_lead_status(lead, LEAD_INTAKE, actor_id=actor_id, override=override)
        lead.cancelled_at = None
        note = f"restored by {actor_id}: {override.reason}"
        lead.notes = f"{lead.notes}\n{note}" if lead.notes else note
        return lead

    return run_with_retry(_op)


# =============================================================================
# CONVERSION
# =============================================================================

def _check_convertible(lead: Lead) -> None:
    if lead.status == LEAD_CONVERTED:
        raise AlreadyConverted(lead.id, lead.converted_order_id)
    if lead.status == LEAD_CANCELLED:
        raise LeadCancelled(f"lead {lead.id} is cancelled", {"lead_id": lead.id})


def _mark_converted(lead: Lead, order_id: int, *, actor_id: int) -> None:
    _apply_lead_status(lead, LEAD_CONVERTED, actor_id=actor_id)
    lead.converted_order_id = order_id
    lead.converted_at = utcnow()


def convert(lead_id: int, *, actor_id: int) -> dict:
    """
    Convert a lead into an order, reserving stock where available.

    Returns:
        {"order": Order, "items_created": int, "units_reserved": int,
         "customer_id": int, "skipped": [...], "unreserved": [...]}

    Raises:
        NotFound, AlreadyConverted, LeadCancelled
    """
    def _op() -> dict:
        lead = _lock_lead(lead_id)
        _check_convertible(lead)

        snapshot = CustomerSnapshot.from_dict(lead.customer_snapshot)
        customer = resolve_customer_locked(
            phone=snapshot.phone, name=snapshot.name, address=snapshot.address, city=snapshot.city,
        )
        order = create_order_locked(
            customer=customer,
            fulfillment_type=lead.fulfillment_type,
            actor_id=actor_id,
            source=SOURCE_LEAD,
            lead_id=lead.id,
            shipping=snapshot.as_dict(),
        )

        items_created = 0
        units_reserved = 0
        skipped = []
        unreserved = []
        for line in parse_lead_items(lead.items):
            variant = db.session.get(StockVariant, line.variant_id)
            if variant is None or not variant.is_active:
                logger.warning("lead %s: variant %s not found, item skipped", lead.id, line.variant_id)
                skipped.append(line.variant_id)
                continue

            reserved = 0
            try:
                with db.session.begin_nested():
                    reserve_locked(
                        variant.id, line.quantity,
                        order_id=order.id, reference=order.order_code, actor_id=actor_id,
                    )
                reserved = line.quantity
            except InsufficientStock as exc:
                logger.warning(
                    "lead %s: could not reserve %d of variant %s (available %d)",
                    lead.id, line.quantity, variant.id, exc.available,
                )
                unreserved.append(exc.to_dict()["details"])

            add_item_locked(
                order, variant, line.quantity,
                unit_price_cents=line.unit_price_cents, reserved_quantity=reserved,
            )
            items_created += 1
            units_reserved += reserved

        _mark_converted(lead, order.id, actor_id=actor_id)
        log_activity(
            order, actor_id=actor_id, activity_type="created", to_status=order.status,
            message=f"converted from lead {lead.id}",
        )
        events.emit("order.created", order_id=order.id, order_code=order.order_code, source=order.source)
        events.emit("lead.converted", lead_id=lead.id, order_id=order.id)

        return {
            "order": order,
            "items_created": items_created,
            "units_reserved": units_reserved,
            "customer_id": customer.id,
            "skipped": skipped,
            "unreserved": unreserved,
        }

    return run_with_retry(_op)


# =============================================================================
# REDIRECT
# =============================================================================

def redirect(failed_order_id: int, target_lead_id: int, *, reason: str, actor_id: int) -> dict:
    """
    Hand a failed order's goods to a different lead.

    The failed order becomes `redirected`; a new RDR- order is created for the
    target lead with copies of the failed order's lines. No stock is reserved,
    released or deducted: the existing holds (or the already-deducted state)
    move to the new order.
    """
    if not reason or not reason.strip():
        raise ValidationError("redirect reason is required")

    def _op() -> dict:
        failed = lock_order(failed_order_id)
        if failed.status not in REDIRECTABLE_STATUSES:
            raise InvalidTransition(
                failed.status, STATUS_REDIRECTED, failed.fulfillment_type,
                f"only {', '.join(REDIRECTABLE_STATUSES)} orders can be redirected",
            )

        lead = _lock_lead(target_lead_id)
        if lead.status not in LEAD_OPEN_STATUSES:
            _check_convertible(lead)

        failed.return_reason = f"Redirected: {reason.strip()}"[:255]
        apply_status_change(failed, STATUS_REDIRECTED, actor_id=actor_id, reason=failed.return_reason)

        snapshot = CustomerSnapshot.from_dict(lead.customer_snapshot)
        customer = resolve_customer_locked(
            phone=snapshot.phone, name=snapshot.name, address=snapshot.address, city=snapshot.city,
        )
        new_order = create_order_locked(
            customer=customer,
            fulfillment_type=failed.fulfillment_type,
            actor_id=actor_id,
            source=SOURCE_REDIRECT,
            lead_id=lead.id,
            parent_order_id=failed.id,
            shipping=snapshot.as_dict(),
        )
        new_order.stock_deducted = failed.stock_deducted

        items_copied = 0
        for item in failed.items:
            add_item_locked(
                new_order, item.variant, item.quantity,
                unit_price_cents=item.unit_price_cents,
                reserved_quantity=item.reserved_quantity,
            )
            item.reserved_quantity = 0
            items_copied += 1
        # The goods now belong to the new order; no hook may move stock for
        # the failed one again (e.g. a courier re-dispatch of it).
        failed.stock_deducted = True

        _mark_converted(lead, new_order.id, actor_id=actor_id)
        log_activity(
            failed, actor_id=actor_id, activity_type="redirected",
            message=f"redirected to {new_order.order_code}: {reason.strip()}",
        )
        log_activity(
            new_order, actor_id=actor_id, activity_type="created", to_status=new_order.status,
            message=f"redirected from {failed.order_code}",
        )
        events.emit("order.created", order_id=new_order.id, order_code=new_order.order_code, source=new_order.source)
        events.emit("lead.converted", lead_id=lead.id, order_id=new_order.id)

        return {"order": new_order, "failed_order": failed, "items_copied": items_copied}

    return run_with_retry(_op)
