# Overview: Service-layer operations for rider runs, courier manifests and delivery outcomes.

"""
Dispatch & Settlement

WHY: Orders leave in batches: a rider takes a run of local orders, a courier
partner picks up a bag of outside-valley orders. Each batch (Manifest) tracks
what COD should come back, what each delivery attempt produced, and finally
what cash was actually handed over.

LIFECYCLE:
- rider run:  open -> out_for_delivery -> partially_settled? -> settled
- courier:    handed_over -> settled
- create_manifest: qualifying orders only (packed, or next_attempt for a
  rider re-run; right channel; not on another unsettled manifest). Orders
  move to assigned (rider) or dispatched (courier, stock leaves here).
- start_manifest_run: rider departs; orders move to sent_for_delivery and
  their stock is deducted by the order hooks.
- record_delivery_outcome: one outcome per manifest seat.
- settle_manifest: variance = cash received - expected COD. The manifest is
  detached from its orders so they are no longer "in flight".

Status changes always go through order_service.apply_status_change, so the
same guard and hooks apply as everywhere else.
"""

from __future__ import annotations

import logging

from ..errors import (
    AlreadyProcessed,
    InvalidAmount,
    NoValidOrders,
    NotFound,
    ValidationError,
)
from ..extensions import db
from ..models import Manifest, ManifestItem, Order
from ..time_utils import utcnow
from . import events, sequence_service
from .concurrency import lock_for_update, run_with_retry
from .order_service import apply_status_change, log_activity
from .settlement_service import lock_rider, record_cod_collection_locked
from .state_machine import (
    CHANNEL_COURIER,
    CHANNEL_LOCAL,
    Override,
    STATUS_ASSIGNED,
    STATUS_CANCELLED,
    STATUS_DELIVERED,
    STATUS_DISPATCHED,
    STATUS_HOLD,
    STATUS_NEXT_ATTEMPT,
    STATUS_PACKED,
    STATUS_REJECTED,
    STATUS_RTO_INITIATED,
    STATUS_SENT_FOR_DELIVERY,
)

logger = logging.getLogger(__name__)


# =============================================================================
# MANIFEST CONSTANTS
# =============================================================================

MANIFEST_RIDER = "rider"
MANIFEST_COURIER = "courier"

MANIFEST_OPEN = "open"
MANIFEST_OUT_FOR_DELIVERY = "out_for_delivery"
MANIFEST_HANDED_OVER = "handed_over"
MANIFEST_PARTIALLY_SETTLED = "partially_settled"
MANIFEST_SETTLED = "settled"
MANIFEST_CANCELLED = "cancelled"

UNSETTLED_MANIFEST_STATUSES = (
    MANIFEST_OPEN, MANIFEST_OUT_FOR_DELIVERY, MANIFEST_HANDED_OVER, MANIFEST_PARTIALLY_SETTLED,
)

OUTCOME_PENDING = "pending"

# outcome -> (bucket, counter attribute)
OUTCOME_BUCKETS = {
    "delivered": "delivered",
    "partial_delivery": "delivered",
    "customer_refused": "return",
    "returned": "return",
    "damaged": "return",
    "rescheduled": "follow_up",
    "customer_unavailable": "follow_up",
    "wrong_address": "follow_up",
    "lost": "lost",
}

# bucket -> order status, per channel
BUCKET_STATUS = {
    CHANNEL_LOCAL: {
        "delivered": STATUS_DELIVERED,
        "return": STATUS_REJECTED,
        "follow_up": STATUS_NEXT_ATTEMPT,
        "lost": STATUS_CANCELLED,
    },
    CHANNEL_COURIER: {
        "delivered": STATUS_DELIVERED,
        "return": STATUS_RTO_INITIATED,
        "follow_up": STATUS_HOLD,
        "lost": STATUS_CANCELLED,
    },
}

BUCKET_COUNTER = {
    "delivered": "delivered_count",
    "return": "returned_count",
    "follow_up": "rescheduled_count",
    "lost": "lost_count",
}


def _lock_manifest(manifest_id: int) -> Manifest:
    manifest = lock_for_update(db.session.query(Manifest).filter_by(id=manifest_id)).populate_existing().first()
    if manifest is None:
        raise NotFound("manifest", manifest_id)
    return manifest


def get_manifest(manifest_id: int) -> Manifest:
    manifest = db.session.get(Manifest, manifest_id)
    if manifest is None:
        raise NotFound("manifest", manifest_id)
    return manifest


def _qualify(order: Order | None, order_id: int, manifest_type: str) -> str | None:
    """Return a skip reason, or None when the order can join the manifest."""
    if order is None:
        return "not found"
    expected_channel = CHANNEL_LOCAL if manifest_type == MANIFEST_RIDER else CHANNEL_COURIER
    if order.fulfillment_type != expected_channel:
        return f"channel is {order.fulfillment_type}"
    allowed = (STATUS_PACKED, STATUS_NEXT_ATTEMPT) if manifest_type == MANIFEST_RIDER else (STATUS_PACKED,)
    if order.status not in allowed:
        return f"status is {order.status}"
    if order.current_manifest_id is not None:
        return f"already on manifest {order.current_manifest_id}"
    return None


# =============================================================================
# CREATE / START
# =============================================================================

def create_manifest(
    order_ids: list[int],
    *,
    actor_id: int,
    rider_id: int | None = None,
    courier_partner: str | None = None,
) -> dict:
    """
    Batch orders for one rider (rider_id) or one courier partner.

    Returns {"manifest": Manifest, "attached": [order ids], "skipped": [{order_id, reason}]}.
    Raises NoValidOrders when nothing qualifies.
    """
    if (rider_id is None) == (not courier_partner):
        raise ValidationError("exactly one of rider_id or courier_partner is required")
    if not order_ids:
        raise NoValidOrders("no orders supplied")
    manifest_type = MANIFEST_RIDER if rider_id is not None else MANIFEST_COURIER

    def _op() -> dict:
        if rider_id is not None:
            rider = lock_rider(rider_id)
            if not rider.is_active:
                raise ValidationError(f"rider {rider_id} is inactive")

        attached: list[Order] = []
        skipped = []
        for order_id in dict.fromkeys(order_ids):
            order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).populate_existing().first()
            reason = _qualify(order, order_id, manifest_type)
            if reason:
                skipped.append({"order_id": order_id, "reason": reason})
            else:
                attached.append(order)

        if not attached:
            raise NoValidOrders("no order qualifies for this manifest", {"skipped": skipped})

        manifest = Manifest(
            manifest_code=sequence_service.next_manifest_code(manifest_type),
            manifest_type=manifest_type,
            rider_id=rider_id,
            courier_partner=courier_partner,
            status=MANIFEST_OPEN if manifest_type == MANIFEST_RIDER else MANIFEST_HANDED_OVER,
            created_by=actor_id,
        )
        db.session.add(manifest)
        db.session.flush()

        total_cod = 0
        for order in attached:
            order.delivery_attempt_count += 1
            cod_due = order.cod_due_cents if order.payment_method == "cod" else 0
            db.session.add(ManifestItem(
                manifest_id=manifest.id,
                order_id=order.id,
                cod_amount_cents=cod_due,
                attempt_number=order.delivery_attempt_count,
            ))
            total_cod += cod_due
            order.current_manifest_id = manifest.id

            if manifest_type == MANIFEST_RIDER:
                order.rider_id = rider_id
                apply_status_change(order, STATUS_ASSIGNED, actor_id=actor_id,
                                    reason=f"assigned to {manifest.manifest_code}")
            else:
                order.courier_partner = courier_partner
                apply_status_change(order, STATUS_DISPATCHED, actor_id=actor_id,
                                    reason=f"handed to {courier_partner} on {manifest.manifest_code}")

        manifest.total_orders = len(attached)
        manifest.total_cod_expected_cents = total_cod
        if manifest_type == MANIFEST_COURIER:
            manifest.dispatched_at = utcnow()
        db.session.flush()

        if skipped:
            logger.info("manifest %s: skipped %d orders", manifest.manifest_code, len(skipped))
        return {"manifest": manifest, "attached": [o.id for o in attached], "skipped": skipped}

    return run_with_retry(_op)


def start_manifest_run(manifest_id: int, *, actor_id: int) -> Manifest:
    """Rider leaves the hub: every order on the run goes out for delivery."""
    def _op() -> Manifest:
        manifest = _lock_manifest(manifest_id)
        if manifest.manifest_type != MANIFEST_RIDER:
            raise ValidationError("only rider runs are started; courier manifests are handed over on creation")
        if manifest.status != MANIFEST_OPEN:
            raise AlreadyProcessed(f"manifest {manifest.manifest_code} is {manifest.status}")

        for item in manifest.items:
            order = lock_for_update(db.session.query(Order).filter_by(id=item.order_id)).populate_existing().first()
            apply_status_change(order, STATUS_SENT_FOR_DELIVERY, actor_id=actor_id,
                                reason=f"out on {manifest.manifest_code}")

        manifest.status = MANIFEST_OUT_FOR_DELIVERY
        manifest.dispatched_at = utcnow()
        return manifest

    return run_with_retry(_op)


# =============================================================================
# OUTCOMES
# =============================================================================

def record_delivery_outcome(
    manifest_id: int,
    order_id: int,
    outcome: str,
    *,
    actor_id: int,
    cash_collected_cents: int = 0,
    proof_reference: str | None = None,
    notes: str | None = None,
) -> dict:
    """
    Record what happened to one order on a manifest and move the order.

    delivered / partial_delivery          -> delivered
    customer_refused / returned / damaged -> return flow (rejected | rto_initiated)
    rescheduled / unavailable / wrong_addr-> follow up (next_attempt | hold)
    lost                                  -> cancelled (system override, the
                                             order is in flight)
    """
    bucket = OUTCOME_BUCKETS.get(outcome)
    if bucket is None:
        raise ValidationError(f"unknown outcome: {outcome}", {"allowed": sorted(OUTCOME_BUCKETS)})
    if isinstance(cash_collected_cents, bool) or not isinstance(cash_collected_cents, int) or cash_collected_cents < 0:
        raise InvalidAmount("cash collected cannot be negative", {"cash_collected_cents": cash_collected_cents})
    if cash_collected_cents and bucket != "delivered":
        raise InvalidAmount("cash can only be collected on a delivery")

    def _op() -> dict:
        manifest = _lock_manifest(manifest_id)
        if manifest.status in (MANIFEST_SETTLED, MANIFEST_CANCELLED):
            raise AlreadyProcessed(f"manifest {manifest.manifest_code} is {manifest.status}")

        item = ManifestItem.query.filter_by(manifest_id=manifest.id, order_id=order_id).first()
        if item is None:
            raise NotFound("manifest item", f"{manifest_id}/{order_id}")
        if item.outcome != OUTCOME_PENDING:
            raise AlreadyProcessed(
                f"outcome already recorded for order {order_id}",
                {"outcome": item.outcome},
            )
        if cash_collected_cents > item.cod_amount_cents:
            raise InvalidAmount(
                "cash collected exceeds the COD due",
                {"cod_amount_cents": item.cod_amount_cents, "cash_collected_cents": cash_collected_cents},
            )

        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).populate_existing().first()
        target = BUCKET_STATUS[order.fulfillment_type][bucket]
        override = None
        if bucket == "lost":
            override = Override(reason=f"lost on {manifest.manifest_code}", actor_id=actor_id)
        apply_status_change(
            order, target, actor_id=actor_id,
            reason=f"{outcome} on {manifest.manifest_code}", override=override,
        )

        item.outcome = outcome
        item.cod_collected_cents = cash_collected_cents
        item.proof_reference = proof_reference
        item.outcome_notes = notes
        item.outcome_at = utcnow()

        counter = BUCKET_COUNTER[bucket]
        setattr(manifest, counter, getattr(manifest, counter) + 1)

        if cash_collected_cents:
            manifest.total_cod_collected_cents += cash_collected_cents
            order.cod_collected_cents += cash_collected_cents
            if manifest.manifest_type == MANIFEST_RIDER:
                record_cod_collection_locked(
                    manifest.rider_id, cash_collected_cents, order_id=order.id, actor_id=actor_id,
                )

        if proof_reference:
            log_activity(order, actor_id=actor_id, activity_type="delivery_proof", message=proof_reference)
        db.session.flush()
        return {"manifest": manifest, "order": order, "item": item}

    return run_with_retry(_op)


# =============================================================================
# SETTLEMENT
# =============================================================================

def settle_manifest(
    manifest_id: int,
    cash_received_cents: int,
    *,
    actor_id: int,
    notes: str | None = None,
) -> Manifest:
    """
    Close a manifest against the cash handed over.

    variance = received - expected COD; collection_variance = received -
    collected. Orders still pending an outcome keep the manifest
    partially_settled and stay attached until settled again.
    """
    if isinstance(cash_received_cents, bool) or not isinstance(cash_received_cents, int) or cash_received_cents < 0:
        raise InvalidAmount("cash received cannot be negative", {"cash_received_cents": cash_received_cents})

    def _op() -> Manifest:
        manifest = _lock_manifest(manifest_id)
        if manifest.status == MANIFEST_SETTLED:
            raise AlreadyProcessed(f"manifest {manifest.manifest_code} is already settled")
        if manifest.status == MANIFEST_CANCELLED:
            raise ValidationError(f"manifest {manifest.manifest_code} is cancelled")

        manifest.cash_received_cents = cash_received_cents
        manifest.variance_cents = cash_received_cents - manifest.total_cod_expected_cents
        manifest.collection_variance_cents = cash_received_cents - manifest.total_cod_collected_cents
        if notes:
            manifest.settlement_notes = notes

        pending = [item for item in manifest.items if item.outcome == OUTCOME_PENDING]
        for item in manifest.items:
            if item.outcome == OUTCOME_PENDING:
                continue
            order = db.session.get(Order, item.order_id)
            if order.current_manifest_id == manifest.id:
                order.current_manifest_id = None

        if pending:
            manifest.status = MANIFEST_PARTIALLY_SETTLED
            logger.info("manifest %s partially settled, %d pending", manifest.manifest_code, len(pending))
            return manifest

        manifest.status = MANIFEST_SETTLED
        manifest.settled_by = actor_id
        manifest.settled_at = utcnow()
        db.session.flush()
        events.emit(
            "manifest.settled",
            manifest_id=manifest.id,
            manifest_code=manifest.manifest_code,
            variance_cents=manifest.variance_cents,
        )
        return manifest

    return run_with_retry(_op)
