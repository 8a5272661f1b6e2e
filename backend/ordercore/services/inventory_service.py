# Overview: Service-layer operations for the inventory ledger; the only writer of stock counters.

# backend/ordercore/services/inventory_service.py

"""
Inventory Ledger Invariants (authoritative)

Counters (per StockVariant):
- on_hand  >= 0              physical units in the building
- 0 <= reserved <= on_hand   units held for unfulfilled orders
- damaged  >= 0              quarantined units, outside on_hand

Write discipline:
- Every mutation locks the variant row (SELECT ... FOR UPDATE) BEFORE reading
  the counters it is about to change. Two concurrent reserve() calls on the
  same variant serialize instead of both succeeding against a stale read.
- Every mutation writes exactly one StockMovement in the same unit of work.
  SUM(quantity) == on_hand, SUM(reserved_delta) == reserved and
  SUM(damaged_delta) == damaged for every variant, from creation.
- No other module assigns on_hand / reserved / damaged.

Primitives:
- reserve:  requires on_hand - reserved >= qty; all-or-nothing per call
- release:  reserved -= qty, floored at zero
- deduct:   reserved and on_hand both decrease (floored); goods leave
- restock:  good -> on_hand += qty; damaged -> damaged += qty
- vendor return: on_hand -= qty, only from unreserved units

The *_locked functions participate in the caller's unit of work (no commit)
and are what other services call. The public functions wrap them in
run_with_retry, which commits.
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from ..errors import EngineError, InsufficientStock, NotFound, ValidationError
from ..extensions import db
from ..models import OrderItem, ReturnSettlement, StockMovement, StockVariant
from .concurrency import lock_for_update, run_with_retry

logger = logging.getLogger(__name__)


# =============================================================================
# MOVEMENT TYPES
# =============================================================================

MOVEMENT_RECEIVE = "receive"
MOVEMENT_RESERVE = "reserve"
MOVEMENT_RELEASE = "release"
MOVEMENT_DEDUCT = "deduct"
MOVEMENT_RESTOCK = "restock"
MOVEMENT_DAMAGE = "damage"
MOVEMENT_ADJUST = "adjust"
MOVEMENT_VENDOR_RETURN = "vendor_return"

CONDITION_GOOD = "good"
CONDITION_DAMAGED = "damaged"
RESTOCK_CONDITIONS = (CONDITION_GOOD, CONDITION_DAMAGED)


def _require_positive_qty(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer", {"quantity": quantity})
    if quantity <= 0:
        raise ValidationError("quantity must be positive", {"quantity": quantity})
    return quantity


def _get_variant(variant_id: int, *, lock: bool = False) -> StockVariant:
    query = db.session.query(StockVariant).filter_by(id=variant_id)
    if lock:
        query = lock_for_update(query).populate_existing()
    variant = query.first()
    if variant is None:
        raise NotFound("variant", variant_id)
    return variant


def _snapshot(variant: StockVariant) -> tuple[int, int, int]:
    return variant.on_hand, variant.reserved, variant.damaged


def _record_movement(
    variant: StockVariant,
    movement_type: str,
    before: tuple[int, int, int],
    *,
    order_id: int | None = None,
    reference: str | None = None,
    note: str | None = None,
    actor_id: int | None = None,
) -> StockMovement:
    on_hand_before, reserved_before, damaged_before = before
    movement = StockMovement(
        variant_id=variant.id,
        movement_type=movement_type,
        quantity=variant.on_hand - on_hand_before,
        reserved_delta=variant.reserved - reserved_before,
        damaged_delta=variant.damaged - damaged_before,
        on_hand_before=on_hand_before,
        on_hand_after=variant.on_hand,
        reserved_before=reserved_before,
        reserved_after=variant.reserved,
        damaged_before=damaged_before,
        damaged_after=variant.damaged,
        order_id=order_id,
        reference=reference,
        note=note,
        actor_id=actor_id,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


# =============================================================================
# VARIANTS
# =============================================================================

def create_variant(
    *,
    sku: str,
    name: str,
    cost_price_cents: int = 0,
    selling_price_cents: int = 0,
    opening_stock: int = 0,
    actor_id: int | None = None,
) -> StockVariant:
    """Create a variant; opening stock is booked as a receive movement."""
    if not sku or not name:
        raise ValidationError("sku and name are required")
    if cost_price_cents < 0 or selling_price_cents < 0:
        raise ValidationError("prices cannot be negative")

    def _op() -> StockVariant:
        if db.session.query(StockVariant.id).filter_by(sku=sku).first():
            raise ValidationError(f"sku {sku!r} already exists", {"sku": sku})
        variant = StockVariant(
            sku=sku,
            name=name,
            cost_price_cents=cost_price_cents,
            selling_price_cents=selling_price_cents,
        )
        db.session.add(variant)
        db.session.flush()
        if opening_stock:
            receive_locked(variant.id, opening_stock, reference="opening", actor_id=actor_id)
        return variant

    return run_with_retry(_op)


def get_variant(variant_id: int) -> StockVariant:
    return _get_variant(variant_id)


def list_movements(variant_id: int, *, limit: int = 100) -> list[StockMovement]:
    _get_variant(variant_id)
    return (
        StockMovement.query.filter_by(variant_id=variant_id)
        .order_by(StockMovement.id.desc())
        .limit(limit)
        .all()
    )


# =============================================================================
# LOCKED PRIMITIVES (caller's unit of work)
# =============================================================================

def reserve_locked(
    variant_id: int,
    quantity: int,
    *,
    order_id: int | None = None,
    reference: str | None = None,
    actor_id: int | None = None,
) -> StockMovement:
    quantity = _require_positive_qty(quantity)
    variant = _get_variant(variant_id, lock=True)
    if variant.available < quantity:
        raise InsufficientStock(variant.id, quantity, max(variant.available, 0))

    before = _snapshot(variant)
    variant.reserved += quantity
    return _record_movement(
        variant, MOVEMENT_RESERVE, before,
        order_id=order_id, reference=reference, actor_id=actor_id,
    )


def release_locked(
    variant_id: int,
    quantity: int,
    *,
    order_id: int | None = None,
    reference: str | None = None,
    actor_id: int | None = None,
) -> StockMovement:
    quantity = _require_positive_qty(quantity)
    variant = _get_variant(variant_id, lock=True)

    before = _snapshot(variant)
    released = min(quantity, variant.reserved)
    if released < quantity:
        logger.warning(
            "release of %d on variant %s floored to %d (reserved=%d)",
            quantity, variant.id, released, variant.reserved,
        )
    variant.reserved -= released
    return _record_movement(
        variant, MOVEMENT_RELEASE, before,
        order_id=order_id, reference=reference, actor_id=actor_id,
    )


def deduct_locked(
    variant_id: int,
    quantity: int,
    *,
    reserved_quantity: int | None = None,
    order_id: int | None = None,
    reference: str | None = None,
    actor_id: int | None = None,
) -> StockMovement:
    """
    Physical departure of `quantity` units.

    `reserved_quantity` is how many of those units were held for this caller
    (defaults to all of them); only that share comes off `reserved`.
    """
    quantity = _require_positive_qty(quantity)
    if reserved_quantity is None:
        reserved_quantity = quantity
    if reserved_quantity < 0 or reserved_quantity > quantity:
        raise ValidationError("reserved_quantity must be between 0 and quantity")

    variant = _get_variant(variant_id, lock=True)
    before = _snapshot(variant)

    on_hand_after = variant.on_hand - min(quantity, variant.on_hand)
    reserved_after = variant.reserved - min(reserved_quantity, variant.reserved)
    if variant.on_hand < quantity:
        logger.warning(
            "deduct of %d on variant %s floored at zero (on_hand=%d)",
            quantity, variant.id, variant.on_hand,
        )
    if reserved_after > on_hand_after:
        # Unreserved units left while other orders still held stock: their
        # holds can no longer be honoured in full.
        logger.warning(
            "variant %s oversold: reserved %d clamped to on_hand %d",
            variant.id, reserved_after, on_hand_after,
        )
        reserved_after = on_hand_after

    variant.on_hand = on_hand_after
    variant.reserved = reserved_after
    return _record_movement(
        variant, MOVEMENT_DEDUCT, before,
        order_id=order_id, reference=reference, actor_id=actor_id,
    )


def restock_locked(
    variant_id: int,
    quantity: int,
    condition: str,
    *,
    order_item: OrderItem | None = None,
    qc_condition: str | None = None,
    inspector_id: int | None = None,
    notes: str | None = None,
    reference: str | None = None,
    actor_id: int | None = None,
) -> tuple[StockMovement, ReturnSettlement | None]:
    """
    Put returned units back: good -> on_hand, damaged -> damaged.

    With `order_item` a ReturnSettlement QC row is written alongside the
    movement. `qc_condition` lets the caller record a finer QC grade
    (e.g. wrong_item restocked as good).
    """
    quantity = _require_positive_qty(quantity)
    if condition not in RESTOCK_CONDITIONS:
        raise ValidationError(f"restock condition must be one of {RESTOCK_CONDITIONS}", {"condition": condition})

    variant = _get_variant(variant_id, lock=True)
    before = _snapshot(variant)
    if condition == CONDITION_GOOD:
        variant.on_hand += quantity
        movement_type = MOVEMENT_RESTOCK
    else:
        variant.damaged += quantity
        movement_type = MOVEMENT_DAMAGE

    movement = _record_movement(
        variant, movement_type, before,
        order_id=order_item.order_id if order_item is not None else None,
        reference=reference, note=notes, actor_id=actor_id,
    )

    settlement = None
    if order_item is not None:
        settlement = ReturnSettlement(
            order_id=order_item.order_id,
            order_item_id=order_item.id,
            variant_id=variant.id,
            condition=qc_condition or condition,
            quantity=quantity,
            restocked=condition == CONDITION_GOOD,
            restocked_to_damaged=condition == CONDITION_DAMAGED,
            stock_movement_id=movement.id,
            inspected_by=inspector_id,
            notes=notes,
        )
        db.session.add(settlement)
        db.session.flush()
    return movement, settlement


def receive_locked(
    variant_id: int,
    quantity: int,
    *,
    reference: str | None = None,
    note: str | None = None,
    actor_id: int | None = None,
) -> StockMovement:
    quantity = _require_positive_qty(quantity)
    variant = _get_variant(variant_id, lock=True)
    before = _snapshot(variant)
    variant.on_hand += quantity
    return _record_movement(
        variant, MOVEMENT_RECEIVE, before,
        reference=reference, note=note, actor_id=actor_id,
    )


def adjust_locked(
    variant_id: int,
    delta: int,
    *,
    reason: str,
    actor_id: int | None = None,
) -> StockMovement:
    """Stock-count correction. Cannot take on_hand below what is reserved."""
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError("delta must be a non-zero integer", {"delta": delta})
    if not reason:
        raise ValidationError("adjustment reason is required")

    variant = _get_variant(variant_id, lock=True)
    if variant.on_hand + delta < variant.reserved:
        raise InsufficientStock(variant.id, -delta, max(variant.available, 0))

    before = _snapshot(variant)
    variant.on_hand += delta
    return _record_movement(variant, MOVEMENT_ADJUST, before, note=reason, actor_id=actor_id)


def vendor_return_locked(
    variant_id: int,
    quantity: int,
    *,
    reference: str | None = None,
    note: str | None = None,
    actor_id: int | None = None,
) -> StockMovement:
    """Goods sent back to the supplier. Units held for orders cannot go."""
    quantity = _require_positive_qty(quantity)
    variant = _get_variant(variant_id, lock=True)
    if variant.available < quantity:
        raise InsufficientStock(variant.id, quantity, max(variant.available, 0))

    before = _snapshot(variant)
    variant.on_hand -= quantity
    return _record_movement(
        variant, MOVEMENT_VENDOR_RETURN, before,
        reference=reference, note=note, actor_id=actor_id,
    )


# =============================================================================
# PUBLIC OPERATIONS (own unit of work)
# =============================================================================

def reserve(variant_id: int, quantity: int, *, actor_id: int | None = None, order_id: int | None = None) -> StockMovement:
    return run_with_retry(lambda: reserve_locked(variant_id, quantity, order_id=order_id, actor_id=actor_id))


def release(variant_id: int, quantity: int, *, actor_id: int | None = None, order_id: int | None = None) -> StockMovement:
    return run_with_retry(lambda: release_locked(variant_id, quantity, order_id=order_id, actor_id=actor_id))


def deduct(
    variant_id: int,
    quantity: int,
    *,
    reserved_quantity: int | None = None,
    actor_id: int | None = None,
    order_id: int | None = None,
) -> StockMovement:
    return run_with_retry(lambda: deduct_locked(
        variant_id, quantity,
        reserved_quantity=reserved_quantity, order_id=order_id, actor_id=actor_id,
    ))


def restock(
    variant_id: int,
    quantity: int,
    condition: str,
    *,
    order_item_id: int | None = None,
    inspector_id: int | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
) -> StockMovement:
    def _op() -> StockMovement:
        order_item = None
        if order_item_id is not None:
            order_item = db.session.get(OrderItem, order_item_id)
            if order_item is None:
                raise NotFound("order item", order_item_id)
            if order_item.variant_id != variant_id:
                raise ValidationError("order item does not belong to this variant")
        movement, _ = restock_locked(
            variant_id, quantity, condition,
            order_item=order_item, inspector_id=inspector_id, notes=notes, actor_id=actor_id,
        )
        return movement

    return run_with_retry(_op)


def receive_stock(
    variant_id: int,
    quantity: int,
    *,
    reference: str | None = None,
    note: str | None = None,
    actor_id: int | None = None,
) -> StockMovement:
    return run_with_retry(lambda: receive_locked(
        variant_id, quantity, reference=reference, note=note, actor_id=actor_id,
    ))


def adjust_stock(variant_id: int, delta: int, *, reason: str, actor_id: int | None = None) -> StockMovement:
    return run_with_retry(lambda: adjust_locked(variant_id, delta, reason=reason, actor_id=actor_id))


# =============================================================================
# BATCH OPERATIONS
# =============================================================================

def _parse_batch(items) -> list[dict]:
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("items must be a non-empty list")
    parsed = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or "variant_id" not in item or "quantity" not in item:
            raise ValidationError(f"item {index} needs variant_id and quantity", {"index": index})
        parsed.append({
            "variant_id": item["variant_id"],
            "quantity": item["quantity"],
            "order_id": item.get("order_id"),
        })
    return parsed


def _run_batch(items, primitive, *, actor_id, all_or_nothing: bool) -> dict:
    parsed = _parse_batch(items)

    def _op() -> dict:
        report = {"succeeded": [], "failed": []}
        for item in parsed:
            # Each item gets its own savepoint: a failure undoes only that item.
            try:
                with db.session.begin_nested():
                    movement = primitive(
                        item["variant_id"], item["quantity"],
                        order_id=item["order_id"], actor_id=actor_id,
                    )
            except EngineError as exc:
                if all_or_nothing:
                    raise
                report["failed"].append({**item, "error": exc.to_dict()})
                continue
            report["succeeded"].append({**item, "movement_id": movement.id})
        return report

    report = run_with_retry(_op)
    if report["failed"]:
        logger.warning(
            "batch %s: %d succeeded, %d failed",
            primitive.__name__, len(report["succeeded"]), len(report["failed"]),
        )
    return report


def batch_reserve(items, *, actor_id: int | None = None, all_or_nothing: bool = False) -> dict:
    """Reserve several lines independently; returns {succeeded, failed}."""
    return _run_batch(items, reserve_locked, actor_id=actor_id, all_or_nothing=all_or_nothing)


def batch_deduct(items, *, actor_id: int | None = None, all_or_nothing: bool = False) -> dict:
    """Deduct several lines independently; returns {succeeded, failed}."""
    return _run_batch(items, deduct_locked, actor_id=actor_id, all_or_nothing=all_or_nothing)


# =============================================================================
# AUDIT
# =============================================================================

def audit_variant(variant_id: int) -> dict:
    """
    Check counter invariants and that the movement log explains every counter.
    """
    variant = _get_variant(variant_id)
    sums = db.session.query(
        func.coalesce(func.sum(StockMovement.quantity), 0),
        func.coalesce(func.sum(StockMovement.reserved_delta), 0),
        func.coalesce(func.sum(StockMovement.damaged_delta), 0),
    ).filter(StockMovement.variant_id == variant.id).one()
    on_hand_sum, reserved_sum, damaged_sum = (int(v or 0) for v in sums)

    problems = []
    if variant.on_hand < 0:
        problems.append("on_hand is negative")
    if variant.reserved < 0 or variant.reserved > variant.on_hand:
        problems.append("reserved outside [0, on_hand]")
    if variant.damaged < 0:
        problems.append("damaged is negative")
    if on_hand_sum != variant.on_hand:
        problems.append(f"movements sum to on_hand {on_hand_sum}, counter is {variant.on_hand}")
    if reserved_sum != variant.reserved:
        problems.append(f"movements sum to reserved {reserved_sum}, counter is {variant.reserved}")
    if damaged_sum != variant.damaged:
        problems.append(f"movements sum to damaged {damaged_sum}, counter is {variant.damaged}")

    return {
        "variant_id": variant.id,
        "sku": variant.sku,
        "ok": not problems,
        "problems": problems,
        "on_hand": variant.on_hand,
        "reserved": variant.reserved,
        "damaged": variant.damaged,
    }


def audit_all() -> list[dict]:
    """Audit every variant; returns only the failing reports."""
    ids = [row.id for row in db.session.query(StockVariant.id).order_by(StockVariant.id)]
    return [report for report in (audit_variant(vid) for vid in ids) if not report["ok"]]
