# Overview: Service-layer operations for rider cash-in-hand, wallets and daily COD settlements.

"""
Rider Cash & Settlement

WHY: Riders collect cash on delivery all day and hand it over at the hub.
The business needs to know, per rider per day, what SHOULD have come back
(expected), what the rider reported collecting, and what actually arrived.

INVARIANTS:
- One RiderSettlement per (rider, settlement_date). init is idempotent.
- Expected COD = sum of the COD still due (total - advance paid) on the
  rider's delivered, unsettled orders delivered that day.
- shortage = expected - received.
    shortage <= 0                  -> completed
    shortage  > 0 and wallet flag  -> completed, wallet and total_shortage move
    shortage  > 0 otherwise        -> disputed (may be completed again later)
- On completion each in-scope order is marked settled exactly once; orders
  already settled by another settlement are never touched again.
- Every cash / wallet change writes a RiderBalanceLog row.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.exc import IntegrityError

from ..errors import AlreadyProcessed, InvalidAmount, NotFound, ValidationError
from ..extensions import db
from ..models import Order, Rider, RiderBalanceLog, RiderSettlement
from ..time_utils import day_bounds, utcnow
from . import events, sequence_service
from .concurrency import lock_for_update, run_with_retry
from .state_machine import STATUS_DELIVERED

logger = logging.getLogger(__name__)


# =============================================================================
# SETTLEMENT STATUS CONSTANTS
# =============================================================================

SETTLEMENT_PENDING = "pending"
SETTLEMENT_COMPLETED = "completed"
SETTLEMENT_DISPUTED = "disputed"

CHANGE_COD_COLLECTION = "cod_collection"
CHANGE_SETTLEMENT = "settlement"
CHANGE_ADJUSTMENT = "adjustment"
CHANGE_DEDUCTION = "deduction"


def _require_cents(amount, *, allow_zero: bool = False) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("amount must be an integer number of cents", {"amount_cents": amount})
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmount("amount must be positive" if not allow_zero else "amount cannot be negative",
                            {"amount_cents": amount})
    return amount


# =============================================================================
# RIDERS
# =============================================================================

def create_rider(*, name: str, phone: str) -> Rider:
    if not name or not phone:
        raise ValidationError("rider name and phone are required")

    def _op() -> Rider:
        if db.session.query(Rider.id).filter_by(phone=phone).first():
            raise ValidationError(f"rider with phone {phone} already exists")
        rider = Rider(name=name, phone=phone)
        db.session.add(rider)
        db.session.flush()
        return rider

    return run_with_retry(_op)


def get_rider(rider_id: int) -> Rider:
    rider = db.session.get(Rider, rider_id)
    if rider is None:
        raise NotFound("rider", rider_id)
    return rider


def lock_rider(rider_id: int) -> Rider:
    rider = lock_for_update(db.session.query(Rider).filter_by(id=rider_id)).populate_existing().first()
    if rider is None:
        raise NotFound("rider", rider_id)
    return rider


def _log_balance(
    rider: Rider,
    change_type: str,
    amount_cents: int,
    before: int,
    after: int,
    *,
    balance_kind: str = "cash",
    order_id: int | None = None,
    settlement_id: int | None = None,
    note: str | None = None,
    actor_id: int | None = None,
) -> RiderBalanceLog:
    log = RiderBalanceLog(
        rider_id=rider.id,
        change_type=change_type,
        balance_kind=balance_kind,
        amount_cents=amount_cents,
        balance_before_cents=before,
        balance_after_cents=after,
        order_id=order_id,
        settlement_id=settlement_id,
        note=note,
        actor_id=actor_id,
    )
    db.session.add(log)
    return log


def record_cod_collection_locked(
    rider_id: int,
    amount_cents: int,
    *,
    order_id: int | None = None,
    actor_id: int | None = None,
) -> Rider:
    """Credit COD the rider collected to their cash in hand."""
    _require_cents(amount_cents)
    rider = lock_rider(rider_id)
    before = rider.cash_in_hand_cents
    rider.cash_in_hand_cents = before + amount_cents
    _log_balance(
        rider, CHANGE_COD_COLLECTION, amount_cents, before, rider.cash_in_hand_cents,
        order_id=order_id, actor_id=actor_id,
    )
    return rider


def adjust_rider_wallet(rider_id: int, amount_cents: int, *, reason: str, actor_id: int) -> Rider:
    """Manual wallet credit (positive) or debit (negative), e.g. bonuses."""
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents == 0:
        raise InvalidAmount("amount must be a non-zero integer", {"amount_cents": amount_cents})
    if not reason:
        raise ValidationError("reason is required")

    def _op() -> Rider:
        rider = lock_rider(rider_id)
        before = rider.wallet_balance_cents
        rider.wallet_balance_cents = before + amount_cents
        _log_balance(
            rider, CHANGE_ADJUSTMENT, amount_cents, before, rider.wallet_balance_cents,
            balance_kind="wallet", note=reason, actor_id=actor_id,
        )
        return rider

    return run_with_retry(_op)


# =============================================================================
# SETTLEMENTS
# =============================================================================

def _orders_in_scope(rider_id: int, settlement_date: date, *, lock: bool = False) -> list[Order]:
    start, end = day_bounds(settlement_date)
    query = db.session.query(Order).filter(
        Order.rider_id == rider_id,
        Order.status == STATUS_DELIVERED,
        Order.delivered_at >= start,
        Order.delivered_at < end,
        Order.is_settled.is_(False),
    ).order_by(Order.id)
    if lock:
        query = lock_for_update(query).populate_existing()
    return query.all()


def _apply_scope(settlement: RiderSettlement, orders: list[Order]) -> None:
    settlement.total_orders = len(orders)
    settlement.total_cod_expected_cents = sum(order.cod_due_cents for order in orders)
    settlement.total_cod_collected_cents = sum(order.cod_collected_cents for order in orders)


def init_rider_settlement(rider_id: int, settlement_date: date, *, actor_id: int | None = None) -> RiderSettlement:
    """
    Return the rider's settlement for the date, creating a pending one if
    none exists. Calling it twice never creates a duplicate.
    """
    if not isinstance(settlement_date, date):
        raise ValidationError("settlement_date must be a date")

    def _existing() -> RiderSettlement | None:
        return RiderSettlement.query.filter_by(rider_id=rider_id, settlement_date=settlement_date).first()

    def _op() -> RiderSettlement:
        get_rider(rider_id)
        settlement = _existing()
        if settlement is not None:
            return settlement

        settlement = RiderSettlement(
            settlement_number=sequence_service.next_settlement_number(settlement_date),
            rider_id=rider_id,
            settlement_date=settlement_date,
            status=SETTLEMENT_PENDING,
            created_by=actor_id,
        )
        _apply_scope(settlement, _orders_in_scope(rider_id, settlement_date))
        try:
            with db.session.begin_nested():
                db.session.add(settlement)
        except IntegrityError:
            # A concurrent init won the unique (rider, date) race.
            settlement = _existing()
            if settlement is None:
                raise
        return settlement

    return run_with_retry(_op)


def complete_rider_settlement(
    settlement_id: int,
    cash_received_cents: int,
    *,
    actor_id: int,
    deduct_from_wallet: bool = False,
    notes: str | None = None,
) -> RiderSettlement:
    """
    Reconcile cash handed over against expected COD.

    The in-scope orders are re-read under lock, so deliveries recorded after
    init are included. Raises AlreadyProcessed for a completed settlement.
    """
    _require_cents(cash_received_cents, allow_zero=True)

    def _op() -> RiderSettlement:
        settlement = lock_for_update(
            db.session.query(RiderSettlement).filter_by(id=settlement_id)
        ).populate_existing().first()
        if settlement is None:
            raise NotFound("settlement", settlement_id)
        if settlement.status == SETTLEMENT_COMPLETED:
            raise AlreadyProcessed(
                f"settlement {settlement.settlement_number} is already completed",
                {"settlement_id": settlement.id},
            )

        rider = lock_rider(settlement.rider_id)
        orders = _orders_in_scope(settlement.rider_id, settlement.settlement_date, lock=True)
        _apply_scope(settlement, orders)

        shortage = settlement.total_cod_expected_cents - cash_received_cents
        settlement.cash_received_cents = cash_received_cents
        settlement.shortage_cents = shortage
        if notes:
            settlement.notes = notes

        if shortage > 0 and not deduct_from_wallet:
            settlement.status = SETTLEMENT_DISPUTED
            logger.warning(
                "settlement %s disputed: expected %d, received %d",
                settlement.settlement_number, settlement.total_cod_expected_cents, cash_received_cents,
            )
            return settlement

        if shortage > 0:
            before = rider.wallet_balance_cents
            rider.wallet_balance_cents = before - shortage
            rider.total_shortage_cents += shortage
            settlement.shortage_deducted_from_wallet = True
            _log_balance(
                rider, CHANGE_DEDUCTION, -shortage, before, rider.wallet_balance_cents,
                balance_kind="wallet", settlement_id=settlement.id, actor_id=actor_id,
                note=f"shortage on {settlement.settlement_number}",
            )

        cash_before = rider.cash_in_hand_cents
        rider.cash_in_hand_cents = cash_before - cash_received_cents
        _log_balance(
            rider, CHANGE_SETTLEMENT, -cash_received_cents, cash_before, rider.cash_in_hand_cents,
            settlement_id=settlement.id, actor_id=actor_id,
        )

        for order in orders:
            order.is_settled = True
            order.rider_settlement_id = settlement.id

        settlement.status = SETTLEMENT_COMPLETED
        settlement.settled_by = actor_id
        settlement.settled_at = utcnow()
        db.session.flush()

        events.emit(
            "settlement.completed",
            settlement_id=settlement.id,
            rider_id=rider.id,
            expected_cents=settlement.total_cod_expected_cents,
            received_cents=cash_received_cents,
            shortage_cents=shortage,
        )
        return settlement

    return run_with_retry(_op)


def get_settlement(settlement_id: int) -> RiderSettlement:
    settlement = db.session.get(RiderSettlement, settlement_id)
    if settlement is None:
        raise NotFound("settlement", settlement_id)
    return settlement


def list_settlements(*, rider_id: int | None = None, status: str | None = None) -> list[RiderSettlement]:
    query = RiderSettlement.query
    if rider_id is not None:
        query = query.filter_by(rider_id=rider_id)
    if status is not None:
        query = query.filter_by(status=status)
    return query.order_by(RiderSettlement.settlement_date.desc(), RiderSettlement.id.desc()).all()
