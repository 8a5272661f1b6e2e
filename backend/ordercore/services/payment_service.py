# Overview: Service-layer operations for customer advance payments against orders.

"""
Advance Payments

WHY: Customers often pay part of an order up front (wallets, bank transfer)
and the rider collects the rest as COD. The amount still due drives every
COD expectation downstream, so paid_amount must always equal the sum of live
payments and never exceed the order total.

DESIGN:
- Payment rows are immutable; mistakes are voided, never edited or deleted.
- paid_amount_cents / payment_status are DERIVED: recomputed from the
  non-voided rows after every insert or void, inside the same unit of work
  with the order row locked.
- Overpayment is rejected before anything is written (InvalidAmount).
"""

from __future__ import annotations

from sqlalchemy import func

from ..errors import AlreadyProcessed, InvalidAmount, NotFound, ValidationError
from ..extensions import db
from ..models import Order, OrderPayment
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry


# =============================================================================
# PAYMENT CONSTANTS
# =============================================================================

VALID_METHODS = ("esewa", "khalti", "ime_pay", "fonepay", "bank", "cash")

# Value of goods handed back in an exchange, credited to the replacement order.
# Only written by record_exchange_credit_locked, never accepted from callers.
METHOD_EXCHANGE_CREDIT = "exchange_credit"

PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_PARTIAL = "partial"
PAYMENT_STATUS_PAID = "paid"


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).populate_existing().first()
    if order is None:
        raise NotFound("order", order_id)
    return order


def _live_payment_total(order_id: int) -> int:
    total = db.session.query(
        func.coalesce(func.sum(OrderPayment.amount_cents), 0)
    ).filter(
        OrderPayment.order_id == order_id,
        OrderPayment.voided_at.is_(None),
    ).scalar()
    return int(total or 0)


def payment_status_for(paid_cents: int, total_cents: int) -> str:
    if paid_cents <= 0:
        return PAYMENT_STATUS_PENDING
    if paid_cents < total_cents:
        return PAYMENT_STATUS_PARTIAL
    return PAYMENT_STATUS_PAID


def _refresh_order_totals(order: Order) -> None:
    paid = _live_payment_total(order.id)
    if paid > order.total_amount_cents:
        raise InvalidAmount(
            "payments exceed the order total",
            {"paid_amount_cents": paid, "total_amount_cents": order.total_amount_cents},
        )
    order.paid_amount_cents = paid
    order.payment_status = payment_status_for(paid, order.total_amount_cents)


def record_advance_payment(
    order_id: int,
    amount_cents: int,
    method: str,
    *,
    actor_id: int,
    proof_reference: str | None = None,
    transaction_reference: str | None = None,
) -> OrderPayment:
    """
    Record an advance payment and recompute the order's paid total.

    Raises:
        ValidationError: unknown method
        InvalidAmount: non-positive amount, or it would overpay the order
        NotFound: order does not exist
    """
    if method not in VALID_METHODS:
        raise ValidationError(f"invalid payment method: {method}", {"allowed": list(VALID_METHODS)})
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmount("payment amount must be a positive integer", {"amount_cents": amount_cents})

    def _op() -> OrderPayment:
        order = _lock_order(order_id)
        remaining = order.total_amount_cents - _live_payment_total(order.id)
        if amount_cents > remaining:
            raise InvalidAmount(
                "payment exceeds the remaining balance",
                {"amount_cents": amount_cents, "remaining_cents": max(remaining, 0)},
            )

        payment = OrderPayment(
            order_id=order.id,
            method=method,
            amount_cents=amount_cents,
            proof_reference=proof_reference,
            transaction_reference=transaction_reference,
            recorded_by=actor_id,
        )
        db.session.add(payment)
        db.session.flush()

        _refresh_order_totals(order)
        return payment

    return run_with_retry(_op)


def record_exchange_credit_locked(
    order: Order,
    amount_cents: int,
    *,
    actor_id: int | None,
    reference: str | None = None,
) -> OrderPayment:
    """Credit returned goods against a replacement order. Caller holds the order lock."""
    payment = OrderPayment(
        order_id=order.id,
        method=METHOD_EXCHANGE_CREDIT,
        amount_cents=amount_cents,
        transaction_reference=reference,
        recorded_by=actor_id,
    )
    db.session.add(payment)
    db.session.flush()
    _refresh_order_totals(order)
    return payment


def void_payment(payment_id: int, *, actor_id: int, reason: str) -> OrderPayment:
    """Void a payment (kept for audit) and recompute the order's paid total."""
    if not reason or not reason.strip():
        raise ValidationError("void reason is required")

    def _op() -> OrderPayment:
        payment = lock_for_update(db.session.query(OrderPayment).filter_by(id=payment_id)).populate_existing().first()
        if payment is None:
            raise NotFound("payment", payment_id)
        if payment.voided_at is not None:
            raise AlreadyProcessed(f"payment {payment_id} already voided", {"payment_id": payment_id})

        order = _lock_order(payment.order_id)
        payment.voided_at = utcnow()
        payment.voided_by = actor_id
        payment.void_reason = reason.strip()
        db.session.flush()

        _refresh_order_totals(order)
        return payment

    return run_with_retry(_op)


def get_order_payments(order_id: int, *, include_voided: bool = False) -> list[OrderPayment]:
    query = OrderPayment.query.filter_by(order_id=order_id)
    if not include_voided:
        query = query.filter(OrderPayment.voided_at.is_(None))
    return query.order_by(OrderPayment.id).all()
