import pytest
from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value

from ordercore.errors import (
    AlreadyProcessed,
    ImmutableRecordError,
    InsufficientStock,
    InvalidAmount,
    NotFound,
    ValidationError,
)
from ordercore.extensions import db
from ordercore.models import Order, OrderPayment, StockVariant, Vendor
from ordercore.services import inventory_service, payment_service, vendor_service
from ordercore.services.payment_service import PAYMENT_STATUS_PAID, PAYMENT_STATUS_PARTIAL
from ordercore.time_utils import utcnow


# =============================================================================
# VENDOR PAYABLES
# =============================================================================

def test_vendor_adjustments_keep_running_balance(vendor, actor_id):
    vendor_service.adjust_vendor_balance(vendor.id, 500, "purchase", actor_id=actor_id)
    vendor_service.adjust_vendor_balance(vendor.id, 200, "payment", actor_id=actor_id)
    entry = vendor_service.adjust_vendor_balance(vendor.id, 100, "purchase_return", actor_id=actor_id)

    v = db.session.get(Vendor, vendor.id)
    assert v.balance_cents == 1000 + 500 - 200 - 100
    assert entry.running_balance_cents == v.balance_cents
    assert v.total_purchases_cents == 1500
    assert v.total_payments_cents == 200
    assert v.total_returns_cents == 100

    ledger = vendor_service.get_vendor_ledger(vendor.id)
    assert len(ledger) == 4


def test_vendor_adjust_validates_before_mutating(vendor, actor_id):
    with pytest.raises(ValidationError):
        vendor_service.adjust_vendor_balance(vendor.id, 100, "gift", actor_id=actor_id)
    with pytest.raises(InvalidAmount):
        vendor_service.adjust_vendor_balance(vendor.id, 0, "purchase", actor_id=actor_id)
    assert db.session.get(Vendor, vendor.id).balance_cents == 1000


def test_record_purchase_books_stock_and_payable_once(vendor, variant, actor_id):
    result = vendor_service.record_purchase(
        vendor_id=vendor.id, variant_id=variant.id, quantity=4, unit_cost_cents=250, actor_id=actor_id,
    )
    assert result["movement"].quantity == 4
    assert db.session.get(StockVariant, variant.id).on_hand == 14
    assert db.session.get(Vendor, vendor.id).balance_cents == 2000
    assert len(vendor_service.get_vendor_ledger(vendor.id)) == 2


def test_purchase_return_moves_stock_and_payable_together(vendor, variant, actor_id):
    result = vendor_service.record_purchase_return(
        vendor_id=vendor.id, variant_id=variant.id, quantity=3, unit_cost_cents=200, actor_id=actor_id,
    )
    assert result["movement"].movement_type == "vendor_return"
    assert result["movement"].quantity == -3
    assert result["ledger_entry"].entry_type == "purchase_return"
    assert result["ledger_entry"].credit_cents == 600

    assert db.session.get(StockVariant, variant.id).on_hand == 7
    v = db.session.get(Vendor, vendor.id)
    assert v.balance_cents == 400
    assert v.total_returns_cents == 600
    assert inventory_service.audit_variant(variant.id)["ok"] is True


def test_purchase_return_cannot_take_reserved_units(vendor, variant, local_order, actor_id):
    # local_order holds 2 of the 10 units
    with pytest.raises(InsufficientStock):
        vendor_service.record_purchase_return(
            vendor_id=vendor.id, variant_id=variant.id, quantity=9, unit_cost_cents=200, actor_id=actor_id,
        )
    assert db.session.get(StockVariant, variant.id).on_hand == 10
    assert db.session.get(Vendor, vendor.id).balance_cents == 1000
    assert len(vendor_service.get_vendor_ledger(vendor.id)) == 1


def test_purchase_return_rolls_back_stock_when_vendor_is_missing(variant, actor_id):
    with pytest.raises(NotFound):
        vendor_service.record_purchase_return(
            vendor_id=424242, variant_id=variant.id, quantity=1, unit_cost_cents=200, actor_id=actor_id,
        )
    assert db.session.get(StockVariant, variant.id).on_hand == 10


def test_vendor_ledger_entries_are_append_only(vendor):
    entry = vendor_service.get_vendor_ledger(vendor.id)[0]
    entry.debit_cents = 1
    with pytest.raises(ImmutableRecordError):
        db.session.flush()
    db.session.rollback()


# =============================================================================
# ADVANCE PAYMENTS
# =============================================================================

def test_advance_payments_update_paid_and_status(local_order, actor_id):
    payment_service.record_advance_payment(local_order.id, 400, "esewa", actor_id=actor_id)
    order = db.session.get(Order, local_order.id)
    assert order.paid_amount_cents == 400
    assert order.payment_status == PAYMENT_STATUS_PARTIAL
    assert order.cod_due_cents == 600

    payment_service.record_advance_payment(local_order.id, 600, "cash", actor_id=actor_id)
    order = db.session.get(Order, local_order.id)
    assert order.payment_status == PAYMENT_STATUS_PAID
    assert order.cod_due_cents == 0


def test_overpayment_is_rejected(local_order, actor_id):
    payment_service.record_advance_payment(local_order.id, 900, "cash", actor_id=actor_id)
    with pytest.raises(InvalidAmount) as excinfo:
        payment_service.record_advance_payment(local_order.id, 200, "cash", actor_id=actor_id)
    assert excinfo.value.details["remaining_cents"] == 100
    assert db.session.get(Order, local_order.id).paid_amount_cents == 900


def test_payment_rejects_bad_input(local_order, actor_id):
    with pytest.raises(ValidationError):
        payment_service.record_advance_payment(local_order.id, 100, "bitcoin", actor_id=actor_id)
    with pytest.raises(InvalidAmount):
        payment_service.record_advance_payment(local_order.id, -5, "cash", actor_id=actor_id)


def test_void_payment_recomputes_paid(local_order, actor_id):
    payment = payment_service.record_advance_payment(local_order.id, 300, "cash", actor_id=actor_id)
    payment_service.void_payment(payment.id, actor_id=actor_id, reason="duplicate entry")

    order = db.session.get(Order, local_order.id)
    assert order.paid_amount_cents == 0
    assert payment_service.get_order_payments(local_order.id) == []
    assert len(payment_service.get_order_payments(local_order.id, include_voided=True)) == 1

    with pytest.raises(AlreadyProcessed):
        payment_service.void_payment(payment.id, actor_id=actor_id, reason="again")


def test_void_payment_reads_current_row_not_session_copy(local_order, actor_id):
    payment = payment_service.record_advance_payment(local_order.id, 300, "cash", actor_id=actor_id)
    # another writer voids the row; the session still holds the unvoided copy
    db.session.execute(
        update(OrderPayment)
        .where(OrderPayment.id == payment.id)
        .values(voided_at=utcnow(), voided_by=99, void_reason="voided elsewhere")
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    set_committed_value(payment, "voided_at", None)
    assert payment.voided_at is None

    with pytest.raises(AlreadyProcessed):
        payment_service.void_payment(payment.id, actor_id=actor_id, reason="duplicate entry")
    assert db.session.get(OrderPayment, payment.id).void_reason == "voided elsewhere"


def test_payment_amount_cannot_be_edited(local_order, actor_id):
    payment = payment_service.record_advance_payment(local_order.id, 300, "cash", actor_id=actor_id)
    payment.amount_cents = 10
    with pytest.raises(ImmutableRecordError):
        db.session.flush()
    db.session.rollback()
