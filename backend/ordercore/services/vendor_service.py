# Overview: Service-layer operations for vendor payables; the only writer of vendor balances.

"""
Vendor Payables

WHY: Purchases, purchase returns and payments all move what we owe a vendor.
A plain "read balance, add, write balance" from two requests at once loses one
of the updates, and an extra automatic path (e.g. a receive hook) applying
the same purchase again double-counts it.

DESIGN:
- adjust_vendor_balance is the single write path: lock the vendor row, read,
  compute, write the new balance and a VendorLedgerEntry carrying the running
  balance, all in one unit of work.
- record_purchase receives stock AND adjusts the balance exactly once in the
  same unit; nothing else reacts to the receive. record_purchase_return is
  its mirror: stock leaves on_hand and the payable drops together.
- Ledger entries are append-only (see ordercore.immutability).
"""

from __future__ import annotations

import logging

from ..errors import InvalidAmount, NotFound, ValidationError
from ..extensions import db
from ..models import Vendor, VendorLedgerEntry
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import receive_locked, vendor_return_locked

logger = logging.getLogger(__name__)


# =============================================================================
# ENTRY KINDS
# =============================================================================

KIND_PURCHASE = "purchase"
KIND_PURCHASE_RETURN = "purchase_return"
KIND_PAYMENT = "payment"

VALID_KINDS = (KIND_PURCHASE, KIND_PURCHASE_RETURN, KIND_PAYMENT)


def create_vendor(*, name: str, phone: str | None = None, opening_balance_cents: int = 0) -> Vendor:
    if not name or not name.strip():
        raise ValidationError("vendor name is required")
    if isinstance(opening_balance_cents, bool) or not isinstance(opening_balance_cents, int):
        raise InvalidAmount("opening balance must be an integer", {"opening_balance_cents": opening_balance_cents})
    if opening_balance_cents < 0:
        raise InvalidAmount("opening balance cannot be negative")

    def _op() -> Vendor:
        if db.session.query(Vendor.id).filter_by(name=name.strip()).first():
            raise ValidationError(f"vendor {name!r} already exists")
        vendor = Vendor(name=name.strip(), phone=phone)
        db.session.add(vendor)
        db.session.flush()
        if opening_balance_cents:
            _adjust_locked(vendor.id, opening_balance_cents, KIND_PURCHASE, reference="opening balance")
        return vendor

    return run_with_retry(_op)


def get_vendor(vendor_id: int) -> Vendor:
    vendor = db.session.get(Vendor, vendor_id)
    if vendor is None:
        raise NotFound("vendor", vendor_id)
    return vendor


def _adjust_locked(
    vendor_id: int,
    amount_cents: int,
    kind: str,
    *,
    reference: str | None = None,
    note: str | None = None,
    actor_id: int | None = None,
) -> VendorLedgerEntry:
    if kind not in VALID_KINDS:
        raise ValidationError(f"kind must be one of {VALID_KINDS}", {"kind": kind})
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmount("amount must be a positive integer", {"amount_cents": amount_cents})

    vendor = lock_for_update(db.session.query(Vendor).filter_by(id=vendor_id)).populate_existing().first()
    if vendor is None:
        raise NotFound("vendor", vendor_id)

    if kind == KIND_PURCHASE:
        vendor.balance_cents += amount_cents
        vendor.total_purchases_cents += amount_cents
        debit, credit = amount_cents, 0
    elif kind == KIND_PURCHASE_RETURN:
        vendor.balance_cents -= amount_cents
        vendor.total_returns_cents += amount_cents
        debit, credit = 0, amount_cents
    else:
        vendor.balance_cents -= amount_cents
        vendor.total_payments_cents += amount_cents
        debit, credit = 0, amount_cents

    if vendor.balance_cents < 0:
        logger.info("vendor %s now in credit: balance %d", vendor.id, vendor.balance_cents)

    entry = VendorLedgerEntry(
        vendor_id=vendor.id,
        entry_type=kind,
        debit_cents=debit,
        credit_cents=credit,
        running_balance_cents=vendor.balance_cents,
        reference=reference,
        note=note,
        actor_id=actor_id,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def adjust_vendor_balance(
    vendor_id: int,
    amount_cents: int,
    kind: str,
    *,
    actor_id: int | None = None,
    reference: str | None = None,
    note: str | None = None,
) -> VendorLedgerEntry:
    """
    Atomically move a vendor's payable balance.

    purchase increases what we owe; purchase_return and payment decrease it.
    Returns the ledger entry (its running_balance_cents is the new balance).
    """
    return run_with_retry(lambda: _adjust_locked(
        vendor_id, amount_cents, kind, reference=reference, note=note, actor_id=actor_id,
    ))


def record_purchase(
    *,
    vendor_id: int,
    variant_id: int,
    quantity: int,
    unit_cost_cents: int,
    actor_id: int | None = None,
    reference: str | None = None,
) -> dict:
    """
    Receive purchased stock and book the payable once, in one unit of work.
    """
    if isinstance(unit_cost_cents, bool) or not isinstance(unit_cost_cents, int) or unit_cost_cents <= 0:
        raise InvalidAmount("unit cost must be a positive integer")

    def _op() -> dict:
        movement = receive_locked(
            variant_id, quantity,
            reference=reference or f"vendor:{vendor_id}", actor_id=actor_id,
        )
        entry = _adjust_locked(
            vendor_id, quantity * unit_cost_cents, KIND_PURCHASE,
            reference=reference or f"movement:{movement.id}", actor_id=actor_id,
        )
        return {"movement": movement, "ledger_entry": entry}

    return run_with_retry(_op)


def record_purchase_return(
    *,
    vendor_id: int,
    variant_id: int,
    quantity: int,
    unit_cost_cents: int,
    actor_id: int | None = None,
    reference: str | None = None,
) -> dict:
    """
    Send purchased stock back to the vendor and reduce the payable, in one
    unit of work. Fails with InsufficientStock when the units are not free
    (on hand minus reserved).
    """
    if isinstance(unit_cost_cents, bool) or not isinstance(unit_cost_cents, int) or unit_cost_cents <= 0:
        raise InvalidAmount("unit cost must be a positive integer")

    def _op() -> dict:
        movement = vendor_return_locked(
            variant_id, quantity,
            reference=reference or f"vendor:{vendor_id}", actor_id=actor_id,
        )
        entry = _adjust_locked(
            vendor_id, quantity * unit_cost_cents, KIND_PURCHASE_RETURN,
            reference=reference or f"movement:{movement.id}", actor_id=actor_id,
        )
        logger.info("purchase return to vendor %s: %d x variant %s", vendor_id, quantity, variant_id)
        return {"movement": movement, "ledger_entry": entry}

    return run_with_retry(_op)


def get_vendor_ledger(vendor_id: int, *, limit: int = 100) -> list[VendorLedgerEntry]:
    get_vendor(vendor_id)
    return (
        VendorLedgerEntry.query.filter_by(vendor_id=vendor_id)
        .order_by(VendorLedgerEntry.id.desc())
        .limit(limit)
        .all()
    )
