from __future__ import annotations

from ..extensions import db
from ordercore.time_utils import to_utc_z


class Customer(db.Model):
    """Customer resolved by phone during lead conversion."""
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("phone", name="uq_customers_phone"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, default="Unknown")
    phone = db.Column(db.String(32), nullable=False)
    address = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Customer id={self.id} phone={self.phone!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "created_at": to_utc_z(self.created_at),
        }


# =============================================================================
# VENDOR PAYABLES
# =============================================================================

class Vendor(db.Model):
    """
    Supplier with a payable balance.

    balance_cents is what we owe the vendor. Only
    vendor_service.adjust_vendor_balance writes it (row lock + ledger entry).
    """
    __tablename__ = "vendors"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_vendors_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    total_purchases_cents = db.Column(db.Integer, nullable=False, default=0)
    total_returns_cents = db.Column(db.Integer, nullable=False, default=0)
    total_payments_cents = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Vendor id={self.id} name={self.name!r} balance_cents={self.balance_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "balance_cents": self.balance_cents,
            "total_purchases_cents": self.total_purchases_cents,
            "total_returns_cents": self.total_returns_cents,
            "total_payments_cents": self.total_payments_cents,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class VendorLedgerEntry(db.Model):
    """Append-only debit/credit against a vendor with the balance after it."""
    __tablename__ = "vendor_ledger_entries"
    __table_args__ = (
        db.Index("ix_vendor_ledger_vendor_created", "vendor_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)

    # purchase | purchase_return | payment
    entry_type = db.Column(db.String(32), nullable=False)

    # Increase of what we owe (purchase)
    debit_cents = db.Column(db.Integer, nullable=False, default=0)
    # Decrease of what we owe (purchase_return, payment)
    credit_cents = db.Column(db.Integer, nullable=False, default=0)
    running_balance_cents = db.Column(db.Integer, nullable=False)

    reference = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    vendor = db.relationship("Vendor", backref=db.backref("ledger_entries", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "entry_type": self.entry_type,
            "debit_cents": self.debit_cents,
            "credit_cents": self.credit_cents,
            "running_balance_cents": self.running_balance_cents,
            "reference": self.reference,
            "note": self.note,
            "actor_id": self.actor_id,
            "created_at": to_utc_z(self.created_at),
        }


# =============================================================================
# RIDERS
# =============================================================================

class Rider(db.Model):
    """
    Delivery rider.

    cash_in_hand_cents: COD collected and not yet handed to the hub.
    wallet_balance_cents: rider's wallet; shortages may be deducted from it
    and it may go negative (the rider owes the business).
    duty_status / last_known_location are opaque signals recorded as-is.
    """
    __tablename__ = "riders"
    __table_args__ = (
        db.UniqueConstraint("phone", name="uq_riders_phone"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=False)

    cash_in_hand_cents = db.Column(db.Integer, nullable=False, default=0)
    wallet_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    total_shortage_cents = db.Column(db.Integer, nullable=False, default=0)

    duty_status = db.Column(db.String(32), nullable=True)
    last_known_location = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Rider id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "cash_in_hand_cents": self.cash_in_hand_cents,
            "wallet_balance_cents": self.wallet_balance_cents,
            "total_shortage_cents": self.total_shortage_cents,
            "duty_status": self.duty_status,
            "last_known_location": self.last_known_location,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class RiderBalanceLog(db.Model):
    """Append-only trail of every rider cash / wallet change."""
    __tablename__ = "rider_balance_logs"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    rider_id = db.Column(db.Integer, db.ForeignKey("riders.id"), nullable=False, index=True)

    # cod_collection | settlement | adjustment | deduction
    change_type = db.Column(db.String(32), nullable=False)
    # cash | wallet
    balance_kind = db.Column(db.String(16), nullable=False, default="cash")
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_before_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    settlement_id = db.Column(db.Integer, db.ForeignKey("rider_settlements.id"), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rider_id": self.rider_id,
            "change_type": self.change_type,
            "balance_kind": self.balance_kind,
            "amount_cents": self.amount_cents,
            "balance_before_cents": self.balance_before_cents,
            "balance_after_cents": self.balance_after_cents,
            "order_id": self.order_id,
            "settlement_id": self.settlement_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
