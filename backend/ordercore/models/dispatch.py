from __future__ import annotations

from ..extensions import db
from ordercore.time_utils import to_utc_z


class Manifest(db.Model):
    """
    A batch of orders handed to one rider (rider run) or one courier partner
    (courier handover).

    Counters are running totals maintained by dispatch_service as outcomes are
    recorded; they are never recomputed from scratch.
    """
    __tablename__ = "manifests"
    __table_args__ = (
        db.UniqueConstraint("manifest_code", name="uq_manifests_code"),
        db.CheckConstraint(
            "(manifest_type = 'rider' AND rider_id IS NOT NULL) OR "
            "(manifest_type = 'courier' AND courier_partner IS NOT NULL)",
            name="ck_manifests_carrier",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    manifest_code = db.Column(db.String(32), nullable=False)

    # rider | courier
    manifest_type = db.Column(db.String(16), nullable=False)
    rider_id = db.Column(db.Integer, db.ForeignKey("riders.id"), nullable=True, index=True)
    courier_partner = db.Column(db.String(64), nullable=True)

    # open | out_for_delivery | handed_over | partially_settled | settled | cancelled
    status = db.Column(db.String(24), nullable=False, default="open", index=True)

    total_orders = db.Column(db.Integer, nullable=False, default=0)
    delivered_count = db.Column(db.Integer, nullable=False, default=0)
    returned_count = db.Column(db.Integer, nullable=False, default=0)
    rescheduled_count = db.Column(db.Integer, nullable=False, default=0)
    lost_count = db.Column(db.Integer, nullable=False, default=0)

    total_cod_expected_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cod_collected_cents = db.Column(db.Integer, nullable=False, default=0)
    cash_received_cents = db.Column(db.Integer, nullable=True)
    variance_cents = db.Column(db.Integer, nullable=True)
    collection_variance_cents = db.Column(db.Integer, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_by = db.Column(db.Integer, nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settlement_notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    items = db.relationship("ManifestItem", back_populates="manifest", order_by="ManifestItem.id", lazy=True)
    rider = db.relationship("Rider")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def pending_count(self) -> int:
        return sum(1 for item in self.items if item.outcome == "pending")

    def __repr__(self) -> str:
        return f"<Manifest id={self.id} code={self.manifest_code!r} status={self.status}>"

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "manifest_code": self.manifest_code,
            "manifest_type": self.manifest_type,
            "rider_id": self.rider_id,
            "courier_partner": self.courier_partner,
            "status": self.status,
            "total_orders": self.total_orders,
            "delivered_count": self.delivered_count,
            "returned_count": self.returned_count,
            "rescheduled_count": self.rescheduled_count,
            "lost_count": self.lost_count,
            "total_cod_expected_cents": self.total_cod_expected_cents,
            "total_cod_collected_cents": self.total_cod_collected_cents,
            "cash_received_cents": self.cash_received_cents,
            "variance_cents": self.variance_cents,
            "collection_variance_cents": self.collection_variance_cents,
            "created_by": self.created_by,
            "dispatched_at": to_utc_z(self.dispatched_at),
            "settled_by": self.settled_by,
            "settled_at": to_utc_z(self.settled_at),
            "settlement_notes": self.settlement_notes,
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class ManifestItem(db.Model):
    """One order's seat on a manifest, with its delivery outcome."""
    __tablename__ = "manifest_items"
    __table_args__ = (
        db.UniqueConstraint("manifest_id", "order_id", name="uq_manifest_items_manifest_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    manifest_id = db.Column(db.Integer, db.ForeignKey("manifests.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    outcome = db.Column(db.String(24), nullable=False, default="pending")
    cod_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    cod_collected_cents = db.Column(db.Integer, nullable=False, default=0)
    attempt_number = db.Column(db.Integer, nullable=False, default=1)
    proof_reference = db.Column(db.String(255), nullable=True)
    outcome_notes = db.Column(db.String(255), nullable=True)
    outcome_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    manifest = db.relationship("Manifest", back_populates="items")
    order = db.relationship("Order")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "manifest_id": self.manifest_id,
            "order_id": self.order_id,
            "outcome": self.outcome,
            "cod_amount_cents": self.cod_amount_cents,
            "cod_collected_cents": self.cod_collected_cents,
            "attempt_number": self.attempt_number,
            "proof_reference": self.proof_reference,
            "outcome_notes": self.outcome_notes,
            "outcome_at": to_utc_z(self.outcome_at),
        }


class RiderSettlement(db.Model):
    """
    Daily cash reconciliation for one rider.

    One row per (rider_id, settlement_date); init_rider_settlement relies on
    the unique constraint for idempotence.
    """
    __tablename__ = "rider_settlements"
    __table_args__ = (
        db.UniqueConstraint("rider_id", "settlement_date", name="uq_rider_settlements_rider_date"),
        db.UniqueConstraint("settlement_number", name="uq_rider_settlements_number"),
        db.CheckConstraint("total_cod_expected_cents >= 0", name="ck_rider_settlements_expected_nonneg"),
        db.CheckConstraint(
            "cash_received_cents IS NULL OR cash_received_cents >= 0",
            name="ck_rider_settlements_received_nonneg",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    settlement_number = db.Column(db.String(32), nullable=False)
    rider_id = db.Column(db.Integer, db.ForeignKey("riders.id"), nullable=False, index=True)
    settlement_date = db.Column(db.Date, nullable=False)

    total_orders = db.Column(db.Integer, nullable=False, default=0)
    total_cod_expected_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cod_collected_cents = db.Column(db.Integer, nullable=False, default=0)
    cash_received_cents = db.Column(db.Integer, nullable=True)
    shortage_cents = db.Column(db.Integer, nullable=True)
    shortage_deducted_from_wallet = db.Column(db.Boolean, nullable=False, default=False)

    # pending | completed | disputed
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=True)
    settled_by = db.Column(db.Integer, nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    rider = db.relationship("Rider", backref=db.backref("settlements", lazy=True))

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<RiderSettlement id={self.id} rider_id={self.rider_id} date={self.settlement_date} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "settlement_number": self.settlement_number,
            "rider_id": self.rider_id,
            "settlement_date": self.settlement_date.isoformat() if self.settlement_date else None,
            "total_orders": self.total_orders,
            "total_cod_expected_cents": self.total_cod_expected_cents,
            "total_cod_collected_cents": self.total_cod_collected_cents,
            "cash_received_cents": self.cash_received_cents,
            "shortage_cents": self.shortage_cents,
            "shortage_deducted_from_wallet": self.shortage_deducted_from_wallet,
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "settled_by": self.settled_by,
            "settled_at": to_utc_z(self.settled_at),
            "created_at": to_utc_z(self.created_at),
        }
