from __future__ import annotations

from ..extensions import db
from ordercore.time_utils import to_utc_z


class Lead(db.Model):
    """
    Prospective sale captured at intake.

    customer_snapshot and items hold validated, versioned payloads produced by
    services.lead_service (CustomerSnapshot / LeadItem); raw request bags are
    never stored.
    """
    __tablename__ = "leads"
    __table_args__ = (
        db.Index("ix_leads_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # INTAKE | FOLLOW_UP | BUSY | CANCELLED | CONVERTED
    status = db.Column(db.String(16), nullable=False, default="INTAKE", index=True)

    # inside_local_delivery | outside_courier_delivery | point_of_sale
    fulfillment_type = db.Column(db.String(32), nullable=False, default="inside_local_delivery")

    customer_snapshot = db.Column(db.JSON, nullable=False)
    items = db.Column(db.JSON, nullable=False, default=list)

    assigned_to = db.Column(db.Integer, nullable=True, index=True)
    follow_up_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    converted_order_id = db.Column(db.Integer, db.ForeignKey("orders.id", use_alter=True), nullable=True)
    converted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
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
        return f"<Lead id={self.id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "fulfillment_type": self.fulfillment_type,
            "customer_snapshot": self.customer_snapshot,
            "items": self.items,
            "assigned_to": self.assigned_to,
            "follow_up_at": to_utc_z(self.follow_up_at),
            "notes": self.notes,
            "converted_order_id": self.converted_order_id,
            "converted_at": to_utc_z(self.converted_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
