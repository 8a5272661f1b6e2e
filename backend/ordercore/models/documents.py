from __future__ import annotations

from ..extensions import db
from ordercore.time_utils import to_utc_z


# =============================================================================
# RETURN QC
# =============================================================================

class ReturnSettlement(db.Model):
    """
    Quality-check record for one returned order item.

    Written by the Return/RTO pipeline when physical goods are inspected;
    stock_movement_id links to the restock (or damage) movement, if any.
    """
    __tablename__ = "return_settlements"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("stock_variants.id"), nullable=False)

    # good | damaged | missing | wrong_item
    condition = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    restocked = db.Column(db.Boolean, nullable=False, default=False)
    restocked_to_damaged = db.Column(db.Boolean, nullable=False, default=False)

    stock_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)
    inspected_by = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
            "variant_id": self.variant_id,
            "condition": self.condition,
            "quantity": self.quantity,
            "restocked": self.restocked,
            "restocked_to_damaged": self.restocked_to_damaged,
            "stock_movement_id": self.stock_movement_id,
            "inspected_by": self.inspected_by,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


# =============================================================================
# ARCHIVE
# =============================================================================

class ArchiveRecord(db.Model):
    """Immutable snapshot of a terminal Lead or Order."""
    __tablename__ = "archive_records"
    __table_args__ = (
        db.UniqueConstraint("entity_type", "entity_id", name="uq_archive_records_entity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    # lead | order
    entity_type = db.Column(db.String(16), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    snapshot = db.Column(db.JSON, nullable=False)
    reason = db.Column(db.String(64), nullable=False)
    archived_by = db.Column(db.Integer, nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "snapshot": self.snapshot,
            "reason": self.reason,
            "archived_by": self.archived_by,
            "archived_at": to_utc_z(self.archived_at),
        }


# =============================================================================
# HUMAN-READABLE CODES
# =============================================================================

class DocumentSequence(db.Model):
    """
    Atomic per-key counters for human-readable codes.

    sequence_key is the document type plus any period component, e.g.
    "ORD", "RUN-260129", "STL-20260129".
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("sequence_key", name="uq_doc_sequences_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sequence_key = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sequence_key": self.sequence_key,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
