from __future__ import annotations

from ..extensions import db
from ordercore.time_utils import to_utc_z


class StockVariant(db.Model):
    """
    A sellable SKU variant and its three stock counters.

    COUNTERS:
    - on_hand:  physical units in the building
    - reserved: units held for unfulfilled orders (subset of on_hand)
    - damaged:  quarantined units, never sellable, never part of on_hand

    Counters are mutated ONLY through services.inventory_service, which locks
    the row and writes a StockMovement for every delta. The CHECK constraints
    below are the last line of defense; tripping one is an internal error.
    """
    __tablename__ = "stock_variants"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_stock_variants_sku"),
        db.CheckConstraint("on_hand >= 0", name="ck_stock_variants_on_hand_nonneg"),
        db.CheckConstraint("reserved >= 0", name="ck_stock_variants_reserved_nonneg"),
        db.CheckConstraint("reserved <= on_hand", name="ck_stock_variants_reserved_le_on_hand"),
        db.CheckConstraint("damaged >= 0", name="ck_stock_variants_damaged_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    on_hand = db.Column(db.Integer, nullable=False, default=0)
    reserved = db.Column(db.Integer, nullable=False, default=0)
    damaged = db.Column(db.Integer, nullable=False, default=0)

    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)
    selling_price_cents = db.Column(db.Integer, nullable=False, default=0)

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

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    def __repr__(self) -> str:
        return (
            f"<StockVariant id={self.id} sku={self.sku!r} on_hand={self.on_hand} "
            f"reserved={self.reserved} damaged={self.damaged}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "on_hand": self.on_hand,
            "reserved": self.reserved,
            "damaged": self.damaged,
            "available": self.available,
            "cost_price_cents": self.cost_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only record of one counter change on a StockVariant.

    `quantity` is the signed on_hand delta, so SUM(quantity) over a variant's
    movements equals its on_hand. reserved_delta and damaged_delta play the
    same role for the other two counters.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_variant_created", "variant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("stock_variants.id"), nullable=False, index=True)

    # receive | reserve | release | deduct | restock | damage | adjust | vendor_return
    movement_type = db.Column(db.String(16), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_delta = db.Column(db.Integer, nullable=False, default=0)
    damaged_delta = db.Column(db.Integer, nullable=False, default=0)

    on_hand_before = db.Column(db.Integer, nullable=False)
    on_hand_after = db.Column(db.Integer, nullable=False)
    reserved_before = db.Column(db.Integer, nullable=False)
    reserved_after = db.Column(db.Integer, nullable=False)
    damaged_before = db.Column(db.Integer, nullable=False)
    damaged_after = db.Column(db.Integer, nullable=False)

    # Causal reference (order, purchase, manual adjustment ...)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    reference = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    variant = db.relationship("StockVariant", backref=db.backref("movements", lazy="dynamic"))

    def __repr__(self) -> str:
        return f"<StockMovement id={self.id} variant_id={self.variant_id} type={self.movement_type} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "reserved_delta": self.reserved_delta,
            "damaged_delta": self.damaged_delta,
            "on_hand_before": self.on_hand_before,
            "on_hand_after": self.on_hand_after,
            "reserved_before": self.reserved_before,
            "reserved_after": self.reserved_after,
            "damaged_before": self.damaged_before,
            "damaged_after": self.damaged_after,
            "order_id": self.order_id,
            "reference": self.reference,
            "note": self.note,
            "actor_id": self.actor_id,
            "created_at": to_utc_z(self.created_at),
        }
