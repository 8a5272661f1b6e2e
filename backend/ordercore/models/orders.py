from __future__ import annotations

from ..extensions import db
from ordercore.time_utils import to_utc_z


class Order(db.Model):
    """
    A committed sale with a delivery obligation.

    STATUS:
    `status` is only written by services.order_service.change_order_status,
    which runs the (fulfillment_type, status) transition guard and the
    post-transition hooks in the same unit of work.

    STOCK:
    `stock_deducted` flips exactly once, when the order first leaves the
    building. Deduction hooks check it so the same units are never deducted
    twice, however many paths observe the departure.

    MONEY:
    0 <= paid_amount_cents <= total_amount_cents, enforced both in
    payment_service and by CHECK constraints.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_code", name="uq_orders_order_code"),
        db.CheckConstraint("paid_amount_cents >= 0", name="ck_orders_paid_nonneg"),
        db.CheckConstraint("paid_amount_cents <= total_amount_cents", name="ck_orders_paid_le_total"),
        db.CheckConstraint("total_amount_cents >= 0", name="ck_orders_total_nonneg"),
        db.Index("ix_orders_status_fulfillment", "status", "fulfillment_type"),
        db.Index("ix_orders_rider_delivered", "rider_id", "delivered_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_code = db.Column(db.String(32), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id"), nullable=True, index=True)
    parent_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    # inside_local_delivery | outside_courier_delivery | point_of_sale
    fulfillment_type = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(32), nullable=False, default="intake", index=True)
    # lead | redirect | manual | exchange
    source = db.Column(db.String(16), nullable=False, default="lead")

    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    # pending | partial | paid
    payment_status = db.Column(db.String(16), nullable=False, default="pending")
    # cod | prepaid
    payment_method = db.Column(db.String(16), nullable=False, default="cod")

    shipping_name = db.Column(db.String(255), nullable=True)
    shipping_phone = db.Column(db.String(32), nullable=True)
    shipping_address = db.Column(db.String(255), nullable=True)
    shipping_city = db.Column(db.String(128), nullable=True)

    rider_id = db.Column(db.Integer, db.ForeignKey("riders.id"), nullable=True)
    courier_partner = db.Column(db.String(64), nullable=True)
    current_manifest_id = db.Column(db.Integer, db.ForeignKey("manifests.id", use_alter=True), nullable=True, index=True)
    delivery_attempt_count = db.Column(db.Integer, nullable=False, default=0)

    stock_deducted = db.Column(db.Boolean, nullable=False, default=False)

    cod_collected_cents = db.Column(db.Integer, nullable=False, default=0)
    is_settled = db.Column(db.Boolean, nullable=False, default=False)
    rider_settlement_id = db.Column(db.Integer, db.ForeignKey("rider_settlements.id", use_alter=True), nullable=True)

    return_reason = db.Column(db.String(255), nullable=True)
    return_condition = db.Column(db.String(32), nullable=True)
    return_verified_by = db.Column(db.Integer, nullable=True)
    return_notes = db.Column(db.Text, nullable=True)

    packed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    return_received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    returned_at = db.Column(db.DateTime(timezone=True), nullable=True)
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

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    parent_order = db.relationship("Order", remote_side=[id], backref=db.backref("child_orders", lazy=True))
    items = db.relationship("OrderItem", back_populates="order", order_by="OrderItem.id", lazy=True)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def cod_due_cents(self) -> int:
        return max(self.total_amount_cents - self.paid_amount_cents, 0)

    def __repr__(self) -> str:
        return f"<Order id={self.id} code={self.order_code!r} status={self.status} channel={self.fulfillment_type}>"

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_code": self.order_code,
            "customer_id": self.customer_id,
            "lead_id": self.lead_id,
            "parent_order_id": self.parent_order_id,
            "fulfillment_type": self.fulfillment_type,
            "status": self.status,
            "source": self.source,
            "total_amount_cents": self.total_amount_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "shipping_name": self.shipping_name,
            "shipping_phone": self.shipping_phone,
            "shipping_address": self.shipping_address,
            "shipping_city": self.shipping_city,
            "rider_id": self.rider_id,
            "courier_partner": self.courier_partner,
            "current_manifest_id": self.current_manifest_id,
            "delivery_attempt_count": self.delivery_attempt_count,
            "stock_deducted": self.stock_deducted,
            "cod_collected_cents": self.cod_collected_cents,
            "is_settled": self.is_settled,
            "rider_settlement_id": self.rider_settlement_id,
            "return_reason": self.return_reason,
            "return_condition": self.return_condition,
            "return_verified_by": self.return_verified_by,
            "return_notes": self.return_notes,
            "packed_at": to_utc_z(self.packed_at),
            "dispatched_at": to_utc_z(self.dispatched_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "return_received_at": to_utc_z(self.return_received_at),
            "returned_at": to_utc_z(self.returned_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_by": self.created_by,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    A line within an order.

    reserved_quantity tracks how many of this line's units the Inventory
    Ledger currently holds for it (conversion may reserve only part of a line).
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_order_items_reserved_nonneg"),
        db.CheckConstraint("reserved_quantity <= quantity", name="ck_order_items_reserved_le_qty"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("stock_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)

    # none | pending_pickup | picked_up | received_hub | damaged_hub
    return_status = db.Column(db.String(16), nullable=False, default="none")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")
    variant = db.relationship("StockVariant")

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents

    def __repr__(self) -> str:
        return f"<OrderItem id={self.id} order_id={self.order_id} variant_id={self.variant_id} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "line_total_cents": self.line_total_cents,
            "reserved_quantity": self.reserved_quantity,
            "return_status": self.return_status,
            "created_at": to_utc_z(self.created_at),
        }


class OrderActivity(db.Model):
    """Append-only audit trail of status changes and notable order actions."""
    __tablename__ = "order_activities"
    __table_args__ = (
        db.Index("ix_order_activities_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)

    activity_type = db.Column(db.String(32), nullable=False, default="status_change")
    from_status = db.Column(db.String(32), nullable=True)
    to_status = db.Column(db.String(32), nullable=True)
    message = db.Column(db.String(255), nullable=True)

    is_override = db.Column(db.Boolean, nullable=False, default=False)
    override_reason = db.Column(db.String(255), nullable=True)

    actor_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("activities", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "activity_type": self.activity_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "message": self.message,
            "is_override": self.is_override,
            "override_reason": self.override_reason,
            "actor_id": self.actor_id,
            "created_at": to_utc_z(self.created_at),
        }


class OrderPayment(db.Model):
    """
    Advance payment against an order.

    Rows are never deleted. Voiding stamps voided_at; only the void columns
    may change after insert.
    """
    __tablename__ = "order_payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_order_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # esewa | khalti | ime_pay | fonepay | bank | cash | exchange_credit
    method = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    proof_reference = db.Column(db.String(255), nullable=True)
    transaction_reference = db.Column(db.String(128), nullable=True)

    recorded_by = db.Column(db.Integer, nullable=True)

    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_by = db.Column(db.Integer, nullable=True)
    void_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "method": self.method,
            "amount_cents": self.amount_cents,
            "proof_reference": self.proof_reference,
            "transaction_reference": self.transaction_reference,
            "recorded_by": self.recorded_by,
            "voided_at": to_utc_z(self.voided_at),
            "voided_by": self.voided_by,
            "void_reason": self.void_reason,
            "created_at": to_utc_z(self.created_at),
        }
