from __future__ import annotations

from ..extensions import db
from kirana.time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order (document-first, priced once at checkout).

    WHY: The order carries the full priced breakdown that was committed with
    the ledger debits, so later catalog or settings changes never alter it.

    status/updated_at mirror the newest order_status_history row and are only
    written by order_service (and checkout_service for the initial row).
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.CheckConstraint("total_price_cents >= 0", name="ck_orders_total_nonneg"),
        db.CheckConstraint("wallet_payment_cents <= total_price_cents", name="ck_orders_wallet_within_total"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    address_id = db.Column(db.Integer, db.ForeignKey("addresses.id"), nullable=False)

    # Priced breakdown (all paise)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=True, index=True)
    coupon_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    points_used = db.Column(db.Integer, nullable=False, default=0)
    points_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_price_cents = db.Column(db.Integer, nullable=False)
    wallet_payment_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_due_cents = db.Column(db.Integer, nullable=False)

    # Payment (independent axis, admin-managed)
    payment_method = db.Column(db.String(16), nullable=False)  # cod, online
    payment_status = db.Column(db.String(32), nullable=False, default="pending", index=True)

    # Lifecycle
    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    scheduled_delivery = db.Column(db.DateTime(timezone=True), nullable=True)

    # Delivery
    assigned_delivery_boy = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    delivery_accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivery_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Loyalty earned on delivery
    points_earned = db.Column(db.Integer, nullable=True)
    can_return_until = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("orders", lazy=True))
    delivery_agent = db.relationship("User", foreign_keys=[assigned_delivery_boy])
    address = db.relationship("Address")
    coupon = db.relationship("Coupon")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "address_id": self.address_id,
            "subtotal_cents": self.subtotal_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "coupon_id": self.coupon_id,
            "coupon_discount_cents": self.coupon_discount_cents,
            "points_used": self.points_used,
            "points_discount_cents": self.points_discount_cents,
            "total_price_cents": self.total_price_cents,
            "wallet_payment_cents": self.wallet_payment_cents,
            "amount_due_cents": self.amount_due_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "status": self.status,
            "cancel_reason": self.cancel_reason,
            "scheduled_delivery": to_utc_z(self.scheduled_delivery),
            "assigned_delivery_boy": self.assigned_delivery_boy,
            "delivery_accepted_at": to_utc_z(self.delivery_accepted_at),
            "delivery_started_at": to_utc_z(self.delivery_started_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "points_earned": self.points_earned,
            "can_return_until": to_utc_z(self.can_return_until),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderItem(db.Model):
    """
    Line item snapshot.

    product_id/variant_id point into the catalog collaborator; the price and
    name are copied at order time and never re-read.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=True)
    variant_id = db.Column(db.Integer, nullable=True)
    name = db.Column(db.String(255), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("items", lazy=True, order_by="OrderItem.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "created_at": to_utc_z(self.created_at),
        }


class OrderNote(db.Model):
    """Customer note attached 1:1 to an order, with an optional admin reply."""
    __tablename__ = "order_notes"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_order_notes_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    user_note = db.Column(db.Text, nullable=True)
    admin_reply = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    order = db.relationship("Order", backref=db.backref("note", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_note": self.user_note,
            "admin_reply": self.admin_reply,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderStatusHistory(db.Model):
    """
    Append-only order timeline.

    One row per accepted transition, whoever made it. This is the system of
    record for the customer-visible timeline.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.Index("ix_order_status_history_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False)
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("status_history", lazy=True, order_by="OrderStatusHistory.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "status": self.status,
            "changed_by": self.changed_by,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
