from __future__ import annotations

from ..extensions import db
from kirana.time_utils import to_utc_z


class LoyaltyAccount(db.Model):
    """
    Loyalty points balance for a user.

    WHY: Tracks spendable points and the two monotonic lifetime ledgers.
    One account per user, created lazily on first access.

    INVARIANT: total_points = lifetime_earned - lifetime_spent, never negative.
    Only loyalty_service._apply_points_entry writes these columns.
    """
    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        db.UniqueConstraint("user_id", name="uq_loyalty_accounts_user"),
        db.CheckConstraint("total_points >= 0", name="ck_loyalty_total_nonneg"),
        db.CheckConstraint(
            "total_points = lifetime_earned - lifetime_spent",
            name="ck_loyalty_total_matches_lifetime",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    total_points = db.Column(db.Integer, nullable=False, default=0)
    lifetime_earned = db.Column(db.Integer, nullable=False, default=0)
    lifetime_spent = db.Column(db.Integer, nullable=False, default=0)
    tier = db.Column(db.String(16), nullable=False, default="bronze")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", backref=db.backref("loyalty_account", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "total_points": self.total_points,
            "lifetime_earned": self.lifetime_earned,
            "lifetime_spent": self.lifetime_spent,
            "tier": self.tier,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LoyaltyTransaction(db.Model):
    """
    Append-only ledger of loyalty point events.

    TRANSACTION TYPES:
    - earn: points awarded for a delivered order
    - redeem: points spent as a checkout discount
    - order_refund: redeemed points given back when an order is cancelled
    - conversion: points converted into wallet balance
    - admin_credit / admin_debit: manual adjustment from the back-office

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        db.Index("ix_loyalty_txns_user_created", "user_id", "created_at"),
        db.CheckConstraint("points <> 0", name="ck_loyalty_txn_points_nonzero"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("loyalty_accounts.id"), nullable=False, index=True)

    points = db.Column(db.Integer, nullable=False)  # Positive for earned, negative for spent
    type = db.Column(db.String(16), nullable=False, index=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    description = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    account = db.relationship("LoyaltyAccount", backref=db.backref("transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "points": self.points,
            "type": self.type,
            "order_id": self.order_id,
            "description": self.description,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class LoyaltySettings(db.Model):
    """
    Program configuration edited from the admin loyalty page.

    Money-valued settings are paise; percentages are basis points.
    The newest active row wins; loyalty_service supplies defaults if none.
    """
    __tablename__ = "loyalty_settings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)

    # Redemption at checkout
    point_value_cents = db.Column(db.Integer, nullable=False, default=25)
    min_redeem_points = db.Column(db.Integer, nullable=False, default=100)
    max_redeem_bps = db.Column(db.Integer, nullable=False, default=5000)

    # Earning on delivered orders (10000 bps = 1 point per rupee)
    points_per_rupee_bps = db.Column(db.Integer, nullable=False, default=10000)

    # Conversion into wallet balance
    currency_per_point_cents = db.Column(db.Integer, nullable=False, default=10)
    min_points_to_convert = db.Column(db.Integer, nullable=False, default=100)

    # Points from a delivered order stay returnable for this long
    return_window_minutes = db.Column(db.Integer, nullable=False, default=30)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "point_value_cents": self.point_value_cents,
            "min_redeem_points": self.min_redeem_points,
            "max_redeem_bps": self.max_redeem_bps,
            "points_per_rupee_bps": self.points_per_rupee_bps,
            "currency_per_point_cents": self.currency_per_point_cents,
            "min_points_to_convert": self.min_points_to_convert,
            "return_window_minutes": self.return_window_minutes,
            "is_active": self.is_active,
            "updated_at": to_utc_z(self.updated_at),
        }
