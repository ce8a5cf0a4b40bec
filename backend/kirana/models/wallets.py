from __future__ import annotations

from ..extensions import db
from kirana.time_utils import to_utc_z


TXN_CREDIT = "credit"
TXN_DEBIT = "debit"

REF_ORDER = "order"
REF_REFUND = "refund"
REF_TOPUP = "topup"
REF_POINTS_CONVERSION = "points_conversion"
REF_ADMIN_ADJUSTMENT = "admin_adjustment"
VALID_REFERENCE_TYPES = {REF_ORDER, REF_REFUND, REF_TOPUP, REF_POINTS_CONVERSION, REF_ADMIN_ADJUSTMENT}


class Wallet(db.Model):
    """
    Prepaid balance for a user.

    balance_cents is a cached projection of wallet_transactions; replaying the
    ledger must reproduce it exactly. Only wallet_service writes it.
    """
    __tablename__ = "wallets"
    __table_args__ = (
        db.UniqueConstraint("user_id", name="uq_wallets_user"),
        db.CheckConstraint("balance_cents >= 0", name="ck_wallets_balance_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    balance_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", backref=db.backref("wallet", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "balance_cents": self.balance_cents,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class WalletTransaction(db.Model):
    """
    Append-only wallet ledger.

    amount_cents is always positive; type carries the sign (credit adds,
    debit subtracts).

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        db.Index("ix_wallet_txns_wallet_created", "wallet_id", "created_at"),
        db.CheckConstraint("amount_cents > 0", name="ck_wallet_txn_amount_positive"),
        db.CheckConstraint("type IN ('credit', 'debit')", name="ck_wallet_txn_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False, index=True)

    type = db.Column(db.String(8), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=True)

    reference_type = db.Column(db.String(32), nullable=True, index=True)
    reference_id = db.Column(db.String(64), nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    wallet = db.relationship("Wallet", backref=db.backref("transactions", lazy=True))

    @property
    def signed_amount_cents(self) -> int:
        return self.amount_cents if self.type == TXN_CREDIT else -self.amount_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "wallet_id": self.wallet_id,
            "type": self.type,
            "amount_cents": self.amount_cents,
            "description": self.description,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
