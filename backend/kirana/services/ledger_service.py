# Overview: Cross-ledger operations; points-to-wallet conversion and ledger replay audits.

"""
Ledger Invariants (authoritative)

- wallets.balance_cents == SUM(credits) - SUM(debits) of its wallet_transactions.
- loyalty_accounts.total_points == SUM(points) of its loyalty_transactions,
  lifetime_earned == SUM(positive points), lifetime_spent == -SUM(negative points).
- Cross-ledger moves (points -> wallet) are written in one transaction: both
  sides commit or neither does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import func, case

from ..extensions import db
from ..models import Wallet, WalletTransaction, LoyaltyAccount, LoyaltyTransaction
from ..models.wallets import TXN_CREDIT, TXN_DEBIT, REF_POINTS_CONVERSION
from ..validation import ValidationError
from . import loyalty_service, wallet_service
from .concurrency import run_with_retry, write_transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionResult:
    points: int
    amount_cents: int
    loyalty_transaction_id: int
    wallet_transaction_id: int
    total_points: int
    wallet_balance_cents: int

    def to_dict(self) -> dict:
        return {
            "points": self.points,
            "amount_cents": self.amount_cents,
            "loyalty_transaction_id": self.loyalty_transaction_id,
            "wallet_transaction_id": self.wallet_transaction_id,
            "total_points": self.total_points,
            "wallet_balance_cents": self.wallet_balance_cents,
        }


@dataclass
class LedgerDrift:
    user_id: int
    field: str
    stored: int
    replayed: int

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "field": self.field, "stored": self.stored, "replayed": self.replayed}


@dataclass
class LedgerReport:
    checked: int = 0
    drift: list[LedgerDrift] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.drift

    def to_dict(self) -> dict:
        return {"checked": self.checked, "ok": self.ok, "drift": [d.to_dict() for d in self.drift]}


def convert_points_to_wallet(user_id: int, points: int) -> ConversionResult:
    """
    Convert loyalty points into wallet balance.

    amount = points * currency_per_point_cents. Both ledgers move in one
    transaction.

    Raises:
        ValidationError: below min_points_to_convert, or not a positive integer
        InsufficientBalance: more points than held (nothing written)
    """
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise ValidationError("points must be a positive integer")

    def _op():
        with write_transaction():
            settings = loyalty_service.get_settings()
            if points < settings.min_points_to_convert:
                raise ValidationError(f"Minimum {settings.min_points_to_convert} points required to convert")
            amount_cents = points * settings.currency_per_point_cents

            account = loyalty_service.get_or_create_account(user_id, lock=True)
            wallet = wallet_service.get_or_create_wallet(user_id, lock=True)

            points_txn = loyalty_service._apply_points_entry(
                account, -points, loyalty_service.TXN_CONVERSION,
                description=f"Converted {points} points to wallet",
                actor_user_id=user_id,
            )
            wallet_txn = wallet_service._apply_wallet_entry(
                wallet, TXN_CREDIT, amount_cents,
                reference_type=REF_POINTS_CONVERSION,
                reference_id=points_txn.id,
                description=f"Converted {points} points",
                actor_user_id=user_id,
            )
            return ConversionResult(
                points=points,
                amount_cents=amount_cents,
                loyalty_transaction_id=points_txn.id,
                wallet_transaction_id=wallet_txn.id,
                total_points=account.total_points,
                wallet_balance_cents=wallet.balance_cents,
            )

    result = run_with_retry(_op)
    logger.info("User %s converted %d points into %d paise", user_id, points, result.amount_cents)
    return result


def verify_wallet_ledger(user_id: int | None = None) -> LedgerReport:
    """Replay wallet_transactions and compare with every stored balance."""
    signed = case(
        (WalletTransaction.type == TXN_CREDIT, WalletTransaction.amount_cents),
        (WalletTransaction.type == TXN_DEBIT, -WalletTransaction.amount_cents),
        else_=0,
    )
    sums = dict(
        db.session.query(WalletTransaction.wallet_id, func.coalesce(func.sum(signed), 0))
        .group_by(WalletTransaction.wallet_id)
        .all()
    )

    q = db.session.query(Wallet)
    if user_id is not None:
        q = q.filter_by(user_id=user_id)

    report = LedgerReport()
    for wallet in q.order_by(Wallet.id).all():
        report.checked += 1
        replayed = int(sums.get(wallet.id, 0))
        if replayed != wallet.balance_cents:
            report.drift.append(LedgerDrift(wallet.user_id, "balance_cents", wallet.balance_cents, replayed))
    if not report.ok:
        logger.warning("Wallet ledger drift detected for %d wallets", len(report.drift))
    return report


def verify_loyalty_ledger(user_id: int | None = None) -> LedgerReport:
    """Replay loyalty_transactions and compare with every stored account."""
    earned = func.coalesce(func.sum(case((LoyaltyTransaction.points > 0, LoyaltyTransaction.points), else_=0)), 0)
    spent = func.coalesce(func.sum(case((LoyaltyTransaction.points < 0, -LoyaltyTransaction.points), else_=0)), 0)
    rows = (
        db.session.query(LoyaltyTransaction.account_id, earned, spent)
        .group_by(LoyaltyTransaction.account_id)
        .all()
    )
    totals = {account_id: (int(e), int(s)) for account_id, e, s in rows}

    q = db.session.query(LoyaltyAccount)
    if user_id is not None:
        q = q.filter_by(user_id=user_id)

    report = LedgerReport()
    for account in q.order_by(LoyaltyAccount.id).all():
        report.checked += 1
        e, s = totals.get(account.id, (0, 0))
        for name, stored, replayed in (
            ("lifetime_earned", account.lifetime_earned, e),
            ("lifetime_spent", account.lifetime_spent, s),
            ("total_points", account.total_points, e - s),
        ):
            if stored != replayed:
                report.drift.append(LedgerDrift(account.user_id, name, stored, replayed))
    if not report.ok:
        logger.warning("Loyalty ledger drift detected for %d entries", len(report.drift))
    return report
