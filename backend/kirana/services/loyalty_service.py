# Overview: Service-layer operations for loyalty points; balances, tiers and program settings.

"""
Loyalty Points Service

WHY: Shoppers earn points on delivered orders and spend them as a checkout
discount or convert them into wallet balance.

LEDGER RULES:
- total_points = lifetime_earned - lifetime_spent, always >= 0.
- _apply_points_entry is the ONLY writer of those columns and always appends
  one loyalty_transactions row with the signed delta.
- Positive deltas count as earned, negative deltas as spent, so both lifetime
  counters only ever grow. Restored points on cancellation are "earned" again.
- Tier is recomputed from lifetime_earned on every entry.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import LoyaltyAccount, LoyaltyTransaction, LoyaltySettings, User
from ..validation import ValidationError, ModelValidationPolicy, validate_payload, enforce_rules_loyalty_settings
from .concurrency import lock_for_update, run_with_retry, write_transaction
from .errors import InsufficientBalance

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSACTION TYPES (CONSTANTS)
# =============================================================================

TXN_EARN = "earn"
TXN_REDEEM = "redeem"
TXN_ORDER_REFUND = "order_refund"
TXN_CONVERSION = "conversion"
TXN_ADMIN_CREDIT = "admin_credit"
TXN_ADMIN_DEBIT = "admin_debit"

VALID_TXN_TYPES = {
    TXN_EARN,
    TXN_REDEEM,
    TXN_ORDER_REFUND,
    TXN_CONVERSION,
    TXN_ADMIN_CREDIT,
    TXN_ADMIN_DEBIT,
}

# Highest threshold first
TIER_THRESHOLDS = (
    ("platinum", 5000),
    ("gold", 2000),
    ("silver", 500),
    ("bronze", 0),
)

DEFAULT_SETTINGS = {
    "point_value_cents": 25,
    "min_redeem_points": 100,
    "max_redeem_bps": 5000,
    "points_per_rupee_bps": 10000,
    "currency_per_point_cents": 10,
    "min_points_to_convert": 100,
    "return_window_minutes": 30,
    "is_active": True,
}

SETTINGS_POLICY = ModelValidationPolicy(
    writable_fields={
        "point_value_cents",
        "min_redeem_points",
        "max_redeem_bps",
        "points_per_rupee_bps",
        "currency_per_point_cents",
        "min_points_to_convert",
        "return_window_minutes",
        "is_active",
    },
)


class LoyaltyError(Exception):
    """Raised for loyalty operation errors."""
    pass


def tier_for(lifetime_earned: int) -> str:
    for name, threshold in TIER_THRESHOLDS:
        if lifetime_earned >= threshold:
            return name
    return "bronze"


# =============================================================================
# SETTINGS
# =============================================================================

def get_settings() -> LoyaltySettings:
    """
    Newest settings row. is_active=False pauses earning and redemption.

    Falls back to an unsaved LoyaltySettings carrying the defaults, so callers
    never need to special-case a fresh install.
    """
    settings = (
        db.session.query(LoyaltySettings)
        .order_by(LoyaltySettings.id.desc())
        .first()
    )
    if settings is None:
        settings = LoyaltySettings(**DEFAULT_SETTINGS)
    return settings


def update_settings(data: dict) -> LoyaltySettings:
    patch = validate_payload(model=LoyaltySettings, payload=data, policy=SETTINGS_POLICY, partial=True)
    enforce_rules_loyalty_settings(patch)

    def _op():
        with write_transaction():
            settings = (
                db.session.query(LoyaltySettings)
                .order_by(LoyaltySettings.id.desc())
                .first()
            )
            if settings is None:
                settings = LoyaltySettings(**DEFAULT_SETTINGS)
                db.session.add(settings)
            for key, value in patch.items():
                setattr(settings, key, value)
            db.session.flush()
            return settings

    settings = run_with_retry(_op)
    logger.info("Loyalty settings updated: %s", sorted(patch))
    return settings


def points_for_amount(amount_cents: int, settings: LoyaltySettings) -> int:
    """Points earned for a paid amount (points_per_rupee_bps of 10000 = 1 point per rupee)."""
    return max(0, amount_cents * settings.points_per_rupee_bps // 1_000_000)


# =============================================================================
# ACCOUNTS
# =============================================================================

def get_account(user_id: int, *, lock: bool = False) -> LoyaltyAccount | None:
    q = db.session.query(LoyaltyAccount).filter_by(user_id=user_id)
    if lock:
        q = lock_for_update(q)
    return q.first()


def get_or_create_account(user_id: int, *, lock: bool = False) -> LoyaltyAccount:
    """Return the user's account, creating an empty one on first access (flushes, no commit)."""
    account = get_account(user_id, lock=lock)
    if account is None:
        if db.session.get(User, user_id) is None:
            raise LoyaltyError(f"User {user_id} not found")
        account = LoyaltyAccount(
            user_id=user_id,
            total_points=0,
            lifetime_earned=0,
            lifetime_spent=0,
            tier=tier_for(0),
        )
        db.session.add(account)
        db.session.flush()
    return account


def _apply_points_entry(
    account: LoyaltyAccount,
    points: int,
    txn_type: str,
    *,
    order_id: int | None = None,
    description: str | None = None,
    actor_user_id: int | None = None,
) -> LoyaltyTransaction:
    """
    Mutate the balance and append the audit row.

    points is signed: > 0 earns, < 0 spends. The account must have been
    loaded inside the current write transaction.
    """
    if isinstance(points, bool) or not isinstance(points, int) or points == 0:
        raise ValidationError("points must be a non-zero integer")
    if txn_type not in VALID_TXN_TYPES:
        raise ValidationError(f"Invalid loyalty transaction type: {txn_type}")

    if points < 0:
        spent = -points
        if spent > account.total_points:
            raise InsufficientBalance(
                "Insufficient points",
                available=account.total_points,
                requested=spent,
            )
        account.lifetime_spent += spent
        account.total_points -= spent
    else:
        account.lifetime_earned += points
        account.total_points += points
        account.tier = tier_for(account.lifetime_earned)

    txn = LoyaltyTransaction(
        user_id=account.user_id,
        account_id=account.id,
        points=points,
        type=txn_type,
        order_id=order_id,
        description=description,
        created_by_user_id=actor_user_id,
    )
    db.session.add(txn)
    db.session.flush()
    logger.info(
        "Loyalty account %s %s %+d points, balance now %d",
        account.id, txn_type, points, account.total_points,
    )
    return txn


def _redeem_for_order(account: LoyaltyAccount, points: int, order_id: int) -> LoyaltyTransaction:
    return _apply_points_entry(
        account, -points, TXN_REDEEM,
        order_id=order_id,
        description=f"Redeemed for order #{order_id}",
        actor_user_id=account.user_id,
    )


def _restore_for_order(account: LoyaltyAccount, points: int, order_id: int, actor_user_id: int | None) -> LoyaltyTransaction:
    return _apply_points_entry(
        account, points, TXN_ORDER_REFUND,
        order_id=order_id,
        description=f"Points returned for cancelled order #{order_id}",
        actor_user_id=actor_user_id,
    )


def _earn_for_order(account: LoyaltyAccount, points: int, order_id: int, actor_user_id: int | None) -> LoyaltyTransaction:
    return _apply_points_entry(
        account, points, TXN_EARN,
        order_id=order_id,
        description=f"Earned for order #{order_id}",
        actor_user_id=actor_user_id,
    )


def admin_adjust_points(user_id: int, points: int, *, actor_user_id: int, reason: str) -> LoyaltyTransaction:
    """
    Back-office correction.

    Positive points -> admin_credit (earned); negative -> admin_debit (spent),
    which cannot take the balance below zero.
    """
    if isinstance(points, bool) or not isinstance(points, int) or points == 0:
        raise ValidationError("points must be a non-zero integer")
    if not reason or not reason.strip():
        raise ValidationError("reason is required for adjustments")

    txn_type = TXN_ADMIN_CREDIT if points > 0 else TXN_ADMIN_DEBIT

    def _op():
        with write_transaction():
            account = get_or_create_account(user_id, lock=True)
            return _apply_points_entry(
                account, points, txn_type,
                description=reason.strip(),
                actor_user_id=actor_user_id,
            )

    txn = run_with_retry(_op)
    logger.info("Admin %s adjusted points of user %s by %+d", actor_user_id, user_id, points)
    return txn


def list_transactions(user_id: int, limit: int = 50) -> list[LoyaltyTransaction]:
    return (
        db.session.query(LoyaltyTransaction)
        .filter_by(user_id=user_id)
        .order_by(LoyaltyTransaction.id.desc())
        .limit(limit)
        .all()
    )


def get_account_summary(user_id: int, limit: int = 50) -> dict:
    """Account, program settings relevant to the shopper, and recent activity."""
    account = get_account(user_id)
    if account is None:
        def _op():
            with write_transaction():
                return get_or_create_account(user_id).to_dict()
        data = run_with_retry(_op)
    else:
        data = account.to_dict()

    settings = get_settings()
    data["point_value_cents"] = settings.point_value_cents
    data["min_redeem_points"] = settings.min_redeem_points
    data["currency_per_point_cents"] = settings.currency_per_point_cents
    data["min_points_to_convert"] = settings.min_points_to_convert
    data["transactions"] = [t.to_dict() for t in list_transactions(user_id, limit)]
    return data
