# Overview: Service-layer operations for wallets; every balance change goes through one entry point.

"""
Wallet Service

WHY: Customers hold a prepaid rupee balance that can pay for part or all of
an order, receives refunds for cancelled orders, and receives converted
loyalty points.

LEDGER RULES:
- wallets.balance_cents is a projection of wallet_transactions.
- _apply_wallet_entry is the ONLY function that changes balance_cents, and it
  always appends the matching transaction row in the same flush.
- A debit larger than the balance raises InsufficientBalance before anything
  is written.
- Public functions own their transaction; underscore functions expect the
  caller's write transaction to be open.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Wallet, WalletTransaction, User
from ..models.wallets import (
    TXN_CREDIT,
    TXN_DEBIT,
    REF_TOPUP,
    REF_ADMIN_ADJUSTMENT,
    VALID_REFERENCE_TYPES,
)
from ..validation import ValidationError, MAX_AMOUNT_CENTS
from .concurrency import lock_for_update, run_with_retry, write_transaction
from .errors import InsufficientBalance

logger = logging.getLogger(__name__)

# Smallest self-service top-up (₹10)
MIN_TOPUP_CENTS = 1000


class WalletError(Exception):
    """Raised for wallet operation errors."""
    pass


def get_wallet(user_id: int, *, lock: bool = False) -> Wallet | None:
    q = db.session.query(Wallet).filter_by(user_id=user_id)
    if lock:
        q = lock_for_update(q)
    return q.first()


def get_or_create_wallet(user_id: int, *, lock: bool = False) -> Wallet:
    """Return the user's wallet, creating an empty one on first access (flushes, no commit)."""
    wallet = get_wallet(user_id, lock=lock)
    if wallet is None:
        if db.session.get(User, user_id) is None:
            raise WalletError(f"User {user_id} not found")
        wallet = Wallet(user_id=user_id, balance_cents=0)
        db.session.add(wallet)
        db.session.flush()
    return wallet


def _validate_amount(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("amount_cents must be an integer")
    if amount_cents <= 0:
        raise ValidationError("amount_cents must be > 0")
    if amount_cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"amount_cents cannot exceed {MAX_AMOUNT_CENTS}")
    return amount_cents


def _apply_wallet_entry(
    wallet: Wallet,
    txn_type: str,
    amount_cents: int,
    *,
    reference_type: str,
    reference_id=None,
    description: str | None = None,
    actor_user_id: int | None = None,
) -> WalletTransaction:
    """
    Mutate the balance and append the audit row.

    The wallet must have been loaded inside the current write transaction.
    """
    amount_cents = _validate_amount(amount_cents)
    if txn_type not in (TXN_CREDIT, TXN_DEBIT):
        raise ValidationError(f"Invalid wallet transaction type: {txn_type}")
    if reference_type not in VALID_REFERENCE_TYPES:
        raise ValidationError(f"Invalid reference_type: {reference_type}")

    if txn_type == TXN_DEBIT:
        if amount_cents > wallet.balance_cents:
            raise InsufficientBalance(
                "Insufficient wallet balance",
                available=wallet.balance_cents,
                requested=amount_cents,
            )
        wallet.balance_cents -= amount_cents
    else:
        wallet.balance_cents += amount_cents

    txn = WalletTransaction(
        user_id=wallet.user_id,
        wallet_id=wallet.id,
        type=txn_type,
        amount_cents=amount_cents,
        description=description,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        created_by_user_id=actor_user_id,
    )
    db.session.add(txn)
    db.session.flush()
    logger.info(
        "Wallet %s %s %d paise (%s %s), balance now %d",
        wallet.id, txn_type, amount_cents, reference_type, reference_id, wallet.balance_cents,
    )
    return txn


def _post(user_id: int, txn_type: str, amount_cents: int, **kwargs) -> WalletTransaction:
    def _op():
        with write_transaction():
            wallet = get_or_create_wallet(user_id, lock=True)
            return _apply_wallet_entry(wallet, txn_type, amount_cents, **kwargs)

    return run_with_retry(_op)


def credit_wallet(
    user_id: int,
    amount_cents: int,
    *,
    reference_type: str,
    reference_id=None,
    description: str | None = None,
    actor_user_id: int | None = None,
) -> WalletTransaction:
    """Add money to a wallet in its own transaction."""
    return _post(
        user_id, TXN_CREDIT, amount_cents,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        actor_user_id=actor_user_id,
    )


def debit_wallet(
    user_id: int,
    amount_cents: int,
    *,
    reference_type: str,
    reference_id=None,
    description: str | None = None,
    actor_user_id: int | None = None,
) -> WalletTransaction:
    """
    Take money out of a wallet in its own transaction.

    Raises:
        InsufficientBalance: amount exceeds the committed balance (no mutation)
    """
    return _post(
        user_id, TXN_DEBIT, amount_cents,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        actor_user_id=actor_user_id,
    )


def top_up(user_id: int, amount_cents: int, *, payment_reference: str | None = None) -> WalletTransaction:
    """Customer adds funds. Settlement of the payment itself happens outside this system."""
    amount_cents = _validate_amount(amount_cents)
    if amount_cents < MIN_TOPUP_CENTS:
        raise ValidationError(f"Minimum top-up is ₹{MIN_TOPUP_CENTS // 100}")
    return credit_wallet(
        user_id,
        amount_cents,
        reference_type=REF_TOPUP,
        reference_id=payment_reference,
        description="Added funds to wallet",
        actor_user_id=user_id,
    )


def admin_adjust_wallet(user_id: int, delta_cents: int, *, actor_user_id: int, reason: str) -> WalletTransaction:
    """
    Back-office correction. Positive delta credits, negative debits.

    A debit below zero is refused like any other debit.
    """
    if isinstance(delta_cents, bool) or not isinstance(delta_cents, int) or delta_cents == 0:
        raise ValidationError("amount_cents must be a non-zero integer")
    if not reason or not reason.strip():
        raise ValidationError("reason is required for adjustments")

    txn_type = TXN_CREDIT if delta_cents > 0 else TXN_DEBIT
    txn = _post(
        user_id, txn_type, abs(delta_cents),
        reference_type=REF_ADMIN_ADJUSTMENT,
        description=reason.strip(),
        actor_user_id=actor_user_id,
    )
    logger.info("Admin %s adjusted wallet of user %s by %d", actor_user_id, user_id, delta_cents)
    return txn


def list_transactions(user_id: int, limit: int = 50) -> list[WalletTransaction]:
    return (
        db.session.query(WalletTransaction)
        .filter_by(user_id=user_id)
        .order_by(WalletTransaction.id.desc())
        .limit(limit)
        .all()
    )


def get_wallet_summary(user_id: int, limit: int = 50) -> dict:
    """Wallet plus newest transactions; creates the wallet lazily."""
    def _op():
        with write_transaction():
            wallet = get_or_create_wallet(user_id)
            return wallet.to_dict()

    wallet = get_wallet(user_id)
    data = wallet.to_dict() if wallet is not None else run_with_retry(_op)
    data["transactions"] = [t.to_dict() for t in list_transactions(user_id, limit)]
    return data
