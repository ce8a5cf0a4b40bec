# Overview: Service-layer operations for coupons; back-office CRUD, shopper lookup and redemption.

from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Coupon, CouponUsage
from ..validation import (
    ValidationError,
    ConflictError,
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_coupon,
)
from .concurrency import lock_for_update, run_with_retry, write_transaction
from .pricing import CouponTerms, RejectionReason, evaluate_coupon, COUPON_NOT_FOUND
from kirana.time_utils import utcnow

logger = logging.getLogger(__name__)


COUPON_POLICY = ModelValidationPolicy(
    writable_fields={
        "code",
        "description",
        "discount_type",
        "discount_value",
        "min_order_cents",
        "max_discount_cents",
        "usage_limit",
        "per_user_limit",
        "valid_from",
        "valid_until",
        "is_active",
    },
    required_on_create={"code", "discount_type", "discount_value"},
)


class CouponUnavailable(Exception):
    """A coupon could not be redeemed; carries the shopper-facing reason."""

    def __init__(self, reason: RejectionReason):
        super().__init__(reason.message)
        self.reason = reason


def normalize_code(code) -> str:
    if code is None:
        return ""
    return str(code).strip().upper()


def get_coupon_by_code(code, *, lock: bool = False) -> Coupon | None:
    """Case-insensitive lookup; codes are stored upper-case."""
    normalized = normalize_code(code)
    if not normalized:
        return None
    q = db.session.query(Coupon).filter(Coupon.code == normalized)
    if lock:
        q = lock_for_update(q)
    return q.first()


def user_usage_count(coupon_id: int, user_id: int) -> int:
    return (
        db.session.query(func.count(CouponUsage.id))
        .filter(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        .scalar()
    ) or 0


def coupon_terms(coupon: Coupon, user_id: int) -> CouponTerms:
    """Snapshot a coupon for the calculator, including the shopper's own usage."""
    return CouponTerms(
        coupon_id=coupon.id,
        code=coupon.code,
        discount_type=coupon.discount_type,
        discount_value=coupon.discount_value,
        is_active=bool(coupon.is_active),
        min_order_cents=coupon.min_order_cents,
        max_discount_cents=coupon.max_discount_cents,
        usage_limit=coupon.usage_limit,
        per_user_limit=coupon.per_user_limit,
        used_count=coupon.used_count or 0,
        user_usage_count=user_usage_count(coupon.id, user_id),
        valid_from=coupon.valid_from,
        valid_until=coupon.valid_until,
    )


def not_found_reason() -> RejectionReason:
    return RejectionReason(COUPON_NOT_FOUND, "Invalid coupon code")


def _record_redemption(coupon: Coupon, *, user_id: int, order_id: int, subtotal_cents: int, discount_cents: int) -> CouponUsage:
    """
    Append a usage row and bump used_count by exactly one.

    Runs inside the checkout write transaction with the coupon row locked.
    Limits are re-checked against counts read in this transaction; the
    version_id column and the used_count <= usage_limit constraint back this
    up if another writer slipped in.
    """
    fresh_terms = coupon_terms(coupon, user_id)
    reason = evaluate_coupon(fresh_terms, subtotal_cents, utcnow())
    if reason is not None:
        raise CouponUnavailable(reason)

    usage = CouponUsage(
        coupon_id=coupon.id,
        user_id=user_id,
        order_id=order_id,
        discount_cents=discount_cents,
    )
    db.session.add(usage)
    coupon.used_count = (coupon.used_count or 0) + 1
    db.session.flush()
    logger.info("Coupon %s redeemed on order %s (%d/%s)",
                coupon.code, order_id, coupon.used_count, coupon.usage_limit)
    return usage


# =============================================================================
# BACK-OFFICE CRUD
# =============================================================================

def list_coupons(active_only: bool = False) -> list[Coupon]:
    q = db.session.query(Coupon)
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()


def get_coupon(coupon_id: int) -> Coupon | None:
    return db.session.get(Coupon, coupon_id)


def create_coupon(data: dict) -> Coupon:
    patch = validate_payload(model=Coupon, payload=data, policy=COUPON_POLICY, partial=False)
    enforce_rules_coupon(patch)

    if get_coupon_by_code(patch["code"]) is not None:
        raise ConflictError(f"Coupon code {patch['code']} already exists")

    coupon = Coupon(used_count=0, is_active=True)
    for key, value in patch.items():
        setattr(coupon, key, value)
    db.session.add(coupon)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"Coupon code {patch['code']} already exists")
    logger.info("Coupon %s created", coupon.code)
    return coupon


def update_coupon(coupon_id: int, data: dict) -> Coupon | None:
    """
    Patch a coupon. used_count is never client-writable.

    Raises:
        ValidationError / ConflictError
    """
    patch = validate_payload(model=Coupon, payload=data, policy=COUPON_POLICY, partial=True)
    if not patch:
        raise ValidationError("No fields to update")

    def _op():
        with write_transaction():
            coupon = lock_for_update(db.session.query(Coupon).filter_by(id=coupon_id)).first()
            if coupon is None:
                return None
            enforce_rules_coupon(patch, existing=coupon)
            if "code" in patch and patch["code"] != coupon.code:
                if get_coupon_by_code(patch["code"]) is not None:
                    raise ConflictError(f"Coupon code {patch['code']} already exists")
            for key, value in patch.items():
                setattr(coupon, key, value)
            db.session.flush()
            return coupon

    return run_with_retry(_op)


def usage_for_coupon(coupon_id: int, limit: int = 100) -> list[CouponUsage]:
    return (
        db.session.query(CouponUsage)
        .filter_by(coupon_id=coupon_id)
        .order_by(CouponUsage.id.desc())
        .limit(limit)
        .all()
    )
