# Overview: Pure checkout pricing; turns a cart plus discount requests into a priced breakdown.

"""
Checkout Pricing (Discount Calculator)

================================================================================
PURPOSE: Compute what a cart costs after delivery fee, coupon, loyalty points
and wallet, without touching the database.
================================================================================

ORDER OF APPLICATION (fixed):
    1. delivery fee      (free at or above the threshold)
    2. coupon            (min order and max cap judged on the pre-points subtotal)
    3. loyalty points    (never more than what is left to pay, or than held)
    4. wallet            (pays part or all of the final total)

RULES:
- Every input is passed in; nothing is read from the store here.
- Same inputs always give the same PricedOrder.
- Ineligible coupons/points produce a RejectionReason, not an exception.
  Malformed input (quantity <= 0, negative amounts) raises ValidationError.
- Results are advisory. checkout_service re-prices inside the write
  transaction using committed balances before anything is stored.

All amounts are integer paise. Percentages are basis points.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Iterable, Optional

from ..validation import ValidationError
from kirana.time_utils import as_utc_naive


BPS_DENOMINATOR = 10_000

DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"

# Rejection codes (stable identifiers for clients)
COUPON_INACTIVE = "COUPON_INACTIVE"
COUPON_NOT_STARTED = "COUPON_NOT_STARTED"
COUPON_EXPIRED = "COUPON_EXPIRED"
COUPON_MIN_ORDER = "COUPON_MIN_ORDER_NOT_MET"
COUPON_FULLY_REDEEMED = "COUPON_FULLY_REDEEMED"
COUPON_USER_LIMIT = "COUPON_USER_LIMIT_REACHED"
COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
POINTS_BELOW_MINIMUM = "POINTS_BELOW_MINIMUM"
POINTS_PAUSED = "POINTS_PAUSED"


@dataclass(frozen=True)
class RejectionReason:
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class CartLine:
    product_id: Optional[int]
    unit_price_cents: int
    quantity: int
    variant_id: Optional[int] = None
    name: Optional[str] = None

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class CouponTerms:
    """
    Point-in-time view of a coupon plus how often it has been used.

    user_usage_count is the number of coupon_usage rows for the shopper.
    """
    coupon_id: Optional[int]
    code: str
    discount_type: str
    discount_value: int
    is_active: bool = True
    min_order_cents: Optional[int] = None
    max_discount_cents: Optional[int] = None
    usage_limit: Optional[int] = None
    per_user_limit: Optional[int] = None
    used_count: int = 0
    user_usage_count: int = 0
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


@dataclass(frozen=True)
class PricedOrder:
    subtotal_cents: int
    delivery_fee_cents: int
    coupon_code: Optional[str]
    coupon_id: Optional[int]
    coupon_discount_cents: int
    points_requested: int
    points_used: int
    points_discount_cents: int
    final_total_cents: int
    wallet_payment_cents: int
    amount_due_cents: int
    coupon_rejection: Optional[RejectionReason] = None
    points_rejection: Optional[RejectionReason] = None

    @property
    def total_discount_cents(self) -> int:
        return self.coupon_discount_cents + self.points_discount_cents

    def to_dict(self) -> dict:
        data = asdict(self)
        data["coupon_rejection"] = self.coupon_rejection.to_dict() if self.coupon_rejection else None
        data["points_rejection"] = self.points_rejection.to_dict() if self.points_rejection else None
        data["total_discount_cents"] = self.total_discount_cents
        return data


def format_rupees(cents: int) -> str:
    return f"₹{cents / 100:.2f}"


def cart_subtotal(lines: Iterable[CartLine]) -> int:
    """Sum of unit price x quantity; rejects malformed lines."""
    total = 0
    for idx, line in enumerate(lines):
        if line.quantity is None or line.quantity <= 0:
            raise ValidationError(f"Line {idx + 1}: quantity must be >= 1")
        if line.unit_price_cents is None or line.unit_price_cents < 0:
            raise ValidationError(f"Line {idx + 1}: unit_price_cents must be >= 0")
        total += line.line_total_cents
    return total


def delivery_fee_for(subtotal_cents: int, threshold_cents: int, fee_cents: int) -> int:
    return 0 if subtotal_cents >= threshold_cents else fee_cents


def evaluate_coupon(terms: CouponTerms, subtotal_cents: int, now: datetime) -> Optional[RejectionReason]:
    """
    Check coupon eligibility. Returns None when the coupon may be applied.

    Checks run in the order shoppers see the messages: active, window,
    minimum order, global limit, per-user limit.
    """
    if not terms.is_active:
        return RejectionReason(COUPON_INACTIVE, "Invalid coupon code")

    now = as_utc_naive(now)
    valid_from = as_utc_naive(terms.valid_from)
    valid_until = as_utc_naive(terms.valid_until)
    if valid_from is not None and valid_from > now:
        return RejectionReason(COUPON_NOT_STARTED, "This coupon is not yet active")
    if valid_until is not None and valid_until < now:
        return RejectionReason(COUPON_EXPIRED, "This coupon has expired")

    if terms.min_order_cents and subtotal_cents < terms.min_order_cents:
        short = terms.min_order_cents - subtotal_cents
        return RejectionReason(
            COUPON_MIN_ORDER,
            f"Minimum order not met: add {format_rupees(short)} more to use this coupon",
        )

    if terms.usage_limit is not None and terms.used_count >= terms.usage_limit:
        return RejectionReason(COUPON_FULLY_REDEEMED, "This coupon has been fully redeemed")

    if terms.per_user_limit is not None and terms.user_usage_count >= terms.per_user_limit:
        return RejectionReason(COUPON_USER_LIMIT, "You have already used this coupon")

    return None


def coupon_discount(terms: CouponTerms, subtotal_cents: int, delivery_fee_cents: int = 0) -> int:
    """
    Discount granted by an eligible coupon.

    percentage: subtotal * bps / 10000 (floored), capped by max_discount_cents.
    fixed: discount_value.
    Never more than subtotal + delivery fee.
    """
    if terms.discount_type == DISCOUNT_PERCENTAGE:
        discount = subtotal_cents * terms.discount_value // BPS_DENOMINATOR
        if terms.max_discount_cents is not None:
            discount = min(discount, terms.max_discount_cents)
    elif terms.discount_type == DISCOUNT_FIXED:
        discount = terms.discount_value
    else:
        raise ValidationError(f"Unknown discount_type: {terms.discount_type}")

    return max(0, min(discount, subtotal_cents + delivery_fee_cents))


def price_order(
    *,
    subtotal_cents: int,
    delivery_threshold_cents: int,
    delivery_fee_cents: int,
    now: datetime,
    coupon: Optional[CouponTerms] = None,
    requested_points: int = 0,
    available_points: int = 0,
    point_value_cents: int = 0,
    min_redeem_points: int = 0,
    max_redeem_bps: Optional[int] = None,
    wallet_available_cents: Optional[int] = None,
) -> PricedOrder:
    """
    Price a cart. Side-effect free; see module docstring for the rules.

    wallet_available_cents=None means the shopper did not opt to pay with the
    wallet.
    """
    if subtotal_cents < 0:
        raise ValidationError("subtotal_cents must be >= 0")
    if requested_points is None:
        requested_points = 0
    if requested_points < 0:
        raise ValidationError("points must be >= 0")
    if wallet_available_cents is not None and wallet_available_cents < 0:
        raise ValidationError("wallet balance must be >= 0")

    # 1. Delivery fee
    fee = delivery_fee_for(subtotal_cents, delivery_threshold_cents, delivery_fee_cents)
    gross = subtotal_cents + fee

    # 2. Coupon (judged against the pre-points subtotal)
    coupon_rejection = None
    coupon_cents = 0
    if coupon is not None:
        coupon_rejection = evaluate_coupon(coupon, subtotal_cents, now)
        if coupon_rejection is None:
            coupon_cents = coupon_discount(coupon, subtotal_cents, fee)

    # 3. Points
    points_rejection = None
    points_used = 0
    remaining = gross - coupon_cents
    if requested_points > 0:
        if available_points < min_redeem_points:
            points_rejection = RejectionReason(
                POINTS_BELOW_MINIMUM,
                f"Minimum {min_redeem_points} points required to redeem",
            )
        elif point_value_cents > 0:
            cap_cents = remaining
            if max_redeem_bps is not None:
                cap_cents = min(cap_cents, remaining * max_redeem_bps // BPS_DENOMINATOR)
            points_used = min(requested_points, available_points, max(cap_cents, 0) // point_value_cents)
    points_cents = points_used * point_value_cents

    final_total = max(0, gross - coupon_cents - points_cents)

    # 4. Wallet
    wallet_cents = 0
    if wallet_available_cents is not None:
        wallet_cents = min(wallet_available_cents, final_total)

    return PricedOrder(
        subtotal_cents=subtotal_cents,
        delivery_fee_cents=fee,
        coupon_code=coupon.code if coupon is not None else None,
        coupon_id=coupon.coupon_id if coupon is not None and coupon_rejection is None else None,
        coupon_discount_cents=coupon_cents,
        points_requested=requested_points,
        points_used=points_used,
        points_discount_cents=points_cents,
        final_total_cents=final_total,
        wallet_payment_cents=wallet_cents,
        amount_due_cents=final_total - wallet_cents,
        coupon_rejection=coupon_rejection,
        points_rejection=points_rejection,
    )
