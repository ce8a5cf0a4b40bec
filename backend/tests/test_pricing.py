"""
Discount calculator tests.

Pure functions only: no app, no database.
"""

from datetime import datetime, timedelta

import pytest

from kirana.services.pricing import (
    CartLine,
    CouponTerms,
    price_order,
    cart_subtotal,
    coupon_discount,
    evaluate_coupon,
    delivery_fee_for,
    format_rupees,
    COUPON_INACTIVE,
    COUPON_NOT_STARTED,
    COUPON_EXPIRED,
    COUPON_MIN_ORDER,
    COUPON_FULLY_REDEEMED,
    COUPON_USER_LIMIT,
    POINTS_BELOW_MINIMUM,
)
from kirana.validation import ValidationError


NOW = datetime(2026, 3, 1, 12, 0, 0)
THRESHOLD = 49900
FEE = 4000


def _price(subtotal, **kwargs):
    kwargs.setdefault("delivery_threshold_cents", THRESHOLD)
    kwargs.setdefault("delivery_fee_cents", FEE)
    kwargs.setdefault("now", NOW)
    return price_order(subtotal_cents=subtotal, **kwargs)


def _pct(bps, **kwargs):
    return CouponTerms(coupon_id=1, code="SAVE", discount_type="percentage", discount_value=bps, **kwargs)


def _fixed(cents, **kwargs):
    return CouponTerms(coupon_id=2, code="FLAT", discount_type="fixed", discount_value=cents, **kwargs)


# =============================================================================
# DELIVERY FEE
# =============================================================================

class TestDeliveryFee:
    def test_fee_below_threshold(self):
        priced = _price(45000)
        assert priced.delivery_fee_cents == 4000
        assert priced.final_total_cents == 49000

    def test_free_delivery_above_threshold(self):
        priced = _price(50000)
        assert priced.delivery_fee_cents == 0
        assert priced.final_total_cents == 50000

    def test_threshold_is_inclusive(self):
        assert delivery_fee_for(49900, THRESHOLD, FEE) == 0
        assert delivery_fee_for(49899, THRESHOLD, FEE) == FEE


# =============================================================================
# COUPONS
# =============================================================================

class TestCouponDiscount:
    def test_percentage_capped_by_max_discount(self):
        priced = _price(100000, coupon=_pct(2000, max_discount_cents=10000))
        assert priced.coupon_rejection is None
        assert priced.coupon_discount_cents == 10000
        assert priced.final_total_cents == 90000

    def test_percentage_without_cap(self):
        assert coupon_discount(_pct(2000), 100000) == 20000

    def test_percentage_floors_fractions(self):
        # 12.5% of 999 paise = 124.875
        assert coupon_discount(_pct(1250), 999) == 124

    def test_fixed_discount(self):
        priced = _price(60000, coupon=_fixed(5000))
        assert priced.coupon_discount_cents == 5000
        assert priced.final_total_cents == 55000

    def test_fixed_discount_clamped_to_order_value(self):
        priced = _price(10000, coupon=_fixed(50000))
        assert priced.coupon_discount_cents == 14000
        assert priced.final_total_cents == 0

    def test_accepted_coupon_id_is_reported(self):
        priced = _price(60000, coupon=_fixed(5000))
        assert priced.coupon_id == 2
        assert priced.coupon_code == "FLAT"

    def test_unknown_discount_type_raises(self):
        terms = CouponTerms(coupon_id=3, code="ODD", discount_type="bogo", discount_value=1)
        with pytest.raises(ValidationError):
            coupon_discount(terms, 1000)


class TestCouponEligibility:
    @pytest.mark.parametrize(
        "terms,code",
        [
            (_pct(1000, is_active=False), COUPON_INACTIVE),
            (_pct(1000, valid_from=NOW + timedelta(days=1)), COUPON_NOT_STARTED),
            (_pct(1000, valid_until=NOW - timedelta(seconds=1)), COUPON_EXPIRED),
            (_pct(1000, min_order_cents=100000), COUPON_MIN_ORDER),
            (_pct(1000, usage_limit=5, used_count=5), COUPON_FULLY_REDEEMED),
            (_pct(1000, per_user_limit=1, user_usage_count=1), COUPON_USER_LIMIT),
        ],
    )
    def test_rejections(self, terms, code):
        priced = _price(50000, coupon=terms)
        assert priced.coupon_rejection is not None
        assert priced.coupon_rejection.code == code
        assert priced.coupon_discount_cents == 0
        assert priced.coupon_id is None
        assert priced.final_total_cents == 50000

    def test_min_order_message_names_shortfall(self):
        reason = evaluate_coupon(_pct(1000, min_order_cents=50000), 45000, NOW)
        assert "₹50.00" in reason.message

    def test_min_order_judged_on_subtotal_not_total(self):
        # 48000 + 4000 fee clears 50000, but the subtotal does not
        reason = evaluate_coupon(_pct(1000, min_order_cents=50000), 48000, NOW)
        assert reason.code == COUPON_MIN_ORDER

    def test_window_boundaries_are_inclusive(self):
        terms = _pct(1000, valid_from=NOW, valid_until=NOW)
        assert evaluate_coupon(terms, 1000, NOW) is None

    def test_aware_datetimes_compare_as_utc(self):
        from datetime import timezone
        ist = timezone(timedelta(hours=5, minutes=30))
        # 17:00 IST == 11:30 UTC, already past
        terms = _pct(1000, valid_until=datetime(2026, 3, 1, 17, 0, tzinfo=ist))
        assert evaluate_coupon(terms, 1000, NOW).code == COUPON_EXPIRED

    def test_first_failing_check_wins(self):
        terms = _pct(1000, is_active=False, usage_limit=1, used_count=1)
        assert evaluate_coupon(terms, 1000, NOW).code == COUPON_INACTIVE


# =============================================================================
# POINTS AND WALLET
# =============================================================================

class TestPointsRedemption:
    def _points(self, subtotal, requested, available, **kwargs):
        kwargs.setdefault("point_value_cents", 25)
        kwargs.setdefault("min_redeem_points", 100)
        return _price(subtotal, requested_points=requested, available_points=available, **kwargs)

    def test_points_reduce_total(self):
        priced = self._points(60000, 200, 500)
        assert priced.points_used == 200
        assert priced.points_discount_cents == 5000
        assert priced.final_total_cents == 55000

    def test_never_more_than_held(self):
        priced = self._points(60000, 900, 300)
        assert priced.points_used == 300

    def test_below_minimum_balance_rejected(self):
        priced = self._points(60000, 50, 80)
        assert priced.points_rejection.code == POINTS_BELOW_MINIMUM
        assert priced.points_used == 0
        assert priced.final_total_cents == 60000

    def test_capped_by_max_redeem_share(self):
        # half of 60000 = 30000 paise = 1200 points at 25 paise
        priced = self._points(60000, 5000, 5000, max_redeem_bps=5000)
        assert priced.points_used == 1200
        assert priced.final_total_cents == 30000

    def test_points_never_push_total_below_zero(self):
        priced = self._points(1000, 5000, 5000, coupon=_fixed(500))
        # 1000 + 4000 fee - 500 coupon = 4500 left = 180 points
        assert priced.points_used == 180
        assert priced.final_total_cents == 0

    def test_zero_requested_is_noop(self):
        priced = self._points(60000, 0, 500)
        assert priced.points_used == 0
        assert priced.points_rejection is None


class TestWallet:
    def test_wallet_pays_part(self):
        priced = _price(60000, wallet_available_cents=10000)
        assert priced.wallet_payment_cents == 10000
        assert priced.amount_due_cents == 50000

    def test_wallet_pays_all(self):
        priced = _price(60000, wallet_available_cents=100000)
        assert priced.wallet_payment_cents == 60000
        assert priced.amount_due_cents == 0

    def test_wallet_not_used_unless_requested(self):
        priced = _price(60000)
        assert priced.wallet_payment_cents == 0
        assert priced.amount_due_cents == 60000

    def test_wallet_applies_after_all_discounts(self):
        priced = _price(
            100000,
            coupon=_pct(1000),
            requested_points=400, available_points=400, point_value_cents=25,
            wallet_available_cents=1_000_000,
        )
        assert priced.coupon_discount_cents == 10000
        assert priced.points_discount_cents == 10000
        assert priced.wallet_payment_cents == 80000
        assert priced.total_discount_cents == 20000


# =============================================================================
# INPUT VALIDATION AND DETERMINISM
# =============================================================================

class TestInputs:
    def test_cart_subtotal(self):
        lines = [CartLine(1, 12000, 2), CartLine(2, 3500, 3)]
        assert cart_subtotal(lines) == 34500

    @pytest.mark.parametrize("line", [CartLine(1, 1000, 0), CartLine(1, 1000, -1), CartLine(1, -5, 1)])
    def test_malformed_lines_rejected(self, line):
        with pytest.raises(ValidationError):
            cart_subtotal([line])

    def test_negative_points_rejected(self):
        with pytest.raises(ValidationError):
            _price(1000, requested_points=-1)

    def test_same_inputs_same_result(self):
        lines = [CartLine(1, 12000, 2)]
        kwargs = dict(
            delivery_threshold_cents=THRESHOLD, delivery_fee_cents=FEE, now=NOW,
            coupon=_pct(2000, max_discount_cents=3000),
            requested_points=150, available_points=150, point_value_cents=25, min_redeem_points=100,
            wallet_available_cents=2000,
        )
        first = price_order(subtotal_cents=cart_subtotal(lines), **kwargs)
        assert price_order(subtotal_cents=cart_subtotal(lines), **kwargs) == first

    def test_to_dict_shape(self):
        data = _price(45000, coupon=_pct(1000, is_active=False)).to_dict()
        assert data["coupon_rejection"] == {"code": COUPON_INACTIVE, "message": "Invalid coupon code"}
        assert data["points_rejection"] is None
        assert data["total_discount_cents"] == 0

    def test_format_rupees(self):
        assert format_rupees(4000) == "₹40.00"
