# Overview: Service-layer operations for checkout; quotes carts and places orders atomically.

"""
Checkout Service

WHY: Placing an order spends coupon capacity, loyalty points and wallet
balance. All of those are shared with other sessions, so the order and every
ledger mutation must commit together or not at all.

FLOW (place_order, one write transaction):
1. Lock coupon, loyalty account and wallet; re-price from committed values
2. Insert the order (status=pending) and its first status-history row
3. Insert item snapshots
4. Coupon usage row + used_count + 1
5. Redeem points (negative loyalty transaction)
6. Debit wallet payment
7. Attach the customer note
Any exception rolls back all of it.

quote_checkout is the advisory read path: same calculator, no writes. A quote
can go stale; place_order never trusts it.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import Address, Order, OrderItem, OrderNote, OrderStatusHistory, User
from ..models.wallets import TXN_DEBIT, REF_ORDER
from ..validation import ValidationError, coerce_int, coerce_datetime
from . import coupon_service, loyalty_service, wallet_service
from .concurrency import run_with_retry, write_transaction
from .order_events import queue_order_event, EVENT_CREATED
from .order_service import OrderStatus, PaymentStatus, PAYMENT_METHODS, PAYMENT_METHOD_COD
from .pricing import CartLine, PricedOrder, RejectionReason, cart_subtotal, price_order, POINTS_PAUSED
from kirana.time_utils import utcnow

logger = logging.getLogger(__name__)

MAX_LINES = 200
MAX_NOTE_LENGTH = 1000


class CheckoutRejected(Exception):
    """The order cannot be placed as requested (e.g. coupon no longer valid)."""

    def __init__(self, reason: RejectionReason):
        super().__init__(reason.message)
        self.reason = reason


class CheckoutConflict(Exception):
    """Committed balances differ from what the shopper was quoted; re-quote and retry."""
    pass


# =============================================================================
# INPUT PARSING
# =============================================================================

def parse_cart_lines(raw_lines) -> list[CartLine]:
    """Turn JSON cart lines into CartLine values (price is the displayed snapshot)."""
    if not isinstance(raw_lines, list) or not raw_lines:
        raise ValidationError("Your cart is empty")
    if len(raw_lines) > MAX_LINES:
        raise ValidationError(f"A cart may hold at most {MAX_LINES} lines")

    lines = []
    for idx, raw in enumerate(raw_lines, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Line {idx}: must be an object")
        if "unit_price_cents" not in raw or "quantity" not in raw:
            raise ValidationError(f"Line {idx}: unit_price_cents and quantity required")
        product_id = raw.get("product_id")
        variant_id = raw.get("variant_id")
        name = raw.get("name")
        lines.append(CartLine(
            product_id=coerce_int(product_id, "product_id") if product_id is not None else None,
            variant_id=coerce_int(variant_id, "variant_id") if variant_id is not None else None,
            name=str(name).strip()[:255] if name else None,
            unit_price_cents=coerce_int(raw["unit_price_cents"], f"line {idx} unit_price_cents"),
            quantity=coerce_int(raw["quantity"], f"line {idx} quantity"),
        ))
    # Validates quantity/price ranges
    cart_subtotal(lines)
    return lines


def _delivery_config() -> tuple[int, int]:
    cfg = current_app.config
    return cfg["DELIVERY_FREE_THRESHOLD_CENTS"], cfg["DELIVERY_FEE_CENTS"]


def _requested_points(value) -> int:
    if value is None:
        return 0
    points = coerce_int(value, "points")
    if points < 0:
        raise ValidationError("points must be >= 0")
    return points


# =============================================================================
# QUOTE (read-only)
# =============================================================================

def quote_checkout(
    user_id: int,
    lines: list[CartLine],
    *,
    coupon_code: str | None = None,
    requested_points=0,
    use_wallet: bool = False,
    now: datetime | None = None,
) -> PricedOrder:
    """Price the cart against the current store state. Writes nothing."""
    now = now or utcnow()
    subtotal = cart_subtotal(lines)
    points = _requested_points(requested_points)
    threshold, fee = _delivery_config()
    settings = loyalty_service.get_settings()

    terms = None
    missing_coupon = False
    if coupon_code and str(coupon_code).strip():
        coupon = coupon_service.get_coupon_by_code(coupon_code)
        if coupon is None:
            missing_coupon = True
        else:
            terms = coupon_service.coupon_terms(coupon, user_id)

    account = loyalty_service.get_account(user_id)
    wallet = wallet_service.get_wallet(user_id) if use_wallet else None
    paused = bool(points) and not settings.is_active

    priced = price_order(
        subtotal_cents=subtotal,
        delivery_threshold_cents=threshold,
        delivery_fee_cents=fee,
        now=now,
        coupon=terms,
        requested_points=0 if paused else points,
        available_points=account.total_points if account else 0,
        point_value_cents=settings.point_value_cents,
        min_redeem_points=settings.min_redeem_points,
        max_redeem_bps=settings.max_redeem_bps,
        wallet_available_cents=(wallet.balance_cents if wallet else 0) if use_wallet else None,
    )
    if missing_coupon:
        priced = replace(
            priced,
            coupon_code=coupon_service.normalize_code(coupon_code),
            coupon_rejection=coupon_service.not_found_reason(),
        )
    if paused:
        priced = replace(priced, points_requested=points, points_rejection=_points_paused())
    return priced


def _points_paused() -> RejectionReason:
    return RejectionReason(POINTS_PAUSED, "Points redemption is paused")


# =============================================================================
# PLACE ORDER (write transaction)
# =============================================================================

def place_order(
    *,
    user_id: int,
    address_id: int,
    lines: list[CartLine],
    payment_method: str,
    coupon_code: str | None = None,
    requested_points=0,
    use_wallet: bool = False,
    wallet_amount_cents: int | None = None,
    note: str | None = None,
    scheduled_delivery=None,
    expected_total_cents: int | None = None,
) -> Order:
    """
    Commit a priced order together with its ledger mutations.

    Raises:
        ValidationError: malformed input, unknown address
        CheckoutRejected: coupon/points ineligible against committed state
        CheckoutConflict: balances or total moved since the quote
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {sorted(PAYMENT_METHODS)}")
    if not lines:
        raise ValidationError("Your cart is empty")
    address_id = coerce_int(address_id, "address_id")
    subtotal = cart_subtotal(lines)
    points_requested = _requested_points(requested_points)
    if wallet_amount_cents is not None:
        wallet_amount_cents = coerce_int(wallet_amount_cents, "wallet_amount_cents")
        if wallet_amount_cents <= 0:
            raise ValidationError("wallet_amount_cents must be > 0")
        use_wallet = True
    if expected_total_cents is not None:
        expected_total_cents = coerce_int(expected_total_cents, "expected_total_cents")
    if note is not None:
        note = str(note).strip()
        if len(note) > MAX_NOTE_LENGTH:
            raise ValidationError(f"note exceeds max length {MAX_NOTE_LENGTH}")
    scheduled_delivery = coerce_datetime(scheduled_delivery, "scheduled_delivery")
    if scheduled_delivery is not None and scheduled_delivery < utcnow():
        raise ValidationError("scheduled_delivery must be in the future")

    threshold, fee = _delivery_config()

    def _op():
        with write_transaction():
            now = utcnow()
            user = db.session.get(User, user_id)
            if user is None or not user.is_active:
                raise ValidationError("User not found")
            address = db.session.query(Address).filter_by(id=address_id, user_id=user_id).first()
            if address is None:
                raise ValidationError("Please select a delivery address")

            # Locks in a fixed order: coupon, loyalty account, wallet
            coupon = None
            terms = None
            if coupon_code and str(coupon_code).strip():
                coupon = coupon_service.get_coupon_by_code(coupon_code, lock=True)
                if coupon is None:
                    raise CheckoutRejected(coupon_service.not_found_reason())
                terms = coupon_service.coupon_terms(coupon, user_id)

            account = None
            if points_requested:
                account = loyalty_service.get_or_create_account(user_id, lock=True)
                if points_requested > account.total_points:
                    raise CheckoutConflict(
                        f"Only {account.total_points} points available; re-check your order"
                    )

            wallet = None
            wallet_available = None
            if use_wallet:
                wallet = wallet_service.get_or_create_wallet(user_id, lock=True)
                wallet_available = wallet.balance_cents
                if wallet_amount_cents is not None:
                    if wallet_amount_cents > wallet.balance_cents:
                        raise CheckoutConflict("Wallet balance changed; re-check your order")
                    wallet_available = wallet_amount_cents

            settings = loyalty_service.get_settings()
            if points_requested and not settings.is_active:
                raise CheckoutRejected(_points_paused())
            priced = price_order(
                subtotal_cents=subtotal,
                delivery_threshold_cents=threshold,
                delivery_fee_cents=fee,
                now=now,
                coupon=terms,
                requested_points=points_requested,
                available_points=account.total_points if account else 0,
                point_value_cents=settings.point_value_cents,
                min_redeem_points=settings.min_redeem_points,
                max_redeem_bps=settings.max_redeem_bps,
                wallet_available_cents=wallet_available,
            )
            if priced.coupon_rejection is not None:
                raise CheckoutRejected(priced.coupon_rejection)
            if priced.points_rejection is not None:
                raise CheckoutRejected(priced.points_rejection)
            if expected_total_cents is not None and expected_total_cents != priced.final_total_cents:
                raise CheckoutConflict("Order total changed; please review your order")

            if payment_method == PAYMENT_METHOD_COD:
                payment_status = PaymentStatus.PENDING
            else:
                payment_status = PaymentStatus.PENDING_VERIFICATION
            if priced.amount_due_cents == 0 and priced.wallet_payment_cents > 0:
                payment_status = PaymentStatus.PAID

            order = Order(
                user_id=user_id,
                address_id=address.id,
                subtotal_cents=priced.subtotal_cents,
                delivery_fee_cents=priced.delivery_fee_cents,
                coupon_id=coupon.id if coupon is not None else None,
                coupon_discount_cents=priced.coupon_discount_cents,
                points_used=priced.points_used,
                points_discount_cents=priced.points_discount_cents,
                total_price_cents=priced.final_total_cents,
                wallet_payment_cents=priced.wallet_payment_cents,
                amount_due_cents=priced.amount_due_cents,
                payment_method=payment_method,
                payment_status=payment_status.value,
                status=OrderStatus.PENDING.value,
                scheduled_delivery=scheduled_delivery,
                created_at=now,
                updated_at=now,
            )
            db.session.add(order)
            db.session.flush()

            db.session.add(OrderStatusHistory(
                order_id=order.id,
                status=OrderStatus.PENDING.value,
                changed_by=user_id,
                notes="Order placed",
                created_at=now,
            ))

            for line in lines:
                db.session.add(OrderItem(
                    order_id=order.id,
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    name=line.name,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    line_total_cents=line.line_total_cents,
                ))

            if coupon is not None:
                try:
                    coupon_service._record_redemption(
                        coupon,
                        user_id=user_id,
                        order_id=order.id,
                        subtotal_cents=priced.subtotal_cents,
                        discount_cents=priced.coupon_discount_cents,
                    )
                except coupon_service.CouponUnavailable as exc:
                    raise CheckoutRejected(exc.reason)

            if priced.points_used > 0:
                loyalty_service._redeem_for_order(account, priced.points_used, order.id)

            if priced.wallet_payment_cents > 0:
                wallet_service._apply_wallet_entry(
                    wallet, TXN_DEBIT, priced.wallet_payment_cents,
                    reference_type=REF_ORDER,
                    reference_id=order.id,
                    description=f"Payment for order #{order.id}",
                    actor_user_id=user_id,
                )

            if note:
                db.session.add(OrderNote(order_id=order.id, user_note=note))

            db.session.flush()
            queue_order_event(db.session, order, EVENT_CREATED, occurred_at=now)
            return order

    order = run_with_retry(_op)
    logger.info(
        "Order %s placed by user %s: total %d, coupon %d, points %d, wallet %d",
        order.id, user_id, order.total_price_cents, order.coupon_discount_cents,
        order.points_used, order.wallet_payment_cents,
    )
    return order
