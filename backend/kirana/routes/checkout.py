# Overview: Flask API routes for checkout; quotes carts and places orders.

"""
Checkout API Routes

DESIGN:
- /quote is advisory and writes nothing; the storefront calls it whenever the
  cart, coupon, points or wallet toggle changes
- /orders re-prices inside one write transaction and commits the order with
  every ledger mutation, or nothing
"""

from flask import Blueprint, request, jsonify, g, current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..services import checkout_service, order_service
from ..services.checkout_service import CheckoutRejected, CheckoutConflict
from ..services.errors import InsufficientBalance
from ..validation import ValidationError
from ..decorators import require_actor


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@checkout_bp.post("/quote")
@require_actor
def quote_route():
    """
    Price a cart.

    Request body:
    {
        "items": [{"product_id": 1, "unit_price_cents": 12000, "quantity": 2}],
        "coupon_code": "save20",       (optional, case-insensitive)
        "points": 200,                 (optional)
        "use_wallet": true             (optional)
    }

    Returns:
        200: {"quote": {...breakdown..., "coupon_rejection": null | {code, message}}}
        400: Malformed cart
    """
    try:
        data = request.get_json(silent=True) or {}
        lines = checkout_service.parse_cart_lines(data.get("items"))
        priced = checkout_service.quote_checkout(
            g.actor.user_id,
            lines,
            coupon_code=data.get("coupon_code"),
            requested_points=data.get("points"),
            use_wallet=_as_bool(data.get("use_wallet", False)),
        )
        return jsonify({"quote": priced.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to quote checkout")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("/orders")
@require_actor
def place_order_route():
    """
    Place an order.

    Request body:
    {
        "address_id": 3,
        "items": [...],
        "payment_method": "cod" | "online",
        "coupon_code": "SAVE20",              (optional)
        "points": 200,                        (optional)
        "use_wallet": true,                   (optional)
        "wallet_amount_cents": 5000,          (optional, partial wallet payment)
        "note": "Ring the bell twice",        (optional)
        "scheduled_delivery": "2026-01-01T10:00:00Z",  (optional)
        "expected_total_cents": 19200         (optional, total shown to shopper)
    }

    Returns:
        201: Order placed
        400: Invalid input, or coupon/points rejected ({"reason": code})
        409: Balances or total changed since the quote
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("address_id") is None:
            return jsonify({"error": "Please select a delivery address"}), 400
        lines = checkout_service.parse_cart_lines(data.get("items"))
        order = checkout_service.place_order(
            user_id=g.actor.user_id,
            address_id=data.get("address_id"),
            lines=lines,
            payment_method=data.get("payment_method", "cod"),
            coupon_code=data.get("coupon_code"),
            requested_points=data.get("points"),
            use_wallet=_as_bool(data.get("use_wallet", False)),
            wallet_amount_cents=data.get("wallet_amount_cents"),
            note=data.get("note"),
            scheduled_delivery=data.get("scheduled_delivery"),
            expected_total_cents=data.get("expected_total_cents"),
        )
        return jsonify({"order": order_service.order_detail(order)}), 201

    except CheckoutRejected as e:
        return jsonify({"error": str(e), "reason": e.reason.code}), 400
    except CheckoutConflict as e:
        return jsonify({"error": str(e)}), 409
    except InsufficientBalance as e:
        return jsonify({"error": str(e), "available": e.available}), 400
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except (StaleDataError, OperationalError):
        current_app.logger.warning("Checkout conflict for user %s after retries", g.actor.user_id)
        return jsonify({"error": "Checkout is busy; please try again"}), 409
    except Exception:
        current_app.logger.exception("Failed to place order")
        return jsonify({"error": "Failed to place order"}), 500
