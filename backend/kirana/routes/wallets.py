# Overview: Flask API routes for a shopper's wallet and loyalty points.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import wallet_service, loyalty_service, ledger_service
from ..services.errors import InsufficientBalance
from ..validation import ValidationError, coerce_int
from ..decorators import require_actor


wallets_bp = Blueprint("wallets", __name__, url_prefix="/api")


# =============================================================================
# WALLET
# =============================================================================

@wallets_bp.get("/wallet")
@require_actor
def get_wallet_route():
    try:
        limit = request.args.get("limit", 50, type=int)
        return jsonify({"wallet": wallet_service.get_wallet_summary(g.actor.user_id, limit=limit)}), 200
    except Exception:
        current_app.logger.exception("Failed to load wallet")
        return jsonify({"error": "Internal server error"}), 500


@wallets_bp.post("/wallet/topup")
@require_actor
def top_up_route():
    """
    Add funds after the shopper paid through the displayed payment QR.

    Request body:
    {
        "amount_cents": 50000,
        "payment_reference": "UPI-REF-123"   (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if "amount_cents" not in data:
            return jsonify({"error": "amount_cents required"}), 400
        txn = wallet_service.top_up(
            g.actor.user_id,
            coerce_int(data["amount_cents"], "amount_cents"),
            payment_reference=data.get("payment_reference"),
        )
        wallet = wallet_service.get_wallet(g.actor.user_id)
        return jsonify({"transaction": txn.to_dict(), "wallet": wallet.to_dict()}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to top up wallet")
        return jsonify({"error": "Failed to add funds"}), 500


# =============================================================================
# LOYALTY
# =============================================================================

@wallets_bp.get("/loyalty")
@require_actor
def get_loyalty_route():
    try:
        limit = request.args.get("limit", 50, type=int)
        return jsonify({"loyalty": loyalty_service.get_account_summary(g.actor.user_id, limit=limit)}), 200
    except Exception:
        current_app.logger.exception("Failed to load loyalty account")
        return jsonify({"error": "Internal server error"}), 500


@wallets_bp.post("/loyalty/convert")
@require_actor
def convert_points_route():
    """
    Convert points into wallet balance.

    Request body:
    {
        "points": 500
    }

    Returns:
        200: {"conversion": {points, amount_cents, total_points, wallet_balance_cents, ...}}
        400: Below minimum, or more points than held
    """
    try:
        data = request.get_json(silent=True) or {}
        if "points" not in data:
            return jsonify({"error": "points required"}), 400
        result = ledger_service.convert_points_to_wallet(g.actor.user_id, coerce_int(data["points"], "points"))
        return jsonify({"conversion": result.to_dict()}), 200
    except InsufficientBalance as e:
        return jsonify({"error": "Not enough points", "available": e.available}), 400
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to convert points")
        return jsonify({"error": "Conversion failed"}), 500
