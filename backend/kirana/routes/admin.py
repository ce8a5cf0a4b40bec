# Overview: Flask API routes for the back-office; order control, ledger adjustments and loyalty settings.

"""
Back-office API Routes

SECURITY:
- admin and staff: order list/detail, status changes, agent assignment, note replies
- admin only: payment status, wallet and points adjustments, loyalty settings
- All mutations are attributed to the acting user
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import User, UserRole, Role
from ..models.auth import ROLE_ADMIN, ROLE_STAFF, ROLE_DELIVERY
from ..services import order_service, wallet_service, loyalty_service
from ..services.errors import InsufficientBalance
from ..services.loyalty_service import LoyaltyError
from ..services.order_service import OrderValidationError
from ..services.wallet_service import WalletError
from ..validation import ValidationError, coerce_int
from ..decorators import require_actor, require_role
from .orders import order_error_response


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


# =============================================================================
# ORDERS
# =============================================================================

@admin_bp.get("/orders")
@require_actor
@require_role(ROLE_ADMIN, ROLE_STAFF)
def list_orders_route():
    try:
        orders = order_service.list_orders(
            status=request.args.get("status"),
            payment_status=request.args.get("payment_status"),
            user_id=request.args.get("user_id", type=int),
            limit=request.args.get("limit", 50, type=int),
            offset=request.args.get("offset", 0, type=int),
        )
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200
    except OrderValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.get("/orders/<int:order_id>")
@require_actor
@require_role(ROLE_ADMIN, ROLE_STAFF)
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        data = order_service.order_detail(order)
        data["customer"] = order.user.to_dict() if order.user else None
        return jsonify({"order": data}), 200
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.patch("/orders/<int:order_id>/status")
@require_actor
@require_role(ROLE_ADMIN, ROLE_STAFF)
def update_status_route(order_id: int):
    """
    Request body:
    {
        "status": "confirmed",
        "note": "Called customer"   (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if not data.get("status"):
            return jsonify({"error": "status required"}), 400
        order = order_service.update_status(order_id, g.actor, data["status"], note=data.get("note"))
        return jsonify({"order": order.to_dict()}), 200
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Failed to update status"}), 500


@admin_bp.patch("/orders/<int:order_id>/payment-status")
@require_actor
@require_role(ROLE_ADMIN)
def update_payment_status_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        if not data.get("payment_status"):
            return jsonify({"error": "payment_status required"}), 400
        order = order_service.update_payment_status(order_id, g.actor, data["payment_status"])
        return jsonify({"order": order.to_dict()}), 200
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to update payment status")
        return jsonify({"error": "Failed to update payment status"}), 500


@admin_bp.post("/orders/<int:order_id>/assign")
@require_actor
@require_role(ROLE_ADMIN, ROLE_STAFF)
def assign_route(order_id: int):
    """
    Request body:
    {
        "delivery_boy_id": 7    (null to unassign)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if "delivery_boy_id" not in data:
            return jsonify({"error": "delivery_boy_id required"}), 400
        agent_id = data["delivery_boy_id"]
        if agent_id is not None:
            agent_id = coerce_int(agent_id, "delivery_boy_id")
        order = order_service.assign_delivery_agent(order_id, g.actor, agent_id)
        return jsonify({"order": order.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to assign delivery agent")
        return jsonify({"error": "Failed to assign delivery agent"}), 500


@admin_bp.post("/orders/<int:order_id>/note-reply")
@require_actor
@require_role(ROLE_ADMIN, ROLE_STAFF)
def note_reply_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        note = order_service.reply_to_note(order_id, g.actor, data.get("reply"))
        return jsonify({"note": note.to_dict()}), 200
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to reply to order note")
        return jsonify({"error": "Failed to save reply"}), 500


@admin_bp.get("/delivery-agents")
@require_actor
@require_role(ROLE_ADMIN, ROLE_STAFF)
def list_delivery_agents_route():
    agents = (
        db.session.query(User)
        .join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .filter(Role.name == ROLE_DELIVERY, User.is_active.is_(True))
        .order_by(User.username)
        .all()
    )
    return jsonify({"agents": [a.to_dict() for a in agents]}), 200


# =============================================================================
# LEDGER ADJUSTMENTS (admin only)
# =============================================================================

@admin_bp.post("/wallets/<int:user_id>/adjust")
@require_actor
@require_role(ROLE_ADMIN)
def adjust_wallet_route(user_id: int):
    """
    Request body:
    {
        "amount_cents": -5000,     (positive credits, negative debits)
        "reason": "Damaged item goodwill"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if "amount_cents" not in data:
            return jsonify({"error": "amount_cents required"}), 400
        txn = wallet_service.admin_adjust_wallet(
            user_id,
            coerce_int(data["amount_cents"], "amount_cents"),
            actor_user_id=g.actor.user_id,
            reason=data.get("reason"),
        )
        wallet = wallet_service.get_wallet(user_id)
        return jsonify({"transaction": txn.to_dict(), "wallet": wallet.to_dict()}), 200
    except InsufficientBalance as e:
        return jsonify({"error": str(e), "available": e.available}), 400
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except WalletError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to adjust wallet")
        return jsonify({"error": "Adjustment failed"}), 500


@admin_bp.post("/loyalty/<int:user_id>/adjust")
@require_actor
@require_role(ROLE_ADMIN)
def adjust_points_route(user_id: int):
    try:
        data = request.get_json(silent=True) or {}
        if "points" not in data:
            return jsonify({"error": "points required"}), 400
        txn = loyalty_service.admin_adjust_points(
            user_id,
            coerce_int(data["points"], "points"),
            actor_user_id=g.actor.user_id,
            reason=data.get("reason"),
        )
        account = loyalty_service.get_account(user_id)
        return jsonify({"transaction": txn.to_dict(), "account": account.to_dict()}), 200
    except InsufficientBalance as e:
        return jsonify({"error": str(e), "available": e.available}), 400
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LoyaltyError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to adjust points")
        return jsonify({"error": "Adjustment failed"}), 500


@admin_bp.get("/loyalty/settings")
@require_actor
@require_role(ROLE_ADMIN)
def get_loyalty_settings_route():
    return jsonify({"settings": loyalty_service.get_settings().to_dict()}), 200


@admin_bp.put("/loyalty/settings")
@require_actor
@require_role(ROLE_ADMIN)
def update_loyalty_settings_route():
    try:
        settings = loyalty_service.update_settings(request.get_json(silent=True) or {})
        return jsonify({"settings": settings.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to update loyalty settings")
        return jsonify({"error": "Internal server error"}), 500
