from __future__ import annotations

from flask import Blueprint, jsonify, request, current_app

from ..decorators import require_actor, require_role
from ..models.auth import ROLE_ADMIN
from ..services import coupon_service
from ..validation import ValidationError, ConflictError

coupons_bp = Blueprint("coupons", __name__, url_prefix="/api/admin/coupons")


@coupons_bp.route("", methods=["GET"])
@require_actor
@require_role(ROLE_ADMIN)
def list_coupons():
    active_only = request.args.get("active_only", "false").lower() == "true"
    coupons = coupon_service.list_coupons(active_only=active_only)
    return jsonify({"coupons": [c.to_dict() for c in coupons]})


@coupons_bp.route("", methods=["POST"])
@require_actor
@require_role(ROLE_ADMIN)
def create_coupon():
    try:
        coupon = coupon_service.create_coupon(request.get_json(silent=True) or {})
        return jsonify({"coupon": coupon.to_dict()}), 201
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.route("/<int:coupon_id>", methods=["GET"])
@require_actor
@require_role(ROLE_ADMIN)
def get_coupon(coupon_id: int):
    coupon = coupon_service.get_coupon(coupon_id)
    if not coupon:
        return jsonify({"error": "Not found"}), 404
    data = coupon.to_dict()
    data["usage"] = [u.to_dict() for u in coupon_service.usage_for_coupon(coupon_id)]
    return jsonify({"coupon": data})


@coupons_bp.route("/<int:coupon_id>", methods=["PATCH"])
@require_actor
@require_role(ROLE_ADMIN)
def update_coupon(coupon_id: int):
    try:
        coupon = coupon_service.update_coupon(coupon_id, request.get_json(silent=True) or {})
        if not coupon:
            return jsonify({"error": "Not found"}), 404
        return jsonify({"coupon": coupon.to_dict()})
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to update coupon")
        return jsonify({"error": "Internal server error"}), 500
