# Overview: Flask API routes for delivery agents; accept, start and complete assigned orders.

from flask import Blueprint, request, jsonify, g, current_app

from ..models.auth import ROLE_DELIVERY
from ..services import order_service
from ..decorators import require_actor, require_role
from .orders import order_error_response


delivery_bp = Blueprint("delivery", __name__, url_prefix="/api/delivery")


@delivery_bp.get("/orders")
@require_actor
@require_role(ROLE_DELIVERY)
def list_assigned_orders_route():
    active_only = request.args.get("active_only", "false").lower() == "true"
    orders = order_service.list_orders_for_agent(
        g.actor.user_id,
        active_only=active_only,
        limit=request.args.get("limit", 50, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"orders": [o.to_dict() for o in orders]}), 200


@delivery_bp.get("/orders/<int:order_id>")
@require_actor
@require_role(ROLE_DELIVERY)
def get_assigned_order_route(order_id: int):
    try:
        order = order_service.get_order_for_actor(order_id, g.actor)
        return jsonify({"order": order_service.order_detail(order)}), 200
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


def _delivery_action(order_id: int, action, label: str):
    try:
        order = action(order_id, g.actor)
        return jsonify({"order": order.to_dict()}), 200
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to %s order %s", label, order_id)
        return jsonify({"error": "Failed to update order"}), 500


@delivery_bp.post("/orders/<int:order_id>/accept")
@require_actor
@require_role(ROLE_DELIVERY)
def accept_route(order_id: int):
    return _delivery_action(order_id, order_service.accept_delivery, "accept")


@delivery_bp.post("/orders/<int:order_id>/start")
@require_actor
@require_role(ROLE_DELIVERY)
def start_route(order_id: int):
    return _delivery_action(order_id, order_service.start_delivery, "start")


@delivery_bp.post("/orders/<int:order_id>/deliver")
@require_actor
@require_role(ROLE_DELIVERY)
def deliver_route(order_id: int):
    return _delivery_action(order_id, order_service.mark_delivered, "deliver")
