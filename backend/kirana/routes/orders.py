# Overview: Flask API routes for a shopper's orders and the live order feed.

"""
Order API Routes (shopper side, plus the shared event stream)

SECURITY:
- Every route requires an authenticated actor
- Shoppers only see and cancel their own orders
- /events is scoped by role: shoppers -> own orders, delivery agents ->
  assigned orders, admin/staff -> every order
"""

import json

from flask import Blueprint, request, jsonify, g, current_app, Response
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import order_events
from ..services import order_service
from ..services.order_events import Subscription, for_order, for_customer, for_delivery_agent, all_orders
from ..services.order_service import OrderNotFound, OrderNotAllowed, OrderValidationError, Actor
from ..decorators import require_actor


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def order_error_response(exc: Exception):
    """Map order-service exceptions to JSON errors; None if not an order error."""
    if isinstance(exc, OrderNotFound):
        return jsonify({"error": "Order not found"}), 404
    if isinstance(exc, OrderNotAllowed):
        return jsonify({"error": str(exc)}), 403
    if isinstance(exc, OrderValidationError):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, (StaleDataError, OperationalError)):
        return jsonify({"error": "Order was updated by someone else; please retry"}), 409
    return None


def _paging():
    return (
        request.args.get("limit", 50, type=int),
        request.args.get("offset", 0, type=int),
    )


@orders_bp.get("")
@require_actor
def list_my_orders():
    try:
        limit, offset = _paging()
        orders = order_service.list_orders_for_customer(
            g.actor.user_id,
            status=request.args.get("status"),
            limit=limit,
            offset=offset,
        )
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200
    except OrderValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_actor
def get_order_route(order_id: int):
    try:
        order = order_service.get_order_for_actor(order_id, g.actor)
        return jsonify({"order": order_service.order_detail(order)}), 200
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/history")
@require_actor
def get_order_history_route(order_id: int):
    try:
        history = order_service.get_history(order_id, g.actor)
        return jsonify({"history": [h.to_dict() for h in history]}), 200
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to load order history")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
def cancel_order_route(order_id: int):
    """
    Cancel an order.

    Request body (optional):
    {
        "reason": "Ordered by mistake"
    }

    Returns:
        200: Order cancelled; wallet payment and points returned
        403: Not your order, or too late to cancel
        404: Order not found
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.cancel_order(order_id, g.actor, reason=data.get("reason"))
        return jsonify({"order": order.to_dict()}), 200
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Failed to cancel order"}), 500


# =============================================================================
# LIVE FEED (Server-Sent Events)
# =============================================================================

def _event_scope(actor: Actor, order_id: int | None = None):
    """Predicate limiting what this viewer may observe."""
    if order_id is not None:
        order = order_service.get_order_for_actor(order_id, actor)
        return for_order(order.id)
    if actor.is_back_office:
        return all_orders()
    if actor.is_delivery_agent:
        return for_delivery_agent(actor.user_id)
    return for_customer(actor.user_id)


def _format_sse(event: str, data: dict, event_id: int | None = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, separators=(',', ':'))}")
    return "\n".join(lines) + "\n\n"


def _event_stream(subscription: Subscription, heartbeat_seconds: float, max_events: int | None = None):
    """
    Yield SSE frames until the client disconnects.

    A `resync` frame tells the viewer it missed events and should refetch.
    max_events bounds the stream (tests).
    """
    sent = 0
    try:
        yield ": connected\n\n"
        while max_events is None or sent < max_events:
            ev = subscription.get(timeout=heartbeat_seconds)
            if subscription.overflowed:
                subscription.overflowed = False
                yield _format_sse("resync", {"reason": "missed_events"})
            if ev is None:
                yield ": keep-alive\n\n"
                continue
            yield _format_sse(ev.event_type, ev.to_dict(), ev.sequence)
            sent += 1
    finally:
        subscription.close()


@orders_bp.get("/events")
@require_actor
def order_events_route():
    """
    Stream order changes visible to the caller.

    Query params:
        order_id: limit the stream to one order (must be visible to caller)
    """
    try:
        predicate = _event_scope(g.actor, request.args.get("order_id", type=int))
    except Exception as e:
        mapped = order_error_response(e)
        if mapped:
            return mapped
        current_app.logger.exception("Failed to open order event stream")
        return jsonify({"error": "Internal server error"}), 500

    subscription = order_events.subscribe(predicate)
    heartbeat = current_app.config["ORDER_EVENT_HEARTBEAT_SECONDS"]
    return Response(
        _event_stream(subscription, heartbeat),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
