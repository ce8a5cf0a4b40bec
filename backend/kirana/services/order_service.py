# Overview: Service-layer operations for orders; the order status state machine and its side effects.

"""
Order Lifecycle Service

================================================================================
PURPOSE: Move orders through their lifecycle on behalf of three kinds of actor
(customer, back-office, delivery agent) with one explicit transition table.
================================================================================

STATE MACHINE:
    pending -> confirmed -> processing -> [packed] -> out_for_delivery -> delivered
    any non-terminal state -> cancelled

    out_for_delivery -> out_for_delivery is the delivery-start re-stamp.
    delivered and cancelled are terminal.

WHO MAY DO WHAT:
    customer        cancel own order while pending/confirmed/processing
    admin, staff    any table transition, cancel, assign agent, reply to note
    admin           payment status
    delivery agent  accept / start / deliver, only orders assigned to them

RULES (NON-NEGOTIABLE):
1. Every accepted transition appends exactly one order_status_history row;
   orders.status and orders.updated_at mirror the newest row.
2. Rejected requests write nothing (no mutation, no history row, no event).
3. Cancellation refunds the wallet payment and restores redeemed points.
4. Delivery awards loyalty points and opens the return window.
5. Every committed change queues an order event for live viewers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ..extensions import db
from ..models import Order, OrderNote, OrderStatusHistory, User
from ..models.auth import ROLE_ADMIN, ROLE_STAFF, ROLE_DELIVERY
from ..models.wallets import TXN_CREDIT, REF_REFUND
from . import loyalty_service, wallet_service
from .concurrency import lock_for_update, run_with_retry, write_transaction
from .order_events import (
    queue_order_event,
    EVENT_STATUS_CHANGED,
    EVENT_PAYMENT_STATUS_CHANGED,
    EVENT_ASSIGNED,
    EVENT_DELIVERY_STARTED,
    EVENT_NOTE_UPDATED,
)
from kirana.time_utils import utcnow, minutes_after

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    PACKED = "packed"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PENDING_VERIFICATION = "pending_verification"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


PAYMENT_METHOD_COD = "cod"
PAYMENT_METHOD_ONLINE = "online"
PAYMENT_METHODS = {PAYMENT_METHOD_COD, PAYMENT_METHOD_ONLINE}

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.PACKED, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.PACKED: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)
CUSTOMER_CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING})
BACK_OFFICE_ROLES = frozenset({ROLE_ADMIN, ROLE_STAFF})


class OrderError(Exception):
    """Raised for order operation errors."""
    pass


class OrderNotFound(OrderError):
    pass


class OrderNotAllowed(OrderError):
    """The actor may not do this to this order in its current state."""
    pass


class OrderValidationError(OrderError):
    """The request itself is malformed (unknown status, bad agent)."""
    pass


@dataclass(frozen=True)
class Actor:
    """Who is acting, as established by the authentication collaborator."""
    user_id: int
    roles: frozenset

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, roles=frozenset(user.role_names()))

    @property
    def is_back_office(self) -> bool:
        return bool(self.roles & BACK_OFFICE_ROLES)

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.roles

    @property
    def is_delivery_agent(self) -> bool:
        return ROLE_DELIVERY in self.roles


# =============================================================================
# TRANSITION RULES
# =============================================================================

def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise OrderValidationError(
            f"Invalid status '{value}'. Must be one of: {', '.join(s.value for s in OrderStatus)}"
        )


def parse_payment_status(value) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError:
        raise OrderValidationError(
            f"Invalid payment status '{value}'. Must be one of: {', '.join(s.value for s in PaymentStatus)}"
        )


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in TRANSITIONS[from_status]


def allowed_next_statuses(order: Order) -> list[str]:
    """Targets offered to the back-office UI (the self-transition is the agent's start action)."""
    current = OrderStatus(order.status)
    return [s.value for s in OrderStatus if s in TRANSITIONS[current] and s != current]


def _require_transition(order: Order, to_status: OrderStatus) -> OrderStatus:
    current = OrderStatus(order.status)
    if current in TERMINAL_STATUSES:
        raise OrderNotAllowed(f"Order is already {current.value}")
    if not can_transition(current, to_status):
        raise OrderNotAllowed(f"Cannot move order from {current.value} to {to_status.value}")
    return current


def _require_back_office(actor: Actor) -> None:
    if not actor.is_back_office:
        raise OrderNotAllowed("Only admin or staff can do this")


def _require_assignee(order: Order, actor: Actor) -> None:
    if not actor.is_delivery_agent:
        raise OrderNotAllowed("Only delivery agents can do this")
    if order.assigned_delivery_boy != actor.user_id:
        raise OrderNotAllowed("This order is not assigned to you")


# =============================================================================
# INTERNAL HELPERS (caller holds the write transaction)
# =============================================================================

def _load_locked(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def _record_transition(
    order: Order,
    to_status: OrderStatus,
    *,
    actor_id: int,
    notes: str | None,
    now,
    event_type: str | None = None,
) -> OrderStatusHistory:
    previous = order.status
    order.status = to_status.value
    order.updated_at = now
    row = OrderStatusHistory(
        order_id=order.id,
        status=to_status.value,
        changed_by=actor_id,
        notes=notes,
        created_at=now,
    )
    db.session.add(row)
    db.session.flush()
    if event_type is None:
        event_type = EVENT_DELIVERY_STARTED if previous == to_status.value else EVENT_STATUS_CHANGED
    queue_order_event(
        db.session, order, event_type,
        changes={"status": [previous, to_status.value]},
        occurred_at=now,
    )
    return row


def _reverse_ledgers(order: Order, actor_id: int) -> None:
    """Give back the wallet payment and redeemed points of a cancelled order."""
    if order.wallet_payment_cents:
        wallet = wallet_service.get_or_create_wallet(order.user_id, lock=True)
        wallet_service._apply_wallet_entry(
            wallet, TXN_CREDIT, order.wallet_payment_cents,
            reference_type=REF_REFUND,
            reference_id=order.id,
            description=f"Refund for cancelled order #{order.id}",
            actor_user_id=actor_id,
        )
        if order.amount_due_cents == 0 and order.payment_status == PaymentStatus.PAID.value:
            order.payment_status = PaymentStatus.REFUNDED.value
    if order.points_used:
        account = loyalty_service.get_or_create_account(order.user_id, lock=True)
        loyalty_service._restore_for_order(account, order.points_used, order.id, actor_id)


def _award_delivery_points(order: Order, actor_id: int, now) -> None:
    settings = loyalty_service.get_settings()
    order.can_return_until = minutes_after(now, settings.return_window_minutes)
    if not settings.is_active:
        order.points_earned = 0
        return
    points = loyalty_service.points_for_amount(order.total_price_cents, settings)
    order.points_earned = points
    if points > 0:
        account = loyalty_service.get_or_create_account(order.user_id, lock=True)
        loyalty_service._earn_for_order(account, points, order.id, actor_id)


def _cancel_locked(order: Order, actor: Actor, reason: str | None, now) -> None:
    _require_transition(order, OrderStatus.CANCELLED)
    order.cancel_reason = reason
    note = "Cancelled by customer" if order.user_id == actor.user_id and not actor.is_back_office else "Cancelled"
    if reason:
        note = f"{note}: {reason}"
    _reverse_ledgers(order, actor.user_id)
    _record_transition(order, OrderStatus.CANCELLED, actor_id=actor.user_id, notes=note, now=now)


def _deliver_locked(order: Order, actor: Actor, notes: str | None, now) -> None:
    _require_transition(order, OrderStatus.DELIVERED)
    order.delivered_at = now
    _record_transition(order, OrderStatus.DELIVERED, actor_id=actor.user_id, notes=notes, now=now)
    _award_delivery_points(order, actor.user_id, now)


def _mutate(order_id: int, fn) -> Order:
    """Run fn(order, now) on the locked order inside one write transaction."""
    def _op():
        with write_transaction():
            order = _load_locked(order_id)
            fn(order, utcnow())
            return order

    return run_with_retry(_op)


# =============================================================================
# OPERATIONS
# =============================================================================

def update_status(order_id: int, actor: Actor, new_status, note: str | None = None) -> Order:
    """
    Back-office status change along the transition table.

    cancelled and delivered carry the same side effects as the dedicated
    operations.
    """
    _require_back_office(actor)
    target = parse_status(new_status)

    def _apply(order: Order, now):
        if order.status == target.value:
            raise OrderNotAllowed(f"Order is already {target.value}")
        if target == OrderStatus.CANCELLED:
            _cancel_locked(order, actor, note, now)
        elif target == OrderStatus.DELIVERED:
            _deliver_locked(order, actor, note, now)
        else:
            _require_transition(order, target)
            _record_transition(order, target, actor_id=actor.user_id, notes=note, now=now)

    order = _mutate(order_id, _apply)
    logger.info("Order %s moved to %s by user %s", order_id, target.value, actor.user_id)
    return order


def cancel_order(order_id: int, actor: Actor, reason: str | None = None) -> Order:
    """Customer cancels their own early-stage order, or back-office cancels any live order."""
    reason = reason.strip()[:255] if reason and reason.strip() else None

    def _apply(order: Order, now):
        if not actor.is_back_office:
            if order.user_id != actor.user_id:
                raise OrderNotAllowed("You can only cancel your own orders")
            if OrderStatus(order.status) not in CUSTOMER_CANCELLABLE:
                raise OrderNotAllowed(f"Order can no longer be cancelled (status: {order.status})")
        _cancel_locked(order, actor, reason, now)

    order = _mutate(order_id, _apply)
    logger.info("Order %s cancelled by user %s", order_id, actor.user_id)
    return order


def accept_delivery(order_id: int, actor: Actor) -> Order:
    def _apply(order: Order, now):
        _require_assignee(order, actor)
        if order.delivery_accepted_at is not None:
            raise OrderNotAllowed("Delivery already accepted")
        # The back office may already have moved the order out for delivery.
        _require_transition(order, OrderStatus.OUT_FOR_DELIVERY)
        order.delivery_accepted_at = now
        _record_transition(
            order, OrderStatus.OUT_FOR_DELIVERY,
            actor_id=actor.user_id, notes="Accepted by delivery agent", now=now,
            event_type=EVENT_STATUS_CHANGED,
        )

    return _mutate(order_id, _apply)


def start_delivery(order_id: int, actor: Actor) -> Order:
    """Re-stamp delivery_started_at; status stays out_for_delivery."""
    def _apply(order: Order, now):
        _require_assignee(order, actor)
        if order.delivery_accepted_at is None or order.status != OrderStatus.OUT_FOR_DELIVERY.value:
            raise OrderNotAllowed("Accept the delivery before starting it")
        order.delivery_started_at = now
        _record_transition(
            order, OrderStatus.OUT_FOR_DELIVERY,
            actor_id=actor.user_id, notes="Delivery started", now=now,
        )

    return _mutate(order_id, _apply)


def mark_delivered(order_id: int, actor: Actor) -> Order:
    def _apply(order: Order, now):
        _require_assignee(order, actor)
        _deliver_locked(order, actor, "Delivered", now)

    order = _mutate(order_id, _apply)
    logger.info("Order %s delivered by agent %s", order_id, actor.user_id)
    return order


def assign_delivery_agent(order_id: int, actor: Actor, agent_id) -> Order:
    _require_back_office(actor)
    if agent_id is not None and (isinstance(agent_id, bool) or not isinstance(agent_id, int)):
        raise OrderValidationError("delivery_boy_id must be an integer")

    def _apply(order: Order, now):
        if OrderStatus(order.status) in TERMINAL_STATUSES:
            raise OrderNotAllowed(f"Order is already {order.status}")
        if agent_id is not None:
            agent = db.session.get(User, agent_id)
            if agent is None or not agent.is_active or ROLE_DELIVERY not in agent.role_names():
                raise OrderValidationError("Selected user is not an active delivery agent")
        previous = order.assigned_delivery_boy
        if previous == agent_id:
            return
        order.assigned_delivery_boy = agent_id
        db.session.flush()
        queue_order_event(
            db.session, order, EVENT_ASSIGNED,
            previous_delivery_boy=previous,
            changes={"assigned_delivery_boy": [previous, agent_id]},
            occurred_at=now,
        )

    order = _mutate(order_id, _apply)
    logger.info("Order %s assigned to agent %s by user %s", order_id, agent_id, actor.user_id)
    return order


def update_payment_status(order_id: int, actor: Actor, payment_status) -> Order:
    """Independent of the fulfilment status; admin only."""
    if not actor.is_admin:
        raise OrderNotAllowed("Only admin can change payment status")
    target = parse_payment_status(payment_status)

    def _apply(order: Order, now):
        previous = order.payment_status
        if previous == target.value:
            return
        order.payment_status = target.value
        db.session.flush()
        queue_order_event(
            db.session, order, EVENT_PAYMENT_STATUS_CHANGED,
            changes={"payment_status": [previous, target.value]},
            occurred_at=now,
        )

    order = _mutate(order_id, _apply)
    logger.info("Order %s payment status set to %s by user %s", order_id, target.value, actor.user_id)
    return order


def reply_to_note(order_id: int, actor: Actor, reply: str) -> OrderNote:
    _require_back_office(actor)
    reply = (reply or "").strip()
    if not reply:
        raise OrderValidationError("reply is required")

    def _apply(order: Order, now):
        note = order.note
        if note is None:
            note = OrderNote(order_id=order.id)
            db.session.add(note)
        note.admin_reply = reply
        order.updated_at = now
        db.session.flush()
        queue_order_event(
            db.session, order, EVENT_NOTE_UPDATED,
            changes={"admin_reply": reply},
            occurred_at=now,
        )

    order = _mutate(order_id, _apply)
    return order.note


# =============================================================================
# READS
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def can_view(order: Order, actor: Actor) -> bool:
    if actor.is_back_office:
        return True
    if order.user_id == actor.user_id:
        return True
    return actor.is_delivery_agent and order.assigned_delivery_boy == actor.user_id


def get_order_for_actor(order_id: int, actor: Actor) -> Order:
    order = get_order(order_id)
    if not can_view(order, actor):
        raise OrderNotAllowed("You cannot view this order")
    return order


def order_detail(order: Order) -> dict:
    data = order.to_dict()
    data["items"] = [i.to_dict() for i in order.items]
    data["note"] = order.note.to_dict() if order.note else None
    data["history"] = [h.to_dict() for h in order.status_history]
    data["coupon_code"] = order.coupon.code if order.coupon else None
    data["address"] = order.address.to_dict() if order.address else None
    data["allowed_next_statuses"] = allowed_next_statuses(order)
    return data


def get_history(order_id: int, actor: Actor) -> list[OrderStatusHistory]:
    order = get_order_for_actor(order_id, actor)
    return list(order.status_history)


def _page(q, limit: int, offset: int):
    limit = max(1, min(int(limit or 50), 200))
    offset = max(0, int(offset or 0))
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset).all()


def list_orders_for_customer(user_id: int, *, status: str | None = None, limit: int = 50, offset: int = 0) -> list[Order]:
    q = db.session.query(Order).filter_by(user_id=user_id)
    if status:
        q = q.filter_by(status=parse_status(status).value)
    return _page(q, limit, offset)


def list_orders_for_agent(agent_id: int, *, active_only: bool = False, limit: int = 50, offset: int = 0) -> list[Order]:
    q = db.session.query(Order).filter_by(assigned_delivery_boy=agent_id)
    if active_only:
        q = q.filter(Order.status.notin_([s.value for s in TERMINAL_STATUSES]))
    return _page(q, limit, offset)


def list_orders(
    *,
    status: str | None = None,
    payment_status: str | None = None,
    user_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Order]:
    q = db.session.query(Order)
    if status:
        q = q.filter_by(status=parse_status(status).value)
    if payment_status:
        q = q.filter_by(payment_status=parse_payment_status(payment_status).value)
    if user_id:
        q = q.filter_by(user_id=user_id)
    return _page(q, limit, offset)
