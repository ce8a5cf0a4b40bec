# Overview: Order change feed; fans committed order mutations out to live subscribers.

"""
Order Event Feed

================================================================================
PURPOSE: Let the customer order page, admin order list and delivery dashboard
observe order changes without polling.
================================================================================

FLOW:
    service mutates order -> queue_order_event(session, order, ...)
    session commits       -> after_commit publishes queued events in order
    session rolls back    -> queued events are discarded

RULES:
1. Only committed changes are published (nothing leaks from a rollback).
2. Every event carries the order row version it was taken at. Publishing
   happens after the write lock is released, so a slower commit can reach
   the broker late; a subscription drops any event older than the newest
   one it already holds for that order, so viewers never step backwards.
3. Delivery is best-effort. A subscriber whose queue is full loses the event
   and is flagged `overflowed`; the viewer is expected to refetch.
4. Subscriptions are scoped by predicate (single order, customer, delivery
   agent, everything). The broker never interprets payloads.

The broker is an in-process transport. Anything exposing
subscribe(predicate) / publish(event) can replace it (database change feed,
message broker) without touching the services that queue events.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from typing import Callable, Iterator, Optional

from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session

from kirana.time_utils import to_utc_z

logger = logging.getLogger(__name__)

_PENDING_KEY = "kirana.pending_order_events"

EVENT_CREATED = "order.created"
EVENT_STATUS_CHANGED = "order.status_changed"
EVENT_PAYMENT_STATUS_CHANGED = "order.payment_status_changed"
EVENT_ASSIGNED = "order.assigned"
EVENT_DELIVERY_STARTED = "order.delivery_started"
EVENT_NOTE_UPDATED = "order.note_updated"


@dataclass(frozen=True)
class OrderEvent:
    """Snapshot of an order change, taken before commit."""
    order_id: int
    user_id: int
    event_type: str
    status: str
    payment_status: str
    assigned_delivery_boy: Optional[int] = None
    previous_delivery_boy: Optional[int] = None
    occurred_at: Optional[datetime] = None
    changes: dict = field(default_factory=dict)
    version: int = 0
    sequence: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["occurred_at"] = to_utc_z(self.occurred_at)
        return data


OrderPredicate = Callable[[OrderEvent], bool]


def for_order(order_id: int) -> OrderPredicate:
    return lambda ev: ev.order_id == order_id


def for_customer(user_id: int) -> OrderPredicate:
    return lambda ev: ev.user_id == user_id


def for_delivery_agent(agent_id: int) -> OrderPredicate:
    # Reassignment away from an agent is still shown to them once.
    return lambda ev: agent_id in (ev.assigned_delivery_boy, ev.previous_delivery_boy)


def all_orders() -> OrderPredicate:
    return lambda ev: True


class Subscription:
    """
    One viewer's filtered stream of order events.

    Iterating blocks until the next event; get(timeout) returns None when
    nothing arrived in time (callers use this for heartbeats).
    """

    def __init__(self, broker: "OrderEventBroker", predicate: OrderPredicate, max_size: int):
        self._broker = broker
        self._predicate = predicate
        self._queue: queue.Queue[OrderEvent] = queue.Queue(maxsize=max_size)
        self._versions: dict[int, int] = {}
        self.closed = False
        self.overflowed = False

    def matches(self, ev: OrderEvent) -> bool:
        return self._predicate(ev)

    def _offer(self, ev: OrderEvent) -> bool:
        # version 0 marks an unversioned snapshot.
        if ev.version:
            if ev.version < self._versions.get(ev.order_id, 0):
                logger.info("Stale order event %s for order %s (version %s) skipped",
                            ev.event_type, ev.order_id, ev.version)
                return False
            self._versions[ev.order_id] = ev.version
        try:
            self._queue.put_nowait(ev)
        except queue.Full:
            self.overflowed = True
            logger.warning("Order event %s for order %s dropped: subscriber queue full",
                           ev.event_type, ev.order_id)
        return True

    def get(self, timeout: float | None = None) -> Optional[OrderEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[OrderEvent]:
        """Return everything currently queued without blocking."""
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broker.unsubscribe(self)

    def __iter__(self) -> Iterator[OrderEvent]:
        while not self.closed:
            ev = self.get(timeout=0.5)
            if ev is not None:
                yield ev

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class OrderEventBroker:
    """In-process publish/subscribe hub for order events."""

    def __init__(self, max_queue_size: int = 256):
        self.max_queue_size = max_queue_size
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)

    def subscribe(self, predicate: OrderPredicate, max_queue_size: int | None = None) -> Subscription:
        sub = Subscription(self, predicate, max_queue_size or self.max_queue_size)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, events: list[OrderEvent]) -> int:
        """
        Deliver committed events to every matching subscription.

        Returns the number of (event, subscription) deliveries attempted.
        A failing predicate only skips that subscriber.
        """
        delivered = 0
        with self._lock:
            for ev in events:
                ev = replace(ev, sequence=next(self._sequence))
                for sub in list(self._subscriptions):
                    try:
                        if not sub.matches(ev):
                            continue
                    except Exception:
                        logger.exception("Order event predicate failed for order %s", ev.order_id)
                        continue
                    if sub._offer(ev):
                        delivered += 1
        return delivered


# ================================================================================
# SESSION HOOKS
# ================================================================================

def queue_order_event(
    session: Session,
    order,
    event_type: str,
    *,
    previous_delivery_boy: int | None = None,
    changes: dict | None = None,
    occurred_at: datetime | None = None,
) -> OrderEvent:
    """
    Snapshot `order` and hold the event until the session commits.

    The order must already be flushed (it needs an id and its new version).
    """
    ev = OrderEvent(
        order_id=order.id,
        user_id=order.user_id,
        event_type=event_type,
        status=order.status,
        payment_status=order.payment_status,
        assigned_delivery_boy=order.assigned_delivery_boy,
        previous_delivery_boy=previous_delivery_boy,
        occurred_at=occurred_at or order.updated_at,
        changes=dict(changes or {}),
        version=order.version_id or 0,
    )
    session.info.setdefault(_PENDING_KEY, []).append(ev)
    return ev


def pending_order_events(session: Session) -> list[OrderEvent]:
    return list(session.info.get(_PENDING_KEY, []))


@sa_event.listens_for(Session, "after_commit")
def _publish_after_commit(session: Session) -> None:
    events = session.info.pop(_PENDING_KEY, None)
    if not events:
        return
    from ..extensions import order_events

    try:
        order_events.publish(events)
    except Exception:
        # The commit already happened; viewers recover with a refetch.
        logger.exception("Failed to publish %d order events", len(events))


@sa_event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)
