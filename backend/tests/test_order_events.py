"""
Order event feed tests: publish on commit only, scoping, overflow and the SSE framing.
"""

import json

import pytest

from kirana.extensions import db, order_events
from kirana.models import Order
from kirana.routes.orders import _event_stream, _event_scope
from kirana.services import checkout_service, order_service
from kirana.services.order_events import (
    OrderEvent,
    OrderEventBroker,
    queue_order_event,
    pending_order_events,
    for_order,
    for_customer,
    for_delivery_agent,
    all_orders,
    EVENT_CREATED,
    EVENT_STATUS_CHANGED,
    EVENT_ASSIGNED,
    EVENT_DELIVERY_STARTED,
    EVENT_PAYMENT_STATUS_CHANGED,
)
from kirana.services.order_service import OrderNotAllowed

from conftest import cart, actor_for


@pytest.fixture
def feed():
    sub = order_events.subscribe(all_orders())
    yield sub
    sub.close()


def _order(user, addr, **kwargs):
    kwargs.setdefault("payment_method", "cod")
    return checkout_service.place_order(user_id=user.id, address_id=addr.id, lines=cart((50000, 1)), **kwargs)


def _event(order_id=1, user_id=10, agent=None, previous=None, status="confirmed", version=0):
    return OrderEvent(
        order_id=order_id, user_id=user_id, event_type=EVENT_STATUS_CHANGED,
        status=status, payment_status="pending",
        assigned_delivery_boy=agent, previous_delivery_boy=previous,
        version=version,
    )


class TestPublishOnCommit:
    def test_checkout_publishes_created(self, db_session, customer, address, feed):
        order = _order(customer, address)
        events = feed.drain()
        assert [(e.event_type, e.order_id, e.status) for e in events] == [(EVENT_CREATED, order.id, "pending")]

    def test_rolled_back_checkout_publishes_nothing(self, db_session, customer, address, feed):
        with pytest.raises(Exception):
            _order(customer, address, coupon_code="MISSING")
        assert feed.drain() == []

    def test_rejected_transition_publishes_nothing(self, db_session, customer, address, agent, feed):
        order = _order(customer, address)
        feed.drain()
        with pytest.raises(OrderNotAllowed):
            order_service.accept_delivery(order.id, actor_for(agent))
        assert feed.drain() == []

    def test_events_arrive_in_commit_order(self, db_session, customer, address, admin, agent, feed):
        order = _order(customer, address)
        back_office = actor_for(admin)
        order_service.update_status(order.id, back_office, "confirmed")
        order_service.update_status(order.id, back_office, "processing")
        order_service.assign_delivery_agent(order.id, back_office, agent.id)
        order_service.accept_delivery(order.id, actor_for(agent))
        order_service.start_delivery(order.id, actor_for(agent))
        order_service.update_payment_status(order.id, back_office, "paid")

        events = feed.drain()
        assert [e.event_type for e in events] == [
            EVENT_CREATED,
            EVENT_STATUS_CHANGED,
            EVENT_STATUS_CHANGED,
            EVENT_ASSIGNED,
            EVENT_STATUS_CHANGED,
            EVENT_DELIVERY_STARTED,
            EVENT_PAYMENT_STATUS_CHANGED,
        ]
        sequences = [e.sequence for e in events]
        assert sequences == sorted(sequences)
        versions = [e.version for e in events]
        assert versions[0] == 1
        assert all(a < b for a, b in zip(versions, versions[1:]))
        assert events[1].changes == {"status": ["pending", "confirmed"]}
        assert events[3].assigned_delivery_boy == agent.id

    def test_queue_holds_until_commit(self, db_session, customer, address, feed):
        order = _order(customer, address)
        feed.drain()
        queue_order_event(db.session, order, EVENT_STATUS_CHANGED)
        assert len(pending_order_events(db.session)) == 1
        assert feed.drain() == []

        db.session.rollback()
        assert pending_order_events(db.session) == []
        assert feed.drain() == []


class TestScoping:
    def test_predicates(self):
        ev = _event(order_id=5, user_id=10, agent=20, previous=21)
        assert for_order(5)(ev) and not for_order(6)(ev)
        assert for_customer(10)(ev) and not for_customer(11)(ev)
        assert for_delivery_agent(20)(ev)
        assert for_delivery_agent(21)(ev)
        assert not for_delivery_agent(22)(ev)

    def test_event_scope_by_role(self, db_session, customer, other_customer, address, admin, agent):
        order = _order(customer, address)
        ev = _event(order_id=order.id, user_id=customer.id)

        assert _event_scope(actor_for(admin))(_event(user_id=999))
        assert _event_scope(actor_for(customer))(ev)
        assert not _event_scope(actor_for(other_customer))(ev)
        assert not _event_scope(actor_for(agent))(ev)
        with pytest.raises(OrderNotAllowed):
            _event_scope(actor_for(other_customer), order.id)


class TestBroker:
    def test_overflow_flags_subscriber(self):
        broker = OrderEventBroker(max_queue_size=2)
        sub = broker.subscribe(all_orders())
        broker.publish([_event(order_id=i) for i in range(3)])
        assert sub.overflowed
        assert [e.order_id for e in sub.drain()] == [0, 1]

    def test_failing_predicate_skips_only_that_subscriber(self):
        broker = OrderEventBroker()

        def broken(ev):
            raise RuntimeError("bad predicate")

        bad = broker.subscribe(broken)
        good = broker.subscribe(all_orders())
        assert broker.publish([_event()]) == 1
        assert bad.drain() == []
        assert len(good.drain()) == 1

    def test_older_version_than_delivered_is_skipped(self):
        broker = OrderEventBroker()
        sub = broker.subscribe(for_order(1))
        broker.publish([_event(order_id=1, status="processing", version=3)])
        assert broker.publish([_event(order_id=1, status="confirmed", version=2)]) == 0
        broker.publish([_event(order_id=1, status="packed", version=4)])
        assert [(e.version, e.status) for e in sub.drain()] == [(3, "processing"), (4, "packed")]

    def test_versions_tracked_per_order(self):
        broker = OrderEventBroker()
        sub = broker.subscribe(all_orders())
        broker.publish([_event(order_id=1, version=5), _event(order_id=2, version=1)])
        assert [e.order_id for e in sub.drain()] == [1, 2]

    def test_note_reply_advances_order_version(self, db_session, customer, address, admin, feed):
        order = _order(customer, address)
        order_service.update_status(order.id, actor_for(admin), "confirmed")
        order_service.reply_to_note(order.id, actor_for(admin), "Will do")
        versions = [e.version for e in feed.drain()]
        assert versions == sorted(set(versions))
        assert len(versions) == 3

    def test_close_unsubscribes(self):
        broker = OrderEventBroker()
        with broker.subscribe(all_orders()):
            assert broker.subscriber_count == 1
        assert broker.subscriber_count == 0


class TestEventStream:
    def test_frames(self):
        broker = OrderEventBroker()
        sub = broker.subscribe(all_orders())
        broker.publish([_event(order_id=7)])

        frames = list(_event_stream(sub, heartbeat_seconds=0.01, max_events=1))

        assert frames[0] == ": connected\n\n"
        lines = frames[1].strip().split("\n")
        assert lines[0].startswith("id: ")
        assert lines[1] == f"event: {EVENT_STATUS_CHANGED}"
        payload = json.loads(lines[2][len("data: "):])
        assert payload["order_id"] == 7
        assert sub.closed
        assert broker.subscriber_count == 0

    def test_resync_after_overflow(self):
        broker = OrderEventBroker(max_queue_size=1)
        sub = broker.subscribe(all_orders())
        broker.publish([_event(order_id=1), _event(order_id=2)])

        frames = list(_event_stream(sub, heartbeat_seconds=0.01, max_events=1))

        assert frames[1].startswith("event: resync")
        assert '"order_id":1' in frames[2]

    def test_keep_alive_when_idle(self):
        broker = OrderEventBroker()
        sub = broker.subscribe(all_orders())
        stream = _event_stream(sub, heartbeat_seconds=0.01)
        assert next(stream) == ": connected\n\n"
        assert next(stream) == ": keep-alive\n\n"
        stream.close()
        assert sub.closed
