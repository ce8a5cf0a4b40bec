# Overview: Threaded races against a file-backed SQLite database.

"""
Concurrency tests for the ledger-writing services.

Each worker runs in its own thread and app context (and so its own session
and connection). Writers serialize on BEGIN IMMEDIATE; these tests check
that limits and balances hold when requests really overlap.
"""
import os
import tempfile
import threading
import unittest

from kirana import create_app
from kirana.extensions import db, order_events
from kirana.models import Coupon, CouponUsage, Order, WalletTransaction, LoyaltyTransaction, User
from kirana.models.auth import ROLE_ADMIN
from kirana.models.wallets import REF_ORDER
from kirana.services import (
    checkout_service, coupon_service, ledger_service, loyalty_service, order_service, user_service, wallet_service,
)
from kirana.services.checkout_service import CheckoutRejected, CheckoutConflict
from kirana.services.order_events import for_order
from kirana.services.order_service import Actor
from kirana.services.errors import InsufficientBalance
from kirana.services.pricing import CartLine, COUPON_FULLY_REDEEMED, COUPON_USER_LIMIT


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30, "check_same_thread": False}},
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()
            user_service.create_default_roles()

            self.shoppers = []
            for name in ("meena", "arjun", "kavya", "dev"):
                user = user_service.create_user(name, f"{name}@example.com")
                addr = user_service.add_address(user.id, f"{name} house")
                self.shoppers.append((user.id, addr.id))

            coupon = coupon_service.create_coupon({
                "code": "FIRST1",
                "discount_type": "fixed",
                "discount_value": 5000,
                "usage_limit": 1,
            })
            self.coupon_id = coupon.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _race(self, targets):
        """Run callables concurrently; returns (results, errors) in completion order."""
        results, errors = [], []
        lock = threading.Lock()
        barrier = threading.Barrier(len(targets))

        def worker(fn):
            with self.app.app_context():
                try:
                    barrier.wait()
                    value = fn()
                    with lock:
                        results.append(value)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(fn,)) for fn in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results, errors

    def test_coupon_usage_limit_holds_under_race(self):
        def checkout(user_id, address_id):
            def _fn():
                order = checkout_service.place_order(
                    user_id=user_id,
                    address_id=address_id,
                    lines=[CartLine(product_id=1, unit_price_cents=60000, quantity=1)],
                    payment_method="cod",
                    coupon_code="first1",
                )
                return order.id
            return _fn

        results, errors = self._race([checkout(uid, aid) for uid, aid in self.shoppers[:2]])

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], CheckoutRejected)
        self.assertEqual(errors[0].reason.code, COUPON_FULLY_REDEEMED)

        with self.app.app_context():
            coupon = db.session.get(Coupon, self.coupon_id)
            self.assertEqual(coupon.used_count, 1)
            self.assertEqual(db.session.query(CouponUsage).count(), 1)
            self.assertEqual(db.session.query(Order).count(), 1)

    def test_concurrent_debits_never_overdraw(self):
        user_id = self.shoppers[0][0]
        with self.app.app_context():
            wallet_service.top_up(user_id, 10000)

        def debit():
            return wallet_service.debit_wallet(user_id, 6000, reference_type=REF_ORDER).id

        results, errors = self._race([debit, debit, debit])

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), 2)
        for exc in errors:
            self.assertIsInstance(exc, InsufficientBalance)

        with self.app.app_context():
            self.assertEqual(wallet_service.get_wallet(user_id).balance_cents, 4000)
            self.assertEqual(db.session.query(WalletTransaction).count(), 2)
            self.assertTrue(ledger_service.verify_wallet_ledger().ok)

    def test_per_user_limit_holds_for_same_shopper(self):
        user_id, address_id = self.shoppers[0]
        with self.app.app_context():
            coupon_service.create_coupon({
                "code": "ONCEEACH",
                "discount_type": "fixed",
                "discount_value": 2000,
                "per_user_limit": 1,
            })

        def checkout():
            return checkout_service.place_order(
                user_id=user_id,
                address_id=address_id,
                lines=[CartLine(product_id=2, unit_price_cents=60000, quantity=1)],
                payment_method="cod",
                coupon_code="onceeach",
            ).id

        results, errors = self._race([checkout, checkout])

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], CheckoutRejected)
        self.assertEqual(errors[0].reason.code, COUPON_USER_LIMIT)

        with self.app.app_context():
            coupon = coupon_service.get_coupon_by_code("ONCEEACH")
            self.assertEqual(coupon.used_count, 1)
            self.assertEqual(db.session.query(CouponUsage).filter_by(coupon_id=coupon.id).count(), 1)
            self.assertEqual(db.session.query(Order).count(), 1)

    def test_concurrent_point_redemptions_never_overspend(self):
        user_id, address_id = self.shoppers[0]
        with self.app.app_context():
            loyalty_service.admin_adjust_points(user_id, 300, actor_user_id=self.shoppers[1][0], reason="Seed")

        def checkout():
            return checkout_service.place_order(
                user_id=user_id,
                address_id=address_id,
                lines=[CartLine(product_id=3, unit_price_cents=60000, quantity=1)],
                payment_method="cod",
                requested_points=200,
            ).id

        results, errors = self._race([checkout, checkout])

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], CheckoutConflict)

        with self.app.app_context():
            account = loyalty_service.get_account(user_id)
            self.assertEqual(account.total_points, 100)
            self.assertEqual(account.lifetime_earned - account.lifetime_spent, 100)
            self.assertEqual(
                db.session.query(LoyaltyTransaction).filter_by(user_id=user_id).count(), 2,
            )
            self.assertTrue(ledger_service.verify_loyalty_ledger(user_id).ok)

    def test_late_publish_never_overwrites_newer_status(self):
        user_id, address_id = self.shoppers[0]
        with self.app.app_context():
            admin = user_service.create_user("owner", "owner@example.com", roles=(ROLE_ADMIN,))
            admin_id = admin.id
            order_id = checkout_service.place_order(
                user_id=user_id,
                address_id=address_id,
                lines=[CartLine(product_id=4, unit_price_cents=60000, quantity=1)],
                payment_method="cod",
            ).id

        first_committed = threading.Event()
        second_published = threading.Event()
        publish = order_events.publish

        def slow_first_publish(events):
            # Hold the first commit's events until the second commit has published.
            if not first_committed.is_set():
                first_committed.set()
                second_published.wait(timeout=5)
                return publish(events)
            try:
                return publish(events)
            finally:
                second_published.set()

        def move_to(status, wait_for=None):
            def _fn():
                if wait_for is not None:
                    wait_for.wait(timeout=5)
                actor = Actor.from_user(db.session.get(User, admin_id))
                return order_service.update_status(order_id, actor, status).status
            return _fn

        sub = order_events.subscribe(for_order(order_id))
        order_events.publish = slow_first_publish
        try:
            results, errors = self._race([
                move_to("confirmed"),
                move_to("processing", wait_for=first_committed),
            ])
        finally:
            del order_events.publish
            sub.close()

        self.assertEqual(errors, [])
        self.assertEqual(sorted(results), ["confirmed", "processing"])
        received = [(ev.version, ev.status) for ev in sub.drain()]
        self.assertEqual([status for _, status in received], ["processing"])
        self.assertEqual(received[-1][0], 3)


if __name__ == "__main__":
    unittest.main()
