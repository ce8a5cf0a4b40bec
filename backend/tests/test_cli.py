"""
CLI command tests (flask system/users/coupons/ledger/orders).
"""

import pytest

from kirana.extensions import db
from kirana.models import User, Role, LoyaltySettings, Coupon
from kirana.models.auth import VALID_ROLES
from kirana.services import wallet_service


@pytest.fixture
def runner(app, db_session):
    return app.test_cli_runner()


def test_system_init_is_idempotent(runner):
    first = runner.invoke(args=["system", "init", "--admin-username", "owner", "--admin-email", "owner@example.com"])
    assert first.exit_code == 0, first.output
    assert "Created admin user: owner" in first.output

    second = runner.invoke(args=["system", "init", "--admin-username", "owner", "--admin-email", "owner@example.com"])
    assert second.exit_code == 0, second.output
    assert "Using existing admin user" in second.output

    assert {r.name for r in db.session.query(Role).all()} == set(VALID_ROLES)
    assert db.session.query(LoyaltySettings).count() == 1
    owner = db.session.query(User).filter_by(username="owner").one()
    assert "admin" in owner.role_names()


def test_users_create_and_grant(runner, setup_roles):
    result = runner.invoke(args=["users", "create", "--username", "ravi", "--email", "ravi@example.com",
                                 "--role", "delivery_boy"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(args=["users", "grant-role", "ravi", "staff"])
    assert result.exit_code == 0, result.output

    ravi = db.session.query(User).filter_by(username="ravi").one()
    assert {"delivery_boy", "staff"} <= set(ravi.role_names())

    dup = runner.invoke(args=["users", "create", "--username", "ravi", "--email", "other@example.com"])
    assert dup.exit_code != 0


def test_coupons_create(runner):
    result = runner.invoke(args=["coupons", "create", "--code", "save20", "--type", "percentage",
                                 "--value", "2000", "--max-discount-cents", "10000"])
    assert result.exit_code == 0, result.output
    assert db.session.query(Coupon).filter_by(code="SAVE20").one().max_discount_cents == 10000

    dup = runner.invoke(args=["coupons", "create", "--code", "SAVE20", "--type", "fixed", "--value", "100"])
    assert dup.exit_code != 0

    listed = runner.invoke(args=["coupons", "list"])
    assert "SAVE20" in listed.output


def test_ledger_verify_detects_drift(runner, customer):
    wallet_service.top_up(customer.id, 5000)
    clean = runner.invoke(args=["ledger", "verify"])
    assert clean.exit_code == 0, clean.output
    assert "PASS wallets" in clean.output

    wallet = wallet_service.get_wallet(customer.id)
    wallet.balance_cents = 9999
    db.session.commit()

    drifted = runner.invoke(args=["ledger", "verify", "--user-id", str(customer.id)])
    assert drifted.exit_code == 1
    assert "FAIL wallets" in drifted.output


def test_orders_list_rejects_unknown_status(runner):
    result = runner.invoke(args=["orders", "list", "--status", "lost"])
    assert result.exit_code != 0
