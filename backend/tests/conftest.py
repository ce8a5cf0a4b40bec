"""
Pytest fixtures for the kirana order engine tests.

Provides an in-memory application, a per-test clean database, role-bearing
users and request header helpers.
"""

import pytest

from kirana import create_app
from kirana.extensions import db
from kirana.models import LoyaltySettings
from kirana.models.auth import ROLE_ADMIN, ROLE_STAFF, ROLE_DELIVERY, ROLE_CUSTOMER
from kirana.services import user_service
from kirana.services.loyalty_service import DEFAULT_SETTINGS
from kirana.services.order_service import Actor
from kirana.services.pricing import CartLine


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ORDER_EVENT_HEARTBEAT_SECONDS': 0.01,
        'ALLOWED_ORIGINS': {'http://localhost:5173'},
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh data for each test (schema is kept)."""
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    db.session.rollback()


@pytest.fixture(scope='function')
def setup_roles(db_session):
    user_service.create_default_roles()


@pytest.fixture(scope='function')
def loyalty_settings(db_session):
    """Persisted default loyalty program (tests tweak fields as needed)."""
    settings = LoyaltySettings(**DEFAULT_SETTINGS)
    db_session.add(settings)
    db_session.commit()
    return settings


@pytest.fixture(scope='function')
def make_user(setup_roles):
    counter = {"n": 0}

    def _make(*roles, username=None):
        counter["n"] += 1
        name = username or f"user{counter['n']}"
        return user_service.create_user(name, f"{name}@example.com", roles=roles or (ROLE_CUSTOMER,))

    return _make


@pytest.fixture(scope='function')
def customer(make_user):
    return make_user(ROLE_CUSTOMER, username="asha")


@pytest.fixture(scope='function')
def other_customer(make_user):
    return make_user(ROLE_CUSTOMER, username="bilal")


@pytest.fixture(scope='function')
def admin(make_user):
    return make_user(ROLE_ADMIN, username="owner")


@pytest.fixture(scope='function')
def staff(make_user):
    return make_user(ROLE_STAFF, username="counter")


@pytest.fixture(scope='function')
def agent(make_user):
    return make_user(ROLE_DELIVERY, username="ravi")


@pytest.fixture(scope='function')
def other_agent(make_user):
    return make_user(ROLE_DELIVERY, username="sunil")


@pytest.fixture(scope='function')
def address(customer):
    return user_service.add_address(customer.id, "12 MG Road, Bengaluru")


@pytest.fixture(scope='function')
def other_address(other_customer):
    return user_service.add_address(other_customer.id, "4 Park Street, Kolkata")


def actor_for(user) -> Actor:
    return Actor.from_user(user)


def auth_headers(user) -> dict:
    """Headers set by the authentication gateway for this user."""
    return {'X-User-Id': str(user.id)}


def cart(*pairs) -> list:
    """cart((price_cents, qty), ...) -> CartLine list."""
    return [
        CartLine(product_id=idx, unit_price_cents=price, quantity=qty, name=f"Item {idx}")
        for idx, (price, qty) in enumerate(pairs, start=1)
    ]
