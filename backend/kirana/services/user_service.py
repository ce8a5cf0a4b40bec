# Overview: Service-layer operations for user identities and roles mirrored from the auth provider.

from __future__ import annotations

from ..extensions import db
from ..models import User, Role, UserRole, Address
from ..models.auth import ROLE_ADMIN, ROLE_STAFF, ROLE_DELIVERY, ROLE_CUSTOMER, VALID_ROLES


DEFAULT_ROLES = [
    (ROLE_ADMIN, "Back-office owner: payments, ledgers, coupons"),
    (ROLE_STAFF, "Back-office operator: order status and delivery assignment"),
    (ROLE_DELIVERY, "Delivery agent: assigned orders only"),
    (ROLE_CUSTOMER, "Shopper"),
]


def create_default_roles() -> None:
    """Create standard roles if they don't exist."""
    for name, desc in DEFAULT_ROLES:
        existing = db.session.query(Role).filter_by(name=name).first()
        if not existing:
            db.session.add(Role(name=name, description=desc))
    db.session.commit()


def create_user(username: str, email: str, *, phone: str | None = None, roles=(ROLE_CUSTOMER,)) -> User:
    """
    Mirror a user from the authentication provider.

    Raises:
        ValueError: username/email taken or unknown role
    """
    username = (username or "").strip()
    email = (email or "").strip().lower()
    if not username or not email:
        raise ValueError("username and email are required")
    if db.session.query(User).filter_by(username=username).first():
        raise ValueError(f"Username {username} already exists")
    if db.session.query(User).filter_by(email=email).first():
        raise ValueError(f"Email {email} already exists")
    unknown = set(roles) - VALID_ROLES
    if unknown:
        raise ValueError(f"Unknown roles: {', '.join(sorted(unknown))}")

    user = User(username=username, email=email, phone=phone, is_active=True)
    db.session.add(user)
    db.session.flush()
    for role_name in roles:
        assign_role(user.id, role_name, commit=False)
    db.session.commit()
    return user


def assign_role(user_id: int, role_name: str, *, commit: bool = True) -> UserRole:
    """Assign role to user."""
    role = db.session.query(Role).filter_by(name=role_name).first()
    if not role:
        raise ValueError(f"Role {role_name} not found")

    existing = db.session.query(UserRole).filter_by(user_id=user_id, role_id=role.id).first()
    if existing:
        return existing

    user_role = UserRole(user_id=user_id, role_id=role.id)
    db.session.add(user_role)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return user_role


def add_address(user_id: int, address: str, *, label: str = "Home", phone: str | None = None) -> Address:
    is_first = db.session.query(Address).filter_by(user_id=user_id).count() == 0
    row = Address(user_id=user_id, label=label, address=address, phone=phone, is_default=is_first)
    db.session.add(row)
    db.session.commit()
    return row
