from __future__ import annotations

from ..extensions import db
from kirana.time_utils import to_utc_z


ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"
ROLE_DELIVERY = "delivery_boy"
ROLE_CUSTOMER = "user"
VALID_ROLES = {ROLE_ADMIN, ROLE_STAFF, ROLE_DELIVERY, ROLE_CUSTOMER}


class User(db.Model):
    """
    Storefront account used for attribution of every order and ledger entry.

    WHY: Credentials and sessions live with the authentication provider; this
    table only mirrors the identity so foreign keys and audit rows resolve.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("username", name="uq_users_username"),
        db.UniqueConstraint("email", name="uq_users_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def role_names(self) -> set[str]:
        return {ur.role.name for ur in self.user_roles}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "phone": self.phone,
            "is_active": self.is_active,
            "roles": sorted(self.role_names()),
            "created_at": to_utc_z(self.created_at),
        }


class Role(db.Model):
    """
    Application role.

    ROLES:
    - admin: back-office owner; payment status, ledgers, coupons, cancellations
    - staff: back-office operator; order status and delivery assignment
    - delivery_boy: final-mile agent; only orders assigned to them
    - user: shopper (implicit for every account)
    """
    __tablename__ = "roles"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(32), nullable=False, unique=True)
    description = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "description": self.description}


class UserRole(db.Model):
    """Many-to-many link between users and roles."""
    __tablename__ = "user_roles"
    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False, index=True)
    granted_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("user_roles", lazy="selectin"))
    role = db.relationship("Role", lazy="joined")
