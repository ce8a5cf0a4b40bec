from __future__ import annotations

from ..extensions import db
from kirana.time_utils import to_utc_z


class Address(db.Model):
    """Delivery address owned by a user. Geocoding happens upstream."""
    __tablename__ = "addresses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    label = db.Column(db.String(64), nullable=False, default="Home")
    address = db.Column(db.Text, nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("addresses", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "label": self.label,
            "address": self.address,
            "phone": self.phone,
            "is_default": self.is_default,
            "created_at": to_utc_z(self.created_at),
        }
