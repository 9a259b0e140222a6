from __future__ import annotations

from ..extensions import db
from grc_app.time_utils import to_utc_z


class Merchant(db.Model):
    """
    A business that buys certificate inventory and issues certificates.

    user_ref is the identity provider's principal id; we never store
    credentials. version_id doubles as the merchant's inventory lock: every
    issuance bumps it, so two concurrent issuances cannot both commit against
    the same derived inventory count.
    """
    __tablename__ = "merchants"
    __table_args__ = (
        db.UniqueConstraint("user_ref", name="uq_merchants_user_ref"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_ref = db.Column(db.String(64), nullable=True)
    business_name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Merchant id={self.id} business_name={self.business_name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_ref": self.user_ref,
            "business_name": self.business_name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Member(db.Model):
    """
    A rebate member. timezone is the IANA zone used for every calendar-month
    decision (date mismatch, qualification period lookup, forfeiture).
    """
    __tablename__ = "members"
    __table_args__ = (
        db.UniqueConstraint("user_ref", name="uq_members_user_ref"),
        db.UniqueConstraint("email", name="uq_members_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_ref = db.Column(db.String(64), nullable=True)
    email = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    timezone = db.Column(db.String(64), nullable=False, default="UTC")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Member id={self.id} email={self.email!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_ref": self.user_ref,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "timezone": self.timezone,
            "created_at": to_utc_z(self.created_at),
        }
