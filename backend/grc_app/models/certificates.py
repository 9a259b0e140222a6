from __future__ import annotations

from ..extensions import db
from grc_app.time_utils import to_utc_z


CERTIFICATE_STATUSES = ("pending", "active", "completed", "expired")
TERMINAL_CERTIFICATE_STATUSES = frozenset({"completed", "expired"})

PAYMENT_METHODS = ("bank_account", "zelle", "business_check")
PAYMENT_STATUSES = ("pending", "confirmed", "failed")


class CertificatePurchase(db.Model):
    """
    Inventory ledger fact: a merchant bought `quantity` certificates of one
    denomination.

    Only payment_status='confirmed' rows count toward inventory. Rows are
    never deleted and quantity/denomination never change after creation;
    confirmation and rejection only settle payment_status.

    external_ref is the caller-supplied purchase id used for idempotent
    recording of already-confirmed purchases.
    """
    __tablename__ = "certificate_purchases"
    __table_args__ = (
        db.UniqueConstraint("merchant_id", "external_ref", name="uq_purchases_merchant_external_ref"),
        db.Index("ix_purchases_merchant_denom_status", "merchant_id", "denomination", "payment_status"),
        db.CheckConstraint("quantity > 0", name="ck_purchases_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)

    denomination = db.Column(db.Integer, nullable=False)  # whole dollars
    quantity = db.Column(db.Integer, nullable=False)
    total_cost_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(32), nullable=False)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    is_trial = db.Column(db.Boolean, nullable=False, default=False)

    external_ref = db.Column(db.String(64), nullable=True)
    payment_notes = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    merchant = db.relationship("Merchant", backref=db.backref("purchases", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "denomination": self.denomination,
            "quantity": self.quantity,
            "total_cost_cents": self.total_cost_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "is_trial": self.is_trial,
            "external_ref": self.external_ref,
            "payment_notes": self.payment_notes,
            "rejection_reason": self.rejection_reason,
            "confirmed_at": to_utc_z(self.confirmed_at),
            "created_at": to_utc_z(self.created_at),
        }


class Certificate(db.Model):
    """
    An issued grocery rebate certificate (GRC).

    A row exists ONLY once a merchant issues it; unissued stock lives in
    CertificatePurchase. Status is the source of truth; member_id is kept
    consistent with it by the same transaction that flips status:

        pending   -> member_id NULL
        active    -> member_id set
        completed -> member_id set, months_remaining == 0
        expired   -> member_id NULL (never claimed)

    At most one active certificate per member is enforced at commit time by a
    partial unique index.
    """
    __tablename__ = "certificates"
    __table_args__ = (
        db.Index(
            "uq_certificates_one_active_per_member",
            "member_id",
            unique=True,
            sqlite_where=db.text("status = 'active'"),
            postgresql_where=db.text("status = 'active'"),
        ),
        db.Index(
            "uq_certificates_open_per_recipient",
            "merchant_id",
            "recipient_email",
            unique=True,
            sqlite_where=db.text("status IN ('pending', 'active') AND recipient_email IS NOT NULL"),
            postgresql_where=db.text("status IN ('pending', 'active') AND recipient_email IS NOT NULL"),
        ),
        db.UniqueConstraint("merchant_id", "issuance_key", name="uq_certificates_merchant_issuance_key"),
        db.Index("ix_certificates_merchant_denom", "merchant_id", "denomination"),
        db.CheckConstraint("months_remaining >= 0", name="ck_certificates_months_non_negative"),
        db.CheckConstraint(
            "(status IN ('pending', 'expired') AND member_id IS NULL)"
            " OR (status IN ('active', 'completed') AND member_id IS NOT NULL)",
            name="ck_certificates_member_matches_status",
        ),
        db.CheckConstraint(
            "status <> 'completed' OR months_remaining = 0",
            name="ck_certificates_completed_at_zero",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=True, index=True)

    denomination = db.Column(db.Integer, nullable=False)  # whole dollars
    cost_per_cert_cents = db.Column(db.Integer, nullable=False)

    recipient_email = db.Column(db.String(255), nullable=True)
    recipient_name = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    months_remaining = db.Column(db.Integer, nullable=False)
    bonus_month_awarded = db.Column(db.Boolean, nullable=False, default=False)

    grocery_store = db.Column(db.String(255), nullable=True)
    grocery_store_place_id = db.Column(db.String(255), nullable=True)
    start_month = db.Column(db.Integer, nullable=True)  # 1-12
    start_year = db.Column(db.Integer, nullable=True)

    issuance_key = db.Column(db.String(64), nullable=True)

    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)
    registered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expired_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    merchant = db.relationship("Merchant", backref=db.backref("certificates", lazy=True))
    member = db.relationship("Member", backref=db.backref("certificates", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CERTIFICATE_STATUSES

    def __repr__(self) -> str:
        return f"<Certificate id={self.id} status={self.status} denomination={self.denomination}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "member_id": self.member_id,
            "denomination": self.denomination,
            "cost_per_cert_cents": self.cost_per_cert_cents,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "status": self.status,
            "months_remaining": self.months_remaining,
            "bonus_month_awarded": self.bonus_month_awarded,
            "grocery_store": self.grocery_store,
            "grocery_store_place_id": self.grocery_store_place_id,
            "start_month": self.start_month,
            "start_year": self.start_year,
            "issued_at": to_utc_z(self.issued_at),
            "registered_at": to_utc_z(self.registered_at),
            "completed_at": to_utc_z(self.completed_at),
            "expired_at": to_utc_z(self.expired_at),
        }


class CertificateQueueEntry(db.Model):
    """
    A member's preferred activation order for claimed-but-pending certificates.

    A certificate sits in at most one queue; the entry is removed in the same
    transaction that moves the certificate out of 'pending'.
    """
    __tablename__ = "certificate_queue_entries"
    __table_args__ = (
        db.UniqueConstraint("certificate_id", name="uq_queue_certificate"),
        db.Index("ix_queue_member_order", "member_id", "sort_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=False, index=True)
    certificate_id = db.Column(db.Integer, db.ForeignKey("certificates.id"), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    # Set when promote_next picks this entry as the next one to register.
    eligible_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    certificate = db.relationship("Certificate")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "certificate_id": self.certificate_id,
            "sort_order": self.sort_order,
            "eligible_at": to_utc_z(self.eligible_at),
        }
