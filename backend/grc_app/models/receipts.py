from __future__ import annotations

from ..extensions import db
from grc_app.time_utils import to_utc_z


RECEIPT_STATUSES = ("pending", "approved", "rejected")


class Receipt(db.Model):
    """
    A grocery receipt submitted against an active certificate.

    period_year/period_month are the member-local calendar month of
    submitted_at; that month decides which qualification period an approval
    feeds. Approved receipts are immutable.

    Duplicate detection: image_hash is unique per member among non-rejected
    receipts (partial unique index, enforced at commit time).
    """
    __tablename__ = "receipts"
    __table_args__ = (
        db.Index(
            "uq_receipts_member_image_hash_open",
            "member_id",
            "image_hash",
            unique=True,
            sqlite_where=db.text("status <> 'rejected' AND image_hash IS NOT NULL"),
            postgresql_where=db.text("status <> 'rejected' AND image_hash IS NOT NULL"),
        ),
        db.UniqueConstraint("replaces_receipt_id", name="uq_receipts_replaces"),
        db.Index("ix_receipts_period", "member_id", "certificate_id", "period_year", "period_month"),
        db.Index("ix_receipts_status_submitted", "status", "submitted_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=False, index=True)
    certificate_id = db.Column(db.Integer, db.ForeignKey("certificates.id"), nullable=False, index=True)

    image_url = db.Column(db.Text, nullable=False)
    image_hash = db.Column(db.String(64), nullable=True)

    # OCR extraction (any of these may be missing)
    amount_cents = db.Column(db.Integer, nullable=True)
    receipt_date = db.Column(db.Date, nullable=True)
    extracted_store_name = db.Column(db.String(255), nullable=True)
    ocr_payload = db.Column(db.JSON, nullable=True)

    # Validator flags
    store_mismatch = db.Column(db.Boolean, nullable=False, default=False)
    date_mismatch = db.Column(db.Boolean, nullable=False, default=False)
    member_override = db.Column(db.Boolean, nullable=False, default=False)
    needs_manual_review = db.Column(db.Boolean, nullable=False, default=False)

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False)
    period_year = db.Column(db.Integer, nullable=False)
    period_month = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    approved_amount_cents = db.Column(db.Integer, nullable=True)
    rejection_reason = db.Column(db.String(100), nullable=True)
    rejection_notes = db.Column(db.Text, nullable=True)
    reupload_allowed_until = db.Column(db.DateTime(timezone=True), nullable=True)
    replaces_receipt_id = db.Column(db.Integer, db.ForeignKey("receipts.id"), nullable=True)

    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_by = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    member = db.relationship("Member", backref=db.backref("receipts", lazy=True))
    certificate = db.relationship("Certificate", backref=db.backref("receipts", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_flagged(self) -> bool:
        return bool(self.store_mismatch or self.date_mismatch or self.member_override)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "certificate_id": self.certificate_id,
            "image_url": self.image_url,
            "amount_cents": self.amount_cents,
            "receipt_date": self.receipt_date.isoformat() if self.receipt_date else None,
            "extracted_store_name": self.extracted_store_name,
            "store_mismatch": self.store_mismatch,
            "date_mismatch": self.date_mismatch,
            "member_override": self.member_override,
            "needs_manual_review": self.needs_manual_review,
            "submitted_at": to_utc_z(self.submitted_at),
            "period_year": self.period_year,
            "period_month": self.period_month,
            "status": self.status,
            "approved_amount_cents": self.approved_amount_cents,
            "rejection_reason": self.rejection_reason,
            "rejection_notes": self.rejection_notes,
            "reupload_allowed_until": to_utc_z(self.reupload_allowed_until),
            "replaces_receipt_id": self.replaces_receipt_id,
            "reviewed_at": to_utc_z(self.reviewed_at),
        }
