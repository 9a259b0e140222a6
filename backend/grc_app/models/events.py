from __future__ import annotations

from ..extensions import db
from grc_app.time_utils import to_utc_z


class DomainEvent(db.Model):
    """
    Append-only notification outbox.

    Rows are written in the same transaction as the state change they
    describe and carry only identifiers; rendering is the notifier's job.
    dispatched_at is the only column ever updated.
    """
    __tablename__ = "domain_events"
    __table_args__ = (
        db.Index("ix_domain_events_undispatched", "dispatched_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g. CertificateIssued
    entity_type = db.Column(db.String(64), nullable=False)  # certificate, qualification, receipt
    entity_id = db.Column(db.Integer, nullable=False, index=True)

    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=True, index=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=True, index=True)

    payload = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "merchant_id": self.merchant_id,
            "member_id": self.member_id,
            "payload": self.payload,
            "occurred_at": to_utc_z(self.occurred_at),
            "dispatched_at": to_utc_z(self.dispatched_at),
            "attempts": self.attempts,
        }
