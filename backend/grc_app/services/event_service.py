# Overview: Service-layer operations for the notification outbox; append inside the domain transaction, dispatch after commit.

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from flask import current_app

from ..extensions import db
from ..models import DomainEvent
from grc_app.time_utils import utcnow
"""
Notification outbox invariants (authoritative)

- Append-only: events are never deleted; only dispatched_at/attempts change.
- Events are written inside the same DB transaction as the state change they
  describe, so a rolled-back operation never notifies anyone.
- Dispatch happens after commit and never while a ledger or qualification
  lock is held; a failing notifier leaves the event for the next run.
- Payloads carry identifiers and small facts only, never rendered content.
"""

CERTIFICATE_ISSUED = "CertificateIssued"
CERTIFICATE_ACTIVATED = "CertificateActivated"
CERTIFICATE_COMPLETED = "CertificateCompleted"
CERTIFICATE_EXPIRED = "CertificateExpired"
NEXT_CERTIFICATE_ELIGIBLE = "NextCertificateEligible"
QUALIFICATION_ACHIEVED = "QualificationAchieved"
RECEIPT_REJECTED = "ReceiptRejected"
REWARD_SENT = "RewardSent"

Notifier = Callable[[DomainEvent], None]


def append_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    merchant_id: int | None = None,
    member_id: int | None = None,
    payload: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
) -> DomainEvent:
    """
    Append an outbox event in the caller's transaction.

    - No commit here; the caller commits with the domain change.
    - occurred_at is business time; created_at is system time (db default).
    """
    ev = DomainEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        merchant_id=merchant_id,
        member_id=member_id,
        payload=payload or {},
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def log_notifier(event: DomainEvent) -> None:
    """Default notifier: record the event in the application log."""
    current_app.logger.info(
        "event %s %s=%s member=%s merchant=%s payload=%s",
        event.event_type,
        event.entity_type,
        event.entity_id,
        event.member_id,
        event.merchant_id,
        event.payload,
    )


def list_undispatched(*, limit: int = 100) -> list[DomainEvent]:
    return (
        DomainEvent.query.filter(DomainEvent.dispatched_at.is_(None))
        .order_by(DomainEvent.id.asc())
        .limit(limit)
        .all()
    )


def dispatch_pending(notifier: Notifier | None = None, *, limit: int = 100) -> int:
    """
    Hand undelivered events to the notifier, oldest first.

    Returns the number delivered. Each event is committed individually so a
    failure part-way through keeps the ones already delivered.
    """
    notifier = notifier or current_app.config.get("EVENT_NOTIFIER") or log_notifier
    delivered = 0
    for event in list_undispatched(limit=limit):
        event.attempts = (event.attempts or 0) + 1
        try:
            notifier(event)
        except Exception:
            current_app.logger.exception("Failed to dispatch event %s (%s)", event.id, event.event_type)
            db.session.commit()
            continue
        event.dispatched_at = utcnow()
        db.session.commit()
        delivered += 1
    return delivered


def list_events_for_entity(entity_type: str, entity_id: int) -> list[DomainEvent]:
    return (
        DomainEvent.query.filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(DomainEvent.id.asc())
        .all()
    )
