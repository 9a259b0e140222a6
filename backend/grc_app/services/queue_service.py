# Overview: Service-layer operations for the pending-certificate activation queue; encapsulates business logic and database work.

"""
Activation queue rules (authoritative)

- A member's queue orders certificates that are still 'pending' and that the
  member has claimed. The order is advisory until promote_next consumes it.
- A certificate leaving 'pending' (register or expire) leaves the queue in the
  same transaction.
- promote_next never activates anything. It marks the head entry eligible so
  the member can register it with a store of their choice.
- Only the head can be eligible; reordering moves eligibility to the new head.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import Certificate, CertificateQueueEntry
from ..validation import ValidationError
from grc_app.time_utils import utcnow
from .concurrency import run_with_retry
from .event_service import NEXT_CERTIFICATE_ELIGIBLE, append_event


def _ordered_entries(member_id: int) -> list[CertificateQueueEntry]:
    return (
        CertificateQueueEntry.query.filter_by(member_id=member_id)
        .order_by(CertificateQueueEntry.sort_order.asc(), CertificateQueueEntry.id.asc())
        .all()
    )


def list_queue(member_id: int) -> list[CertificateQueueEntry]:
    """The member's queue, head first, restricted to still-pending certificates."""
    return [e for e in _ordered_entries(member_id) if e.certificate.status == "pending"]


def _has_active(member_id: int) -> bool:
    return (
        db.session.query(Certificate.id)
        .filter_by(member_id=member_id, status="active")
        .first()
        is not None
    )


def queued_entry(certificate_id: int) -> CertificateQueueEntry | None:
    return CertificateQueueEntry.query.filter_by(certificate_id=certificate_id).first()


def apply_enqueue(member_id: int, certificate: Certificate) -> CertificateQueueEntry:
    """Append a claimed pending certificate to the tail of the member's queue (no commit)."""
    existing = queued_entry(certificate.id)
    if existing is not None:
        return existing

    tail = (
        db.session.query(func.max(CertificateQueueEntry.sort_order))
        .filter(CertificateQueueEntry.member_id == member_id)
        .scalar()
    )
    entry = CertificateQueueEntry(
        member_id=member_id,
        certificate_id=certificate.id,
        sort_order=0 if tail is None else tail + 1,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def apply_remove(certificate_id: int) -> None:
    """Drop the certificate from whichever queue holds it (no commit)."""
    CertificateQueueEntry.query.filter_by(certificate_id=certificate_id).delete(synchronize_session=False)


def reorder(member_id: int, ordered_certificate_ids: list[int], *, now: datetime | None = None) -> list[CertificateQueueEntry]:
    """
    Persist the member's preferred activation order.

    Listed certificates come first, in the given order; queued certificates
    not mentioned keep their relative order after them. Eligibility follows
    the head: a displaced head loses it, and a new head gains it while the
    member has nothing active.
    """
    if not isinstance(ordered_certificate_ids, list):
        raise ValidationError("certificate_ids must be a list")
    if len(set(ordered_certificate_ids)) != len(ordered_certificate_ids):
        raise ValidationError("certificate_ids must not contain duplicates")
    now = now or utcnow()

    def _op():
        entries = _ordered_entries(member_id)
        by_cert = {e.certificate_id: e for e in entries}

        unknown = [cid for cid in ordered_certificate_ids if cid not in by_cert]
        if unknown:
            raise ValidationError(
                f"Certificate(s) not in your queue: {', '.join(str(c) for c in unknown)}"
            )

        listed_ids = set(ordered_certificate_ids)
        listed = [by_cert[cid] for cid in ordered_certificate_ids]
        rest = [e for e in entries if e.certificate_id not in listed_ids]
        for index, entry in enumerate(listed + rest):
            entry.sort_order = index

        queue = list_queue(member_id)
        for entry in queue[1:]:
            entry.eligible_at = None
        if queue and not _has_active(member_id):
            apply_promote_next(member_id, now=now)

        db.session.commit()
        return list_queue(member_id)

    return run_with_retry(_op)


def apply_promote_next(member_id: int, *, now: datetime) -> CertificateQueueEntry | None:
    """
    Mark the head of the member's queue eligible for registration (no commit).

    No-op (returns None) when the member has no queued pending certificate.
    """
    queue = list_queue(member_id)
    if not queue:
        return None

    head = queue[0]
    if head.eligible_at is None:
        head.eligible_at = now
        db.session.flush()
        append_event(
            event_type=NEXT_CERTIFICATE_ELIGIBLE,
            entity_type="certificate",
            entity_id=head.certificate_id,
            merchant_id=head.certificate.merchant_id,
            member_id=member_id,
            payload={"denomination": head.certificate.denomination},
            occurred_at=now,
        )
    return head


def promote_next(member_id: int, *, now: datetime | None = None) -> CertificateQueueEntry | None:
    """
    Promote the next queued certificate when the member has nothing active.

    Invoked on completion, or directly for a member with no active
    certificate and at least one pending one.
    """
    now = now or utcnow()

    def _op():
        if _has_active(member_id):
            return None
        head = apply_promote_next(member_id, now=now)
        db.session.commit()
        return head

    return run_with_retry(_op)
