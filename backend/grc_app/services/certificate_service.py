# Overview: Service-layer operations for the certificate (GRC) lifecycle; encapsulates business logic and database work.

"""
Certificate Lifecycle Service

================================================================================
PURPOSE: Own the certificate state machine from issuance to completion.
================================================================================

STATE MACHINE:
    pending -> active -> completed
       |
       +-----> expired

    pending:    issued, unclaimed or claimed-and-queued; member_id NULL
    active:     registered by a member with a grocery store; member_id set
    completed:  TERMINAL, monthsRemaining reached 0 by qualified months
    expired:    TERMINAL, never registered within the retention window

RULES (NON-NEGOTIABLE):
1. completed and expired are terminal. Any attempt to change them raises
   StateViolationError.
2. A member has at most one active certificate. The partial unique index
   uq_certificates_one_active_per_member decides at commit time; the
   pre-check here only produces a friendlier error.
3. monthsRemaining drops by exactly one per qualified period, via an atomic
   SQL decrement guarded by status='active' AND months_remaining > 0.
4. Expiry does not return inventory; issuance is final once made.
================================================================================
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..config import get_setting
from ..extensions import db
from ..models import Certificate, Member, MerchantReview, SurveyResponse
from ..validation import ConflictError, NotFoundError, StateViolationError, ValidationError, require_int, require_str
from grc_app.time_utils import local_month, next_month, utcnow
from . import inventory_service, qualification_service, queue_service
from .concurrency import run_with_retry
from .event_service import (
    CERTIFICATE_ACTIVATED,
    CERTIFICATE_COMPLETED,
    CERTIFICATE_EXPIRED,
    append_event,
)


VALID_TRANSITIONS = {
    ("pending", "active"),
    ("pending", "expired"),
    ("active", "active"),      # a qualified month with months left
    ("active", "completed"),
}

MAX_BULK_ROWS = 500


class AlreadyActiveCertificateError(ConflictError):
    """Member already has an active certificate; complete it before activating another."""
    code = "ALREADY_ACTIVE_CERTIFICATE"


def can_transition(from_status: str, to_status: str) -> bool:
    return (from_status, to_status) in VALID_TRANSITIONS


def _require_transition(certificate: Certificate, to_status: str) -> None:
    if certificate.is_terminal:
        raise StateViolationError(
            f"Certificate {certificate.id} is {certificate.status}; it cannot become {to_status}"
        )
    if not can_transition(certificate.status, to_status):
        raise ConflictError(
            f"Certificate {certificate.id} is {certificate.status}; it cannot become {to_status}"
        )


def get_certificate(certificate_id: int) -> Certificate:
    certificate = db.session.get(Certificate, certificate_id)
    if certificate is None:
        raise NotFoundError(f"Certificate {certificate_id} not found")
    return certificate


def get_active_certificate(member_id: int) -> Certificate | None:
    return Certificate.query.filter_by(member_id=member_id, status="active").first()


def list_certificates(*, merchant_id: int | None = None, member_id: int | None = None, status: str | None = None):
    q = Certificate.query
    if merchant_id is not None:
        q = q.filter_by(merchant_id=merchant_id)
    if member_id is not None:
        q = q.filter_by(member_id=member_id)
    if status is not None:
        q = q.filter_by(status=status)
    return q.order_by(Certificate.issued_at.desc(), Certificate.id.desc()).all()


def list_claimable(member: Member) -> list[Certificate]:
    """Pending certificates addressed to the member's email."""
    return (
        Certificate.query.filter_by(status="pending", recipient_email=member.email.lower())
        .order_by(Certificate.issued_at.asc())
        .all()
    )


def _get_member(member_id: int) -> Member:
    member = db.session.get(Member, member_id)
    if member is None:
        raise NotFoundError(f"Member {member_id} not found")
    return member


# =============================================================================
# ISSUANCE
# =============================================================================

def issue_certificate(
    *,
    merchant_id: int,
    denomination: int,
    recipient_email: str | None = None,
    recipient_name: str | None = None,
    issuance_key: str | None = None,
    now: datetime | None = None,
) -> Certificate:
    """Issue one pending certificate, consuming one unit of inventory atomically."""
    return inventory_service.reserve_for_issuance(
        merchant_id=merchant_id,
        denomination=denomination,
        recipient_email=recipient_email,
        recipient_name=recipient_name,
        issuance_key=issuance_key,
        now=now,
    )


def issue_bulk(*, merchant_id: int, rows: list[dict], now: datetime | None = None) -> dict:
    """
    Issue one certificate per row and report each row's outcome.

    The inventory snapshot taken up front is only a fast-fail hint: every row
    that passes it still goes through reserve_for_issuance, which re-checks
    availability inside its own transaction.

    Row shape: {"email": str, "name": str|None, "denomination": int, "issuance_key": str|None}
    """
    if not isinstance(rows, list) or not rows:
        raise ValidationError("rows must be a non-empty list")
    if len(rows) > MAX_BULK_ROWS:
        raise ValidationError(f"At most {MAX_BULK_ROWS} rows per batch")

    snapshot = inventory_service.inventory_snapshot(merchant_id)
    seen_emails: set[str] = set()
    results = []

    for index, row in enumerate(rows, start=1):
        outcome = {"row": index, "email": None, "denomination": None}
        results.append(outcome)
        try:
            if not isinstance(row, dict):
                raise ValidationError("row must be an object")
            email = require_str(row.get("email"), "email").lower()
            outcome["email"] = email
            denomination = inventory_service.validate_denomination(row.get("denomination"))
            outcome["denomination"] = denomination

            if email in seen_emails:
                raise inventory_service.DuplicateRecipientError("Duplicate email in batch")
            seen_emails.add(email)

            if snapshot.get(denomination, 0) < 1:
                raise inventory_service.InsufficientInventoryError(
                    f"Insufficient ${denomination} inventory"
                )

            cert = issue_certificate(
                merchant_id=merchant_id,
                denomination=denomination,
                recipient_email=email,
                recipient_name=row.get("name"),
                issuance_key=row.get("issuance_key"),
                now=now,
            )
            snapshot[denomination] = snapshot.get(denomination, 0) - 1
            outcome.update({"status": "issued", "certificate_id": cert.id})
        except (ValidationError, ConflictError, NotFoundError) as e:
            outcome.update({"status": "error", "code": e.code, "error": str(e)})

    issued = sum(1 for r in results if r["status"] == "issued")
    return {"issued": issued, "failed": len(results) - issued, "results": results}


# =============================================================================
# CLAIM AND REGISTRATION
# =============================================================================

def _check_claimable_by(certificate: Certificate, member: Member) -> None:
    entry = queue_service.queued_entry(certificate.id)
    if entry is not None and entry.member_id != member.id:
        raise ConflictError("This certificate has already been claimed")
    if entry is None and certificate.recipient_email and certificate.recipient_email != member.email.lower():
        raise ConflictError("This certificate was issued to a different email address")


def claim_certificate(*, member_id: int, certificate_id: int, now: datetime | None = None):
    """
    Put a pending certificate addressed to the member into their queue.

    The certificate stays pending with no member id until registration.
    Claiming twice returns the existing queue entry.
    """
    now = now or utcnow()

    def _op():
        member = _get_member(member_id)
        certificate = get_certificate(certificate_id)
        if certificate.status != "pending":
            if certificate.is_terminal:
                raise StateViolationError(f"Certificate {certificate_id} is {certificate.status}")
            raise ConflictError("This certificate is not available for claiming")
        _check_claimable_by(certificate, member)

        entry = queue_service.apply_enqueue(member_id, certificate)
        if get_active_certificate(member_id) is None:
            queue_service.apply_promote_next(member_id, now=now)
        db.session.commit()
        return entry

    try:
        return run_with_retry(_op)
    except IntegrityError:
        # uq_queue_certificate: another member queued it first
        raise ConflictError("This certificate has already been claimed")


def count_words(text: str) -> int:
    return len(text.split())


def _validate_start(start_month, start_year, *, now: datetime, tz_name: str | None) -> tuple[int, int]:
    """Start month must be the member's current local month or the next one."""
    month = require_int(start_month, "start_month", minimum=1, maximum=12)
    year = require_int(start_year, "start_year")
    current = local_month(now, tz_name)
    if (year, month) not in (current, next_month(*current)):
        raise ValidationError("start month must be the current month or next month")
    return year, month


def register(
    *,
    member_id: int,
    certificate_id: int,
    grocery_store: str,
    grocery_store_place_id: str,
    start_month: int,
    start_year: int,
    survey_answers: dict | None = None,
    review_content: str | None = None,
    now: datetime | None = None,
) -> Certificate:
    """
    Activate a pending certificate for a member (pending -> active).

    In one transaction: sets member, store and start month; applies the
    review bonus month; records registration survey and review; removes the
    certificate from the queue; opens the start month's qualification period.

    Raises:
        AlreadyActiveCertificateError: member already has an active certificate,
            including when a concurrent registration won the race
        StateViolationError: certificate is completed or expired
    """
    store = require_str(grocery_store, "grocery_store")
    place_id = require_str(grocery_store_place_id, "grocery_store_place_id")
    if survey_answers is not None and not isinstance(survey_answers, dict):
        raise ValidationError("survey_answers must be an object")
    now = now or utcnow()

    def _op():
        member = _get_member(member_id)
        year, month = _validate_start(start_month, start_year, now=now, tz_name=member.timezone)

        certificate = get_certificate(certificate_id)
        if certificate.status == "active" and certificate.member_id == member_id:
            raise AlreadyActiveCertificateError("This certificate is already active")
        if certificate.status != "pending":
            _require_transition(certificate, "active")
            raise ConflictError("This certificate is not available for registration")
        _check_claimable_by(certificate, member)

        if get_active_certificate(member_id) is not None:
            raise AlreadyActiveCertificateError(
                "You already have an active certificate. Complete it before activating another."
            )

        review = (review_content or "").strip()
        word_count = count_words(review) if review else 0
        bonus = word_count >= int(get_setting("REVIEW_BONUS_MIN_WORDS"))

        certificate.member_id = member_id
        certificate.status = "active"
        certificate.grocery_store = store
        certificate.grocery_store_place_id = place_id
        certificate.start_month = month
        certificate.start_year = year
        certificate.months_remaining = certificate.months_remaining + (1 if bonus else 0)
        certificate.bonus_month_awarded = bonus
        certificate.registered_at = now
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            if get_active_certificate(member_id) is not None:
                raise AlreadyActiveCertificateError(
                    "You already have an active certificate. Complete it before activating another."
                )
            raise

        queue_service.apply_remove(certificate.id)

        if survey_answers:
            survey = qualification_service.active_survey(certificate.merchant_id)
            if survey is not None:
                db.session.add(SurveyResponse(
                    survey_id=survey.id,
                    member_id=member_id,
                    certificate_id=certificate.id,
                    answers=survey_answers,
                ))

        if review:
            db.session.add(MerchantReview(
                merchant_id=certificate.merchant_id,
                member_id=member_id,
                certificate_id=certificate.id,
                content=review,
                word_count=word_count,
                bonus_month_awarded=bonus,
            ))

        qualification_service.open_period(
            member_id=member_id, certificate_id=certificate.id, year=year, month=month
        )

        append_event(
            event_type=CERTIFICATE_ACTIVATED,
            entity_type="certificate",
            entity_id=certificate.id,
            merchant_id=certificate.merchant_id,
            member_id=member_id,
            payload={
                "denomination": certificate.denomination,
                "months_remaining": certificate.months_remaining,
                "bonus_month_awarded": bonus,
                "grocery_store": store,
                "start_month": month,
                "start_year": year,
            },
            occurred_at=now,
        )
        db.session.commit()
        return certificate

    return run_with_retry(_op)


# =============================================================================
# QUALIFIED MONTHS AND COMPLETION
# =============================================================================

def apply_qualified_month(certificate_id: int, *, now: datetime) -> Certificate:
    """
    Consume one month of an active certificate (no commit).

    Called exactly once per qualified period by the qualification tracker.
    When the last month is consumed the certificate completes and the
    member's queue promotes its next certificate.
    """
    certificate = get_certificate(certificate_id)
    if certificate.status != "active":
        raise StateViolationError(
            f"Certificate {certificate_id} is {certificate.status}; a qualified month cannot be applied"
        )

    result = db.session.execute(
        update(Certificate)
        .where(
            Certificate.id == certificate_id,
            Certificate.status == "active",
            Certificate.months_remaining > 0,
        )
        .values(
            months_remaining=Certificate.months_remaining - 1,
            version_id=Certificate.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateViolationError(f"Certificate {certificate_id} has no months left to consume")
    db.session.refresh(certificate)

    if certificate.months_remaining == 0:
        _require_transition(certificate, "completed")
        certificate.status = "completed"
        certificate.completed_at = now
        db.session.flush()

        append_event(
            event_type=CERTIFICATE_COMPLETED,
            entity_type="certificate",
            entity_id=certificate.id,
            merchant_id=certificate.merchant_id,
            member_id=certificate.member_id,
            payload={"denomination": certificate.denomination},
            occurred_at=now,
        )
        queue_service.apply_promote_next(certificate.member_id, now=now)

    return certificate


# =============================================================================
# EXPIRY
# =============================================================================

def apply_expire(certificate: Certificate, *, now: datetime, reason: str) -> bool:
    """pending -> expired (no commit). Returns False when it was no longer pending."""
    _require_transition(certificate, "expired")
    result = db.session.execute(
        update(Certificate)
        .where(Certificate.id == certificate.id, Certificate.status == "pending")
        .values(status="expired", expired_at=now, version_id=Certificate.version_id + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    db.session.refresh(certificate)
    queue_service.apply_remove(certificate.id)
    append_event(
        event_type=CERTIFICATE_EXPIRED,
        entity_type="certificate",
        entity_id=certificate.id,
        merchant_id=certificate.merchant_id,
        payload={"denomination": certificate.denomination, "reason": reason},
        occurred_at=now,
    )
    return True


def expire_stale_certificates(*, now: datetime | None = None, retention_days: int | None = None) -> int:
    """
    Scheduled policy: expire pending certificates issued longer ago than the
    retention window. Inventory is not restored. Returns how many expired.
    """
    now = now or utcnow()
    if retention_days is None:
        retention_days = int(get_setting("PENDING_RETENTION_DAYS"))
    cutoff = now - timedelta(days=retention_days)

    stale_ids = [
        row.id
        for row in db.session.query(Certificate.id)
        .filter(Certificate.status == "pending", Certificate.issued_at <= cutoff)
        .order_by(Certificate.id.asc())
        .all()
    ]

    expired = 0
    for certificate_id in stale_ids:
        def _op(cid=certificate_id):
            certificate = get_certificate(cid)
            if certificate.status != "pending":
                return False
            changed = apply_expire(certificate, now=now, reason="retention_window_elapsed")
            db.session.commit()
            return changed

        if run_with_retry(_op):
            expired += 1
    return expired
