# Overview: Service-layer operations for receipt submission and review; encapsulates business logic and database work.

"""
Receipt rules (authoritative)

Submission (member):
- Only against the member's own active certificate, in or after its start month.
- Duplicate image hash (same member, receipt not rejected) -> DuplicateReceiptError,
  checked before anything else and regardless of flags.
- Store/date mismatch without member_override -> NeedsConfirmation result, nothing
  stored, so the caller can re-prompt with the warnings.
- A replacement for a rejected receipt is accepted only strictly before that
  receipt's reupload_allowed_until, and each rejection can be replaced once.
  Resending a rejected image counts as that receipt's replacement even without
  replaces_receipt_id.
- OCR calls happen before this module is entered; nothing here does I/O while
  the transaction is open.

Review (admin):
- pending -> approved | rejected, once. Approved receipts are immutable and feed
  their period exactly once (version_id guards concurrent reviews).
- Rejection requires a reason and opens the reupload window.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from ..config import get_setting
from ..extensions import db
from ..models import Certificate, Member, MonthlyQualification, Receipt
from ..validation import ConflictError, NotFoundError, StateViolationError, ValidationError, optional_str, require_str
from grc_app.time_utils import local_month, utcnow
from . import qualification_service
from .concurrency import run_with_retry
from .event_service import RECEIPT_REJECTED, append_event
from .receipt_validation import OcrResult, ReceiptValidation, validate_for_certificate


REJECTION_REASONS = ("wrong_store", "wrong_date", "amount_too_low", "duplicate", "unreadable", "other")

MAX_BULK_REVIEW = 200


class DuplicateReceiptError(ConflictError):
    """Same receipt image already submitted by this member."""
    code = "DUPLICATE_RECEIPT"


class ReuploadWindowClosedError(ConflictError):
    """The rejected receipt's reupload window has passed."""
    code = "REUPLOAD_WINDOW_CLOSED"


@dataclass
class SubmissionResult:
    """
    Outcome of submit_receipt.

    status is 'accepted' (receipt stored) or 'needs_confirmation' (nothing
    stored; re-submit with member_override=True to accept the warnings).
    """
    status: str
    validation: ReceiptValidation
    receipt: Optional[Receipt] = None

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "validation": self.validation.to_dict(),
            "receipt": self.receipt.to_dict() if self.receipt is not None else None,
        }


def get_receipt(receipt_id: int) -> Receipt:
    receipt = db.session.get(Receipt, receipt_id)
    if receipt is None:
        raise NotFoundError(f"Receipt {receipt_id} not found")
    return receipt


def list_receipts(*, member_id: int | None = None, certificate_id: int | None = None, status: str | None = None):
    q = Receipt.query
    if member_id is not None:
        q = q.filter_by(member_id=member_id)
    if certificate_id is not None:
        q = q.filter_by(certificate_id=certificate_id)
    if status is not None:
        q = q.filter_by(status=status)
    return q.order_by(Receipt.submitted_at.desc(), Receipt.id.desc()).all()


def review_queue(*, limit: int = 100) -> list[Receipt]:
    """Pending receipts, flagged and manual-review ones first, oldest first within each."""
    return (
        Receipt.query.filter_by(status="pending")
        .order_by(
            Receipt.needs_manual_review.desc(),
            Receipt.member_override.desc(),
            Receipt.submitted_at.asc(),
            Receipt.id.asc(),
        )
        .limit(limit)
        .all()
    )


def _open_duplicate(member_id: int, image_hash: str | None) -> Receipt | None:
    if not image_hash:
        return None
    return Receipt.query.filter(
        Receipt.member_id == member_id,
        Receipt.image_hash == image_hash,
        Receipt.status != "rejected",
    ).first()


def _rejected_with_image(member_id: int, image_hash: str | None) -> Receipt | None:
    """The member's latest rejected receipt carrying this image, if any."""
    if not image_hash:
        return None
    return (
        Receipt.query.filter_by(member_id=member_id, image_hash=image_hash, status="rejected")
        .order_by(Receipt.id.desc())
        .first()
    )


def _check_replacement(original_id: int, member_id: int, now: datetime) -> Receipt:
    original = db.session.get(Receipt, original_id)
    if original is None or original.member_id != member_id:
        raise NotFoundError(f"Receipt {original_id} not found")
    if original.status != "rejected":
        raise ValidationError("Only rejected receipts can be replaced")
    if original.reupload_allowed_until is None or not now < original.reupload_allowed_until:
        raise ReuploadWindowClosedError("The reupload window for this receipt has closed")
    if Receipt.query.filter_by(replaces_receipt_id=original_id).first() is not None:
        raise ConflictError("This receipt has already been replaced")
    return original


# =============================================================================
# SUBMISSION
# =============================================================================

def submit_receipt(
    *,
    member_id: int,
    certificate_id: int,
    image_url: str,
    ocr,
    image_hash: str | None = None,
    member_override: bool = False,
    replaces_receipt_id: int | None = None,
    now: datetime | None = None,
) -> SubmissionResult:
    """
    Validate and store a receipt as pending.

    `ocr` is an OcrResult or the OCR service's dict payload. `now` is the
    submission instant; it decides the date check and the period month.
    """
    image_url = require_str(image_url, "image_url", max_len=2048)
    image_hash = optional_str(image_hash, "image_hash", max_len=64)
    if not isinstance(ocr, OcrResult):
        ocr = OcrResult.from_dict(ocr)
    now = now or utcnow()

    def _op():
        member = db.session.get(Member, member_id)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found")
        certificate = db.session.get(Certificate, certificate_id)
        if certificate is None or certificate.member_id != member_id:
            raise NotFoundError(f"Certificate {certificate_id} not found")
        if certificate.status != "active":
            raise ValidationError("Receipts can only be submitted for an active certificate")

        year, month = local_month(now, member.timezone)
        if (year, month) < (certificate.start_year, certificate.start_month):
            raise ValidationError("Receipts cannot be submitted before the certificate's start month")

        if _open_duplicate(member_id, image_hash) is not None:
            raise DuplicateReceiptError("This receipt has already been submitted")

        # Sending a rejected image again is a resubmission for that rejection.
        replaces_id = replaces_receipt_id
        if replaces_id is None:
            rejected = _rejected_with_image(member_id, image_hash)
            if rejected is not None:
                replaces_id = rejected.id
        if replaces_id is not None:
            _check_replacement(replaces_id, member_id, now)

        result = validate_for_certificate(ocr, certificate, submitted_at=now, tz_name=member.timezone)
        if result.has_warnings and not member_override:
            return SubmissionResult(status="needs_confirmation", validation=result)

        period = qualification_service.open_period(
            member_id=member_id, certificate_id=certificate_id, year=year, month=month
        )
        if period.status == "forfeited":
            raise StateViolationError(f"Qualification period {period.id} is forfeited")

        receipt = Receipt(
            member_id=member_id,
            certificate_id=certificate_id,
            image_url=image_url,
            image_hash=image_hash,
            amount_cents=result.amount_cents,
            receipt_date=result.receipt_date,
            extracted_store_name=result.extracted_store_name,
            ocr_payload=ocr.raw or None,
            store_mismatch=result.store_mismatch,
            date_mismatch=result.date_mismatch,
            member_override=result.has_warnings,
            needs_manual_review=result.needs_manual_review,
            submitted_at=now,
            period_year=year,
            period_month=month,
            status="pending",
            replaces_receipt_id=replaces_id,
        )
        db.session.add(receipt)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            if _open_duplicate(member_id, image_hash) is not None:
                raise DuplicateReceiptError("This receipt has already been submitted")
            if replaces_id is not None:
                raise ConflictError("This receipt has already been replaced")
            raise

        if get_setting("AUTO_APPROVE_CLEAN_RECEIPTS") and not result.has_warnings and not result.needs_manual_review:
            _apply_approve(receipt, amount_cents=None, reviewed_by="auto", now=now)

        db.session.commit()
        return SubmissionResult(status="accepted", validation=result, receipt=receipt)

    return run_with_retry(_op)


# =============================================================================
# REVIEW
# =============================================================================

def _apply_approve(receipt: Receipt, *, amount_cents: int | None, reviewed_by: str | None, now: datetime) -> MonthlyQualification:
    amount = receipt.amount_cents if amount_cents is None else amount_cents
    if amount is None:
        raise ValidationError("Receipt has no extracted amount; supply amount_cents to approve")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise ValidationError("amount_cents must be a non-negative integer")

    receipt.status = "approved"
    receipt.approved_amount_cents = amount
    receipt.reviewed_at = now
    receipt.reviewed_by = reviewed_by
    db.session.flush()  # version_id check: a concurrent review loses here

    return qualification_service.record_approval(receipt, now=now)


def approve_receipt(
    receipt_id: int,
    *,
    amount_cents: int | None = None,
    reviewed_by: str | None = None,
    now: datetime | None = None,
) -> Receipt:
    """
    Approve a pending receipt and add its amount to its period.

    amount_cents overrides the OCR amount (admin correction). Approving an
    already approved receipt is a no-op; it is never counted twice.
    """
    now = now or utcnow()

    def _op():
        receipt = get_receipt(receipt_id)
        if receipt.status == "approved":
            return receipt
        if receipt.status == "rejected":
            raise ConflictError(f"Receipt {receipt_id} was rejected; submit a replacement instead")
        _apply_approve(receipt, amount_cents=amount_cents, reviewed_by=reviewed_by, now=now)
        db.session.commit()
        return receipt

    return run_with_retry(_op)


def reject_receipt(
    receipt_id: int,
    *,
    reason: str,
    notes: str | None = None,
    reupload_days: int | None = None,
    reviewed_by: str | None = None,
    now: datetime | None = None,
) -> Receipt:
    """
    Reject a pending receipt and open its reupload window.

    Rejecting an already rejected receipt returns it unchanged.
    """
    if reason not in REJECTION_REASONS:
        raise ValidationError(f"Rejection reason must be one of: {', '.join(REJECTION_REASONS)}")
    notes = optional_str(notes, "notes", max_len=2000)
    if reupload_days is None:
        reupload_days = int(get_setting("REUPLOAD_WINDOW_DAYS"))
    if isinstance(reupload_days, bool) or not isinstance(reupload_days, int) or reupload_days < 0:
        raise ValidationError("reupload_days must be a non-negative integer")
    now = now or utcnow()

    def _op():
        receipt = get_receipt(receipt_id)
        if receipt.status == "rejected":
            return receipt
        if receipt.status == "approved":
            raise ConflictError(f"Receipt {receipt_id} is approved and cannot be changed")

        receipt.status = "rejected"
        receipt.rejection_reason = reason
        receipt.rejection_notes = notes
        receipt.reupload_allowed_until = now + timedelta(days=reupload_days)
        receipt.reviewed_at = now
        receipt.reviewed_by = reviewed_by
        db.session.flush()

        append_event(
            event_type=RECEIPT_REJECTED,
            entity_type="receipt",
            entity_id=receipt.id,
            member_id=receipt.member_id,
            payload={
                "certificate_id": receipt.certificate_id,
                "reason": reason,
                "reupload_allowed_until": receipt.reupload_allowed_until.isoformat(),
            },
            occurred_at=now,
        )
        db.session.commit()
        return receipt

    return run_with_retry(_op)


def bulk_review(
    receipt_ids: list[int],
    *,
    action: str,
    reason: str | None = None,
    notes: str | None = None,
    reviewed_by: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Approve or reject many receipts; each id succeeds or fails on its own."""
    if action not in ("approve", "reject"):
        raise ValidationError("action must be 'approve' or 'reject'")
    if not isinstance(receipt_ids, list) or not receipt_ids:
        raise ValidationError("receipt_ids must be a non-empty list")
    if len(receipt_ids) > MAX_BULK_REVIEW:
        raise ValidationError(f"At most {MAX_BULK_REVIEW} receipts per batch")
    if action == "reject" and reason not in REJECTION_REASONS:
        raise ValidationError(f"Rejection reason must be one of: {', '.join(REJECTION_REASONS)}")
    now = now or utcnow()

    results = []
    for receipt_id in receipt_ids:
        try:
            if action == "approve":
                receipt = approve_receipt(receipt_id, reviewed_by=reviewed_by, now=now)
            else:
                receipt = reject_receipt(receipt_id, reason=reason, notes=notes, reviewed_by=reviewed_by, now=now)
            results.append({"id": receipt_id, "status": "ok", "receipt_status": receipt.status})
        except (ValidationError, ConflictError, NotFoundError, StateViolationError) as e:
            results.append({"id": receipt_id, "status": "error", "code": e.code, "error": str(e)})

    succeeded = sum(1 for r in results if r["status"] == "ok")
    return {"succeeded": succeeded, "failed": len(results) - succeeded, "results": results}
