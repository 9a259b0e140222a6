# Overview: Service-layer operations for reward fulfillment; encapsulates business logic and database work.

"""
Fulfillment rules (authoritative)

- A reward can be marked sent only for a 'qualified' period.
- Marking is a conditional UPDATE ... WHERE reward_sent_at IS NULL, so a
  duplicate click (or a retried request) is a no-op success that keeps the
  first timestamp and tracking code.
- Summary views are read-only projections; nothing here is cached.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, update

from ..config import get_setting
from ..extensions import db
from ..models import Certificate, Member, MonthlyQualification
from ..validation import ConflictError, NotFoundError, ValidationError, optional_str
from grc_app.time_utils import utcnow
from .concurrency import run_with_retry
from .event_service import REWARD_SENT, append_event


MAX_BULK_REWARDS = 500


def _get_period(period_id: int) -> MonthlyQualification:
    period = db.session.get(MonthlyQualification, period_id)
    if period is None:
        raise NotFoundError(f"Qualification period {period_id} not found")
    return period


def mark_reward_sent(period_id: int, *, tracking_code: str | None = None, now: datetime | None = None) -> MonthlyQualification:
    """
    Record that a qualified period's reward went out.

    Idempotent: a period already marked sent is returned unchanged.

    Raises:
        ConflictError: the period is not qualified
    """
    tracking_code = optional_str(tracking_code, "tracking_code", max_len=100)
    now = now or utcnow()

    def _op():
        period = _get_period(period_id)
        if period.reward_sent_at is not None:
            return period
        if period.status != "qualified":
            raise ConflictError(f"Qualification period {period_id} is not qualified")

        result = db.session.execute(
            update(MonthlyQualification)
            .where(
                MonthlyQualification.id == period_id,
                MonthlyQualification.status == "qualified",
                MonthlyQualification.reward_sent_at.is_(None),
            )
            .values(reward_sent_at=now, reward_tracking_code=tracking_code)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            append_event(
                event_type=REWARD_SENT,
                entity_type="qualification",
                entity_id=period_id,
                member_id=period.member_id,
                payload={
                    "certificate_id": period.certificate_id,
                    "year": period.year,
                    "month": period.month,
                    "amount_cents": int(get_setting("MONTHLY_REBATE_CENTS")),
                    "tracking_code": tracking_code,
                },
                occurred_at=now,
            )
        db.session.commit()
        db.session.refresh(period)
        return period

    return run_with_retry(_op)


def bulk_mark_sent(
    period_ids: list[int],
    *,
    tracking_codes: dict | None = None,
    now: datetime | None = None,
) -> dict:
    """Mark many rewards sent; tracking_codes maps period id (int or str) to a code."""
    if not isinstance(period_ids, list) or not period_ids:
        raise ValidationError("qualification_ids must be a non-empty list")
    if len(period_ids) > MAX_BULK_REWARDS:
        raise ValidationError(f"At most {MAX_BULK_REWARDS} rewards per batch")
    tracking_codes = tracking_codes or {}
    now = now or utcnow()

    results = []
    for period_id in period_ids:
        code = tracking_codes.get(period_id, tracking_codes.get(str(period_id)))
        try:
            period = mark_reward_sent(period_id, tracking_code=code, now=now)
            results.append({"id": period_id, "status": "ok", "reward_sent_at": period.to_dict()["reward_sent_at"]})
        except (ValidationError, ConflictError, NotFoundError) as e:
            results.append({"id": period_id, "status": "error", "code": e.code, "error": str(e)})

    updated = sum(1 for r in results if r["status"] == "ok")
    return {"updated": updated, "failed": len(results) - updated, "results": results}


def list_rewards(
    *,
    state: str = "pending",
    year: int | None = None,
    month: int | None = None,
    limit: int = 200,
) -> list[dict]:
    """Qualified periods, filtered by fulfillment state ('pending', 'sent' or 'all')."""
    if state not in ("pending", "sent", "all"):
        raise ValidationError("state must be 'pending', 'sent' or 'all'")

    q = (
        db.session.query(MonthlyQualification, Member, Certificate)
        .join(Member, Member.id == MonthlyQualification.member_id)
        .join(Certificate, Certificate.id == MonthlyQualification.certificate_id)
        .filter(MonthlyQualification.status == "qualified")
    )
    if state == "pending":
        q = q.filter(MonthlyQualification.reward_sent_at.is_(None))
    elif state == "sent":
        q = q.filter(MonthlyQualification.reward_sent_at.isnot(None))
    if year is not None:
        q = q.filter(MonthlyQualification.year == year)
    if month is not None:
        q = q.filter(MonthlyQualification.month == month)

    rows = q.order_by(MonthlyQualification.qualified_at.asc(), MonthlyQualification.id.asc()).limit(limit).all()
    return [
        {
            **period.to_dict(),
            "member_email": member.email,
            "member_name": " ".join(p for p in (member.first_name, member.last_name) if p) or None,
            "merchant_id": certificate.merchant_id,
            "denomination": certificate.denomination,
        }
        for period, member, certificate in rows
    ]


def fulfillment_summary(*, now: datetime | None = None) -> dict:
    """Pending count, sent-this-month count and total pending value in cents."""
    now = now or utcnow()
    month_start = datetime(now.year, now.month, 1)

    pending = (
        db.session.query(func.count(MonthlyQualification.id))
        .filter(
            MonthlyQualification.status == "qualified",
            MonthlyQualification.reward_sent_at.is_(None),
        )
        .scalar()
        or 0
    )
    sent_this_month = (
        db.session.query(func.count(MonthlyQualification.id))
        .filter(MonthlyQualification.reward_sent_at >= month_start)
        .scalar()
        or 0
    )
    return {
        "pending_count": int(pending),
        "sent_this_month": int(sent_this_month),
        "total_pending_value_cents": int(pending) * int(get_setting("MONTHLY_REBATE_CENTS")),
    }
