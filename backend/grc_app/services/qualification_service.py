# Overview: Service-layer operations for monthly qualification periods; encapsulates business logic and database work.

"""
Monthly Qualification Tracker

================================================================================
PURPOSE: Aggregate approved receipts per (member, certificate, month, year) and
decide when a month qualifies for its rebate.
================================================================================

STATE MACHINE (forward only):

    in_progress -> receipts_complete -> qualified
         |                 |
         +--> pending_review (flagged receipt approved; admin must confirm)
         |
         +--> forfeited (window closed without qualifying)

    in_progress:        approved_total < target
    receipts_complete:  approved_total >= target, required survey missing
    pending_review:     a flagged receipt was approved; waits for confirm_review
    qualified:          TERMINAL for the period; decrements the certificate once
    forfeited:          TERMINAL; certificate months are NOT decremented

RULES (NON-NEGOTIABLE):
1. approved_total_cents only grows, and only via an atomic SQL increment.
2. qualified requires approved_total_cents >= MONTHLY_TARGET_CENTS.
3. The move to qualified is a conditional UPDATE (WHERE status not in
   qualified/forfeited), so exactly one caller wins and decrements the
   certificate exactly once.
4. Nothing reads the wall clock: every operation takes `now` from its caller.

TRANSACTIONS:
- Functions prefixed with apply_/open_ run inside the caller's transaction and
  never commit.
- Public operations (complete_survey, confirm_review, forfeit, sweeps) own
  their transaction and commit.
================================================================================
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..config import get_setting
from ..extensions import db
from ..models import Certificate, Member, MonthlyQualification, Survey, SurveyResponse
from ..validation import NotFoundError, StateViolationError, ValidationError
from grc_app.time_utils import local_month, month_end_utc, utcnow
from .concurrency import run_with_retry
from .event_service import QUALIFICATION_ACHIEVED, append_event


TERMINAL_PERIOD_STATUSES = ("qualified", "forfeited")
SWEEPABLE_PERIOD_STATUSES = ("in_progress", "receipts_complete")


def monthly_target_cents() -> int:
    return int(get_setting("MONTHLY_TARGET_CENTS"))


def get_period(period_id: int) -> MonthlyQualification:
    period = db.session.get(MonthlyQualification, period_id)
    if period is None:
        raise NotFoundError(f"Qualification period {period_id} not found")
    return period


def find_period(member_id: int, certificate_id: int, year: int, month: int) -> MonthlyQualification | None:
    return MonthlyQualification.query.filter_by(
        member_id=member_id, certificate_id=certificate_id, year=year, month=month
    ).first()


def list_periods(*, member_id: int | None = None, certificate_id: int | None = None, status: str | None = None):
    q = MonthlyQualification.query
    if member_id is not None:
        q = q.filter_by(member_id=member_id)
    if certificate_id is not None:
        q = q.filter_by(certificate_id=certificate_id)
    if status is not None:
        q = q.filter_by(status=status)
    return q.order_by(MonthlyQualification.year.desc(), MonthlyQualification.month.desc()).all()


def open_period(*, member_id: int, certificate_id: int, year: int, month: int) -> MonthlyQualification:
    """
    Get-or-create the period for (member, certificate, year, month).

    Call this as the FIRST write of an operation. If a concurrent request
    created the same period, the unique constraint fires; the whole
    transaction is rolled back and StaleDataError asks run_with_retry to
    start over, at which point the period is found.
    """
    if month < 1 or month > 12:
        raise ValidationError("month must be between 1 and 12")

    period = find_period(member_id, certificate_id, year, month)
    if period is not None:
        return period

    period = MonthlyQualification(
        member_id=member_id,
        certificate_id=certificate_id,
        year=year,
        month=month,
        approved_total_cents=0,
        status="in_progress",
        open_review_count=0,
    )
    db.session.add(period)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise StaleDataError(
            f"qualification period {member_id}/{certificate_id}/{year}-{month:02d} created concurrently"
        )
    return period


def open_current_month(*, member_id: int, certificate_id: int, now: datetime | None = None) -> MonthlyQualification:
    """
    Explicit month-open for the member's active certificate, in their local month.

    Returns the existing period when the month is already open.
    """
    now = now or utcnow()

    def _op():
        certificate = db.session.get(Certificate, certificate_id)
        if certificate is None or certificate.member_id != member_id:
            raise NotFoundError(f"Certificate {certificate_id} not found")
        if certificate.status != "active":
            raise ValidationError("Qualification periods are only opened for active certificates")
        member = db.session.get(Member, member_id)
        year, month = local_month(now, member.timezone if member else None)
        if (year, month) < (certificate.start_year, certificate.start_month):
            raise ValidationError("The certificate's first month has not started yet")
        period = open_period(member_id=member_id, certificate_id=certificate_id, year=year, month=month)
        db.session.commit()
        return period

    return run_with_retry(_op)


def survey_required(merchant_id: int) -> bool:
    """A merchant's active survey must be completed before a month qualifies."""
    return db.session.query(Survey.id).filter_by(merchant_id=merchant_id, is_active=True).first() is not None


def active_survey(merchant_id: int) -> Survey | None:
    return (
        Survey.query.filter_by(merchant_id=merchant_id, is_active=True)
        .order_by(Survey.id.desc())
        .first()
    )


def _refresh(period: MonthlyQualification) -> MonthlyQualification:
    db.session.refresh(period)
    return period


def _set_status(period: MonthlyQualification, status: str) -> None:
    """Non-terminal status change, guarded against a concurrent terminal move."""
    if period.status == status:
        return
    db.session.execute(
        update(MonthlyQualification)
        .where(
            MonthlyQualification.id == period.id,
            MonthlyQualification.status.notin_(TERMINAL_PERIOD_STATUSES),
        )
        .values(status=status)
        .execution_options(synchronize_session=False)
    )
    _refresh(period)


def _qualify(period: MonthlyQualification, *, now: datetime) -> None:
    """
    Move the period to qualified exactly once.

    Only the caller whose conditional UPDATE hits a row goes on to decrement
    the certificate; a loser simply observes the winner's state.
    """
    result = db.session.execute(
        update(MonthlyQualification)
        .where(
            MonthlyQualification.id == period.id,
            MonthlyQualification.status.notin_(TERMINAL_PERIOD_STATUSES),
            MonthlyQualification.open_review_count == 0,
            MonthlyQualification.approved_total_cents >= monthly_target_cents(),
        )
        .values(status="qualified", qualified_at=now)
        .execution_options(synchronize_session=False)
    )
    _refresh(period)
    if result.rowcount != 1:
        return

    append_event(
        event_type=QUALIFICATION_ACHIEVED,
        entity_type="qualification",
        entity_id=period.id,
        member_id=period.member_id,
        payload={
            "certificate_id": period.certificate_id,
            "year": period.year,
            "month": period.month,
            "approved_total_cents": period.approved_total_cents,
        },
        occurred_at=now,
    )

    from .certificate_service import apply_qualified_month

    apply_qualified_month(period.certificate_id, now=now)


def apply_evaluation(period: MonthlyQualification, *, now: datetime) -> str:
    """
    Recompute the period's status from its facts. Runs in the caller's transaction.

    - unresolved review flag -> pending_review
    - total below target -> in_progress
    - total met, survey required and missing -> receipts_complete
    - total met, survey done or not required -> qualified
    """
    if period.status in TERMINAL_PERIOD_STATUSES:
        return period.status

    if period.open_review_count > 0:
        _set_status(period, "pending_review")
        return period.status

    if period.approved_total_cents < monthly_target_cents():
        _set_status(period, "in_progress")
        return period.status

    certificate = db.session.get(Certificate, period.certificate_id)
    needs_survey = certificate is not None and survey_required(certificate.merchant_id)
    if needs_survey and period.survey_completed_at is None:
        _set_status(period, "receipts_complete")
        return period.status

    # A certificate that already completed has no month left to pay out.
    if certificate is None or certificate.status != "active":
        _set_status(period, "receipts_complete")
        return period.status

    _qualify(period, now=now)
    return period.status


def apply_approval(
    *,
    member_id: int,
    certificate_id: int,
    year: int,
    month: int,
    amount_cents: int,
    flagged: bool,
    now: datetime,
) -> MonthlyQualification:
    """
    Add one approved receipt's amount to its period. Runs in the caller's transaction.

    The increment is done in SQL (approved_total_cents + :amount) so two
    concurrent approvals in the same period cannot lose an update.

    Raises:
        StateViolationError: the period was already forfeited
    """
    if amount_cents < 0:
        raise ValidationError("Approved amount cannot be negative")

    period = open_period(member_id=member_id, certificate_id=certificate_id, year=year, month=month)
    if period.status == "forfeited":
        raise StateViolationError(
            f"Qualification period {period.id} is forfeited; approval cannot be recorded"
        )

    values = {"approved_total_cents": MonthlyQualification.approved_total_cents + amount_cents}
    # A flagged approval after the month already qualified changes nothing but the total.
    if flagged and period.status != "qualified":
        values["open_review_count"] = MonthlyQualification.open_review_count + 1

    result = db.session.execute(
        update(MonthlyQualification)
        .where(
            MonthlyQualification.id == period.id,
            MonthlyQualification.status != "forfeited",
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateViolationError(
            f"Qualification period {period.id} was forfeited concurrently"
        )

    _refresh(period)
    apply_evaluation(period, now=now)
    return period


def record_approval(receipt, *, flagged: bool | None = None, now: datetime | None = None) -> MonthlyQualification:
    """
    Feed an approved receipt into its period (member, certificate, submission month).

    The receipt must already be 'approved'. Runs in the caller's transaction.
    """
    if receipt.status != "approved":
        raise ValidationError("Only approved receipts count toward qualification")
    if receipt.approved_amount_cents is None:
        raise ValidationError("Approved receipt has no amount")
    return apply_approval(
        member_id=receipt.member_id,
        certificate_id=receipt.certificate_id,
        year=receipt.period_year,
        month=receipt.period_month,
        amount_cents=receipt.approved_amount_cents,
        flagged=receipt.is_flagged if flagged is None else flagged,
        now=now or utcnow(),
    )


def evaluate(period_id: int, *, now: datetime | None = None) -> str:
    """Re-evaluate one period and commit. Returns its status."""
    now = now or utcnow()

    def _op():
        period = get_period(period_id)
        status = apply_evaluation(period, now=now)
        db.session.commit()
        return status

    return run_with_retry(_op)


# =============================================================================
# SURVEYS
# =============================================================================

def complete_survey(
    *,
    member_id: int,
    certificate_id: int,
    survey_id: int,
    answers: dict,
    year: int | None = None,
    month: int | None = None,
    now: datetime | None = None,
) -> tuple[SurveyResponse, MonthlyQualification]:
    """
    Record the monthly survey for a period and stamp surveyCompletedAt.

    Answering the same survey twice in one month returns the first response.
    The period defaults to the member's current local month.
    """
    if not isinstance(answers, dict) or not answers:
        raise ValidationError("answers must be a non-empty object")
    now = now or utcnow()

    def _op():
        certificate = db.session.get(Certificate, certificate_id)
        if certificate is None or certificate.member_id != member_id:
            raise NotFoundError(f"Certificate {certificate_id} not found")
        if certificate.status != "active":
            raise ValidationError("Surveys can only be completed for an active certificate")

        survey = db.session.get(Survey, survey_id)
        if survey is None or survey.merchant_id != certificate.merchant_id or not survey.is_active:
            raise NotFoundError(f"Survey {survey_id} not found")

        if year is None or month is None:
            member = db.session.get(Member, member_id)
            p_year, p_month = local_month(now, member.timezone if member else None)
        else:
            p_year, p_month = year, month

        period = open_period(member_id=member_id, certificate_id=certificate_id, year=p_year, month=p_month)
        if period.status == "forfeited":
            raise StateViolationError(f"Qualification period {period.id} is forfeited")

        response = SurveyResponse.query.filter_by(
            survey_id=survey_id, member_id=member_id, year=p_year, month=p_month
        ).first()
        if response is None:
            response = SurveyResponse(
                survey_id=survey_id,
                member_id=member_id,
                certificate_id=certificate_id,
                year=p_year,
                month=p_month,
                answers=answers,
            )
            db.session.add(response)
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                raise StaleDataError("survey response recorded concurrently")

        if period.survey_completed_at is None:
            period.survey_completed_at = now
            db.session.flush()

        apply_evaluation(period, now=now)
        db.session.commit()
        return response, period

    return run_with_retry(_op)


# =============================================================================
# ADMIN DECISIONS
# =============================================================================

def confirm_review(period_id: int, *, now: datetime | None = None) -> MonthlyQualification:
    """
    Admin confirms the flagged receipts of a pending_review period.

    Clears the review flag and re-evaluates; the period may qualify right away.
    """
    now = now or utcnow()

    def _op():
        period = get_period(period_id)
        if period.status == "forfeited":
            raise StateViolationError(f"Qualification period {period_id} is forfeited")
        if period.status == "qualified":
            return period

        db.session.execute(
            update(MonthlyQualification)
            .where(
                MonthlyQualification.id == period_id,
                MonthlyQualification.status.notin_(TERMINAL_PERIOD_STATUSES),
            )
            .values(open_review_count=0)
            .execution_options(synchronize_session=False)
        )
        _refresh(period)
        apply_evaluation(period, now=now)
        db.session.commit()
        return period

    return run_with_retry(_op)


def apply_forfeit(period: MonthlyQualification, *, reason: str, now: datetime) -> bool:
    """Forfeit inside the caller's transaction. Returns True if this call forfeited it."""
    if period.status == "forfeited":
        return False
    if period.status == "qualified":
        raise StateViolationError(f"Qualification period {period.id} is already qualified")

    result = db.session.execute(
        update(MonthlyQualification)
        .where(
            MonthlyQualification.id == period.id,
            MonthlyQualification.status.notin_(TERMINAL_PERIOD_STATUSES),
        )
        .values(status="forfeited", forfeited_at=now, forfeit_reason=reason)
        .execution_options(synchronize_session=False)
    )
    _refresh(period)
    if result.rowcount != 1 and period.status == "qualified":
        raise StateViolationError(f"Qualification period {period.id} qualified concurrently")
    return result.rowcount == 1


def forfeit(period_id: int, *, reason: str | None = None, now: datetime | None = None) -> MonthlyQualification:
    """
    Close a period without a rebate. The certificate's monthsRemaining is untouched.

    Forfeiting an already forfeited period returns it unchanged.
    """
    now = now or utcnow()

    def _op():
        period = get_period(period_id)
        apply_forfeit(period, reason=(reason or "Forfeited by administrator"), now=now)
        db.session.commit()
        return period

    return run_with_retry(_op)


def lapsed_periods(*, now: datetime, grace_days: int | None = None) -> list[MonthlyQualification]:
    """Unfinished periods whose local month closed more than grace_days ago."""
    if grace_days is None:
        grace_days = int(get_setting("FORFEIT_GRACE_DAYS"))

    rows = (
        db.session.query(MonthlyQualification, Member.timezone)
        .join(Member, Member.id == MonthlyQualification.member_id)
        .filter(MonthlyQualification.status.in_(SWEEPABLE_PERIOD_STATUSES))
        .order_by(MonthlyQualification.id.asc())
        .all()
    )
    grace = timedelta(days=grace_days)
    return [
        period
        for period, tz_name in rows
        if month_end_utc(period.year, period.month, tz_name) + grace <= now
    ]


def forfeit_lapsed_periods(*, now: datetime | None = None, grace_days: int | None = None) -> int:
    """
    Scheduled sweep: forfeit in_progress/receipts_complete periods past their window.

    pending_review periods are left for an admin. Returns how many were forfeited.
    """
    now = now or utcnow()
    forfeited = 0
    for period in lapsed_periods(now=now, grace_days=grace_days):
        period_id = period.id

        def _op():
            p = get_period(period_id)
            changed = apply_forfeit(p, reason="Month closed without qualifying", now=now)
            db.session.commit()
            return changed

        try:
            if run_with_retry(_op):
                forfeited += 1
        except StateViolationError:
            # Qualified between the scan and the update; nothing to forfeit.
            continue
    return forfeited
