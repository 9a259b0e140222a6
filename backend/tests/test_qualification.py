"""
Monthly qualification tests.

Verifies:
- A period qualifies once approved totals reach the target
- Flagged approvals hold the period in pending_review until confirmed
- A required survey holds the period in receipts_complete
- Qualifying decrements the certificate exactly once
- Forfeiture is terminal and never decrements
"""

from datetime import datetime

import pytest

from grc_app.models import DomainEvent, MonthlyQualification
from grc_app.services import profile_service, qualification_service, receipt_service
from grc_app.services.event_service import QUALIFICATION_ACHIEVED
from grc_app.validation import NotFoundError, StateViolationError, ValidationError

from conftest import NOW


APRIL = datetime(2026, 4, 8, 12, 0, 0)


@pytest.fixture
def active(merchant, member, activate):
    return activate(merchant, member)


def _approved(member, cert, cents, *, image_hash, store="Safeway", override=False, now=NOW):
    result = receipt_service.submit_receipt(
        member_id=member.id,
        certificate_id=cert.id,
        image_url="https://img.example.com/r.jpg",
        image_hash=image_hash,
        ocr={"amount": f"{cents / 100:.2f}", "receipt_date": now.date().isoformat(), "store_name": store},
        member_override=override,
        now=now,
    )
    return receipt_service.approve_receipt(result.receipt.id, now=now)


def _period():
    return MonthlyQualification.query.one()


class TestAggregation:
    def test_below_target_stays_in_progress(self, member, active):
        _approved(member, active, 6000, image_hash="h1")

        period = _period()
        assert period.approved_total_cents == 6000
        assert period.status == "in_progress"
        assert active.months_remaining == 2

    def test_reaching_target_qualifies_and_decrements(self, member, active):
        _approved(member, active, 6000, image_hash="h1")
        _approved(member, active, 4000, image_hash="h2")

        period = _period()
        assert period.approved_total_cents == 10000
        assert period.status == "qualified"
        assert period.qualified_at == NOW
        assert active.months_remaining == 1
        assert active.status == "active"

    def test_further_approvals_do_not_decrement_again(self, member, active):
        _approved(member, active, 10000, image_hash="h1")
        _approved(member, active, 3000, image_hash="h2")

        period = _period()
        assert period.approved_total_cents == 13000
        assert period.status == "qualified"
        assert active.months_remaining == 1
        assert DomainEvent.query.filter_by(event_type=QUALIFICATION_ACHIEVED).count() == 1

    def test_periods_are_per_month(self, member, active):
        _approved(member, active, 10000, image_hash="h1")
        _approved(member, active, 2000, image_hash="h2", now=APRIL)

        march, april = sorted(MonthlyQualification.query.all(), key=lambda p: p.month)
        assert march.status == "qualified"
        assert april.status == "in_progress"
        assert april.approved_total_cents == 2000

    def test_qualifying_last_month_completes_certificate(self, member, active):
        _approved(member, active, 10000, image_hash="h1")
        _approved(member, active, 10000, image_hash="h2", now=APRIL)

        assert active.status == "completed"
        assert active.months_remaining == 0

    def test_record_approval_requires_approved_receipt(self, member, active):
        result = receipt_service.submit_receipt(
            member_id=member.id,
            certificate_id=active.id,
            image_url="https://img.example.com/r.jpg",
            ocr={"amount": "10.00", "receipt_date": "2026-03-10", "store_name": "Safeway"},
            now=NOW,
        )
        with pytest.raises(ValidationError):
            qualification_service.record_approval(result.receipt, now=NOW)


class TestMonthOpen:
    def test_opens_current_month_once(self, member, active):
        first = qualification_service.open_current_month(member_id=member.id, certificate_id=active.id, now=APRIL)
        second = qualification_service.open_current_month(member_id=member.id, certificate_id=active.id, now=APRIL)

        assert first.id == second.id
        assert (first.year, first.month, first.status) == (2026, 4, "in_progress")
        assert MonthlyQualification.query.count() == 2

    def test_requires_own_certificate(self, active):
        other = profile_service.upsert_member_profile(user_ref="member-2", email="bo@example.com")

        with pytest.raises(NotFoundError):
            qualification_service.open_current_month(member_id=other.id, certificate_id=active.id, now=NOW)

    def test_evaluate_is_stable(self, member, active):
        _approved(member, active, 4000, image_hash="h1")

        assert qualification_service.evaluate(_period().id, now=NOW) == "in_progress"
        assert active.months_remaining == 2


class TestReviewFlags:
    def test_flagged_approval_holds_period(self, member, active):
        _approved(member, active, 12000, image_hash="h1", store="Kroger", override=True)

        period = _period()
        assert period.status == "pending_review"
        assert period.open_review_count == 1
        assert active.months_remaining == 2

    def test_confirm_review_qualifies(self, member, active):
        _approved(member, active, 12000, image_hash="h1", store="Kroger", override=True)

        period = qualification_service.confirm_review(_period().id, now=NOW)

        assert period.status == "qualified"
        assert period.open_review_count == 0
        assert active.months_remaining == 1

    def test_confirm_review_below_target(self, member, active):
        _approved(member, active, 3000, image_hash="h1", store="Kroger", override=True)

        period = qualification_service.confirm_review(_period().id, now=NOW)

        assert period.status == "in_progress"

    def test_flagged_approval_after_qualifying_changes_only_total(self, member, active):
        _approved(member, active, 10000, image_hash="h1")
        _approved(member, active, 2000, image_hash="h2", store="Kroger", override=True)

        period = _period()
        assert period.status == "qualified"
        assert period.open_review_count == 0
        assert period.approved_total_cents == 12000


class TestSurveys:
    @pytest.fixture
    def survey(self, merchant):
        return profile_service.create_survey(
            merchant_id=merchant.id, title="March check-in", questions=["How was your visit?"]
        )

    def test_missing_survey_holds_receipts_complete(self, member, active, survey):
        _approved(member, active, 10000, image_hash="h1")

        assert _period().status == "receipts_complete"
        assert active.months_remaining == 2

    def test_completing_survey_qualifies(self, member, active, survey):
        _approved(member, active, 10000, image_hash="h1")

        response, period = qualification_service.complete_survey(
            member_id=member.id,
            certificate_id=active.id,
            survey_id=survey.id,
            answers={"How was your visit?": "Great"},
            now=NOW,
        )

        assert (response.year, response.month) == (2026, 3)
        assert period.survey_completed_at == NOW
        assert period.status == "qualified"
        assert active.months_remaining == 1

    def test_survey_before_receipts(self, member, active, survey):
        qualification_service.complete_survey(
            member_id=member.id, certificate_id=active.id, survey_id=survey.id, answers={"q": "a"}, now=NOW
        )
        assert _period().status == "in_progress"

        _approved(member, active, 10000, image_hash="h1")
        assert _period().status == "qualified"

    def test_survey_answered_once_per_month(self, member, active, survey):
        first, _ = qualification_service.complete_survey(
            member_id=member.id, certificate_id=active.id, survey_id=survey.id, answers={"q": "a"}, now=NOW
        )
        second, _ = qualification_service.complete_survey(
            member_id=member.id, certificate_id=active.id, survey_id=survey.id, answers={"q": "b"}, now=NOW
        )
        assert first.id == second.id

    def test_deactivated_survey_no_longer_required(self, merchant, member, active, survey):
        _approved(member, active, 10000, image_hash="h1")
        profile_service.deactivate_survey(merchant_id=merchant.id, survey_id=survey.id)

        assert qualification_service.evaluate(_period().id, now=NOW) == "qualified"
        assert active.months_remaining == 1

    def test_survey_of_other_merchant_not_found(self, member, active, other_merchant):
        foreign = profile_service.create_survey(merchant_id=other_merchant.id, title="Other", questions=["q"])

        with pytest.raises(NotFoundError):
            qualification_service.complete_survey(
                member_id=member.id, certificate_id=active.id, survey_id=foreign.id, answers={"q": "a"}, now=NOW
            )


class TestForfeit:
    def test_forfeit_keeps_months(self, member, active):
        _approved(member, active, 3000, image_hash="h1")

        period = qualification_service.forfeit(_period().id, reason="No receipts", now=NOW)

        assert period.status == "forfeited"
        assert period.forfeit_reason == "No receipts"
        assert active.months_remaining == 2

    def test_forfeit_twice_is_noop(self, member, active):
        period_id = _period().id
        qualification_service.forfeit(period_id, now=NOW)
        period = qualification_service.forfeit(period_id, now=NOW)
        assert period.status == "forfeited"

    def test_qualified_period_cannot_be_forfeited(self, member, active):
        _approved(member, active, 10000, image_hash="h1")

        with pytest.raises(StateViolationError):
            qualification_service.forfeit(_period().id, now=NOW)

    def test_forfeited_period_cannot_be_confirmed(self, member, active):
        period_id = _period().id
        qualification_service.forfeit(period_id, now=NOW)

        with pytest.raises(StateViolationError):
            qualification_service.confirm_review(period_id, now=NOW)

    def test_sweep_forfeits_closed_months_after_grace(self, member, active):
        _approved(member, active, 3000, image_hash="h1")

        assert qualification_service.forfeit_lapsed_periods(now=datetime(2026, 4, 5), grace_days=7) == 0
        assert qualification_service.forfeit_lapsed_periods(now=datetime(2026, 4, 8), grace_days=7) == 1
        assert _period().status == "forfeited"

    def test_sweep_leaves_pending_review_for_admin(self, member, active):
        _approved(member, active, 3000, image_hash="h1", store="Kroger", override=True)

        assert qualification_service.forfeit_lapsed_periods(now=datetime(2026, 6, 1), grace_days=7) == 0
        assert _period().status == "pending_review"

    def test_sweep_uses_member_time_zone(self, merchant, activate):
        member = profile_service.upsert_member_profile(
            user_ref="member-ny", email="ny@example.com", timezone="America/New_York"
        )
        activate(merchant, member)

        # March closes at 04:00 UTC on April 1st in New York (EDT).
        assert qualification_service.forfeit_lapsed_periods(now=datetime(2026, 4, 1, 3, 0), grace_days=0) == 0
        assert qualification_service.forfeit_lapsed_periods(now=datetime(2026, 4, 1, 4, 0), grace_days=0) == 1
