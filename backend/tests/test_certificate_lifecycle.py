"""
Certificate lifecycle tests.

Verifies:
- pending -> active via claim and register, with store, start month and bonus month
- At most one active certificate per member
- Terminal states (completed, expired) cannot change
- Expiry sweep only touches stale pending certificates
"""

from datetime import datetime, timedelta

import pytest

from grc_app.models import CertificateQueueEntry, MerchantReview, MonthlyQualification, SurveyResponse
from grc_app.services import certificate_service, profile_service
from grc_app.services.certificate_service import AlreadyActiveCertificateError
from grc_app.services.event_service import (
    CERTIFICATE_ACTIVATED,
    CERTIFICATE_EXPIRED,
    CERTIFICATE_ISSUED,
    list_events_for_entity,
)
from grc_app.validation import ConflictError, NotFoundError, StateViolationError, ValidationError

from conftest import ISSUED_AT, NOW


LONG_REVIEW = " ".join(["great"] * 50)


def _issue(merchant, stock, email="ana@example.com", denomination=50, issued_at=ISSUED_AT):
    stock(merchant, denomination=denomination, quantity=1)
    return certificate_service.issue_certificate(
        merchant_id=merchant.id, denomination=denomination, recipient_email=email, now=issued_at
    )


def _register(member, cert, **overrides):
    kwargs = dict(
        member_id=member.id,
        certificate_id=cert.id,
        grocery_store="Safeway",
        grocery_store_place_id="place-safeway",
        start_month=NOW.month,
        start_year=NOW.year,
        now=NOW,
    )
    kwargs.update(overrides)
    return certificate_service.register(**kwargs)


class TestTransitions:
    @pytest.mark.parametrize(
        "from_status,to_status,allowed",
        [
            ("pending", "active", True),
            ("pending", "expired", True),
            ("active", "active", True),
            ("active", "completed", True),
            ("active", "expired", False),
            ("completed", "active", False),
            ("expired", "active", False),
            ("pending", "completed", False),
        ],
    )
    def test_can_transition(self, from_status, to_status, allowed):
        assert certificate_service.can_transition(from_status, to_status) is allowed


class TestClaim:
    def test_claim_queues_without_owning(self, merchant, member, stock):
        cert = _issue(merchant, stock)

        entry = certificate_service.claim_certificate(member_id=member.id, certificate_id=cert.id, now=NOW)

        assert entry.certificate_id == cert.id
        assert entry.eligible_at == NOW
        assert cert.status == "pending"
        assert cert.member_id is None

    def test_claim_twice_returns_same_entry(self, merchant, member, stock):
        cert = _issue(merchant, stock)
        first = certificate_service.claim_certificate(member_id=member.id, certificate_id=cert.id, now=NOW)
        second = certificate_service.claim_certificate(member_id=member.id, certificate_id=cert.id, now=NOW)

        assert first.id == second.id
        assert CertificateQueueEntry.query.count() == 1

    def test_cannot_claim_certificate_addressed_to_someone_else(self, merchant, member, stock):
        cert = _issue(merchant, stock, email="someone@example.com")

        with pytest.raises(ConflictError):
            certificate_service.claim_certificate(member_id=member.id, certificate_id=cert.id, now=NOW)

    def test_claimable_lists_pending_addressed_to_member(self, merchant, other_merchant, member, stock):
        mine = _issue(merchant, stock)
        _issue(other_merchant, stock, email="other@example.com")

        claimable = certificate_service.list_claimable(member)
        assert [c.id for c in claimable] == [mine.id]

    def test_unknown_certificate(self, member):
        with pytest.raises(NotFoundError):
            certificate_service.claim_certificate(member_id=member.id, certificate_id=999, now=NOW)


class TestRegister:
    def test_register_activates(self, merchant, member, stock):
        cert = _issue(merchant, stock)
        certificate_service.claim_certificate(member_id=member.id, certificate_id=cert.id, now=NOW)

        active = _register(member, cert)

        assert active.status == "active"
        assert active.member_id == member.id
        assert active.grocery_store == "Safeway"
        assert (active.start_year, active.start_month) == (2026, 3)
        assert active.months_remaining == 2
        assert active.bonus_month_awarded is False
        assert active.registered_at == NOW
        assert CertificateQueueEntry.query.count() == 0

        period = MonthlyQualification.query.one()
        assert (period.year, period.month, period.status) == (2026, 3, "in_progress")

        events = [e.event_type for e in list_events_for_entity("certificate", cert.id)]
        assert events[0] == CERTIFICATE_ISSUED
        assert events[-1] == CERTIFICATE_ACTIVATED

    def test_register_without_claim(self, merchant, member, stock):
        cert = _issue(merchant, stock)
        assert _register(member, cert).status == "active"

    def test_long_review_earns_bonus_month(self, merchant, member, stock):
        cert = _issue(merchant, stock)

        active = _register(member, cert, review_content=LONG_REVIEW)

        assert active.months_remaining == 3
        assert active.bonus_month_awarded is True
        review = MerchantReview.query.one()
        assert review.word_count == 50
        assert review.bonus_month_awarded is True

    def test_short_review_stored_without_bonus(self, merchant, member, stock):
        cert = _issue(merchant, stock)

        active = _register(member, cert, review_content="Friendly staff and fresh bread.")

        assert active.months_remaining == 2
        assert MerchantReview.query.one().bonus_month_awarded is False

    def test_registration_survey_recorded(self, merchant, member, stock):
        survey = profile_service.create_survey(merchant_id=merchant.id, title="Welcome", questions=["How did you hear?"])
        cert = _issue(merchant, stock)

        _register(member, cert, survey_answers={"How did you hear?": "A friend"})

        response = SurveyResponse.query.one()
        assert response.survey_id == survey.id
        assert response.year is None and response.month is None

    def test_next_month_start_allowed(self, merchant, member, stock):
        cert = _issue(merchant, stock)
        active = _register(member, cert, start_month=4, start_year=2026)
        assert (active.start_year, active.start_month) == (2026, 4)

    @pytest.mark.parametrize("month,year", [(2, 2026), (5, 2026), (3, 2027), (13, 2026)])
    def test_start_month_must_be_current_or_next(self, merchant, member, stock, month, year):
        cert = _issue(merchant, stock)
        with pytest.raises(ValidationError):
            _register(member, cert, start_month=month, start_year=year)

    def test_start_month_uses_member_time_zone(self, merchant, stock):
        member = profile_service.upsert_member_profile(
            user_ref="member-la", email="la@example.com", timezone="America/Los_Angeles"
        )
        cert = _issue(merchant, stock, email="la@example.com")
        # 03:00 UTC on March 1st is still February in Los Angeles.
        early = datetime(2026, 3, 1, 3, 0, 0)

        active = _register(member, cert, start_month=2, start_year=2026, now=early)
        assert active.start_month == 2

    def test_second_active_certificate_rejected(self, merchant, other_merchant, member, stock):
        first = _issue(merchant, stock)
        second = _issue(other_merchant, stock)
        _register(member, first)

        with pytest.raises(AlreadyActiveCertificateError) as exc:
            _register(member, second)

        assert exc.value.code == "ALREADY_ACTIVE_CERTIFICATE"
        assert second.status == "pending"

    def test_registering_active_certificate_again_rejected(self, merchant, member, stock):
        cert = _issue(merchant, stock)
        _register(member, cert)

        with pytest.raises(AlreadyActiveCertificateError):
            _register(member, cert)

    def test_cannot_take_over_another_members_certificate(self, merchant, member, stock):
        cert = _issue(merchant, stock, email=None)
        _register(member, cert)
        other = profile_service.upsert_member_profile(user_ref="member-2", email="bo@example.com")

        with pytest.raises(ConflictError):
            _register(other, cert)

    def test_expired_certificate_cannot_be_registered(self, merchant, member, stock):
        cert = _issue(merchant, stock)
        certificate_service.expire_stale_certificates(now=NOW, retention_days=0)

        with pytest.raises(StateViolationError):
            _register(member, cert)

    def test_store_required(self, merchant, member, stock):
        cert = _issue(merchant, stock)
        with pytest.raises(ValidationError):
            _register(member, cert, grocery_store="  ")


class TestExpiry:
    def test_only_stale_pending_certificates_expire(self, merchant, other_merchant, member, stock):
        stale = _issue(merchant, stock, email="old@example.com", issued_at=NOW - timedelta(days=400))
        fresh = _issue(merchant, stock, email="new@example.com", issued_at=NOW - timedelta(days=10))
        active = _issue(other_merchant, stock, issued_at=NOW - timedelta(days=400))
        _register(member, active)

        expired = certificate_service.expire_stale_certificates(now=NOW, retention_days=365)

        assert expired == 1
        assert stale.status == "expired"
        assert stale.expired_at == NOW
        assert stale.member_id is None
        assert fresh.status == "pending"
        assert active.status == "active"
        assert [e.event_type for e in list_events_for_entity("certificate", stale.id)][-1] == CERTIFICATE_EXPIRED

    def test_expiry_removes_queue_entry(self, merchant, member, stock):
        cert = _issue(merchant, stock, issued_at=NOW - timedelta(days=400))
        certificate_service.claim_certificate(member_id=member.id, certificate_id=cert.id, now=NOW)

        certificate_service.expire_stale_certificates(now=NOW, retention_days=365)

        assert CertificateQueueEntry.query.count() == 0

    def test_expiry_sweep_is_idempotent(self, merchant, stock):
        _issue(merchant, stock, issued_at=NOW - timedelta(days=400))

        assert certificate_service.expire_stale_certificates(now=NOW, retention_days=365) == 1
        assert certificate_service.expire_stale_certificates(now=NOW, retention_days=365) == 0
