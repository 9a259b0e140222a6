"""
Reward fulfillment tests.

Verifies:
- Only qualified periods can be marked sent, and marking is idempotent
- Bulk marking reports each period on its own
- Listing and summary reflect pending vs sent rewards
"""

from datetime import datetime

import pytest

from grc_app.extensions import db
from grc_app.models import DomainEvent, MonthlyQualification
from grc_app.services import fulfillment_service
from grc_app.services.event_service import REWARD_SENT
from grc_app.validation import ConflictError, NotFoundError, ValidationError

from conftest import NOW


SENT_AT = datetime(2026, 3, 12, 10, 0, 0)


@pytest.fixture
def qualified_period(merchant, member, activate, qualify):
    cert = activate(merchant, member)
    qualify(member, cert)
    return MonthlyQualification.query.filter_by(certificate_id=cert.id).one()


class TestMarkSent:
    def test_mark_sent_records_tracking(self, qualified_period):
        period = fulfillment_service.mark_reward_sent(qualified_period.id, tracking_code="TRK-1", now=SENT_AT)

        assert period.reward_sent_at == SENT_AT
        assert period.reward_tracking_code == "TRK-1"
        event = DomainEvent.query.filter_by(event_type=REWARD_SENT).one()
        assert event.payload["amount_cents"] == 2500

    def test_second_mark_keeps_first_values(self, qualified_period):
        fulfillment_service.mark_reward_sent(qualified_period.id, tracking_code="TRK-1", now=SENT_AT)

        period = fulfillment_service.mark_reward_sent(
            qualified_period.id, tracking_code="TRK-2", now=datetime(2026, 3, 20)
        )

        assert period.reward_sent_at == SENT_AT
        assert period.reward_tracking_code == "TRK-1"
        assert DomainEvent.query.filter_by(event_type=REWARD_SENT).count() == 1

    def test_unqualified_period_rejected(self, merchant, member, activate):
        cert = activate(merchant, member)
        period = MonthlyQualification.query.filter_by(certificate_id=cert.id).one()

        with pytest.raises(ConflictError):
            fulfillment_service.mark_reward_sent(period.id, now=SENT_AT)

    def test_unknown_period(self, db_session):
        with pytest.raises(NotFoundError):
            fulfillment_service.mark_reward_sent(999, now=SENT_AT)


class TestBulk:
    def test_bulk_accepts_string_keys(self, member, qualified_period):
        unqualified = MonthlyQualification(
            member_id=member.id,
            certificate_id=qualified_period.certificate_id,
            year=2026,
            month=4,
            approved_total_cents=0,
            status="in_progress",
            open_review_count=0,
        )
        db.session.add(unqualified)
        db.session.commit()

        result = fulfillment_service.bulk_mark_sent(
            [qualified_period.id, unqualified.id, 999],
            tracking_codes={str(qualified_period.id): "TRK-9"},
            now=SENT_AT,
        )

        assert result["updated"] == 1
        assert result["failed"] == 2
        assert [r.get("code") for r in result["results"]] == [None, "CONFLICT", "NOT_FOUND"]
        assert db.session.get(MonthlyQualification, qualified_period.id).reward_tracking_code == "TRK-9"

    def test_bulk_requires_ids(self, db_session):
        with pytest.raises(ValidationError):
            fulfillment_service.bulk_mark_sent([], now=SENT_AT)


class TestListing:
    def test_pending_and_sent_lists(self, member, qualified_period):
        pending = fulfillment_service.list_rewards(state="pending")
        assert [r["id"] for r in pending] == [qualified_period.id]
        assert pending[0]["member_email"] == member.email
        assert pending[0]["member_name"] == "Ana Lopez"

        fulfillment_service.mark_reward_sent(qualified_period.id, now=SENT_AT)

        assert fulfillment_service.list_rewards(state="pending") == []
        assert [r["id"] for r in fulfillment_service.list_rewards(state="sent")] == [qualified_period.id]

    def test_filter_by_month(self, qualified_period):
        assert len(fulfillment_service.list_rewards(state="all", year=2026, month=3)) == 1
        assert fulfillment_service.list_rewards(state="all", year=2026, month=4) == []

    def test_unknown_state(self, db_session):
        with pytest.raises(ValidationError):
            fulfillment_service.list_rewards(state="lost")

    def test_summary(self, qualified_period):
        before = fulfillment_service.fulfillment_summary(now=NOW)
        assert before == {"pending_count": 1, "sent_this_month": 0, "total_pending_value_cents": 2500}

        fulfillment_service.mark_reward_sent(qualified_period.id, now=SENT_AT)

        after = fulfillment_service.fulfillment_summary(now=NOW)
        assert after == {"pending_count": 0, "sent_this_month": 1, "total_pending_value_cents": 0}
