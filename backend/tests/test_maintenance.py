"""
Scheduled policy, outbox and CLI tests.

Verifies:
- run_scheduled_policies expires stale certificates, forfeits lapsed months
  and delivers the resulting events
- A failing notifier leaves events for the next dispatch
- The flask CLI groups drive the same services
"""

from datetime import datetime, timedelta

import pytest

from grc_app.models import Certificate, MonthlyQualification
from grc_app.services import certificate_service, maintenance_service
from grc_app.services.event_service import (
    CERTIFICATE_EXPIRED,
    dispatch_pending,
    list_undispatched,
)

from conftest import NOW


RUN_AT = datetime(2026, 5, 1, 6, 0, 0)


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


class TestScheduledPolicies:
    def test_run_all_policies(self, merchant, other_merchant, member, stock, activate, delivered):
        stock(other_merchant, quantity=1)
        stale = certificate_service.issue_certificate(
            merchant_id=other_merchant.id,
            denomination=50,
            recipient_email="old@example.com",
            now=RUN_AT - timedelta(days=400),
        )
        cert = activate(merchant, member)

        result = maintenance_service.run_scheduled_policies(now=RUN_AT)

        assert result["expired_certificates"] == 1
        assert result["forfeited_periods"] == 1
        assert result["dispatched_events"] == len(delivered)
        assert (CERTIFICATE_EXPIRED, stale.id) in delivered
        assert list_undispatched() == []

        period = MonthlyQualification.query.filter_by(certificate_id=cert.id).one()
        assert period.status == "forfeited"
        assert cert.months_remaining == 2

    def test_policies_are_idempotent(self, merchant, member, activate):
        activate(merchant, member)

        maintenance_service.run_scheduled_policies(now=RUN_AT)
        again = maintenance_service.run_scheduled_policies(now=RUN_AT)

        assert again == {"expired_certificates": 0, "forfeited_periods": 0, "dispatched_events": 0}

    def test_nothing_lapses_inside_grace(self, merchant, member, activate):
        activate(merchant, member)

        assert maintenance_service.forfeit_lapsed_periods(now=NOW) == 0


class TestDispatch:
    def test_failing_notifier_keeps_events(self, merchant, stock):
        stock(merchant, quantity=1)
        certificate_service.issue_certificate(merchant_id=merchant.id, denomination=50, now=NOW)

        def broken(event):
            raise RuntimeError("mail server down")

        assert dispatch_pending(broken) == 0
        pending = list_undispatched()
        assert len(pending) == 1
        assert pending[0].attempts == 1

        assert dispatch_pending(lambda event: None) == 1
        assert list_undispatched() == []


class TestCli:
    def test_create_merchant_and_grant_trial(self, runner, db_session):
        result = runner.invoke(args=["merchants", "create", "--name", "Harbor Cafe", "--user-ref", "merchant-9"])
        assert result.exit_code == 0
        assert "Created merchant Harbor Cafe" in result.output

        merchant_id = result.output.rsplit("ID: ", 1)[1].split(")")[0]
        result = runner.invoke(
            args=["merchants", "grant-trial", "--merchant-id", merchant_id, "--denomination", "75"]
        )
        assert result.exit_code == 0
        assert "10 x $75" in result.output

        result = runner.invoke(args=["merchants", "inventory", "--merchant-id", merchant_id])
        assert "Total available: 10" in result.output

    def test_service_errors_become_cli_errors(self, runner, db_session):
        result = runner.invoke(args=["merchants", "grant-trial", "--merchant-id", "999"])
        assert result.exit_code != 0
        assert "not found" in result.output

    def test_show_certificate(self, runner, merchant, member, activate):
        cert = activate(merchant, member)

        result = runner.invoke(args=["certificates", "show", str(cert.id)])

        assert result.exit_code == 0
        assert "status=active" in result.output
        assert "2026-03 in_progress" in result.output

    def test_expire_certificates_command(self, runner, merchant, stock):
        stock(merchant, quantity=1)
        certificate_service.issue_certificate(
            merchant_id=merchant.id, denomination=50, now=datetime(2020, 1, 1)
        )

        result = runner.invoke(args=["maintenance", "expire-certificates", "--retention-days", "30"])

        assert result.exit_code == 0
        assert "Expired 1 pending certificate(s)." in result.output
        assert Certificate.query.one().status == "expired"

    def test_events_dispatch_command(self, runner, merchant, stock, delivered):
        stock(merchant, quantity=1)
        certificate_service.issue_certificate(merchant_id=merchant.id, denomination=50, now=NOW)

        result = runner.invoke(args=["events", "dispatch"])

        assert "Dispatched 1 event(s)." in result.output
        assert len(delivered) == 1
