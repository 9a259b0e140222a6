# Overview: Service-layer operations for scheduled maintenance policies; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime

from grc_app.time_utils import utcnow
from . import certificate_service, qualification_service
from .event_service import dispatch_pending


def expire_pending_certificates(*, retention_days: int | None = None, now: datetime | None = None) -> int:
    """
    Expire pending certificates issued more than retention_days ago.

    Expired certificates leave every activation queue; inventory is not restored.
    """
    return certificate_service.expire_stale_certificates(now=now or utcnow(), retention_days=retention_days)


def forfeit_lapsed_periods(*, grace_days: int | None = None, now: datetime | None = None) -> int:
    """Forfeit unfinished qualification periods whose month closed more than grace_days ago."""
    return qualification_service.forfeit_lapsed_periods(now=now or utcnow(), grace_days=grace_days)


def run_scheduled_policies(*, now: datetime | None = None, notifier=None) -> dict:
    """Run every scheduled policy once, then deliver the events they produced."""
    now = now or utcnow()
    expired = expire_pending_certificates(now=now)
    forfeited = forfeit_lapsed_periods(now=now)
    dispatched = dispatch_pending(notifier)
    return {"expired_certificates": expired, "forfeited_periods": forfeited, "dispatched_events": dispatched}
