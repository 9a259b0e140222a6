# backend/grc_app/routes/system.py
"""
System health endpoint.

Checks the database and the notification outbox backlog.
"""

import time
from datetime import timedelta

from flask import Blueprint, current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Certificate, DomainEvent
from grc_app.time_utils import utcnow

system_bp = Blueprint("system", __name__)

# Undelivered events older than this mark the outbox as degraded.
OUTBOX_STALE_MINUTES = 15


def check_database_health() -> dict:
    """Check database connectivity with a cheap count."""
    start_time = time.time()
    try:
        certificate_count = db.session.query(func.count(Certificate.id)).scalar()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"certificates": certificate_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_outbox_health() -> dict:
    """Degraded when undelivered events have been waiting too long."""
    start_time = time.time()
    try:
        undispatched = db.session.query(func.count(DomainEvent.id)).filter(
            DomainEvent.dispatched_at.is_(None)
        ).scalar()
        cutoff = utcnow() - timedelta(minutes=OUTBOX_STALE_MINUTES)
        stale = db.session.query(func.count(DomainEvent.id)).filter(
            DomainEvent.dispatched_at.is_(None),
            DomainEvent.occurred_at < cutoff,
        ).scalar()
        elapsed_ms = (time.time() - start_time) * 1000

        result = {
            "status": "degraded" if stale else "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"undispatched": undispatched, "stale": stale},
        }
        if stale:
            result["warning"] = f"{stale} event(s) undelivered for over {OUTBOX_STALE_MINUTES} minutes"
        return result
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Outbox health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Outbox error",
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded (still operational)
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    outbox_health = check_outbox_health()

    all_checks = [database_health, outbox_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "outbox": outbox_health,
        },
    }

    return response, http_status
