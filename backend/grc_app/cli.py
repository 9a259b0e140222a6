# Overview: Flask CLI command groups for bootstrap, inspection, and scheduled maintenance.

# backend/grc_app/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use `flask db upgrade` in production).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Merchants and inventory:
# - python -m flask merchants create --name "Corner Deli" --user-ref auth0|123
# - python -m flask merchants inventory --merchant-id 1
#   Per-denomination purchased / issued / available.
# - python -m flask merchants grant-trial --merchant-id 1 --denomination 50
#
# Certificates:
# - python -m flask certificates show 42
#   Certificate state, queue entry and qualification periods.
#
# Scheduled policies (run from cron):
# - python -m flask maintenance expire-certificates [--retention-days 365]
#   Expire pending certificates never registered within the retention window.
# - python -m flask maintenance forfeit-periods [--grace-days 7]
#   Forfeit unfinished qualification periods whose month has closed.
# - python -m flask maintenance run-all
#   Both policies, then deliver pending notifications.
#
# Notification outbox:
# - python -m flask events dispatch [--limit 100]
# - python -m flask events list [--undispatched]

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Certificate, CertificateQueueEntry, DomainEvent, MonthlyQualification
from .services import inventory_service, maintenance_service, profile_service
from .services.event_service import dispatch_pending
from .validation import SERVICE_ERRORS


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('merchants')
def merchants_group():
    """Merchant onboarding and inventory inspection."""


@merchants_group.command('create')
@click.option('--name', 'business_name', required=True)
@click.option('--user-ref', default=None, help='Identity provider principal id')
@with_appcontext
def create_merchant_cli(business_name, user_ref):
    try:
        merchant = profile_service.create_merchant(business_name=business_name, user_ref=user_ref)
    except SERVICE_ERRORS as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created merchant {merchant.business_name} (ID: {merchant.id})")


@merchants_group.command('inventory')
@click.option('--merchant-id', type=int, required=True)
@with_appcontext
def inventory_cli(merchant_id):
    try:
        summary = inventory_service.get_inventory_summary(merchant_id=merchant_id)
    except SERVICE_ERRORS as e:
        raise click.ClickException(str(e))

    if not summary["denominations"]:
        click.echo("No confirmed inventory.")
    for row in summary["denominations"]:
        click.echo(
            f"${row['denomination']:>3}  purchased={row['purchased']:<5} "
            f"issued={row['issued']:<5} available={row['available']}"
        )
    click.echo(f"Total available: {summary['total_available']} "
               f"(pending purchases: {summary['pending_purchase_quantity']})")


@merchants_group.command('grant-trial')
@click.option('--merchant-id', type=int, required=True)
@click.option('--denomination', type=click.Choice(['50', '75', '100']), default='50', show_default=True)
@with_appcontext
def grant_trial_cli(merchant_id, denomination):
    try:
        purchase = inventory_service.grant_trial_inventory(merchant_id=merchant_id, denomination=int(denomination))
    except SERVICE_ERRORS as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Trial purchase {purchase.id}: {purchase.quantity} x ${purchase.denomination}")


@click.group('certificates')
def certificates_group():
    """Certificate inspection."""


@certificates_group.command('show')
@click.argument('certificate_id', type=int)
@with_appcontext
def show_certificate(certificate_id):
    cert = db.session.get(Certificate, certificate_id)
    if cert is None:
        raise click.ClickException(f"Certificate {certificate_id} not found")

    click.echo(f"Certificate {cert.id}: ${cert.denomination} status={cert.status} "
               f"months_remaining={cert.months_remaining}")
    click.echo(f"  merchant={cert.merchant_id} member={cert.member_id} recipient={cert.recipient_email}")
    if cert.grocery_store:
        click.echo(f"  store={cert.grocery_store} start={cert.start_year}-{cert.start_month:02d}")

    entry = CertificateQueueEntry.query.filter_by(certificate_id=cert.id).first()
    if entry is not None:
        click.echo(f"  queued for member {entry.member_id} at position {entry.sort_order}"
                   f"{' (eligible)' if entry.eligible_at else ''}")

    periods = (
        MonthlyQualification.query.filter_by(certificate_id=cert.id)
        .order_by(MonthlyQualification.year, MonthlyQualification.month)
        .all()
    )
    for p in periods:
        sent = " reward sent" if p.reward_sent_at else ""
        click.echo(f"  {p.year}-{p.month:02d} {p.status:<17} ${p.approved_total_cents / 100:.2f}{sent}")


@click.group('maintenance')
def maintenance_group():
    """Scheduled policy commands."""


@maintenance_group.command('expire-certificates')
@click.option('--retention-days', type=int, default=None, help='Defaults to PENDING_RETENTION_DAYS')
@with_appcontext
def expire_certificates_cli(retention_days):
    """Expire pending certificates issued longer ago than the retention window."""
    expired = maintenance_service.expire_pending_certificates(retention_days=retention_days)
    click.echo(f"Expired {expired} pending certificate(s).")


@maintenance_group.command('forfeit-periods')
@click.option('--grace-days', type=int, default=None, help='Defaults to FORFEIT_GRACE_DAYS')
@with_appcontext
def forfeit_periods_cli(grace_days):
    """Forfeit unfinished qualification periods whose month closed past the grace window."""
    forfeited = maintenance_service.forfeit_lapsed_periods(grace_days=grace_days)
    click.echo(f"Forfeited {forfeited} qualification period(s).")


@maintenance_group.command('run-all')
@with_appcontext
def run_all_cli():
    result = maintenance_service.run_scheduled_policies()
    click.echo(
        f"Expired {result['expired_certificates']} certificate(s), "
        f"forfeited {result['forfeited_periods']} period(s), "
        f"dispatched {result['dispatched_events']} event(s)."
    )


@click.group('events')
def events_group():
    """Notification outbox commands."""


@events_group.command('dispatch')
@click.option('--limit', type=int, default=100, show_default=True)
@with_appcontext
def dispatch_events_cli(limit):
    delivered = dispatch_pending(limit=limit)
    click.echo(f"Dispatched {delivered} event(s).")


@events_group.command('list')
@click.option('--undispatched', is_flag=True, help='Only events not yet delivered')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def list_events_cli(undispatched, limit):
    q = DomainEvent.query
    if undispatched:
        q = q.filter(DomainEvent.dispatched_at.is_(None))
    for ev in q.order_by(DomainEvent.id.desc()).limit(limit).all():
        state = "pending" if ev.dispatched_at is None else "sent"
        click.echo(f"{ev.id:>6} {ev.event_type:<24} {ev.entity_type}={ev.entity_id} [{state}]")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(merchants_group)
    app.cli.add_command(certificates_group)
    app.cli.add_command(maintenance_group)
    app.cli.add_command(events_group)
