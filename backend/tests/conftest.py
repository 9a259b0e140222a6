"""
Pytest fixtures for GRC backend tests.

Provides the test app, a per-test clean database, and builders for the
merchant -> certificate -> member flow. Service tests pass a fixed `now` so
month boundaries never depend on the wall clock.
"""

from datetime import datetime

import pytest

from grc_app import create_app
from grc_app.extensions import db
from grc_app.services import certificate_service, inventory_service, profile_service, receipt_service


# Mid-month instant used as "now" by service tests.
NOW = datetime(2026, 3, 10, 15, 0, 0)
ISSUED_AT = datetime(2026, 3, 1, 9, 0, 0)

DELIVERED = []


def recording_notifier(event):
    DELIVERED.append((event.event_type, event.entity_id))


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'EVENT_NOTIFIER': recording_notifier,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        DELIVERED.clear()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def delivered():
    """Events handed to the notifier during the test, as (event_type, entity_id)."""
    return DELIVERED


@pytest.fixture(scope='function')
def merchant(db_session):
    return profile_service.create_merchant(business_name="Corner Deli", user_ref="merchant-1")


@pytest.fixture(scope='function')
def other_merchant(db_session):
    return profile_service.create_merchant(business_name="Bayside Bakery", user_ref="merchant-2")


@pytest.fixture(scope='function')
def member(db_session):
    return profile_service.upsert_member_profile(
        user_ref="member-1",
        email="ana@example.com",
        first_name="Ana",
        last_name="Lopez",
        timezone="UTC",
    )


@pytest.fixture(scope='function')
def stock(db_session):
    """Record confirmed stock for a merchant: stock(merchant, denomination, quantity)."""
    counter = {"n": 0}

    def _stock(merchant, denomination=50, quantity=5):
        counter["n"] += 1
        return inventory_service.record_confirmed_purchase(
            merchant_id=merchant.id,
            denomination=denomination,
            quantity=quantity,
            purchase_ref=f"PO-{merchant.id}-{counter['n']}",
            now=ISSUED_AT,
        )

    return _stock


@pytest.fixture(scope='function')
def activate(stock):
    """
    Issue, claim and register one certificate for a member.

    activate(merchant, member, denomination=50, store="Safeway", review=None, now=NOW)
    """
    def _activate(merchant, member, *, denomination=50, store="Safeway", review=None, now=NOW):
        stock(merchant, denomination=denomination, quantity=1)
        cert = certificate_service.issue_certificate(
            merchant_id=merchant.id,
            denomination=denomination,
            recipient_email=member.email,
            now=ISSUED_AT,
        )
        certificate_service.claim_certificate(member_id=member.id, certificate_id=cert.id, now=now)
        return certificate_service.register(
            member_id=member.id,
            certificate_id=cert.id,
            grocery_store=store,
            grocery_store_place_id=f"place-{store.lower()}",
            start_month=now.month,
            start_year=now.year,
            review_content=review,
            now=now,
        )

    return _activate


@pytest.fixture(scope='function')
def qualify(db_session):
    """
    Submit and approve one receipt that meets the monthly target.

    qualify(member, cert, now=NOW, cents=10000) -> approved Receipt
    """
    counter = {"n": 0}

    def _qualify(member, cert, *, now=NOW, cents=10000, store="Safeway"):
        counter["n"] += 1
        result = receipt_service.submit_receipt(
            member_id=member.id,
            certificate_id=cert.id,
            image_url=f"https://img.example.com/{cert.id}/{counter['n']}.jpg",
            image_hash=f"hash-{cert.id}-{counter['n']}",
            ocr={
                "amount": f"{cents / 100:.2f}",
                "receipt_date": now.date().isoformat(),
                "store_name": store,
            },
            now=now,
        )
        assert result.accepted
        return receipt_service.approve_receipt(result.receipt.id, reviewed_by="admin-1", now=now)

    return _qualify


def principal_headers(principal_id, role):
    return {"X-Principal-Id": principal_id, "X-Principal-Role": role}


@pytest.fixture(scope='function')
def admin_headers():
    return principal_headers("admin-1", "admin")


@pytest.fixture(scope='function')
def merchant_headers():
    return principal_headers("merchant-1", "merchant")


@pytest.fixture(scope='function')
def member_headers():
    return principal_headers("member-1", "member")
