"""
Threaded concurrency tests against a file-backed SQLite database.

Each worker runs in its own app context and session. Issuance must succeed
exactly as many times as there is stock, with every other attempt failing as
insufficient inventory. For registration and review a worker may lose a race
and give up after its retries, but the periods must stay consistent.
"""

import os
import tempfile
import threading
import unittest
from datetime import datetime

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from grc_app import create_app
from grc_app.extensions import db
from grc_app.models import Certificate, DomainEvent, MonthlyQualification, Receipt
from grc_app.services import (
    certificate_service,
    inventory_service,
    profile_service,
    receipt_service,
)
from grc_app.services.event_service import QUALIFICATION_ACHIEVED
from grc_app.services.inventory_service import InsufficientInventoryError
from grc_app.validation import ConflictError


NOW = datetime(2026, 3, 10, 15, 0, 0)

# Losing a race after all retries is an acceptable outcome for a worker.
RACE_ERRORS = (ConflictError, OperationalError, StaleDataError)


def run_threads(targets):
    threads = [threading.Thread(target=t) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "EVENT_NOTIFIER": lambda event: None,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            merchant = profile_service.create_merchant(business_name="Corner Deli", user_ref="merchant-1")
            other = profile_service.create_merchant(business_name="Bayside Bakery", user_ref="merchant-2")
            member = profile_service.upsert_member_profile(
                user_ref="member-1", email="ana@example.com", timezone="UTC"
            )
            self.merchant_id = merchant.id
            self.other_merchant_id = other.id
            self.member_id = member.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _worker(self, fn, results, errors, lock, catch=RACE_ERRORS):
        def target():
            with self.app.app_context():
                try:
                    value = fn()
                    with lock:
                        results.append(value)
                except catch as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()
        return target

    def _stock(self, merchant_id, quantity, ref):
        inventory_service.record_confirmed_purchase(
            merchant_id=merchant_id,
            denomination=50,
            quantity=quantity,
            purchase_ref=ref,
            now=NOW,
        )

    def test_concurrent_issuance_never_oversells(self):
        with self.app.app_context():
            self._stock(self.merchant_id, 3, "PO-1")

        results, errors, lock = [], [], threading.Lock()

        def issue():
            cert = certificate_service.issue_certificate(merchant_id=self.merchant_id, denomination=50, now=NOW)
            return cert.id

        # Every attempt beyond the stock fails as insufficient inventory, nothing else.
        run_threads([self._worker(issue, results, errors, lock, catch=Exception) for _ in range(8)])

        self.assertEqual(len(results), 3)
        self.assertEqual(len(set(results)), 3)
        self.assertEqual(len(errors), 5)
        self.assertTrue(all(isinstance(e, InsufficientInventoryError) for e in errors), errors)
        with self.app.app_context():
            issued = Certificate.query.filter_by(merchant_id=self.merchant_id).count()
            summary = inventory_service.get_inventory_summary(merchant_id=self.merchant_id)
        self.assertEqual(issued, 3)
        self.assertEqual(summary["total_available"], 0)

    def test_concurrent_registration_single_active(self):
        with self.app.app_context():
            cert_ids = []
            for i, merchant_id in enumerate((self.merchant_id, self.other_merchant_id)):
                self._stock(merchant_id, 1, f"PO-{i}")
                cert = certificate_service.issue_certificate(
                    merchant_id=merchant_id, denomination=50, recipient_email="ana@example.com", now=NOW
                )
                cert_ids.append(cert.id)

        results, errors, lock = [], [], threading.Lock()

        def register(cert_id):
            def _register():
                cert = certificate_service.register(
                    member_id=self.member_id,
                    certificate_id=cert_id,
                    grocery_store="Safeway",
                    grocery_store_place_id="place-safeway",
                    start_month=3,
                    start_year=2026,
                    now=NOW,
                )
                return cert.id
            return _register

        run_threads([self._worker(register(cert_id), results, errors, lock) for cert_id in cert_ids])

        self.assertLessEqual(len(results), 1)
        with self.app.app_context():
            active = Certificate.query.filter_by(member_id=self.member_id, status="active").all()
            periods = MonthlyQualification.query.filter_by(member_id=self.member_id).all()
        self.assertEqual([c.id for c in active], results)
        self.assertEqual({p.certificate_id for p in periods}, set(results))

    def test_concurrent_approvals_count_once(self):
        with self.app.app_context():
            self._stock(self.merchant_id, 1, "PO-1")
            cert = certificate_service.issue_certificate(
                merchant_id=self.merchant_id, denomination=50, recipient_email="ana@example.com", now=NOW
            )
            certificate_service.register(
                member_id=self.member_id,
                certificate_id=cert.id,
                grocery_store="Safeway",
                grocery_store_place_id="place-safeway",
                start_month=3,
                start_year=2026,
                now=NOW,
            )
            cert_id = cert.id
            term = cert.months_remaining
            receipt_ids = []
            for i in range(6):
                result = receipt_service.submit_receipt(
                    member_id=self.member_id,
                    certificate_id=cert_id,
                    image_url=f"https://img.example.com/{i}.jpg",
                    image_hash=f"hash-{i}",
                    ocr={"amount": "20.00", "receipt_date": "2026-03-10", "store_name": "Safeway"},
                    now=NOW,
                )
                receipt_ids.append(result.receipt.id)

        results, errors, lock = [], [], threading.Lock()

        def approve(receipt_id):
            def _approve():
                return receipt_service.approve_receipt(receipt_id, reviewed_by="admin-1", now=NOW).id
            return _approve

        # Each receipt is approved by two reviewers at once.
        targets = [self._worker(approve(rid), results, errors, lock) for rid in receipt_ids for _ in range(2)]
        run_threads(targets)

        with self.app.app_context():
            approved = Receipt.query.filter_by(certificate_id=cert_id, status="approved").all()
            period = MonthlyQualification.query.filter_by(certificate_id=cert_id).one()
            achieved = DomainEvent.query.filter_by(event_type=QUALIFICATION_ACHIEVED).count()
            months_remaining = db.session.get(Certificate, cert_id).months_remaining

        self.assertEqual(period.approved_total_cents, sum(r.approved_amount_cents for r in approved))
        self.assertLessEqual(achieved, 1)
        if period.status == "qualified":
            self.assertEqual(achieved, 1)
            self.assertEqual(months_remaining, term - 1)
        else:
            self.assertEqual(achieved, 0)
            self.assertEqual(months_remaining, term)


if __name__ == "__main__":
    unittest.main()
