"""
Receipt validation tests (pure; no database).

Verifies:
- Store names match loosely (case, punctuation, store numbers ignored)
- Date mismatch is judged in the member's local calendar month
- Missing OCR fields mark manual review instead of a mismatch
- Amounts round half-up to the cent
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from grc_app.services.receipt_validation import (
    OcrResult,
    amount_to_cents,
    normalize_store_name,
    store_names_match,
    validate,
)
from grc_app.validation import ValidationError


SUBMITTED = datetime(2026, 3, 10, 15, 0, 0)


def _validate(ocr, *, store="Safeway", submitted_at=SUBMITTED, tz="UTC"):
    return validate(ocr, registered_store=store, submitted_at=submitted_at, tz_name=tz)


class TestStoreNames:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Safeway #1234", "safeway"),
            ("  TRADER JOE'S  ", "trader joes"),
            ("Whole   Foods Market", "whole foods market"),
            ("H-E-B", "heb"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_store_name(raw) == expected

    @pytest.mark.parametrize(
        "extracted,registered",
        [
            ("SAFEWAY #1234", "Safeway"),
            ("Whole Foods", "Whole Foods Market"),
            ("Kroger Marketplace", "kroger"),
        ],
    )
    def test_loose_match(self, extracted, registered):
        assert store_names_match(extracted, registered)

    def test_different_store_does_not_match(self):
        assert not store_names_match("Kroger", "Safeway")

    def test_empty_name_never_matches(self):
        assert not store_names_match("#12", "Safeway")


class TestAmounts:
    @pytest.mark.parametrize(
        "amount,cents",
        [(Decimal("54.20"), 5420), (Decimal("10.005"), 1001), (Decimal("0.004"), 0), (Decimal("100"), 10000)],
    )
    def test_rounds_half_up(self, amount, cents):
        assert amount_to_cents(amount) == cents

    def test_none_stays_none(self):
        assert amount_to_cents(None) is None

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            _validate(OcrResult(amount=Decimal("-1.00"), receipt_date=date(2026, 3, 9), store_name="Safeway"))

    def test_non_numeric_amount_rejected(self):
        with pytest.raises(ValidationError):
            OcrResult.from_dict({"amount": "twelve"})


class TestValidate:
    def test_clean_receipt(self):
        result = _validate(OcrResult(amount=Decimal("54.20"), receipt_date=date(2026, 3, 4), store_name="Safeway #12"))

        assert result.amount_cents == 5420
        assert result.extracted_store_name == "Safeway #12"
        assert not result.store_mismatch
        assert not result.date_mismatch
        assert not result.needs_manual_review
        assert not result.has_warnings
        assert result.warnings == ()

    def test_store_mismatch_warns(self):
        result = _validate(OcrResult(amount=Decimal("20"), receipt_date=date(2026, 3, 4), store_name="Kroger"))

        assert result.store_mismatch
        assert result.has_warnings
        assert 'Store "Kroger"' in result.warnings[0]

    def test_date_in_previous_month_warns(self):
        result = _validate(OcrResult(amount=Decimal("20"), receipt_date=date(2026, 2, 27), store_name="Safeway"))

        assert result.date_mismatch
        assert "February 2026" in result.warnings[0]

    def test_date_checked_in_member_time_zone(self):
        # 02:00 UTC on April 1st is still March 31st in New York.
        submitted = datetime(2026, 4, 1, 2, 0, 0)
        ocr = OcrResult(amount=Decimal("20"), receipt_date=date(2026, 3, 31), store_name="Safeway")

        assert not _validate(ocr, submitted_at=submitted, tz="America/New_York").date_mismatch
        assert _validate(ocr, submitted_at=submitted, tz="UTC").date_mismatch

    @pytest.mark.parametrize(
        "ocr",
        [
            OcrResult(amount=None, receipt_date=date(2026, 3, 4), store_name="Safeway"),
            OcrResult(amount=Decimal("20"), receipt_date=None, store_name="Safeway"),
            OcrResult(amount=Decimal("20"), receipt_date=date(2026, 3, 4), store_name=None),
        ],
    )
    def test_missing_field_needs_manual_review_not_mismatch(self, ocr):
        result = _validate(ocr)

        assert result.needs_manual_review
        assert not result.store_mismatch
        assert not result.date_mismatch
        assert not result.has_warnings

    def test_same_inputs_same_result(self):
        ocr = OcrResult(amount=Decimal("12.34"), receipt_date=date(2026, 3, 1), store_name="Kroger")
        assert _validate(ocr) == _validate(ocr)


class TestOcrPayload:
    def test_from_dict_accepts_service_field_names(self):
        ocr = OcrResult.from_dict({
            "amount": 54.2,
            "receiptDate": "2026-03-04T10:22:00",
            "extractedStoreName": "Safeway",
        })
        assert ocr.amount == Decimal("54.2")
        assert ocr.receipt_date == date(2026, 3, 4)
        assert ocr.store_name == "Safeway"

    def test_from_dict_empty(self):
        ocr = OcrResult.from_dict(None)
        assert ocr.amount is None
        assert ocr.receipt_date is None
        assert ocr.store_name is None

    def test_bad_date_rejected(self):
        with pytest.raises(ValidationError):
            OcrResult.from_dict({"receipt_date": "04/03/2026"})
