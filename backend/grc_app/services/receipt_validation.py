# Overview: Pure receipt validation; compares OCR output against the certificate's registered store and the member's current month.

"""
Receipt validation rules (authoritative)

This module has no database, network or storage side effects. Every input,
including the evaluation instant and the member's time zone, is passed in,
so the same inputs always produce the same result.

- Store mismatch: the extracted store name, normalized (case, punctuation,
  store numbers and whitespace ignored), neither equals nor contains nor is
  contained in the certificate's registered grocery store.
- Date mismatch: the extracted receipt date is not in the calendar month of
  the submission instant, in the member's local time zone.
- Missing OCR fields are never mismatches. They set needs_manual_review so
  an admin decides, instead of auto-rejecting the receipt.
- Either mismatch flag requires an explicit member acknowledgment before the
  receipt is stored (see receipt_service.submit_receipt).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from ..validation import ValidationError
from grc_app.time_utils import local_date


_STORE_NUMBER_RE = re.compile(r"#\s*\d+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class OcrResult:
    """What the OCR collaborator extracted from one receipt image."""
    amount: Optional[Decimal] = None
    receipt_date: Optional[date] = None
    store_name: Optional[str] = None
    confidence: Optional[float] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OcrResult":
        """Build from the OCR service's payload ({amount, receiptDate, extractedStoreName})."""
        data = data or {}
        return cls(
            amount=_parse_amount(data.get("amount")),
            receipt_date=_parse_date(data.get("receipt_date", data.get("receiptDate"))),
            store_name=(data.get("store_name") or data.get("extractedStoreName") or None),
            confidence=data.get("confidence"),
            raw=data.get("raw") or {},
        )


@dataclass(frozen=True)
class ReceiptValidation:
    amount_cents: Optional[int]
    receipt_date: Optional[date]
    extracted_store_name: Optional[str]
    store_mismatch: bool
    date_mismatch: bool
    needs_manual_review: bool
    warnings: tuple[str, ...] = ()

    @property
    def has_warnings(self) -> bool:
        return self.store_mismatch or self.date_mismatch

    def to_dict(self) -> dict:
        return {
            "amount_cents": self.amount_cents,
            "receipt_date": self.receipt_date.isoformat() if self.receipt_date else None,
            "extracted_store_name": self.extracted_store_name,
            "store_mismatch": self.store_mismatch,
            "date_mismatch": self.date_mismatch,
            "needs_manual_review": self.needs_manual_review,
            "warnings": list(self.warnings),
        }


def _parse_amount(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError("amount must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("amount must be a number")
    if not amount.is_finite():
        raise ValidationError("amount must be a number")
    return amount


def _parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise ValidationError("receipt date must be an ISO-8601 date")
    raise ValidationError("receipt date must be an ISO-8601 date")


def amount_to_cents(amount: Optional[Decimal]) -> Optional[int]:
    """Dollars to integer cents, nearest cent (half-up)."""
    if amount is None:
        return None
    cents = (amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def normalize_store_name(name: str) -> str:
    name = name.lower()
    name = _STORE_NUMBER_RE.sub("", name)  # "Safeway #1234" -> "safeway"
    name = _NON_ALNUM_RE.sub("", name)
    return _WS_RE.sub(" ", name).strip()


def store_names_match(extracted: str, registered: str) -> bool:
    """Loose match: equal, or one normalized name contains the other."""
    a = normalize_store_name(extracted)
    b = normalize_store_name(registered)
    if not a or not b:
        return False
    return a == b or a in b or b in a


def is_date_mismatch(receipt_date: date, submitted_at: datetime, tz_name: Optional[str]) -> bool:
    today = local_date(submitted_at, tz_name)
    return (receipt_date.year, receipt_date.month) != (today.year, today.month)


def _build_warnings(
    *,
    store_mismatch: bool,
    date_mismatch: bool,
    registered_store: Optional[str],
    extracted_store: Optional[str],
    receipt_date: Optional[date],
) -> tuple[str, ...]:
    warnings = []
    if store_mismatch:
        warnings.append(
            f'Store "{extracted_store}" doesn\'t match your registered store "{registered_store}"'
        )
    if date_mismatch and receipt_date is not None:
        warnings.append(
            f"Receipt date ({receipt_date.strftime('%B %Y')}) is not in the current month. "
            "Receipts should be from the current month."
        )
    return tuple(warnings)


def validate(
    ocr: OcrResult,
    *,
    registered_store: Optional[str],
    submitted_at: datetime,
    tz_name: Optional[str],
) -> ReceiptValidation:
    """
    Normalize OCR output against the certificate's store and the current month.

    Args:
        ocr: extracted fields; any may be None ("could not extract")
        registered_store: the certificate's grocery store chosen at activation
        submitted_at: evaluation instant (UTC-naive), threaded in by the caller
        tz_name: the member's IANA time zone
    """
    amount_cents = amount_to_cents(ocr.amount)
    if amount_cents is not None and amount_cents < 0:
        raise ValidationError("amount cannot be negative")

    store_name = ocr.store_name.strip() if ocr.store_name else None

    store_mismatch = False
    if store_name and registered_store:
        store_mismatch = not store_names_match(store_name, registered_store)

    date_mismatch = False
    if ocr.receipt_date is not None:
        date_mismatch = is_date_mismatch(ocr.receipt_date, submitted_at, tz_name)

    needs_manual_review = amount_cents is None or ocr.receipt_date is None or not store_name

    return ReceiptValidation(
        amount_cents=amount_cents,
        receipt_date=ocr.receipt_date,
        extracted_store_name=store_name,
        store_mismatch=store_mismatch,
        date_mismatch=date_mismatch,
        needs_manual_review=needs_manual_review,
        warnings=_build_warnings(
            store_mismatch=store_mismatch,
            date_mismatch=date_mismatch,
            registered_store=registered_store,
            extracted_store=store_name,
            receipt_date=ocr.receipt_date,
        ),
    )


def validate_for_certificate(ocr: OcrResult, certificate, *, submitted_at: datetime, tz_name: Optional[str]) -> ReceiptValidation:
    """validate() using the certificate's current registered store."""
    return validate(
        ocr,
        registered_store=certificate.grocery_store,
        submitted_at=submitted_at,
        tz_name=tz_name,
    )
