# Overview: Service-layer operations for the certificate inventory ledger; encapsulates business logic and database work.

# backend/grc_app/services/inventory_service.py

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Certificate, CertificatePurchase, Merchant, PAYMENT_METHODS
from ..validation import ConflictError, NotFoundError, ValidationError
from grc_app.time_utils import utcnow
from .concurrency import bump_version, lock_for_update, run_with_retry
from .event_service import CERTIFICATE_ISSUED, append_event
"""
Certificate Inventory Invariants (authoritative)

Inventory model:
- Inventory is ledger-derived; never stored as a mutable quantity field.
- available(merchant, denomination) =
      SUM(quantity) over CONFIRMED purchases of that denomination
    - COUNT(certificates issued by that merchant at that denomination)
- Every issued certificate counts, whatever its status. Expired certificates
  are not returned to stock: issuance is final once made.

Business invariants:
- available() may never go negative. Issuance is rejected with
  InsufficientInventoryError rather than overdrawn.
- The availability check and the certificate insert are ONE atomic step
  (reserve_for_issuance). The merchant row's version_id is bumped in the same
  transaction, so a concurrent issuance that counted the same stock fails its
  compare-and-set and re-counts on retry.

Purchases:
- Purchases are appended as 'pending' and settled exactly once by an external
  approval fact (confirm_purchase / reject_purchase).
- Only payment_status='confirmed' rows affect inventory.
- Quantity, denomination and cost never change after creation.
"""


# Allowed denominations: $50-$500 in $25 steps.
DENOMINATIONS = tuple(range(50, 501, 25))

# Term length tiers: (highest denomination in tier, months).
TERM_TIERS = ((75, 2), (125, 3), (175, 4), (250, 5), (350, 6), (450, 8), (500, 10))

MIN_PURCHASE_QUANTITY = 1
MAX_PURCHASE_QUANTITY = 1000

TRIAL_QUANTITY = 10
TRIAL_DENOMINATIONS = (50, 75, 100)


class InsufficientInventoryError(ConflictError):
    """No unissued certificates remain at this denomination. Not retried."""
    code = "INSUFFICIENT_INVENTORY"


class PurchaseStateError(ConflictError):
    """Purchase was already settled the other way."""
    code = "PURCHASE_NOT_PENDING"


class DuplicateRecipientError(ConflictError):
    """Merchant already has an open certificate addressed to this email."""
    code = "DUPLICATE_RECIPIENT"


def validate_denomination(denomination) -> int:
    if isinstance(denomination, bool) or not isinstance(denomination, int):
        raise ValidationError("denomination must be an integer dollar amount")
    if denomination not in DENOMINATIONS:
        raise ValidationError(
            f"Invalid denomination {denomination}. Must be $50-$500 in $25 steps"
        )
    return denomination


def cost_per_cert_cents(denomination: int) -> int:
    """$1.25 at $50, rising $0.25 per $25 step, to $5.75 at $500."""
    validate_denomination(denomination)
    return 125 + ((denomination - 50) // 25) * 25


def term_months(denomination: int) -> int:
    validate_denomination(denomination)
    for ceiling, months in TERM_TIERS:
        if denomination <= ceiling:
            return months
    return TERM_TIERS[-1][1]


def pricing_table() -> list[dict]:
    return [
        {"denomination": d, "cost_per_cert_cents": cost_per_cert_cents(d), "term_months": term_months(d)}
        for d in DENOMINATIONS
    ]


def _get_merchant(merchant_id: int, *, lock: bool = False) -> Merchant:
    query = db.session.query(Merchant).filter_by(id=merchant_id)
    if lock:
        query = lock_for_update(query)
    merchant = query.first()
    if merchant is None:
        raise NotFoundError(f"Merchant {merchant_id} not found")
    return merchant


def _validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer")
    if quantity < MIN_PURCHASE_QUANTITY or quantity > MAX_PURCHASE_QUANTITY:
        raise ValidationError(
            f"quantity must be between {MIN_PURCHASE_QUANTITY} and {MAX_PURCHASE_QUANTITY}"
        )
    return quantity


def _validate_payment_method(payment_method: str) -> str:
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method '{payment_method}'. Must be one of: {', '.join(PAYMENT_METHODS)}"
        )
    return payment_method


# =============================================================================
# LEDGER READS
# =============================================================================

def confirmed_quantity(merchant_id: int, denomination: int) -> int:
    q = db.session.query(
        func.coalesce(func.sum(CertificatePurchase.quantity), 0)
    ).filter(
        CertificatePurchase.merchant_id == merchant_id,
        CertificatePurchase.denomination == denomination,
        CertificatePurchase.payment_status == "confirmed",  # Only confirmed stock counts
    )
    return int(q.scalar() or 0)


def issued_count(merchant_id: int, denomination: int) -> int:
    q = db.session.query(func.count(Certificate.id)).filter(
        Certificate.merchant_id == merchant_id,
        Certificate.denomination == denomination,
    )
    return int(q.scalar() or 0)


def available_count(merchant_id: int, denomination: int) -> int:
    """
    Recompute available stock from source rows.

    Safe to call any time; the authoritative check during issuance happens
    inside reserve_for_issuance's transaction.
    """
    validate_denomination(denomination)
    return confirmed_quantity(merchant_id, denomination) - issued_count(merchant_id, denomination)


def inventory_snapshot(merchant_id: int) -> dict[int, int]:
    """Available count per denomination. Advisory only (see issue_bulk)."""
    purchased = dict(
        db.session.query(
            CertificatePurchase.denomination,
            func.sum(CertificatePurchase.quantity),
        )
        .filter(
            CertificatePurchase.merchant_id == merchant_id,
            CertificatePurchase.payment_status == "confirmed",
        )
        .group_by(CertificatePurchase.denomination)
        .all()
    )
    issued = dict(
        db.session.query(Certificate.denomination, func.count(Certificate.id))
        .filter(Certificate.merchant_id == merchant_id)
        .group_by(Certificate.denomination)
        .all()
    )
    return {
        int(denom): int(qty or 0) - int(issued.get(denom, 0))
        for denom, qty in purchased.items()
    }


def get_inventory_summary(*, merchant_id: int) -> dict:
    _get_merchant(merchant_id)

    rows = []
    for denom, available in sorted(inventory_snapshot(merchant_id).items()):
        purchased = confirmed_quantity(merchant_id, denom)
        rows.append({
            "denomination": denom,
            "purchased": purchased,
            "issued": purchased - available,
            "available": available,
            "cost_per_cert_cents": cost_per_cert_cents(denom) if denom in DENOMINATIONS else None,
        })

    pending_q = db.session.query(
        func.coalesce(func.sum(CertificatePurchase.quantity), 0)
    ).filter(
        CertificatePurchase.merchant_id == merchant_id,
        CertificatePurchase.payment_status == "pending",
    )

    return {
        "merchant_id": merchant_id,
        "denominations": rows,
        "total_available": sum(r["available"] for r in rows),
        "pending_purchase_quantity": int(pending_q.scalar() or 0),
    }


def list_purchases(*, merchant_id: int | None = None, payment_status: str | None = None, limit: int = 200):
    q = CertificatePurchase.query
    if merchant_id is not None:
        q = q.filter_by(merchant_id=merchant_id)
    if payment_status is not None:
        q = q.filter_by(payment_status=payment_status)
    return q.order_by(CertificatePurchase.created_at.desc(), CertificatePurchase.id.desc()).limit(limit).all()


# =============================================================================
# PURCHASES
# =============================================================================

def _find_by_external_ref(merchant_id: int, external_ref: str | None) -> CertificatePurchase | None:
    if not external_ref:
        return None
    return CertificatePurchase.query.filter_by(merchant_id=merchant_id, external_ref=external_ref).first()


def _check_same_purchase(existing: CertificatePurchase, denomination: int, quantity: int) -> CertificatePurchase:
    if existing.denomination != denomination or existing.quantity != quantity:
        raise ConflictError(
            f"Purchase reference '{existing.external_ref}' already used for a different purchase"
        )
    return existing


def record_purchase(
    *,
    merchant_id: int,
    denomination: int,
    quantity: int,
    payment_method: str,
    external_ref: str | None = None,
    notes: str | None = None,
) -> CertificatePurchase:
    """
    Append a pending purchase awaiting payment approval.

    Idempotent by external_ref: a retried request returns the original row.
    """
    validate_denomination(denomination)
    _validate_quantity(quantity)
    _validate_payment_method(payment_method)

    def _op():
        merchant = _get_merchant(merchant_id)
        if not merchant.is_active:
            raise ValidationError("Merchant is inactive")

        existing = _find_by_external_ref(merchant_id, external_ref)
        if existing is not None:
            return _check_same_purchase(existing, denomination, quantity)

        purchase = CertificatePurchase(
            merchant_id=merchant_id,
            denomination=denomination,
            quantity=quantity,
            total_cost_cents=quantity * cost_per_cert_cents(denomination),
            payment_method=payment_method,
            payment_status="pending",
            external_ref=external_ref,
            payment_notes=notes,
        )
        db.session.add(purchase)
        db.session.commit()
        return purchase

    return run_with_retry(_op)


def record_confirmed_purchase(
    *,
    merchant_id: int,
    denomination: int,
    quantity: int,
    purchase_ref: str,
    total_cost_cents: int | None = None,
    payment_method: str = "bank_account",
    confirmed_by: str | None = None,
    is_trial: bool = False,
    now: datetime | None = None,
) -> CertificatePurchase:
    """
    Append an already-confirmed purchase fact.

    Idempotent by purchase_ref: recording the same purchase twice returns
    the first row and never double-counts stock. Past entries are never
    mutated.
    """
    validate_denomination(denomination)
    _validate_quantity(quantity)
    _validate_payment_method(payment_method)
    if not purchase_ref:
        raise ValidationError("purchase_ref is required")
    if total_cost_cents is None:
        total_cost_cents = 0 if is_trial else quantity * cost_per_cert_cents(denomination)
    if total_cost_cents < 0:
        raise ValidationError("total_cost_cents cannot be negative")

    def _op():
        _get_merchant(merchant_id)

        existing = _find_by_external_ref(merchant_id, purchase_ref)
        if existing is not None:
            return _check_same_purchase(existing, denomination, quantity)

        purchase = CertificatePurchase(
            merchant_id=merchant_id,
            denomination=denomination,
            quantity=quantity,
            total_cost_cents=total_cost_cents,
            payment_method=payment_method,
            payment_status="confirmed",
            is_trial=is_trial,
            external_ref=purchase_ref,
            confirmed_at=now or utcnow(),
            settled_by=confirmed_by,
        )
        db.session.add(purchase)
        try:
            db.session.flush()
        except IntegrityError:
            # Lost a race on the same purchase_ref: return the winner's row.
            db.session.rollback()
            existing = _find_by_external_ref(merchant_id, purchase_ref)
            if existing is None:
                raise
            return _check_same_purchase(existing, denomination, quantity)
        db.session.commit()
        return purchase

    return run_with_retry(_op)


def _settle_purchase(purchase_id: int, target_status: str, values: dict) -> CertificatePurchase:
    """
    Move a pending purchase to a terminal payment status exactly once.

    A conditional UPDATE ... WHERE payment_status='pending' makes the
    settlement atomic: concurrent confirm/reject calls cannot both win.
    """
    purchase = db.session.get(CertificatePurchase, purchase_id)
    if purchase is None:
        raise NotFoundError(f"Purchase {purchase_id} not found")

    if purchase.payment_status == target_status:
        return purchase  # duplicate approval fact; nothing to do
    if purchase.payment_status != "pending":
        raise PurchaseStateError(
            f"Purchase {purchase_id} is '{purchase.payment_status}', cannot mark '{target_status}'"
        )

    result = db.session.execute(
        update(CertificatePurchase)
        .where(
            CertificatePurchase.id == purchase_id,
            CertificatePurchase.payment_status == "pending",
        )
        .values(payment_status=target_status, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        db.session.refresh(purchase)
        if purchase.payment_status == target_status:
            return purchase
        raise PurchaseStateError(
            f"Purchase {purchase_id} is '{purchase.payment_status}', cannot mark '{target_status}'"
        )

    db.session.commit()
    db.session.refresh(purchase)
    return purchase


def confirm_purchase(
    purchase_id: int,
    *,
    confirmed_by: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> CertificatePurchase:
    """
    Apply a PurchaseConfirmed fact from the payment/admin approval step.

    The payment itself is trusted, not re-verified. Confirming an already
    confirmed purchase is a no-op.
    """
    def _op():
        return _settle_purchase(
            purchase_id,
            "confirmed",
            {"confirmed_at": now or utcnow(), "settled_by": confirmed_by, "payment_notes": notes},
        )

    return run_with_retry(_op)


def reject_purchase(
    purchase_id: int,
    *,
    reason: str,
    rejected_by: str | None = None,
    notes: str | None = None,
) -> CertificatePurchase:
    """Apply a PurchaseRejected fact. Rejected purchases never count toward inventory."""
    if not reason or not reason.strip():
        raise ValidationError("Rejection reason is required")

    def _op():
        return _settle_purchase(
            purchase_id,
            "failed",
            {"rejection_reason": reason.strip(), "settled_by": rejected_by, "payment_notes": notes},
        )

    return run_with_retry(_op)


def grant_trial_inventory(
    *,
    merchant_id: int,
    denomination: int,
    granted_by: str | None = None,
    now: datetime | None = None,
) -> CertificatePurchase:
    """
    Give a merchant free trial stock: a confirmed, zero-cost purchase.

    One trial grant per merchant; repeating the call returns the first grant.
    """
    if denomination not in TRIAL_DENOMINATIONS:
        raise ValidationError(
            f"Invalid trial denomination. Must be one of: {', '.join(str(d) for d in TRIAL_DENOMINATIONS)}"
        )
    existing = CertificatePurchase.query.filter_by(merchant_id=merchant_id, is_trial=True).first()
    if existing is not None:
        return existing

    return record_confirmed_purchase(
        merchant_id=merchant_id,
        denomination=denomination,
        quantity=TRIAL_QUANTITY,
        purchase_ref=f"trial-{merchant_id}",
        total_cost_cents=0,
        payment_method="bank_account",
        confirmed_by=granted_by,
        is_trial=True,
        now=now,
    )


# =============================================================================
# ISSUANCE
# =============================================================================

def _open_certificate_for_recipient(merchant_id: int, recipient_email: str) -> Certificate | None:
    return Certificate.query.filter(
        Certificate.merchant_id == merchant_id,
        Certificate.recipient_email == recipient_email,
        Certificate.status.in_(("pending", "active")),
    ).first()


def _reserve_inner(
    *,
    merchant_id: int,
    denomination: int,
    recipient_email: str | None,
    recipient_name: str | None,
    issuance_key: str | None,
    issued_dt: datetime,
) -> Certificate:
    """Check-and-create without retry or commit. Caller owns the transaction."""
    # Idempotency: a retried request with the same key gets the same certificate
    if issuance_key:
        existing = Certificate.query.filter_by(merchant_id=merchant_id, issuance_key=issuance_key).first()
        if existing is not None:
            if existing.denomination != denomination:
                raise ConflictError(f"Issuance key '{issuance_key}' already used for a different certificate")
            return existing

    merchant = _get_merchant(merchant_id, lock=True)
    if not merchant.is_active:
        raise ValidationError("Merchant is inactive")
    seen_version = merchant.version_id

    if recipient_email and _open_certificate_for_recipient(merchant_id, recipient_email) is not None:
        raise DuplicateRecipientError(
            "A certificate has already been issued to this email from this merchant"
        )

    available = confirmed_quantity(merchant_id, denomination) - issued_count(merchant_id, denomination)
    if available < 1:
        raise InsufficientInventoryError(
            f"No ${denomination} certificates available. Purchase more to continue."
        )

    # Compare-and-set on the merchant row: a concurrent issuance that read the
    # same version loses here and re-counts on retry.
    bump_version(Merchant, merchant_id, seen_version)
    db.session.expire(merchant)

    cert = Certificate(
        merchant_id=merchant_id,
        denomination=denomination,
        cost_per_cert_cents=cost_per_cert_cents(denomination),
        recipient_email=recipient_email,
        recipient_name=recipient_name,
        status="pending",
        months_remaining=term_months(denomination),
        issuance_key=issuance_key,
        issued_at=issued_dt,
    )
    db.session.add(cert)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        if recipient_email and _open_certificate_for_recipient(merchant_id, recipient_email) is not None:
            raise DuplicateRecipientError(
                "A certificate has already been issued to this email from this merchant"
            )
        raise

    append_event(
        event_type=CERTIFICATE_ISSUED,
        entity_type="certificate",
        entity_id=cert.id,
        merchant_id=merchant_id,
        payload={
            "denomination": denomination,
            "term_months": cert.months_remaining,
            "recipient_email": recipient_email,
            "recipient_name": recipient_name,
        },
        occurred_at=issued_dt,
    )
    return cert


def reserve_for_issuance(
    *,
    merchant_id: int,
    denomination: int,
    recipient_email: str | None = None,
    recipient_name: str | None = None,
    issuance_key: str | None = None,
    now: datetime | None = None,
) -> Certificate:
    """
    Atomically take one unit of stock and create a pending certificate.

    The availability check and the insert share one transaction guarded by
    the merchant version compare-and-set; this is never check-then-create.

    Raises:
        InsufficientInventoryError: no units remain (caller must not retry)
        DuplicateRecipientError: recipient already holds an open certificate
        ValidationError: bad denomination or inactive merchant
    """
    validate_denomination(denomination)
    if recipient_email is not None:
        recipient_email = recipient_email.strip().lower() or None
    issued_dt = now or utcnow()

    def _op():
        cert = _reserve_inner(
            merchant_id=merchant_id,
            denomination=denomination,
            recipient_email=recipient_email,
            recipient_name=recipient_name,
            issuance_key=issuance_key,
            issued_dt=issued_dt,
        )
        db.session.commit()
        return cert

    return run_with_retry(_op, attempts=5)
