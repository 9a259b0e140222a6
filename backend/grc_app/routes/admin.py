# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/grc_app/routes/admin.py
"""
Admin API Routes

DESIGN:
- Purchase confirm/reject are the external approval facts for the inventory ledger
- Receipt review feeds the qualification tracker
- Qualification decisions (confirm review, forfeit) and reward fulfillment

SECURITY:
- admin role required on every route
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_role
from ..services import (
    fulfillment_service,
    inventory_service,
    profile_service,
    qualification_service,
    receipt_service,
)
from ..services.event_service import dispatch_pending
from ..validation import SERVICE_ERRORS, FieldPolicy, error_response, validate_payload


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


MERCHANT_POLICY = FieldPolicy(
    writable_fields={"business_name", "user_ref"},
    required=frozenset({"business_name"}),
)

REJECT_PURCHASE_POLICY = FieldPolicy(writable_fields={"reason", "notes"}, required=frozenset({"reason"}))

APPROVE_RECEIPT_POLICY = FieldPolicy(writable_fields={"amount_cents"})

REJECT_RECEIPT_POLICY = FieldPolicy(
    writable_fields={"reason", "notes", "reupload_days"},
    required=frozenset({"reason"}),
)


def _body() -> dict:
    return request.get_json(silent=True) or {}


# =============================================================================
# MERCHANTS AND PURCHASES
# =============================================================================

@admin_bp.post("/merchants")
@require_auth
@require_role("admin")
def create_merchant_route():
    try:
        data = validate_payload(request.get_json(silent=True), MERCHANT_POLICY)
        merchant = profile_service.create_merchant(**data)
        return jsonify({"merchant": merchant.to_dict()}), 201
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create merchant")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/merchants/<int:merchant_id>/trial")
@require_auth
@require_role("admin")
def grant_trial_route(merchant_id: int):
    """Grant 10 free trial certificates. Request body: {"denomination": 50|75|100}"""
    try:
        purchase = inventory_service.grant_trial_inventory(
            merchant_id=merchant_id,
            denomination=_body().get("denomination"),
            granted_by=g.principal.id,
        )
        return jsonify({"purchase": purchase.to_dict()}), 201
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to grant trial inventory")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.get("/purchases")
@require_auth
@require_role("admin")
def list_purchases_route():
    purchases = inventory_service.list_purchases(
        merchant_id=request.args.get("merchant_id", type=int),
        payment_status=request.args.get("status"),
    )
    return jsonify({"purchases": [p.to_dict() for p in purchases]}), 200


@admin_bp.post("/purchases/<int:purchase_id>/confirm")
@require_auth
@require_role("admin")
def confirm_purchase_route(purchase_id: int):
    try:
        purchase = inventory_service.confirm_purchase(
            purchase_id,
            confirmed_by=g.principal.id,
            notes=_body().get("notes"),
        )
        return jsonify({"purchase": purchase.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm purchase")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/purchases/<int:purchase_id>/reject")
@require_auth
@require_role("admin")
def reject_purchase_route(purchase_id: int):
    try:
        data = validate_payload(request.get_json(silent=True), REJECT_PURCHASE_POLICY)
        purchase = inventory_service.reject_purchase(
            purchase_id,
            reason=data["reason"],
            rejected_by=g.principal.id,
            notes=data.get("notes"),
        )
        return jsonify({"purchase": purchase.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reject purchase")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# RECEIPT REVIEW
# =============================================================================

@admin_bp.get("/receipts")
@require_auth
@require_role("admin")
def review_queue_route():
    """Pending receipts, flagged ones first."""
    receipts = receipt_service.review_queue(limit=request.args.get("limit", 100, type=int))
    return jsonify({"receipts": [r.to_dict() for r in receipts]}), 200


@admin_bp.post("/receipts/<int:receipt_id>/approve")
@require_auth
@require_role("admin")
def approve_receipt_route(receipt_id: int):
    """Request body: {"amount_cents": 5420}  (optional correction of the OCR amount)"""
    try:
        data = validate_payload(request.get_json(silent=True) or {}, APPROVE_RECEIPT_POLICY)
        receipt = receipt_service.approve_receipt(
            receipt_id,
            amount_cents=data.get("amount_cents"),
            reviewed_by=g.principal.id,
        )
        dispatch_pending()
        return jsonify({"receipt": receipt.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve receipt")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/receipts/<int:receipt_id>/reject")
@require_auth
@require_role("admin")
def reject_receipt_route(receipt_id: int):
    try:
        data = validate_payload(request.get_json(silent=True), REJECT_RECEIPT_POLICY)
        receipt = receipt_service.reject_receipt(
            receipt_id,
            reason=data["reason"],
            notes=data.get("notes"),
            reupload_days=data.get("reupload_days"),
            reviewed_by=g.principal.id,
        )
        dispatch_pending()
        return jsonify({"receipt": receipt.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reject receipt")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/receipts/bulk")
@require_auth
@require_role("admin")
def bulk_review_route():
    """Request body: {"receipt_ids": [...], "action": "approve"|"reject", "reason": "...", "notes": "..."}"""
    try:
        data = _body()
        result = receipt_service.bulk_review(
            data.get("receipt_ids"),
            action=data.get("action"),
            reason=data.get("reason"),
            notes=data.get("notes"),
            reviewed_by=g.principal.id,
        )
        dispatch_pending()
        return jsonify(result), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to bulk review receipts")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUALIFICATIONS AND REWARDS
# =============================================================================

@admin_bp.post("/qualifications/<int:period_id>/confirm-review")
@require_auth
@require_role("admin")
def confirm_review_route(period_id: int):
    try:
        period = qualification_service.confirm_review(period_id)
        dispatch_pending()
        return jsonify({"qualification": period.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm review")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/qualifications/<int:period_id>/evaluate")
@require_auth
@require_role("admin")
def evaluate_route(period_id: int):
    """Recompute a period's status from its totals, review flag and survey."""
    try:
        status = qualification_service.evaluate(period_id)
        dispatch_pending()
        return jsonify({"qualification": qualification_service.get_period(period_id).to_dict(), "status": status}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to evaluate qualification")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/qualifications/<int:period_id>/forfeit")
@require_auth
@require_role("admin")
def forfeit_route(period_id: int):
    try:
        period = qualification_service.forfeit(period_id, reason=_body().get("reason"))
        return jsonify({"qualification": period.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to forfeit qualification")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/qualifications/<int:period_id>/reward")
@require_auth
@require_role("admin")
def mark_reward_sent_route(period_id: int):
    """Request body: {"tracking_code": "GC-123"}  (optional). Repeat calls are no-ops."""
    try:
        period = fulfillment_service.mark_reward_sent(period_id, tracking_code=_body().get("tracking_code"))
        dispatch_pending()
        return jsonify({"qualification": period.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to mark reward sent")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/rewards/bulk")
@require_auth
@require_role("admin")
def bulk_rewards_route():
    """Request body: {"qualification_ids": [...], "tracking_codes": {"<id>": "code"}}"""
    try:
        data = _body()
        result = fulfillment_service.bulk_mark_sent(
            data.get("qualification_ids"),
            tracking_codes=data.get("tracking_codes"),
        )
        dispatch_pending()
        return jsonify(result), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to bulk mark rewards")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.get("/rewards")
@require_auth
@require_role("admin")
def list_rewards_route():
    """Query params: state=pending|sent|all, year, month."""
    try:
        rewards = fulfillment_service.list_rewards(
            state=request.args.get("state", "pending"),
            year=request.args.get("year", type=int),
            month=request.args.get("month", type=int),
        )
        return jsonify({"rewards": rewards, "summary": fulfillment_service.fulfillment_summary()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
