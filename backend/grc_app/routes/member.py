# Overview: Flask API routes for member operations; parses input and returns JSON responses.

# backend/grc_app/routes/member.py
"""
Member API Routes

DESIGN:
- Claim puts a pending certificate into the member's activation queue
- Register activates it with a grocery store and start month
- Receipts are validated against the registered store and the current month;
  warnings come back as status=needs_confirmation until the member resubmits
  with member_override=true
- OCR runs before this API is called; the request carries its fields

SECURITY:
- member role required; g.member scopes every operation to the caller
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_member_profile, require_role
from ..services import (
    certificate_service,
    profile_service,
    qualification_service,
    queue_service,
    receipt_service,
)
from ..services.event_service import dispatch_pending
from ..validation import SERVICE_ERRORS, FieldPolicy, error_response, validate_payload


member_bp = Blueprint("member", __name__, url_prefix="/api/member")


PROFILE_POLICY = FieldPolicy(
    writable_fields={"email", "first_name", "last_name", "timezone"},
    required=frozenset({"email"}),
)

REGISTER_POLICY = FieldPolicy(
    writable_fields={
        "grocery_store",
        "grocery_store_place_id",
        "start_month",
        "start_year",
        "survey_answers",
        "review_content",
    },
    required=frozenset({"grocery_store", "grocery_store_place_id", "start_month", "start_year"}),
)

RECEIPT_POLICY = FieldPolicy(
    writable_fields={"certificate_id", "image_url", "image_hash", "ocr", "member_override", "replaces_receipt_id"},
    required=frozenset({"certificate_id", "image_url"}),
)

SURVEY_RESPONSE_POLICY = FieldPolicy(
    writable_fields={"certificate_id", "answers", "month", "year"},
    required=frozenset({"certificate_id", "answers"}),
)


@member_bp.put("/profile")
@require_auth
@require_role("member")
def upsert_profile_route():
    """Create or update the caller's member profile (email and time zone)."""
    try:
        data = validate_payload(request.get_json(silent=True), PROFILE_POLICY)
        member = profile_service.upsert_member_profile(user_ref=g.principal.id, **data)
        return jsonify({"member": member.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to save member profile")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# CERTIFICATES
# =============================================================================

@member_bp.get("/certificates")
@require_auth
@require_role("member")
@require_member_profile
def list_certificates_route():
    """Owned certificates, claimable ones addressed to the caller, and the queue."""
    owned = certificate_service.list_certificates(member_id=g.member.id)
    claimable = certificate_service.list_claimable(g.member)
    queue = queue_service.list_queue(g.member.id)
    return jsonify({
        "certificates": [c.to_dict() for c in owned],
        "claimable": [c.to_dict() for c in claimable],
        "queue": [e.to_dict() for e in queue],
    }), 200


@member_bp.post("/certificates/<int:certificate_id>/claim")
@require_auth
@require_role("member")
@require_member_profile
def claim_route(certificate_id: int):
    try:
        entry = certificate_service.claim_certificate(member_id=g.member.id, certificate_id=certificate_id)
        dispatch_pending()
        return jsonify({"queue_entry": entry.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to claim certificate")
        return jsonify({"error": "Internal server error"}), 500


@member_bp.post("/certificates/<int:certificate_id>/register")
@require_auth
@require_role("member")
@require_member_profile
def register_route(certificate_id: int):
    """
    Activate a certificate.

    Request body:
    {
        "grocery_store": "Safeway",
        "grocery_store_place_id": "ChIJ...",
        "start_month": 3,
        "start_year": 2026,
        "survey_answers": {...},   (optional)
        "review_content": "..."    (optional; 50+ words earns a bonus month)
    }

    Returns:
        200: certificate active
        409: ALREADY_ACTIVE_CERTIFICATE
    """
    try:
        data = validate_payload(request.get_json(silent=True), REGISTER_POLICY)
        cert = certificate_service.register(
            member_id=g.member.id,
            certificate_id=certificate_id,
            **data,
        )
        dispatch_pending()
        return jsonify({"certificate": cert.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to register certificate")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ACTIVATION QUEUE
# =============================================================================

@member_bp.get("/queue")
@require_auth
@require_role("member")
@require_member_profile
def get_queue_route():
    entries = queue_service.list_queue(g.member.id)
    return jsonify({"queue": [e.to_dict() for e in entries]}), 200


@member_bp.put("/queue")
@require_auth
@require_role("member")
@require_member_profile
def reorder_queue_route():
    """Request body: {"certificate_ids": [12, 7, 9]}"""
    try:
        data = request.get_json(silent=True) or {}
        entries = queue_service.reorder(g.member.id, data.get("certificate_ids"))
        dispatch_pending()
        return jsonify({"queue": [e.to_dict() for e in entries]}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reorder queue")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# RECEIPTS AND QUALIFICATION
# =============================================================================

@member_bp.post("/receipts")
@require_auth
@require_role("member")
@require_member_profile
def submit_receipt_route():
    """
    Submit a receipt.

    Request body:
    {
        "certificate_id": 5,
        "image_url": "https://storage/...",
        "image_hash": "sha256...",
        "ocr": {"amount": "54.20", "receipt_date": "2026-03-04", "store_name": "Safeway #1234"},
        "member_override": false,
        "replaces_receipt_id": null
    }

    Returns:
        201: stored as pending
        200: status=needs_confirmation with warnings; nothing stored
        409: DUPLICATE_RECEIPT or REUPLOAD_WINDOW_CLOSED
    """
    try:
        data = validate_payload(request.get_json(silent=True), RECEIPT_POLICY)
        result = receipt_service.submit_receipt(
            member_id=g.member.id,
            certificate_id=data["certificate_id"],
            image_url=data["image_url"],
            image_hash=data.get("image_hash"),
            ocr=data.get("ocr") or {},
            member_override=bool(data.get("member_override")),
            replaces_receipt_id=data.get("replaces_receipt_id"),
        )
        dispatch_pending()
        return jsonify(result.to_dict()), (201 if result.accepted else 200)
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to submit receipt")
        return jsonify({"error": "Internal server error"}), 500


@member_bp.get("/receipts")
@require_auth
@require_role("member")
@require_member_profile
def list_receipts_route():
    receipts = receipt_service.list_receipts(
        member_id=g.member.id,
        certificate_id=request.args.get("certificate_id", type=int),
        status=request.args.get("status"),
    )
    return jsonify({"receipts": [r.to_dict() for r in receipts]}), 200


@member_bp.get("/qualifications")
@require_auth
@require_role("member")
@require_member_profile
def list_qualifications_route():
    periods = qualification_service.list_periods(
        member_id=g.member.id,
        certificate_id=request.args.get("certificate_id", type=int),
    )
    return jsonify({"qualifications": [p.to_dict() for p in periods]}), 200


@member_bp.post("/certificates/<int:certificate_id>/qualifications/current")
@require_auth
@require_role("member")
@require_member_profile
def open_month_route(certificate_id: int):
    """Open (or return) the qualification period for the member's current month."""
    try:
        period = qualification_service.open_current_month(member_id=g.member.id, certificate_id=certificate_id)
        return jsonify({"qualification": period.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to open qualification month")
        return jsonify({"error": "Internal server error"}), 500


@member_bp.post("/surveys/<int:survey_id>/responses")
@require_auth
@require_role("member")
@require_member_profile
def survey_response_route(survey_id: int):
    """Record the monthly survey; month/year default to the member's current month."""
    try:
        data = validate_payload(request.get_json(silent=True), SURVEY_RESPONSE_POLICY)
        response, period = qualification_service.complete_survey(
            member_id=g.member.id,
            certificate_id=data["certificate_id"],
            survey_id=survey_id,
            answers=data["answers"],
            year=data.get("year"),
            month=data.get("month"),
        )
        dispatch_pending()
        return jsonify({"response": response.to_dict(), "qualification": period.to_dict()}), 201
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record survey response")
        return jsonify({"error": "Internal server error"}), 500
