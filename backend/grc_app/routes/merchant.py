# Overview: Flask API routes for merchant operations; parses input and returns JSON responses.

# backend/grc_app/routes/merchant.py
"""
Merchant API Routes

DESIGN:
- Purchases are recorded as pending; an admin confirms them (see admin.py)
- Inventory is always recomputed from the purchase ledger
- Issuance goes through inventory_service.reserve_for_issuance, which checks
  stock and creates the certificate in one transaction

SECURITY:
- merchant role required; g.merchant scopes every query to the caller
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_merchant_profile, require_role
from ..services import certificate_service, inventory_service, profile_service
from ..services.event_service import dispatch_pending
from ..validation import SERVICE_ERRORS, FieldPolicy, error_response, validate_payload


merchant_bp = Blueprint("merchant", __name__, url_prefix="/api/merchant")


PURCHASE_POLICY = FieldPolicy(
    writable_fields={"denomination", "quantity", "payment_method", "external_ref", "notes"},
    required=frozenset({"denomination", "quantity", "payment_method"}),
)

ISSUE_POLICY = FieldPolicy(
    writable_fields={"denomination", "recipient_email", "recipient_name", "issuance_key"},
    required=frozenset({"denomination", "recipient_email"}),
)

SURVEY_POLICY = FieldPolicy(
    writable_fields={"title", "questions"},
    required=frozenset({"title", "questions"}),
)


@merchant_bp.get("/pricing")
def pricing_route():
    """Denominations with per-certificate cost and term length. Public."""
    return jsonify({"pricing": inventory_service.pricing_table()}), 200


# =============================================================================
# PURCHASES AND INVENTORY
# =============================================================================

@merchant_bp.post("/purchases")
@require_auth
@require_role("merchant")
@require_merchant_profile
def create_purchase_route():
    """
    Record a pending certificate purchase.

    Request body:
    {
        "denomination": 100,
        "quantity": 25,
        "payment_method": "zelle",
        "external_ref": "INV-1001",   (optional, idempotency key)
        "notes": "..."                (optional)
    }
    """
    try:
        data = validate_payload(request.get_json(silent=True), PURCHASE_POLICY)
        purchase = inventory_service.record_purchase(
            merchant_id=g.merchant.id,
            denomination=data["denomination"],
            quantity=data["quantity"],
            payment_method=data["payment_method"],
            external_ref=data.get("external_ref"),
            notes=data.get("notes"),
        )
        return jsonify({"purchase": purchase.to_dict()}), 201
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record purchase")
        return jsonify({"error": "Internal server error"}), 500


@merchant_bp.get("/purchases")
@require_auth
@require_role("merchant")
@require_merchant_profile
def list_purchases_route():
    purchases = inventory_service.list_purchases(
        merchant_id=g.merchant.id,
        payment_status=request.args.get("status"),
    )
    return jsonify({"purchases": [p.to_dict() for p in purchases]}), 200


@merchant_bp.get("/inventory")
@require_auth
@require_role("merchant")
@require_merchant_profile
def inventory_route():
    """Per-denomination purchased / issued / available counts."""
    try:
        return jsonify(inventory_service.get_inventory_summary(merchant_id=g.merchant.id)), 200
    except SERVICE_ERRORS as e:
        return error_response(e)


# =============================================================================
# ISSUANCE
# =============================================================================

@merchant_bp.post("/certificates")
@require_auth
@require_role("merchant")
@require_merchant_profile
def issue_certificate_route():
    """
    Issue one certificate to a recipient.

    Returns:
        201: certificate created (pending)
        409: INSUFFICIENT_INVENTORY or DUPLICATE_RECIPIENT
    """
    try:
        data = validate_payload(request.get_json(silent=True), ISSUE_POLICY)
        cert = certificate_service.issue_certificate(
            merchant_id=g.merchant.id,
            denomination=data["denomination"],
            recipient_email=data["recipient_email"],
            recipient_name=data.get("recipient_name"),
            issuance_key=data.get("issuance_key"),
        )
        dispatch_pending()
        return jsonify({"certificate": cert.to_dict()}), 201
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to issue certificate")
        return jsonify({"error": "Internal server error"}), 500


@merchant_bp.post("/certificates/bulk")
@require_auth
@require_role("merchant")
@require_merchant_profile
def issue_bulk_route():
    """
    Issue many certificates; each row reports issued or its error code.

    Request body: {"rows": [{"email": "...", "name": "...", "denomination": 50}, ...]}
    """
    try:
        data = request.get_json(silent=True) or {}
        result = certificate_service.issue_bulk(merchant_id=g.merchant.id, rows=data.get("rows"))
        dispatch_pending()
        return jsonify(result), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to bulk issue certificates")
        return jsonify({"error": "Internal server error"}), 500


@merchant_bp.get("/certificates")
@require_auth
@require_role("merchant")
@require_merchant_profile
def list_certificates_route():
    certs = certificate_service.list_certificates(
        merchant_id=g.merchant.id,
        status=request.args.get("status"),
    )
    return jsonify({"certificates": [c.to_dict() for c in certs]}), 200


# =============================================================================
# SURVEYS
# =============================================================================

@merchant_bp.post("/surveys")
@require_auth
@require_role("merchant")
@require_merchant_profile
def create_survey_route():
    """Publish the merchant's monthly survey (replaces the active one)."""
    try:
        data = validate_payload(request.get_json(silent=True), SURVEY_POLICY)
        survey = profile_service.create_survey(
            merchant_id=g.merchant.id,
            title=data["title"],
            questions=data["questions"],
        )
        return jsonify({"survey": survey.to_dict()}), 201
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create survey")
        return jsonify({"error": "Internal server error"}), 500


@merchant_bp.post("/surveys/<int:survey_id>/deactivate")
@require_auth
@require_role("merchant")
@require_merchant_profile
def deactivate_survey_route(survey_id: int):
    """Stop requiring the survey for qualification."""
    try:
        survey = profile_service.deactivate_survey(merchant_id=g.merchant.id, survey_id=survey_id)
        return jsonify({"survey": survey.to_dict()}), 200
    except SERVICE_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate survey")
        return jsonify({"error": "Internal server error"}), 500
