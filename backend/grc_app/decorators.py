# Overview: Request and role decorators for API routes.

from dataclasses import dataclass
from functools import wraps

from flask import current_app, g, jsonify, request

from .extensions import db
from .models import Member, Merchant


ROLES = ("admin", "merchant", "member")


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as asserted by the identity provider."""
    id: str
    role: str


def _is_authenticated() -> bool:
    return hasattr(g, "principal")


def require_auth(f):
    """
    Require an authenticated principal.

    The identity provider (an upstream gateway) authenticates the caller and
    forwards the principal id and role in headers; login and sessions are
    not handled here. Sets g.principal.

    Returns 401 if either header is missing or the role is unknown.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        principal_id = request.headers.get(current_app.config["PRINCIPAL_ID_HEADER"], "").strip()
        role = request.headers.get(current_app.config["PRINCIPAL_ROLE_HEADER"], "").strip().lower()

        if not principal_id or role not in ROLES:
            return jsonify({"error": "Authentication required"}), 401

        g.principal = Principal(id=principal_id, role=role)
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """Require the principal to hold one of the given roles. Admin passes every check."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if g.principal.role != "admin" and g.principal.role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_merchant_profile(f):
    """Load the caller's Merchant row into g.merchant (404 if not onboarded)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        merchant = db.session.query(Merchant).filter_by(user_ref=g.principal.id).first()
        if merchant is None:
            return jsonify({"error": "Merchant profile not found"}), 404
        if not merchant.is_active:
            return jsonify({"error": "Merchant account is inactive"}), 403
        g.merchant = merchant
        return f(*args, **kwargs)

    return decorated_function


def require_member_profile(f):
    """Load the caller's Member row into g.member (404 until the profile exists)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        member = db.session.query(Member).filter_by(user_ref=g.principal.id).first()
        if member is None:
            return jsonify({"error": "Member profile not found. Please complete your profile first."}), 404
        g.member = member
        return f(*args, **kwargs)

    return decorated_function
