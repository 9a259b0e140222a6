# Overview: Error taxonomy shared by services and routes, plus request payload helpers.

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class ValidationError(ValueError):
    """400-level input problem. Never partially applied."""
    kind = "validation"
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(ValueError):
    """404-level missing entity."""
    kind = "not_found"
    code = "NOT_FOUND"
    http_status = 404


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., no inventory left)."""
    kind = "conflict"
    code = "CONFLICT"
    http_status = 409


class StateViolationError(ValueError):
    """
    Operation attempted on a terminal certificate or a forfeited period.

    Indicates a programming defect or a lost race; callers log it as an
    invariant breach.
    """
    kind = "state_violation"
    code = "STATE_VIOLATION"
    http_status = 409


def error_payload(exc: Exception) -> dict:
    return {
        "error": str(exc),
        "code": getattr(exc, "code", "ERROR"),
        "kind": getattr(exc, "kind", "error"),
    }


@dataclass(frozen=True)
class FieldPolicy:
    """
    Request payload policy:
    - writable_fields: what clients are allowed to set (security boundary)
    - required: fields that must be present and non-null
    """
    writable_fields: set[str]
    required: frozenset[str] = frozenset()


def validate_payload(payload: Any, policy: FieldPolicy) -> dict:
    """Reject unknown fields and missing required ones; return a clean dict."""
    if not isinstance(payload, dict):
        raise ValidationError("JSON object body required")

    unknown = set(payload) - policy.writable_fields
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")

    missing = [f for f in sorted(policy.required) if payload.get(f) is None]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")

    return {k: v for k, v in payload.items() if k in policy.writable_fields}


def require_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            value = int(value.strip())
        else:
            raise ValidationError(f"{field} must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return value


def require_str(value: Any, field: str, *, max_len: int = 255) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{field} must be at most {max_len} characters")
    return value


def optional_str(value: Any, field: str, *, max_len: int = 255) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if not value:
        return None
    if len(value) > max_len:
        raise ValidationError(f"{field} must be at most {max_len} characters")
    return value


def error_response(exc: Exception):
    """Map a service error to (json, status). StateViolation is logged as an invariant breach."""
    from flask import current_app, jsonify

    status = getattr(exc, "http_status", 400)
    if isinstance(exc, StateViolationError):
        current_app.logger.error("invariant breach: %s", exc)
    payload = error_payload(exc)
    payload.pop("kind", None)
    return jsonify(payload), status


SERVICE_ERRORS = (ValidationError, NotFoundError, ConflictError, StateViolationError)
