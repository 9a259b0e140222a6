# Overview: Service-layer operations for merchant and member profiles and merchant surveys.

from __future__ import annotations

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Member, Merchant, Survey
from ..validation import ConflictError, NotFoundError, ValidationError, optional_str, require_str
from .concurrency import run_with_retry


def _validate_timezone(tz_name: str | None) -> str:
    if not tz_name:
        return "UTC"
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown time zone '{tz_name}'")
    return tz_name


def _validate_email(email) -> str:
    email = require_str(email, "email").lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValidationError("email must be a valid email address")
    return email


def create_merchant(*, business_name: str, user_ref: str | None = None) -> Merchant:
    business_name = require_str(business_name, "business_name")
    user_ref = optional_str(user_ref, "user_ref", max_len=64)

    merchant = Merchant(business_name=business_name, user_ref=user_ref, is_active=True)
    db.session.add(merchant)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"A merchant is already linked to '{user_ref}'")
    return merchant


def get_merchant(merchant_id: int) -> Merchant:
    merchant = db.session.get(Merchant, merchant_id)
    if merchant is None:
        raise NotFoundError(f"Merchant {merchant_id} not found")
    return merchant


def set_merchant_active(merchant_id: int, is_active: bool) -> Merchant:
    merchant = get_merchant(merchant_id)
    merchant.is_active = bool(is_active)
    db.session.commit()
    return merchant


def upsert_member_profile(
    *,
    user_ref: str,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    timezone: str | None = None,
) -> Member:
    """Create or update the member profile linked to an identity principal."""
    user_ref = require_str(user_ref, "user_ref", max_len=64)
    email = _validate_email(email)
    first_name = optional_str(first_name, "first_name", max_len=100)
    last_name = optional_str(last_name, "last_name", max_len=100)
    timezone = _validate_timezone(timezone)

    def _op():
        member = Member.query.filter_by(user_ref=user_ref).first()
        if member is None:
            member = Member(user_ref=user_ref, email=email)
            db.session.add(member)
        member.email = email
        member.first_name = first_name
        member.last_name = last_name
        member.timezone = timezone
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("That email is already linked to another member")
        return member

    return run_with_retry(_op)


def create_survey(*, merchant_id: int, title: str, questions: list) -> Survey:
    """
    Publish a merchant survey. A merchant has at most one active survey, so
    any previous one is deactivated in the same transaction.
    """
    title = require_str(title, "title")
    if not isinstance(questions, list) or not questions:
        raise ValidationError("questions must be a non-empty list")
    get_merchant(merchant_id)

    def _op():
        Survey.query.filter_by(merchant_id=merchant_id, is_active=True).update(
            {"is_active": False}, synchronize_session=False
        )
        survey = Survey(merchant_id=merchant_id, title=title, questions=questions, is_active=True)
        db.session.add(survey)
        db.session.commit()
        return survey

    return run_with_retry(_op)


def deactivate_survey(*, merchant_id: int, survey_id: int) -> Survey:
    survey = db.session.get(Survey, survey_id)
    if survey is None or survey.merchant_id != merchant_id:
        raise NotFoundError(f"Survey {survey_id} not found")
    survey.is_active = False
    db.session.commit()
    return survey
