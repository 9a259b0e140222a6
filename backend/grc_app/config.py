# backend/grc_app/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/grc.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///grc.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Identity provider contract: the gateway in front of us authenticates
    # the caller and forwards the principal in these headers.
    PRINCIPAL_ID_HEADER = "X-Principal-Id"
    PRINCIPAL_ROLE_HEADER = "X-Principal-Role"

    # Qualification rules (all money in cents)
    MONTHLY_TARGET_CENTS = _env_int("GRC_MONTHLY_TARGET_CENTS", 10_000)
    MONTHLY_REBATE_CENTS = _env_int("GRC_MONTHLY_REBATE_CENTS", 2_500)

    # Receipt review
    REUPLOAD_WINDOW_DAYS = _env_int("GRC_REUPLOAD_WINDOW_DAYS", 7)
    AUTO_APPROVE_CLEAN_RECEIPTS = _env_bool("GRC_AUTO_APPROVE_CLEAN_RECEIPTS", False)

    # Scheduled policies
    PENDING_RETENTION_DAYS = _env_int("GRC_PENDING_RETENTION_DAYS", 365)
    FORFEIT_GRACE_DAYS = _env_int("GRC_FORFEIT_GRACE_DAYS", 7)

    # Registration
    REVIEW_BONUS_MIN_WORDS = _env_int("GRC_REVIEW_BONUS_MIN_WORDS", 50)


def get_setting(key: str):
    """Business constant from the running app's config, else the Config default."""
    from flask import current_app, has_app_context

    if has_app_context():
        return current_app.config.get(key, getattr(Config, key))
    return getattr(Config, key)
