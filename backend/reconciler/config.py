# backend/reconciler/config.py
from __future__ import annotations

import os
from dataclasses import dataclass

WEBHOOK_MODES = ("apply", "store", "drop")

# (default, min, max)
CLAIM_TTL_SECONDS = (120, 15, 30 * 60)
JOB1_GRACE_SECONDS = (900, 0, 24 * 60 * 60)
JOB2_TTL_SECONDS = (120, 0, 24 * 60 * 60)
JANITOR_LEASE_SECONDS = (120, 15, 30 * 60)
JOB4_NEEDS_REVIEW_AGE_HOURS = (24, 0, 7 * 24)
JOB5_GRACE_SECONDS = (900, 0, 7 * 24 * 60 * 60)
JANITOR_BATCH_LIMIT = (25, 1, 100)


def clamp_int(value, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, int(value)))


def parse_int(raw, bounds: tuple[int, int, int]) -> int:
    """Parse an integer setting, falling back to the default and clamping to bounds."""
    default, minimum, maximum = bounds
    try:
        value = int(float(raw)) if raw is not None and str(raw).strip() != "" else default
    except (TypeError, ValueError):
        value = default
    return clamp_int(value, minimum, maximum)


def parse_webhook_mode(raw: str | None) -> str:
    value = (raw or "apply").strip().lower()
    return value if value in WEBHOOK_MODES else "apply"


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///reconciler.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Webhook handling: apply inline, store for the drainer, or drop.
    MONO_WEBHOOK_MODE = parse_webhook_mode(os.environ.get("MONO_WEBHOOK_MODE"))
    MONO_WEBHOOK_CLAIM_TTL_SECONDS = parse_int(os.environ.get("MONO_WEBHOOK_CLAIM_TTL_SECONDS"), CLAIM_TTL_SECONDS)

    # Janitor sweeps
    MONO_JANITOR_JOB1_GRACE_SECONDS = parse_int(os.environ.get("MONO_JANITOR_JOB1_GRACE_SECONDS"), JOB1_GRACE_SECONDS)
    MONO_JANITOR_JOB2_TTL_SECONDS = parse_int(os.environ.get("MONO_JANITOR_JOB2_TTL_SECONDS"), JOB2_TTL_SECONDS)
    MONO_JANITOR_LEASE_SECONDS = parse_int(os.environ.get("MONO_JANITOR_LEASE_SECONDS"), JANITOR_LEASE_SECONDS)
    MONO_JANITOR_JOB4_NEEDS_REVIEW_AGE_HOURS = parse_int(
        os.environ.get("MONO_JANITOR_JOB4_NEEDS_REVIEW_AGE_HOURS"), JOB4_NEEDS_REVIEW_AGE_HOURS
    )
    MONO_JANITOR_JOB5_GRACE_SECONDS = parse_int(os.environ.get("MONO_JANITOR_JOB5_GRACE_SECONDS"), JOB5_GRACE_SECONDS)
    MONO_JANITOR_BATCH_LIMIT = parse_int(os.environ.get("MONO_JANITOR_BATCH_LIMIT"), JANITOR_BATCH_LIMIT)

    # Monobank settles in hryvnia only.
    MONO_NATIVE_CURRENCY = "UAH"
    MONO_NATIVE_CCY_CODE = 980

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    LOG_JSON = env_flag("LOG_JSON", default=True)

    # Derived per process in create_app() unless set explicitly.
    WORKER_ID = os.environ.get("RECONCILER_WORKER_ID")


@dataclass(frozen=True)
class ReconcilerSettings:
    webhook_mode: str
    claim_ttl_seconds: int
    job1_grace_seconds: int
    job2_ttl_seconds: int
    janitor_lease_seconds: int
    job4_needs_review_age_hours: int
    job5_grace_seconds: int
    batch_limit: int
    native_currency: str
    native_ccy_code: int


def reconciler_settings(config=None) -> ReconcilerSettings:
    """
    Read reconciliation settings from the Flask app config.

    Values are clamped again here so overrides applied after startup
    (tests, CLI) stay within the same bounds as environment values.
    """
    if config is None:
        from flask import current_app
        config = current_app.config

    return ReconcilerSettings(
        webhook_mode=parse_webhook_mode(config.get("MONO_WEBHOOK_MODE")),
        claim_ttl_seconds=parse_int(config.get("MONO_WEBHOOK_CLAIM_TTL_SECONDS"), CLAIM_TTL_SECONDS),
        job1_grace_seconds=parse_int(config.get("MONO_JANITOR_JOB1_GRACE_SECONDS"), JOB1_GRACE_SECONDS),
        job2_ttl_seconds=parse_int(config.get("MONO_JANITOR_JOB2_TTL_SECONDS"), JOB2_TTL_SECONDS),
        janitor_lease_seconds=parse_int(config.get("MONO_JANITOR_LEASE_SECONDS"), JANITOR_LEASE_SECONDS),
        job4_needs_review_age_hours=parse_int(
            config.get("MONO_JANITOR_JOB4_NEEDS_REVIEW_AGE_HOURS"), JOB4_NEEDS_REVIEW_AGE_HOURS
        ),
        job5_grace_seconds=parse_int(config.get("MONO_JANITOR_JOB5_GRACE_SECONDS"), JOB5_GRACE_SECONDS),
        batch_limit=parse_int(config.get("MONO_JANITOR_BATCH_LIMIT"), JANITOR_BATCH_LIMIT),
        native_currency=config.get("MONO_NATIVE_CURRENCY", "UAH"),
        native_ccy_code=int(config.get("MONO_NATIVE_CCY_CODE", 980)),
    )
