# Overview: structlog configuration for reconciliation logs (the operator-facing audit trail).

from __future__ import annotations

import logging
import sys

import structlog

# Keys structlog itself adds to every event.
_RESERVED_KEYS = {"event", "level", "timestamp", "logger", "exception", "exc_info", "stack", "code", "error"}

# Metadata allowed into the log sink. Raw payloads, tokens and free-form
# provider bodies are deliberately absent.
ALLOWED_META_KEYS = frozenset({
    "request_id",
    "provider",
    "mode",
    "store_decision",
    "event_id",
    "event_key",
    "raw_sha256",
    "invoice_id",
    "order_id",
    "attempt_id",
    "applied_result",
    "deduped",
    "status",
    "from_status",
    "to_status",
    "reason",
    "source",
    "error_code",
    "run_id",
    "worker_id",
    "job",
    "dry_run",
    "limit",
    "grace_seconds",
    "lease_seconds",
    "ttl_seconds",
    "processed",
    "applied",
    "noop",
    "failed",
    "candidates",
    "claimed",
    "age_hours_threshold",
    "count",
    "oldest_age_minutes",
    "restock_reason",
    "target_statuses",
})


def filter_meta_keys(logger, method_name, event_dict):
    """Drop any key that is not explicitly allowed in the log sink."""
    return {
        key: value
        for key, value in event_dict.items()
        if key in _RESERVED_KEYS or key in ALLOWED_META_KEYS
    }


def configure_logging(app) -> None:
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if app.config.get("LOG_JSON", True)
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            filter_meta_keys,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def error_message(error: BaseException, limit: int = 500) -> str:
    """Short single-line description of an exception for log fields and DB columns."""
    msg = f"{type(error).__name__}: {error}"
    return msg if len(msg) <= limit else msg[:limit]
