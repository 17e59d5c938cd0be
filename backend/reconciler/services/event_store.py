# Overview: Durable webhook event store; the unique insert is the dedup gate.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import WebhookEvent
from ..models.orders import new_uuid
from reconciler.time_utils import utcnow
from .concurrency import run_with_retry
from .webhook_payload import ParsedWebhook

log = structlog.get_logger(__name__)

PROVIDER = "monobank"


@dataclass(frozen=True)
class IngestResult:
    event_id: str | None
    deduped: bool


def ingest_event(
    parsed: ParsedWebhook,
    *,
    raw_sha256: str,
    event_key: str,
    received_at: datetime | None = None,
) -> IngestResult:
    """
    Insert-or-ignore one provider notification.

    A conflict on event_key or raw_sha256 means the notification was already
    recorded: the existing row is looked up by either key and reported with
    deduped=True. Exactly one row ever exists per key.
    """
    received_at = received_at or utcnow()
    normalized = parsed.normalized
    event_id = new_uuid()

    def _insert():
        db.session.add(WebhookEvent(
            id=event_id,
            provider=PROVIDER,
            event_key=event_key,
            raw_sha256=raw_sha256,
            invoice_id=normalized.invoice_id,
            status=normalized.status,
            amount=normalized.amount,
            ccy=normalized.ccy,
            reference=normalized.reference,
            raw_payload=parsed.raw,
            normalized_payload=normalized.to_dict(),
            provider_modified_at=parsed.provider_modified_at,
            received_at=received_at,
        ))
        db.session.commit()

    try:
        run_with_retry(_insert)
    except IntegrityError:
        db.session.rollback()
        existing_id = db.session.execute(
            select(WebhookEvent.id)
            .where(or_(WebhookEvent.event_key == event_key, WebhookEvent.raw_sha256 == raw_sha256))
            .limit(1)
        ).scalar()
        return IngestResult(event_id=existing_id, deduped=True)

    return IngestResult(event_id=event_id, deduped=False)


def get_event(event_id: str) -> WebhookEvent | None:
    return db.session.get(WebhookEvent, event_id)


def event_snapshot(event_id: str):
    """Fresh column read of the fields the apply path branches on."""
    return db.session.execute(
        select(
            WebhookEvent.id,
            WebhookEvent.applied_at,
            WebhookEvent.applied_result,
            WebhookEvent.claimed_by,
            WebhookEvent.claim_expires_at,
        ).where(WebhookEvent.id == event_id)
    ).first()


def record_event_outcome(
    event_id: str,
    *,
    applied_result: str,
    error_code: str | None = None,
    error_message: str | None = None,
    attempt_id: str | None = None,
    order_id: str | None = None,
    now: datetime | None = None,
    keep_existing_error: bool = False,
) -> None:
    """
    Write what happened to an event. The only writer of applied_* columns.

    keep_existing_error leaves an earlier error code/message in place and only
    fills them when empty.
    """
    now = now or utcnow()
    values = {
        "applied_at": now,
        "applied_result": applied_result,
    }

    if keep_existing_error:
        if error_code is not None:
            values["applied_error_code"] = func.coalesce(WebhookEvent.applied_error_code, error_code)
        if error_message is not None:
            values["applied_error_message"] = func.coalesce(WebhookEvent.applied_error_message, error_message[:500])
    else:
        if error_code is not None:
            values["applied_error_code"] = error_code
        if error_message is not None:
            values["applied_error_message"] = error_message[:500]

    if attempt_id is not None:
        values["attempt_id"] = attempt_id
    if order_id is not None:
        values["order_id"] = order_id

    db.session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def mark_event_buffered(event_id: str, result: str, *, now: datetime | None = None) -> bool:
    """
    Mark an unapplied event as stored or dropped.

    'stored' leaves applied_at empty so the drainer can still claim it;
    'dropped' closes the event.
    """
    if result not in ("stored", "dropped"):
        raise ValueError(f"Invalid buffered result: {result}")

    values = {"applied_result": result}
    if result == "dropped":
        values["applied_at"] = now or utcnow()

    res = db.session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id, WebhookEvent.applied_at.is_(None))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return res.rowcount == 1
