# Overview: Decision engine that applies one Monobank event to its attempt and order.

"""
Webhook Apply State Machine

WHY: Provider notifications arrive late, twice, or out of order, and a
janitor may be replaying the same invoice at the same moment. This module
decides, for one stored event, what (if anything) changes on the order and
its payment attempt, and records that decision on the event row.

ORDER OF CHECKS (first match wins):
 1. dedup (event store)           -> deduped
 2. mode gate (store / drop)      -> stored / dropped
 3. event lease                   -> applied_noop for the loser
 4. resolve attempt               -> unmatched / ATTEMPT_NOT_FOUND
 5. resolve order                 -> unmatched / ORDER_NOT_FOUND
 6. provider time not newer       -> applied_noop / OUT_OF_ORDER
 7. amount or currency mismatch   -> applied_with_issue / AMOUNT_MISMATCH
 8. order paid or needs_review    -> applied_noop
 9. success after failed/refunded -> applied_with_issue / OUT_OF_ORDER
10. success                       -> applied (or PAYMENT_STATE_BLOCKED)
11. processing / created          -> applied_noop
12. failure / expired / reversed  -> applied, restock flagged
13. anything else                 -> applied_with_issue / UNKNOWN_STATUS

State is always read as a fresh column snapshot and every write carries its
own precondition in the WHERE clause. The order transition and the attempt
finalization of one branch commit together or not at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, or_, select, update

from ..extensions import db
from ..models import Order, PaymentAttempt, WebhookEvent
from ..config import reconciler_settings
from ..logging_setup import error_message
from reconciler.time_utils import utcnow
from .event_store import (
    event_snapshot,
    get_event,
    ingest_event,
    mark_event_buffered,
    record_event_outcome,
)
from .lease_service import EVENT_LEASE, claim
from .payment_state import ALREADY_IN_STATE, guarded_payment_status_update
from .restock_service import restock_order
from .webhook_payload import (
    ParsedWebhook,
    build_event_key,
    is_attempt_reference,
    normalize_webhook_payload,
    parse_webhook_payload,
    sha256_hex,
)

log = structlog.get_logger(__name__)

PROVIDER = "monobank"

# =============================================================================
# APPLIED RESULTS
# =============================================================================

APPLIED = "applied"
APPLIED_NOOP = "applied_noop"
APPLIED_WITH_ISSUE = "applied_with_issue"
STORED = "stored"
DROPPED = "dropped"
UNMATCHED = "unmatched"
DEDUPED = "deduped"

# =============================================================================
# ERROR CODES
# =============================================================================

ATTEMPT_NOT_FOUND = "ATTEMPT_NOT_FOUND"
ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
OUT_OF_ORDER = "OUT_OF_ORDER"
AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
PAYMENT_STATE_BLOCKED = "PAYMENT_STATE_BLOCKED"
UNKNOWN_STATUS = "UNKNOWN_STATUS"
DB_WRITE_FAILED = "DB_WRITE_FAILED"
RESTOCK_FAILED = "RESTOCK_FAILED"

SUCCESS_STATUSES = ("success",)
IN_FLIGHT_STATUSES = ("processing", "created")
FAILURE_STATUSES = ("failure", "expired", "reversed")


@dataclass(frozen=True)
class ApplyOutcome:
    applied_result: str
    attempt_id: str | None = None
    order_id: str | None = None
    restock_reason: str | None = None


@dataclass(frozen=True)
class WebhookResult:
    deduped: bool
    applied_result: str
    event_id: str | None
    invoice_id: str

    def to_dict(self) -> dict:
        return {
            "deduped": self.deduped,
            "applied_result": self.applied_result,
            "event_id": self.event_id,
            "invoice_id": self.invoice_id,
        }


# =============================================================================
# SNAPSHOTS
# =============================================================================

_ATTEMPT_COLUMNS = (
    PaymentAttempt.id,
    PaymentAttempt.order_id,
    PaymentAttempt.status,
    PaymentAttempt.expected_amount_minor,
    PaymentAttempt.provider_payment_intent_id,
    PaymentAttempt.provider_modified_at,
)


def _find_attempt(invoice_id: str, reference: str | None):
    """Attempt by reference id (preferred) or by provider invoice id."""
    if is_attempt_reference(reference):
        row = db.session.execute(
            select(*_ATTEMPT_COLUMNS).where(
                PaymentAttempt.provider == PROVIDER,
                PaymentAttempt.id == reference.lower(),
            )
        ).first()
        if row is not None:
            return row

    return db.session.execute(
        select(*_ATTEMPT_COLUMNS)
        .where(
            PaymentAttempt.provider == PROVIDER,
            PaymentAttempt.provider_payment_intent_id == invoice_id,
        )
        .order_by(PaymentAttempt.attempt_number.desc())
        .limit(1)
    ).first()


def _find_order(order_id: str):
    return db.session.execute(
        select(
            Order.id,
            Order.payment_status,
            Order.payment_provider,
            Order.status,
            Order.currency,
            Order.total_amount_minor,
            Order.psp_metadata,
        ).where(Order.id == order_id)
    ).first()


def _next_provider_modified_at(event_at: datetime | None, attempt_at: datetime | None) -> datetime | None:
    if event_at is not None and (attempt_at is None or event_at > attempt_at):
        return event_at
    return attempt_at


def _monotonic_predicate(next_at: datetime | None):
    # provider_modified_at on the attempt may only stay or move forward.
    if next_at is None:
        return PaymentAttempt.provider_modified_at.is_(None)
    return or_(
        PaymentAttempt.provider_modified_at.is_(None),
        PaymentAttempt.provider_modified_at <= next_at,
    )


def _merged_metadata(current, normalized) -> dict:
    merged = dict(current) if isinstance(current, dict) else {}
    merged["monobank"] = normalized.to_dict()
    return merged


def amount_mismatch_reason(*, payload_amount, payload_ccy, order_currency, order_total, expected_amount, settings) -> str | None:
    """Why the money in the event cannot be trusted, or None when it matches."""
    if order_currency != settings.native_currency:
        return "order_currency_mismatch"
    if payload_ccy is not None and payload_ccy != settings.native_ccy_code:
        return "payload_currency_mismatch"

    expected = expected_amount if expected_amount is not None else order_total
    if payload_amount is not None and payload_amount != expected:
        return "amount_mismatch"
    if expected != order_total:
        return "expected_amount_mismatch"
    return None


# =============================================================================
# APPLY
# =============================================================================

def apply_event_to_order(event_id: str, parsed: ParsedWebhook, *, now: datetime | None = None, settings=None) -> ApplyOutcome:
    """
    Steps 4-13 for an event the caller holds the lease on.

    Every branch records its outcome on the event row before returning.
    """
    now = now or utcnow()
    settings = settings or reconciler_settings()
    normalized = parsed.normalized
    status = normalized.status

    attempt = _find_attempt(normalized.invoice_id, normalized.reference)
    if attempt is None:
        log.warning(
            "monobank_webhook_unmatched",
            code="MONO_UNMATCHED",
            event_id=event_id,
            invoice_id=normalized.invoice_id,
            status=status,
            reason="attempt_not_found",
        )
        record_event_outcome(
            event_id,
            applied_result=UNMATCHED,
            error_code=ATTEMPT_NOT_FOUND,
            error_message="No matching payment attempt",
            now=now,
        )
        return ApplyOutcome(applied_result=UNMATCHED)

    order = _find_order(attempt.order_id)
    if order is None:
        log.warning(
            "monobank_webhook_unmatched",
            code="MONO_UNMATCHED",
            event_id=event_id,
            invoice_id=normalized.invoice_id,
            attempt_id=attempt.id,
            status=status,
            reason="order_not_found",
        )
        record_event_outcome(
            event_id,
            applied_result=UNMATCHED,
            error_code=ORDER_NOT_FOUND,
            error_message="Order not found for attempt",
            attempt_id=attempt.id,
            now=now,
        )
        return ApplyOutcome(applied_result=UNMATCHED, attempt_id=attempt.id)

    def _done(result: str, *, code: str | None = None, message: str | None = None, restock_reason: str | None = None):
        record_event_outcome(
            event_id,
            applied_result=result,
            error_code=code,
            error_message=message,
            attempt_id=attempt.id,
            order_id=order.id,
            now=now,
        )
        return ApplyOutcome(
            applied_result=result,
            attempt_id=attempt.id,
            order_id=order.id,
            restock_reason=restock_reason,
        )

    log_meta = {
        "event_id": event_id,
        "invoice_id": normalized.invoice_id,
        "order_id": order.id,
        "attempt_id": attempt.id,
        "status": status,
    }

    # 6. ordering
    event_at = parsed.provider_modified_at
    attempt_at = attempt.provider_modified_at
    if event_at is not None and attempt_at is not None and event_at <= attempt_at:
        log.info("monobank_old_event", code="MONO_OLD_EVENT", reason="provider_modified_at_older_or_equal", **log_meta)
        return _done(APPLIED_NOOP, code=OUT_OF_ORDER, message="provider_modified_at older than latest")

    next_at = _next_provider_modified_at(event_at, attempt_at)

    # 7. money
    mismatch = amount_mismatch_reason(
        payload_amount=normalized.amount,
        payload_ccy=normalized.ccy,
        order_currency=order.currency,
        order_total=order.total_amount_minor,
        expected_amount=attempt.expected_amount_minor,
        settings=settings,
    )
    if mismatch:
        log.warning("monobank_mismatch", code="MONO_MISMATCH", reason=mismatch, **log_meta)
        if order.payment_status != "paid":
            _flag_mismatch(order.id, attempt.id, mismatch, next_at, now)
        return _done(APPLIED_WITH_ISSUE, code=AMOUNT_MISMATCH, message=mismatch)

    # 8. terminal stickiness
    if order.payment_status in ("paid", "needs_review"):
        return _done(APPLIED_NOOP)

    # 9. resurrection
    if order.payment_status in ("failed", "refunded") and status in SUCCESS_STATUSES:
        message = f"Out-of-order: {order.payment_status} -> success"
        try:
            tr = guarded_payment_status_update(
                order.id,
                payment_provider=PROVIDER,
                to="needs_review",
                source="monobank_webhook",
                values={"failure_code": "MONO_OUT_OF_ORDER", "failure_message": message, "updated_at": now},
                allow_same_state=False,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        log.warning("monobank_out_of_order", code="MONO_OUT_OF_ORDER", reason=tr.reason or "flagged", **log_meta)
        return _done(APPLIED_WITH_ISSUE, code=OUT_OF_ORDER, message=message)

    # 10. success
    if status in SUCCESS_STATUSES:
        return _apply_success(order, attempt, normalized, next_at, now, log_meta, _done)

    # 11. in flight
    if status in IN_FLIGHT_STATUSES:
        return _done(APPLIED_NOOP)

    # 12. failure / expiry / reversal
    if status in FAILURE_STATUSES:
        return _apply_failure(order, attempt, normalized, next_at, now, log_meta, _done)

    # 13. unknown
    log.error("monobank_webhook_unknown_status", code="MONO_WEBHOOK_UNKNOWN_STATUS", **log_meta)
    return _done(APPLIED_WITH_ISSUE, code=UNKNOWN_STATUS, message=f"Unrecognized Monobank status: {status}")


def _flag_mismatch(order_id: str, attempt_id: str, reason: str, next_at, now) -> None:
    """Order to needs_review and attempt to failed, together or not at all."""
    try:
        tr = guarded_payment_status_update(
            order_id,
            payment_provider=PROVIDER,
            to="needs_review",
            source="monobank_webhook",
            values={"failure_code": "MONO_AMOUNT_MISMATCH", "failure_message": reason, "updated_at": now},
            allow_same_state=False,
        )
        if not tr.ok:
            # A concurrent writer moved the order (e.g. it just got paid).
            db.session.rollback()
            return

        db.session.execute(
            update(PaymentAttempt)
            .where(
                PaymentAttempt.id == attempt_id,
                PaymentAttempt.status != "succeeded",
                _monotonic_predicate(next_at),
            )
            .values(
                status="failed",
                finalized_at=now,
                updated_at=now,
                last_error_code=AMOUNT_MISMATCH,
                last_error_message=reason,
                provider_modified_at=next_at,
            )
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _apply_success(order, attempt, normalized, next_at, now, log_meta, done) -> ApplyOutcome:
    try:
        tr = guarded_payment_status_update(
            order.id,
            payment_provider=PROVIDER,
            to="paid",
            source="monobank_webhook",
            values={
                "status": "PAID",
                "psp_charge_id": normalized.invoice_id,
                "psp_metadata": _merged_metadata(order.psp_metadata, normalized),
                "updated_at": now,
            },
            allow_same_state=False,
        )
        if not tr.applied:
            db.session.rollback()
            if tr.reason == ALREADY_IN_STATE:
                # Paid by a concurrent writer; paid is terminal.
                return done(APPLIED_NOOP)
            return done(
                APPLIED_WITH_ISSUE,
                code=PAYMENT_STATE_BLOCKED,
                message=f"blocked transition to paid ({tr.reason})",
            )

        result = db.session.execute(
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt.id, _monotonic_predicate(next_at))
            .values(
                status="succeeded",
                finalized_at=now,
                updated_at=now,
                last_error_code=None,
                last_error_message=None,
                provider_modified_at=next_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            log.error(
                "monobank_webhook_atomic_update_failed",
                code="MONO_WEBHOOK_ATOMIC_UPDATE_FAILED",
                reason="paid_and_succeeded",
                **log_meta,
            )
            return done(
                APPLIED_WITH_ISSUE,
                code=DB_WRITE_FAILED,
                message="atomic update (paid+succeeded) did not update both rows",
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log.info("monobank_paid_applied", code="MONO_PAID_APPLIED", applied_result=APPLIED, **log_meta)
    return done(APPLIED)


def _apply_failure(order, attempt, normalized, next_at, now, log_meta, done) -> ApplyOutcome:
    status = normalized.status
    refunded = status == "reversed"
    target = "refunded" if refunded else "failed"

    try:
        tr = guarded_payment_status_update(
            order.id,
            payment_provider=PROVIDER,
            to=target,
            source="monobank_webhook",
            values={
                "psp_status_reason": status,
                "psp_metadata": _merged_metadata(order.psp_metadata, normalized),
                "updated_at": now,
            },
            allow_same_state=False,
        )
        if not tr.ok:
            db.session.rollback()
            return done(
                APPLIED_WITH_ISSUE,
                code=PAYMENT_STATE_BLOCKED,
                message=f"blocked transition to {target} ({tr.reason})",
            )

        result = db.session.execute(
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt.id, _monotonic_predicate(next_at))
            .values(
                status="canceled" if refunded else "failed",
                finalized_at=now,
                updated_at=now,
                last_error_code=status,
                last_error_message=f"Monobank status: {status}",
                provider_modified_at=next_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            log.error(
                "monobank_webhook_atomic_update_failed",
                code="MONO_WEBHOOK_ATOMIC_UPDATE_FAILED",
                reason="finalize",
                **log_meta,
            )
            return done(
                APPLIED_WITH_ISSUE,
                code=DB_WRITE_FAILED,
                message="atomic update (finalize) did not update both rows",
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log.info("monobank_payment_finalized", code="MONO_PAYMENT_FINALIZED", to_status=target, **log_meta)
    return done(APPLIED, restock_reason=target)


def finalize_outcome_with_restock(event_id: str, outcome: ApplyOutcome, *, worker_id: str, invoice_id: str | None = None) -> str:
    """
    Run the inventory release an outcome asks for.

    The payment transition is already committed; a restock failure does not
    undo it. The event is downgraded to applied_with_issue / RESTOCK_FAILED
    (an earlier error code is kept) and the attempt is annotated the same way.
    """
    if not (outcome.restock_reason and outcome.order_id):
        return outcome.applied_result

    try:
        restock_order(outcome.order_id, reason=outcome.restock_reason, worker_id=worker_id)
    except Exception as exc:
        db.session.rollback()
        message = error_message(exc)
        log.error(
            "monobank_webhook_restock_failed",
            code="MONO_WEBHOOK_RESTOCK_FAILED",
            event_id=event_id,
            invoice_id=invoice_id,
            order_id=outcome.order_id,
            attempt_id=outcome.attempt_id,
            restock_reason=outcome.restock_reason,
            error=message,
        )
        record_event_outcome(
            event_id,
            applied_result=APPLIED_WITH_ISSUE,
            error_code=RESTOCK_FAILED,
            error_message=message,
            keep_existing_error=True,
        )
        if outcome.attempt_id:
            db.session.execute(
                update(PaymentAttempt)
                .where(PaymentAttempt.id == outcome.attempt_id)
                .values(
                    last_error_code=func.coalesce(PaymentAttempt.last_error_code, RESTOCK_FAILED),
                    last_error_message=func.coalesce(PaymentAttempt.last_error_message, message),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        return APPLIED_WITH_ISSUE

    return outcome.applied_result


def claim_and_apply(
    event_id: str,
    parsed: ParsedWebhook,
    *,
    worker_id: str,
    claim_ttl_seconds: int,
    deduped: bool = False,
) -> str:
    """Take the event lease and drive the event. The lease loser does nothing."""
    if not claim(EVENT_LEASE, event_id, worker_id, claim_ttl_seconds):
        return DEDUPED if deduped else APPLIED_NOOP

    outcome = apply_event_to_order(event_id, parsed)
    return finalize_outcome_with_restock(
        event_id,
        outcome,
        worker_id=worker_id,
        invoice_id=parsed.normalized.invoice_id,
    )


def process_webhook(
    raw_body,
    *,
    mode: str,
    worker_id: str,
    parsed: ParsedWebhook | None = None,
    event_key: str | None = None,
    claim_ttl_seconds: int | None = None,
    request_id: str | None = None,
) -> WebhookResult:
    """
    Entry point for one webhook delivery (live or synthesized by a janitor).

    Raises:
        InvalidPayloadError: Body cannot be normalized; nothing is stored.
    """
    parsed = parsed or parse_webhook_payload(raw_body)
    invoice_id = parsed.normalized.invoice_id
    received_at = utcnow()
    raw_sha256 = sha256_hex(raw_body)
    event_key = event_key or build_event_key(parsed, received_at)

    ingested = ingest_event(parsed, raw_sha256=raw_sha256, event_key=event_key, received_at=received_at)
    event_id = ingested.event_id

    if ingested.deduped:
        log.info(
            "monobank_dedup",
            code="MONO_DEDUP",
            request_id=request_id,
            event_id=event_id,
            invoice_id=invoice_id,
            status=parsed.normalized.status,
            deduped=True,
            reason="insert_conflict",
        )
        snapshot = event_snapshot(event_id) if event_id else None
        # Only an apply-mode delivery may pick up an event that was never applied.
        if mode != "apply" or snapshot is None or snapshot.applied_at is not None:
            return WebhookResult(deduped=True, applied_result=DEDUPED, event_id=event_id, invoice_id=invoice_id)

    if mode in ("store", "drop") and not ingested.deduped:
        decision = STORED if mode == "store" else DROPPED
        mark_event_buffered(event_id, decision)
        log.info(
            "monobank_store_mode",
            code="MONO_STORE_MODE",
            request_id=request_id,
            mode=mode,
            store_decision=decision,
            event_id=event_id,
            invoice_id=invoice_id,
        )
        return WebhookResult(deduped=False, applied_result=decision, event_id=event_id, invoice_id=invoice_id)

    if claim_ttl_seconds is None:
        claim_ttl_seconds = reconciler_settings().claim_ttl_seconds

    applied_result = claim_and_apply(
        event_id,
        parsed,
        worker_id=worker_id,
        claim_ttl_seconds=claim_ttl_seconds,
        deduped=ingested.deduped,
    )
    return WebhookResult(
        deduped=ingested.deduped,
        applied_result=applied_result,
        event_id=event_id,
        invoice_id=invoice_id,
    )


def apply_stored_event(event_id: str, *, worker_id: str) -> WebhookResult:
    """
    Replay a buffered event. The caller must already hold its event lease.

    Raises:
        ValueError: Stored row is missing or its raw payload is not an object.
        InvalidPayloadError: Stored payload no longer normalizes.
    """
    event = get_event(event_id)
    if event is None:
        raise ValueError(f"Stored event {event_id} not found")

    owner = db.session.execute(
        select(WebhookEvent.claimed_by, WebhookEvent.applied_at).where(WebhookEvent.id == event_id)
    ).first()
    if not isinstance(event.raw_payload, dict):
        raise ValueError("Stored event has invalid raw payload")

    parsed = normalize_webhook_payload(event.raw_payload)
    invoice_id = parsed.normalized.invoice_id

    if owner.claimed_by != worker_id or owner.applied_at is not None:
        return WebhookResult(deduped=False, applied_result=APPLIED_NOOP, event_id=event_id, invoice_id=invoice_id)

    outcome = apply_event_to_order(event_id, parsed)
    applied_result = finalize_outcome_with_restock(event_id, outcome, worker_id=worker_id, invoice_id=invoice_id)
    return WebhookResult(deduped=False, applied_result=applied_result, event_id=event_id, invoice_id=invoice_id)
