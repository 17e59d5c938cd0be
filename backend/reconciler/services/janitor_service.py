# Overview: Periodic Monobank sweeps that repair state left behind by missed or delayed webhooks.

"""
Janitor Jobs

job1  stale active reconciler   poll the provider for attempts idle past a grace window
job2  orphan expirer            cancel orders whose attempt never got an invoice
job3  stored-event drainer      replay buffered events in provider order (store mode only)
job4  needs-review reporter     read-only backlog metrics
job5  restock sweep             finish inventory releases left behind by failed restocks

Per-item failures are contained: one bad row never aborts the batch, and
every claimed lease is released in a finally block. The only error that
propagates is JanitorJob3ModeError.
"""

from __future__ import annotations

import json
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import and_, func, or_, select, update

from ..extensions import db
from ..models import Order, PaymentAttempt, WebhookEvent
from ..config import reconciler_settings
from ..logging_setup import error_message
from reconciler.time_utils import seconds_ago, utcnow
from .lease_service import ATTEMPT_LEASE, EVENT_LEASE, ORDER_RESTOCK_LEASE, claim, claim_next_event, release
from .provider import get_invoice_status_provider
from .restock_service import restock_order
from .webhook_apply import APPLIED, APPLIED_WITH_ISSUE, apply_stored_event, process_webhook
from .webhook_payload import normalize_webhook_payload

log = structlog.get_logger(__name__)

PROVIDER = "monobank"

ACTIVE_ATTEMPT_STATUSES = ("creating", "active")
ORPHAN_ATTEMPT_STATUSES = ("creating",)
CANCELABLE_PAYMENT_STATUSES = ("pending", "requires_payment")
NON_CANCELABLE_ORDER_STATUSES = ("PAID", "CANCELED")

JOB2_ORDER_FAILURE_CODE = "PSP_UNAVAILABLE"
JOB2_ORDER_FAILURE_MESSAGE = "Monobank invoice create failed."
JOB2_ATTEMPT_ERROR_CODE = "invoice_missing"
JOB2_ATTEMPT_ERROR_MESSAGE = "Active attempt missing invoice details (stale)."
JOB3_EVENT_ERROR_CODE = "JANITOR_JOB3_APPLY_FAILED"


class JanitorJob3ModeError(Exception):
    """Job 3 was asked to run against a deployment that applies webhooks inline."""
    code = "MONO_WEBHOOK_MODE_NOT_STORE"
    status = 409

    def __init__(self, message: str = "Monobank webhook mode must be store for job3"):
        super().__init__(message)


@dataclass(frozen=True)
class JobRunArgs:
    limit: int
    dry_run: bool = False
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str | None = None


@dataclass
class JobResult:
    processed: int = 0
    applied: int = 0
    noop: int = 0
    failed: int = 0
    report: dict | None = None

    def to_dict(self) -> dict:
        data = {
            "processed": self.processed,
            "applied": self.applied,
            "noop": self.noop,
            "failed": self.failed,
        }
        if self.report is not None:
            data["report"] = self.report
        return data


def _is_applied(result: str) -> bool:
    return result in (APPLIED, APPLIED_WITH_ISSUE)


def _release_quietly(spec, row_id, args: JobRunArgs, job: str, **meta) -> None:
    """Lease release failures are logged; the lease simply expires."""
    try:
        release(spec, row_id, args.run_id)
    except Exception as exc:
        db.session.rollback()
        log.warning(
            f"janitor_{job}_release_failed",
            code=f"JANITOR_{job.upper()}_RELEASE_FAILED",
            run_id=args.run_id,
            request_id=args.request_id,
            job=job,
            error=error_message(exc),
            **meta,
        )


# =============================================================================
# JOB 1: STALE ACTIVE RECONCILER
# =============================================================================

def _job1_candidates(limit: int, grace_seconds: int, now: datetime):
    return db.session.execute(
        select(PaymentAttempt.id, PaymentAttempt.order_id, PaymentAttempt.provider_payment_intent_id)
        .where(
            PaymentAttempt.provider == PROVIDER,
            PaymentAttempt.status.in_(ACTIVE_ATTEMPT_STATUSES),
            PaymentAttempt.provider_payment_intent_id.is_not(None),
            PaymentAttempt.updated_at < seconds_ago(grace_seconds, now=now),
            or_(PaymentAttempt.janitor_claimed_until.is_(None), PaymentAttempt.janitor_claimed_until < now),
        )
        .order_by(PaymentAttempt.updated_at.asc())
        .limit(limit)
    ).all()


def build_apply_payload(invoice_id: str, status: str, raw: dict | None = None) -> dict:
    """Provider poll response as a webhook-shaped payload."""
    payload = dict(raw) if isinstance(raw, dict) else {}
    payload["invoiceId"] = invoice_id
    payload["status"] = status
    return payload


def run_job1(args: JobRunArgs, *, provider=None) -> JobResult:
    settings = reconciler_settings()
    grace_seconds = settings.job1_grace_seconds
    lease_seconds = settings.janitor_lease_seconds
    now = utcnow()
    candidates = _job1_candidates(args.limit, grace_seconds, now)

    if args.dry_run:
        log.info(
            "janitor_job1_dry_run",
            code="JANITOR_JOB1_DRY_RUN",
            run_id=args.run_id,
            request_id=args.request_id,
            dry_run=True,
            limit=args.limit,
            grace_seconds=grace_seconds,
            lease_seconds=lease_seconds,
            candidates=len(candidates),
        )
        return JobResult(processed=len(candidates))

    provider = provider or get_invoice_status_provider()
    result = JobResult()
    claimed = 0

    for attempt in candidates:
        # Candidate predicates are re-checked inside the claim.
        won = claim(
            ATTEMPT_LEASE,
            attempt.id,
            args.run_id,
            lease_seconds,
            now=now,
            where=(
                PaymentAttempt.status.in_(ACTIVE_ATTEMPT_STATUSES),
                PaymentAttempt.provider_payment_intent_id.is_not(None),
                PaymentAttempt.updated_at < seconds_ago(grace_seconds, now=now),
            ),
        )
        if not won:
            continue
        claimed += 1
        result.processed += 1
        invoice_id = (attempt.provider_payment_intent_id or "").strip()

        try:
            invoice = provider.get_invoice_status(invoice_id)
            payload = build_apply_payload(invoice.invoice_id, invoice.status, invoice.raw)
            raw_body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
            webhook = process_webhook(
                raw_body,
                mode="apply",
                worker_id=args.run_id,
                parsed=normalize_webhook_payload(json.loads(raw_body)),
                claim_ttl_seconds=settings.claim_ttl_seconds,
                request_id=args.request_id,
            )
            if _is_applied(webhook.applied_result):
                result.applied += 1
                log.info(
                    "monobank_expired_reconciled",
                    code="MONO_EXPIRED_RECONCILED",
                    run_id=args.run_id,
                    request_id=args.request_id,
                    job="job1",
                    order_id=attempt.order_id,
                    attempt_id=attempt.id,
                    invoice_id=invoice_id,
                    applied_result=webhook.applied_result,
                    reason="stale_attempt_reconciled_from_psp_status",
                )
            else:
                result.noop += 1
        except Exception as exc:
            db.session.rollback()
            result.failed += 1
            log.error(
                "janitor_job1_attempt_failed",
                code="JANITOR_JOB1_ATTEMPT_FAILED",
                run_id=args.run_id,
                request_id=args.request_id,
                attempt_id=attempt.id,
                order_id=attempt.order_id,
                error_code=getattr(exc, "code", None),
                error=error_message(exc),
            )
        finally:
            _release_quietly(ATTEMPT_LEASE, attempt.id, args, "job1", attempt_id=attempt.id)

    log.info(
        "janitor_job1_completed",
        code="JANITOR_JOB1_COMPLETED",
        run_id=args.run_id,
        request_id=args.request_id,
        dry_run=False,
        limit=args.limit,
        grace_seconds=grace_seconds,
        lease_seconds=lease_seconds,
        claimed=claimed,
        **result.to_dict(),
    )
    return result


# =============================================================================
# JOB 2: ORPHAN EXPIRER
# =============================================================================

def _job2_order_predicates():
    return (
        Order.payment_provider == PROVIDER,
        Order.payment_status.in_(CANCELABLE_PAYMENT_STATUSES),
        Order.status.not_in(NON_CANCELABLE_ORDER_STATUSES),
    )


def _job2_attempt_predicates(ttl_seconds: int, now: datetime):
    return (
        PaymentAttempt.provider == PROVIDER,
        PaymentAttempt.status.in_(ORPHAN_ATTEMPT_STATUSES),
        PaymentAttempt.provider_payment_intent_id.is_(None),
        PaymentAttempt.created_at < seconds_ago(ttl_seconds, now=now),
    )


def _job2_candidates(limit: int, ttl_seconds: int, now: datetime):
    return db.session.execute(
        select(PaymentAttempt.id, PaymentAttempt.order_id)
        .join(Order, Order.id == PaymentAttempt.order_id)
        .where(
            *_job2_attempt_predicates(ttl_seconds, now),
            *_job2_order_predicates(),
            or_(PaymentAttempt.janitor_claimed_until.is_(None), PaymentAttempt.janitor_claimed_until < now),
        )
        .order_by(PaymentAttempt.created_at.asc())
        .limit(limit)
    ).all()


def cancel_orphaned_attempt(attempt_id: str, order_id: str, *, run_id: str, ttl_seconds: int, now: datetime) -> bool:
    """
    Cancel the order, then fail the attempt, in one transaction.

    Both statements re-check every candidate predicate, including that this
    run still owns the attempt lease. The attempt is failed only if the order
    update hit; otherwise nothing is written.
    """
    owns_attempt = select(PaymentAttempt.id).where(
        PaymentAttempt.id == attempt_id,
        PaymentAttempt.order_id == order_id,
        PaymentAttempt.janitor_claimed_by == run_id,
        *_job2_attempt_predicates(ttl_seconds, now),
    ).exists()

    try:
        order_res = db.session.execute(
            update(Order)
            .where(Order.id == order_id, *_job2_order_predicates(), owns_attempt)
            .values(
                status="CANCELED",
                failure_code=func.coalesce(Order.failure_code, JOB2_ORDER_FAILURE_CODE),
                failure_message=func.coalesce(Order.failure_message, JOB2_ORDER_FAILURE_MESSAGE),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if order_res.rowcount != 1:
            db.session.rollback()
            return False

        attempt_res = db.session.execute(
            update(PaymentAttempt)
            .where(
                PaymentAttempt.id == attempt_id,
                PaymentAttempt.janitor_claimed_by == run_id,
                *_job2_attempt_predicates(ttl_seconds, now),
            )
            .values(
                status="failed",
                finalized_at=now,
                updated_at=now,
                last_error_code=JOB2_ATTEMPT_ERROR_CODE,
                last_error_message=JOB2_ATTEMPT_ERROR_MESSAGE,
            )
            .execution_options(synchronize_session=False)
        )
        if attempt_res.rowcount != 1:
            db.session.rollback()
            return False

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return True


def run_job2(args: JobRunArgs) -> JobResult:
    settings = reconciler_settings()
    ttl_seconds = settings.job2_ttl_seconds
    lease_seconds = settings.janitor_lease_seconds
    now = utcnow()
    candidates = _job2_candidates(args.limit, ttl_seconds, now)

    if args.dry_run:
        log.info(
            "janitor_job2_dry_run",
            code="JANITOR_JOB2_DRY_RUN",
            run_id=args.run_id,
            request_id=args.request_id,
            dry_run=True,
            limit=args.limit,
            ttl_seconds=ttl_seconds,
            lease_seconds=lease_seconds,
            target_statuses=list(ORPHAN_ATTEMPT_STATUSES),
            candidates=len(candidates),
        )
        return JobResult(processed=len(candidates))

    result = JobResult()
    claimed = 0

    for attempt in candidates:
        if not claim(ATTEMPT_LEASE, attempt.id, args.run_id, lease_seconds, now=now):
            continue
        claimed += 1
        result.processed += 1

        try:
            if not cancel_orphaned_attempt(
                attempt.id,
                attempt.order_id,
                run_id=args.run_id,
                ttl_seconds=ttl_seconds,
                now=now,
            ):
                result.noop += 1
                continue

            restock_order(attempt.order_id, reason="canceled", worker_id=args.run_id)
            result.applied += 1
            log.info(
                "monobank_expired_reconciled",
                code="MONO_EXPIRED_RECONCILED",
                run_id=args.run_id,
                request_id=args.request_id,
                job="job2",
                order_id=attempt.order_id,
                attempt_id=attempt.id,
                applied_result=APPLIED,
                reason="expired_creating_attempt_canceled",
            )
        except Exception as exc:
            db.session.rollback()
            result.failed += 1
            log.error(
                "janitor_job2_attempt_failed",
                code="JANITOR_JOB2_ATTEMPT_FAILED",
                run_id=args.run_id,
                request_id=args.request_id,
                attempt_id=attempt.id,
                order_id=attempt.order_id,
                error_code=getattr(exc, "code", None),
                error=error_message(exc),
            )
        finally:
            _release_quietly(ATTEMPT_LEASE, attempt.id, args, "job2", attempt_id=attempt.id)

    log.info(
        "janitor_job2_completed",
        code="JANITOR_JOB2_COMPLETED",
        run_id=args.run_id,
        request_id=args.request_id,
        dry_run=False,
        limit=args.limit,
        ttl_seconds=ttl_seconds,
        lease_seconds=lease_seconds,
        target_statuses=list(ORPHAN_ATTEMPT_STATUSES),
        claimed=claimed,
        **result.to_dict(),
    )
    return result


# =============================================================================
# JOB 3: STORED-EVENT DRAINER
# =============================================================================

@dataclass(frozen=True)
class EventRow:
    id: str
    invoice_id: str | None
    attempt_id: str | None
    provider_modified_at: datetime | None
    received_at: datetime | None


def _group_key(row: EventRow) -> str:
    invoice_id = (row.invoice_id or "").strip()
    if invoice_id:
        return f"invoice:{invoice_id}"
    attempt_id = (row.attempt_id or "").strip()
    if attempt_id:
        return f"attempt:{attempt_id}"
    return f"event:{row.id}"


def _canonical_key(row: EventRow):
    # Provider time first (missing sorts last), then receipt time, then id.
    return (
        row.provider_modified_at is None,
        row.provider_modified_at or datetime.min,
        row.received_at or datetime.min,
        row.id,
    )


def sort_events_canonically(rows) -> list:
    """
    Order claimed events so application follows provider-causal order.

    Events are grouped by invoice id (then attempt id, then the event itself),
    each group is sorted canonically, and groups are ordered by their first
    member.
    """
    groups: dict[str, list] = {}
    for row in rows:
        groups.setdefault(_group_key(row), []).append(row)

    sorted_groups = [sorted(group, key=_canonical_key) for group in groups.values()]
    sorted_groups.sort(key=lambda group: _canonical_key(group[0]))
    return [row for group in sorted_groups for row in group]


def _load_event_rows(event_ids) -> list[EventRow]:
    if not event_ids:
        return []
    rows = db.session.execute(
        select(
            WebhookEvent.id,
            WebhookEvent.invoice_id,
            WebhookEvent.attempt_id,
            WebhookEvent.provider_modified_at,
            WebhookEvent.received_at,
        ).where(WebhookEvent.id.in_(list(event_ids)))
    ).all()
    return [
        EventRow(
            id=row.id,
            invoice_id=row.invoice_id,
            attempt_id=row.attempt_id,
            provider_modified_at=row.provider_modified_at,
            received_at=row.received_at,
        )
        for row in rows
    ]


def _job3_dry_run_count(limit: int, now: datetime) -> int:
    rows = db.session.execute(
        select(WebhookEvent.id)
        .where(
            WebhookEvent.provider == PROVIDER,
            WebhookEvent.applied_at.is_(None),
            or_(WebhookEvent.claim_expires_at.is_(None), WebhookEvent.claim_expires_at < now),
        )
        .limit(limit)
    ).all()
    return len(rows)


def _mark_job3_failed(event_id: str, run_id: str, exc: Exception) -> None:
    db.session.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.id == event_id,
            WebhookEvent.claimed_by == run_id,
            WebhookEvent.applied_at.is_(None),
        )
        .values(
            applied_at=utcnow(),
            applied_result=APPLIED_WITH_ISSUE,
            applied_error_code=func.coalesce(WebhookEvent.applied_error_code, JOB3_EVENT_ERROR_CODE),
            applied_error_message=func.coalesce(WebhookEvent.applied_error_message, error_message(exc)),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def run_job3(args: JobRunArgs) -> JobResult:
    settings = reconciler_settings()
    if settings.webhook_mode != "store":
        raise JanitorJob3ModeError()

    now = utcnow()
    if args.dry_run:
        candidates = _job3_dry_run_count(args.limit, now)
        log.info(
            "janitor_job3_dry_run",
            code="JANITOR_JOB3_DRY_RUN",
            run_id=args.run_id,
            request_id=args.request_id,
            dry_run=True,
            limit=args.limit,
            candidates=candidates,
        )
        return JobResult(processed=candidates)

    claimed_ids = []
    for _ in range(args.limit):
        event_id = claim_next_event(args.run_id, settings.claim_ttl_seconds)
        if event_id is None:
            break
        claimed_ids.append(event_id)

    ordered = sort_events_canonically(_load_event_rows(claimed_ids))
    result = JobResult()

    for row in ordered:
        result.processed += 1
        try:
            applied = apply_stored_event(row.id, worker_id=args.run_id)
            if _is_applied(applied.applied_result):
                result.applied += 1
            else:
                result.noop += 1
        except Exception as exc:
            db.session.rollback()
            result.failed += 1
            log.error(
                "janitor_job3_event_failed",
                code="JANITOR_JOB3_EVENT_FAILED",
                run_id=args.run_id,
                request_id=args.request_id,
                event_id=row.id,
                invoice_id=row.invoice_id,
                attempt_id=row.attempt_id,
                error=error_message(exc),
            )
            try:
                _mark_job3_failed(row.id, args.run_id, exc)
            except Exception as mark_exc:
                db.session.rollback()
                log.warning(
                    "janitor_job3_mark_failed_failed",
                    code="JANITOR_JOB3_MARK_FAILED_FAILED",
                    run_id=args.run_id,
                    event_id=row.id,
                    error=error_message(mark_exc),
                )
        finally:
            _release_quietly(EVENT_LEASE, row.id, args, "job3", event_id=row.id)

    log.info(
        "janitor_job3_completed",
        code="JANITOR_JOB3_COMPLETED",
        run_id=args.run_id,
        request_id=args.request_id,
        dry_run=False,
        limit=args.limit,
        claimed=len(claimed_ids),
        **result.to_dict(),
    )
    return result


# =============================================================================
# JOB 4: NEEDS-REVIEW REPORTER
# =============================================================================

def top_reasons(codes, limit: int = 3) -> list[dict]:
    """Most frequent error codes; ties broken alphabetically."""
    counter = Counter(code.strip() for code in codes if code and code.strip())
    ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [{"reason": reason, "count": count} for reason, count in ranked[:limit]]


def run_job4(args: JobRunArgs) -> JobResult:
    settings = reconciler_settings()
    age_hours = settings.job4_needs_review_age_hours
    now = utcnow()
    threshold = seconds_ago(age_hours * 3600, now=now)

    rows = db.session.execute(
        select(WebhookEvent.received_at, WebhookEvent.applied_error_code)
        .join(Order, Order.id == WebhookEvent.order_id)
        .where(
            WebhookEvent.provider == PROVIDER,
            Order.payment_status == "needs_review",
            WebhookEvent.received_at < threshold,
        )
        .order_by(WebhookEvent.received_at.asc())
        .limit(args.limit)
    ).all()

    oldest_age_minutes = None
    if rows:
        oldest_age_minutes = int((now - rows[0].received_at).total_seconds() // 60)

    report = {
        "count": len(rows),
        "oldest_age_minutes": oldest_age_minutes,
        "top_reasons": top_reasons(row.applied_error_code for row in rows),
    }

    log.info(
        "janitor_job4_completed",
        code="JANITOR_JOB4_COMPLETED",
        run_id=args.run_id,
        request_id=args.request_id,
        dry_run=args.dry_run,
        limit=args.limit,
        age_hours_threshold=age_hours,
        count=report["count"],
        oldest_age_minutes=oldest_age_minutes,
    )
    return JobResult(report=report)


# =============================================================================
# JOB 5: RESTOCK SWEEP
# =============================================================================

RESTOCK_PAYMENT_STATUSES = ("failed", "refunded")
RESTOCK_ORDER_STATUSES = ("CANCELED", "INVENTORY_FAILED")
NON_RESTOCKABLE_PAYMENT_STATUSES = ("paid", "needs_review")


def _job5_order_predicates(grace_seconds: int, now: datetime):
    return (
        Order.payment_provider == PROVIDER,
        Order.stock_restored.is_(False),
        Order.restocked_at.is_(None),
        Order.updated_at < seconds_ago(grace_seconds, now=now),
        or_(
            Order.payment_status.in_(RESTOCK_PAYMENT_STATUSES),
            and_(
                Order.status.in_(RESTOCK_ORDER_STATUSES),
                Order.payment_status.not_in(NON_RESTOCKABLE_PAYMENT_STATUSES),
            ),
        ),
    )


def _job5_candidates(limit: int, grace_seconds: int, now: datetime):
    return db.session.execute(
        select(Order.id, Order.payment_status, Order.status)
        .where(
            *_job5_order_predicates(grace_seconds, now),
            or_(Order.sweep_claim_expires_at.is_(None), Order.sweep_claim_expires_at < now),
        )
        .order_by(Order.updated_at.asc())
        .limit(limit)
    ).all()


def restock_reason_for(payment_status: str, status: str) -> str:
    """Restock reason matching the state the order was left in."""
    if payment_status == "refunded":
        return "refunded"
    if status == "CANCELED":
        return "canceled"
    if payment_status == "failed":
        return "failed"
    return "stale"


def run_job5(args: JobRunArgs) -> JobResult:
    """
    Finish inventory releases that were left behind.

    WHY: the payment transition and the stock release commit separately. If
    the release raises or the process dies in between, the webhook event is
    already applied and the attempt already finalized, so no other path looks
    at the order again.
    """
    settings = reconciler_settings()
    grace_seconds = settings.job5_grace_seconds
    lease_seconds = settings.janitor_lease_seconds
    now = utcnow()
    candidates = _job5_candidates(args.limit, grace_seconds, now)

    if args.dry_run:
        log.info(
            "janitor_job5_dry_run",
            code="JANITOR_JOB5_DRY_RUN",
            run_id=args.run_id,
            request_id=args.request_id,
            dry_run=True,
            limit=args.limit,
            grace_seconds=grace_seconds,
            lease_seconds=lease_seconds,
            candidates=len(candidates),
        )
        return JobResult(processed=len(candidates))

    result = JobResult()
    claimed = 0

    for order in candidates:
        won = claim(
            ORDER_RESTOCK_LEASE,
            order.id,
            args.run_id,
            lease_seconds,
            now=now,
            where=_job5_order_predicates(grace_seconds, now),
        )
        if not won:
            continue
        claimed += 1
        result.processed += 1
        reason = restock_reason_for(order.payment_status, order.status)

        try:
            if restock_order(order.id, reason=reason, worker_id=args.run_id, already_claimed=True):
                result.applied += 1
                log.info(
                    "janitor_job5_restocked",
                    code="JANITOR_JOB5_RESTOCKED",
                    run_id=args.run_id,
                    request_id=args.request_id,
                    order_id=order.id,
                    restock_reason=reason,
                )
            else:
                result.noop += 1
        except Exception as exc:
            db.session.rollback()
            result.failed += 1
            log.error(
                "janitor_job5_order_failed",
                code="JANITOR_JOB5_ORDER_FAILED",
                run_id=args.run_id,
                request_id=args.request_id,
                order_id=order.id,
                restock_reason=reason,
                error_code=getattr(exc, "code", None),
                error=error_message(exc),
            )
        finally:
            _release_quietly(ORDER_RESTOCK_LEASE, order.id, args, "job5", order_id=order.id)

    log.info(
        "janitor_job5_completed",
        code="JANITOR_JOB5_COMPLETED",
        run_id=args.run_id,
        request_id=args.request_id,
        dry_run=False,
        limit=args.limit,
        grace_seconds=grace_seconds,
        lease_seconds=lease_seconds,
        claimed=claimed,
        **result.to_dict(),
    )
    return result


JOBS = {
    "job1": run_job1,
    "job2": run_job2,
    "job3": run_job3,
    "job4": run_job4,
    "job5": run_job5,
}


def run_janitor(job: str, args: JobRunArgs) -> JobResult:
    """Dispatch one janitor job by name (job1..job5)."""
    runner = JOBS.get(job)
    if runner is None:
        raise ValueError(f"Unknown janitor job: {job}")
    return runner(args)
