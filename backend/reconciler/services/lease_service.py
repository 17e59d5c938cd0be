# Overview: Lease-based claims on shared rows, expressed as conditional UPDATEs.

"""
Claim Coordinator

Every worker path (live webhook, janitor sweeps, restock) takes exclusive
ownership of a row the same way: one UPDATE that only matches while the row
is unclaimed or its lease has expired. The affected-row count says whether
the caller won. There is no lock table and no in-process lock.

Leases are TTL-bounded; a crashed worker's claim expires on its own and the
row becomes claimable again. Release is guarded by owner equality, so a
worker whose lease was taken over can never release the new owner's claim.

Worker identity is always passed in by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from sqlalchemy import or_, select, update

from ..extensions import db
from ..models import Order, PaymentAttempt, WebhookEvent
from reconciler.time_utils import utcnow

log = structlog.get_logger(__name__)

PROVIDER = "monobank"


@dataclass(frozen=True)
class LeaseSpec:
    """Describes which columns hold a lease on a given table."""
    name: str
    model: type
    expires_column: str
    owner_column: str
    claimed_at_column: str | None = None
    touch_column: str | None = None
    predicates: tuple = field(default_factory=tuple)

    def column(self, name: str):
        return getattr(self.model, name)


EVENT_LEASE = LeaseSpec(
    name="event",
    model=WebhookEvent,
    expires_column="claim_expires_at",
    owner_column="claimed_by",
    claimed_at_column="claimed_at",
    predicates=(WebhookEvent.applied_at.is_(None),),
)

ATTEMPT_LEASE = LeaseSpec(
    name="attempt",
    model=PaymentAttempt,
    expires_column="janitor_claimed_until",
    owner_column="janitor_claimed_by",
    touch_column="updated_at",
)

ORDER_RESTOCK_LEASE = LeaseSpec(
    name="order_restock",
    model=Order,
    expires_column="sweep_claim_expires_at",
    owner_column="sweep_claimed_by",
    claimed_at_column="sweep_claimed_at",
    touch_column="updated_at",
    predicates=(Order.stock_restored.is_(False),),
)


def _require_worker(worker_id: str | None) -> str:
    if not worker_id or not str(worker_id).strip():
        raise ValueError("worker_id is required for lease operations")
    return str(worker_id)[:64]


def claim(spec: LeaseSpec, row_id, worker_id: str, ttl_seconds: int, *, now: datetime | None = None, where=()) -> bool:
    """
    Take the lease on one row. Returns True only for the single winner.

    Extra predicates in `where` are evaluated inside the same statement.
    """
    worker_id = _require_worker(worker_id)
    now = now or utcnow()
    expires = spec.column(spec.expires_column)

    values = {
        spec.expires_column: now + timedelta(seconds=int(ttl_seconds)),
        spec.owner_column: worker_id,
    }
    if spec.claimed_at_column:
        values[spec.claimed_at_column] = now
    if spec.touch_column:
        values[spec.touch_column] = now

    result = db.session.execute(
        update(spec.model)
        .where(
            spec.model.id == row_id,
            or_(expires.is_(None), expires < now),
            *spec.predicates,
            *where,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    won = result.rowcount == 1
    log.debug(
        "lease_claim",
        code="LEASE_CLAIMED" if won else "LEASE_BUSY",
        source=spec.name,
        worker_id=worker_id,
        ttl_seconds=ttl_seconds,
    )
    return won


def release(spec: LeaseSpec, row_id, worker_id: str) -> bool:
    """Give the lease back. No effect unless worker_id still owns it."""
    worker_id = _require_worker(worker_id)
    owner = spec.column(spec.owner_column)

    values = {
        spec.expires_column: None,
        spec.owner_column: None,
    }
    if spec.claimed_at_column:
        values[spec.claimed_at_column] = None

    result = db.session.execute(
        update(spec.model)
        .where(spec.model.id == row_id, owner == worker_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def claim_next_event(worker_id: str, ttl_seconds: int, *, now: datetime | None = None, scan: int = 10) -> str | None:
    """
    Claim the next unapplied Monobank event for the drainer.

    Candidates come in canonical order (provider time, nulls last, then
    receipt time, then id). A candidate lost to another worker is skipped.
    """
    now = now or utcnow()
    while True:
        candidate_ids = db.session.execute(
            select(WebhookEvent.id)
            .where(
                WebhookEvent.provider == PROVIDER,
                WebhookEvent.applied_at.is_(None),
                or_(WebhookEvent.claim_expires_at.is_(None), WebhookEvent.claim_expires_at < now),
            )
            .order_by(
                WebhookEvent.provider_modified_at.is_(None),
                WebhookEvent.provider_modified_at.asc(),
                WebhookEvent.received_at.asc(),
                WebhookEvent.id.asc(),
            )
            .limit(scan)
        ).scalars().all()

        if not candidate_ids:
            return None

        for event_id in candidate_ids:
            if claim(EVENT_LEASE, event_id, worker_id, ttl_seconds, now=now):
                return event_id
