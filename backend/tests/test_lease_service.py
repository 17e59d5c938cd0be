# Overview: Pytest coverage for lease claims on events, attempts and orders.

from datetime import timedelta

import pytest

from reconciler.models import PaymentAttempt, WebhookEvent
from reconciler.services.event_store import record_event_outcome
from reconciler.services.janitor_service import JobRunArgs, run_janitor
from reconciler.services.lease_service import (
    ATTEMPT_LEASE,
    EVENT_LEASE,
    ORDER_RESTOCK_LEASE,
    claim,
    claim_next_event,
    release,
)
from reconciler.time_utils import utcnow

from helpers import reload


def _event(db_session, key, *, modified_at=None, received_at=None, provider="monobank"):
    event = WebhookEvent(
        provider=provider,
        event_key=key,
        raw_sha256=key.ljust(64, "0")[:64],
        invoice_id="inv-1",
        status="success",
        raw_payload={"invoiceId": "inv-1", "status": "success"},
        provider_modified_at=modified_at,
        received_at=received_at or utcnow(),
    )
    db_session.add(event)
    db_session.commit()
    return event.id


class TestClaim:
    """Single-winner claims and owner-guarded release."""

    def test_two_workers_one_winner(self, db_session):
        event_id = _event(db_session, "k1")
        assert claim(EVENT_LEASE, event_id, "worker-a", 60) is True
        assert claim(EVENT_LEASE, event_id, "worker-b", 60) is False

        event = reload(WebhookEvent, event_id)
        assert event.claimed_by == "worker-a"
        assert event.claimed_at is not None

    def test_expired_lease_can_be_taken_over(self, db_session):
        event_id = _event(db_session, "k1")
        past = utcnow() - timedelta(minutes=10)
        assert claim(EVENT_LEASE, event_id, "worker-a", 60, now=past) is True
        assert claim(EVENT_LEASE, event_id, "worker-b", 60) is True
        assert reload(WebhookEvent, event_id).claimed_by == "worker-b"

    def test_applied_event_cannot_be_claimed(self, db_session):
        event_id = _event(db_session, "k1")
        record_event_outcome(event_id, applied_result="applied")
        assert claim(EVENT_LEASE, event_id, "worker-a", 60) is False

    def test_release_requires_ownership(self, db_session):
        event_id = _event(db_session, "k1")
        claim(EVENT_LEASE, event_id, "worker-a", 60)

        assert release(EVENT_LEASE, event_id, "worker-b") is False
        assert reload(WebhookEvent, event_id).claimed_by == "worker-a"

        assert release(EVENT_LEASE, event_id, "worker-a") is True
        event = reload(WebhookEvent, event_id)
        assert event.claimed_by is None
        assert event.claim_expires_at is None

    def test_empty_worker_id_rejected(self, db_session):
        event_id = _event(db_session, "k1")
        with pytest.raises(ValueError):
            claim(EVENT_LEASE, event_id, "", 60)

    def test_attempt_lease_touches_updated_at(self, db_session, make_order, make_attempt):
        attempt = make_attempt(make_order(), age_seconds=3600)
        before = attempt.updated_at
        assert claim(ATTEMPT_LEASE, attempt.id, "run-1", 60) is True

        attempt = reload(PaymentAttempt, attempt.id)
        assert attempt.janitor_claimed_by == "run-1"
        assert attempt.updated_at > before

    def test_extra_predicates_checked_in_claim(self, db_session, make_order, make_attempt):
        attempt = make_attempt(make_order(), status="succeeded")
        won = claim(ATTEMPT_LEASE, attempt.id, "run-1", 60, where=(PaymentAttempt.status == "active",))
        assert won is False

    def test_restocked_order_not_claimable(self, db_session, make_order):
        order = make_order(stock_restored=True)
        assert claim(ORDER_RESTOCK_LEASE, order.id, "run-1", 60) is False


class TestClaimNextEvent:
    """Drainer claim order."""

    def test_provider_time_then_nulls_last(self, db_session):
        base = utcnow() - timedelta(hours=1)
        late = _event(db_session, "late", modified_at=base + timedelta(minutes=5), received_at=base)
        early = _event(db_session, "early", modified_at=base, received_at=base + timedelta(minutes=9))
        untimed = _event(db_session, "untimed", received_at=base - timedelta(minutes=30))

        claimed = [claim_next_event("drainer", 60) for _ in range(4)]
        assert claimed == [early, late, untimed, None]

    def test_skips_events_leased_elsewhere(self, db_session):
        first = _event(db_session, "a", modified_at=utcnow() - timedelta(minutes=2))
        second = _event(db_session, "b", modified_at=utcnow() - timedelta(minutes=1))
        claim(EVENT_LEASE, first, "other", 60)

        assert claim_next_event("drainer", 60) == second

    def test_only_monobank_events_are_claimed(self, db_session, set_config):
        _event(db_session, "foreign", modified_at=utcnow() - timedelta(minutes=5), provider="stripe")
        mono = _event(db_session, "mono", modified_at=utcnow() - timedelta(minutes=1))

        set_config(MONO_WEBHOOK_MODE="store")
        assert run_janitor("job3", JobRunArgs(limit=10, dry_run=True)).processed == 1

        assert claim_next_event("drainer", 60) == mono
        assert claim_next_event("drainer", 60) is None
