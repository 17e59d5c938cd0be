# Overview: Pytest coverage for the Monobank webhook apply state machine.

"""
Webhook Apply Tests

Covers:
- Dedup: same delivery twice never changes state twice
- Ordering: older provider events never override newer ones
- Money safety: mismatched amounts never produce 'paid'
- Terminal stickiness: nothing moves a paid order
- Concurrent claim: the lease loser does nothing
- Failure/refund paths release inventory exactly once
- Mode gate: store and drop
"""

import pytest

from reconciler.models import Order, PaymentAttempt, Product, WebhookEvent
from reconciler.services import webhook_apply
from reconciler.services.event_store import ingest_event
from reconciler.services.lease_service import EVENT_LEASE, claim
from reconciler.services.webhook_apply import apply_stored_event, claim_and_apply, process_webhook
from reconciler.services.webhook_payload import (
    InvalidPayloadError,
    build_event_key,
    parse_webhook_payload,
    sha256_hex,
)
from reconciler.time_utils import utcnow

from helpers import WORKER_ID, reload, webhook_body

T5 = "2026-01-01T10:00:05Z"
T10 = "2026-01-01T10:00:10Z"
T20 = "2026-01-01T10:00:20Z"


def deliver(body, mode="apply", worker_id=WORKER_ID):
    return process_webhook(body, mode=mode, worker_id=worker_id, claim_ttl_seconds=60)


@pytest.fixture
def checkout(db_session, reserved_order, make_attempt):
    """Order O1 (1000 UAH, inventory reserved) with active attempt A1 on invoice inv-1."""
    order, product = reserved_order(total=1000, payment_status="requires_payment")
    attempt = make_attempt(order, invoice_id="inv-1", expected=1000)
    return order, attempt, product


class TestHappyPath:
    def test_success_marks_paid_and_succeeded(self, checkout):
        order, attempt, _ = checkout
        result = deliver(webhook_body(status="success", amount=1000, ccy=980))

        assert result.applied_result == "applied"
        assert result.deduped is False
        order = reload(Order, order.id)
        assert order.payment_status == "paid"
        assert order.status == "PAID"
        assert order.psp_charge_id == "inv-1"
        assert order.psp_metadata["monobank"]["status"] == "success"
        attempt = reload(PaymentAttempt, attempt.id)
        assert attempt.status == "succeeded"
        assert attempt.finalized_at is not None

        event = reload(WebhookEvent, result.event_id)
        assert event.applied_result == "applied"
        assert event.order_id == order.id
        assert event.attempt_id == attempt.id

    def test_attempt_found_by_reference(self, checkout):
        order, attempt, _ = checkout
        result = deliver(webhook_body(invoice_id="inv-other", reference=attempt.id.upper()))

        assert result.applied_result == "applied"
        assert reload(Order, order.id).payment_status == "paid"

    def test_in_flight_status_changes_nothing(self, checkout):
        order, attempt, _ = checkout
        result = deliver(webhook_body(status="processing"))

        assert result.applied_result == "applied_noop"
        assert reload(Order, order.id).payment_status == "requires_payment"
        assert reload(PaymentAttempt, attempt.id).status == "active"


class TestDedup:
    def test_same_delivery_twice(self, checkout):
        order, attempt, _ = checkout
        body = webhook_body(status="success", modifiedDate=T10)

        first = deliver(body)
        order_after_first = reload(Order, order.id).to_dict()
        attempt_after_first = reload(PaymentAttempt, attempt.id).to_dict()
        second = deliver(body)

        assert first.applied_result == "applied"
        assert second.applied_result == "deduped"
        assert second.deduped is True
        assert second.event_id == first.event_id
        assert reload(Order, order.id).to_dict() == order_after_first
        assert reload(PaymentAttempt, attempt.id).to_dict() == attempt_after_first


class TestOrdering:
    def test_newer_then_older(self, checkout):
        order, attempt, _ = checkout
        newer = deliver(webhook_body(status="success", modifiedDate=T10))
        older = deliver(webhook_body(status="processing", modifiedDate=T5))

        assert newer.applied_result == "applied"
        assert older.applied_result == "applied_noop"
        assert reload(WebhookEvent, older.event_id).applied_error_code == "OUT_OF_ORDER"
        assert reload(Order, order.id).payment_status == "paid"

    def test_redelivery_in_reverse_converges(self, checkout):
        order, attempt, _ = checkout
        older = deliver(webhook_body(status="processing", modifiedDate=T5))
        newer = deliver(webhook_body(status="success", modifiedDate=T10))

        assert older.applied_result == "applied_noop"
        assert newer.applied_result == "applied"
        assert reload(Order, order.id).payment_status == "paid"
        attempt = reload(PaymentAttempt, attempt.id)
        assert attempt.status == "succeeded"
        assert attempt.to_dict()["provider_modified_at"] == T10

    def test_stale_failure_after_success_ignored(self, checkout):
        order, _, product = checkout
        deliver(webhook_body(status="success", modifiedDate=T10))
        stale = deliver(webhook_body(status="failure", modifiedDate=T5))

        assert stale.applied_result == "applied_noop"
        assert reload(Order, order.id).payment_status == "paid"
        assert reload(Product, product.id).stock == 8


class TestMoneySafety:
    def test_amount_mismatch_flags_review(self, checkout):
        order, attempt, product = checkout
        result = deliver(webhook_body(status="success", amount=1001))

        assert result.applied_result == "applied_with_issue"
        assert reload(WebhookEvent, result.event_id).applied_error_code == "AMOUNT_MISMATCH"
        order = reload(Order, order.id)
        assert order.payment_status == "needs_review"
        assert order.failure_code == "MONO_AMOUNT_MISMATCH"
        attempt = reload(PaymentAttempt, attempt.id)
        assert attempt.status == "failed"
        assert attempt.last_error_code == "AMOUNT_MISMATCH"
        # Reviewed orders keep their stock until an operator decides.
        assert reload(Product, product.id).stock == 8

    def test_foreign_currency_flags_review(self, checkout):
        order, _, _ = checkout
        result = deliver(webhook_body(status="success", ccy=840))

        assert result.applied_result == "applied_with_issue"
        assert reload(Order, order.id).payment_status == "needs_review"

    def test_later_valid_success_does_not_clear_review(self, checkout):
        order, _, _ = checkout
        deliver(webhook_body(status="success", amount=1001, modifiedDate=T5))
        later = deliver(webhook_body(status="success", amount=1000, modifiedDate=T10))

        assert later.applied_result == "applied_noop"
        assert reload(Order, order.id).payment_status == "needs_review"

    def test_mismatch_after_paid_keeps_paid(self, checkout):
        order, attempt, _ = checkout
        deliver(webhook_body(status="success", modifiedDate=T5))
        result = deliver(webhook_body(status="success", amount=5, modifiedDate=T10))

        assert result.applied_result == "applied_with_issue"
        assert reload(Order, order.id).payment_status == "paid"
        assert reload(PaymentAttempt, attempt.id).status == "succeeded"

    @pytest.mark.parametrize("amount", [0, 999, 1001, 100000])
    def test_never_paid_on_wrong_amount(self, checkout, amount):
        order, _, _ = checkout
        deliver(webhook_body(status="success", amount=amount))
        assert reload(Order, order.id).payment_status != "paid"


class TestStickiness:
    @pytest.mark.parametrize("status", ["failure", "expired", "reversed", "processing", "created", "mystery"])
    def test_paid_survives_every_later_event(self, checkout, status):
        order, attempt, product = checkout
        deliver(webhook_body(status="success", modifiedDate=T10))
        later = deliver(webhook_body(status=status, modifiedDate=T20))

        assert later.applied_result == "applied_noop"
        assert reload(Order, order.id).payment_status == "paid"
        assert reload(PaymentAttempt, attempt.id).status == "succeeded"
        assert reload(Product, product.id).stock == 8


class TestFailurePaths:
    def test_failure_fails_and_restocks(self, checkout):
        order, attempt, product = checkout
        result = deliver(webhook_body(status="failure"))

        assert result.applied_result == "applied"
        order = reload(Order, order.id)
        assert order.payment_status == "failed"
        assert order.psp_status_reason == "failure"
        assert order.status == "INVENTORY_FAILED"
        assert order.stock_restored is True
        attempt = reload(PaymentAttempt, attempt.id)
        assert attempt.status == "failed"
        assert attempt.last_error_code == "failure"
        assert reload(Product, product.id).stock == 10

    def test_reversal_refunds_and_cancels_attempt(self, checkout):
        order, attempt, product = checkout
        result = deliver(webhook_body(status="reversed"))

        assert result.applied_result == "applied"
        assert reload(Order, order.id).payment_status == "refunded"
        assert reload(PaymentAttempt, attempt.id).status == "canceled"
        assert reload(Product, product.id).stock == 10

    def test_success_after_failure_goes_to_review(self, checkout):
        order, _, _ = checkout
        deliver(webhook_body(status="failure", modifiedDate=T5))
        result = deliver(webhook_body(status="success", modifiedDate=T10))

        assert result.applied_result == "applied_with_issue"
        assert reload(WebhookEvent, result.event_id).applied_error_code == "OUT_OF_ORDER"
        order = reload(Order, order.id)
        assert order.payment_status == "needs_review"
        assert order.failure_code == "MONO_OUT_OF_ORDER"

    def test_restock_failure_downgrades_event(self, checkout, monkeypatch):
        order, attempt, product = checkout

        def _boom(*args, **kwargs):
            raise RuntimeError("ledger offline")

        monkeypatch.setattr(webhook_apply, "restock_order", _boom)
        result = deliver(webhook_body(status="expired"))

        assert result.applied_result == "applied_with_issue"
        event = reload(WebhookEvent, result.event_id)
        assert event.applied_result == "applied_with_issue"
        assert event.applied_error_code == "RESTOCK_FAILED"
        assert "ledger offline" in event.applied_error_message
        # The payment transition stays committed.
        assert reload(Order, order.id).payment_status == "failed"
        assert reload(PaymentAttempt, attempt.id).last_error_code == "expired"
        assert reload(Product, product.id).stock == 8

    def test_failure_twice_releases_once(self, checkout, db_session):
        order, _, product = checkout
        deliver(webhook_body(status="failure", modifiedDate=T5))
        deliver(webhook_body(status="expired", modifiedDate=T10))

        from reconciler.models import InventoryMove
        assert db_session.query(InventoryMove).filter_by(order_id=order.id, type="release").count() == 1
        assert reload(Product, product.id).stock == 10


class TestIssues:
    def test_unknown_invoice_unmatched(self, checkout):
        result = deliver(webhook_body(invoice_id="inv-unknown"))

        assert result.applied_result == "unmatched"
        assert reload(WebhookEvent, result.event_id).applied_error_code == "ATTEMPT_NOT_FOUND"

    def test_unknown_status(self, checkout):
        order, _, _ = checkout
        result = deliver(webhook_body(status="hold"))

        assert result.applied_result == "applied_with_issue"
        assert reload(WebhookEvent, result.event_id).applied_error_code == "UNKNOWN_STATUS"
        assert reload(Order, order.id).payment_status == "requires_payment"

    def test_invalid_payload_not_stored(self, db_session):
        with pytest.raises(InvalidPayloadError):
            deliver(b'{"status": "success"}')
        assert db_session.query(WebhookEvent).count() == 0


class TestConcurrentClaim:
    def test_lease_loser_does_nothing(self, checkout):
        order, _, _ = checkout
        body = webhook_body(status="success")
        parsed = parse_webhook_payload(body)
        received_at = utcnow()
        ingested = ingest_event(
            parsed,
            raw_sha256=sha256_hex(body),
            event_key=build_event_key(parsed, received_at),
            received_at=received_at,
        )
        assert claim(EVENT_LEASE, ingested.event_id, "worker-a", 60) is True

        result = claim_and_apply(ingested.event_id, parsed, worker_id="worker-b", claim_ttl_seconds=60)

        assert result == "applied_noop"
        assert reload(Order, order.id).payment_status == "requires_payment"
        assert reload(WebhookEvent, ingested.event_id).applied_at is None


class TestModes:
    def test_store_mode_defers(self, checkout):
        order, _, _ = checkout
        result = deliver(webhook_body(), mode="store")

        assert result.applied_result == "stored"
        event = reload(WebhookEvent, result.event_id)
        assert event.applied_at is None
        assert event.applied_result == "stored"
        assert reload(Order, order.id).payment_status == "requires_payment"

    def test_stored_event_redelivered_in_apply_mode(self, checkout):
        order, _, _ = checkout
        body = webhook_body()
        deliver(body, mode="store")
        result = deliver(body, mode="apply")

        assert result.deduped is True
        assert result.applied_result == "applied"
        assert reload(Order, order.id).payment_status == "paid"

    def test_drop_mode_closes_event(self, checkout):
        order, _, _ = checkout
        body = webhook_body()
        dropped = deliver(body, mode="drop")
        again = deliver(body, mode="apply")

        assert dropped.applied_result == "dropped"
        assert reload(WebhookEvent, dropped.event_id).applied_at is not None
        assert again.applied_result == "deduped"
        assert reload(Order, order.id).payment_status == "requires_payment"

    def test_replay_requires_lease_ownership(self, checkout):
        order, _, _ = checkout
        stored = deliver(webhook_body(), mode="store")
        claim(EVENT_LEASE, stored.event_id, "drainer-a", 60)

        result = apply_stored_event(stored.event_id, worker_id="drainer-b")

        assert result.applied_result == "applied_noop"
        assert reload(Order, order.id).payment_status == "requires_payment"
