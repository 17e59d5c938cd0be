# Overview: Pytest coverage for the order payment-status transition guard.

"""
Payment State Guard Tests

The guard is the only writer of Order.payment_status. These tests pin the
allow-list and the reasons reported when a conditional update misses.
"""

import pytest

from reconciler.extensions import db
from reconciler.models import Order
from reconciler.services.payment_state import (
    ALREADY_IN_STATE,
    BLOCKED,
    INVALID_TRANSITION,
    NOT_FOUND,
    PROVIDER_MISMATCH,
    guarded_payment_status_update,
    is_allowed,
)

from helpers import reload


def _move(order, to, **kwargs):
    result = guarded_payment_status_update(
        order.id,
        payment_provider=kwargs.pop("provider", order.payment_provider),
        to=to,
        source="test",
        **kwargs,
    )
    db.session.commit()
    return result


class TestAllowList:
    @pytest.mark.parametrize("from_status,to,allowed", [
        ("pending", "requires_payment", True),
        ("requires_payment", "paid", True),
        ("pending", "failed", True),
        ("paid", "refunded", True),
        ("paid", "failed", False),
        ("paid", "needs_review", False),
        ("failed", "paid", False),
        ("refunded", "paid", False),
        ("failed", "needs_review", True),
        ("needs_review", "paid", False),
    ])
    def test_card_provider_rules(self, from_status, to, allowed):
        assert is_allowed("monobank", from_status, to) is allowed

    def test_no_payment_provider_only_knows_paid_and_failed(self):
        assert is_allowed("none", "paid", "failed") is True
        assert is_allowed("none", "pending", "paid") is False


class TestGuardedUpdate:
    def test_applied_with_extra_values(self, db_session, make_order):
        order = make_order(payment_status="requires_payment")
        result = _move(order, "paid", values={"status": "PAID"}, allow_same_state=False)

        assert result.applied is True
        order = reload(Order, order.id)
        assert order.payment_status == "paid"
        assert order.status == "PAID"

    def test_paid_is_terminal(self, db_session, make_order):
        order = make_order(payment_status="paid")
        result = _move(order, "failed")

        assert result.applied is False
        assert result.reason == INVALID_TRANSITION
        assert result.from_status == "paid"
        assert reload(Order, order.id).payment_status == "paid"

    def test_already_in_state_is_ok(self, db_session, make_order):
        order = make_order(payment_status="failed")
        result = _move(order, "failed")

        assert result.applied is False
        assert result.reason == ALREADY_IN_STATE
        assert result.ok is True

    def test_same_state_allowed_when_writing_values(self, db_session, make_order):
        order = make_order(payment_status="failed")
        result = _move(order, "failed", values={"psp_status_reason": "expired"})

        assert result.applied is True
        assert reload(Order, order.id).psp_status_reason == "expired"

    def test_provider_mismatch(self, db_session, make_order):
        order = make_order(provider="stripe")
        result = _move(order, "paid", provider="monobank")
        assert result.reason == PROVIDER_MISMATCH
        assert result.current_provider == "stripe"

    def test_missing_order(self, db_session):
        result = guarded_payment_status_update("missing", payment_provider="monobank", to="paid", source="test")
        assert result.reason == NOT_FOUND

    def test_extra_predicate_blocks(self, db_session, make_order):
        order = make_order()
        result = _move(order, "failed", extra_where=(Order.stock_restored.is_(True),))
        assert result.reason == BLOCKED
        assert reload(Order, order.id).payment_status == "pending"

    def test_unknown_target_rejected(self, db_session, make_order):
        with pytest.raises(ValueError):
            _move(make_order(), "settled")
