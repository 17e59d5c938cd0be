# Overview: Allow-listed, conditional order payment-status transitions.

"""
Payment State Transition Guard

WHY: Webhooks, janitor sweeps and restock all move Order.payment_status.
Every such move goes through one allow-list and one conditional UPDATE whose
WHERE clause carries the eligible source states. If another worker moved the
row first, the UPDATE matches nothing and the caller learns why from a fresh
read. Nothing here trusts an earlier in-memory copy of the order.

RULES:
- 'paid' is terminal for card providers: the only exit is a refund.
- 'needs_review' can be entered from any non-paid state and is left only by
  an operator.
- provider 'none' (no online payment) only knows paid/failed.

The caller owns the transaction: this module never commits.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy import select, update

from ..extensions import db
from ..models import Order
from reconciler.time_utils import utcnow

log = structlog.get_logger(__name__)


PAYMENT_STATUSES = ("pending", "requires_payment", "paid", "failed", "refunded", "needs_review")
CARD_PROVIDERS = ("monobank", "stripe")

_CARD_ALLOWED_FROM = {
    "pending": ("requires_payment",),
    "requires_payment": ("pending",),
    "paid": ("pending", "requires_payment"),
    "failed": ("pending", "requires_payment"),
    "refunded": ("paid", "pending", "requires_payment"),
    "needs_review": ("pending", "requires_payment", "failed", "refunded", "needs_review"),
}

_NONE_ALLOWED_FROM = {
    "pending": (),
    "requires_payment": (),
    "paid": ("paid",),
    "failed": ("paid", "failed"),
    "refunded": (),
    "needs_review": (),
}

# Rejection reasons
NOT_FOUND = "NOT_FOUND"
PROVIDER_MISMATCH = "PROVIDER_MISMATCH"
ALREADY_IN_STATE = "ALREADY_IN_STATE"
INVALID_TRANSITION = "INVALID_TRANSITION"
BLOCKED = "BLOCKED"


@dataclass(frozen=True)
class TransitionResult:
    applied: bool
    reason: str | None = None
    from_status: str | None = None
    current_provider: str | None = None
    to_status: str | None = None

    @property
    def ok(self) -> bool:
        """Applied now, or the row already sits in the target state for the same provider."""
        if self.applied:
            return True
        return self.reason == ALREADY_IN_STATE


def allowed_from(provider: str, to: str) -> tuple:
    table = _NONE_ALLOWED_FROM if provider == "none" else _CARD_ALLOWED_FROM
    return table.get(to, ())


def is_allowed(provider: str, from_status: str, to: str) -> bool:
    if from_status == to:
        return True
    return from_status in allowed_from(provider, to)


def _current_state(order_id: str):
    return db.session.execute(
        select(Order.payment_status, Order.payment_provider).where(Order.id == order_id)
    ).first()


def guarded_payment_status_update(
    order_id: str,
    *,
    payment_provider: str,
    to: str,
    source: str,
    values: dict | None = None,
    extra_where=(),
    allow_same_state: bool | None = None,
) -> TransitionResult:
    """
    Move Order.payment_status to `to` if the current state allows it.

    Args:
        order_id: Order to update
        payment_provider: Provider the caller believes owns the order
        to: Target payment status
        source: Who asks (webhook, janitor, restock, ...) for the log line
        values: Extra columns written in the same statement
        extra_where: Additional predicates evaluated in the same statement
        allow_same_state: Also match rows already in `to`. Defaults to True
            when extra values are written, so they still land.

    Returns:
        TransitionResult; on a miss, reason is one of NOT_FOUND,
        PROVIDER_MISMATCH, ALREADY_IN_STATE, INVALID_TRANSITION, BLOCKED.
    """
    if to not in PAYMENT_STATUSES:
        raise ValueError(f"Unknown payment status: {to}")

    base_allowed = allowed_from(payment_provider, to)
    allow_same = bool(values) if allow_same_state is None else allow_same_state
    eligible = tuple(dict.fromkeys(base_allowed + ((to,) if allow_same else ())))

    if not eligible:
        current = _current_state(order_id)
        if current is None:
            return TransitionResult(applied=False, reason=NOT_FOUND, to_status=to)
        log.warning(
            "payment_transition_rejected",
            code="PAYMENT_TRANSITION_REJECTED",
            order_id=order_id,
            from_status=current.payment_status,
            to_status=to,
            source=source,
            provider=payment_provider,
            reason="empty_eligible_from",
        )
        return TransitionResult(
            applied=False,
            reason=INVALID_TRANSITION,
            from_status=current.payment_status,
            current_provider=current.payment_provider,
            to_status=to,
        )

    set_values = dict(values or {})
    set_values["payment_status"] = to
    set_values.setdefault("updated_at", utcnow())

    result = db.session.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_provider == payment_provider,
            Order.payment_status.in_(eligible),
            *extra_where,
        )
        .values(**set_values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return TransitionResult(applied=True, to_status=to)

    current = _current_state(order_id)
    if current is None:
        return TransitionResult(applied=False, reason=NOT_FOUND, to_status=to)

    if current.payment_provider != payment_provider:
        reason = PROVIDER_MISMATCH
    elif current.payment_status == to:
        reason = ALREADY_IN_STATE
    elif not is_allowed(payment_provider, current.payment_status, to):
        reason = INVALID_TRANSITION
    else:
        # Allowed on paper but the extra predicates (or a racing writer) said no.
        reason = BLOCKED

    if reason in (PROVIDER_MISMATCH, INVALID_TRANSITION):
        log.warning(
            "payment_transition_rejected",
            code="PAYMENT_TRANSITION_REJECTED",
            order_id=order_id,
            from_status=current.payment_status,
            to_status=to,
            source=source,
            provider=payment_provider,
            reason=reason.lower(),
        )

    return TransitionResult(
        applied=False,
        reason=reason,
        from_status=current.payment_status,
        current_provider=current.payment_provider,
        to_status=to,
    )
