# Overview: Creation and activation of payment attempts.

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, PaymentAttempt
from ..models.orders import new_uuid
from reconciler.time_utils import utcnow
from .concurrency import run_in_transaction
from .payment_state import guarded_payment_status_update

log = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
OPEN_ATTEMPT_STATUSES = ("creating", "active")


class PaymentAttemptsExhaustedError(Exception):
    code = "PAYMENT_ATTEMPTS_EXHAUSTED"

    def __init__(self, order_id: str, provider: str):
        super().__init__(f"Payment attempts exhausted for order {order_id} ({provider})")
        self.order_id = order_id
        self.provider = provider


class ActiveAttemptExistsError(Exception):
    code = "ACTIVE_ATTEMPT_EXISTS"

    def __init__(self, order_id: str, attempt_id: str):
        super().__init__(f"Order {order_id} already has an open attempt {attempt_id}")
        self.order_id = order_id
        self.attempt_id = attempt_id


class AttemptNotFoundError(Exception):
    code = "ATTEMPT_NOT_FOUND"


def get_active_attempt(order_id: str, provider: str = "monobank") -> PaymentAttempt | None:
    """The attempt still expected to resolve (creating or active), if any."""
    return db.session.execute(
        select(PaymentAttempt)
        .where(
            PaymentAttempt.order_id == order_id,
            PaymentAttempt.provider == provider,
            PaymentAttempt.status.in_(OPEN_ATTEMPT_STATUSES),
        )
        .order_by(PaymentAttempt.attempt_number.desc())
        .limit(1)
    ).scalar()


def _max_attempt_number(order_id: str, provider: str) -> int:
    return db.session.execute(
        select(func.coalesce(func.max(PaymentAttempt.attempt_number), 0)).where(
            PaymentAttempt.order_id == order_id,
            PaymentAttempt.provider == provider,
        )
    ).scalar_one()


def create_attempt(
    order_id: str,
    *,
    provider: str = "monobank",
    expected_amount_minor: int | None = None,
    currency: str | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    now: datetime | None = None,
) -> PaymentAttempt:
    """
    Open a new attempt in 'creating' with the next attempt number.

    At most one attempt per order and provider is open at a time; the
    (order, provider, attempt_number) unique key settles races between two
    concurrent creators.

    Raises:
        ActiveAttemptExistsError: Another attempt is still creating/active
        PaymentAttemptsExhaustedError: max_attempts already used
    """
    order = db.session.execute(
        select(Order.id, Order.total_amount_minor, Order.currency).where(Order.id == order_id)
    ).first()
    if order is None:
        raise AttemptNotFoundError(f"Order {order_id} not found")

    existing = get_active_attempt(order_id, provider)
    if existing is not None:
        raise ActiveAttemptExistsError(order_id, existing.id)

    next_number = _max_attempt_number(order_id, provider) + 1
    if next_number > max_attempts:
        raise PaymentAttemptsExhaustedError(order_id, provider)

    now = now or utcnow()
    attempt = PaymentAttempt(
        id=new_uuid(),
        order_id=order_id,
        provider=provider,
        attempt_number=next_number,
        status="creating",
        expected_amount_minor=(
            expected_amount_minor if expected_amount_minor is not None else order.total_amount_minor
        ),
        currency=currency or order.currency,
        idempotency_key=f"mono:{provider}:{order_id}:{next_number}",
        attempt_metadata={},
        created_at=now,
        updated_at=now,
    )

    try:
        db.session.add(attempt)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raced = get_active_attempt(order_id, provider)
        if raced is not None:
            raise ActiveAttemptExistsError(order_id, raced.id)
        raise

    log.info(
        "payment_attempt_created",
        code="PAYMENT_ATTEMPT_CREATED",
        order_id=order_id,
        attempt_id=attempt.id,
        provider=provider,
    )
    return attempt


def attach_invoice(attempt_id: str, invoice_id: str, *, now: datetime | None = None) -> bool:
    """
    Record the provider invoice for a creating attempt and activate it.

    Conditional on the attempt still being 'creating': an attempt the orphan
    expirer already failed is never revived. The owning order moves from
    pending to requires_payment in the same transaction.
    """
    if not invoice_id or not invoice_id.strip():
        raise ValueError("invoice_id is required")
    now = now or utcnow()

    def _op() -> bool:
        result = db.session.execute(
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt_id, PaymentAttempt.status == "creating")
            .values(
                provider_payment_intent_id=invoice_id.strip(),
                status="active",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        row = db.session.execute(
            select(PaymentAttempt.order_id, PaymentAttempt.provider).where(PaymentAttempt.id == attempt_id)
        ).first()
        guarded_payment_status_update(
            row.order_id,
            payment_provider=row.provider,
            to="requires_payment",
            source="checkout",
        )
        return True

    return run_in_transaction(_op)
