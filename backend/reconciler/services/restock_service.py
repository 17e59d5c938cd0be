# Overview: Release an order's reserved inventory exactly once.

from __future__ import annotations

from sqlalchemy import select, update

import structlog

from ..extensions import db
from ..models import Order
from reconciler.time_utils import utcnow
from .concurrency import run_in_transaction
from .inventory_service import apply_release_move, reserved_lines
from .lease_service import ORDER_RESTOCK_LEASE, claim
from .payment_state import CARD_PROVIDERS, guarded_payment_status_update

log = structlog.get_logger(__name__)

RESTOCK_REASONS = ("failed", "refunded", "canceled", "stale")


class OrderNotFoundError(Exception):
    code = "ORDER_NOT_FOUND"


class OrderStateInvalidError(Exception):
    code = "ORDER_STATE_INVALID"


def _load_order_state(order_id: str):
    return db.session.execute(
        select(
            Order.id,
            Order.payment_provider,
            Order.payment_status,
            Order.inventory_status,
            Order.stock_restored,
            Order.restocked_at,
        ).where(Order.id == order_id)
    ).first()


def _normalized_payment_status(reason: str, provider: str) -> str | None:
    if reason == "refunded" and provider != "none":
        return "refunded"
    if reason in ("failed", "canceled", "stale"):
        return "failed"
    return None


def _lifecycle_status(reason: str) -> str | None:
    if reason == "canceled":
        return "CANCELED"
    if reason in ("failed", "stale"):
        return "INVENTORY_FAILED"
    return None


def restock_order(
    order_id: str,
    *,
    reason: str,
    worker_id: str,
    already_claimed: bool = False,
    claim_ttl_minutes: int = 5,
) -> bool:
    """
    Release every reserved line of an order and finalize it once.

    WHY: failure, refund and cancel paths all need the stock back, and they
    can race each other (webhook vs janitor). The inventory ledger makes each
    line release idempotent; the stock_restored flip makes the order-level
    finalize happen exactly once.

    Args:
        order_id: Order to release
        reason: failed | refunded | canceled | stale
        worker_id: Lease owner for the restock claim
        already_claimed: Caller already holds the order restock lease
        claim_ttl_minutes: Lease TTL when this call takes the claim

    Returns:
        True if this call finalized the release, False if it was a no-op.

    Raises:
        OrderNotFoundError: If the order does not exist
        OrderStateInvalidError: If a paid card order is released without refund
    """
    if reason not in RESTOCK_REASONS:
        raise ValueError(f"Invalid restock reason: {reason}")

    order = _load_order_state(order_id)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")

    if order.inventory_status == "released" or order.stock_restored or order.restocked_at is not None:
        return False

    provider = order.payment_provider
    if provider in CARD_PROVIDERS and order.payment_status == "paid" and reason != "refunded":
        raise OrderStateInvalidError("Cannot restock a paid order without refund reason")

    if not already_claimed:
        if not claim(ORDER_RESTOCK_LEASE, order_id, worker_id, claim_ttl_minutes * 60):
            log.info(
                "restock_claim_busy",
                code="RESTOCK_CLAIM_BUSY",
                order_id=order_id,
                worker_id=worker_id,
                restock_reason=reason,
            )
            return False

    lines = reserved_lines(order_id)
    if lines:
        run_in_transaction(lambda: db.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.inventory_status != "released")
            .values(inventory_status="release_pending", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        ))
        for product_id, quantity in lines:
            apply_release_move(order_id, product_id, quantity)

    finalized_at = utcnow()
    to_status = _normalized_payment_status(reason, provider)
    source = "janitor" if already_claimed else "restock"

    def _finalize() -> bool:
        # Only one caller may flip the marker.
        values = {
            "stock_restored": True,
            "restocked_at": finalized_at,
            "inventory_status": "released",
            "updated_at": finalized_at,
        }
        lifecycle = _lifecycle_status(reason)
        if lifecycle:
            values["status"] = lifecycle

        result = db.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.stock_restored.is_(False))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        if to_status:
            guarded_payment_status_update(
                order_id,
                payment_provider=provider,
                to=to_status,
                source=source,
                extra_where=(Order.restocked_at == finalized_at,),
            )
        return True

    finalized = run_in_transaction(_finalize)

    if finalized:
        log.info(
            "restock_finalized",
            code="RESTOCK_FINALIZED",
            order_id=order_id,
            worker_id=worker_id,
            restock_reason=reason,
            count=len(lines),
        )
    return finalized
