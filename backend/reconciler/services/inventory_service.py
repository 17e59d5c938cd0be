# Overview: Reserve/release inventory ledger with idempotent move keys.

"""
Inventory Ledger

Invariants:
- Product.stock never goes negative: reserve decrements only if enough stock.
- Each (order, product, direction) is recorded at most once; the unique
  move_key is the gate. A repeated reserve or release is a no-op.
- A release is only recorded when a reserve exists for the same line, and
  stock is incremented only by the call that recorded it.

Each call runs in its own DB transaction and commits.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import InventoryMove, Order, Product
from reconciler.time_utils import utcnow
from .concurrency import run_in_transaction

log = structlog.get_logger(__name__)


class InventoryError(Exception):
    """Raised for invalid inventory operations."""
    code = "INVENTORY_ERROR"


class InsufficientStockError(InventoryError):
    code = "INSUFFICIENT_STOCK"


@dataclass(frozen=True)
class MoveResult:
    ok: bool
    applied: bool
    reason: str | None = None


def reserve_key(order_id: str, product_id: int) -> str:
    return f"reserve:{order_id}:{product_id}"


def release_key(order_id: str, product_id: int) -> str:
    return f"release:{order_id}:{product_id}"


def _validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InventoryError("Quantity must be a positive integer")
    return quantity


def _move_exists(move_key: str) -> bool:
    return db.session.execute(
        select(InventoryMove.id).where(InventoryMove.move_key == move_key).limit(1)
    ).first() is not None


def apply_reserve_move(order_id: str, product_id: int, quantity: int) -> MoveResult:
    """Reserve stock for one order line. Idempotent by move key."""
    quantity = _validate_quantity(quantity)
    key = reserve_key(order_id, product_id)

    if _move_exists(key):
        return MoveResult(ok=True, applied=False)

    now = utcnow()
    try:
        db.session.add(InventoryMove(
            move_key=key,
            order_id=order_id,
            product_id=product_id,
            type="reserve",
            quantity=quantity,
            created_at=now,
        ))
        db.session.flush()

        result = db.session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            return MoveResult(ok=False, applied=False, reason=InsufficientStockError.code)

        db.session.commit()
    except IntegrityError:
        # Another worker recorded the same reserve first.
        db.session.rollback()
        return MoveResult(ok=True, applied=False)
    except Exception:
        db.session.rollback()
        raise

    return MoveResult(ok=True, applied=True)


def apply_release_move(order_id: str, product_id: int, quantity: int) -> MoveResult:
    """Return reserved stock for one order line. Idempotent by move key."""
    quantity = _validate_quantity(quantity)

    if not _move_exists(reserve_key(order_id, product_id)):
        return MoveResult(ok=True, applied=False, reason="NO_RESERVE")
    if _move_exists(release_key(order_id, product_id)):
        return MoveResult(ok=True, applied=False)

    now = utcnow()
    try:
        db.session.add(InventoryMove(
            move_key=release_key(order_id, product_id),
            order_id=order_id,
            product_id=product_id,
            type="release",
            quantity=quantity,
            created_at=now,
        ))
        db.session.flush()

        db.session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return MoveResult(ok=True, applied=False)
    except Exception:
        db.session.rollback()
        raise

    return MoveResult(ok=True, applied=True)


def reserved_lines(order_id: str) -> list[tuple[int, int]]:
    """(product_id, quantity) for every reserve move of an order."""
    rows = db.session.execute(
        select(InventoryMove.product_id, InventoryMove.quantity)
        .where(InventoryMove.order_id == order_id, InventoryMove.type == "reserve")
        .order_by(InventoryMove.id.asc())
    ).all()
    return [(row.product_id, row.quantity) for row in rows]


def reserve_order_items(order_id: str, items: list[dict]) -> None:
    """
    Reserve a basket for an order and mark the order reserved.

    items: [{"product_id": int, "quantity": int}, ...]

    Raises:
        InsufficientStockError: If any line cannot be reserved. Lines reserved
            before the failure stay recorded so restock can return them.
    """
    for item in items:
        result = apply_reserve_move(order_id, item["product_id"], item["quantity"])
        if not result.ok:
            log.warning(
                "inventory_reserve_failed",
                code="INVENTORY_RESERVE_FAILED",
                order_id=order_id,
                reason=result.reason,
            )
            raise InsufficientStockError(f"Insufficient stock for product {item['product_id']}")

    def _mark_reserved():
        db.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.inventory_status == "none")
            .values(status="INVENTORY_RESERVED", inventory_status="reserved", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    run_in_transaction(_mark_reserved)
