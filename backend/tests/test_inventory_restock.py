# Overview: Pytest coverage for the inventory ledger and exactly-once restock.

import pytest

from reconciler.models import InventoryMove, Order, Product
from reconciler.services.inventory_service import (
    InsufficientStockError,
    apply_release_move,
    apply_reserve_move,
    reserve_order_items,
)
from reconciler.services.lease_service import ORDER_RESTOCK_LEASE, claim
from reconciler.services.restock_service import (
    OrderNotFoundError,
    OrderStateInvalidError,
    restock_order,
)

from helpers import reload


def _release_rows(db_session, order_id):
    return db_session.query(InventoryMove).filter_by(order_id=order_id, type="release").count()


class TestLedger:
    def test_reserve_decrements_once(self, db_session, make_order, make_product):
        product = make_product(stock=5)
        order = make_order()

        assert apply_reserve_move(order.id, product.id, 2).applied is True
        assert apply_reserve_move(order.id, product.id, 2).applied is False
        assert reload(Product, product.id).stock == 3

    def test_reserve_never_goes_negative(self, db_session, make_order, make_product):
        product = make_product(stock=1)
        order = make_order()

        result = apply_reserve_move(order.id, product.id, 2)
        assert result.ok is False
        assert result.reason == "INSUFFICIENT_STOCK"
        assert reload(Product, product.id).stock == 1
        assert db_session.query(InventoryMove).count() == 0

    def test_release_without_reserve_is_noop(self, db_session, make_order, make_product):
        product = make_product(stock=4)
        order = make_order()

        result = apply_release_move(order.id, product.id, 2)
        assert result.applied is False
        assert result.reason == "NO_RESERVE"
        assert reload(Product, product.id).stock == 4

    def test_reserve_basket_marks_order(self, db_session, reserved_order):
        order, product = reserved_order()
        order = reload(Order, order.id)
        assert order.inventory_status == "reserved"
        assert order.status == "INVENTORY_RESERVED"
        assert reload(Product, product.id).stock == 8

    def test_reserve_basket_insufficient(self, db_session, make_order, make_product):
        product = make_product(stock=1)
        with pytest.raises(InsufficientStockError):
            reserve_order_items(make_order().id, [{"product_id": product.id, "quantity": 3}])


class TestRestock:
    def test_failed_restock_releases_and_finalizes(self, db_session, reserved_order):
        order, product = reserved_order()

        assert restock_order(order.id, reason="failed", worker_id="w1") is True

        order = reload(Order, order.id)
        assert order.stock_restored is True
        assert order.restocked_at is not None
        assert order.inventory_status == "released"
        assert order.status == "INVENTORY_FAILED"
        assert order.payment_status == "failed"
        assert reload(Product, product.id).stock == 10

    def test_exactly_one_release_across_triggers(self, db_session, reserved_order):
        order, product = reserved_order()

        assert restock_order(order.id, reason="canceled", worker_id="janitor") is True
        assert restock_order(order.id, reason="failed", worker_id="webhook") is False

        assert _release_rows(db_session, order.id) == 1
        assert reload(Product, product.id).stock == 10
        assert reload(Order, order.id).status == "CANCELED"

    def test_lease_held_elsewhere_is_noop(self, db_session, reserved_order):
        order, product = reserved_order()
        assert claim(ORDER_RESTOCK_LEASE, order.id, "other", 300) is True

        assert restock_order(order.id, reason="failed", worker_id="w1") is False
        assert reload(Product, product.id).stock == 8

    def test_paid_card_order_needs_refund_reason(self, db_session, reserved_order):
        order, _ = reserved_order(payment_status="paid")
        with pytest.raises(OrderStateInvalidError):
            restock_order(order.id, reason="canceled", worker_id="w1")

        assert restock_order(order.id, reason="refunded", worker_id="w1") is True
        assert reload(Order, order.id).payment_status == "refunded"

    def test_order_without_reservations_still_finalizes(self, db_session, make_order):
        order = make_order()
        assert restock_order(order.id, reason="stale", worker_id="w1") is True
        assert reload(Order, order.id).stock_restored is True

    def test_unknown_order_and_reason(self, db_session, make_order):
        with pytest.raises(OrderNotFoundError):
            restock_order("missing", reason="failed", worker_id="w1")
        with pytest.raises(ValueError):
            restock_order(make_order().id, reason="lost", worker_id="w1")
