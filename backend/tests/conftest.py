"""
Pytest fixtures for reconciler backend tests.

Provides test database setup, order/attempt/product factories, a fake
provider status client, and test client.
"""

from datetime import timedelta

import pytest

from reconciler import create_app
from reconciler.extensions import db
from reconciler.models import Order, PaymentAttempt, Product
from reconciler.models.orders import new_uuid
from reconciler.services.inventory_service import reserve_order_items
from reconciler.services.provider import InvoiceStatus, ProviderUnavailableError
from reconciler.time_utils import utcnow

from helpers import WORKER_ID


class FakeInvoiceStatusProvider:
    """In-memory provider status client. Unknown invoices are unavailable."""

    def __init__(self):
        self.statuses = {}
        self.calls = []

    def set_status(self, invoice_id, status, **raw):
        self.statuses[invoice_id] = InvoiceStatus(invoice_id=invoice_id, status=status, raw=raw)

    def get_invoice_status(self, invoice_id):
        self.calls.append(invoice_id)
        status = self.statuses.get(invoice_id)
        if status is None:
            raise ProviderUnavailableError(f"No status for {invoice_id}")
        return status


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'WORKER_ID': WORKER_ID,
        'LOG_JSON': True,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def set_config(app, monkeypatch):
    """Override app config keys for one test."""
    def _set(**values):
        for key, value in values.items():
            monkeypatch.setitem(app.config, key, value)
    return _set


@pytest.fixture(scope='function')
def fake_provider(app, monkeypatch):
    """Install a fake provider status client on the app."""
    provider = FakeInvoiceStatusProvider()
    monkeypatch.setitem(app.extensions, "invoice_status_provider", provider)
    return provider


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(sku="SKU-1", stock=10, name="Widget"):
        product = Product(sku=sku, name=name, stock=stock)
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def make_order(db_session):
    def _make(total=1000, currency="UAH", provider="monobank", payment_status="pending", **fields):
        order = Order(
            id=new_uuid(),
            total_amount_minor=total,
            currency=currency,
            payment_provider=provider,
            payment_status=payment_status,
            **fields,
        )
        db_session.add(order)
        db_session.commit()
        return order
    return _make


@pytest.fixture(scope='function')
def make_attempt(db_session):
    def _make(order, *, status="active", invoice_id="inv-1", expected=None, attempt_number=1, age_seconds=0, **fields):
        stamp = utcnow() - timedelta(seconds=age_seconds)
        attempt = PaymentAttempt(
            id=new_uuid(),
            order_id=order.id,
            provider="monobank",
            attempt_number=attempt_number,
            status=status,
            expected_amount_minor=order.total_amount_minor if expected is None else expected,
            currency=order.currency,
            idempotency_key=f"mono:monobank:{order.id}:{attempt_number}",
            provider_payment_intent_id=invoice_id,
            created_at=stamp,
            updated_at=stamp,
            **fields,
        )
        db_session.add(attempt)
        db_session.commit()
        return attempt
    return _make


@pytest.fixture(scope='function')
def reserved_order(make_order, make_product):
    """Order with 2 units of a 10-unit product reserved."""
    def _make(**order_fields):
        product = make_product(sku=f"SKU-{new_uuid()[:8]}", stock=10)
        order = make_order(**order_fields)
        reserve_order_items(order.id, [{"product_id": product.id, "quantity": 2}])
        return order, product
    return _make
