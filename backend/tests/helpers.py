"""Shared helpers for reconciler tests."""

import json

from reconciler.extensions import db

WORKER_ID = "test-worker"


def webhook_body(invoice_id="inv-1", status="success", **fields) -> bytes:
    """Raw webhook body as Monobank would send it."""
    payload = {"invoiceId": invoice_id, "status": status}
    payload.setdefault("amount", 1000)
    payload.setdefault("ccy", 980)
    payload.update(fields)
    return json.dumps(payload, sort_keys=True).encode("utf-8")


def reload(model, row_id):
    """Fresh ORM copy of a row after Core-level updates."""
    db.session.expire_all()
    return db.session.get(model, row_id)
