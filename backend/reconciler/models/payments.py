from __future__ import annotations

from ..extensions import db
from .orders import new_uuid
from reconciler.time_utils import to_utc_z, utcnow


class PaymentAttempt(db.Model):
    """
    One attempt by the buyer to pay for an order through one provider.

    LIFECYCLE:
    - creating: row exists, provider invoice not yet obtained
    - active: invoice obtained, waiting for the buyer / provider
    - succeeded | failed | canceled: finalized, never reopened

    provider_modified_at only moves forward; the finalize statements in
    services/webhook_apply.py carry that predicate.
    """
    __tablename__ = "payment_attempts"
    __table_args__ = (
        db.UniqueConstraint("order_id", "provider", "attempt_number", name="uq_payment_attempts_order_provider_num"),
        db.Index("ix_payment_attempts_provider_status_updated", "provider", "status", "updated_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)

    provider = db.Column(db.String(16), nullable=False, default="monobank")
    attempt_number = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(16), nullable=False, default="creating", index=True)

    expected_amount_minor = db.Column(db.Integer, nullable=True)
    currency = db.Column(db.String(3), nullable=True)
    idempotency_key = db.Column(db.String(128), nullable=False, unique=True)

    # Monobank invoice id
    provider_payment_intent_id = db.Column(db.String(128), nullable=True, index=True)
    provider_modified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    last_error_code = db.Column(db.String(64), nullable=True)
    last_error_message = db.Column(db.String(500), nullable=True)
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Janitor lease
    janitor_claimed_until = db.Column(db.DateTime(timezone=True), nullable=True)
    janitor_claimed_by = db.Column(db.String(64), nullable=True)

    attempt_metadata = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    order = db.relationship("Order", backref=db.backref("payment_attempts", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "provider": self.provider,
            "attempt_number": self.attempt_number,
            "status": self.status,
            "expected_amount_minor": self.expected_amount_minor,
            "currency": self.currency,
            "provider_payment_intent_id": self.provider_payment_intent_id,
            "provider_modified_at": to_utc_z(self.provider_modified_at),
            "last_error_code": self.last_error_code,
            "last_error_message": self.last_error_message,
            "finalized_at": to_utc_z(self.finalized_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class WebhookEvent(db.Model):
    """
    Durable record of one provider notification (append-only audit trail).

    event_key and raw_sha256 are both unique: a second insert with either
    value is a dedup, never a second row. Rows are never deleted; only the
    claim and applied_* columns change after insert.
    """
    __tablename__ = "payment_webhook_events"
    __table_args__ = (
        db.Index("ix_webhook_events_pending", "applied_at", "claim_expires_at"),
        db.Index("ix_webhook_events_order_received", "order_id", "received_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    provider = db.Column(db.String(16), nullable=False, default="monobank")

    event_key = db.Column(db.String(160), nullable=False, unique=True)
    raw_sha256 = db.Column(db.String(64), nullable=False, unique=True)

    # Normalized fields
    invoice_id = db.Column(db.String(128), nullable=True, index=True)
    status = db.Column(db.String(32), nullable=True)
    amount = db.Column(db.Integer, nullable=True)
    ccy = db.Column(db.Integer, nullable=True)
    reference = db.Column(db.String(128), nullable=True)

    raw_payload = db.Column(db.JSON, nullable=True)
    normalized_payload = db.Column(db.JSON, nullable=True)

    provider_modified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    # Outcome
    applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    applied_result = db.Column(db.String(32), nullable=True)
    applied_error_code = db.Column(db.String(64), nullable=True)
    applied_error_message = db.Column(db.String(500), nullable=True)

    attempt_id = db.Column(db.String(36), nullable=True, index=True)
    order_id = db.Column(db.String(36), nullable=True)

    # Claim lease
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    claim_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    claimed_by = db.Column(db.String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "event_key": self.event_key,
            "invoice_id": self.invoice_id,
            "status": self.status,
            "amount": self.amount,
            "ccy": self.ccy,
            "reference": self.reference,
            "provider_modified_at": to_utc_z(self.provider_modified_at),
            "received_at": to_utc_z(self.received_at),
            "applied_at": to_utc_z(self.applied_at),
            "applied_result": self.applied_result,
            "applied_error_code": self.applied_error_code,
            "applied_error_message": self.applied_error_message,
            "attempt_id": self.attempt_id,
            "order_id": self.order_id,
        }
