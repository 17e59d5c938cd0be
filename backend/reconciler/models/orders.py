from __future__ import annotations

import uuid

from ..extensions import db
from reconciler.time_utils import to_utc_z, utcnow


def new_uuid() -> str:
    return str(uuid.uuid4())


class Order(db.Model):
    """
    The purchasable unit under payment.

    payment_status is driven only through the transition guard in
    services/payment_state.py. 'paid' is terminal; 'needs_review' stops all
    automatic transitions.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_provider_payment_status", "payment_provider", "payment_status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)

    currency = db.Column(db.String(3), nullable=False, default="UAH")
    total_amount_minor = db.Column(db.Integer, nullable=False)

    # monobank | stripe | none
    payment_provider = db.Column(db.String(16), nullable=False, default="monobank")
    # pending | requires_payment | paid | failed | refunded | needs_review
    payment_status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    # CREATED | INVENTORY_RESERVED | PAID | CANCELED | INVENTORY_FAILED
    status = db.Column(db.String(32), nullable=False, default="CREATED", index=True)
    # none | reserved | release_pending | released
    inventory_status = db.Column(db.String(20), nullable=False, default="none")

    psp_charge_id = db.Column(db.String(128), nullable=True)
    psp_status_reason = db.Column(db.String(64), nullable=True)
    psp_metadata = db.Column(db.JSON, nullable=True)

    failure_code = db.Column(db.String(64), nullable=True)
    failure_message = db.Column(db.String(500), nullable=True)

    # Restock finalize-once marker
    stock_restored = db.Column(db.Boolean, nullable=False, default=False)
    restocked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Restock lease
    sweep_claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sweep_claim_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sweep_claimed_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "currency": self.currency,
            "total_amount_minor": self.total_amount_minor,
            "payment_provider": self.payment_provider,
            "payment_status": self.payment_status,
            "status": self.status,
            "inventory_status": self.inventory_status,
            "psp_charge_id": self.psp_charge_id,
            "psp_status_reason": self.psp_status_reason,
            "psp_metadata": self.psp_metadata,
            "failure_code": self.failure_code,
            "failure_message": self.failure_message,
            "stock_restored": self.stock_restored,
            "restocked_at": to_utc_z(self.restocked_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
