# Overview: Flask route receiving Monobank webhook deliveries.

# backend/reconciler/routes/webhooks.py
"""
Monobank Webhook Endpoint

WHY: Monobank pushes invoice status changes here. The route only hands the
raw body to the apply pipeline; all decisions live in services/webhook_apply.py.

DESIGN:
- Always acknowledge with 200 so the provider does not retry-storm.
  Invalid payloads and apply failures are logged, not surfaced.
- Authentication and signature verification happen upstream.
"""

import uuid

import structlog
from flask import Blueprint, current_app, jsonify, request

from ..config import reconciler_settings
from ..extensions import db
from ..logging_setup import error_message
from ..services.webhook_apply import process_webhook
from ..services.webhook_payload import InvalidPayloadError


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")

log = structlog.get_logger(__name__)


@webhooks_bp.post("/monobank")
def monobank_webhook_route():
    """
    Receive one Monobank notification.

    Request body: the provider's JSON object (at minimum invoiceId and status).

    Returns:
        200: {"ok": true, "applied_result": ..., "deduped": ..., "event_id": ...}
        200: {"ok": false, "error": "INVALID_PAYLOAD"} for malformed bodies
    """
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    raw_body = request.get_data(cache=False)
    settings = reconciler_settings()

    try:
        result = process_webhook(
            raw_body,
            mode=settings.webhook_mode,
            worker_id=current_app.config["WORKER_ID"],
            claim_ttl_seconds=settings.claim_ttl_seconds,
            request_id=request_id,
        )
    except InvalidPayloadError as exc:
        log.warning(
            "monobank_webhook_invalid_payload",
            code=exc.code,
            request_id=request_id,
            error_code=exc.code,
        )
        return jsonify({"ok": False, "error": exc.code}), 200
    except Exception as exc:
        db.session.rollback()
        log.error(
            "monobank_webhook_apply_failed",
            code="MONO_WEBHOOK_APPLY_FAILED",
            request_id=request_id,
            error=error_message(exc),
        )
        return jsonify({"ok": False, "error": "APPLY_FAILED"}), 200

    return jsonify({"ok": True, **result.to_dict()}), 200
