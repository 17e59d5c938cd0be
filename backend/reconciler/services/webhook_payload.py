# Overview: Tolerant parsing of Monobank webhook bodies into a typed, normalized value.

from __future__ import annotations

import hashlib
import json
import math
import re
from dataclasses import asdict, dataclass
from datetime import datetime

from reconciler.time_utils import minute_bucket, parse_provider_timestamp


class InvalidPayloadError(ValueError):
    """Raised when a webhook body cannot be normalized. Never stored."""
    code = "INVALID_PAYLOAD"


# Field-name variants seen across provider payload versions.
INVOICE_ID_KEYS = ("invoiceId", "invoice_id")
STATUS_KEYS = ("status",)
AMOUNT_KEYS = ("amount", "finalAmount")
CCY_KEYS = ("ccy", "currency", "currencyCode")
REFERENCE_KEYS = ("reference", "merchantRef")
MODIFIED_AT_KEYS = (
    "modifiedDate",
    "modifiedAt",
    "updatedAt",
    "createdDate",
    "createdAt",
    "time",
    "timestamp",
)
EVENT_ID_KEYS = ("eventId", "event_id")

_ATTEMPT_REFERENCE_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class NormalizedWebhook:
    invoice_id: str
    status: str
    amount: int | None
    ccy: int | None
    reference: str | None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ParsedWebhook:
    raw: dict
    normalized: NormalizedWebhook
    provider_modified_at: datetime | None
    provider_event_id: str | None


def _first_present(raw: dict, keys):
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _clean_str(value) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _clean_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _extract_modified_at(raw: dict) -> datetime | None:
    for key in MODIFIED_AT_KEYS:
        parsed = parse_provider_timestamp(raw.get(key))
        if parsed is not None:
            return parsed
    return None


def normalize_webhook_payload(raw) -> ParsedWebhook:
    """
    Normalize an already-decoded payload mapping.

    Only invoice id and status are required; every other field is optional
    and tolerated under any of its known names.
    """
    if not isinstance(raw, dict):
        raise InvalidPayloadError("Webhook payload must be a JSON object")

    invoice_id = _clean_str(_first_present(raw, INVOICE_ID_KEYS))
    status_raw = _first_present(raw, STATUS_KEYS)
    status = status_raw.strip().lower() if isinstance(status_raw, str) else ""

    if not invoice_id or not status:
        raise InvalidPayloadError("Webhook payload is missing invoiceId or status")

    normalized = NormalizedWebhook(
        invoice_id=invoice_id,
        status=status,
        amount=_clean_int(_first_present(raw, AMOUNT_KEYS)),
        ccy=_clean_int(_first_present(raw, CCY_KEYS)),
        reference=_clean_str(_first_present(raw, REFERENCE_KEYS)),
    )

    return ParsedWebhook(
        raw=raw,
        normalized=normalized,
        provider_modified_at=_extract_modified_at(raw),
        provider_event_id=_clean_str(_first_present(raw, EVENT_ID_KEYS)),
    )


def parse_webhook_payload(raw_body) -> ParsedWebhook:
    """Decode a raw request body (bytes or str) and normalize it."""
    if isinstance(raw_body, (bytes, bytearray)):
        try:
            raw_body = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidPayloadError("Webhook body is not valid UTF-8") from exc

    try:
        raw = json.loads(raw_body)
    except (TypeError, ValueError) as exc:
        raise InvalidPayloadError("Invalid JSON payload") from exc

    return normalize_webhook_payload(raw)


def sha256_hex(raw_body) -> str:
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return hashlib.sha256(raw_body).hexdigest()


def build_event_key(parsed: ParsedWebhook, received_at: datetime) -> str:
    """
    Idempotency key for one provider notification.

    provider:<eventId> when the provider supplies an id. Otherwise a hash of
    the normalized fields plus the minute bucket of the provider time (or
    receipt time), so an unchanged status resent within the same minute
    dedups while a different status for the same invoice does not.
    """
    if parsed.provider_event_id:
        return f"provider:{parsed.provider_event_id}"

    n = parsed.normalized
    bucket = minute_bucket(parsed.provider_modified_at or received_at)
    material = json.dumps(
        {
            "invoiceId": n.invoice_id,
            "status": n.status,
            "amount": n.amount,
            "ccy": n.ccy,
            "reference": n.reference,
            "bucket": bucket,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return f"derived:{sha256_hex(material)}"


def is_attempt_reference(value: str | None) -> bool:
    """True when value looks like a payment attempt id (UUID v1-v5)."""
    return bool(value) and bool(_ATTEMPT_REFERENCE_RE.match(value))
