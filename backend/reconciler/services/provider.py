# Overview: Interface to the payment provider's invoice status endpoint.

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from flask import current_app


class ProviderUnavailableError(Exception):
    """Raised when the provider cannot be reached or returns garbage."""
    code = "PSP_UNAVAILABLE"


@dataclass(frozen=True)
class InvoiceStatus:
    invoice_id: str
    status: str
    raw: dict = field(default_factory=dict)


class InvoiceStatusProvider(Protocol):
    def get_invoice_status(self, invoice_id: str) -> InvoiceStatus:
        ...


def get_invoice_status_provider() -> InvoiceStatusProvider:
    """Provider registered on the app by create_app(invoice_status_provider=...)."""
    provider = current_app.extensions.get("invoice_status_provider")
    if provider is None:
        raise ProviderUnavailableError("No invoice status provider configured")
    return provider
