from typing import Optional

import httpx

from ._base import (
    GatewayConfig, PaymentGateway, InvoiceRequest,
    InvoiceCreated, InvoiceStatus, WebhookReceived,
    INVOICE_CREATED, INVOICE_STATUS, WEBHOOK_RECEIVED,
    encode_payload, format_amount, sign,
)
from ._cryptomus import CryptomusGateway
from ._mock import MockGateway


# Factory keeps server.py simple and constructor-agnostic:
def new_gateway(name: str, config: GatewayConfig, *,
                http: Optional[httpx.AsyncClient] = None,
                pay_url_base: str = "") -> PaymentGateway:
    name = (name or "cryptomus").lower()
    if name == "mock":
        return MockGateway(config, pay_url_base=pay_url_base)
    if name == "cryptomus":
        if http is None:
            raise RuntimeError("CryptomusGateway requires http=AsyncClient")
        return CryptomusGateway(config, http)
    raise RuntimeError(f"unknown payment gateway {name!r}")


__all__ = [
    "GatewayConfig", "PaymentGateway", "InvoiceRequest",
    "InvoiceCreated", "InvoiceStatus", "WebhookReceived",
    "INVOICE_CREATED", "INVOICE_STATUS", "WEBHOOK_RECEIVED",
    "CryptomusGateway", "MockGateway",
    "encode_payload", "format_amount", "sign", "new_gateway",
]
