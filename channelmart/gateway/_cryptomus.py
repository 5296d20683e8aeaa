from __future__ import annotations
import logging
from typing import Any, Dict

import httpx

from ..errors import GatewayError, GatewayResponseError
from ._base import (
    GatewayConfig, InvoiceCreated, InvoiceRequest, InvoiceStatus,
    PaymentGateway, encode_payload,
)

logger = logging.getLogger(__name__)


class CryptomusGateway(PaymentGateway):
    """Cryptomus merchant API: signed JSON POSTs, JSON answers."""
    name = "cryptomus"

    def __init__(self, config: GatewayConfig, http: httpx.AsyncClient):
        super().__init__(config)
        self.http = http

    async def _post(self, path: str, data: Dict[str, Any]) -> Any:
        if not self.config.configured:
            raise GatewayError("Cryptomus credentials are not configured")

        # the signature covers exactly the bytes we send
        body = encode_payload(data)
        headers = {
            "content-type": "application/json",
            "merchant": self.config.merchant_id,
            "sign": self.sign(body),
        }
        url = f"{self.config.base_url}{path}"
        try:
            r = await self.http.post(
                url, content=body.encode("utf-8"), headers=headers,
                timeout=self.config.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning("cryptomus %s failed: %s", path, e)
            raise GatewayError(f"Cryptomus request failed: {e}") from e

        if r.status_code // 100 != 2:
            logger.warning("cryptomus %s answered %s", path, r.status_code)
            raise GatewayError(
                f"Cryptomus API error: {r.status_code} - {r.text[:200]}"
            )
        try:
            return r.json()
        except ValueError as e:
            raise GatewayResponseError("Cryptomus answered non-JSON") from e

    async def create_invoice(self, req: InvoiceRequest) -> InvoiceCreated:
        body = await self._post("/payment", req.to_payload())
        return InvoiceCreated.from_response(body)

    async def payment_info(self, order_id: str) -> InvoiceStatus:
        body = await self._post("/payment/info", {"order_id": order_id})
        return InvoiceStatus.from_response(body)
