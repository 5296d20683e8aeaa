from __future__ import annotations
import json
import time
import uuid
from typing import Dict, Optional

from ..errors import GatewayError
from ._base import (
    GatewayConfig, InvoiceCreated, InvoiceRequest, InvoiceStatus,
    PaymentGateway, encode_payload,
)

FINAL_STATUSES = {"paid", "paid_over", "cancel", "expired", "fail"}


# ----------------------------
# Mock gateway (development only)
# ----------------------------
class MockGateway(PaymentGateway):
    """In-process invoices; webhooks are signed exactly like the real ones."""
    name = "mock"

    def __init__(self, config: GatewayConfig, pay_url_base: str):
        super().__init__(config)
        self.pay_url_base = pay_url_base.rstrip("/")
        self.invoices: Dict[str, Dict] = {}

    async def create_invoice(self, req: InvoiceRequest) -> InvoiceCreated:
        inv = {
            "uuid": f"mock_{uuid.uuid4().hex}",
            "order_id": req.order_id,
            "amount": req.to_payload()["amount"],
            "currency": req.currency,
            "payment_status": "check",
            "expired_at": int(time.time()) + req.lifetime * 60,
        }
        self.invoices[req.order_id] = inv
        return InvoiceCreated(
            uuid=inv["uuid"],
            order_id=req.order_id,
            url=f"{self.pay_url_base}/mockpay/{req.order_id}",
            amount=inv["amount"],
            currency=req.currency,
            network="tron",
            address="TMockAddress000000000000000000000",
            payment_amount=inv["amount"],
            payment_status=inv["payment_status"],
            expired_at=inv["expired_at"],
        )

    async def payment_info(self, order_id: str) -> InvoiceStatus:
        inv = self.invoices.get(order_id)
        if inv is None:
            raise GatewayError("mock invoice not found")
        return InvoiceStatus(
            uuid=inv["uuid"],
            order_id=order_id,
            payment_status=inv["payment_status"],
            is_final=inv["payment_status"] in FINAL_STATUSES,
            payment_amount=inv["amount"],
            expired_at=inv["expired_at"],
        )

    def get_invoice(self, order_id: str) -> Optional[Dict]:
        return self.invoices.get(order_id)

    def webhook_body(self, order_id: str, status: str) -> bytes:
        """Settle the mock invoice and build the signed callback body."""
        inv = self.invoices.get(order_id)
        if inv is None:
            raise GatewayError("mock invoice not found")
        inv["payment_status"] = status
        event = {
            "type": "payment",
            "uuid": inv["uuid"],
            "order_id": order_id,
            "amount": inv["amount"],
            "payment_amount": inv["amount"],
            "currency": inv["currency"],
            "status": status,
            "is_final": status in FINAL_STATUSES,
            "txid": f"mocktx_{uuid.uuid4().hex[:16]}",
        }
        event["sign"] = self.sign(encode_payload(event))
        return json.dumps(event).encode()
