from __future__ import annotations
import base64
import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional

from ..errors import GatewayResponseError
from ..helpers import ct_equal

INVOICE_CREATED = "invoice_created"
INVOICE_STATUS = "invoice_status"
WEBHOOK_RECEIVED = "webhook_received"


@dataclass(frozen=True)
class GatewayConfig:
    merchant_id: str
    api_key: str = field(repr=False)
    base_url: str = "https://api.cryptomus.com/v1"
    timeout: float = 15.0

    @property
    def configured(self) -> bool:
        return bool(self.merchant_id and self.api_key)


# ----------------------------
# Signing & wire encoding
# ----------------------------
def encode_payload(data: Dict[str, Any]) -> str:
    """Serialize the way the gateway does: compact, UTF-8, ``/`` escaped."""
    return json.dumps(
        data, ensure_ascii=False, separators=(",", ":")
    ).replace("/", "\\/")


def sign(payload: str, secret: str) -> str:
    raw = base64.b64encode(payload.encode("utf-8")) + secret.encode("utf-8")
    return hashlib.md5(raw).hexdigest()


def format_amount(value) -> str:
    """Two-decimal fixed string; the gateway API is string-typed."""
    try:
        d = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"not an amount: {value!r}")
    if not d.is_finite():
        raise ValueError(f"not an amount: {value!r}")
    return str(d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


# ----------------------------
# Response variants
# ----------------------------
def _req_str(d: Dict[str, Any], key: str) -> str:
    v = d.get(key)
    if not isinstance(v, str) or not v:
        raise GatewayResponseError(f"field {key!r} missing or not a string")
    return v


def _opt_str(d: Dict[str, Any], key: str) -> Optional[str]:
    v = d.get(key)
    if v is None:
        return None
    if not isinstance(v, str):
        raise GatewayResponseError(f"field {key!r} is not a string")
    return v


def _opt_amount(d: Dict[str, Any], key: str) -> Optional[str]:
    v = d.get(key)
    if v is None:
        return None
    if isinstance(v, bool) or not isinstance(v, (str, int, float)):
        raise GatewayResponseError(f"field {key!r} is not an amount")
    return str(v)


def _opt_epoch(d: Dict[str, Any], key: str) -> Optional[int]:
    v = d.get(key)
    if v is None:
        return None
    if isinstance(v, bool):
        raise GatewayResponseError(f"field {key!r} is not a timestamp")
    if isinstance(v, str) and v.isdigit():
        return int(v)
    if not isinstance(v, (int, float)):
        raise GatewayResponseError(f"field {key!r} is not a timestamp")
    return int(v)


def _opt_bool(d: Dict[str, Any], key: str) -> bool:
    v = d.get(key, False)
    if not isinstance(v, bool):
        raise GatewayResponseError(f"field {key!r} is not a boolean")
    return v


def _payment_status(d: Dict[str, Any]) -> str:
    status = d.get("payment_status") or d.get("status")
    if not isinstance(status, str) or not status:
        raise GatewayResponseError("payment status missing")
    return status


def _unwrap(body: Any) -> Dict[str, Any]:
    # {"state": 0, "result": {...}}
    if not isinstance(body, dict):
        raise GatewayResponseError("response is not a JSON object")
    if body.get("state") != 0:
        raise GatewayResponseError(f"gateway state {body.get('state')!r}")
    result = body.get("result")
    if not isinstance(result, dict):
        raise GatewayResponseError("response has no result object")
    return result


@dataclass(frozen=True)
class InvoiceCreated:
    uuid: str
    order_id: str
    url: str
    amount: Optional[str]
    currency: Optional[str]
    network: Optional[str]
    address: Optional[str]
    payment_amount: Optional[str]
    payment_status: str
    expired_at: Optional[int]
    is_final: bool = False
    kind: str = INVOICE_CREATED

    @classmethod
    def from_response(cls, body: Any) -> "InvoiceCreated":
        r = _unwrap(body)
        return cls(
            uuid=_req_str(r, "uuid"),
            order_id=_req_str(r, "order_id"),
            url=_req_str(r, "url"),
            amount=_opt_amount(r, "amount"),
            currency=_opt_str(r, "currency"),
            network=_opt_str(r, "network"),
            address=_opt_str(r, "address"),
            payment_amount=_opt_amount(r, "payment_amount"),
            payment_status=_payment_status(r),
            expired_at=_opt_epoch(r, "expired_at"),
            is_final=_opt_bool(r, "is_final"),
        )


@dataclass(frozen=True)
class InvoiceStatus:
    uuid: str
    order_id: str
    payment_status: str
    is_final: bool
    payment_amount: Optional[str] = None
    expired_at: Optional[int] = None
    kind: str = INVOICE_STATUS

    @classmethod
    def from_response(cls, body: Any) -> "InvoiceStatus":
        r = _unwrap(body)
        return cls(
            uuid=_req_str(r, "uuid"),
            order_id=_req_str(r, "order_id"),
            payment_status=_payment_status(r),
            is_final=_opt_bool(r, "is_final"),
            payment_amount=_opt_amount(r, "payment_amount"),
            expired_at=_opt_epoch(r, "expired_at"),
        )


@dataclass(frozen=True)
class WebhookReceived:
    order_id: str
    uuid: Optional[str]
    payment_status: str
    is_final: bool
    amount: Optional[str] = None
    txid: Optional[str] = None
    kind: str = WEBHOOK_RECEIVED

    @classmethod
    def from_payload(cls, data: Any) -> "WebhookReceived":
        if not isinstance(data, dict):
            raise GatewayResponseError("webhook body is not a JSON object")
        order_id = data.get("order_id") or data.get("uuid")
        if not isinstance(order_id, str) or not order_id:
            raise GatewayResponseError("webhook has no order correlation")
        return cls(
            order_id=order_id,
            uuid=_opt_str(data, "uuid"),
            payment_status=_payment_status(data),
            is_final=_opt_bool(data, "is_final"),
            amount=_opt_amount(data, "amount"),
            txid=_opt_str(data, "txid"),
        )


@dataclass(frozen=True)
class InvoiceRequest:
    amount: str
    currency: str
    order_id: str
    url_return: Optional[str] = None
    url_success: Optional[str] = None
    url_callback: Optional[str] = None
    lifetime: int = 60
    network: Optional[str] = None
    to_currency: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "amount": format_amount(self.amount),
            "currency": self.currency,
            "order_id": self.order_id,
            "url_return": self.url_return,
            "url_success": self.url_success,
            "url_callback": self.url_callback,
            "is_payment_multiple": False,
            "lifetime": self.lifetime,
        }
        if self.network:
            payload["network"] = self.network
        if self.to_currency:
            payload["to_currency"] = self.to_currency
        return {k: v for k, v in payload.items() if v is not None}


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    name = "abstract"

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config

    @abstractmethod
    async def create_invoice(self, req: InvoiceRequest) -> InvoiceCreated:
        ...

    @abstractmethod
    async def payment_info(self, order_id: str) -> InvoiceStatus:
        ...

    def sign(self, payload: str) -> str:
        return sign(payload, self.config.api_key)

    def verify_webhook(self, body: bytes,
                       header_sign: Optional[str] = None) -> bool:
        """Check a webhook body against the shared secret.

        The signature normally travels inside the body as ``sign``; it is
        removed and the rest is re-encoded the way the gateway encoded it.
        Bodies without ``sign`` are checked against the ``sign`` header over
        the raw bytes.
        """
        if not self.config.api_key:
            return False
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return False
        if not isinstance(data, dict):
            return False

        if "sign" in data:
            given = data.pop("sign")
            signed = encode_payload(data)
        else:
            given = header_sign
            signed = body.decode("utf-8")
        if not isinstance(given, str) or not given:
            return False
        return ct_equal(self.sign(signed), given)

    def parse_webhook(self, body: bytes) -> WebhookReceived:
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise GatewayResponseError("webhook body is not JSON")
        if isinstance(data, dict):
            data.pop("sign", None)
        return WebhookReceived.from_payload(data)
