import asyncio
import base64
import hashlib
import json

import httpx
import pytest

from channelmart.errors import GatewayError, GatewayResponseError
from channelmart.gateway import (
    CryptomusGateway, GatewayConfig, InvoiceCreated, InvoiceRequest,
    InvoiceStatus, MockGateway, encode_payload, format_amount, new_gateway,
    sign,
)

from conftest import SECRET


def _config(**kw):
    base = dict(merchant_id="merchant-1", api_key=SECRET,
                base_url="https://pay.example/v1", timeout=2.0)
    base.update(kw)
    return GatewayConfig(**base)


class TestEncoding:
    def test_compact_with_escaped_slashes(self):
        out = encode_payload({"url": "https://x/y", "n": 1})
        assert out == '{"url":"https:\\/\\/x\\/y","n":1}'

    def test_unicode_kept_verbatim(self):
        assert encode_payload({"c": "₹"}) == '{"c":"₹"}'

    def test_sign_is_md5_of_base64_plus_secret(self):
        payload = '{"order_id":"abc"}'
        expected = hashlib.md5(
            base64.b64encode(payload.encode()) + SECRET.encode()
        ).hexdigest()
        assert sign(payload, SECRET) == expected
        assert len(expected) == 32


class TestFormatAmount:
    def test_two_decimals(self):
        assert format_amount("100") == "100.00"
        assert format_amount(12.5) == "12.50"

    def test_rounds_half_up(self):
        assert format_amount("1.005") == "1.01"
        assert format_amount("2.344") == "2.34"

    @pytest.mark.parametrize("bad", ["abc", "NaN", "Infinity", ""])
    def test_rejects_non_amounts(self, bad):
        with pytest.raises(ValueError):
            format_amount(bad)


class TestInvoiceRequest:
    def test_payload_drops_unset_fields(self):
        payload = InvoiceRequest(amount="5", currency="USD",
                                 order_id="o1").to_payload()
        assert payload == {
            "amount": "5.00",
            "currency": "USD",
            "order_id": "o1",
            "is_payment_multiple": False,
            "lifetime": 60,
        }


class TestResponseVariants:
    def test_invoice_created(self):
        inv = InvoiceCreated.from_response({"state": 0, "result": {
            "uuid": "u-1", "order_id": "o-1", "url": "https://pay/u-1",
            "amount": "10.00", "currency": "USD", "network": "tron",
            "address": "T123", "payment_amount": "10.01",
            "payment_status": "check", "expired_at": 1700000000,
        }})
        assert inv.kind == "invoice_created"
        assert inv.uuid == "u-1"
        assert inv.expired_at == 1700000000
        assert inv.is_final is False

    def test_nonzero_state_rejected(self):
        with pytest.raises(GatewayResponseError):
            InvoiceCreated.from_response({"state": 1, "message": "nope"})

    def test_missing_required_field_rejected(self):
        with pytest.raises(GatewayResponseError):
            InvoiceCreated.from_response({"state": 0, "result": {
                "order_id": "o-1", "url": "https://pay/u-1",
                "payment_status": "check",
            }})

    def test_status_accepts_either_status_key(self):
        st = InvoiceStatus.from_response({"state": 0, "result": {
            "uuid": "u-1", "order_id": "o-1", "status": "paid",
            "is_final": True,
        }})
        assert st.payment_status == "paid"
        assert st.is_final is True

    def test_wrong_type_rejected(self):
        with pytest.raises(GatewayResponseError):
            InvoiceStatus.from_response({"state": 0, "result": {
                "uuid": "u-1", "order_id": "o-1", "payment_status": "paid",
                "is_final": "yes",
            }})


class TestWebhookVerification:
    def _signed(self, gw, **fields):
        event = {"type": "payment", "order_id": "o-1", "uuid": "u-1",
                 "status": "paid", "is_final": True}
        event.update(fields)
        event["sign"] = sign(encode_payload(event), SECRET)
        return event

    def test_valid_body(self):
        gw = MockGateway(_config(), pay_url_base="")
        body = json.dumps(self._signed(gw)).encode()
        assert gw.verify_webhook(body) is True

    def test_reserialized_body_still_verifies(self):
        gw = MockGateway(_config(), pay_url_base="")
        event = self._signed(gw, url="https://example.com/a/b")
        body = json.dumps(event, indent=2).encode()
        assert gw.verify_webhook(body) is True

    def test_tampered_field_fails(self):
        gw = MockGateway(_config(), pay_url_base="")
        event = self._signed(gw, status="check")
        event["status"] = "paid"
        assert gw.verify_webhook(json.dumps(event).encode()) is False

    def test_forged_with_wrong_secret_fails(self):
        gw = MockGateway(_config(), pay_url_base="")
        event = {"order_id": "o-1", "status": "paid"}
        event["sign"] = sign(encode_payload(event), "attacker-key")
        assert gw.verify_webhook(json.dumps(event).encode()) is False

    def test_without_secret_everything_fails(self):
        gw = MockGateway(_config(api_key=""), pay_url_base="")
        event = {"order_id": "o-1", "status": "paid"}
        event["sign"] = sign(encode_payload(event), "")
        assert gw.verify_webhook(json.dumps(event).encode()) is False

    def test_header_signature_over_raw_body(self):
        gw = MockGateway(_config(), pay_url_base="")
        raw = '{"order_id":"o-1","status":"paid"}'
        assert gw.verify_webhook(raw.encode(), sign(raw, SECRET)) is True
        assert gw.verify_webhook(raw.encode(), "0" * 32) is False
        assert gw.verify_webhook(raw.encode()) is False

    def test_garbage_fails(self):
        gw = MockGateway(_config(), pay_url_base="")
        assert gw.verify_webhook(b"not json") is False
        assert gw.verify_webhook(b"[1, 2]") is False

    def test_parse_drops_sign_and_reads_status(self):
        gw = MockGateway(_config(), pay_url_base="")
        event = gw.parse_webhook(json.dumps(self._signed(gw)).encode())
        assert event.kind == "webhook_received"
        assert event.order_id == "o-1"
        assert event.payment_status == "paid"

    def test_parse_without_correlation_fails(self):
        gw = MockGateway(_config(), pay_url_base="")
        with pytest.raises(GatewayResponseError):
            gw.parse_webhook(b'{"status":"paid"}')


class TestCryptomusGateway:
    def _gateway(self, handler, **kw):
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return CryptomusGateway(_config(**kw), http), http

    def test_create_invoice_signs_exact_body(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["headers"] = request.headers
            seen["body"] = request.content.decode()
            data = json.loads(seen["body"])
            return httpx.Response(200, json={"state": 0, "result": {
                "uuid": "u-1", "order_id": data["order_id"],
                "url": "https://pay.example/u-1", "amount": data["amount"],
                "payment_status": "check", "expired_at": 1700000000,
            }})

        async def scenario():
            gw, http = self._gateway(handler)
            async with http:
                return await gw.create_invoice(InvoiceRequest(
                    amount="12.5", currency="USD", order_id="o-1",
                    url_callback="https://shop.example/api/webhooks/cryptomus",
                ))

        inv = asyncio.run(scenario())
        assert inv.order_id == "o-1"
        assert seen["path"] == "/v1/payment"
        assert seen["headers"]["merchant"] == "merchant-1"
        assert seen["headers"]["sign"] == sign(seen["body"], SECRET)
        assert '"amount":"12.50"' in seen["body"]
        assert "\\/api\\/webhooks" in seen["body"]

    def test_payment_info(self):
        def handler(request):
            assert request.url.path == "/v1/payment/info"
            return httpx.Response(200, json={"state": 0, "result": {
                "uuid": "u-1", "order_id": "o-1",
                "payment_status": "paid", "is_final": True,
            }})

        async def scenario():
            gw, http = self._gateway(handler)
            async with http:
                return await gw.payment_info("o-1")

        st = asyncio.run(scenario())
        assert st.payment_status == "paid"
        assert st.is_final is True

    def test_non_2xx_is_gateway_error(self):
        async def scenario():
            gw, http = self._gateway(
                lambda request: httpx.Response(500, text="oops"))
            async with http:
                await gw.payment_info("o-1")

        with pytest.raises(GatewayError):
            asyncio.run(scenario())

    def test_transport_failure_is_gateway_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def scenario():
            gw, http = self._gateway(handler)
            async with http:
                await gw.payment_info("o-1")

        with pytest.raises(GatewayError):
            asyncio.run(scenario())

    def test_non_json_is_response_error(self):
        async def scenario():
            gw, http = self._gateway(
                lambda request: httpx.Response(200, text="<html>"))
            async with http:
                await gw.payment_info("o-1")

        with pytest.raises(GatewayResponseError):
            asyncio.run(scenario())

    def test_unconfigured_never_calls_out(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        async def scenario():
            gw, http = self._gateway(handler, api_key="")
            async with http:
                await gw.payment_info("o-1")

        with pytest.raises(GatewayError):
            asyncio.run(scenario())
        assert calls == []


def test_factory():
    assert isinstance(new_gateway("mock", _config()), MockGateway)
    with pytest.raises(RuntimeError):
        new_gateway("cryptomus", _config())
    with pytest.raises(RuntimeError):
        new_gateway("paypal", _config())
