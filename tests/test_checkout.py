import asyncio

import pytest

from channelmart.access import Identity
from channelmart.checkout import place_order
from channelmart.errors import (
    GatewayError, ListingSold, ListingUnavailable, ValidationError,
)
from channelmart.gateway import MockGateway
from channelmart.model import PENDING, PAID
from channelmart.notify import ORDER_CONFIRMATION

from conftest import APP_URL, add_listing


class FailingGateway(MockGateway):
    async def create_invoice(self, req):
        raise GatewayError("gateway down")


def _checkout(store, gateway, rates, notifier, payload, identity=None):
    return place_order(store, gateway, rates, notifier, identity, payload,
                       app_url=APP_URL)


class TestPlaceOrder:
    def test_guest_order(self, open_db, gateway, rates, notifier):
        async def scenario():
            async with open_db() as new_store:
                store = new_store()
                await add_listing(store, price="₹9,000")
                return await _checkout(store, gateway, rates, notifier, {
                    "listing_id": "lst-1",
                    "channel_access_email": " access@example.com ",
                    "guest_email": "guest@example.com",
                })

        order = asyncio.run(scenario())
        assert order.status == PENDING
        assert order.amount == "100.00"
        assert order.currency == "USD"
        assert order.original_price == "₹9,000"
        assert order.exchange_rate == 90.0
        assert order.guest_name == "Guest"
        assert order.channel_access_email == "access@example.com"
        assert order.gateway_order_id == order.id
        assert order.gateway_invoice_id.startswith("mock_")
        assert order.payment_url == f"{APP_URL}/mockpay/{order.id}"
        assert order.expires_at is not None

        [(to, params)] = notifier.of(ORDER_CONFIRMATION)
        assert to == "guest@example.com"
        assert params["payment_url"] == order.payment_url

    def test_authenticated_order(self, open_db, gateway, rates, notifier):
        identity = Identity(user_id="user-1", email="buyer@example.com",
                            name="Buyer")

        async def scenario():
            async with open_db() as new_store:
                store = new_store()
                await add_listing(store)
                return await _checkout(store, gateway, rates, notifier, {
                    "listing_id": "lst-1",
                    "channel_access_email": "access@example.com",
                    # ignored for signed-in buyers
                    "guest_email": "guest@example.com",
                }, identity)

        order = asyncio.run(scenario())
        assert order.user_id == "user-1"
        assert order.user_email == "buyer@example.com"
        assert order.guest_email is None
        assert order.guest_name is None
        assert notifier.of(ORDER_CONFIRMATION)[0][0] == "buyer@example.com"

    @pytest.mark.parametrize("payload", [
        {"channel_access_email": "access@example.com",
         "guest_email": "g@example.com"},
        {"listing_id": "lst-1", "guest_email": "g@example.com"},
        {"listing_id": "lst-1", "channel_access_email": "not-an-email",
         "guest_email": "g@example.com"},
        {"listing_id": "lst-1", "channel_access_email": "access@example.com",
         "guest_email": "nope"},
        {"listing_id": "lst-1", "channel_access_email": "access@example.com"},
        {"listing_id": "lst-1", "channel_access_email": "access@example.com",
         "guest_email": "g@example.com", "guest_name": "n" * 256},
    ])
    def test_invalid_input(self, open_db, gateway, rates, notifier, payload):
        async def scenario():
            async with open_db() as new_store:
                store = new_store()
                await add_listing(store)
                await _checkout(store, gateway, rates, notifier, payload)

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    @pytest.mark.parametrize("listing_id", ["lst-draft", "missing"])
    def test_unavailable_listing(self, open_db, gateway, rates, notifier,
                                 listing_id):
        async def scenario():
            async with open_db() as new_store:
                store = new_store()
                await add_listing(store, "lst-draft", status="pending")
                await _checkout(store, gateway, rates, notifier, {
                    "listing_id": listing_id,
                    "channel_access_email": "access@example.com",
                    "guest_email": "g@example.com",
                })

        with pytest.raises(ListingUnavailable):
            asyncio.run(scenario())

    def test_unpriced_listing(self, open_db, gateway, rates, notifier):
        async def scenario():
            async with open_db() as new_store:
                store = new_store()
                await add_listing(store, price=None)
                await _checkout(store, gateway, rates, notifier, {
                    "listing_id": "lst-1",
                    "channel_access_email": "access@example.com",
                    "guest_email": "g@example.com",
                })

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    def test_sold_listing(self, open_db, gateway, rates, notifier,
                          make_order):
        async def scenario():
            async with open_db() as new_store:
                store = new_store()
                await add_listing(store)
                first = await make_order(store)
                await store.try_transition(first.id, PENDING, PAID)
                await make_order(store, guest_email="late@example.com")

        with pytest.raises(ListingSold):
            asyncio.run(scenario())

    def test_gateway_failure_leaves_uncorrelated_pending(self, open_db,
                                                         gateway, rates,
                                                         notifier):
        gw = FailingGateway(gateway.config, pay_url_base=APP_URL)

        async def scenario():
            async with open_db() as new_store:
                store = new_store()
                await add_listing(store)
                with pytest.raises(GatewayError):
                    await _checkout(store, gw, rates, notifier, {
                        "listing_id": "lst-1",
                        "channel_access_email": "access@example.com",
                        "guest_email": "g@example.com",
                    })
                return await store.list_all()

        [order] = asyncio.run(scenario())
        assert order.status == PENDING
        assert order.gateway_order_id is None
        assert order.expires_at is None
        assert notifier.sent == []
