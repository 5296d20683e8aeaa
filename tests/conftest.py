"""Shared fixtures: a fresh SQLite file per test, a recording notifier,
the mock gateway and a running app."""
import asyncio
from contextlib import asynccontextmanager

import httpx
import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from channelmart.access import Identity
from channelmart.checkout import place_order
from channelmart.config import Settings
from channelmart.exchange import ExchangeRateSource
from channelmart.gateway import GatewayConfig, MockGateway
from channelmart.infra import timings
from channelmart.infra.sql import make_async_engine
from channelmart.model import Base, Listing, OrderStore, LISTING_APPROVED
from channelmart.notify import Notifier
from channelmart.server import create_app

SECRET = "test-payment-key"
APP_URL = "http://testserver"


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    async def send(self, template, to, params):
        self.sent.append((template, to, params))

    def templates(self):
        return [t for t, _, _ in self.sent]

    def of(self, template):
        return [(to, params) for t, to, params in self.sent if t == template]


async def add_listing(store, listing_id="lst-1", *, price="9,000",
                      status=LISTING_APPROVED, title="Cooking Channel"):
    async with store.db.begin():
        store.db.add(Listing(id=listing_id, title=title,
                             expected_price=price, currency="₹",
                             status=status))


async def create_tables(url):
    engine, _, _, _ = make_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture()
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'channelmart.db'}"


@pytest.fixture()
def open_db(db_url):
    """``async with open_db() as new_store:`` yields a store factory.

    Every store gets its own session, the way two concurrent requests do.
    """
    @asynccontextmanager
    async def _open():
        engine, SessionAsync, _, gated = make_async_engine(db_url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        sessions = []

        def new_store():
            session = SessionAsync()
            sessions.append(session)
            return OrderStore(db=session, gated=gated)

        try:
            yield new_store
        finally:
            for session in sessions:
                await session.close()
            await engine.dispose()

    return _open


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def gateway():
    return MockGateway(
        GatewayConfig(merchant_id="merchant-1", api_key=SECRET),
        pay_url_base=APP_URL,
    )


@pytest.fixture()
def rates():
    return ExchangeRateSource(None, "http://rates.invalid", override=90.0)


@pytest.fixture()
def make_order(gateway, rates, notifier):
    """Place an order through checkout; guest unless ``user_id`` is given."""
    async def _make(store, *, listing_id="lst-1", user_id=None,
                    guest_email="guest@example.com"):
        identity = None
        payload = {
            "listing_id": listing_id,
            "channel_access_email": "access@example.com",
        }
        if user_id is not None:
            identity = Identity(user_id=user_id, email="buyer@example.com",
                                name="Buyer")
        else:
            payload["guest_email"] = guest_email
            payload["guest_name"] = "Guest Buyer"
        return await place_order(store, gateway, rates, notifier, identity,
                                 payload, app_url=APP_URL)

    return _make


# ----------------------------
# HTTP
# ----------------------------
@pytest.fixture()
def settings(db_url):
    return Settings(
        database_url=db_url,
        app_url=APP_URL,
        session_secret="test-session-secret",
        admin_email="admin@example.com",
        payment_gateway="mock",
        merchant_id="merchant-1",
        payment_api_key=SECRET,
        usd_to_inr_rate=90.0,
        log_level="DEBUG",
    )


@pytest.fixture()
def listings(db_url):
    async def _seed():
        engine, SessionAsync, _, gated = make_async_engine(db_url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with SessionAsync() as session:
            store = OrderStore(db=session, gated=gated)
            await add_listing(store, "lst-1")
            await add_listing(store, "lst-2", price="18,000",
                              title="Travel Vlogs")
            await add_listing(store, "lst-draft", status="pending")
        await engine.dispose()

    asyncio.run(_seed())


@pytest.fixture()
def app(settings, notifier):
    app = create_app(settings, notifier=notifier)
    # mock webhooks are posted back into the app itself
    app.state.transport = httpx.ASGITransport(app=app)

    @app.post("/_test/session")
    async def _set_session(request: Request, payload: dict):
        request.session.clear()
        request.session.update(payload)
        return {"ok": True}

    return app


@pytest.fixture()
def client(app, listings):
    with TestClient(app, base_url=APP_URL) as c:
        yield c
