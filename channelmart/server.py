from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .access import Access, Identity, check_access
from .checkout import place_order
from .config import Settings
from .delivery import cancel, complete, deliver
from .errors import (
    AlreadyDelivered, GatewayError, GatewayResponseError, InvalidTransition,
    ListingSold, ListingUnavailable, NotCancellable, NotPaid, OrderError,
    OrderNotFound, PaymentNotInitialized, SignatureInvalid, ValidationError,
)
from .exchange import ExchangeRateSource
from .gateway import GatewayConfig, MockGateway, new_gateway
from .helpers import ct_equal, to_iso
from .infra.sql import make_async_engine
from .infra.timings import snapshot, timeit
from .model import Base, Order, OrderStore
from .notify import Notifier, new_notifier
from .reconcile import Reconciler, sweep

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter()
mockpay_router = APIRouter()

_ERROR_STATUS = (
    (ValidationError, 400),
    (ListingUnavailable, 404),
    (ListingSold, 409),
    (OrderNotFound, 404),
    (PaymentNotInitialized, 404),
    (SignatureInvalid, 401),
    (AlreadyDelivered, 400),
    (NotPaid, 400),
    (InvalidTransition, 409),
    (NotCancellable, 409),
)


# ----------------------------
# App state & dependencies
# ----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine, SessionAsync, _, gated = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(max_connections=100,
                            max_keepalive_connections=20),
        transport=app.state.transport,
    )
    app.state.engine = engine
    app.state.sessions = SessionAsync
    app.state.gated = gated
    app.state.http = http
    app.state.gateway = new_gateway(
        settings.payment_gateway,
        GatewayConfig(
            merchant_id=settings.merchant_id,
            api_key=settings.payment_api_key,
            base_url=settings.gateway_base_url,
            timeout=settings.gateway_timeout,
        ),
        http=http,
        pay_url_base=settings.app_url,
    )
    app.state.rates = ExchangeRateSource(
        http, settings.exchange_rate_url, override=settings.usd_to_inr_rate
    )
    if app.state.notifier is None:
        app.state.notifier = new_notifier(http, settings.notify_url)

    logger.info("channelmart starting: gateway=%s db=%s",
                app.state.gateway.name, engine.url.get_backend_name())
    try:
        yield
    finally:
        await http.aclose()
        await engine.dispose()


async def order_store(request: Request):
    async with request.app.state.sessions() as session:
        yield OrderStore(db=session, gated=request.app.state.gated)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def reconciler(request: Request,
               store: OrderStore = Depends(order_store)) -> Reconciler:
    settings: Settings = request.app.state.settings
    return Reconciler(
        store,
        request.app.state.gateway,
        request.app.state.notifier,
        admin_email=settings.admin_email,
        grace_seconds=settings.sweep_grace_minutes * 60,
    )


def current_identity(request: Request) -> Optional[Identity]:
    s = request.session
    admin = s.get("admin_user")
    user_id = s.get("user_id")
    if not admin and not user_id:
        return None
    return Identity(
        user_id=str(user_id) if user_id else None,
        email=s.get("user_email"),
        name=s.get("user_name"),
        is_admin=bool(admin),
    )


def require_admin(request: Request) -> str:
    admin = request.session.get("admin_user")
    if not admin:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return admin


def _raise_for_access(decision: Access) -> None:
    if decision is Access.GRANTED:
        return
    if decision is Access.NOT_FOUND:
        raise HTTPException(404, detail="Order not found")
    if decision is Access.EMAIL_REQUIRED:
        raise HTTPException(403, detail={
            "error": "Email verification required",
            "requires_email": True,
            "message": "Please provide the email address used for this "
                       "order",
        })
    raise HTTPException(403, detail="Unauthorized")


def order_json(order: Order, *, admin: bool = False) -> dict:
    out = {
        "id": order.id,
        "listing_id": order.listing_id,
        "status": order.status,
        "amount": order.amount,
        "currency": order.currency,
        "original_price": order.original_price,
        "original_currency": order.original_currency,
        "exchange_rate": order.exchange_rate,
        "channel_access_email": order.channel_access_email,
        "payment_url": order.payment_url,
        "payment_network": order.payment_network,
        "payment_address": order.payment_address,
        "payment_amount": order.payment_amount,
        "payment_status": order.payment_status,
        "expires_at": to_iso(order.expires_at),
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "delivered_at": to_iso(order.delivered_at),
        "delivery_details": order.delivery_details,
        "is_guest": order.is_guest,
    }
    if admin:
        out.update({
            "user_id": order.user_id,
            "user_email": order.user_email,
            "guest_email": order.guest_email,
            "guest_name": order.guest_name,
            "gateway_invoice_id": order.gateway_invoice_id,
            "gateway_order_id": order.gateway_order_id,
            "delivered_by": order.delivered_by,
            "delivery_notes": order.delivery_notes,
        })
    return out


# ----------------------------
# API: purchase intent
# ----------------------------
@router.post("/api/orders")
async def create_order(
    payload: dict,
    request: Request,
    store: OrderStore = Depends(order_store),
    settings: Settings = Depends(get_settings),
):
    st = request.app.state
    order = await place_order(
        store, st.gateway, st.rates, st.notifier,
        current_identity(request), payload,
        app_url=settings.app_url,
        lifetime_minutes=settings.invoice_lifetime_minutes,
        currency=settings.settlement_currency,
    )
    return {
        "success": True,
        "order": {
            "id": order.id,
            "payment_url": order.payment_url,
            "amount": order.amount,
            "currency": order.currency,
            "payment_address": order.payment_address,
            "payment_network": order.payment_network,
            "payment_amount": order.payment_amount,
            "expires_at": to_iso(order.expires_at),
        },
    }


@router.get("/api/orders")
async def list_my_orders(
    request: Request,
    store: OrderStore = Depends(order_store),
):
    identity = current_identity(request)
    if identity is None or identity.user_id is None:
        raise HTTPException(401, detail="Unauthorized")
    orders = await store.list_for_user(identity.user_id)
    return {"orders": [order_json(o) for o in orders]}


# ----------------------------
# API: order status (read + poll)
# ----------------------------
@router.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    request: Request,
    email: Optional[str] = None,
    store: OrderStore = Depends(order_store),
):
    async with timeit("db.get_order"):
        order = await store.get(order_id)
    identity = current_identity(request)
    _raise_for_access(check_access(order, identity, email))
    return {"order": order_json(order, admin=bool(identity and
                                                  identity.is_admin))}


@router.post("/api/orders/{order_id}/check-payment")
async def check_payment(
    order_id: str,
    request: Request,
    email: Optional[str] = None,
    rec: Reconciler = Depends(reconciler),
):
    order = await rec.store.get(order_id)
    identity = current_identity(request)
    _raise_for_access(check_access(order, identity, email))
    order = await rec.poll(order)
    return {"order": order_json(order, admin=bool(identity and
                                                  identity.is_admin))}


# ----------------------------
# Webhook endpoint
# ----------------------------
@router.post("/api/webhooks/cryptomus")
async def cryptomus_webhook(
    request: Request,
    rec: Reconciler = Depends(reconciler),
):
    body = await request.body()
    try:
        obs = await rec.handle_webhook(body, request.headers.get("sign"))
    except GatewayResponseError as e:
        raise HTTPException(400, detail=str(e))
    # already-applied deliveries are a success too, or the gateway retries
    return {"ok": True, "idempotent": not obs.applied,
            "status": obs.order.status}


@router.get("/api/webhooks/cryptomus")
async def cryptomus_webhook_ping():
    return {"status": "ok"}


# ----------------------------
# Admin
# ----------------------------
@admin_router.get("/api/admin/orders")
async def admin_orders(
    limit: int = 200,
    status: Optional[str] = None,
    admin: str = Depends(require_admin),
    store: OrderStore = Depends(order_store),
    settings: Settings = Depends(get_settings),
):
    # the listing doubles as the periodic sweep
    expired = await sweep(
        store,
        grace_seconds=settings.sweep_grace_minutes * 60,
        fallback_seconds=settings.sweep_fallback_minutes * 60,
        guests_only=settings.sweep_guests_only,
    )
    orders = await store.list_all(limit=limit, status=status)
    return {
        "items": [order_json(o, admin=True) for o in orders],
        "expired": expired,
        "limit": limit,
    }


@admin_router.post("/api/admin/orders/expire-old")
async def admin_expire_old(
    admin: str = Depends(require_admin),
    store: OrderStore = Depends(order_store),
    settings: Settings = Depends(get_settings),
):
    count = await sweep(
        store,
        grace_seconds=settings.sweep_grace_minutes * 60,
        fallback_seconds=settings.sweep_fallback_minutes * 60,
        guests_only=settings.sweep_guests_only,
    )
    if count == 0:
        message = "No expired orders to update"
    else:
        message = f"Expired {count} order(s)"
    return {"success": True, "message": message, "expired_count": count}


@admin_router.post("/api/admin/orders/{order_id}/deliver")
async def admin_deliver(
    order_id: str,
    payload: dict,
    request: Request,
    admin: str = Depends(require_admin),
    store: OrderStore = Depends(order_store),
):
    order = await deliver(
        store, request.app.state.notifier, order_id,
        payload.get("delivery_details"), payload.get("delivery_notes"),
        delivered_by=admin,
    )
    return {"success": True, "order": order_json(order, admin=True)}


@admin_router.post("/api/admin/orders/{order_id}/complete")
async def admin_complete(
    order_id: str,
    admin: str = Depends(require_admin),
    store: OrderStore = Depends(order_store),
):
    order = await complete(store, order_id)
    return {"success": True, "order": order_json(order, admin=True)}


@admin_router.post("/api/admin/orders/{order_id}/cancel")
async def admin_cancel(
    order_id: str,
    admin: str = Depends(require_admin),
    store: OrderStore = Depends(order_store),
):
    order = await cancel(store, order_id)
    return {"success": True, "order": order_json(order, admin=True)}


@admin_router.get("/api/admin/timings")
async def admin_timings(admin: str = Depends(require_admin)):
    return {"items": snapshot()}


@admin_router.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/admin/orders"),
    settings: Settings = Depends(get_settings),
):
    ok_user = ct_equal(username.strip(), settings.admin_username)
    ok_pass = ct_equal(password, settings.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # only local redirects
        dest = next if next.startswith("/") and not next.startswith("//") \
            else "/api/admin/orders"
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    logger.warning("admin login failed for %r", username.strip())
    raise HTTPException(401, detail="Invalid credentials.")


@admin_router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# MockPay (PAYMENT_GATEWAY=mock only)
# ----------------------------
def _mock_gateway(request: Request) -> MockGateway:
    gw = request.app.state.gateway
    if not isinstance(gw, MockGateway):
        raise HTTPException(404, detail="mock gateway not enabled")
    return gw


@mockpay_router.get("/mockpay/{order_id}")
async def mockpay_screen(order_id: str, request: Request):
    inv = _mock_gateway(request).get_invoice(order_id)
    if inv is None:
        raise HTTPException(404, "payment session not found")
    return {"invoice": inv,
            "emit": f"/mockpay/{order_id}/emit",
            "statuses": ["paid", "paid_over", "cancel", "expired", "fail"]}


@mockpay_router.post("/mockpay/{order_id}/emit")
async def mockpay_emit(
    order_id: str,
    request: Request,
    t: str = Form(...),
    settings: Settings = Depends(get_settings),
):
    if t not in {"paid", "paid_over", "cancel", "expired", "fail"}:
        raise HTTPException(400, detail="invalid kind")
    gw = _mock_gateway(request)
    if gw.get_invoice(order_id) is None:
        raise HTTPException(404, "payment session not found")
    body = gw.webhook_body(order_id, t)

    client_http: httpx.AsyncClient = request.app.state.http
    delivered = False
    try:
        r = await client_http.post(
            f"{settings.app_url}/api/webhooks/cryptomus",
            content=body,
            headers={"content-type": "application/json"},
        )
        delivered = r.status_code // 100 == 2
    except httpx.HTTPError as e:
        # the buyer can emit again
        logger.warning("mock webhook delivery failed: %s", e)
    return {"ok": True, "delivered": delivered, "status": t}


# ----------------------------
# App factory
# ----------------------------
async def _order_error(request: Request, exc: OrderError):
    status = next(
        (code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 400
    )
    return ORJSONResponse({"detail": str(exc)}, status_code=status)


async def _gateway_error(request: Request, exc: GatewayError):
    logger.error("gateway error on %s: %s", request.url.path, exc)
    return ORJSONResponse({"detail": "Payment gateway error"},
                          status_code=502)


def create_app(settings: Optional[Settings] = None, *,
               notifier: Optional[Notifier] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None
               ) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(
        title="channelmart",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.notifier = notifier
    app.state.transport = transport
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.add_exception_handler(OrderError, _order_error)
    app.add_exception_handler(GatewayError, _gateway_error)
    app.include_router(router)
    app.include_router(admin_router)
    if settings.payment_gateway == "mock":
        app.include_router(mockpay_router)
    return app


app = create_app()
