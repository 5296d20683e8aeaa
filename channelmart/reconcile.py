"""Bringing order rows in line with what the gateway says.

Three independent triggers feed the same primitive, :meth:`Reconciler.observe`:
the gateway's webhook, a buyer's status poll, and the expiration sweep (which
never asks the gateway). They are not ordered against each other; the
conditional transition in the store decides who wins, and everybody else
re-reads.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import OrderNotFound, PaymentNotInitialized, SignatureInvalid
from .gateway import PaymentGateway
from .helpers import now_ts
from .infra.timings import timeit
from .model import (
    Order, OrderStore, PENDING, PAID, DELIVERED, COMPLETED, EXPIRED, CANCELLED,
)
from .notify import (
    Notifier, notify_quietly,
    ORDER_LATE_PAYMENT_ADMIN, ORDER_PAID_ADMIN, ORDER_PAYMENT_CONFIRMED,
    ORDER_SALE_CONFLICT_ADMIN,
)

logger = logging.getLogger(__name__)

PAID_STATUSES = frozenset({"paid", "paid_over"})
CANCELLED_STATUSES = frozenset({"cancel", "cancelled"})
EXPIRED_STATUSES = frozenset({"expired"})


def map_payment_status(payment_status: Optional[str]) -> Optional[str]:
    """Gateway status string -> order status, None when informational."""
    if payment_status in PAID_STATUSES:
        return PAID
    if payment_status in CANCELLED_STATUSES:
        return CANCELLED
    if payment_status in EXPIRED_STATUSES:
        return EXPIRED
    return None


@dataclass
class Observation:
    order: Order
    # True only for the caller whose update actually moved the row
    applied: bool


class Reconciler:
    def __init__(self, store: OrderStore, gateway: PaymentGateway,
                 notifier: Notifier, *, admin_email: Optional[str] = None,
                 grace_seconds: float = 0.0) -> None:
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.admin_email = admin_email
        self.grace = grace_seconds

    async def observe(self, order: Order, payment_status: str,
                      is_final: bool = False) -> Observation:
        target = map_payment_status(payment_status)
        current = order.status
        # order is a live row; read before anything re-fetches it
        previous_payment_status = order.payment_status
        applied = False
        attempted = True

        if target == PAID and current == PENDING:
            applied = await self.store.try_transition(
                order.id, PENDING, PAID,
                {"paid_at": now_ts(), "payment_status": payment_status},
            )
        elif target == PAID and is_final and current == DELIVERED:
            # final settlement for an order already handed over
            applied = await self.store.try_transition(
                order.id, DELIVERED, COMPLETED,
                {"payment_status": payment_status},
            )
        elif target in (EXPIRED, CANCELLED) and current == PENDING:
            applied = await self.store.try_transition(
                order.id, PENDING, target,
                {"payment_status": payment_status},
            )
        else:
            attempted = False

        if not attempted and payment_status != order.payment_status:
            await self.store.refresh_payment_status(order.id, payment_status)

        fresh = await self.store.get(order.id)
        if fresh is None:
            raise OrderNotFound(order.id)

        if applied and target == PAID and fresh.status == PAID:
            await self._on_paid(fresh)
        elif (target == PAID and current == PENDING and not applied
              and fresh.status == PENDING):
            # the guard refused: another order for this listing is sold
            fresh = await self._on_sale_conflict(fresh, payment_status)
        elif (target == PAID and not applied
              and fresh.status in (EXPIRED, CANCELLED)
              and previous_payment_status not in PAID_STATUSES):
            # money arrived for an order that is already closed
            fresh = await self._on_late_payment(fresh, payment_status)

        return Observation(order=fresh, applied=applied)

    async def _on_paid(self, order: Order) -> None:
        listing = await self.store.get_listing(order.listing_id)
        params = {
            "order_id": order.id,
            "channel_title": listing.title if listing else order.listing_id,
            "amount": order.amount,
            "currency": order.currency,
            "customer_email": order.contact_email or "N/A",
            "is_guest": order.is_guest,
        }
        await notify_quietly(self.notifier, ORDER_PAID_ADMIN,
                             self.admin_email, params)
        await notify_quietly(self.notifier, ORDER_PAYMENT_CONFIRMED,
                             order.contact_email, {
                                 "order_id": order.id,
                                 "channel_title": params["channel_title"],
                                 "customer_name":
                                     order.guest_name or "Customer",
                             })

    async def _on_sale_conflict(self, order: Order,
                                payment_status: str) -> Order:
        logger.warning(
            "order %s paid (%s) but listing %s is already sold; "
            "cancelling for manual refund",
            order.id, payment_status, order.listing_id,
        )
        won = await self.store.try_transition(
            order.id, PENDING, CANCELLED, {"payment_status": payment_status}
        )
        if won:
            await notify_quietly(
                self.notifier, ORDER_SALE_CONFLICT_ADMIN, self.admin_email, {
                    "order_id": order.id,
                    "listing_id": order.listing_id,
                    "amount": order.amount,
                    "currency": order.currency,
                    "payment_status": payment_status,
                    "customer_email": order.contact_email or "N/A",
                },
            )
        return await self.store.get(order.id) or order

    async def _on_late_payment(self, order: Order,
                               payment_status: str) -> Order:
        logger.warning(
            "order %s is %s but the gateway reports %s; "
            "needs a manual refund or reinstatement",
            order.id, order.status, payment_status,
        )
        await self.store.refresh_payment_status(order.id, payment_status)
        await notify_quietly(
            self.notifier, ORDER_LATE_PAYMENT_ADMIN, self.admin_email, {
                "order_id": order.id,
                "listing_id": order.listing_id,
                "order_status": order.status,
                "amount": order.amount,
                "currency": order.currency,
                "payment_status": payment_status,
                "customer_email": order.contact_email or "N/A",
            },
        )
        return await self.store.get(order.id) or order

    # ------------------------------------------------------------------
    # triggers
    # ------------------------------------------------------------------
    async def handle_webhook(self, body: bytes,
                             header_sign: Optional[str] = None
                             ) -> Observation:
        if not self.gateway.verify_webhook(body, header_sign):
            logger.warning("webhook rejected: bad signature")
            raise SignatureInvalid("Invalid signature")

        event = self.gateway.parse_webhook(body)
        order = await self.store.get_by_gateway_id(event.order_id)
        if order is None and event.uuid:
            order = await self.store.get_by_gateway_id(event.uuid)
        if order is None:
            logger.warning("webhook for unknown gateway order %s",
                           event.order_id)
            raise OrderNotFound("Order not found")

        obs = await self.observe(order, event.payment_status, event.is_final)
        logger.info("webhook order %s: %s -> status %s (applied=%s)",
                    order.id, event.payment_status, obs.order.status,
                    obs.applied)
        return obs

    async def poll(self, order: Order) -> Order:
        """Ask the gateway, apply what it says, return the current row."""
        if not order.gateway_order_id:
            raise PaymentNotInitialized(
                "Order not found or payment not initialized"
            )

        async with timeit("gateway.payment_info"):
            info = await self.gateway.payment_info(order.gateway_order_id)
        obs = await self.observe(order, info.payment_status, info.is_final)
        order = obs.order

        # only a settled invoice is expired here; an in-flight payment
        # waits for the gateway or the sweep
        expires_at = order.expires_at or info.expired_at
        if (order.status == PENDING and info.is_final and expires_at
                and expires_at < now_ts() - self.grace):
            await self.store.try_transition(
                order.id, PENDING, EXPIRED, {"payment_status": "expired"}
            )
            order = await self.store.get(order.id) or order
        return order


async def sweep(store: OrderStore, *, grace_seconds: float,
                fallback_seconds: float, guests_only: bool = False,
                now: Optional[float] = None) -> int:
    """Expire stale pending orders in one pass; the gateway is not asked."""
    async with timeit("orders.sweep"):
        return await store.expire_stale(
            now=now_ts() if now is None else now,
            grace_seconds=grace_seconds,
            fallback_seconds=fallback_seconds,
            guests_only=guests_only,
        )
