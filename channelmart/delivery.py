"""Admin-side steps after payment: hand over, complete, cancel.

Delivery is manual. The asset is a credential transfer the
system cannot check, so an admin decides when a paid order is handed over.
"""
from __future__ import annotations
import logging
from typing import Optional

from .errors import (
    AlreadyDelivered, InvalidTransition, NotCancellable, NotPaid,
    OrderNotFound, ValidationError,
)
from .helpers import clean_str, now_ts
from .model import (
    Order, OrderStore, PENDING, PAID, DELIVERED, COMPLETED, CANCELLED,
)
from .notify import Notifier, notify_quietly, ORDER_DELIVERED

logger = logging.getLogger(__name__)

DETAILS_MIN_LEN = 10
TEXT_MAX_LEN = 5000


def validate_delivery(details, notes) -> tuple[str, Optional[str]]:
    details = clean_str(details)
    notes = clean_str(notes)
    if not details or len(details) < DETAILS_MIN_LEN:
        raise ValidationError(
            f"Delivery details must be at least {DETAILS_MIN_LEN} characters"
        )
    if len(details) > TEXT_MAX_LEN:
        raise ValidationError("Delivery details are too long")
    if notes is not None and len(notes) > TEXT_MAX_LEN:
        raise ValidationError("Delivery notes are too long")
    return details, notes


async def _require(store: OrderStore, order_id: str) -> Order:
    order = await store.get(order_id)
    if order is None:
        raise OrderNotFound("Order not found")
    return order


async def deliver(store: OrderStore, notifier: Notifier, order_id: str,
                  details, notes=None, *,
                  delivered_by: Optional[str] = None) -> Order:
    details, notes = validate_delivery(details, notes)
    order = await _require(store, order_id)
    if order.status in (DELIVERED, COMPLETED):
        raise AlreadyDelivered("Order has already been delivered")
    if order.status != PAID:
        raise NotPaid("Order must be paid before delivery")

    won = await store.try_transition(order.id, PAID, DELIVERED, {
        "delivered_at": now_ts(),
        "delivered_by": delivered_by,
        "delivery_details": details,
        "delivery_notes": notes,
    })
    order = await _require(store, order_id)
    if not won:
        if order.status in (DELIVERED, COMPLETED):
            raise AlreadyDelivered("Order has already been delivered")
        raise NotPaid("Order must be paid before delivery")

    listing = await store.get_listing(order.listing_id)
    # delivery_notes stay internal
    await notify_quietly(notifier, ORDER_DELIVERED, order.contact_email, {
        "order_id": order.id,
        "channel_title": listing.title if listing else order.listing_id,
        "customer_name": order.guest_name or "Customer",
        "delivery_details": order.delivery_details,
    })
    return order


async def complete(store: OrderStore, order_id: str) -> Order:
    order = await _require(store, order_id)
    if order.status == COMPLETED:
        return order
    if order.status != DELIVERED:
        raise InvalidTransition(order.status, COMPLETED)
    await store.try_transition(order.id, DELIVERED, COMPLETED)
    order = await _require(store, order_id)
    if order.status != COMPLETED:
        raise InvalidTransition(order.status, COMPLETED)
    return order


async def cancel(store: OrderStore, order_id: str) -> Order:
    order = await _require(store, order_id)
    if order.status == CANCELLED:
        return order
    if order.status not in (PENDING, PAID):
        raise NotCancellable(f"Order is {order.status}")
    await store.try_transition(order.id, order.status, CANCELLED)
    order = await _require(store, order_id)
    if order.status != CANCELLED:
        raise NotCancellable(f"Order is {order.status}")
    logger.info("order %s cancelled", order.id)
    return order
