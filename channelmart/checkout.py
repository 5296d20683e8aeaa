"""Purchase intent: validate, price, record the order, open the invoice."""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from .access import Identity
from .errors import GatewayError, ListingSold, ListingUnavailable, ValidationError
from .exchange import ExchangeRateSource, convert, parse_amount
from .gateway import InvoiceRequest, PaymentGateway, format_amount
from .helpers import clean_str, is_valid_email
from .infra.timings import timeit
from .model import LISTING_APPROVED, Order, OrderStore
from .notify import Notifier, notify_quietly, ORDER_CONFIRMATION

logger = logging.getLogger(__name__)


async def place_order(store: OrderStore, gateway: PaymentGateway,
                      rates: ExchangeRateSource, notifier: Notifier,
                      identity: Optional[Identity], payload: Dict[str, Any],
                      *, app_url: str, lifetime_minutes: int = 60,
                      currency: str = "USD") -> Order:
    listing_id = clean_str(payload.get("listing_id"))
    channel_access_email = clean_str(payload.get("channel_access_email"))
    guest_email = clean_str(payload.get("guest_email"))
    guest_name = clean_str(payload.get("guest_name"))

    if not listing_id:
        raise ValidationError("Listing ID is required")
    if not is_valid_email(channel_access_email):
        raise ValidationError("Invalid channel access email address")
    if guest_email is not None and not is_valid_email(guest_email):
        raise ValidationError("Invalid email address")
    if guest_name is not None and len(guest_name) > 255:
        raise ValidationError("Name is too long")

    listing = await store.get_listing(listing_id)
    if listing is None or listing.status != LISTING_APPROVED:
        raise ListingUnavailable("Listing not found or not available")
    if await store.listing_sold(listing.id):
        raise ListingSold("This channel has already been sold")

    user_id = identity.user_id if identity is not None else None
    if user_id is None and guest_email is None:
        raise ValidationError("Email is required for guest checkout")
    if not listing.expected_price:
        raise ValidationError("Listing price is not available")

    rate = await rates.usd_to_inr()
    try:
        usd = convert(parse_amount(listing.expected_price), rate)
    except ValueError:
        raise ValidationError("Listing price is not valid")
    if usd <= 0:
        raise ValidationError("Listing price is not valid")
    amount = format_amount(usd)

    order = await store.create_pending(
        listing_id=listing.id,
        user_id=user_id,
        user_email=identity.email if user_id is not None else None,
        guest_email=None if user_id is not None else guest_email,
        guest_name=None if user_id is not None else (guest_name or "Guest"),
        channel_access_email=channel_access_email,
        original_price=listing.expected_price,
        original_currency=listing.currency or "₹",
        exchange_rate=rate,
        amount=amount,
        currency=currency,
    )

    req = InvoiceRequest(
        amount=amount,
        currency=currency,
        order_id=order.id,
        url_return=f"{app_url}/payment/{order.id}",
        url_success=f"{app_url}/payment/{order.id}?status=success",
        url_callback=f"{app_url}/api/webhooks/cryptomus",
        lifetime=lifetime_minutes,
    )
    try:
        async with timeit("gateway.create_invoice"):
            invoice = await gateway.create_invoice(req)
    except GatewayError:
        # the pending row stays without correlation; the sweep expires it
        logger.warning("invoice creation failed for order %s", order.id)
        raise

    await store.attach_invoice(
        order.id,
        invoice_id=invoice.uuid,
        gateway_order_id=invoice.order_id,
        payment_url=invoice.url,
        network=invoice.network,
        address=invoice.address,
        payment_amount=invoice.payment_amount,
        payment_status=invoice.payment_status,
        expires_at=float(invoice.expired_at) if invoice.expired_at else None,
    )
    order = await store.get(order.id) or order

    await notify_quietly(notifier, ORDER_CONFIRMATION, order.contact_email, {
        "order_id": order.id,
        "channel_title": listing.title,
        "amount": order.amount,
        "currency": order.currency,
        "customer_name": order.guest_name or identity_name(identity),
        "payment_url": order.payment_url,
    })
    return order


def identity_name(identity: Optional[Identity]) -> str:
    if identity is not None and identity.name:
        return identity.name
    return "Customer"
