"""Order store: the durable record of a purchase and its state machine.

Every status change goes through :meth:`OrderStore.try_transition`, a single
conditional UPDATE scoped by order id and the expected prior status. A
transition that matches no row is not an error: some other trigger moved the
order first, and the caller re-reads and treats what it finds as the truth.
No row lock is ever held across a network call.
"""
from __future__ import annotations
import logging
import uuid
from typing import AsyncContextManager, Callable, Dict, List, Mapping, Optional

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..errors import InvalidTransition, ListingSold, ValidationError
from ..helpers import now_ts
from .db import (
    Listing, Order,
    PENDING, PAID, DELIVERED, COMPLETED, EXPIRED, CANCELLED, SOLD_STATUSES,
)

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

# from -> allowed targets; nothing ever re-enters PENDING
TRANSITIONS: Dict[str, tuple] = {
    PENDING: (PAID, EXPIRED, CANCELLED),
    PAID: (DELIVERED, COMPLETED, CANCELLED),
    DELIVERED: (COMPLETED,),
}

TERMINAL = frozenset({COMPLETED, EXPIRED, CANCELLED})

# columns a transition may write alongside the status
MUTABLE_COLUMNS = frozenset({
    "paid_at",
    "delivered_at",
    "delivered_by",
    "delivery_details",
    "delivery_notes",
    "payment_status",
})


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in TRANSITIONS.get(from_status, ())


def new_order_id() -> str:
    return uuid.uuid4().hex


class OrderStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        async with self.gated():
            async with self.db.begin():
                return await self.db.get(Listing, listing_id)

    async def listing_sold(self, listing_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                return await self._listing_sold(listing_id)

    async def _listing_sold(self, listing_id: str) -> bool:
        found = await self.db.execute(
            select(Order.id).where(
                Order.listing_id == listing_id,
                Order.status.in_(SOLD_STATUSES),
            ).limit(1)
        )
        return found.first() is not None

    async def get(self, order_id: str) -> Optional[Order]:
        """Return the session's live instance; a later read refreshes it."""
        # populate_existing: a conditional UPDATE bypasses the identity map
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(stmt)
                return result.scalars().first()

    async def get_by_gateway_id(self, gateway_id: str) -> Optional[Order]:
        """Find an order by the gateway's order id, else by its invoice id."""
        stmt = (
            select(Order)
            .where(or_(
                Order.gateway_order_id == gateway_id,
                Order.gateway_invoice_id == gateway_id,
            ))
            .order_by(
                # prefer an order-id match over an invoice-id match
                (Order.gateway_order_id == gateway_id).desc()
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(stmt)
                return result.scalars().first()

    async def list_for_user(self, user_id: str) -> List[Order]:
        stmt = (
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc())
        )
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(stmt)
                return list(result.scalars().all())

    async def list_all(self, limit: int = 200,
                       status: Optional[str] = None) -> List[Order]:
        stmt = select(Order).order_by(Order.created_at.desc())
        if status:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.limit(max(1, min(limit, 500)))
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(stmt)
                return list(result.scalars().all())

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    async def create_pending(self, *, listing_id: str,
                             user_id: Optional[str],
                             user_email: Optional[str],
                             guest_email: Optional[str],
                             guest_name: Optional[str],
                             channel_access_email: str,
                             original_price: str,
                             original_currency: str,
                             exchange_rate: float,
                             amount: str,
                             currency: str) -> Order:
        if (user_id is None) == (guest_email is None):
            raise ValidationError(
                "an order needs exactly one of user_id or guest_email"
            )
        if not channel_access_email:
            raise ValidationError("channel access email is required")

        order = Order(
            id=new_order_id(),
            listing_id=listing_id,
            user_id=user_id,
            user_email=user_email if user_id else None,
            guest_email=guest_email,
            guest_name=guest_name if user_id is None else None,
            channel_access_email=channel_access_email,
            original_price=original_price,
            original_currency=original_currency,
            exchange_rate=exchange_rate,
            amount=amount,
            currency=currency,
            status=PENDING,
            created_at=now_ts(),
        )
        # read-then-insert; the partial unique index only covers sold rows
        async with self.gated():
            async with self.db.begin():
                if await self._listing_sold(listing_id):
                    raise ListingSold("This channel has already been sold")
                self.db.add(order)
        logger.info("order %s created for listing %s", order.id, listing_id)
        return order

    async def attach_invoice(self, order_id: str, *,
                             invoice_id: str,
                             gateway_order_id: str,
                             payment_url: Optional[str],
                             network: Optional[str],
                             address: Optional[str],
                             payment_amount: Optional[str],
                             payment_status: Optional[str],
                             expires_at: Optional[float]) -> bool:
        """Persist gateway correlation onto a still-pending order."""
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == PENDING)
            .values(
                gateway_invoice_id=invoice_id,
                gateway_order_id=gateway_order_id,
                payment_url=payment_url,
                payment_network=network,
                payment_address=address,
                payment_amount=payment_amount,
                payment_status=payment_status,
                expires_at=expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def try_transition(self, order_id: str, from_status: str,
                             to_status: str,
                             side_effects: Optional[Mapping] = None) -> bool:
        """Move ``order_id`` from ``from_status`` to ``to_status``.

        ``side_effects`` are column writes applied in the same UPDATE. Returns
        True when this call moved the row, False when the row was not in
        ``from_status`` any more (or, for ``pending -> paid``, when another
        order for the same listing is already sold).
        """
        if not can_transition(from_status, to_status):
            raise InvalidTransition(from_status, to_status)

        values = dict(side_effects or {})
        unknown = set(values) - MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"not writable on transition: {sorted(unknown)}")
        if to_status == DELIVERED and not values.get("delivery_details"):
            raise ValidationError("delivery details are required")
        values["status"] = to_status

        stmt = update(Order).where(
            Order.id == order_id,
            Order.status == from_status,
        )
        if to_status == PAID:
            other = aliased(Order)
            stmt = stmt.where(~exists().where(and_(
                other.listing_id == Order.listing_id,
                other.id != Order.id,
                other.status.in_(SOLD_STATUSES),
            )))
        if to_status == COMPLETED:
            # delivery details exist iff delivered/completed
            stmt = stmt.where(Order.delivery_details.is_not(None))
        stmt = stmt.values(**values).execution_options(
            synchronize_session=False
        )

        try:
            async with self.gated():
                async with self.db.begin():
                    result = await self.db.execute(stmt)
        except IntegrityError:
            # the one-sale-per-listing index caught a concurrent sale
            logger.warning(
                "order %s: %s -> %s rejected by listing sale constraint",
                order_id, from_status, to_status,
            )
            return False

        won = result.rowcount == 1
        if won:
            logger.info("order %s: %s -> %s", order_id, from_status,
                        to_status)
        else:
            logger.info("order %s: %s -> %s did not apply (stale)",
                        order_id, from_status, to_status)
        return won

    async def refresh_payment_status(self, order_id: str,
                                     payment_status: str) -> None:
        # informational mirror only, never drives the status
        stmt = (
            update(Order)
            .where(Order.id == order_id)
            .values(payment_status=payment_status)
            .execution_options(synchronize_session=False)
        )
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(stmt)

    async def expire_stale(self, *, now: float, grace_seconds: float,
                           fallback_seconds: float,
                           guests_only: bool = False) -> int:
        """Expire pending orders past their invoice expiry.

        Orders without an expiry (the invoice was never attached) expire once
        they are older than ``fallback_seconds``.
        """
        stmt = (
            update(Order)
            .where(
                Order.status == PENDING,
                or_(
                    and_(
                        Order.expires_at.is_not(None),
                        Order.expires_at < now - grace_seconds,
                    ),
                    and_(
                        Order.expires_at.is_(None),
                        Order.created_at < now - fallback_seconds,
                    ),
                ),
            )
            .values(status=EXPIRED, payment_status="expired")
            .execution_options(synchronize_session=False)
        )
        if guests_only:
            stmt = stmt.where(Order.user_id.is_(None))
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(stmt)
        count = result.rowcount or 0
        if count:
            logger.info("expired %d stale pending order(s)", count)
        return count
