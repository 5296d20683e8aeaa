from .db import (
    Base, Listing, Order,
    PENDING, PAID, DELIVERED, COMPLETED, EXPIRED, CANCELLED,
    STATUSES, SOLD_STATUSES, LISTING_APPROVED,
)
from .orders import OrderStore, TRANSITIONS, TERMINAL, can_transition

__all__ = [
    "Base", "Listing", "Order", "OrderStore",
    "PENDING", "PAID", "DELIVERED", "COMPLETED", "EXPIRED", "CANCELLED",
    "STATUSES", "SOLD_STATUSES", "LISTING_APPROVED",
    "TRANSITIONS", "TERMINAL", "can_transition",
]
