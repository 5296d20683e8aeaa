from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    Index,
    String,
    Text,
    text,
)


Base = declarative_base()


# order statuses
PENDING = "pending"
PAID = "paid"
DELIVERED = "delivered"
COMPLETED = "completed"
EXPIRED = "expired"
CANCELLED = "cancelled"

STATUSES = (PENDING, PAID, DELIVERED, COMPLETED, EXPIRED, CANCELLED)

# a listing counts as sold while one of its orders is in these states
SOLD_STATUSES = (PAID, DELIVERED, COMPLETED)

# catalog status that makes a listing purchasable
LISTING_APPROVED = "approved"

_SOLD_SQL = "status IN ('paid', 'delivered', 'completed')"


# ----------------------------
# ORM models
# ----------------------------
class Listing(Base):
    """Read-only view of the catalog; rows are owned by the listings admin."""
    __tablename__ = "listings"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    # display price as entered by the seller, e.g. "4,500"
    expected_price = Column(String, nullable=True)
    currency = Column(String, nullable=False, default="₹")
    # pending | approved | rejected | sold
    status = Column(String, nullable=False, default="pending")


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    listing_id = Column(String, nullable=False, index=True)

    # buyer: exactly one of user_id / guest_email
    user_id = Column(String, nullable=True, index=True)
    # notification contact snapshot for authenticated buyers
    user_email = Column(String, nullable=True)
    guest_email = Column(String, nullable=True)
    guest_name = Column(String, nullable=True)
    channel_access_email = Column(String, nullable=False)

    # frozen at creation
    original_price = Column(String, nullable=False)
    original_currency = Column(String, nullable=False)
    exchange_rate = Column(Float, nullable=False)
    # settlement amount, two-decimal string
    amount = Column(String, nullable=False)
    currency = Column(String, nullable=False, default="USD")

    # gateway correlation
    gateway_invoice_id = Column(String, nullable=True, unique=True)
    gateway_order_id = Column(String, nullable=True, unique=True)
    payment_url = Column(String, nullable=True)
    payment_network = Column(String, nullable=True)
    payment_address = Column(String, nullable=True)
    payment_amount = Column(String, nullable=True)
    # informational mirror of the gateway's status string
    payment_status = Column(String, nullable=True)
    expires_at = Column(Float, nullable=True)

    # PENDING | PAID | DELIVERED | COMPLETED | EXPIRED | CANCELLED
    status = Column(String, nullable=False, default=PENDING)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    delivered_at = Column(Float, nullable=True)
    delivered_by = Column(String, nullable=True)

    # sent to the buyer
    delivery_details = Column(Text, nullable=True)
    # internal only
    delivery_notes = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (guest_email IS NULL)",
            name="orders_one_buyer",
        ),
        CheckConstraint(
            "status IN ('pending', 'paid', 'delivered', 'completed', "
            "'expired', 'cancelled')",
            name="orders_status_known",
        ),
        # at most one sold order per listing
        Index(
            "orders_one_sale_per_listing",
            "listing_id",
            unique=True,
            sqlite_where=text(_SOLD_SQL),
            postgresql_where=text(_SOLD_SQL),
        ),
        Index("orders_status_expires_idx", "status", "expires_at"),
    )

    @property
    def contact_email(self):
        return self.user_email or self.guest_email

    @property
    def is_guest(self) -> bool:
        return self.user_id is None
