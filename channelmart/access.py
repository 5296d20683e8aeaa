"""Who may read an order."""
from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import Optional

from .helpers import ct_equal
from .model import Order


@dataclass(frozen=True)
class Identity:
    """The current requester, as told by the session."""
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    is_admin: bool = False

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None or self.is_admin


class Access(enum.Enum):
    GRANTED = "granted"
    NOT_FOUND = "not_found"
    # guest order: ask the caller for the email used at checkout
    EMAIL_REQUIRED = "email_required"
    DENIED = "denied"


def check_access(order: Optional[Order], identity: Optional[Identity],
                 email: Optional[str] = None) -> Access:
    if order is None:
        return Access.NOT_FOUND
    if identity is not None and identity.is_admin:
        return Access.GRANTED
    if (identity is not None and identity.user_id is not None
            and order.user_id == identity.user_id):
        return Access.GRANTED
    # the email challenge is for signed-out requesters only
    if identity is not None and identity.user_id is not None:
        return Access.DENIED
    if order.user_id is None and order.guest_email:
        if email and ct_equal(email, order.guest_email):
            return Access.GRANTED
        return Access.EMAIL_REQUIRED
    return Access.DENIED
