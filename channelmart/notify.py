"""Outbound notifications (email and friends) are somebody else's job.

This module only hands ``(template, recipient, params)`` to a sink. Sends
are fire-and-forget: a failing sink is logged and never fails the caller.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

# template names
ORDER_CONFIRMATION = "order_confirmation"
ORDER_PAYMENT_CONFIRMED = "order_payment_confirmed"
ORDER_PAID_ADMIN = "order_paid_admin"
ORDER_SALE_CONFLICT_ADMIN = "order_sale_conflict_admin"
ORDER_LATE_PAYMENT_ADMIN = "order_late_payment_admin"
ORDER_DELIVERED = "order_delivered"


class Notifier(ABC):
    @abstractmethod
    async def send(self, template: str, to: str,
                   params: Dict[str, Any]) -> None: ...


class LogNotifier(Notifier):
    async def send(self, template: str, to: str,
                   params: Dict[str, Any]) -> None:
        logger.info("notification %s -> %s", template, to)


class HttpNotifier(Notifier):
    """POSTs notifications as JSON to a mailer service."""

    def __init__(self, http: httpx.AsyncClient, url: str,
                 timeout: float = 5.0) -> None:
        self.http = http
        self.url = url
        self.timeout = timeout

    async def send(self, template: str, to: str,
                   params: Dict[str, Any]) -> None:
        r = await self.http.post(
            self.url,
            json={"template": template, "to": to, "params": params},
            timeout=self.timeout,
        )
        r.raise_for_status()


def new_notifier(http: httpx.AsyncClient, url: Optional[str]) -> Notifier:
    if url:
        return HttpNotifier(http, url)
    return LogNotifier()


async def notify_quietly(notifier: Notifier, template: str,
                         to: Optional[str], params: Dict[str, Any]) -> None:
    if not to:
        logger.warning("notification %s skipped: no recipient", template)
        return
    try:
        await notifier.send(template, to, params)
    except Exception:
        logger.exception("notification %s to %s failed", template, to)
