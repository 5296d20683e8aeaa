"""Listing price -> settlement amount conversion.

Listings are priced in INR display strings; invoices are opened in USD.
"""
from __future__ import annotations
import logging
import re
import time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

FALLBACK_RATE = 90.0
RATE_TTL_SECONDS = 3600


def parse_amount(text: str) -> Decimal:
    # "₹4,500" -> Decimal("4500")
    cleaned = re.sub(r"[^0-9.]", "", text or "")
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {text!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {text!r}")
    return value


def convert(amount: Decimal, rate: float) -> Decimal:
    if rate <= 0:
        raise ValueError("exchange rate must be positive")
    return (amount / Decimal(str(rate))).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )


class ExchangeRateSource:
    """USD -> INR rate: override, then cache, then provider, then fallback."""

    def __init__(self, http: httpx.AsyncClient, url: str, *,
                 override: Optional[float] = None,
                 ttl_seconds: float = RATE_TTL_SECONDS,
                 fallback: float = FALLBACK_RATE,
                 timeout: float = 5.0) -> None:
        self.http = http
        self.url = url
        self.override = override
        self.ttl = ttl_seconds
        self.fallback = fallback
        self.timeout = timeout
        self._cached: Optional[float] = None
        self._cached_at = 0.0

    async def usd_to_inr(self) -> float:
        if self.override and self.override > 0:
            return self.override

        if (self._cached is not None
                and time.monotonic() - self._cached_at < self.ttl):
            return self._cached

        try:
            r = await self.http.get(self.url, timeout=self.timeout)
            r.raise_for_status()
            rate = r.json().get("rates", {}).get("INR")
            if isinstance(rate, bool) or not isinstance(rate, (int, float)):
                raise ValueError("Invalid exchange rate from API")
            if rate <= 0:
                raise ValueError("Invalid exchange rate from API")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("exchange rate fetch failed (%s); using fallback "
                           "rate %s", e, self.fallback)
            return self.fallback

        self._cached = float(rate)
        self._cached_at = time.monotonic()
        return self._cached
