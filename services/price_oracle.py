#!/usr/bin/env python3
import asyncio
import logging
import math
import time
from typing import Callable, Dict, Optional, Tuple

import aiohttp

from constants import COINGECKO_API_BASE_URL

logger = logging.getLogger(__name__)


class PriceCache:
    """Holds one value for `ttl` seconds. Owned by a single adapter."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entry: Optional[Tuple[float, float]] = None

    def get(self) -> Optional[float]:
        if self._entry is None:
            return None
        value, stored_at = self._entry
        if self._clock() - stored_at > self.ttl:
            self._entry = None
            return None
        return value

    def set(self, value: float) -> None:
        self._entry = (value, self._clock())

    def invalidate(self) -> None:
        self._entry = None


class PriceOracleAdapter:
    """
    Reference asset USD price from the CoinGecko simple price endpoint.

    Returns None when the feed is unavailable. Callers must skip whatever needs
    the price rather than substituting zero.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        asset_id: str,
        cache: PriceCache,
        api_key: Optional[str] = None,
        base_url: str = COINGECKO_API_BASE_URL,
        timeout: float = 10.0,
    ):
        self.session = session
        self.asset_id = asset_id
        self.cache = cache
        self.base_url = base_url
        self.timeout = timeout
        self.headers: Dict[str, str] = {'x-cg-demo-api-key': api_key} if api_key else {}

    async def get_reference_usd_price(self) -> Optional[float]:
        cached = self.cache.get()
        if cached is not None:
            return cached

        url = f"{self.base_url}/simple/price"
        params = {'ids': self.asset_id, 'vs_currencies': 'usd'}
        try:
            async with self.session.get(
                url,
                params=params,
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                response.raise_for_status()
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("Reference price feed unavailable: %s", exc)
            return None

        price = self._parse_price(data)
        if price is None:
            logger.warning("Malformed reference price payload for %s: %r", self.asset_id, data)
            return None
        self.cache.set(price)
        return price

    def _parse_price(self, data: object) -> Optional[float]:
        if not isinstance(data, dict):
            return None
        entry = data.get(self.asset_id)
        if not isinstance(entry, dict):
            return None
        raw = entry.get('usd')
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            return None
        price = float(raw)
        # a zero quote is a feed outage, not a price
        if not math.isfinite(price) or price <= 0:
            return None
        return price
