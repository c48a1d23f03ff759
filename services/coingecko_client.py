#!/usr/bin/env python3
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

import aiohttp
from constants import (
    COINGECKO_API_BASE_URL,
    COINGECKO_IDS,
    REFERENCE_PRICE_TTL,
    STABLE_SYMBOLS,
    STATIC_REFERENCE_PRICES,
)

logger = logging.getLogger(__name__)


async def api_get(url: str, session: aiohttp.ClientSession, params: Optional[Dict] = None, headers: Optional[Dict] = None, retries: int = 3, timeout: int = 10) -> Optional[Dict]:
    """Makes an async GET request with retries and timeout."""
    for attempt in range(retries):
        try:
            async with session.get(url, params=params, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                response.raise_for_status()
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if attempt < retries - 1:
                await asyncio.sleep(2)
            else:
                logger.error("API request failed after %d attempts: %s", retries, e)
                return None


class CoinGeckoClient:
    def __init__(self, session: aiohttp.ClientSession, api_key: Optional[str] = None):
        self.session = session
        self.api_key = api_key
        self.headers = {'x-cg-demo-api-key': self.api_key} if self.api_key else {}
        self._last_request_time = 0.0
        self._rate_limit_delay = 6

    async def _wait_for_rate_limit(self):
        elapsed = time.time() - self._last_request_time
        if elapsed < self._rate_limit_delay:
            await asyncio.sleep(self._rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    async def get_price(self, coin_ids: List[str], vs_currencies: List[str]) -> Optional[Dict]:
        await self._wait_for_rate_limit()
        url = f"{COINGECKO_API_BASE_URL}/simple/price"
        params = {'ids': ",".join(coin_ids), 'vs_currencies': ",".join(vs_currencies)}
        return await api_get(url, self.session, params=params, headers=self.headers)


class ReferencePriceOracle:
    """USD reference prices for bridge and tracked tokens.

    Prices are refreshed at most once per TTL with a single batched CoinGecko
    call; lookups are synchronous and fall back to static prices so valuation
    never blocks on the price API.
    """

    def __init__(
        self,
        client: Optional[CoinGeckoClient],
        *,
        coin_ids: Optional[Dict[str, str]] = None,
        fallback_prices: Optional[Dict[str, float]] = None,
        ttl: float = REFERENCE_PRICE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._coin_ids = dict(coin_ids if coin_ids is not None else COINGECKO_IDS)
        self._fallback_prices = dict(fallback_prices if fallback_prices is not None else STATIC_REFERENCE_PRICES)
        self._ttl = ttl
        self._clock = clock
        self._live_prices: Dict[str, float] = {}
        self._refreshed_at: Optional[float] = None

    @property
    def has_live_prices(self) -> bool:
        return bool(self._live_prices)

    async def refresh(self, force: bool = False) -> bool:
        """Returns True when live prices were updated."""
        now = self._clock()
        if not force and self._refreshed_at is not None and now - self._refreshed_at < self._ttl:
            return False
        if self._client is None or not self._coin_ids:
            return False

        self._refreshed_at = now
        data = await self._client.get_price(sorted(set(self._coin_ids.values())), ['usd'])
        if not data:
            logger.warning("Reference price refresh failed; using %d cached/static prices", len(self._fallback_prices))
            return False

        updated = 0
        for symbol, coin_id in self._coin_ids.items():
            price = (data.get(coin_id) or {}).get('usd')
            if isinstance(price, (int, float)) and price > 0:
                self._live_prices[symbol] = float(price)
                updated += 1
        logger.info("Refreshed %d reference prices from CoinGecko", updated)
        return updated > 0

    def usd_price(self, symbol: str) -> Optional[float]:
        symbol = symbol.upper()
        if symbol in STABLE_SYMBOLS:
            return 1.0
        if symbol in self._live_prices:
            return self._live_prices[symbol]
        return self._fallback_prices.get(symbol)

    def live_price(self, symbol: str) -> Optional[float]:
        return self._live_prices.get(symbol.upper())
