"""Cached USD price lookup: Birdeye when an API key is configured, Jupiter otherwise.

``get_prices`` never raises. A symbol whose lookup fails falls back to the
last price seen (however old), then to zero, so callers such as
reconciliation can keep going when a feed is down.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import httpx

from config import settings
from utils.logger import get_logger
from utils.retry import RetryConfig, retry_async

logger = get_logger("price_feed")


class PriceUnavailableError(Exception):
    """No source returned a price for the token."""


@dataclass(frozen=True)
class PriceQuote:
    price: float
    change_24h: float = 0.0
    source: str = "none"


ZERO_QUOTE = PriceQuote(price=0.0, change_24h=0.0, source="none")


class PriceFeed:
    def __init__(
        self,
        *,
        tokens: Optional[dict[str, str]] = None,
        birdeye_api_key: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.tokens = dict(tokens if tokens is not None else settings.TRACKED_TOKENS)
        self._birdeye_key = birdeye_api_key if birdeye_api_key is not None else settings.BIRDEYE_API_KEY
        self._ttl = settings.PRICE_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._client = client
        self._clock = clock
        self._retry = retry_config or RetryConfig(max_attempts=2, base_delay=1.0)
        self._cache: dict[str, tuple[PriceQuote, float]] = {}
        self._last_known: dict[str, PriceQuote] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=10.0, headers={"Accept": "application/json"})
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _fetch_birdeye(self, mint: str) -> Optional[PriceQuote]:
        async def _call() -> httpx.Response:
            response = await self._get_client().get(
                f"{settings.BIRDEYE_API_URL}/defi/price",
                params={"address": mint, "check_liquidity": "false"},
                headers={"X-API-KEY": self._birdeye_key},
            )
            response.raise_for_status()
            return response

        response = await retry_async(_call, config=self._retry, operation="birdeye price")
        payload = response.json()
        data = payload.get("data") if isinstance(payload, dict) and payload.get("success") else None
        if not data or data.get("value") is None:
            return None
        return PriceQuote(
            price=float(data["value"]),
            change_24h=float(data.get("priceChange24h") or 0.0),
            source="birdeye",
        )

    async def _fetch_jupiter(self, mint: str) -> Optional[PriceQuote]:
        async def _call() -> httpx.Response:
            response = await self._get_client().get(settings.JUPITER_PRICE_URL, params={"ids": mint})
            response.raise_for_status()
            return response

        response = await retry_async(_call, config=self._retry, operation="jupiter price")
        payload = response.json()
        # lite-api v3 keys results by mint with no wrapper object
        data = payload.get(mint) if isinstance(payload, dict) else None
        if not data or data.get("usdPrice") is None:
            return None
        return PriceQuote(
            price=float(data["usdPrice"]),
            change_24h=float(data.get("priceChange24h") or 0.0),
            source="jupiter",
        )

    async def get_price(self, symbol: str, mint: Optional[str] = None) -> PriceQuote:
        """Fresh-or-cached quote for one token. Raises PriceUnavailableError."""
        cached = self._cache.get(symbol)
        if cached and self._clock() - cached[1] < self._ttl:
            return cached[0]

        mint = mint or self.tokens.get(symbol)
        if not mint:
            raise PriceUnavailableError(f"No mint address configured for {symbol}")

        quote: Optional[PriceQuote] = None
        if self._birdeye_key:
            try:
                quote = await self._fetch_birdeye(mint)
            except (httpx.HTTPError, ValueError, TypeError) as exc:
                logger.warning("Birdeye price lookup failed", symbol=symbol, error=str(exc))
        if quote is None:
            try:
                quote = await self._fetch_jupiter(mint)
            except (httpx.HTTPError, ValueError, TypeError) as exc:
                logger.warning("Jupiter price lookup failed", symbol=symbol, error=str(exc))

        if quote is None:
            raise PriceUnavailableError(f"Failed to fetch price for {symbol} from all sources")

        self._cache[symbol] = (quote, self._clock())
        self._last_known[symbol] = quote
        return quote

    async def get_prices(self, symbols: Iterable[str]) -> dict[str, PriceQuote]:
        """Batched lookup keyed by symbol; degraded values instead of errors."""
        unique = list(dict.fromkeys(symbols))
        results = await asyncio.gather(
            *(self.get_price(symbol) for symbol in unique), return_exceptions=True
        )
        prices: dict[str, PriceQuote] = {}
        for symbol, result in zip(unique, results):
            if isinstance(result, PriceQuote):
                prices[symbol] = result
                continue
            if isinstance(result, asyncio.CancelledError):
                raise result
            fallback = self._last_known.get(symbol, ZERO_QUOTE)
            logger.warning(
                "Price unavailable, using fallback",
                symbol=symbol,
                fallback_price=fallback.price,
                error=str(result),
            )
            prices[symbol] = fallback
        return prices


_price_feed: Optional[PriceFeed] = None


def get_price_feed() -> PriceFeed:
    global _price_feed
    if _price_feed is None:
        _price_feed = PriceFeed()
    return _price_feed
