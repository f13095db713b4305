import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.price_feed import PriceFeed, PriceUnavailableError, ZERO_QUOTE
from utils.retry import RetryConfig

ZBTC_MINT = "zBTCug3er3tLyffELcvDNrKkCymbPWysGcWihESYfLg"
SOL_MINT = "So11111111111111111111111111111111111111112"
TOKENS = {"zBTC": ZBTC_MINT, "SOL": SOL_MINT}


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _feed(handler, *, birdeye_key="", clock=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PriceFeed(
        tokens=TOKENS,
        birdeye_api_key=birdeye_key,
        ttl_seconds=30.0,
        client=client,
        clock=clock or _Clock(),
        retry_config=RetryConfig(max_attempts=1),
    )


def _jupiter(prices):
    def handler(request):
        mint = request.url.params["ids"]
        if mint not in prices:
            return httpx.Response(200, json={})
        return httpx.Response(200, json={mint: {"usdPrice": prices[mint], "priceChange24h": 1.5}})

    return handler


@pytest.mark.asyncio
async def test_jupiter_quote_is_cached_within_ttl():
    calls = []
    clock = _Clock()
    base = _jupiter({SOL_MINT: 150.0})

    def handler(request):
        calls.append(request.url)
        return base(request)

    feed = _feed(handler, clock=clock)

    first = await feed.get_price("SOL")
    second = await feed.get_price("SOL")
    assert first.price == 150.0
    assert first.source == "jupiter"
    assert first.change_24h == 1.5
    assert second is first
    assert len(calls) == 1

    clock.now += 31
    await feed.get_price("SOL")
    assert len(calls) == 2
    await feed.close()


@pytest.mark.asyncio
async def test_birdeye_preferred_when_keyed_and_jupiter_is_fallback():
    def handler(request):
        if "birdeye" in request.url.host:
            assert request.headers["X-API-KEY"] == "key"
            if request.url.params["address"] == ZBTC_MINT:
                return httpx.Response(200, json={"success": True, "data": {"value": 101000.0}})
            return httpx.Response(503)
        return _jupiter({SOL_MINT: 151.0})(request)

    feed = _feed(handler, birdeye_key="key")

    zbtc = await feed.get_price("zBTC")
    sol = await feed.get_price("SOL")

    assert (zbtc.price, zbtc.source) == (101000.0, "birdeye")
    assert (sol.price, sol.source) == (151.0, "jupiter")
    await feed.close()


@pytest.mark.asyncio
async def test_unconfigured_symbol_raises():
    feed = _feed(_jupiter({}))
    with pytest.raises(PriceUnavailableError):
        await feed.get_price("BONK")
    await feed.close()


@pytest.mark.asyncio
async def test_get_prices_degrades_to_last_known_then_zero():
    clock = _Clock()
    state = {"up": True}

    def handler(request):
        if not state["up"]:
            return httpx.Response(500)
        return _jupiter({SOL_MINT: 150.0})(request)

    feed = _feed(handler, clock=clock)

    prices = await feed.get_prices(["SOL", "zBTC"])
    assert prices["SOL"].price == 150.0
    assert prices["zBTC"] == ZERO_QUOTE

    state["up"] = False
    clock.now += 60
    prices = await feed.get_prices(["SOL", "SOL", "zBTC"])
    assert list(prices) == ["SOL", "zBTC"]
    assert prices["SOL"].price == 150.0
    assert prices["zBTC"].price == 0.0
    await feed.close()
