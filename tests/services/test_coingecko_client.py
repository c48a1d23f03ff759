from unittest.mock import AsyncMock, MagicMock

import pytest

from services.coingecko_client import ReferencePriceOracle


def make_client(payload):
    client = MagicMock()
    client.get_price = AsyncMock(return_value=payload)
    return client


@pytest.mark.asyncio
async def test_refresh_prefers_live_prices():
    client = make_client({'ethereum': {'usd': 3150.5}, 'matic-network': {'usd': 0.42}})
    oracle = ReferencePriceOracle(client, clock=lambda: 1000.0)

    assert await oracle.refresh() is True

    assert oracle.usd_price('weth') == 3150.5
    assert oracle.live_price('WMATIC') == 0.42
    # No live LINK quote: static fallback for valuation, none for live lookups.
    assert oracle.usd_price('LINK') == 15.0
    assert oracle.live_price('LINK') is None
    assert oracle.usd_price('USDT') == 1.0
    assert oracle.usd_price('UNKNOWN') is None


@pytest.mark.asyncio
async def test_refresh_respects_ttl():
    now = [1000.0]
    client = make_client({'ethereum': {'usd': 3000.0}})
    oracle = ReferencePriceOracle(client, ttl=300, clock=lambda: now[0])

    await oracle.refresh()
    now[0] += 100
    assert await oracle.refresh() is False
    now[0] += 250
    await oracle.refresh()
    await oracle.refresh(force=True)

    assert client.get_price.await_count == 3


@pytest.mark.asyncio
async def test_failed_refresh_keeps_static_prices():
    oracle = ReferencePriceOracle(make_client(None))

    assert await oracle.refresh() is False
    assert oracle.has_live_prices is False
    assert oracle.usd_price('WETH') == 2000.0


@pytest.mark.asyncio
async def test_oracle_without_client_is_static():
    oracle = ReferencePriceOracle(None, fallback_prices={'WETH': 1800.0})

    assert await oracle.refresh() is False
    assert oracle.usd_price('WETH') == 1800.0
