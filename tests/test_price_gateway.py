"""
Tests for HttpPriceGateway against httpx.MockTransport.
"""

from __future__ import annotations

import httpx
import pytest

from backend_tradesync.core.exceptions import ValuationUnavailableError
from backend_tradesync.core.retry import RetryPolicy
from backend_tradesync.ledger.models import WRAPPED_SOL_MINT
from backend_tradesync.pricing.gateway import HttpPriceGateway, closest_price, placeholder_asset

MINT = "TMint1111111111111111111111111111111111111"
NOW = 1_700_086_400


async def _no_sleep(delay: float) -> None:
    return None


def _gateway(handler) -> HttpPriceGateway:
    return HttpPriceGateway(
        token_api_url="http://tokens.test/tokens/v1",
        price_api_url="http://prices.test/api/v3",
        rate_limit=1000,
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0, jitter=0.0),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        clock=lambda: NOW,
        sleep=_no_sleep,
    )


def test_placeholder_asset_uses_mint_prefix():
    info = placeholder_asset(MINT)
    assert info.symbol == "TMint111..."
    assert info.logo_uri is None
    assert info.is_placeholder


def test_closest_price_picks_nearest_point():
    points = [[1000_000, 1.0], [2000_000, 2.0], [3000_000, 3.0]]
    assert closest_price(points, 2100) == 2.0
    assert closest_price([], 10) is None


@pytest.mark.asyncio
async def test_asset_info_cached_after_first_lookup():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        assert request.url.path == f"/tokens/v1/token/{MINT}"
        return httpx.Response(200, json={"address": MINT, "symbol": "TTT", "logoURI": "https://l/t.png"})

    gw = _gateway(handler)
    first = await gw.get_asset_info(MINT)
    second = await gw.get_asset_info(MINT)
    assert first.symbol == "TTT"
    assert first.logo_uri == "https://l/t.png"
    assert second is first
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_native_mint_needs_no_lookup():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    gw = _gateway(handler)
    assert (await gw.get_asset_info(WRAPPED_SOL_MINT)).symbol == "SOL"


@pytest.mark.asyncio
async def test_unknown_token_raises_and_is_negatively_cached():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(404, json={"error": "not found"})

    gw = _gateway(handler)
    for _ in range(2):
        with pytest.raises(ValuationUnavailableError):
            await gw.get_asset_info(MINT)
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_sol_price_at_time_uses_closest_point_and_caches_per_day():
    requests: list[httpx.Request] = []
    ts = NOW - 3600

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={"prices": [[(ts - 7200) * 1000, 90.0], [(ts - 60) * 1000, 101.5], [(ts + 7200) * 1000, 110.0]]},
        )

    gw = _gateway(handler)
    assert await gw.get_unit_price_at_time(WRAPPED_SOL_MINT, ts) == 101.5
    assert await gw.get_unit_price_at_time(WRAPPED_SOL_MINT, ts + 10) == 101.5
    assert len(requests) == 1
    assert requests[0].url.path == "/api/v3/coins/solana/market_chart"
    assert requests[0].url.params["vs_currency"] == "usd"


@pytest.mark.asyncio
async def test_price_server_errors_become_valuation_unavailable():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(503)

    gw = _gateway(handler)
    with pytest.raises(ValuationUnavailableError):
        await gw.get_unit_price_at_time(MINT, NOW - 100)
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_preload_counts_resolved_mints():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith(MINT):
            return httpx.Response(200, json={"symbol": "TTT"})
        return httpx.Response(404)

    gw = _gateway(handler)
    assert await gw.preload_asset_info([MINT, "Unknown111", MINT]) == 1


@pytest.mark.asyncio
async def test_redirect_loop_becomes_valuation_unavailable():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        raise httpx.TooManyRedirects("redirect loop", request=request)

    gw = _gateway(handler)
    with pytest.raises(ValuationUnavailableError):
        await gw.get_unit_price_at_time(MINT, NOW - 100)
    assert calls["n"] == 2
