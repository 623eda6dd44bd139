"""
Price/Metadata gateway.

Responsibilities:
- Token symbol and logo lookups (Jupiter token API), cached per mint.
- Historical USD unit price at a timestamp (CoinGecko market_chart), cached
  per (mint, UTC date).
- Share one sliding-window rate limiter and a bounded worker pool across all
  lookups; failures surface as ValuationUnavailableError so callers can
  degrade to placeholders.
"""

from __future__ import annotations

import asyncio
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from backend_tradesync.config.settings import SyncSettings
from backend_tradesync.core.exceptions import TransientUpstreamError, ValuationUnavailableError
from backend_tradesync.core.rate_limit import SlidingWindowRateLimiter
from backend_tradesync.core.retry import RETRYABLE_STATUS_CODES, RetryPolicy
from backend_tradesync.ledger.models import WRAPPED_SOL_MINT
from backend_tradesync.tradesync_logging import get_logger, short

logger = get_logger(__name__)

NATIVE_SYMBOL = "SOL"
NATIVE_COIN_ID = "solana"
FAILED_LOOKUP_TTL_SEC = 300.0


@dataclass(frozen=True)
class AssetInfo:
    mint: str
    symbol: str
    logo_uri: str | None = None
    name: str | None = None
    is_placeholder: bool = False


def placeholder_asset(mint: str) -> AssetInfo:
    """Synthesized metadata when the token API has nothing: first 8 chars of the mint."""
    return AssetInfo(mint=mint, symbol=mint[:8] + "...", logo_uri=None, is_placeholder=True)


NATIVE_ASSET = AssetInfo(mint=WRAPPED_SOL_MINT, symbol=NATIVE_SYMBOL, name="Solana")


class PriceGateway(ABC):
    """Narrow interface over third-party price and metadata providers."""

    @abstractmethod
    async def get_asset_info(self, mint: str) -> AssetInfo:
        """Symbol/logo for a mint. Raises ValuationUnavailableError when unknown or unreachable."""

    @abstractmethod
    async def get_unit_price_at_time(self, mint: str, timestamp: int) -> float:
        """USD price of one unit of mint at timestamp. Raises ValuationUnavailableError."""

    async def preload_asset_info(self, mints: list[str]) -> int:
        """Warm the metadata cache; returns how many mints resolved."""
        resolved = 0
        for mint in mints:
            try:
                await self.get_asset_info(mint)
                resolved += 1
            except ValuationUnavailableError:
                continue
        return resolved

    async def aclose(self) -> None:
        return None


def _utc_date(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def closest_price(points: list[list[float]], timestamp: int) -> float | None:
    """Pick the [ms, price] point closest to timestamp (seconds)."""
    target_ms = timestamp * 1000
    best: float | None = None
    best_dist: float | None = None
    for point in points:
        if not isinstance(point, (list, tuple)) or len(point) < 2 or point[1] is None:
            continue
        dist = abs(float(point[0]) - target_ms)
        if best_dist is None or dist < best_dist:
            best, best_dist = float(point[1]), dist
    return best


class HttpPriceGateway(PriceGateway):
    """
    httpx implementation backed by the Jupiter token API and CoinGecko.

    All outbound requests go through one SlidingWindowRateLimiter (delays,
    never drops) and a semaphore of price_concurrency workers.
    """

    def __init__(
        self,
        *,
        token_api_url: str,
        price_api_url: str,
        rate_limit: int = 10,
        rate_window_sec: float = 1.0,
        concurrency: int = 2,
        retry_policy: RetryPolicy | None = None,
        request_timeout_sec: float = 15.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._token_api_url = token_api_url.rstrip("/")
        self._price_api_url = price_api_url.rstrip("/")
        self._limiter = SlidingWindowRateLimiter(rate_limit, rate_window_sec, sleep=sleep)
        self._workers = asyncio.Semaphore(max(1, concurrency))
        self._retry = retry_policy or RetryPolicy(max_attempts=3)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(request_timeout_sec))
        self._clock = clock
        self._sleep = sleep
        self._info_cache: dict[str, AssetInfo] = {WRAPPED_SOL_MINT: NATIVE_ASSET}
        self._price_cache: dict[tuple[str, str], float] = {}
        self._failed: dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: SyncSettings, **kwargs: Any) -> "HttpPriceGateway":
        return cls(
            token_api_url=settings.token_api_url,
            price_api_url=settings.price_api_url,
            rate_limit=settings.price_rate_limit,
            rate_window_sec=settings.price_rate_window_sec,
            concurrency=settings.price_concurrency,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay_sec,
                max_delay=settings.retry_max_delay_sec,
                jitter=settings.retry_jitter_sec,
            ),
            request_timeout_sec=settings.request_timeout_sec,
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        async def once() -> Any:
            await self._limiter.acquire()
            try:
                resp = await self._client.get(url, params=params)
            except httpx.RequestError as e:
                raise TransientUpstreamError(f"GET {url} failed: {e}") from e
            if resp.status_code in RETRYABLE_STATUS_CODES:
                raise TransientUpstreamError(f"GET {url} HTTP {resp.status_code}", status_code=resp.status_code)
            if resp.status_code >= 400:
                raise ValuationUnavailableError(f"GET {url} HTTP {resp.status_code}")
            try:
                return resp.json()
            except ValueError as e:
                raise ValuationUnavailableError(f"GET {url} returned invalid JSON") from e

        async with self._workers:
            try:
                return await self._retry.call(once, event="price_api", sleep=self._sleep)
            except TransientUpstreamError as e:
                raise ValuationUnavailableError(str(e)) from e

    def _recently_failed(self, key: str) -> bool:
        failed_at = self._failed.get(key)
        if failed_at is None:
            return False
        if self._clock() - failed_at >= FAILED_LOOKUP_TTL_SEC:
            del self._failed[key]
            return False
        return True

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    async def get_asset_info(self, mint: str) -> AssetInfo:
        cached = self._info_cache.get(mint)
        if cached is not None:
            return cached
        if self._recently_failed(f"info:{mint}"):
            raise ValuationUnavailableError(f"metadata for {mint} recently unavailable")
        try:
            data = await self._get_json(f"{self._token_api_url}/token/{mint}")
            if not isinstance(data, dict) or not data.get("symbol"):
                raise ValuationUnavailableError(f"no metadata for {mint}")
        except ValuationUnavailableError:
            self._failed[f"info:{mint}"] = self._clock()
            logger.debug("asset_info_unavailable", mint=short(mint))
            raise
        info = AssetInfo(
            mint=mint,
            symbol=str(data["symbol"]),
            logo_uri=data.get("logoURI"),
            name=data.get("name"),
        )
        self._info_cache[mint] = info
        return info

    # -------------------------------------------------------------------------
    # Prices
    # -------------------------------------------------------------------------

    def _chart_url(self, mint: str) -> str:
        if mint == WRAPPED_SOL_MINT:
            return f"{self._price_api_url}/coins/{NATIVE_COIN_ID}/market_chart"
        return f"{self._price_api_url}/coins/solana/contract/{mint}/market_chart"

    async def get_unit_price_at_time(self, mint: str, timestamp: int) -> float:
        key = (mint, _utc_date(timestamp))
        cached = self._price_cache.get(key)
        if cached is not None:
            return cached
        fail_key = f"price:{mint}:{key[1]}"
        if self._recently_failed(fail_key):
            raise ValuationUnavailableError(f"price for {mint} on {key[1]} recently unavailable")

        age_days = max(0.0, (self._clock() - timestamp) / 86400.0)
        days = max(1, math.ceil(age_days) + 1)
        try:
            data = await self._get_json(
                self._chart_url(mint), params={"vs_currency": "usd", "days": days}
            )
            points = data.get("prices") if isinstance(data, dict) else None
            price = closest_price(points or [], timestamp)
            if price is None or price <= 0:
                raise ValuationUnavailableError(f"no price points for {mint} near {timestamp}")
        except ValuationUnavailableError:
            self._failed[fail_key] = self._clock()
            logger.debug("unit_price_unavailable", mint=short(mint), date=key[1])
            raise
        self._price_cache[key] = price
        return price

    async def preload_asset_info(self, mints: list[str]) -> int:
        pending = [m for m in dict.fromkeys(mints) if m not in self._info_cache]
        results = await asyncio.gather(
            *(self.get_asset_info(m) for m in pending), return_exceptions=True
        )
        for res in results:
            if isinstance(res, BaseException) and not isinstance(res, ValuationUnavailableError):
                raise res
        resolved = sum(1 for r in results if isinstance(r, AssetInfo))
        logger.info("asset_info_preloaded", requested=len(pending), resolved=resolved)
        return resolved
