"""
Application settings for the sync engine.

Responsibilities:
- Load configuration from environment variables and .env files.
- Validate and clamp values; provide defaults for everything optional.
- Expose a typed SyncSettings used by the RPC client, price gateway,
  discovery, classifier, orchestrator, API server and worker.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any

from backend_tradesync.config.env import (
    get_backup_rpc_urls,
    get_database_url,
    get_solana_rpc_url,
    load_tradesync_env,
)

DEFAULT_DUST_THRESHOLD = 0.001
DEFAULT_MIN_NATIVE_MOVEMENT = 0.0001
DEFAULT_SIGNATURE_PAGE_SIZE = 1000
DEFAULT_RPC_CONCURRENCY = 4
DEFAULT_PRICE_CONCURRENCY = 2
DEFAULT_RETRY_MAX_ATTEMPTS = 4
DEFAULT_RETRY_BASE_DELAY_SEC = 0.5
DEFAULT_RETRY_MAX_DELAY_SEC = 30.0
DEFAULT_RETRY_JITTER_SEC = 1.0
DEFAULT_REQUEST_TIMEOUT_SEC = 30.0
DEFAULT_CIRCUIT_FAILURE_THRESHOLD = 5
DEFAULT_CIRCUIT_COOLDOWN_SEC = 60.0
DEFAULT_PRICE_RATE_LIMIT = 10
DEFAULT_PRICE_RATE_WINDOW_SEC = 1.0
DEFAULT_PERSIST_CHUNK_SIZE = 100
DEFAULT_SCAN_LEASE_TTL_SEC = 900
DEFAULT_REFRESH_INTERVAL_SEC = 300.0
MAX_SIGNATURE_PAGE_SIZE = 1000

DEFAULT_TOKEN_API_URL = "https://lite-api.jup.ag/tokens/v1"
DEFAULT_PRICE_API_URL = "https://api.coingecko.com/api/v3"


@dataclass
class SyncSettings:
    """
    Tunables for a wallet scan.

    dust_threshold: Asset balance changes below this (UI units) are ignored.
    min_native_movement: Native (SOL) movement below this, net of fees, is not a trade.
    signature_page_size: getSignaturesForAddress page size (1–1000).
    historical_lookback_sec: None scans full history on first run; else only this far back.
    emit_multi_asset_trades: One trade per moved asset when a swap touches several assets.
    """

    rpc_url: str = ""
    backup_rpc_urls: list[str] = field(default_factory=list)
    database_url: str = ""
    token_api_url: str = DEFAULT_TOKEN_API_URL
    price_api_url: str = DEFAULT_PRICE_API_URL

    dust_threshold: float = DEFAULT_DUST_THRESHOLD
    min_native_movement: float = DEFAULT_MIN_NATIVE_MOVEMENT
    signature_page_size: int = DEFAULT_SIGNATURE_PAGE_SIZE
    historical_lookback_sec: int | None = None
    emit_multi_asset_trades: bool = True

    rpc_concurrency: int = DEFAULT_RPC_CONCURRENCY
    price_concurrency: int = DEFAULT_PRICE_CONCURRENCY
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_base_delay_sec: float = DEFAULT_RETRY_BASE_DELAY_SEC
    retry_max_delay_sec: float = DEFAULT_RETRY_MAX_DELAY_SEC
    retry_jitter_sec: float = DEFAULT_RETRY_JITTER_SEC
    request_timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC
    circuit_failure_threshold: int = DEFAULT_CIRCUIT_FAILURE_THRESHOLD
    circuit_cooldown_sec: float = DEFAULT_CIRCUIT_COOLDOWN_SEC

    price_rate_limit: int = DEFAULT_PRICE_RATE_LIMIT
    price_rate_window_sec: float = DEFAULT_PRICE_RATE_WINDOW_SEC

    persist_chunk_size: int = DEFAULT_PERSIST_CHUNK_SIZE
    scan_lease_ttl_sec: int = DEFAULT_SCAN_LEASE_TTL_SEC
    refresh_interval_sec: float = DEFAULT_REFRESH_INTERVAL_SEC

    def __post_init__(self) -> None:
        self.dust_threshold = max(0.0, float(self.dust_threshold))
        self.min_native_movement = max(0.0, float(self.min_native_movement))
        self.signature_page_size = max(1, min(int(self.signature_page_size), MAX_SIGNATURE_PAGE_SIZE))
        if self.historical_lookback_sec is not None and self.historical_lookback_sec <= 0:
            self.historical_lookback_sec = None
        self.rpc_concurrency = max(1, int(self.rpc_concurrency))
        self.price_concurrency = max(1, int(self.price_concurrency))
        self.retry_max_attempts = max(1, int(self.retry_max_attempts))
        self.retry_base_delay_sec = max(0.0, float(self.retry_base_delay_sec))
        self.retry_max_delay_sec = max(self.retry_base_delay_sec, float(self.retry_max_delay_sec))
        self.retry_jitter_sec = max(0.0, float(self.retry_jitter_sec))
        self.price_rate_limit = max(1, int(self.price_rate_limit))
        self.circuit_failure_threshold = max(1, int(self.circuit_failure_threshold))
        self.persist_chunk_size = max(1, int(self.persist_chunk_size))
        self.scan_lease_ttl_sec = max(1, int(self.scan_lease_ttl_sec))
        self.persist_chunk_size = max(1, int(self.persist_chunk_size))
        self.scan_lease_ttl_sec = max(1, int(self.scan_lease_ttl_sec))

    def with_overrides(self, **kwargs: Any) -> "SyncSettings":
        """Return a copy with the given fields replaced (re-validated)."""
        return replace(self, **kwargs)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int | None) -> int | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_settings_from_env() -> SyncSettings:
    """Build SyncSettings from TRADESYNC_* environment variables."""
    load_tradesync_env()
    lookback_days = _env_float("TRADESYNC_HISTORICAL_LOOKBACK_DAYS", 0.0)
    return SyncSettings(
        rpc_url=get_solana_rpc_url(),
        backup_rpc_urls=get_backup_rpc_urls(),
        database_url=get_database_url(),
        token_api_url=(os.getenv("TRADESYNC_TOKEN_API_URL") or DEFAULT_TOKEN_API_URL).strip(),
        price_api_url=(os.getenv("TRADESYNC_PRICE_API_URL") or DEFAULT_PRICE_API_URL).strip(),
        dust_threshold=_env_float("TRADESYNC_DUST_THRESHOLD", DEFAULT_DUST_THRESHOLD),
        min_native_movement=_env_float("TRADESYNC_MIN_NATIVE_MOVEMENT", DEFAULT_MIN_NATIVE_MOVEMENT),
        signature_page_size=_env_int("TRADESYNC_SIGNATURE_PAGE_SIZE", DEFAULT_SIGNATURE_PAGE_SIZE),
        historical_lookback_sec=int(lookback_days * 86400) or None,
        emit_multi_asset_trades=_env_bool("TRADESYNC_EMIT_MULTI_ASSET_TRADES", True),
        rpc_concurrency=_env_int("TRADESYNC_RPC_CONCURRENCY", DEFAULT_RPC_CONCURRENCY),
        price_concurrency=_env_int("TRADESYNC_PRICE_CONCURRENCY", DEFAULT_PRICE_CONCURRENCY),
        retry_max_attempts=_env_int("TRADESYNC_RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
        retry_base_delay_sec=_env_float("TRADESYNC_RETRY_BASE_DELAY_SEC", DEFAULT_RETRY_BASE_DELAY_SEC),
        retry_max_delay_sec=_env_float("TRADESYNC_RETRY_MAX_DELAY_SEC", DEFAULT_RETRY_MAX_DELAY_SEC),
        request_timeout_sec=_env_float("TRADESYNC_REQUEST_TIMEOUT_SEC", DEFAULT_REQUEST_TIMEOUT_SEC),
        price_rate_limit=_env_int("TRADESYNC_PRICE_RATE_LIMIT", DEFAULT_PRICE_RATE_LIMIT),
        persist_chunk_size=_env_int("TRADESYNC_PERSIST_CHUNK_SIZE", DEFAULT_PERSIST_CHUNK_SIZE),
        scan_lease_ttl_sec=_env_int("TRADESYNC_SCAN_LEASE_TTL_SEC", DEFAULT_SCAN_LEASE_TTL_SEC),
        refresh_interval_sec=_env_float("TRADESYNC_REFRESH_INTERVAL_SEC", DEFAULT_REFRESH_INTERVAL_SEC),
    )


_settings: SyncSettings | None = None


def get_settings() -> SyncSettings:
    """Return the process-wide settings, loading them from env on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings_from_env()
    return _settings


def reset_settings_for_test() -> None:
    """Drop cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
