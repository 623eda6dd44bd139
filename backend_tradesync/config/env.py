"""
Environment variable loading for TradeSync.

- SOLANA_RPC_URL: primary RPC endpoint (read from .env)
- SOLANA_RPC_BACKUP_URLS: comma-separated backup endpoints used on failover
- HELIUS_API_KEY: Helius API key (fallback for RPC URL)
- TRADESYNC_DB_URL / DATABASE_URL / TRADESYNC_DB_PATH: persistence target
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# config is backend_tradesync/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

MAINNET_RPC_URL = "https://api.mainnet-beta.solana.com"
HELIUS_MAINNET_URL_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={key}"
DEFAULT_SQLITE_PATH = "tradesync.db"

_loaded = False


def load_tradesync_env() -> None:
    """Load .env from project root once. Existing environment variables win."""
    global _loaded
    if _loaded:
        return
    if _ENV_PATH.is_file():
        load_dotenv(_ENV_PATH, override=False)
    _loaded = True


def get_solana_rpc_url() -> str:
    """
    Resolve Solana RPC URL from env.
    Order: SOLANA_RPC_URL > HELIUS_API_KEY > public mainnet endpoint.
    """
    load_tradesync_env()
    url = (os.getenv("SOLANA_RPC_URL") or "").strip()
    if url:
        return url
    key = (os.getenv("HELIUS_API_KEY") or "").strip()
    if key:
        return HELIUS_MAINNET_URL_TEMPLATE.format(key=key)
    return MAINNET_RPC_URL


def get_backup_rpc_urls() -> list[str]:
    """Return SOLANA_RPC_BACKUP_URLS as a list, skipping blanks and the primary URL."""
    load_tradesync_env()
    primary = get_solana_rpc_url()
    raw = os.getenv("SOLANA_RPC_BACKUP_URLS") or ""
    out: list[str] = []
    for part in raw.split(","):
        url = part.strip()
        if url and url != primary and url not in out:
            out.append(url)
    return out


def get_database_url() -> str:
    """Return TRADESYNC_DB_URL or DATABASE_URL if set; else SQLite from TRADESYNC_DB_PATH."""
    load_tradesync_env()
    url = (os.getenv("TRADESYNC_DB_URL") or os.getenv("DATABASE_URL") or "").strip()
    if url:
        return url
    path = (os.getenv("TRADESYNC_DB_PATH") or "").strip() or DEFAULT_SQLITE_PATH
    return f"sqlite:///{path}"


def mask_url(url: str) -> str:
    """Hide API keys embedded in RPC URLs before logging them."""
    if "api-key=" in url:
        return url.split("api-key=")[0] + "api-key=***"
    return url
