"""
Configuration management for Backend TradeSync.

Loads and validates settings from environment variables and an optional .env
file. Exposes a single source of truth for RPC, pricing, sync and storage
configuration.
"""

from backend_tradesync.config.settings import SyncSettings, get_settings  # noqa: F401

__all__ = ["SyncSettings", "get_settings"]
