"""
Structured JSON logging: timestamp, level, event_type, wallet_id.

structlog with ISO timestamps and consistent keys so scan/refresh events can be
aggregated. Every module logs through get_logger(__name__) with a snake_case
event name as first argument and keyword context (wallet_id, signature, error).

Uses only Python stdlib logging and structlog; no backend_tradesync imports to
avoid circular imports.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL_VALUE = getattr(logging, LOG_LEVEL, logging.INFO)

# json for production; anything else renders for a terminal
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()


def _add_timestamp(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Ensure timestamp is always present (ISO 8601)."""
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _normalize_event(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Rename structlog 'event' to event_type; keep message if present."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    if "message" not in event_dict and "event_type" in event_dict:
        event_dict["message"] = str(event_dict["event_type"])
    return event_dict


def configure_structlog(log_format: str | None = None, level: int | None = None) -> None:
    """Configure structlog: JSON or console renderer, timestamp, level, event_type."""
    fmt = (log_format or LOG_FORMAT).strip().lower()
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_timestamp,
        _normalize_event,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            LOG_LEVEL_VALUE if level is None else level
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Return a structured logger for the given module name.

        logger = get_logger(__name__)
        logger.info("scan_completed", wallet_id=wallet_id, trades_found=12)

    Output (JSON): {"event_type": "scan_completed", "wallet_id": "...",
    "trades_found": 12, "timestamp": "...", "level": "info", "logger": "module.name"}
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_wallet(wallet_id: str, name: str = "backend_tradesync") -> structlog.BoundLogger:
    """Return a logger with wallet_id bound to all subsequent log calls."""
    return get_logger(name).bind(wallet_id=wallet_id)


def short(value: str | None, keep: int = 8) -> str:
    """Shorten a base58 signature or address for log output."""
    if not value:
        return "?"
    return value if len(value) <= keep else value[:keep] + "..."
