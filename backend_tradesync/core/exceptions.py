"""
Application-level exceptions.

Responsibilities:
- Classify failures by how the pipeline reacts to them (retry, skip,
  degrade, abort).
- Give the API server and CLI one hierarchy to map to status/exit codes.
"""

from __future__ import annotations


class TradeSyncError(Exception):
    """Base class for all sync engine errors."""


class TransientUpstreamError(TradeSyncError):
    """Timeout, 429, 5xx or JSON-RPC internal error. Retried with backoff, then the unit is skipped."""

    def __init__(self, message: str, *, status_code: int | None = None, rpc_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.rpc_code = rpc_code


class CircuitOpenError(TransientUpstreamError):
    """Upstream endpoint is cooling down after repeated failures."""


class UpstreamRequestError(TradeSyncError):
    """Non-retryable upstream rejection (4xx other than 408/429, invalid params)."""

    def __init__(self, message: str, *, status_code: int | None = None, rpc_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.rpc_code = rpc_code


class MalformedDataError(TradeSyncError):
    """Transaction body missing required fields or inconsistent. The transaction is skipped."""


class ValuationUnavailableError(TradeSyncError):
    """Price or metadata lookup failed. Callers fall back to placeholder valuation."""


class PersistenceError(TradeSyncError):
    """Store rejected a write. Fatal to the current scan; the watermark does not move."""


class ScanInProgressError(TradeSyncError):
    """A scan is already running for this wallet."""

    def __init__(self, wallet_id: str) -> None:
        super().__init__(f"scan already in progress for wallet {wallet_id}")
        self.wallet_id = wallet_id


class InvalidWalletError(TradeSyncError, ValueError):
    """Wallet address is empty or not a valid base58 public key."""
