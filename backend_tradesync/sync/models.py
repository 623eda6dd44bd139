"""
Domain models for the sync pipeline.

Trade is the canonical output of classification and the unit of persistence;
WalletSyncState is the per-wallet watermark record; ScanResult/RefreshResult
are what scan_wallet/refresh_wallet return.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from backend_tradesync.ledger.models import DiscoveredAccount  # noqa: F401


class TradeDirection(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


SCAN_STATUS_PENDING = "pending"
SCAN_STATUS_SCANNING = "scanning"
SCAN_STATUS_COMPLETED = "completed"
SCAN_STATUS_FAILED = "failed"


@dataclass(frozen=True)
class Trade:
    """
    One asset movement of one transaction, valued in native and USD.

    Unique on (signature, asset_address) per wallet. amount is signed from the
    wallet's point of view (+ received, - sent); native_amount is the absolute
    SOL spent or received net of fee.
    """

    signature: str
    timestamp: int
    direction: TradeDirection
    asset_address: str
    asset_symbol: str
    asset_logo: str | None
    amount: float
    native_amount: float
    unit_price_usd: float
    value_usd: float
    fee: float
    slot: int = 0
    is_placeholder_valuation: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.signature, self.asset_address)

    @property
    def sort_key(self) -> tuple[int, int, str, str]:
        return (self.timestamp, self.slot, self.signature, self.asset_address)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["direction"] = self.direction.value
        return out


@dataclass
class WalletSyncState:
    """Per-wallet sync record. watermark_timestamp is unix seconds of the newest persisted trade (or scan start)."""

    wallet_id: str
    address: str | None = None
    initial_scan_complete: bool = False
    watermark_timestamp: int | None = None
    scan_status: str = SCAN_STATUS_PENDING
    scan_started_at: int | None = None
    scan_completed_at: int | None = None
    scan_error: str | None = None
    trades_found: int = 0
    total_trades: int = 0

    @property
    def is_historical(self) -> bool:
        return not self.initial_scan_complete

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScanResult:
    trades_found: int
    new_watermark: int | None
    inserted: int = 0
    mode: str = "historical"
    signatures_processed: int = 0
    accounts_scanned: int = 0


@dataclass(frozen=True)
class RefreshResult:
    new_trades_count: int
    new_watermark: int | None = None


@dataclass
class ScanProgress:
    """Snapshot passed to the optional progress callback."""

    current_step: str
    total_signatures: int = 0
    processed_signatures: int = 0
    unique_assets: int = 0
    trades_found: int = 0
    is_complete: bool = False
    accounts_scanned: int = 0
    extra: dict[str, Any] = field(default_factory=dict)
