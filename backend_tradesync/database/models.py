"""
SQLAlchemy models for the trade cache.

wallet_sync_state: one row per wallet id (watermark + scan status/lease).
trades: one row per (wallet_id, signature, asset_address).
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import Boolean, Column, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------


class WalletSyncStateRow(Base):
    """Sync record per wallet. recent_trade holds the watermark (unix seconds)."""

    __tablename__ = "wallet_sync_state"

    wallet_id = Column(String(128), primary_key=True)
    address = Column(String(64), nullable=True, index=True)
    initial_scan_complete = Column(Boolean, nullable=False, default=False)
    recent_trade = Column(Integer, nullable=True)
    scan_status = Column(String(16), nullable=False, default="pending", index=True)
    scan_started_at = Column(Integer, nullable=True)
    scan_completed_at = Column(Integer, nullable=True)
    scan_error = Column(String(1024), nullable=True)
    trades_found = Column(Integer, nullable=False, default=0)
    total_trades = Column(Integer, nullable=False, default=0)
    updated_at = Column(Integer, nullable=True)  # Unix timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet_id": self.wallet_id,
            "address": self.address,
            "initial_scan_complete": bool(self.initial_scan_complete),
            "watermark_timestamp": self.recent_trade,
            "scan_status": self.scan_status,
            "scan_started_at": self.scan_started_at,
            "scan_completed_at": self.scan_completed_at,
            "scan_error": self.scan_error,
            "trades_found": self.trades_found or 0,
            "total_trades": self.total_trades or 0,
        }


class TradeRow(Base):
    """
    Classified trade. Immutable except valuation fields, which are rewritten
    when a placeholder valuation is later replaced by a real one.
    """

    __tablename__ = "trades"
    __table_args__ = (
        UniqueConstraint("wallet_id", "signature", "asset_address", name="uq_trades_wallet_sig_asset"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(String(128), nullable=False, index=True)
    signature = Column(String(128), nullable=False, index=True)
    asset_address = Column(String(64), nullable=False)
    timestamp = Column(Integer, nullable=False, index=True)
    slot = Column(Integer, nullable=False, default=0)
    direction = Column(String(4), nullable=False)
    asset_symbol = Column(String(64), nullable=False)
    asset_logo = Column(String(512), nullable=True)
    amount = Column(Float, nullable=False)
    native_amount = Column(Float, nullable=False)
    unit_price_usd = Column(Float, nullable=False, default=0.0)
    value_usd = Column(Float, nullable=False, default=0.0)
    fee = Column(Float, nullable=False, default=0.0)
    is_placeholder = Column(Boolean, nullable=False, default=False)
    created_at = Column(Integer, nullable=True)
