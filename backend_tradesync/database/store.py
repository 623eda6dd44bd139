"""
SQLAlchemy-backed trade store.

Uses TRADESYNC_DB_URL / DATABASE_URL when set (e.g. PostgreSQL); otherwise
SQLite (TRADESYNC_DB_PATH or tradesync.db). All methods are synchronous; async
callers run them in the default executor.

Responsibilities:
- Idempotent trade insertion keyed by (wallet_id, signature, asset_address).
- Wallet sync state read/write with a watermark that never regresses.
- Scan lease (scan_status = scanning) so one scan per wallet runs at a time
  across processes.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from backend_tradesync.config.env import get_database_url
from backend_tradesync.core.exceptions import PersistenceError
from backend_tradesync.database.models import Base, TradeRow, WalletSyncStateRow
from backend_tradesync.sync.models import (
    SCAN_STATUS_FAILED,
    SCAN_STATUS_SCANNING,
    Trade,
    TradeDirection,
    WalletSyncState,
)
from backend_tradesync.tradesync_logging import get_logger

logger = get_logger(__name__)

DEFAULT_TRADE_LIST_LIMIT = 500
MAX_SCAN_ERROR_LEN = 1024


def _row_to_state(row: WalletSyncStateRow) -> WalletSyncState:
    return WalletSyncState(**row.to_dict())


def _row_to_trade(row: TradeRow) -> Trade:
    return Trade(
        signature=row.signature,
        timestamp=row.timestamp,
        direction=TradeDirection(row.direction),
        asset_address=row.asset_address,
        asset_symbol=row.asset_symbol,
        asset_logo=row.asset_logo,
        amount=row.amount,
        native_amount=row.native_amount,
        unit_price_usd=row.unit_price_usd,
        value_usd=row.value_usd,
        fee=row.fee,
        slot=row.slot or 0,
        is_placeholder_valuation=bool(row.is_placeholder),
    )


def _trade_to_row(wallet_id: str, trade: Trade, now: int) -> TradeRow:
    return TradeRow(
        wallet_id=wallet_id,
        signature=trade.signature,
        asset_address=trade.asset_address,
        timestamp=trade.timestamp,
        slot=trade.slot,
        direction=trade.direction.value,
        asset_symbol=trade.asset_symbol,
        asset_logo=trade.asset_logo,
        amount=trade.amount,
        native_amount=trade.native_amount,
        unit_price_usd=trade.unit_price_usd,
        value_usd=trade.value_usd,
        fee=trade.fee,
        is_placeholder=trade.is_placeholder_valuation,
        created_at=now,
    )


class TradeStore:
    """Persistence gateway over one database URL."""

    def __init__(self, database_url: str | None = None) -> None:
        self.database_url = database_url or get_database_url()
        connect_args: dict[str, Any] = {}
        if self.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self._engine = create_engine(self.database_url, connect_args=connect_args, pool_pre_ping=True)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        logger.info("trade_store_engine", url=self.database_url.split("?")[0].split("//")[-1])

    def init_db(self) -> None:
        """Create tables if missing."""
        Base.metadata.create_all(self._engine)

    def dispose(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        """Single session. Commits on success, rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Trades
    # -------------------------------------------------------------------------

    def upsert_trades(self, wallet_id: str, trades: list[Trade]) -> int:
        """
        Insert trades not already stored; return how many rows were inserted.

        Existing (signature, asset) keys are skipped, except that a stored
        placeholder valuation is overwritten by a real one. A unique-constraint
        violation from a concurrent writer counts as a duplicate. Any other
        database failure raises PersistenceError.
        """
        batch: dict[tuple[str, str], Trade] = {}
        for t in trades:
            batch.setdefault(t.key, t)
        if not batch:
            return 0
        now = int(time.time())
        try:
            try:
                return self._insert_batch(wallet_id, batch, now)
            except IntegrityError as e:
                logger.info("upsert_trades_conflict_retry", wallet_id=wallet_id, error=str(e.orig))
                return sum(self._insert_one(wallet_id, t, now) for t in batch.values())
        except SQLAlchemyError as e:
            raise PersistenceError(f"upsert_trades failed for {wallet_id}: {e}") from e

    def _existing(self, session: Session, wallet_id: str, signatures: list[str]) -> dict[tuple[str, str], TradeRow]:
        rows = session.scalars(
            select(TradeRow).where(
                TradeRow.wallet_id == wallet_id,
                TradeRow.signature.in_(signatures),
            )
        ).all()
        return {(r.signature, r.asset_address): r for r in rows}

    @staticmethod
    def _refresh_valuation(row: TradeRow, trade: Trade) -> bool:
        if not row.is_placeholder or trade.is_placeholder_valuation:
            return False
        row.unit_price_usd = trade.unit_price_usd
        row.value_usd = trade.value_usd
        row.asset_symbol = trade.asset_symbol
        row.asset_logo = trade.asset_logo
        row.is_placeholder = False
        return True

    def _insert_batch(self, wallet_id: str, batch: dict[tuple[str, str], Trade], now: int) -> int:
        inserted = 0
        refreshed = 0
        with self._session_scope() as session:
            existing = self._existing(session, wallet_id, sorted({k[0] for k in batch}))
            for key, trade in batch.items():
                row = existing.get(key)
                if row is not None:
                    refreshed += self._refresh_valuation(row, trade)
                    continue
                session.add(_trade_to_row(wallet_id, trade, now))
                inserted += 1
        logger.info(
            "trades_upserted",
            wallet_id=wallet_id,
            candidates=len(batch),
            inserted=inserted,
            valuations_refreshed=refreshed,
        )
        return inserted

    def _insert_one(self, wallet_id: str, trade: Trade, now: int) -> int:
        try:
            with self._session_scope() as session:
                row = self._existing(session, wallet_id, [trade.signature]).get(trade.key)
                if row is not None:
                    self._refresh_valuation(row, trade)
                    return 0
                session.add(_trade_to_row(wallet_id, trade, now))
            return 1
        except IntegrityError as e:
            # only a concurrent insert of the same key is a duplicate
            with self._session_scope() as session:
                stored = self._existing(session, wallet_id, [trade.signature]).get(trade.key)
            if stored is not None:
                return 0
            raise PersistenceError(
                f"trade {trade.signature} rejected for {wallet_id}: {e.orig}"
            ) from e

    def list_trades(
        self,
        wallet_id: str,
        *,
        since: int | None = None,
        limit: int = DEFAULT_TRADE_LIST_LIMIT,
    ) -> list[Trade]:
        """Newest first; since is an inclusive lower bound on timestamp."""
        with self._session_scope() as session:
            stmt = select(TradeRow).where(TradeRow.wallet_id == wallet_id)
            if since is not None:
                stmt = stmt.where(TradeRow.timestamp >= since)
            stmt = stmt.order_by(
                TradeRow.timestamp.desc(), TradeRow.slot.desc(), TradeRow.id.desc()
            ).limit(max(1, limit))
            return [_row_to_trade(r) for r in session.scalars(stmt).all()]

    def count_trades(self, wallet_id: str) -> int:
        with self._session_scope() as session:
            return int(
                session.scalar(
                    select(func.count()).select_from(TradeRow).where(TradeRow.wallet_id == wallet_id)
                )
                or 0
            )

    # -------------------------------------------------------------------------
    # Wallet sync state
    # -------------------------------------------------------------------------

    def get_wallet_sync_state(self, wallet_id: str) -> WalletSyncState:
        """Stored state, or a fresh unsaved state (historical mode) if the wallet is unknown."""
        with self._session_scope() as session:
            row = session.get(WalletSyncStateRow, wallet_id)
            if row is None:
                return WalletSyncState(wallet_id=wallet_id)
            return _row_to_state(row)

    def set_wallet_sync_state(self, wallet_id: str, state: WalletSyncState) -> WalletSyncState:
        """
        Write state. The stored watermark only moves forward and
        initial_scan_complete never flips back to False.
        """
        try:
            with self._session_scope() as session:
                row = session.get(WalletSyncStateRow, wallet_id)
                if row is None:
                    row = WalletSyncStateRow(wallet_id=wallet_id)
                    session.add(row)
                old = row.recent_trade
                new = state.watermark_timestamp
                if old is not None and (new is None or new < old):
                    new = old
                row.address = state.address or row.address
                row.recent_trade = new
                row.initial_scan_complete = bool(row.initial_scan_complete) or state.initial_scan_complete
                row.scan_status = state.scan_status
                row.scan_started_at = state.scan_started_at
                row.scan_completed_at = state.scan_completed_at
                row.scan_error = state.scan_error[:MAX_SCAN_ERROR_LEN] if state.scan_error else None
                row.trades_found = state.trades_found
                row.total_trades = state.total_trades
                row.updated_at = int(time.time())
                session.flush()
                return _row_to_state(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"set_wallet_sync_state failed for {wallet_id}: {e}") from e

    def try_begin_scan(self, wallet_id: str, address: str, now: int, lease_ttl_sec: int) -> bool:
        """
        Take the scan lease: set scan_status=scanning unless another scan holds
        a lease younger than lease_ttl_sec. Returns False when the lease is held.
        """
        try:
            with self._session_scope() as session:
                row = session.get(WalletSyncStateRow, wallet_id)
                if row is None:
                    session.add(
                        WalletSyncStateRow(
                            wallet_id=wallet_id,
                            address=address,
                            initial_scan_complete=False,
                            scan_status=SCAN_STATUS_SCANNING,
                            scan_started_at=now,
                            trades_found=0,
                            total_trades=0,
                            updated_at=now,
                        )
                    )
                    return True
                result = session.execute(
                    update(WalletSyncStateRow)
                    .where(WalletSyncStateRow.wallet_id == wallet_id)
                    .where(
                        or_(
                            WalletSyncStateRow.scan_status != SCAN_STATUS_SCANNING,
                            WalletSyncStateRow.scan_started_at.is_(None),
                            WalletSyncStateRow.scan_started_at <= now - lease_ttl_sec,
                        )
                    )
                    .values(
                        address=address,
                        scan_status=SCAN_STATUS_SCANNING,
                        scan_started_at=now,
                        scan_error=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise PersistenceError(f"try_begin_scan failed for {wallet_id}: {e}") from e

    def mark_scan_failed(self, wallet_id: str, error: str, now: int) -> None:
        """Release the lease with scan_status=failed. Watermark and trades are untouched."""
        with self._session_scope() as session:
            session.execute(
                update(WalletSyncStateRow)
                .where(WalletSyncStateRow.wallet_id == wallet_id)
                .values(
                    scan_status=SCAN_STATUS_FAILED,
                    scan_error=(error or "unknown error")[:MAX_SCAN_ERROR_LEN],
                    scan_completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

    def list_tracked_wallets(self, *, completed_only: bool = False) -> list[WalletSyncState]:
        """All wallets with a sync record; completed_only keeps those whose initial scan finished."""
        with self._session_scope() as session:
            stmt = select(WalletSyncStateRow).order_by(WalletSyncStateRow.wallet_id)
            if completed_only:
                stmt = stmt.where(WalletSyncStateRow.initial_scan_complete.is_(True))
            return [_row_to_state(r) for r in session.scalars(stmt).all()]


# -----------------------------------------------------------------------------
# Process-wide store
# -----------------------------------------------------------------------------

_store: TradeStore | None = None


def get_store() -> TradeStore:
    """Create (and init tables) or return the cached store for the configured URL."""
    global _store
    if _store is None:
        _store = TradeStore()
        _store.init_db()
    return _store


def reset_store_for_test() -> None:
    """Dispose the cached store so the next get_store() re-reads the database URL."""
    global _store
    if _store is not None:
        _store.dispose()
    _store = None

