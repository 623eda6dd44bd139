"""
Sync orchestrator: historical backfill and incremental catch-up per wallet.

Responsibilities:
- Pick the scan mode from WalletSyncState (historical until the first scan
  completes, incremental from the watermark afterwards).
- Drive discovery -> collection -> classification until no discovered
  account is left unscanned, feeding accounts found inside transactions back
  into discovery.
- Persist each round's trades in ascending time order as the round ends,
  then advance the watermark once the scan completes. The watermark never
  moves backward and never moves when persistence fails.
- Allow at most one scan per wallet: an in-process lock registry plus the
  store's scan lease.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import time
from typing import Any, Awaitable, Callable, TypeVar

from backend_tradesync.config.settings import SyncSettings, get_settings
from backend_tradesync.core.exceptions import MalformedDataError, PersistenceError, ScanInProgressError
from backend_tradesync.database.store import TradeStore
from backend_tradesync.ledger.models import (
    WRAPPED_SOL_MINT,
    SignatureInfo,
    TransactionBody,
    validate_address,
)
from backend_tradesync.ledger.rpc_client import LedgerRpc
from backend_tradesync.pricing.gateway import PriceGateway
from backend_tradesync.sync.classifier import TransactionClassifier
from backend_tradesync.sync.discovery import AccountDiscovery
from backend_tradesync.sync.models import (
    SCAN_STATUS_COMPLETED,
    RefreshResult,
    ScanProgress,
    ScanResult,
    Trade,
    WalletSyncState,
)
from backend_tradesync.sync.signatures import SignatureCollector
from backend_tradesync.sync.transactions import TransactionSource
from backend_tradesync.tradesync_logging import bind_wallet, get_logger, short

logger = get_logger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[ScanProgress], Awaitable[None]] | Callable[[ScanProgress], None]

MODE_HISTORICAL = "historical"
MODE_INCREMENTAL = "incremental"


class SyncOrchestrator:
    """
    Entry point for scan_wallet / refresh_wallet.

    ledger, prices and store are injected; one orchestrator is shared by the
    API server, the CLI and the refresh worker.
    """

    def __init__(
        self,
        ledger: LedgerRpc,
        prices: PriceGateway,
        store: TradeStore,
        settings: SyncSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._prices = prices
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def store(self) -> TradeStore:
        return self._store

    async def aclose(self) -> None:
        """Close upstream clients."""
        await self._ledger.aclose()
        await self._prices.aclose()

    @property
    def active_scans(self) -> int:
        return len(self._locks)

    def is_scanning(self, wallet_id: str) -> bool:
        lock = self._locks.get(wallet_id)
        return lock is not None and lock.locked()

    async def _in_executor(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def get_wallet_sync_state(self, wallet_id: str) -> WalletSyncState:
        return await self._in_executor(self._store.get_wallet_sync_state, wallet_id)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def scan_wallet(
        self,
        wallet_id: str,
        address: str,
        *,
        progress: ProgressCallback | None = None,
    ) -> ScanResult:
        """
        Run the scan the wallet's state calls for.

        Raises ScanInProgressError if this wallet is already being scanned,
        InvalidWalletError for a bad address, PersistenceError (watermark
        untouched) when the store rejects a write.
        """
        address = validate_address(address)
        lock = self._locks.setdefault(wallet_id, asyncio.Lock())
        if lock.locked():
            raise ScanInProgressError(wallet_id)
        try:
            async with lock:
                return await self._run_scan(wallet_id, address, progress)
        finally:
            if not lock.locked() and self._locks.get(wallet_id) is lock:
                del self._locks[wallet_id]

    async def refresh_wallet(
        self,
        wallet_id: str,
        address: str,
        *,
        progress: ProgressCallback | None = None,
    ) -> RefreshResult:
        """Incremental catch-up (or the first backfill if none completed yet)."""
        result = await self.scan_wallet(wallet_id, address, progress=progress)
        return RefreshResult(new_trades_count=result.inserted, new_watermark=result.new_watermark)

    # -------------------------------------------------------------------------
    # Scan
    # -------------------------------------------------------------------------

    async def _run_scan(
        self, wallet_id: str, address: str, progress: ProgressCallback | None
    ) -> ScanResult:
        log = bind_wallet(wallet_id, __name__).bind(address=short(address))
        started_at = int(self._clock())
        state = await self.get_wallet_sync_state(wallet_id)
        if state.initial_scan_complete:
            mode = MODE_INCREMENTAL
            cutoff = state.watermark_timestamp
        else:
            mode = MODE_HISTORICAL
            lookback = self._settings.historical_lookback_sec
            cutoff = started_at - lookback if lookback else None

        acquired = await self._in_executor(
            self._store.try_begin_scan, wallet_id, address, started_at, self._settings.scan_lease_ttl_sec
        )
        if not acquired:
            log.warning("scan_lease_held")
            raise ScanInProgressError(wallet_id)
        log.info("scan_started", mode=mode, cutoff=cutoff, watermark=state.watermark_timestamp)

        try:
            trades, stats = await self._collect_trades(wallet_id, address, cutoff, progress)
            inserted = stats["inserted"]

            if inserted and trades:
                candidate = max(t.timestamp for t in trades)
            else:
                candidate = started_at
            old = state.watermark_timestamp
            new_watermark = candidate if old is None else max(old, candidate)

            total = await self._in_executor(self._store.count_trades, wallet_id)
            saved = await self._in_executor(
                self._store.set_wallet_sync_state,
                wallet_id,
                WalletSyncState(
                    wallet_id=wallet_id,
                    address=address,
                    initial_scan_complete=True,
                    watermark_timestamp=new_watermark,
                    scan_status=SCAN_STATUS_COMPLETED,
                    scan_started_at=started_at,
                    scan_completed_at=int(self._clock()),
                    scan_error=None,
                    trades_found=len(trades),
                    total_trades=total,
                ),
            )
        except (Exception, asyncio.CancelledError) as e:
            await self._fail_scan(wallet_id, e)
            log.error("scan_failed", mode=mode, error=str(e) or type(e).__name__)
            raise

        await self._emit(progress, ScanProgress(
            current_step="complete",
            total_signatures=stats["signatures"],
            processed_signatures=stats["signatures"],
            unique_assets=len({t.asset_address for t in trades}),
            trades_found=len(trades),
            accounts_scanned=stats["accounts"],
            is_complete=True,
        ))
        log.info(
            "scan_completed",
            mode=mode,
            trades_found=len(trades),
            inserted=inserted,
            signatures=stats["signatures"],
            accounts=stats["accounts"],
            watermark=saved.watermark_timestamp,
            duration_sec=round(self._clock() - started_at, 2),
        )
        return ScanResult(
            trades_found=len(trades),
            new_watermark=saved.watermark_timestamp,
            inserted=inserted,
            mode=mode,
            signatures_processed=stats["signatures"],
            accounts_scanned=stats["accounts"],
        )

    async def _fail_scan(self, wallet_id: str, error: BaseException) -> None:
        message = str(error) or type(error).__name__
        try:
            await self._in_executor(self._store.mark_scan_failed, wallet_id, message, int(self._clock()))
        except Exception as e:
            logger.warning("scan_status_update_failed", wallet_id=wallet_id, error=str(e))

    async def _collect_trades(
        self, wallet_id: str, address: str, cutoff: int | None, progress: ProgressCallback | None
    ) -> tuple[list[Trade], dict[str, int]]:
        """
        Discovery/collection/classification loop; returns trades sorted ascending.

        Each round's new trades are persisted (ascending) before the next
        round starts, so an aborted scan keeps what earlier rounds found.
        """
        s = self._settings
        transactions = TransactionSource(self._ledger, concurrency=s.rpc_concurrency)
        discovery = AccountDiscovery(self._ledger, address, concurrency=s.rpc_concurrency)
        collector = SignatureCollector(
            self._ledger,
            transactions,
            root=address,
            page_size=s.signature_page_size,
            min_native_movement=s.min_native_movement,
            concurrency=s.rpc_concurrency,
        )
        classifier = TransactionClassifier(
            self._prices,
            dust_threshold=s.dust_threshold,
            min_native_movement=s.min_native_movement,
            emit_multi_asset_trades=s.emit_multi_asset_trades,
        )

        processed: set[str] = set()
        trades: dict[tuple[str, str], Trade] = {}
        accounts_scanned = 0
        inserted = 0
        await self._emit(progress, ScanProgress(current_step="discovering_accounts"))

        while True:
            batch = await discovery.drain()
            if not batch:
                break
            accounts_scanned += len(batch)
            await self._emit(progress, ScanProgress(
                current_step="collecting_signatures",
                total_signatures=len(processed),
                processed_signatures=len(processed),
                accounts_scanned=accounts_scanned,
                trades_found=len(trades),
            ))
            infos = [i for i in await collector.collect_many(batch, cutoff) if i.signature not in processed]
            if not infos:
                continue
            processed.update(i.signature for i in infos)

            bodies = await transactions.get_many([i.signature for i in infos])
            mints = sorted({m for b in bodies.values() for m in b.mints()} - {WRAPPED_SOL_MINT})
            if mints:
                await self._emit(progress, ScanProgress(
                    current_step="loading_metadata",
                    total_signatures=len(processed),
                    unique_assets=len(mints),
                    accounts_scanned=accounts_scanned,
                    trades_found=len(trades),
                ))
                await self._prices.preload_asset_info(mints)

            done = len(processed) - len(infos)
            round_trades: list[Trade] = []
            for n, info in enumerate(infos, start=1):
                body = bodies.get(info.signature)
                if body is None:
                    continue
                found = await self._classify_one(classifier, discovery, body, address, info)
                for trade in found:
                    if trade.key not in trades:
                        trades[trade.key] = trade
                        round_trades.append(trade)
                if n % 50 == 0 or n == len(infos):
                    await self._emit(progress, ScanProgress(
                        current_step="classifying",
                        total_signatures=len(processed),
                        processed_signatures=done + n,
                        unique_assets=len(mints),
                        trades_found=len(trades),
                        accounts_scanned=accounts_scanned,
                    ))

            if round_trades:
                round_trades.sort(key=lambda t: t.sort_key)
                await self._emit(progress, ScanProgress(
                    current_step="persisting",
                    total_signatures=len(processed),
                    processed_signatures=len(processed),
                    unique_assets=len({t.asset_address for t in trades.values()}),
                    trades_found=len(trades),
                    accounts_scanned=accounts_scanned,
                ))
                inserted += await self._persist(wallet_id, round_trades)

        ordered = sorted(trades.values(), key=lambda t: t.sort_key)
        stats = {
            "signatures": len(processed),
            "accounts": accounts_scanned,
            "rpc_transactions": transactions.fetch_count,
            "skipped_accounts": len(discovery.skipped),
            "inserted": inserted,
        }
        return ordered, stats

    async def _classify_one(
        self,
        classifier: TransactionClassifier,
        discovery: AccountDiscovery,
        body: TransactionBody,
        address: str,
        info: SignatureInfo,
    ) -> list[Trade]:
        try:
            result = await classifier.classify(body, address, fallback_timestamp=info.block_time)
        except MalformedDataError as e:
            logger.warning("transaction_malformed_skipped", signature=short(info.signature), error=str(e))
            return []
        if result.discovered_accounts:
            discovery.offer(result.discovered_accounts)
        return result.trades

    async def _persist(self, wallet_id: str, trades: list[Trade]) -> int:
        """Write trades in ascending chunks. PersistenceError aborts the scan."""
        size = self._settings.persist_chunk_size
        inserted = 0
        for start in range(0, len(trades), size):
            chunk = trades[start:start + size]
            try:
                inserted += await self._in_executor(self._store.upsert_trades, wallet_id, chunk)
            except PersistenceError:
                logger.error(
                    "persist_chunk_failed",
                    wallet_id=wallet_id,
                    chunk_start=start,
                    chunk_size=len(chunk),
                )
                raise
        return inserted

    async def _emit(self, callback: ProgressCallback | None, snapshot: ScanProgress) -> None:
        """Invoke progress callback (sync or async); callback errors are logged, not raised."""
        if callback is None:
            return
        try:
            if inspect.iscoroutinefunction(callback):
                await callback(snapshot)
            else:
                callback(snapshot)
        except Exception as e:
            logger.warning("scan_progress_callback_failed", step=snapshot.current_step, error=str(e))
