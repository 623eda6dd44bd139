"""
Persistent refresh worker loop.

Runs as a separate process (CLI entrypoint) or as a task inside the API
server. Each cycle lists wallets whose initial scan completed and refreshes
them with bounded concurrency. Exception isolation per wallet; the loop
never crashes. Safe shutdown on KeyboardInterrupt/SIGTERM.

Usage: python -m backend_tradesync.agent_worker.runtime
"""

from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass

from backend_tradesync.config.settings import SyncSettings, get_settings
from backend_tradesync.core.exceptions import ScanInProgressError, TradeSyncError
from backend_tradesync.sync.models import WalletSyncState
from backend_tradesync.sync.orchestrator import SyncOrchestrator
from backend_tradesync.tradesync_logging import get_logger

logger = get_logger(__name__)

DEFAULT_REFRESH_INTERVAL_SEC = 300.0
DEFAULT_MAX_WALLETS_PER_CYCLE = 500
DEFAULT_CONCURRENCY = 2
MIN_REFRESH_INTERVAL_SEC = 1.0
MIN_CONCURRENCY = 1


@dataclass
class RefreshWorkerConfig:
    """
    Config for the refresh worker.

    interval_seconds: Sleep duration between cycle starts.
    max_wallets_per_cycle: Cap on wallets refreshed per cycle.
    concurrency: Wallets refreshed in parallel.
    """

    interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SEC
    max_wallets_per_cycle: int = DEFAULT_MAX_WALLETS_PER_CYCLE
    concurrency: int = DEFAULT_CONCURRENCY

    def __post_init__(self) -> None:
        self.interval_seconds = max(MIN_REFRESH_INTERVAL_SEC, float(self.interval_seconds))
        self.max_wallets_per_cycle = max(1, int(self.max_wallets_per_cycle))
        self.concurrency = max(MIN_CONCURRENCY, min(self.concurrency, self.max_wallets_per_cycle))

    @classmethod
    def from_settings(cls, settings: SyncSettings | None = None) -> "RefreshWorkerConfig":
        settings = settings or get_settings()
        return cls(interval_seconds=settings.refresh_interval_sec)


async def _refresh_wallet_safe(orchestrator: SyncOrchestrator, state: WalletSyncState) -> bool:
    """Refresh one wallet; log and return False on failure, never raise."""
    if not state.address:
        logger.warning("runtime_wallet_no_address", wallet_id=state.wallet_id)
        return False
    try:
        result = await orchestrator.refresh_wallet(state.wallet_id, state.address)
    except ScanInProgressError:
        logger.info("runtime_wallet_busy", wallet_id=state.wallet_id)
        return True
    except TradeSyncError as e:
        logger.warning("runtime_wallet_failed", wallet_id=state.wallet_id, error=str(e))
        return False
    except Exception as e:
        logger.exception("runtime_wallet_crashed", wallet_id=state.wallet_id, error=str(e))
        return False
    logger.info(
        "runtime_wallet_refreshed",
        wallet_id=state.wallet_id,
        new_trades=result.new_trades_count,
        watermark=result.new_watermark,
    )
    return True


async def run_cycle(orchestrator: SyncOrchestrator, config: RefreshWorkerConfig) -> tuple[int, int]:
    """
    One cycle: refresh every wallet whose initial scan completed.
    Returns (processed_count, error_count).
    """
    loop = asyncio.get_running_loop()
    wallets = await loop.run_in_executor(
        None, lambda: orchestrator.store.list_tracked_wallets(completed_only=True)
    )
    wallets = wallets[: config.max_wallets_per_cycle]
    if not wallets:
        return 0, 0

    workers = asyncio.Semaphore(config.concurrency)

    async def one(state: WalletSyncState) -> bool:
        async with workers:
            return await _refresh_wallet_safe(orchestrator, state)

    results = await asyncio.gather(*(one(w) for w in wallets))
    processed = sum(1 for ok in results if ok)
    return processed, len(results) - processed


async def run_refresh_loop(
    orchestrator: SyncOrchestrator,
    config: RefreshWorkerConfig,
    stop: asyncio.Event,
) -> None:
    """Cycle, then wait until the next interval or until stop is set."""
    cycle = 0
    logger.info(
        "runtime_worker_started",
        interval_sec=config.interval_seconds,
        max_wallets_per_cycle=config.max_wallets_per_cycle,
        concurrency=config.concurrency,
    )
    while not stop.is_set():
        cycle += 1
        cycle_start = time.monotonic()
        try:
            processed, errors = await run_cycle(orchestrator, config)
            logger.info(
                "runtime_cycle_done",
                cycle=cycle,
                processed=processed,
                errors=errors,
                duration_sec=round(time.monotonic() - cycle_start, 2),
            )
        except Exception as e:
            logger.exception("runtime_cycle_failed", cycle=cycle, error=str(e))

        remaining = config.interval_seconds - (time.monotonic() - cycle_start)
        if remaining > 0:
            try:
                await asyncio.wait_for(stop.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
    logger.info("runtime_worker_stopped", cycle=cycle)


async def _main_async() -> None:
    from backend_tradesync.api_server.server import build_orchestrator

    orchestrator = build_orchestrator()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows or unsupported
            pass
    try:
        await run_refresh_loop(orchestrator, RefreshWorkerConfig.from_settings(), stop)
    finally:
        await orchestrator.aclose()


def main() -> None:
    try:
        asyncio.run(_main_async())
    except KeyboardInterrupt:
        logger.info("runtime_keyboard_interrupt")


if __name__ == "__main__":
    main()
