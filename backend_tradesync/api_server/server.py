"""
FastAPI server for scan/refresh triggers and read access to the trade cache.

POST /wallets/{wallet_id}/scan and /refresh run a scan (inline, or as a
background task with ?background=true). GET endpoints read sync state and
trades from the store only. Config via env (see backend_tradesync.config).
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend_tradesync import __version__
from backend_tradesync.core.exceptions import (
    InvalidWalletError,
    PersistenceError,
    ScanInProgressError,
    TradeSyncError,
)
from backend_tradesync.ledger.models import validate_address
from backend_tradesync.sync.orchestrator import SyncOrchestrator
from backend_tradesync.tradesync_logging import get_logger, short

logger = get_logger(__name__)

DEFAULT_TRADES_LIMIT = 100
MAX_TRADES_LIMIT = 1000
RUN_REFRESH_WORKER = (os.getenv("TRADESYNC_RUN_REFRESH_WORKER") or "").strip().lower() in ("1", "true", "yes")


# -----------------------------------------------------------------------------
# Request / response models
# -----------------------------------------------------------------------------


class ScanRequest(BaseModel):
    """Body for scan/refresh: the wallet root address."""

    address: str = Field(..., min_length=32, max_length=64, description="Solana wallet address (base58)")


class ScanResponse(BaseModel):
    wallet_id: str
    trades_found: int = Field(..., description="Trades classified in this scan")
    new_watermark: int | None = Field(None, description="Watermark after the scan (unix seconds)")
    inserted: int = Field(0, description="Trades newly persisted")
    mode: str = Field(..., description="historical | incremental")


class RefreshResponse(BaseModel):
    wallet_id: str
    new_trades_count: int
    new_watermark: int | None = None


class ScanAcceptedResponse(BaseModel):
    wallet_id: str
    accepted: bool = True


class SyncStateResponse(BaseModel):
    wallet_id: str
    address: str | None = None
    initial_scan_complete: bool
    watermark_timestamp: int | None = None
    scan_status: str
    scan_started_at: int | None = None
    scan_completed_at: int | None = None
    scan_error: str | None = None
    trades_found: int = 0
    total_trades: int = 0


class TradeResponse(BaseModel):
    signature: str
    timestamp: int
    direction: str
    asset_address: str
    asset_symbol: str
    asset_logo: str | None = None
    amount: float
    native_amount: float
    unit_price_usd: float
    value_usd: float
    fee: float
    is_placeholder_valuation: bool = False


class TradesResponse(BaseModel):
    wallet_id: str
    count: int
    trades: list[TradeResponse]


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


def build_orchestrator() -> SyncOrchestrator:
    """Wire the production orchestrator from settings (RPC client, price gateway, store)."""
    from backend_tradesync.config.settings import get_settings
    from backend_tradesync.database import get_store
    from backend_tradesync.ledger.rpc_client import SolanaRpcClient
    from backend_tradesync.pricing.gateway import HttpPriceGateway

    settings = get_settings()
    return SyncOrchestrator(
        SolanaRpcClient.from_settings(settings),
        HttpPriceGateway.from_settings(settings),
        get_store(),
        settings,
    )


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Dependency: app-scoped orchestrator created in lifespan (or lazily on first use)."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = build_orchestrator()
        request.app.state.orchestrator = orchestrator
    return orchestrator


def _check_address(address: str) -> str:
    try:
        return validate_address(address)
    except InvalidWalletError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def _to_http_error(wallet_id: str, e: TradeSyncError) -> HTTPException:
    if isinstance(e, ScanInProgressError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvalidWalletError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, PersistenceError):
        logger.error("api_persistence_error", wallet_id=wallet_id, error=str(e))
        return HTTPException(status_code=503, detail="trade store unavailable")
    logger.warning("api_upstream_error", wallet_id=wallet_id, error=str(e))
    return HTTPException(status_code=502, detail=str(e))


# -----------------------------------------------------------------------------
# Lifespan
# -----------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the orchestrator; optionally run the periodic refresh worker as a task."""
    from backend_tradesync.agent_worker.runtime import RefreshWorkerConfig, run_refresh_loop

    orchestrator = build_orchestrator()
    app.state.orchestrator = orchestrator
    stop = asyncio.Event()
    worker_task = None
    if RUN_REFRESH_WORKER:
        worker_task = asyncio.create_task(
            run_refresh_loop(orchestrator, RefreshWorkerConfig.from_settings(), stop)
        )
        logger.info("api_refresh_worker_started")

    yield

    stop.set()
    if worker_task is not None:
        await worker_task
        logger.info("api_refresh_worker_stopped")
    await orchestrator.aclose()


# -----------------------------------------------------------------------------
# App and routes
# -----------------------------------------------------------------------------

app = FastAPI(
    title="Backend TradeSync API",
    description="Wallet transaction discovery and trade history synchronization.",
    version=__version__,
    lifespan=lifespan,
)


async def _scan_in_background(orchestrator: SyncOrchestrator, wallet_id: str, address: str) -> None:
    try:
        await orchestrator.scan_wallet(wallet_id, address)
    except TradeSyncError as e:
        logger.warning("api_background_scan_failed", wallet_id=wallet_id, error=str(e))


@app.post("/wallets/{wallet_id}/scan", response_model=ScanResponse | ScanAcceptedResponse)
async def scan_wallet(
    wallet_id: str,
    body: ScanRequest,
    background_tasks: BackgroundTasks,
    background: bool = Query(False, description="Return 202 immediately and scan in the background"),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Historical scan on first call, incremental afterwards.
    409 when a scan for this wallet is already running.
    """
    address = _check_address(body.address)
    logger.info("api_scan_called", wallet_id=wallet_id, address=short(address), background=background)
    if orchestrator.is_scanning(wallet_id):
        raise HTTPException(status_code=409, detail=f"scan already in progress for wallet {wallet_id}")
    if background:
        background_tasks.add_task(_scan_in_background, orchestrator, wallet_id, address)
        return JSONResponse(
            status_code=202,
            content=ScanAcceptedResponse(wallet_id=wallet_id).model_dump(),
        )
    try:
        result = await orchestrator.scan_wallet(wallet_id, address)
    except TradeSyncError as e:
        raise _to_http_error(wallet_id, e) from e
    return ScanResponse(
        wallet_id=wallet_id,
        trades_found=result.trades_found,
        new_watermark=result.new_watermark,
        inserted=result.inserted,
        mode=result.mode,
    )


@app.post("/wallets/{wallet_id}/refresh", response_model=RefreshResponse)
async def refresh_wallet(
    wallet_id: str,
    body: ScanRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> RefreshResponse:
    """Incremental catch-up from the stored watermark."""
    address = _check_address(body.address)
    try:
        result = await orchestrator.refresh_wallet(wallet_id, address)
    except TradeSyncError as e:
        raise _to_http_error(wallet_id, e) from e
    return RefreshResponse(
        wallet_id=wallet_id,
        new_trades_count=result.new_trades_count,
        new_watermark=result.new_watermark,
    )


@app.get("/wallets/{wallet_id}/sync-state", response_model=SyncStateResponse)
async def get_sync_state(
    wallet_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncStateResponse:
    """Stored sync state; unknown wallets report a pending, never-scanned state."""
    state = await orchestrator.get_wallet_sync_state(wallet_id)
    return SyncStateResponse(**state.to_dict())


@app.get("/wallets/{wallet_id}/trades", response_model=TradesResponse)
def list_trades(
    wallet_id: str,
    since: int | None = Query(None, ge=0, description="Inclusive lower bound (unix seconds)"),
    limit: int = Query(DEFAULT_TRADES_LIMIT, ge=1, le=MAX_TRADES_LIMIT),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> TradesResponse:
    """Cached trades, newest first."""
    trades = orchestrator.store.list_trades(wallet_id, since=since, limit=limit)
    return TradesResponse(
        wallet_id=wallet_id,
        count=len(trades),
        trades=[TradeResponse(**t.to_dict()) for t in trades],
    )


@app.get("/health")
def health() -> dict[str, str]:
    """Liveness check: API is up."""
    return {"status": "ok"}
