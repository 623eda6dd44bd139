"""
Pytest fixtures for TradeSync tests: temporary SQLite store, in-memory ledger
and price gateway, deterministic settings.
"""

from __future__ import annotations

from typing import Any

import pytest

from backend_tradesync.config.settings import SyncSettings
from backend_tradesync.core.exceptions import TransientUpstreamError, ValuationUnavailableError
from backend_tradesync.ledger.models import (
    LAMPORTS_PER_SOL,
    TOKEN_PROGRAM_ID,
    WRAPPED_SOL_MINT,
    DiscoveredAccount,
    SignatureInfo,
    TokenBalance,
    TransactionBody,
)
from backend_tradesync.ledger.rpc_client import LedgerRpc
from backend_tradesync.pricing.gateway import AssetInfo, PriceGateway

# Valid Solana pubkeys (base58, 32 bytes)
WALLET = "9QCfNuQuxct1Xk9ytFYgxc5fThmTzL4pHQnSjjrVUrka"
OTHER_WALLET = "7F1WzVNQ1Qpurqxxdyv3UrFQR3uoNepULVW9A4bAJ5nZ"

MINT_T = "TMint1111111111111111111111111111111111111"
MINT_U = "UMint1111111111111111111111111111111111111"
ATA_T = "AtaT11111111111111111111111111111111111111"
ATA_U = "AtaU11111111111111111111111111111111111111"
POOL_T = "PoolT1111111111111111111111111111111111111"

SOL_PRICE = 100.0
FEE_LAMPORTS = 5000
START_LAMPORTS = 10 * LAMPORTS_PER_SOL


def make_tx(
    signature: str,
    block_time: int | None,
    *,
    wallet: str = WALLET,
    native_sol: float = 0.0,
    tokens: list[tuple[str, str, float | None, float | None, str | None]] | None = None,
    fee: int = FEE_LAMPORTS,
    failed: bool = False,
    slot: int | None = None,
) -> TransactionBody:
    """
    Build a transaction where the wallet pays the fee and moves native_sol net of it.

    tokens: (account, mint, pre_ui, post_ui, owner); None for pre/post means
    the balance entry is absent (account opened or closed in this tx).
    """
    tokens = tokens or []
    keys = [wallet] + [t[0] for t in tokens]
    post_wallet = START_LAMPORTS + int(round(native_sol * LAMPORTS_PER_SOL)) - fee
    pre_balances = [START_LAMPORTS] + [2_039_280] * len(tokens)
    post_balances = [post_wallet] + [2_039_280] * len(tokens)
    pre_tb: list[TokenBalance] = []
    post_tb: list[TokenBalance] = []
    for idx, (_, mint, pre, post, owner) in enumerate(tokens, start=1):
        if pre is not None:
            pre_tb.append(TokenBalance(idx, mint, owner, TOKEN_PROGRAM_ID, pre, 6))
        if post is not None:
            post_tb.append(TokenBalance(idx, mint, owner, TOKEN_PROGRAM_ID, post, 6))
    return TransactionBody(
        signature=signature,
        slot=slot if slot is not None else (block_time or 0),
        block_time=block_time,
        failed=failed,
        fee=fee,
        account_keys=keys,
        pre_balances=pre_balances,
        post_balances=post_balances,
        pre_token_balances=pre_tb,
        post_token_balances=post_tb,
    )


class FakeLedger(LedgerRpc):
    """In-memory ledger: signatures per address, transaction bodies, owned accounts."""

    def __init__(self) -> None:
        self.signatures: dict[str, list[SignatureInfo]] = {}
        self.transactions: dict[str, TransactionBody] = {}
        self.owned: dict[str, list[DiscoveredAccount]] = {}
        self.failing_addresses: set[str] = set()
        self.failing_transactions: set[str] = set()
        self.list_calls: list[tuple[str, int, str | None]] = []
        self.tx_calls: list[str] = []
        self.owned_calls: list[str] = []

    def add(self, tx: TransactionBody, *addresses: str) -> None:
        """Register tx and list it under every given address."""
        self.transactions[tx.signature] = tx
        info = SignatureInfo(
            signature=tx.signature,
            slot=tx.slot,
            err={"InstructionError": [0, "Custom"]} if tx.failed else None,
            block_time=tx.block_time,
        )
        for address in addresses:
            self.signatures.setdefault(address, []).append(info)

    async def list_signatures(self, address: str, limit: int, before: str | None = None) -> list[SignatureInfo]:
        self.list_calls.append((address, limit, before))
        if address in self.failing_addresses:
            raise TransientUpstreamError(f"listing failed for {address}")
        items = sorted(
            self.signatures.get(address, []),
            key=lambda i: (i.block_time or 0, i.slot),
            reverse=True,
        )
        if before is not None:
            idx = next(n for n, i in enumerate(items) if i.signature == before)
            items = items[idx + 1:]
        return items[:limit]

    async def get_transaction(self, signature: str) -> TransactionBody | None:
        self.tx_calls.append(signature)
        if signature in self.failing_transactions:
            raise TransientUpstreamError(f"getTransaction failed for {signature}")
        return self.transactions.get(signature)

    async def list_owned_accounts(self, address: str) -> list[DiscoveredAccount]:
        self.owned_calls.append(address)
        if address in self.failing_addresses:
            raise TransientUpstreamError(f"owner lookup failed for {address}")
        return list(self.owned.get(address, []))


class FakePrices(PriceGateway):
    """Fixed prices per mint; unknown mints raise ValuationUnavailableError."""

    def __init__(self, prices: dict[str, float] | None = None, infos: dict[str, AssetInfo] | None = None) -> None:
        self.prices = {WRAPPED_SOL_MINT: SOL_PRICE} if prices is None else dict(prices)
        self.infos = infos if infos is not None else {MINT_T: AssetInfo(MINT_T, "TTT", "https://logo/t.png")}
        self.price_calls: list[tuple[str, int]] = []

    async def get_asset_info(self, mint: str) -> AssetInfo:
        info = self.infos.get(mint)
        if info is None:
            raise ValuationUnavailableError(f"no metadata for {mint}")
        return info

    async def get_unit_price_at_time(self, mint: str, timestamp: int) -> float:
        self.price_calls.append((mint, timestamp))
        price = self.prices.get(mint)
        if price is None:
            raise ValuationUnavailableError(f"no price for {mint}")
        return price


@pytest.fixture
def settings(tmp_path) -> SyncSettings:
    return SyncSettings(
        rpc_url="http://rpc.test",
        database_url=f"sqlite:///{tmp_path / 'tradesync.db'}",
        retry_max_attempts=2,
        retry_base_delay_sec=0.0,
        retry_jitter_sec=0.0,
        signature_page_size=3,
        persist_chunk_size=2,
    )


@pytest.fixture
def store(settings):
    """TradeStore on a temporary SQLite file with tables created."""
    from backend_tradesync.database.store import TradeStore

    s = TradeStore(settings.database_url)
    s.init_db()
    yield s
    s.dispose()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def prices() -> FakePrices:
    return FakePrices()


@pytest.fixture
def clock() -> dict[str, Any]:
    """Mutable wall clock for the orchestrator; tests move clock["now"]."""
    return {"now": 2_000_000}


@pytest.fixture
def orchestrator(ledger, prices, store, settings, clock):
    from backend_tradesync.sync.orchestrator import SyncOrchestrator

    return SyncOrchestrator(ledger, prices, store, settings, clock=lambda: clock["now"])
