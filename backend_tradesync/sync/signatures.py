"""
Signature collector.

Pages each discovered account's signature list backward in time (before
cursor) down to an inclusive lower bound, applies the non-root pre-filter,
and merges everything into one deduplicated, ascending list.
"""

from __future__ import annotations

import asyncio
from typing import Iterable

from backend_tradesync.core.exceptions import MalformedDataError, TradeSyncError
from backend_tradesync.ledger.models import DiscoveredAccount, SignatureInfo, TransactionBody
from backend_tradesync.ledger.rpc_client import LedgerRpc
from backend_tradesync.sync.classifier import native_movement_sol
from backend_tradesync.sync.transactions import TransactionSource
from backend_tradesync.tradesync_logging import get_logger, short

logger = get_logger(__name__)


def in_window(info: SignatureInfo, cutoff: int | None) -> bool:
    """block_time >= cutoff; without a cutoff everything is in range."""
    if cutoff is None:
        return True
    return info.block_time is not None and info.block_time >= cutoff


def merge_signatures(groups: Iterable[list[SignatureInfo]]) -> list[SignatureInfo]:
    """Union keyed by signature, sorted ascending by (block_time, slot)."""
    merged: dict[str, SignatureInfo] = {}
    for group in groups:
        for info in group:
            merged.setdefault(info.signature, info)
    return sorted(
        merged.values(),
        key=lambda i: (i.block_time if i.block_time is not None else 0, i.slot, i.signature),
    )


def passes_prefilter(tx: TransactionBody, root: str, min_native_movement: float) -> bool:
    """Keep a non-root account's transaction only if tokens moved and native movement is non-trivial."""
    if not tx.pre_token_balances and not tx.post_token_balances:
        return False
    return abs(native_movement_sol(tx, root)) >= min_native_movement


class SignatureCollector:
    def __init__(
        self,
        ledger: LedgerRpc,
        transactions: TransactionSource,
        *,
        root: str,
        page_size: int = 1000,
        min_native_movement: float = 0.0001,
        concurrency: int = 4,
    ) -> None:
        self._ledger = ledger
        self._transactions = transactions
        self._root = root
        self._page_size = page_size
        self._min_native = min_native_movement
        self._workers = asyncio.Semaphore(max(1, concurrency))

    async def _page(self, address: str, before: str | None) -> list[SignatureInfo]:
        async with self._workers:
            return await self._ledger.list_signatures(address, self._page_size, before)

    async def list_in_window(self, address: str, cutoff: int | None) -> list[SignatureInfo]:
        """
        All signatures for address with block_time >= cutoff, newest first.

        Stops when a page's oldest entry is older than cutoff or when a page
        comes back shorter than the page size.
        """
        out: list[SignatureInfo] = []
        before: str | None = None
        pages = 0
        while True:
            page = await self._page(address, before)
            pages += 1
            out.extend(i for i in page if in_window(i, cutoff))
            if not page:
                break
            oldest = page[-1]
            if cutoff is not None and oldest.block_time is not None and oldest.block_time < cutoff:
                break
            if len(page) < self._page_size:
                break
            before = oldest.signature
        logger.debug(
            "signatures_listed",
            address=short(address),
            pages=pages,
            in_window=len(out),
            cutoff=cutoff,
        )
        return out

    async def _prefilter(self, address: str, infos: list[SignatureInfo]) -> list[SignatureInfo]:
        async def keep(info: SignatureInfo) -> bool:
            try:
                tx = await self._transactions.get(info.signature)
            except MalformedDataError:
                return False
            except TradeSyncError as e:
                # kept; classification retries the fetch
                logger.debug("prefilter_fetch_failed", signature=short(info.signature), error=str(e))
                return True
            if tx is None:
                return False
            return passes_prefilter(tx, self._root, self._min_native)

        flags = await asyncio.gather(*(keep(i) for i in infos))
        kept = [i for i, ok in zip(infos, flags) if ok]
        if len(kept) != len(infos):
            logger.debug(
                "prefilter_applied",
                address=short(address),
                before=len(infos),
                after=len(kept),
            )
        return kept

    async def collect(self, account: DiscoveredAccount, cutoff: int | None) -> list[SignatureInfo]:
        infos = await self.list_in_window(account.address, cutoff)
        if account.address != self._root and infos:
            infos = await self._prefilter(account.address, infos)
        return infos

    async def collect_many(
        self, accounts: list[DiscoveredAccount], cutoff: int | None
    ) -> list[SignatureInfo]:
        """
        Collect for every account concurrently and merge ascending.

        A non-root account whose listing fails is logged and skipped; a root
        failure propagates.
        """

        async def one(account: DiscoveredAccount) -> list[SignatureInfo]:
            try:
                return await self.collect(account, cutoff)
            except TradeSyncError as e:
                if account.address == self._root:
                    raise
                logger.warning(
                    "signatures_account_skipped",
                    address=short(account.address),
                    error=str(e),
                )
                return []

        groups = await asyncio.gather(*(one(a) for a in accounts))
        merged = merge_signatures(groups)
        logger.info(
            "signatures_collected",
            root=short(self._root),
            accounts=len(accounts),
            signatures=len(merged),
        )
        return merged
