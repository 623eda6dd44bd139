"""
Account discovery engine.

Breadth-first exploration of every address the wallet controls or has
controlled: a FIFO work-queue seeded with the wallet root plus a visited set.
Each dequeued address is asked for the token accounts it owns; accounts that
only appear inside historical transactions (closed accounts) are fed back by
the classifier through offer().
"""

from __future__ import annotations

import asyncio
from collections import deque

from backend_tradesync.core.exceptions import TradeSyncError
from backend_tradesync.ledger.models import DiscoveredAccount
from backend_tradesync.ledger.rpc_client import LedgerRpc
from backend_tradesync.tradesync_logging import get_logger, short

logger = get_logger(__name__)


class AccountDiscovery:
    """
    Work-queue over discovered accounts for one scan.

    drain() returns every account dequeued since the previous call, after
    expanding each through list_owned_accounts. A failing lookup for the root
    is fatal; failures for any other address are logged and skipped.
    """

    def __init__(self, ledger: LedgerRpc, root: str, *, concurrency: int = 4) -> None:
        self._ledger = ledger
        self.root = root
        self._queue: deque[DiscoveredAccount] = deque()
        self._visited: set[str] = set()
        self._workers = asyncio.Semaphore(max(1, concurrency))
        self.skipped: list[str] = []
        self._enqueue(DiscoveredAccount(address=root, owner=root, source="root"))

    @property
    def visited(self) -> frozenset[str]:
        return frozenset(self._visited)

    @property
    def pending(self) -> int:
        return len(self._queue)

    def _enqueue(self, account: DiscoveredAccount) -> bool:
        if not account.address or account.address in self._visited:
            return False
        self._visited.add(account.address)
        self._queue.append(account)
        return True

    def offer(self, accounts: list[DiscoveredAccount]) -> int:
        """Enqueue accounts not seen before in this scan; returns how many were new."""
        added = 0
        for account in accounts:
            if self._enqueue(account):
                added += 1
        if added:
            logger.debug("discovery_accounts_offered", root=short(self.root), added=added)
        return added

    async def _expand(self, account: DiscoveredAccount) -> list[DiscoveredAccount]:
        async with self._workers:
            try:
                return await self._ledger.list_owned_accounts(account.address)
            except TradeSyncError as e:
                if account.address == self.root:
                    raise
                self.skipped.append(account.address)
                logger.warning(
                    "discovery_account_skipped",
                    root=short(self.root),
                    address=short(account.address),
                    error=str(e),
                )
                return []

    async def drain(self) -> list[DiscoveredAccount]:
        """Dequeue until the queue is empty, level by level; return the dequeued accounts in FIFO order."""
        batch: list[DiscoveredAccount] = []
        while self._queue:
            level = list(self._queue)
            self._queue.clear()
            owned_lists = await asyncio.gather(*(self._expand(a) for a in level))
            batch.extend(level)
            for owned in owned_lists:
                self.offer(owned)
        if batch:
            logger.info(
                "discovery_batch",
                root=short(self.root),
                accounts=len(batch),
                visited=len(self._visited),
            )
        return batch
