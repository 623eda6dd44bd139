"""
Per-scan transaction body cache.

Both the collector's pre-filter and the classifier need the same bodies; a
TransactionSource fetches each signature at most once per scan (concurrent
requests for one signature share a single in-flight fetch) and bounds the
number of getTransaction calls in flight.
"""

from __future__ import annotations

import asyncio

from backend_tradesync.core.exceptions import MalformedDataError, TradeSyncError
from backend_tradesync.ledger.models import TransactionBody
from backend_tradesync.ledger.rpc_client import LedgerRpc
from backend_tradesync.tradesync_logging import get_logger, short

logger = get_logger(__name__)


class TransactionSource:
    def __init__(self, ledger: LedgerRpc, concurrency: int = 4) -> None:
        self._ledger = ledger
        self._workers = asyncio.Semaphore(max(1, concurrency))
        self._tasks: dict[str, asyncio.Task[TransactionBody | None]] = {}
        self.fetch_count = 0

    async def _fetch(self, signature: str) -> TransactionBody | None:
        async with self._workers:
            self.fetch_count += 1
            return await self._ledger.get_transaction(signature)

    async def get(self, signature: str) -> TransactionBody | None:
        """
        Body for signature, None when the ledger has no such transaction.

        Errors propagate to the caller and are not cached, so a later call
        retries the fetch.
        """
        task = self._tasks.get(signature)
        if task is None:
            task = asyncio.ensure_future(self._fetch(signature))
            self._tasks[signature] = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception:
            if self._tasks.get(signature) is task:
                del self._tasks[signature]
            raise

    async def get_many(self, signatures: list[str]) -> dict[str, TransactionBody]:
        """Fetch all signatures; unavailable or malformed bodies are logged and left out."""

        async def one(sig: str) -> tuple[str, TransactionBody | None]:
            try:
                return sig, await self.get(sig)
            except MalformedDataError as e:
                logger.warning("transaction_malformed_skipped", signature=short(sig), error=str(e))
            except TradeSyncError as e:
                logger.warning("transaction_fetch_skipped", signature=short(sig), error=str(e))
            return sig, None

        results = await asyncio.gather(*(one(s) for s in signatures))
        return {sig: body for sig, body in results if body is not None}
