"""
Rate-limited Solana JSON-RPC client.

Responsibilities:
- getSignaturesForAddress, getTransaction and getTokenAccountsByOwner over httpx.
- Map every HTTP/JSON-RPC exchange to an explicit RpcOk / RpcEmpty / RpcFailure.
- Retry transient failures with RetryPolicy; fail over to backup endpoints,
  each guarded by its own CircuitBreaker.
- Fall back from jsonParsed to json encoding when the node cannot render a
  transaction as parsed JSON.
"""

from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import httpx

from backend_tradesync.config.env import mask_url
from backend_tradesync.config.settings import SyncSettings
from backend_tradesync.core.exceptions import (
    CircuitOpenError,
    MalformedDataError,
    TransientUpstreamError,
    UpstreamRequestError,
)
from backend_tradesync.core.retry import RETRYABLE_STATUS_CODES, CircuitBreaker, RetryPolicy
from backend_tradesync.ledger.models import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    DiscoveredAccount,
    RpcEmpty,
    RpcFailure,
    RpcOk,
    RpcResult,
    SignatureInfo,
    TransactionBody,
)
from backend_tradesync.ledger.parser import parse_transaction
from backend_tradesync.tradesync_logging import get_logger, short

logger = get_logger(__name__)

DEFAULT_COMMITMENT = "confirmed"
# JSON-RPC internal error; for getTransaction usually means jsonParsed rendering failed
RPC_INTERNAL_ERROR = -32603
# Node-side conditions that clear up on their own (unhealthy node, slot not yet available)
RETRYABLE_RPC_CODES = frozenset({RPC_INTERNAL_ERROR, -32004, -32005, -32007, -32014, -32016})
OWNED_ACCOUNT_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)


class LedgerRpc(ABC):
    """Narrow ledger interface used by discovery, collection and classification."""

    @abstractmethod
    async def list_signatures(
        self, address: str, limit: int, before: str | None = None
    ) -> list[SignatureInfo]:
        """Signatures touching address, newest first, strictly older than `before` when set."""

    @abstractmethod
    async def get_transaction(self, signature: str) -> TransactionBody | None:
        """Transaction body, or None when the ledger does not know the signature."""

    @abstractmethod
    async def list_owned_accounts(self, address: str) -> list[DiscoveredAccount]:
        """Token accounts currently owned by address (SPL Token and Token-2022)."""

    async def aclose(self) -> None:
        return None


class SolanaRpcClient(LedgerRpc):
    """
    httpx-based LedgerRpc with retry, circuit breaking and endpoint failover.

    Endpoints are tried in order starting from the last one that worked; an
    endpoint whose breaker is open is skipped until its cooldown elapses.
    """

    def __init__(
        self,
        rpc_url: str,
        backup_urls: list[str] | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        request_timeout_sec: float = 30.0,
        failure_threshold: int = 5,
        cooldown_sec: float = 60.0,
        commitment: str = DEFAULT_COMMITMENT,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        self._endpoints = [rpc_url.strip()] + [u.strip() for u in backup_urls or [] if u.strip()]
        self._breakers = {
            url: CircuitBreaker(
                mask_url(url),
                failure_threshold=failure_threshold,
                cooldown_sec=cooldown_sec,
            )
            for url in self._endpoints
        }
        self._active = 0
        self._retry = retry_policy or RetryPolicy()
        self._commitment = commitment
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(request_timeout_sec))
        self._sleep = sleep
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: SyncSettings, **kwargs: Any) -> "SolanaRpcClient":
        return cls(
            settings.rpc_url,
            settings.backup_rpc_urls,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay_sec,
                max_delay=settings.retry_max_delay_sec,
                jitter=settings.retry_jitter_sec,
            ),
            request_timeout_sec=settings.request_timeout_sec,
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_sec=settings.circuit_cooldown_sec,
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "SolanaRpcClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _build_body(self, method: str, params: list[Any]) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

    async def _exchange(self, url: str, method: str, params: list[Any]) -> RpcResult:
        """One HTTP round-trip, mapped to a result variant. Never raises for upstream faults."""
        try:
            resp = await self._client.post(url, json=self._build_body(method, params))
        except httpx.TimeoutException as e:
            return RpcFailure(f"{method} timed out: {e}", retryable=True)
        except httpx.RequestError as e:
            return RpcFailure(f"{method} request error: {e}", retryable=True)

        if resp.status_code in RETRYABLE_STATUS_CODES:
            return RpcFailure(
                f"{method} HTTP {resp.status_code}", retryable=True, status_code=resp.status_code
            )
        if resp.status_code >= 400:
            return RpcFailure(
                f"{method} HTTP {resp.status_code}", retryable=False, status_code=resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as e:
            return RpcFailure(f"{method} returned invalid JSON: {e}", retryable=True)
        if not isinstance(data, dict):
            return RpcFailure(f"{method} returned non-object response", retryable=True)

        err = data.get("error")
        if err is not None:
            code = err.get("code") if isinstance(err, dict) else None
            message = err.get("message", err) if isinstance(err, dict) else err
            return RpcFailure(
                f"Solana RPC error: {message} (code={code})",
                retryable=code in RETRYABLE_RPC_CODES,
                rpc_code=code,
            )
        result = data.get("result")
        if result is None:
            return RpcEmpty()
        return RpcOk(result)

    async def _attempt(
        self, url: str, method: str, params: list[Any], no_retry_codes: frozenset[int]
    ) -> RpcOk | RpcEmpty:
        result = await self._exchange(url, method, params)
        if isinstance(result, RpcFailure):
            if result.retryable and result.rpc_code not in no_retry_codes:
                raise TransientUpstreamError(
                    result.message, status_code=result.status_code, rpc_code=result.rpc_code
                )
            raise UpstreamRequestError(
                result.message, status_code=result.status_code, rpc_code=result.rpc_code
            )
        return result

    async def _call(
        self,
        method: str,
        params: list[Any],
        *,
        no_retry_codes: frozenset[int] = frozenset(),
        log_ref: str | None = None,
    ) -> RpcOk | RpcEmpty:
        """
        Run one RPC method with retry and failover.

        Raises TransientUpstreamError (or CircuitOpenError) when every endpoint
        is exhausted; UpstreamRequestError immediately for rejections that a
        retry would not fix.
        """
        last_error: TransientUpstreamError | None = None
        count = len(self._endpoints)
        for offset in range(count):
            idx = (self._active + offset) % count
            url = self._endpoints[idx]
            breaker = self._breakers[url]
            try:
                breaker.before_call()
            except CircuitOpenError as e:
                last_error = e
                continue
            try:
                result = await self._retry.call(
                    lambda: self._attempt(url, method, params, no_retry_codes),
                    event="rpc",
                    sleep=self._sleep,
                    method=method,
                    ref=log_ref,
                )
            except TransientUpstreamError as e:
                breaker.record_failure()
                last_error = e
                if count > 1:
                    logger.warning(
                        "rpc_endpoint_failover",
                        method=method,
                        failed_endpoint=mask_url(url),
                        error=str(e),
                    )
                continue
            breaker.record_success()
            if idx != self._active:
                self._active = idx
                logger.info("rpc_endpoint_switched", endpoint=mask_url(url))
            return result
        if last_error is None:
            raise TransientUpstreamError(f"{method}: no RPC endpoint available")
        raise last_error

    # -------------------------------------------------------------------------
    # LedgerRpc
    # -------------------------------------------------------------------------

    async def list_signatures(
        self, address: str, limit: int, before: str | None = None
    ) -> list[SignatureInfo]:
        opts: dict[str, Any] = {"limit": limit, "commitment": self._commitment}
        if before is not None:
            opts["before"] = before
        result = await self._call("getSignaturesForAddress", [address, opts], log_ref=short(address))
        if isinstance(result, RpcEmpty):
            return []
        if not isinstance(result.value, list):
            raise MalformedDataError("getSignaturesForAddress result is not a list")
        infos: list[SignatureInfo] = []
        for item in result.value:
            if not isinstance(item, dict) or "signature" not in item:
                continue
            try:
                infos.append(SignatureInfo.from_rpc_item(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("rpc_signature_item_skipped", address=short(address), error=str(e))
        return infos

    async def get_transaction(self, signature: str) -> TransactionBody | None:
        params: dict[str, Any] = {
            "encoding": "jsonParsed",
            "maxSupportedTransactionVersion": 0,
            "commitment": self._commitment,
        }
        try:
            result = await self._call(
                "getTransaction",
                [signature, params],
                no_retry_codes=frozenset({RPC_INTERNAL_ERROR}),
                log_ref=short(signature),
            )
        except UpstreamRequestError as e:
            if e.rpc_code != RPC_INTERNAL_ERROR:
                raise
            logger.info("rpc_encoding_fallback", signature=short(signature), encoding="json")
            result = await self._call(
                "getTransaction",
                [signature, {**params, "encoding": "json"}],
                log_ref=short(signature),
            )
        if isinstance(result, RpcEmpty):
            return None
        return parse_transaction(signature, result.value)

    async def list_owned_accounts(self, address: str) -> list[DiscoveredAccount]:
        found: list[DiscoveredAccount] = []
        for program_id in OWNED_ACCOUNT_PROGRAMS:
            result = await self._call(
                "getTokenAccountsByOwner",
                [
                    address,
                    {"programId": program_id},
                    {"encoding": "jsonParsed", "commitment": self._commitment},
                ],
                log_ref=short(address),
            )
            if isinstance(result, RpcEmpty):
                continue
            value = result.value.get("value") if isinstance(result.value, dict) else None
            for item in value or []:
                pubkey = item.get("pubkey") if isinstance(item, dict) else None
                if not pubkey:
                    continue
                data = (item.get("account") or {}).get("data")
                parsed = data.get("parsed") if isinstance(data, dict) else None
                info = (parsed.get("info") if isinstance(parsed, dict) else None) or {}
                found.append(
                    DiscoveredAccount(
                        address=pubkey,
                        mint=info.get("mint"),
                        owner=info.get("owner") or address,
                        source="live",
                    )
                )
        return found
