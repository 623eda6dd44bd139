"""
Retry with exponential backoff and a per-endpoint circuit breaker.

RetryPolicy wraps one async upstream call: TransientUpstreamError is retried
with delay = min(base * 2**(attempt-1), max) + jitter; anything else
propagates immediately. CircuitBreaker trips after consecutive terminal
failures and rejects calls until its cooldown elapses (then half-opens).
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from backend_tradesync.core.exceptions import CircuitOpenError, TransientUpstreamError
from backend_tradesync.tradesync_logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_BASE_DELAY_SEC = 0.5
DEFAULT_MAX_DELAY_SEC = 30.0
DEFAULT_JITTER_SEC = 1.0

# HTTP statuses worth retrying (Cloudflare 520-524 included)
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504, 520, 521, 522, 523, 524})


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed max attempts, exponential delay capped at max_delay, uniform jitter in [0, jitter]."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_SEC
    max_delay: float = DEFAULT_MAX_DELAY_SEC
    jitter: float = DEFAULT_JITTER_SEC

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = min(self.base_delay * (2 ** max(0, attempt - 1)), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return min(delay, self.max_delay)

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        event: str = "upstream",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        **log_fields: Any,
    ) -> T:
        """
        Await fn() until it succeeds or attempts run out.

        Only TransientUpstreamError is retried; the last one is re-raised when
        the budget is exhausted. CircuitOpenError is never retried here.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except CircuitOpenError:
                raise
            except TransientUpstreamError as e:
                if attempt >= self.max_attempts:
                    logger.warning(
                        f"{event}_give_up",
                        attempts=attempt,
                        error=str(e),
                        **log_fields,
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    f"{event}_retry",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_sec=round(delay, 3),
                    error=str(e),
                    **log_fields,
                )
                await sleep(delay)


CIRCUIT_CLOSED = "closed"
CIRCUIT_OPEN = "open"
CIRCUIT_HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    closed -> open after failure_threshold terminal failures; open -> half_open
    once cooldown_sec has passed; a success in half_open closes it, a failure
    re-opens it.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_sec: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown = cooldown_sec
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None
        self._state = CIRCUIT_CLOSED

    @property
    def state(self) -> str:
        if self._state == CIRCUIT_OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self._cooldown:
                self._state = CIRCUIT_HALF_OPEN
        return self._state

    def before_call(self) -> None:
        """Raise CircuitOpenError while the breaker is open."""
        if self.state == CIRCUIT_OPEN:
            raise CircuitOpenError(f"circuit open for {self.name}")

    def record_success(self) -> None:
        if self._state != CIRCUIT_CLOSED:
            logger.info("circuit_closed", endpoint=self.name)
        self._failures = 0
        self._opened_at = None
        self._state = CIRCUIT_CLOSED

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == CIRCUIT_HALF_OPEN or self._failures >= self._failure_threshold:
            if self._state != CIRCUIT_OPEN:
                logger.warning(
                    "circuit_opened",
                    endpoint=self.name,
                    failures=self._failures,
                    cooldown_sec=self._cooldown,
                )
            self._state = CIRCUIT_OPEN
            self._opened_at = self._clock()
