from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

BASE_DELAY_MS = 5_000
MAX_DELAY_MS = 60_000


def backoff_delay_ms(attempt: int, base_ms: int = BASE_DELAY_MS, max_ms: int = MAX_DELAY_MS) -> int:
    """Delay after the ``attempt``-th failure: base * 2^(attempt-1), capped."""
    if attempt < 1:
        raise ValueError("attempt starts at 1")
    return min(base_ms * 2 ** (attempt - 1), max_ms)


@dataclass(slots=True)
class RetryState:
    attempt: int = 1
    delay_ms: int = BASE_DELAY_MS
    last_error: Optional[str] = None


class RetryScheduler:
    """Runs an async operation until it succeeds, backing off exponentially.

    There is no attempt cap: the loop only ends on success or when the
    surrounding task is cancelled.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        base_ms: int = BASE_DELAY_MS,
        max_ms: int = MAX_DELAY_MS,
        label: str = "Redeem",
    ) -> None:
        self._sleep = sleep
        self.base_ms = int(base_ms)
        self.max_ms = int(max_ms)
        self.label = label
        self.state: Optional[RetryState] = None

    async def run_until_success(self, operation: Callable[[], Awaitable[T]]) -> T:
        state = RetryState(attempt=1, delay_ms=self.base_ms)
        self.state = state
        while True:
            log.info("%s attempt %d", self.label, state.attempt)
            try:
                result = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                state.last_error = str(exc) or type(exc).__name__
                log.error("%s attempt %d failed: %s", self.label, state.attempt, state.last_error)
                state.delay_ms = backoff_delay_ms(state.attempt, self.base_ms, self.max_ms)
                log.warning("Waiting %dms before next retry", state.delay_ms)
                await self._sleep(state.delay_ms / 1000.0)
                state.attempt += 1
                continue
            log.info("%s succeeded on attempt %d", self.label, state.attempt)
            return result
