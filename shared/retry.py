"""
retry.py – the one declarative retry / backoff policy
=====================================================

Used only at the I/O boundaries (venue connection in client mode and
outbound command writes).  Internal pipeline stages fail fast.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, Tuple, Type, TypeVar

from .logging import get_logger

T = TypeVar("T")
log = get_logger("shared.retry")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3                     # 0 = retry forever
    backoff_initial_secs: float = 0.5
    backoff_max_secs: float = 10.0
    backoff_factor: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = (OSError, ConnectionError, asyncio.TimeoutError)

    @classmethod
    def from_config(cls, cfg, attempts: Optional[int] = None) -> "RetryPolicy":
        return cls(
            attempts=cfg.retry_attempts if attempts is None else attempts,
            backoff_initial_secs=cfg.backoff_initial_sec,
            backoff_max_secs=cfg.backoff_max_sec,
            backoff_factor=cfg.backoff_factor,
        )

    def delays(self) -> Iterator[float]:
        """Sleep before attempt 2, 3, …  (min(max, prev * factor))."""
        backoff = self.backoff_initial_secs
        n = 1
        while self.attempts == 0 or n < self.attempts:
            yield min(self.backoff_max_secs, max(0.0, backoff))
            backoff = min(self.backoff_max_secs,
                          max(self.backoff_initial_secs, backoff * self.backoff_factor))
            n += 1

    async def run(self, fn: Callable[[], Awaitable[T]], what: str = "call") -> T:
        """Await `fn()` until it succeeds or the attempts are used up."""
        delays = self.delays()
        while True:
            try:
                return await fn()
            except self.retry_on as exc:
                delay = next(delays, None)
                if delay is None:
                    log.error("%s failed after %d attempt(s) – %s", what, self.attempts, exc)
                    raise
                log.warning("%s failed: %s (retry in %.1fs)", what, exc, delay)
                await asyncio.sleep(delay)
