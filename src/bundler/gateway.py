"""Shared rate limiter for every outbound ledger call.

The ledger endpoint enforces per-connection request quotas. All workers and the
launch path share one gateway so the spacing holds across the whole process.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import bundler.constants as C
from bundler.errors import BundlerError, NetworkError

log = logging.getLogger("bundler.gateway")

T = TypeVar("T")


class RateLimitedGateway:
    def __init__(
        self,
        max_calls_per_second: float = C.MAX_CALLS_PER_SECOND,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_calls_per_second <= 0:
            raise ValueError(f"max_calls_per_second must be positive, got {max_calls_per_second}")
        self.min_interval = 1.0 / max_calls_per_second
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: float | None = None
        self.calls = 0
        self.failures = 0
        self.waited = 0.0  # total seconds spent waiting on the gate

    async def _acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._last_call is not None:
                wait = self._last_call + self.min_interval - now
                if wait > 0:
                    self.waited += wait
                    await self._sleep(wait)
                    now = self._clock()
            self._last_call = now

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run `fn()` once the gate opens. Failures surface as NetworkError."""
        await self._acquire()
        self.calls += 1
        try:
            return await fn()
        except BundlerError:
            self.failures += 1
            raise
        except Exception as e:
            self.failures += 1
            raise NetworkError(f"{e.__class__.__name__}: {e}") from e

    def snapshot(self) -> dict[str, Any]:
        return {
            "max_calls_per_second": round(1.0 / self.min_interval, 3),
            "calls": self.calls,
            "failures": self.failures,
            "waited": round(self.waited, 3),
        }
