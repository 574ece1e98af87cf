"""Bounded polling with an injectable clock.

Every wait in the service (pairing, gateway checks) goes through
``poll_until`` so it is bounded by both an attempt count and elapsed time, and
tests can drive it with a fake clock.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, TypeVar

T = TypeVar("T")


class Clock:
    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


SYSTEM_CLOCK = Clock()


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    max_attempts: int = 10

    def delays(self) -> Iterator[float]:
        """Yield the delay to wait after each attempt except the last."""
        delay = self.base_delay
        for _ in range(max(0, self.max_attempts - 1)):
            yield min(delay, self.max_delay)
            delay *= self.factor

    def to_client(self) -> dict:
        return {
            "base_ms": int(self.base_delay * 1000),
            "max_ms": int(self.max_delay * 1000),
            "factor": self.factor,
            "max_attempts": self.max_attempts,
        }


class PollTimeout(Exception):
    def __init__(self, attempts: int, elapsed: float):
        super().__init__(f"gave up after {attempts} attempts ({elapsed:.1f}s)")
        self.attempts = attempts
        self.elapsed = elapsed


async def poll_until(
    check: Callable[[], Awaitable[Optional[T]]],
    *,
    policy: BackoffPolicy,
    clock: Clock = SYSTEM_CLOCK,
    timeout: Optional[float] = None,
) -> T:
    """Call ``check`` until it returns a non-None value.

    Raises ``PollTimeout`` when the attempts run out or ``timeout`` seconds of
    clock time have elapsed. Exceptions from ``check`` propagate.
    """
    started = clock.monotonic()
    attempts = 0
    delays = policy.delays()
    while True:
        attempts += 1
        result = await check()
        if result is not None:
            return result
        elapsed = clock.monotonic() - started
        delay = next(delays, None)
        if delay is None or (timeout is not None and elapsed + delay > timeout):
            raise PollTimeout(attempts, elapsed)
        await clock.sleep(delay)
