"""
Bounded retry policy for polling external systems.

Each network step gets its own RetryPolicy: a fixed number of attempts with a
fixed interval between them and predicates that decide which errors mean
"not ready yet" (retry) and which mean "never going to work" (stop now).
The sleep function is injectable so tests can run with a fake clock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

from loguru import logger

from vaultcore.errors import RetryExhaustedError

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def _never(error: BaseException) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-interval bounded retry."""

    max_attempts: int = 10
    interval: float = 10.0
    is_retryable: Callable[[BaseException], bool] = _never
    is_terminal: Callable[[BaseException], bool] = _never
    sleep: SleepFn = asyncio.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval < 0:
            raise ValueError("interval must not be negative")

    def with_sleep(self, sleep: SleepFn) -> RetryPolicy:
        """Copy of this policy using a different sleep function."""
        return replace(self, sleep=sleep)

    @property
    def total_wait(self) -> float:
        """Upper bound of time spent sleeping between attempts."""
        return self.interval * (self.max_attempts - 1)

    async def poll_until(
        self, fn: Callable[[], Awaitable[T | None]], operation: str = "operation"
    ) -> T:
        """
        Call fn until it returns a value other than None.

        Retryable errors and None results consume an attempt. Terminal and
        non-retryable errors propagate immediately.

        Raises:
            RetryExhaustedError: If every attempt was used up
        """
        return await self._attempt(fn, operation, accept_none=False)

    async def run(self, fn: Callable[[], Awaitable[T]], operation: str = "operation") -> T:
        """Call fn until it completes without a retryable error."""
        return await self._attempt(fn, operation, accept_none=True)

    async def _attempt(
        self,
        fn: Callable[[], Awaitable[T | None]],
        operation: str,
        accept_none: bool,
    ) -> T:
        last_error: BaseException | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await fn()
            except Exception as e:
                if self.is_terminal(e) or not self.is_retryable(e):
                    raise
                last_error = e
                logger.debug(f"{operation}: attempt {attempt}/{self.max_attempts} not ready ({e})")
            else:
                if result is not None or accept_none:
                    if attempt > 1:
                        logger.debug(f"{operation}: succeeded on attempt {attempt}")
                    return result  # type: ignore[return-value]
                logger.debug(f"{operation}: attempt {attempt}/{self.max_attempts} not ready yet")

            if attempt < self.max_attempts:
                await self.sleep(self.interval)

        logger.warning(f"{operation}: giving up after {self.max_attempts} attempts")
        raise RetryExhaustedError(operation, self.max_attempts, last_error)
