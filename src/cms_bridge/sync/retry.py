"""Retry policy for platform calls: bounded attempts with linear backoff.

delay(attempt) = base_delay * attempt, so with the defaults (3 attempts,
1000 ms) a failing call waits 1 s, then 2 s, then surfaces the last error.
Only errors flagged ``retryable`` are retried.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from src.cms_bridge.sync.exceptions import SyncError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, SyncError) and exc.retryable


class RetryPolicy:
    """Tenacity-backed retry wrapper.

    Args:
        max_attempts: Total attempts including the first call.
        base_delay_ms: Linear backoff step in milliseconds.
        sleep: Awaitable sleep used between attempts (injectable for tests).
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.base_delay_ms = base_delay_ms
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff in seconds after the given (1-based) failed attempt."""
        return self.base_delay_ms * max(1, attempt) / 1000

    async def run(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        max_attempts: int | None = None,
        **kwargs: Any,
    ) -> T:
        """Call ``fn`` until it succeeds or the attempt budget is spent.

        Raises:
            The last exception raised by ``fn``.
        """
        base = self.base_delay_ms / 1000
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts or self.max_attempts),
            wait=wait_incrementing(start=base, increment=base),
            retry=retry_if_exception(is_retryable),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(fn, *args, **kwargs)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "sync.retrying",
        attempt=retry_state.attempt_number,
        next_delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(exc),
    )
