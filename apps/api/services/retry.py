"""Bounded retry with exponential backoff and jitter for external calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from config import settings
from services.errors import is_retryable as default_is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExecutor:
    """
    Run an async operation up to `max_attempts` times.

    Delay before attempt k+1 is `base_delay * 2**(k-1) + U(0, jitter)` seconds.
    Non-retryable errors and the error from the final attempt propagate unchanged.
    """

    def __init__(
        self,
        *,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        jitter: Optional[float] = None,
        is_retryable: Callable[[BaseException], bool] = default_is_retryable,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(int(max_attempts or settings.RETRY_MAX_ATTEMPTS), 1)
        self.base_delay = float(settings.RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay)
        self.jitter = float(settings.RETRY_JITTER_SECONDS if jitter is None else jitter)
        self.is_retryable = is_retryable
        self._sleep = sleep

    def _retrying(self, attempts: int, base_delay: float, should_retry) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=base_delay, min=0) + wait_random(0, self.jitter),
            retry=retry_if_exception(should_retry),
            before_sleep=before_sleep_log(logger, logging.INFO),
            sleep=self._sleep,
            reraise=True,
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        is_retryable: Optional[Callable[[BaseException], bool]] = None,
    ) -> T:
        attempts = max(int(max_attempts or self.max_attempts), 1)
        base = self.base_delay if base_delay is None else float(base_delay)
        retrying = self._retrying(attempts, base, is_retryable or self.is_retryable)
        return await retrying(operation)
