import asyncio
from contextlib import suppress
from typing import Any, Awaitable, Callable

from structlog import get_logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
    wait_fixed,
)

from .exceptions import OperationCancelledError

logger = get_logger()

ShouldRetry = Callable[[Exception], bool]


def retry_always(exc: Exception) -> bool:
    return True


class RetryPolicy:
    """
    Fixed-attempt, fixed-interval retry for remote calls.

    A call is attempted at most `retry_count + 1` times with `retry_interval`
    seconds between attempts. Every error is retried unless `should_retry`
    rejects it; the error of the last attempt is raised unchanged.
    """

    def __init__(
        self,
        *,
        retry_count: int = 0,
        retry_interval: float = 0.0,
        should_retry: ShouldRetry | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        if retry_count < 0:
            raise ValueError("retry_count must not be negative")
        if retry_interval < 0:
            raise ValueError("retry_interval must not be negative")

        self.retry_count = retry_count
        self.retry_interval = retry_interval
        self.should_retry = should_retry or retry_always
        self.cancel_event = cancel_event

    def _is_retryable(self, exc: BaseException) -> bool:
        if not isinstance(exc, Exception):
            return False
        if isinstance(exc, OperationCancelledError):
            return False
        return self.should_retry(exc)

    async def sleep(self, seconds: float):
        if self.cancel_event is None:
            await asyncio.sleep(seconds)
            return

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)

    def attempts(self, operation: str) -> AsyncRetrying:
        stop = stop_after_attempt(self.retry_count + 1)
        if self.cancel_event is not None:
            stop = stop | stop_when_event_set(self.cancel_event)

        def log_retry(retry_state: RetryCallState):
            logger.debug(
                "S3 request failed, retrying",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=repr(retry_state.outcome.exception()),
            )

        def log_give_up(retry_state: RetryCallState):
            logger.error(
                "S3 request failed, giving up",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=repr(retry_state.outcome.exception()),
            )
            return retry_state.outcome.result()

        return AsyncRetrying(
            stop=stop,
            wait=wait_fixed(self.retry_interval),
            retry=retry_if_exception(self._is_retryable),
            sleep=self.sleep,
            before_sleep=log_retry,
            retry_error_callback=log_give_up,
            reraise=True,
        )

    async def call(
        self, operation: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs
    ) -> Any:
        return await self.attempts(operation)(fn, *args, **kwargs)
