"""
Resilient Caller

Bounded retry with pure exponential backoff around fallible async I/O
(EventSource polls, CandleStore writes). Backoff waits are asyncio
suspensions that end early when a stop is requested.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar, Union

from dataflow.errors import RetriesExhausted, RetryCancelled, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Union[Awaitable[T], T]]


class ResilientCaller:
    """
    Retries an operation with delays of base_delay * 2**(attempt - 1).

    Example usage:
        caller = ResilientCaller(max_attempts=3, base_delay=1.0)
        events = await caller.execute(
            lambda: source.poll("cUSD_CELO", 41),
            description="poll cUSD_CELO",
        )

    With max_attempts=3 an operation that fails twice waits 1.0s, then 2.0s,
    and its third result is returned. A third failure raises RetriesExhausted
    chained from the last error.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
        stop_event: Optional[asyncio.Event] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """
        Args:
            max_attempts: Total attempts per call (not retries)
            base_delay: Delay in seconds after the first failure
            retry_on: Exception types worth retrying; others propagate at once
            stop_event: When set, pending and future backoffs end with RetryCancelled
            sleep: Replacement for the backoff wait (tests)
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        if base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {base_delay}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.retry_on = retry_on
        self.stop_event = stop_event
        self._sleep = sleep

    def backoff_delay(self, attempt: int, base_delay: Optional[float] = None) -> float:
        """Delay after the given failed attempt (1-based)"""
        base = self.base_delay if base_delay is None else base_delay
        return base * (2 ** (attempt - 1))

    async def execute(
        self,
        operation: Operation,
        *,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        description: str = "operation",
    ) -> T:
        """
        Run ``operation`` until it succeeds or attempts run out.

        Raises:
            RetriesExhausted: Every attempt failed with a retryable error
            RetryCancelled: A stop was requested while waiting to retry
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {attempts}")

        for attempt in range(1, attempts + 1):
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
                return result
            except self.retry_on as e:
                context = dict(getattr(e, "context", {}) or {})
                if attempt == attempts:
                    logger.error(
                        f"{description} failed after {attempts} attempt(s): {e}"
                    )
                    raise RetriesExhausted(
                        f"{description} failed after {attempts} attempt(s): {e}",
                        attempts=attempts,
                        last_error=e,
                        context=context,
                    ) from e

                delay = self.backoff_delay(attempt, base_delay)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{attempts}): {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await self._wait(delay, description, context)

        # Unreachable: the loop either returns or raises
        raise AssertionError("retry loop exited without result")

    async def _wait(self, delay: float, description: str, context: dict) -> None:
        if self.stop_event is not None and self.stop_event.is_set():
            raise RetryCancelled(f"{description} cancelled by stop request", context=context)

        if self._sleep is not None:
            await self._sleep(delay)
        elif self.stop_event is None:
            await asyncio.sleep(delay)
        else:
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        if self.stop_event is not None and self.stop_event.is_set():
            raise RetryCancelled(f"{description} cancelled by stop request", context=context)
