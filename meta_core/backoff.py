"""
Failure classification and exponential backoff around single API calls.
"""

import asyncio
import contextvars
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)

from meta_core.errors import (
    ExhaustedRetriesError,
    MetaAPIError,
    ProviderRateLimitedError,
    classify_response,
    classify_transport_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def decode_response_body(response: httpx.Response) -> Any:
    """Decode a JSON body, falling back to the raw text."""
    try:
        return response.json()
    except ValueError:
        return response.text


@dataclass
class BackoffPolicy:
    """Attempt limit and delay curve for retryable failures."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """
        Delay before retrying after a failed attempt.

        Args:
            attempt: 0-indexed number of the attempt that failed

        Returns:
            Seconds to wait, never above max_delay
        """
        delay = self.base_delay * (2 ** attempt)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return min(delay, self.max_delay)


@dataclass
class RetryStats:
    """Bookkeeping for one logical call."""

    operation: str
    attempts: int = 0
    delays: List[float] = field(default_factory=list)
    last_error: Optional[MetaAPIError] = None

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)


def _is_retryable(exception: BaseException) -> bool:
    return isinstance(exception, MetaAPIError) and exception.retryable


class BackoffExecutor:
    """
    Runs an operation, classifies its failures and retries the transient ones.

    The operation may return an httpx.Response (error statuses are
    classified here), raise an httpx transport error (classified as a
    network failure), or raise a MetaAPIError directly.
    """

    def __init__(
        self,
        policy: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize Backoff Executor.

        Args:
            policy: Retry policy (defaults to BackoffPolicy())
            sleep: Coroutine used between attempts
        """
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep
        # Per task, so concurrent calls on a shared executor keep their own stats
        self._last_stats: contextvars.ContextVar[Optional[RetryStats]] = contextvars.ContextVar(
            "meta_retry_stats", default=None
        )
        logger.info(
            f"BackoffExecutor initialized (max_attempts={self.policy.max_attempts}, "
            f"base={self.policy.base_delay}s, cap={self.policy.max_delay}s)"
        )

    @property
    def last_stats(self) -> Optional[RetryStats]:
        """Stats of the most recent execute() in the current task."""
        return self._last_stats.get()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        stats: Optional[RetryStats] = None,
    ) -> T:
        """
        Execute operation with classification and retry.

        Args:
            operation: Zero-argument coroutine function, safe to repeat
            description: "METHOD endpoint" used to tag failures
            stats: Optional stats object to fill in

        Returns:
            The operation's result

        Raises:
            MetaAPIError: Terminal classified failure (not retried)
            ExhaustedRetriesError: Retryable failure on the final attempt
        """
        stats = stats or RetryStats(operation=description)
        self._last_stats.set(stats)

        def before_sleep(retry_state: RetryCallState) -> None:
            stats.delays.append(retry_state.next_action.sleep)
            self._log_retry(retry_state)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=self._delay,
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=False,
        )

        try:
            return await retrying(self._run_once, operation, description, stats)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(f"{description} failed after {stats.attempts} attempts: {last_error}")
            raise ExhaustedRetriesError(last_error, stats.attempts) from last_error

    async def _run_once(
        self,
        operation: Callable[[], Awaitable[Any]],
        description: str,
        stats: RetryStats,
    ) -> Any:
        stats.attempts += 1
        try:
            outcome = await operation()
        except httpx.TransportError as e:
            error = classify_transport_error(e, description)
        except MetaAPIError as e:
            error = e
            if error.operation is None:
                error.operation = description
        else:
            if isinstance(outcome, httpx.Response) and outcome.is_error:
                error = classify_response(
                    outcome.status_code,
                    decode_response_body(outcome),
                    description,
                    outcome.headers,
                )
            else:
                return outcome

        error.attempts = stats.attempts
        stats.last_error = error
        if not error.retryable:
            logger.error(f"{description} failed with non-retryable {error.category.value}: {error}")
        raise error

    def _delay(self, retry_state: RetryCallState) -> float:
        delay = self.policy.delay_for(retry_state.attempt_number - 1)
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exception, ProviderRateLimitedError) and exception.retry_after:
            delay = min(max(delay, exception.retry_after), self.policy.max_delay)
        return delay

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exception = retry_state.outcome.exception()
        sleep_for = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Attempt {retry_state.attempt_number}/{self.policy.max_attempts} of "
            f"{exception.operation} failed ({exception.category.value}): {exception}; "
            f"retrying in {sleep_for:.2f}s"
        )
