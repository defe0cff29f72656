"""Retry with exponential backoff and a per-attempt timeout."""
import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from budgetsync.errors import InvalidRequestError, RateLimitedError, RequestTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.5
DEFAULT_TIMEOUT = 10.0

ExceptionTypes = Tuple[Type[BaseException], ...]

NEVER_RETRY: ExceptionTypes = (InvalidRequestError, RateLimitedError)


def _log_before_sleep(label: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(f"{label}: attempt {state.attempt_number} failed ({exc!r}), retrying in {delay:.1f}s")
    return before_sleep


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    retry_on: ExceptionTypes = (Exception,),
    give_up_on: ExceptionTypes = NEVER_RETRY,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` up to ``attempts`` times.

    The wait after failed attempt ``n`` (1-based) is ``2**n * base_delay``:
    1 s then 2 s with the defaults. Each attempt is bounded by ``timeout``; a
    timed-out attempt raises ``RequestTimeoutError`` and counts as a failure.
    When attempts run out the last error is re-raised unchanged.
    """

    async def attempt_once() -> T:
        if timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(f"{label} timed out after {timeout}s") from e

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay * 2, exp_base=2),
        retry=retry_if_exception_type(retry_on) & retry_if_not_exception_type(give_up_on),
        sleep=sleep,
        before_sleep=_log_before_sleep(label),
        reraise=True,
    )

    result: Any = None
    async for attempt in retrying:
        with attempt:
            result = await attempt_once()
        if attempt.retry_state.attempt_number > 1 and not attempt.retry_state.outcome.failed:
            logger.info(f"{label}: succeeded after {attempt.retry_state.attempt_number} attempts")
    return result


def retrying(**retry_kwargs: Any):
    """Decorator form of ``retry_async`` for coroutine functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        options = {"label": func.__name__, **retry_kwargs}

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_async(lambda: func(*args, **kwargs), **options)
        return wrapper

    return decorator
