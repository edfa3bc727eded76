from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Coroutine
from functools import wraps

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from ..exceptions import NonRetryableError, RetryExhaustedError
from ..logger import get_logger
from .classify import classify_error, is_retryable
from .config import RetryConfig
from .types import BeforeSleepCallback

logger = get_logger(__name__)


def _before_sleep(config: RetryConfig, hook: BeforeSleepCallback | None) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome is not None else None
        backoff_s = retry_state.next_action.sleep if retry_state.next_action is not None else None
        logger.warning(
            "Database operation failed, retrying",
            attempt=retry_state.attempt_number,
            max_attempts=config.max_attempts,
            backoff_s=backoff_s,
            error=f"{type(error).__name__}: {error}" if error is not None else None,
        )
        if hook is not None:
            hook(retry_state)

    return log


def build_retrying(config: RetryConfig, before_sleep: BeforeSleepCallback | None = None) -> AsyncRetrying:
    """Build the tenacity controller for ``config``.

    Backoff is linear: the wait after attempt ``n`` is ``n * interval``.
    Only errors classified as transient are retried.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_incrementing(start=config.interval, increment=config.interval),
        retry=retry_if_exception(is_retryable),
        before_sleep=_before_sleep(config, before_sleep),
        reraise=False,
    )


async def aretry_operation[T](
    op: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    before_sleep: BeforeSleepCallback | None = None,
) -> T:
    """Await ``op()`` until it succeeds, fails permanently, or attempts run out.

    Parameters
    ----------
    op
        Zero-argument callable returning an awaitable. Called once per attempt.
    config
        Attempt budget and backoff interval. Defaults to `RetryConfig()`.
    before_sleep
        Optional hook called with tenacity's state before each backoff sleep.

    Returns
    -------
    T
        Result of the first successful attempt.

    Raises
    ------
    NonRetryableError
        The operation raised an error outside the transient category.
        No further attempts are made.
    RetryExhaustedError
        Every attempt raised a transient error.
    """
    retry_config = config or RetryConfig()
    attempts = 0
    try:
        async for attempt in build_retrying(retry_config, before_sleep):
            attempts = attempt.retry_state.attempt_number
            with attempt:
                return await op()
    except RetryError as e:
        last_error = e.last_attempt.exception() or e
        raise RetryExhaustedError(e.last_attempt.attempt_number, last_error) from last_error
    except Exception as e:
        raise NonRetryableError(classify_error(e), e, attempts=attempts) from e

    raise AssertionError("unreachable")


def retry[**P, T](
    config: RetryConfig | None = None,
    before_sleep: BeforeSleepCallback | None = None,
) -> Callable[[Callable[P, Coroutine[object, object, T]]], Callable[P, Coroutine[object, object, T]]]:
    """Decorate a coroutine function so each call goes through `aretry_operation`.

    Examples
    --------
    >>> @retry(RetryConfig(max_attempts=5, interval=0.5))
    ... async def log_meal(pool, user_id, food_id):
    ...     await pool.aexecute("INSERT INTO meal_entries VALUES ($1, $2)", user_id, food_id)
    """

    def decorator(
        func: Callable[P, Coroutine[object, object, T]],
    ) -> Callable[P, Coroutine[object, object, T]]:
        if not inspect.iscoroutinefunction(func):
            msg = f"retry() only decorates coroutine functions, got {func!r}"
            raise TypeError(msg)

        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await aretry_operation(lambda: func(*args, **kwargs), config, before_sleep)

        return wrapper

    return decorator
