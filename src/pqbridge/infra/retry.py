from __future__ import annotations

from typing import Any, Callable, TypeVar, cast

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

T = TypeVar("T")

LOGGER = structlog.get_logger(__name__)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    LOGGER.warning(
        "db.retry.sleep",
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.upcoming_sleep, 3),
        error=str(error) if error is not None else None,
    )


def exponential_backoff_with_jitter(
    *,
    max_attempts: int = 5,
    initial_wait: float = 0.5,
    max_wait: float = 10.0,
    jitter: float = 0.1,
    retry_on: type[BaseException] | tuple[type[BaseException], ...] = Exception,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Create a retry decorator with exponential backoff and jitter.

    Waits ``initial_wait * 2 ** (attempt - 1)`` seconds (capped at ``max_wait``)
    plus up to ``jitter`` random seconds between attempts. The last exception is
    re-raised unchanged once ``max_attempts`` is exhausted.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    return cast(
        Callable[[Callable[..., T]], Callable[..., T]],
        retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=initial_wait, max=max_wait) + wait_random(0, jitter),
            retry=retry_if_exception_type(retry_on),
            before_sleep=_log_before_sleep,
            reraise=True,
        ),
    )


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    max_attempts: int,
    initial_wait: float,
    retry_on: type[BaseException] | tuple[type[BaseException], ...],
    **kwargs: Any,
) -> T:
    """Invoke ``func`` once under :func:`exponential_backoff_with_jitter`."""
    wrapped = exponential_backoff_with_jitter(
        max_attempts=max_attempts,
        initial_wait=initial_wait,
        retry_on=retry_on,
    )(func)
    return wrapped(*args, **kwargs)
