"""Exponential backoff for calls against flaky dependencies."""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    *,
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    retry_on: Sequence[type[BaseException]] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    label: str | None = None,
) -> T:
    """Call ``func`` until it succeeds or ``max_retries`` retries are used up.

    Waits grow as ``base_delay * 2**n`` capped at ``max_delay``, with full
    jitter. Only exceptions listed in ``retry_on`` are retried; the last one
    is re-raised once the budget is exhausted.
    """

    retryable = tuple(retry_on)
    name = label or getattr(func, "__name__", "call")

    def log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception()
        logger.warning(
            "retry.scheduled",
            extra={
                "extra_data": {
                    "call": name,
                    "retry": state.attempt_number,
                    "max_retries": max_retries,
                    "error": f"{type(exc).__name__}: {exc}",
                    "delay_sec": round(state.next_action.sleep, 3),
                }
            },
        )

    retrying = Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_random_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(retryable),
        before_sleep=log_retry,
        sleep=sleep,
        reraise=True,
    )
    try:
        return retrying(func)
    except retryable as exc:
        # A retryable error only escapes once the attempts are used up.
        logger.error(
            "retry.exhausted",
            extra={"extra_data": {"call": name, "attempts": max_retries + 1, "error": str(exc)}},
        )
        raise
