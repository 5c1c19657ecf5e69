"""Retry policy for transient network failures.

Bounded attempts with full-jitter exponential backoff: the n-th wait is
drawn uniformly from ``[0, min(max_wait, initial_wait * 2**n)]`` so that
many workers retrying the same upstream do not synchronize.

By default only errors deriving from `TransientError` are retried; callers
may narrow that to a subclass with ``retry_on``. Anything else
(not-found, rejected uploads, malformed responses, codec defects)
propagates on the first attempt. After the last attempt the final transient
error is re-raised unchanged.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from worker.core.config import WorkerSettings
from worker.core.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_wait_seconds: float = 0.5
    max_wait_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.retry_max_attempts),
            initial_wait_seconds=max(0.0, settings.retry_initial_wait_seconds),
            max_wait_seconds=max(0.0, settings.retry_max_wait_seconds),
        )


def _log_before_sleep(description: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s failed (attempt %d), retrying in %.2fs: %s",
            description, retry_state.attempt_number, sleep, exc,
        )

    return _before_sleep


async def retry_transient(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    description: str,
    retry_on: Union[type[TransientError], tuple[type[TransientError], ...]] = TransientError,
) -> T:
    """Await ``fn()`` until it succeeds, retrying only ``retry_on`` errors."""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_random_exponential(
            multiplier=policy.initial_wait_seconds,
            max=policy.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retry_on),
        reraise=True,
        before_sleep=_log_before_sleep(description),
    )

    async for attempt in retrying:
        with attempt:
            result = await fn()
    return result
