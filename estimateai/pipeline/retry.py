"""
Single retry helper for every model call site.

Retryable errors are retried up to the attempt cap with a linear backoff
(base x attempt) plus random jitter. Fatal errors re-raise immediately.
A per-attempt wall-clock timeout counts as retryable.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
    wait_random,
)

from estimateai.config import settings
from estimateai.engines.base import ErrorClass
from estimateai.observability.metrics import model_call_retries_total

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay: float = 0.8
    jitter: float = 0.25
    timeout: Optional[float] = None

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER_SECONDS,
            timeout=settings.MODEL_CALL_TIMEOUT_SECONDS,
        )


def backoff_wait(policy: BackoffPolicy):
    """base x attempt plus uniform jitter in [0, jitter]."""
    return wait_incrementing(start=policy.base_delay, increment=policy.base_delay) + wait_random(
        0, policy.jitter
    )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    classify: Callable[[BaseException], ErrorClass],
    policy: Optional[BackoffPolicy] = None,
    label: str = "model_call",
) -> T:
    """
    Run operation until it succeeds, fails fatally, or exhausts the policy.

    The last error is re-raised unchanged so callers can classify it again.
    """
    policy = policy or BackoffPolicy.from_settings()

    def _is_retriable(error: BaseException) -> bool:
        if isinstance(error, asyncio.CancelledError):
            return False
        return classify(error) == ErrorClass.RETRYABLE

    def _before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        model_call_retries_total.labels(operation=label).inc()
        logger.warning(
            "model_call_retrying",
            operation=label,
            attempt=state.attempt_number,
            max_attempts=policy.max_attempts,
            delay_seconds=round(state.next_action.sleep, 3) if state.next_action else None,
            error=str(error),
        )

    async def _attempt() -> T:
        if policy.timeout:
            return await asyncio.wait_for(operation(), timeout=policy.timeout)
        return await operation()

    retrying = AsyncRetrying(
        retry=retry_if_exception(_is_retriable),
        wait=backoff_wait(policy),
        stop=stop_after_attempt(policy.max_attempts),
        before_sleep=_before_sleep,
        reraise=True,
    )
    return await retrying(_attempt)
