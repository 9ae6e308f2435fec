"""
Resilience patterns: explicit retry policies for external calls

Each pipeline component that owns an external call (source EHR, destination
FHIR store, mapping store, event transport) receives a RetryPolicy value at
construction. The policy decides which failures are retried, how many times,
and with what exponential backoff, so retry behavior is testable without a
network.

Usage:
    policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.5, retry_on=(SourceUnavailable,))
    document = await policy.call(client.read_document, "doc-123")

Only exceptions listed in ``retry_on`` are retried, and an exception carrying
``transient = False`` is never retried even when its type is listed.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

import structlog
from discharge_export.core.config import settings
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for classified-transient failures"""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    retry_on: Tuple[Type[BaseException], ...] = ()

    def should_retry(self, exc: BaseException) -> bool:
        """Retry only listed exception types that are not flagged non-transient"""
        if not self.retry_on or not isinstance(exc, self.retry_on):
            return False
        return bool(getattr(exc, "transient", True))

    def retrying(self) -> AsyncRetrying:
        """Build the tenacity controller for one logical call"""
        return AsyncRetrying(
            retry=retry_if_exception(self.should_retry),
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.base_delay_seconds, max=self.max_delay_seconds),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``fn(*args, **kwargs)`` under this policy"""
        result = None
        async for attempt in self.retrying():
            with attempt:
                result = await fn(*args, **kwargs)
        return result


def default_retry_policy(*retry_on: Type[BaseException]) -> RetryPolicy:
    """Retry policy built from application settings"""
    return RetryPolicy(
        max_attempts=settings.RETRY_MAX_ATTEMPTS,
        base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
        max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
        retry_on=tuple(retry_on),
    )
