"""Retry/backoff wrapper for rate-limited upstream calls.

Every Graph API call made by the resolver, the sync, and the identity cache
goes through ``call_with_backoff``:

  - RateLimitedError        retried, delay = base * 2**attempt (1s, 2s, ...)
  - UpstreamTimeoutError    retried only when ``retry_on_timeout`` is set
  - anything else           propagates immediately (auth, not-found, malformed)

Attempts are capped at ``max_attempts`` in total (default 3). Each attempt has
its own timeout budget; an attempt that overruns it raises
UpstreamTimeoutError.

Usage
-----
    detail = await call_with_backoff(
        lambda: client.get_conversation_detail(conversation_id, token),
        operation="conversation_detail",
    )
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from inboxsync.config import settings
from inboxsync.errors import RateLimitedError, UpstreamTimeoutError
from inboxsync.observability.metrics import get_metrics

logger = structlog.get_logger()

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def _is_retryable(retry_on_timeout: bool) -> Callable[[BaseException], bool]:
    def predicate(exc: BaseException) -> bool:
        if isinstance(exc, RateLimitedError):
            return True
        if isinstance(exc, UpstreamTimeoutError):
            return retry_on_timeout
        return False

    return predicate


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "upstream_retry_scheduled",
            operation=operation,
            attempt=state.attempt_number,
            delay_s=state.next_action.sleep if state.next_action else None,
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )

    return before_sleep


async def call_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    operation: str,
    max_attempts: int | None = None,
    base_delay: float | None = None,
    timeout: float | None = None,
    retry_on_timeout: bool = True,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``fn`` with per-attempt timeout and exponential backoff on throttling."""
    attempts_cap = max_attempts if max_attempts is not None else settings.retry_max_attempts
    base = base_delay if base_delay is not None else settings.retry_base_delay_s
    budget = timeout if timeout is not None else settings.upstream_timeout_s

    attempts = 0

    async def _attempt() -> T:
        nonlocal attempts
        attempts += 1
        try:
            return await asyncio.wait_for(fn(), timeout=budget)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError(
                f"{operation} timed out after {budget:.1f}s"
            ) from e

    retrying = AsyncRetrying(
        retry=retry_if_exception(_is_retryable(retry_on_timeout)),
        stop=stop_after_attempt(attempts_cap),
        wait=wait_exponential(multiplier=base, exp_base=2, min=0),
        sleep=sleep,
        before_sleep=_log_retry(operation),
        reraise=True,
    )

    try:
        return await retrying(_attempt)
    finally:
        if attempts > 1:
            await get_metrics().inc("upstream_retries_total", attempts - 1)
