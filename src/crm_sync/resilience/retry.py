"""Retry executor for fallible CRM operations.

execute_with_retry() runs an async operation on a tenacity AsyncRetrying
loop and always returns a RetryResult; exceptions never cross it.

Retry eligibility (is_retryable_error):
- CRMAuthError: never
- CRMRateLimitError: always, waiting until the vendor's reset time (capped)
- other CRMError: the error's ``retryable`` flag
- anything else: only when the message or type name looks like a network,
  timeout or 5xx failure

Delay before retry n (0-indexed):
    min(base_delay * multiplier**n, max_delay) * (1 + jitter_factor * random())
"""

from __future__ import annotations

import asyncio
import random
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Generic, TypeVar

import structlog
from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from src.crm_sync.config import get_settings
from src.crm_sync.connectors.exceptions import CRMAuthError, CRMError, CRMRateLimitError
from src.crm_sync.core.monitoring import retry_attempts_total

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]

_RETRYABLE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"network", r"timeout", r"econnreset", r"enotfound", r"econnrefused", r"socket hang up", r"5\d\d")
]


class RetryConfig(BaseModel):
    """Backoff parameters. Delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1


PRESETS: dict[str, RetryConfig] = {
    "fast": RetryConfig(max_retries=2, base_delay=0.5, max_delay=5.0, backoff_multiplier=1.5, jitter_factor=0.1),
    "standard": RetryConfig(),
    "patient": RetryConfig(max_retries=5, base_delay=2.0, max_delay=60.0, backoff_multiplier=2.0, jitter_factor=0.2),
    "critical": RetryConfig(max_retries=10, base_delay=1.0, max_delay=120.0, backoff_multiplier=1.8, jitter_factor=0.15),
}


def create_config(scenario: str) -> RetryConfig:
    """Return a copy of a named preset: fast, standard, patient or critical."""
    try:
        return PRESETS[scenario].model_copy()
    except KeyError:
        raise ValueError(f"Unknown retry preset: {scenario}") from None


@dataclass
class RetryResult(Generic[T]):
    """Outcome of execute_with_retry()."""

    success: bool
    attempts: int
    total_time: float
    result: T | None = None
    error: BaseException | None = None


def compute_delay(attempt: int, config: RetryConfig, rand: Callable[[], float] = random.random) -> float:
    """Backoff delay in seconds before retry ``attempt`` (0-indexed)."""
    capped = min(config.base_delay * config.backoff_multiplier**attempt, config.max_delay)
    return capped * (1 + config.jitter_factor * rand())


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, CRMAuthError):
        return False
    if isinstance(exc, CRMRateLimitError):
        return True
    if isinstance(exc, CRMError):
        return exc.retryable
    text = f"{type(exc).__name__} {exc}"
    return any(pattern.search(text) for pattern in _RETRYABLE_PATTERNS)


def rate_limit_wait(error: CRMRateLimitError, now: datetime | None = None, max_wait: float | None = None) -> float:
    """Seconds until the vendor's rate-limit window resets, capped."""
    cap = max_wait if max_wait is not None else get_settings().RATE_LIMIT_MAX_WAIT_SECONDS
    now = now or datetime.now(timezone.utc)
    remaining = (error.reset_time - now).total_seconds()
    return min(max(remaining, 0.0), cap)


async def handle_rate_limit(error: CRMRateLimitError, sleep: SleepFn = asyncio.sleep) -> float:
    """Sleep until the rate-limit reset time (at most the configured cap)."""
    wait = rate_limit_wait(error)
    if wait > 0:
        logger.info("retry.rate_limit_wait", system=error.system, wait_seconds=round(wait, 3))
        await sleep(wait)
    return wait


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    label: str = "crm_operation",
    *,
    sleep: SleepFn = asyncio.sleep,
    rand: Callable[[], float] = random.random,
    clock: Callable[[], float] = time.monotonic,
) -> RetryResult[T]:
    """Run ``operation`` up to ``config.max_retries + 1`` times.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        config: Backoff parameters (defaults to the standard preset).
        label: Name used in logs and the retry metric.
        sleep: Awaitable sleep between attempts (tests inject a virtual one).
        rand: Jitter source in [0, 1).
        clock: Monotonic clock used for total_time.

    Returns:
        RetryResult with the value on success or the last error on failure.
    """
    config = config or create_config("standard")
    started = clock()
    attempts = 0

    def _wait(retry_state: RetryCallState) -> float:
        delay = compute_delay(retry_state.attempt_number - 1, config, rand)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, CRMRateLimitError):
            delay = max(delay, rate_limit_wait(exc))
        return delay

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retry.attempt_failed",
            label=label,
            attempt=retry_state.attempt_number,
            max_attempts=config.max_retries + 1,
            error=str(exc),
            wait_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else 0.0,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.max_retries + 1),
        wait=_wait,
        retry=retry_if_exception(is_retryable_error),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                attempts += 1
                try:
                    value = await operation()
                except Exception:
                    retry_attempts_total.labels(label=label, outcome="failure").inc()
                    raise
                retry_attempts_total.labels(label=label, outcome="success").inc()
    except Exception as exc:
        total = clock() - started
        logger.error("retry.failed", label=label, attempts=attempts, error=str(exc), total_time=round(total, 3))
        return RetryResult(success=False, attempts=attempts, total_time=total, error=exc)

    total = clock() - started
    if attempts > 1:
        logger.info("retry.recovered", label=label, attempts=attempts, total_time=round(total, 3))
    return RetryResult(success=True, attempts=attempts, total_time=total, result=value)


def wrap_with_retry(
    fn: Callable[..., Awaitable[T]],
    config: RetryConfig | None = None,
    label: str = "crm_method",
    *,
    sleep: SleepFn = asyncio.sleep,
) -> Callable[..., Awaitable[T]]:
    """Wrap an async callable so every call goes through execute_with_retry.

    The wrapper raises the last error when all attempts fail.
    """

    async def wrapper(*args, **kwargs) -> T:
        outcome = await execute_with_retry(lambda: fn(*args, **kwargs), config, label, sleep=sleep)
        if outcome.success:
            return outcome.result  # type: ignore[return-value]
        if outcome.error is not None:
            raise outcome.error
        raise CRMError(f"{label} failed after {outcome.attempts} attempts")

    return wrapper
