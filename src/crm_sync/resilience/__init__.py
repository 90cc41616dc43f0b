"""Retry/backoff executor and circuit breaker for CRM calls."""

from src.crm_sync.resilience.circuit_breaker import CircuitBreaker, CircuitState
from src.crm_sync.resilience.retry import (
    PRESETS,
    RetryConfig,
    RetryResult,
    compute_delay,
    create_config,
    execute_with_retry,
    handle_rate_limit,
    is_retryable_error,
    wrap_with_retry,
)

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "PRESETS",
    "RetryConfig",
    "RetryResult",
    "compute_delay",
    "create_config",
    "execute_with_retry",
    "handle_rate_limit",
    "is_retryable_error",
    "wrap_with_retry",
]
