"""Tests for the retry executor.

Covers presets, backoff arithmetic, error classification, rate-limit waits,
and execute_with_retry / wrap_with_retry behaviour. Sleeps are AsyncMocks so
no test waits on real time.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.crm_sync.connectors.exceptions import CRMApiError, CRMAuthError, CRMRateLimitError
from src.crm_sync.resilience.retry import (
    PRESETS,
    RetryConfig,
    compute_delay,
    create_config,
    execute_with_retry,
    handle_rate_limit,
    is_retryable_error,
    rate_limit_wait,
    wrap_with_retry,
)


# ── Presets ────────────────────────────────────────────────────────────────


class TestPresets:
    """Named retry presets."""

    def test_standard_preset_defaults(self):
        """standard allows 3 retries from 1s up to 30s."""
        config = create_config("standard")
        assert config.max_retries == 3
        assert config.base_delay == 1.0
        assert config.max_delay == 30.0
        assert config.backoff_multiplier == 2.0
        assert config.jitter_factor == 0.1

    def test_all_presets_available(self):
        """fast, standard, patient and critical all exist with their retry counts."""
        assert set(PRESETS) == {"fast", "standard", "patient", "critical"}
        assert create_config("fast").max_retries == 2
        assert create_config("patient").max_retries == 5
        assert create_config("critical").max_retries == 10

    def test_create_config_returns_copy(self):
        """Mutating a created config never changes the shared preset."""
        config = create_config("standard")
        config.max_retries = 99
        assert PRESETS["standard"].max_retries == 3

    def test_unknown_preset_raises(self):
        """An unknown preset name raises ValueError."""
        with pytest.raises(ValueError, match="Unknown retry preset"):
            create_config("reckless")


# ── Backoff ────────────────────────────────────────────────────────────────


class TestComputeDelay:
    """Exponential backoff with jitter."""

    def test_exponential_without_jitter(self):
        """Delays double per attempt when jitter is zero."""
        config = RetryConfig()
        delays = [compute_delay(n, config, rand=lambda: 0.0) for n in range(4)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        """The base delay never exceeds max_delay."""
        config = RetryConfig(max_delay=30.0)
        assert compute_delay(10, config, rand=lambda: 0.0) == 30.0

    def test_jitter_is_proportional(self):
        """Jitter scales the capped delay by up to jitter_factor."""
        config = RetryConfig(jitter_factor=0.1)
        assert compute_delay(10, config, rand=lambda: 1.0) == pytest.approx(33.0)
        assert compute_delay(0, config, rand=lambda: 0.5) == pytest.approx(1.05)


# ── Classification ─────────────────────────────────────────────────────────


class TestIsRetryableError:
    """Error classification for retry eligibility."""

    def test_auth_error_never_retryable(self):
        """Auth errors are never retried, even with a timeout-like message."""
        assert is_retryable_error(CRMAuthError("Unauthorized: timeout", "zoho")) is False

    def test_rate_limit_always_retryable(self):
        """Rate-limit errors are always retried."""
        error = CRMRateLimitError("slow down", "hubspot", reset_time=datetime.now(timezone.utc))
        assert is_retryable_error(error) is True

    def test_api_error_uses_flag(self):
        """API errors follow their explicit retryable flag."""
        assert is_retryable_error(CRMApiError("boom", "zoho", "SERVER_ERROR", retryable=True)) is True
        assert is_retryable_error(CRMApiError("network down", "zoho", "BAD_REQUEST", retryable=False)) is False

    @pytest.mark.parametrize(
        "error",
        [
            ConnectionError("ECONNRESET"),
            Exception("socket hang up"),
            Exception("Request timeout after 30s"),
            Exception("upstream returned 502"),
            TimeoutError(),
            Exception("getaddrinfo ENOTFOUND crm.example.com"),
        ],
    )
    def test_network_like_errors_retryable(self, error):
        """Unclassified errors matching network or 5xx patterns are retried."""
        assert is_retryable_error(error) is True

    def test_plain_errors_not_retryable(self):
        """Unclassified errors without a network signature are not retried."""
        assert is_retryable_error(ValueError("invalid email")) is False


# ── Rate limits ────────────────────────────────────────────────────────────


class TestRateLimitWait:
    """Waiting out a vendor's rate-limit window."""

    def test_wait_until_reset(self):
        """The wait runs until the reported reset time."""
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        error = CRMRateLimitError("slow", "zoho", reset_time=now + timedelta(seconds=42))
        assert rate_limit_wait(error, now=now, max_wait=300) == 42.0

    def test_wait_is_capped(self):
        """The wait never exceeds max_wait."""
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        error = CRMRateLimitError("slow", "zoho", reset_time=now + timedelta(hours=2))
        assert rate_limit_wait(error, now=now, max_wait=300) == 300

    def test_past_reset_waits_zero(self):
        """A reset already in the past means no wait."""
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        error = CRMRateLimitError("slow", "zoho", reset_time=now - timedelta(seconds=5))
        assert rate_limit_wait(error, now=now) == 0.0

    async def test_handle_rate_limit_sleeps(self):
        """handle_rate_limit sleeps for the remaining window."""
        sleep = AsyncMock()
        error = CRMRateLimitError(
            "slow", "zoho", reset_time=datetime.now(timezone.utc) + timedelta(seconds=10)
        )
        waited = await handle_rate_limit(error, sleep=sleep)
        sleep.assert_awaited_once()
        assert 8.0 < waited <= 10.0

    async def test_handle_rate_limit_skips_past_reset(self):
        """handle_rate_limit skips sleeping when the window has passed."""
        sleep = AsyncMock()
        error = CRMRateLimitError(
            "slow", "zoho", reset_time=datetime.now(timezone.utc) - timedelta(seconds=10)
        )
        assert await handle_rate_limit(error, sleep=sleep) == 0.0
        sleep.assert_not_awaited()


# ── execute_with_retry ─────────────────────────────────────────────────────


class TestExecuteWithRetry:
    """execute_with_retry outcomes and attempt accounting."""

    async def test_success_first_attempt(self):
        """A first-try success reports one attempt and never sleeps."""
        operation = AsyncMock(return_value="ok")
        sleep = AsyncMock()

        result = await execute_with_retry(operation, create_config("standard"), sleep=sleep)

        assert result.success is True
        assert result.result == "ok"
        assert result.attempts == 1
        assert result.error is None
        sleep.assert_not_awaited()

    async def test_recovers_after_transient_failures(self):
        """Transient failures back off, then the value is returned."""
        operation = AsyncMock(side_effect=[ConnectionError("ECONNRESET"), ConnectionError("ECONNRESET"), "ok"])
        sleep = AsyncMock()

        result = await execute_with_retry(operation, create_config("standard"), sleep=sleep, rand=lambda: 0.0)

        assert result.success is True
        assert result.result == "ok"
        assert result.attempts == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    async def test_exhausts_max_retries_plus_one(self):
        """A persistent network error is attempted max_retries + 1 times."""
        error = ConnectionError("ECONNRESET")
        operation = AsyncMock(side_effect=error)
        sleep = AsyncMock()

        result = await execute_with_retry(operation, create_config("standard"), sleep=sleep, rand=lambda: 0.0)

        assert result.success is False
        assert result.attempts == 4
        assert operation.await_count == 4
        assert result.error is error
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0, 4.0]

    async def test_auth_error_not_retried(self):
        """Auth errors stop after a single attempt."""
        operation = AsyncMock(side_effect=CRMAuthError("Unauthorized", "zoho", status_code=401))
        sleep = AsyncMock()

        result = await execute_with_retry(operation, create_config("standard"), sleep=sleep)

        assert result.success is False
        assert result.attempts == 1
        assert isinstance(result.error, CRMAuthError)
        sleep.assert_not_awaited()

    async def test_non_retryable_api_error_stops(self):
        """Non-retryable API errors stop after a single attempt."""
        operation = AsyncMock(side_effect=CRMApiError("bad", "zoho", "BAD_REQUEST", retryable=False))
        result = await execute_with_retry(operation, sleep=AsyncMock())
        assert result.attempts == 1
        assert result.success is False

    async def test_rate_limit_waits_for_reset(self):
        """Rate-limit errors wait for the vendor reset before retrying."""
        reset = datetime.now(timezone.utc) + timedelta(seconds=20)
        operation = AsyncMock(side_effect=[CRMRateLimitError("slow", "hubspot", reset_time=reset), "ok"])
        sleep = AsyncMock()

        result = await execute_with_retry(operation, create_config("standard"), sleep=sleep, rand=lambda: 0.0)

        assert result.success is True
        assert result.attempts == 2
        waited = sleep.await_args.args[0]
        assert 18.0 < waited <= 20.0

    async def test_total_time_uses_clock(self):
        """total_time is measured with the injected clock."""
        ticks = iter([100.0, 107.5])
        result = await execute_with_retry(AsyncMock(return_value=1), sleep=AsyncMock(), clock=lambda: next(ticks))
        assert result.total_time == 7.5

    async def test_fast_preset_attempts(self):
        """The fast preset makes three attempts in total."""
        operation = AsyncMock(side_effect=TimeoutError())
        result = await execute_with_retry(operation, create_config("fast"), sleep=AsyncMock())
        assert result.attempts == 3


# ── wrap_with_retry ────────────────────────────────────────────────────────


class TestWrapWithRetry:
    """wrap_with_retry decorated callables."""

    async def test_wrapper_returns_value_and_passes_args(self):
        """The wrapper forwards arguments and returns the final value."""
        fn = AsyncMock(side_effect=[ConnectionError("ECONNRESET"), "done"])
        wrapped = wrap_with_retry(fn, create_config("fast"), sleep=AsyncMock())

        assert await wrapped("a", key="b") == "done"
        fn.assert_awaited_with("a", key="b")
        assert fn.await_count == 2

    async def test_wrapper_raises_last_error(self):
        """The wrapper re-raises the final error."""
        fn = AsyncMock(side_effect=CRMAuthError("Unauthorized", "zoho"))
        wrapped = wrap_with_retry(fn, sleep=AsyncMock())

        with pytest.raises(CRMAuthError):
            await wrapped()
