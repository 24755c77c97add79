"""Unit tests for the retry/backoff wrapper."""

import os
from unittest.mock import MagicMock, patch

import pytest

from retry_policy import RetryConfig, compute_delay_ms, with_retry


class TestComputeDelay:
    """Test backoff delay calculation"""

    def test_delays_double_until_clamped(self):
        config = RetryConfig()

        delays = [compute_delay_ms(attempt, config, jitter=0) for attempt in range(7)]

        assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000]

    @pytest.mark.parametrize("attempt", [0, 3, 10])
    def test_jitter_stays_below_one_second(self, attempt):
        config = RetryConfig()
        backoff = min(1000 * 2**attempt, 30000)

        with patch("retry_policy.random.random", return_value=0.999999):
            delay = compute_delay_ms(attempt, config)

        assert backoff <= delay < backoff + 1000

    def test_jitter_is_added_on_top_of_backoff(self):
        config = RetryConfig(base_delay_ms=500, backoff_multiplier=3, max_delay_ms=10000)

        assert compute_delay_ms(2, config, jitter=250) == 4750


class TestRetryConfig:
    """Test retry configuration loading"""

    def test_defaults(self):
        config = RetryConfig()

        assert config.max_retries == 5
        assert config.base_delay_ms == 1000
        assert config.backoff_multiplier == 2
        assert config.max_delay_ms == 30000

    def test_from_env(self, retry_env):
        config = RetryConfig.from_env()

        assert config.max_retries == 2
        assert config.base_delay_ms == 10
        assert config.max_delay_ms == 40
        assert config.backoff_multiplier == 2

    def test_from_env_without_variables_uses_defaults(self):
        for name in ("MAX_RETRIES", "BASE_DELAY_MS", "BACKOFF_MULTIPLIER", "MAX_DELAY_MS"):
            os.environ.pop(name, None)

        assert RetryConfig.from_env() == RetryConfig()


class TestWithRetry:
    """Test retry wrapper behaviour"""

    def test_returns_result_without_sleeping(self):
        sleep = MagicMock()
        operation = MagicMock(return_value="value")

        result = with_retry(operation, "test op", {}, RetryConfig(), sleep)

        assert result == "value"
        assert operation.call_count == 1
        sleep.assert_not_called()

    def test_always_failing_operation_attempts_max_retries_plus_one(self):
        sleep = MagicMock()
        error = RuntimeError("boom")
        operation = MagicMock(side_effect=error)
        config = RetryConfig(max_retries=5)

        with patch("retry_policy.random.random", return_value=0.5):
            with pytest.raises(RuntimeError) as excinfo:
                with_retry(operation, "test op", {"key": "value"}, config, sleep)

        assert excinfo.value is error
        assert operation.call_count == 6
        assert sleep.call_count == 5

        delays_ms = [call.args[0] * 1000 for call in sleep.call_args_list]
        assert delays_ms == pytest.approx([1500, 2500, 4500, 8500, 16500])
        assert all(later > earlier for earlier, later in zip(delays_ms, delays_ms[1:]))

    def test_delays_never_exceed_clamp_plus_jitter(self):
        sleep = MagicMock()
        operation = MagicMock(side_effect=ValueError("nope"))
        config = RetryConfig(max_retries=8, base_delay_ms=1000, max_delay_ms=5000)

        with pytest.raises(ValueError):
            with_retry(operation, "test op", {}, config, sleep)

        assert operation.call_count == 9
        for call in sleep.call_args_list:
            assert call.args[0] * 1000 < 5000 + 1000

    def test_succeeds_after_transient_failures(self):
        sleep = MagicMock()
        operation = MagicMock(side_effect=[ConnectionError("1"), ConnectionError("2"), "ok"])

        result = with_retry(operation, "test op", {}, RetryConfig(max_retries=5), sleep)

        assert result == "ok"
        assert operation.call_count == 3
        assert sleep.call_count == 2

    def test_zero_retries_runs_once(self):
        sleep = MagicMock()
        operation = MagicMock(side_effect=KeyError("missing"))

        with pytest.raises(KeyError):
            with_retry(operation, "test op", {}, RetryConfig(max_retries=0), sleep)

        assert operation.call_count == 1
        sleep.assert_not_called()


class TestRetryLogging:
    """Test the structured log entries written around attempts"""

    def test_attempts_failures_and_exhaustion_are_logged(self, log_entries):
        operation = MagicMock(side_effect=RuntimeError("unreachable"))

        with pytest.raises(RuntimeError):
            with_retry(
                operation,
                "fetch token",
                {"environment": "dev-test"},
                RetryConfig(max_retries=3),
                sleep=MagicMock(),
            )

        entries = log_entries()

        attempts = [e for e in entries if e["message"] == "Attempting fetch token"]
        assert [e["attempt"] for e in attempts] == [1, 2, 3, 4]
        for entry in attempts:
            assert entry["level"] == "INFO"
            assert entry["timestamp"]
            assert entry["operation"] == "fetch token"
            assert entry["environment"] == "dev-test"

        failures = [e for e in entries if e["message"] == "fetch token failed, retrying"]
        assert len(failures) == 3
        assert all(e["level"] == "WARNING" for e in failures)
        assert 1000 <= failures[0]["delay_ms"] <= 2000
        assert failures[0]["error"] == "unreachable"

        exhausted = [e for e in entries if e["message"] == "fetch token failed after 4 attempts"]
        assert len(exhausted) == 1
        assert exhausted[0]["level"] == "ERROR"
        assert exhausted[0]["error_type"] == "RuntimeError"

    def test_success_after_retry_is_logged(self, log_entries):
        operation = MagicMock(side_effect=[RuntimeError("blip"), "ok"])

        with_retry(operation, "fetch token", config=RetryConfig(max_retries=2), sleep=MagicMock())

        recovered = [
            e for e in log_entries() if e["message"] == "fetch token succeeded after retry"
        ]
        assert len(recovered) == 1
        assert recovered[0]["level"] == "INFO"
        assert recovered[0]["attempt"] == 2

    def test_first_attempt_success_logs_no_retry_entries(self, log_entries):
        with_retry(lambda: "ok", "fetch token", sleep=MagicMock())

        messages = [e["message"] for e in log_entries()]
        assert messages == ["Attempting fetch token"]
