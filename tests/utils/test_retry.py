"""Tests for retry logic.

Tests cover:
- RetryConfig validation and delay calculation
- Successful retry after transient failures
- Retry exhaustion
- Exception type filtering
- Custom retry callbacks
"""

from unittest.mock import Mock

import pytest

from feeledger.exceptions import ConflictError, TransientStorageError
from feeledger.utils.retry import STORAGE_RETRY, RetryConfig, retry_sync

FAST = RetryConfig(max_retries=2, base_delay=0.001, max_delay=0.01, jitter=False)


class TestRetryConfig:
    def test_default_config(self):
        config = RetryConfig()

        assert config.max_retries == 3
        assert config.base_delay == 1.0
        assert config.max_delay == 60.0
        assert config.backoff_factor == 2.0
        assert config.jitter is True
        assert config.retryable_exceptions == (TransientStorageError,)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"base_delay": 0},
            {"base_delay": 2.0, "max_delay": 1.0},
            {"backoff_factor": 0.5},
            {"jitter_range": 1.5},
        ],
    )
    def test_invalid_config(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)

    def test_exponential_delay_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, backoff_factor=2.0, jitter=False)
        assert [config.calculate_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_range(self):
        config = RetryConfig(base_delay=1.0, jitter=True, jitter_range=0.1)
        for _ in range(50):
            assert 0.9 <= config.calculate_delay(0) <= 1.1

    def test_storage_retry_is_short(self):
        assert STORAGE_RETRY.max_delay <= 2.0
        assert STORAGE_RETRY.retryable_exceptions == (TransientStorageError,)


class TestRetrySync:
    def test_succeeds_after_transient_failures(self):
        func = Mock(side_effect=[TransientStorageError("locked"), TransientStorageError("locked"), "ok"])
        assert retry_sync(func, config=FAST) == "ok"
        assert func.call_count == 3

    def test_exhausted(self):
        func = Mock(side_effect=TransientStorageError("locked"))
        with pytest.raises(TransientStorageError):
            retry_sync(func, config=FAST)
        assert func.call_count == 3

    def test_conflicts_are_not_retried(self):
        func = Mock(side_effect=ConflictError("already paid"))
        with pytest.raises(ConflictError):
            retry_sync(func, config=FAST)
        assert func.call_count == 1

    def test_on_retry_callback(self):
        func = Mock(side_effect=[TransientStorageError("locked"), "ok"])
        on_retry = Mock()
        retry_sync(func, config=FAST, on_retry=on_retry)
        on_retry.assert_called_once()
        assert on_retry.call_args.args[1] == 1

