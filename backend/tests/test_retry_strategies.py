"""Tests for directory lookup retry strategies."""

import httpx
import pytest

from app.config import Settings
from conftest import no_sleep
from services.workflow_service import directory_retry_strategy
from workflow.retry_strategies import (
    RETRY_PRESETS,
    LookupUnavailable,
    RetryPolicy,
    RetryStrategy,
    execute_with_retry,
)


def status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://directory.test/members/x")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(code, request=request))


# ─── RetryStrategy creation ───

class TestRetryStrategyCreation:
    def test_none_strategy(self):
        s = RetryStrategy.none()
        assert s.policy == RetryPolicy.NONE
        assert s.max_retries == 0

    def test_fixed_strategy(self):
        s = RetryStrategy.fixed(max_retries=3, delay=5.0)
        assert s.policy == RetryPolicy.FIXED
        assert s.base_delay == 5.0
        assert s.jitter is False

    def test_exponential_strategy(self):
        s = RetryStrategy.exponential(max_retries=5, base_delay=1.0, max_delay=60.0)
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.max_retries == 5
        assert s.jitter is True

    def test_from_dict(self):
        config = {
            'policy': 'exponential',
            'max_retries': 7,
            'base_delay': 0.5,
            'max_delay': 120.0,
            'jitter': True,
        }
        s = RetryStrategy.from_dict(config)
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.max_retries == 7
        assert s.base_delay == 0.5

    def test_from_dict_fixed_and_none(self):
        s = RetryStrategy.from_dict({'policy': 'fixed', 'max_retries': 2, 'base_delay': 1.5})
        assert s.policy == RetryPolicy.FIXED
        assert s.jitter is False
        assert s.compute_delay(2) == 1.5
        assert RetryStrategy.from_dict({'policy': 'none'}).max_retries == 0


# ─── Delay computation ───

class TestDelayComputation:
    def test_none_delay(self):
        assert RetryStrategy.none().compute_delay(1) == 0.0

    def test_fixed_delay(self):
        s = RetryStrategy.fixed(delay=5.0)
        assert s.compute_delay(1) == 5.0
        assert s.compute_delay(3) == 5.0

    def test_exponential_delay_no_jitter(self):
        s = RetryStrategy.exponential(base_delay=1.0, jitter=False)
        assert [s.compute_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_max_delay_cap(self):
        s = RetryStrategy.exponential(base_delay=10.0, max_delay=30.0, jitter=False)
        assert s.compute_delay(5) == 30.0  # 10 * 16 = 160, capped at 30

    def test_exponential_with_jitter_in_range(self):
        s = RetryStrategy.exponential(base_delay=10.0, jitter=True, max_delay=100.0)
        for _ in range(50):
            # base=10, jitter_range=0.25 → between 7.5 and 12.5
            assert 7.5 <= s.compute_delay(1) <= 12.5


# ─── Should retry ───

class TestShouldRetry:
    def test_none_never_retries(self):
        assert RetryStrategy.none().should_retry(1) is False

    def test_exceeds_max_retries(self):
        s = RetryStrategy.fixed(max_retries=3)
        assert s.should_retry(3) is True
        assert s.should_retry(4) is False

    def test_transient_errors_retried(self):
        s = RetryStrategy.exponential()
        assert s.should_retry(1, LookupUnavailable("directory timeout")) is True
        assert s.should_retry(1, TimeoutError("timeout")) is True
        assert s.should_retry(1, ConnectionError("refused")) is True
        assert s.should_retry(1, httpx.ConnectTimeout("slow")) is True

    def test_http_status_errors(self):
        s = RetryStrategy.exponential()
        assert s.should_retry(1, status_error(503)) is True
        assert s.should_retry(1, status_error(429)) is True
        assert s.should_retry(1, status_error(400)) is False

    def test_programming_errors_not_retried(self):
        assert RetryStrategy.exponential().should_retry(1, KeyError("members")) is False

    def test_specific_retryable_errors(self):
        s = RetryStrategy.exponential()
        s.retryable_errors = ['ValueError']
        assert s.should_retry(1, ValueError("bad")) is True
        assert s.should_retry(1, TypeError("wrong")) is False


# ─── Presets ───

class TestPresets:
    def test_all_presets_exist(self):
        assert set(RETRY_PRESETS.keys()) == {'none', 'directory'}

    def test_directory_preset_is_bounded(self):
        s = RETRY_PRESETS['directory']
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.max_retries == 3
        assert s.max_delay <= 2.0

    def test_settings_select_the_directory_strategy(self):
        assert directory_retry_strategy(Settings(DIRECTORY_RETRY_PRESET='none')) is RETRY_PRESETS['none']
        s = directory_retry_strategy(Settings(
            DIRECTORY_RETRY_POLICY={'policy': 'fixed', 'max_retries': 5, 'base_delay': 0.1},
        ))
        assert s.policy == RetryPolicy.FIXED
        assert s.max_retries == 5


# ─── Execute with retry ───

class TestExecuteWithRetry:
    async def test_success_first_attempt(self):
        call_count = 0

        async def func():
            nonlocal call_count
            call_count += 1
            return 42

        result = await execute_with_retry(func, RetryStrategy.fixed(max_retries=3, delay=0.01), sleep=no_sleep)
        assert result == 42
        assert call_count == 1

    async def test_retries_on_failure(self):
        call_count = 0

        async def func():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ConnectionError("refused")
            return "ok"

        result = await execute_with_retry(func, RetryStrategy.fixed(max_retries=5, delay=0.01), sleep=no_sleep)
        assert result == "ok"
        assert call_count == 3

    async def test_exhausts_retries(self):
        call_count = 0

        async def func():
            nonlocal call_count
            call_count += 1
            raise LookupUnavailable("always down")

        with pytest.raises(LookupUnavailable):
            await execute_with_retry(func, RetryStrategy.fixed(max_retries=2, delay=0.01), sleep=no_sleep)
        assert call_count == 3

    async def test_no_retry_on_non_retryable(self):
        call_count = 0

        async def func():
            nonlocal call_count
            call_count += 1
            raise ValueError("not retryable")

        with pytest.raises(ValueError):
            await execute_with_retry(func, RetryStrategy.exponential(max_retries=5, base_delay=0.01))
        assert call_count == 1

    async def test_on_retry_callback_and_sleep(self):
        retries = []
        slept = []

        async def func():
            if len(retries) < 2:
                raise ConnectionError("fail")
            return "done"

        async def on_retry(attempt, error, delay):
            retries.append(attempt)

        async def sleep(delay):
            slept.append(delay)

        result = await execute_with_retry(
            func,
            RetryStrategy.fixed(max_retries=5, delay=0.25),
            on_retry=on_retry,
            sleep=sleep,
        )
        assert result == "done"
        assert retries == [1, 2]
        assert slept == [0.25, 0.25]
