"""Tests for retry backoff and the upload throttle."""

import random

import pytest

from psa_migrate.api.exceptions import PSAAPIError, PSARateLimitError
from psa_migrate.migration.exceptions import (
    MigrationError,
    OversizeItemError,
    RetryExhaustedError,
)
from psa_migrate.migration.retry import (
    MAX_DELAY_MS,
    RetryExecutor,
    ThrottledRetryExecutor,
    UploadThrottle,
    backoff_delay_ms,
    base64_size,
    is_transient_error,
)
from psa_migrate.models.request import OversizePolicy, RetryPolicy, ThrottlePolicy


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class Operation:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestTransientClassification:
    @pytest.mark.parametrize(
        'message',
        [
            'HTTP 429: Too Many Requests',
            'Request timeout after 30s',
            'HTTP 503: Service Unavailable',
            'HTTP 502: Bad Gateway',
            'The server is temporarily unable to service your request',
        ],
    )
    def test_transient(self, message):
        assert is_transient_error(PSAAPIError(message))

    def test_rate_limit_error_is_transient(self):
        assert is_transient_error(PSARateLimitError('slow down', retry_after=5))

    @pytest.mark.parametrize(
        'error',
        [
            PSAAPIError('API request failed: Title is required'),
            MigrationError('verification timeout while reading back'),
            ValueError('bad payload'),
        ],
    )
    def test_not_transient(self, error):
        assert not is_transient_error(error)


class TestBackoff:
    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_delay_ms=500, jitter=False)

        assert [backoff_delay_ms(policy, n) for n in range(4)] == [500, 1000, 2000, 4000]

    def test_capped(self):
        policy = RetryPolicy(base_delay_ms=500, jitter=False)
        assert backoff_delay_ms(policy, 10) == MAX_DELAY_MS

    def test_jitter_stays_within_thirty_percent(self):
        policy = RetryPolicy(base_delay_ms=200, jitter=True)
        rng = random.Random(7)

        for attempt in range(4):
            base = 200 * 2 ** attempt
            delay = backoff_delay_ms(policy, attempt, rng)
            assert base <= delay <= base * 1.3


class TestRetryExecutor:
    def setup_method(self):
        self.clock = FakeClock()
        self.executor = RetryExecutor(
            RetryPolicy(max_retries=3, base_delay_ms=100, jitter=False),
            sleep=self.clock.sleep,
        )

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        operation = Operation(
            PSAAPIError('HTTP 503: Service Unavailable'),
            PSARateLimitError('Rate limit exceeded (429)', retry_after=1),
            42,
        )

        assert await self.executor.call(operation, 'create note') == 42
        assert operation.calls == 3
        assert self.clock.sleeps == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_non_transient_is_raised_immediately(self):
        error = PSAAPIError('API request failed: Title is required')
        operation = Operation(error)

        with pytest.raises(PSAAPIError) as exc_info:
            await self.executor.call(operation)

        assert exc_info.value is error
        assert self.clock.sleeps == []

    @pytest.mark.asyncio
    async def test_exhaustion(self):
        operation = Operation(*[PSAAPIError('HTTP 504: Gateway Timeout')] * 4)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await self.executor.call(
                operation, 'upload attachment', entity_kind='configurationItem', entity_id=4001
            )

        error = exc_info.value
        assert error.attempts == 4
        assert error.entity_id == 4001
        assert isinstance(error.__cause__, PSAAPIError)
        assert 'upload attachment failed after 4 attempts' in str(error)
        assert len(self.clock.sleeps) == 3

    @pytest.mark.asyncio
    async def test_zero_retries(self):
        executor = RetryExecutor(RetryPolicy(max_retries=0), sleep=self.clock.sleep)

        with pytest.raises(RetryExhaustedError):
            await executor.call(Operation(PSAAPIError('HTTP 503: Service Unavailable')))


class TestUploadThrottle:
    def setup_method(self):
        self.clock = FakeClock()
        self.policy = ThrottlePolicy(
            max_bytes_per_window=100, max_single_item_bytes=60, window_seconds=10
        )
        self.throttle = UploadThrottle(self.policy, clock=self.clock, sleep=self.clock.sleep)

    @pytest.mark.asyncio
    async def test_waits_for_window_to_roll(self):
        await self.throttle.acquire(60)
        self.throttle.record(60)
        self.clock.now = 4.0

        await self.throttle.acquire(60)

        assert self.clock.now == pytest.approx(10.0)
        assert self.throttle.bytes_in_window() == 0

    @pytest.mark.asyncio
    async def test_window_never_exceeds_budget(self):
        for size in (30, 60, 10, 55, 45, 60, 5):
            await self.throttle.acquire(size)
            self.throttle.record(size)
            assert self.throttle.bytes_in_window() <= self.policy.max_bytes_per_window
            self.clock.now += 1.5

    @pytest.mark.asyncio
    async def test_fits_without_waiting(self):
        await self.throttle.acquire(40)
        self.throttle.record(40)
        await self.throttle.acquire(60)

        assert self.clock.sleeps == []


class TestThrottledRetryExecutor:
    def _executor(self, oversize_policy, clock):
        return ThrottledRetryExecutor(
            RetryPolicy(max_retries=1, jitter=False),
            ThrottlePolicy(max_bytes_per_window=100, max_single_item_bytes=60, window_seconds=10),
            oversize_policy,
            sleep=clock.sleep,
            clock=clock,
        )

    def test_admit_skip_policy(self):
        executor = self._executor(OversizePolicy.SKIP_AND_NOTE, FakeClock())

        assert executor.admit(60, 'a.txt')
        assert not executor.admit(61, 'big.iso')

    def test_admit_fail_policy(self):
        executor = self._executor(OversizePolicy.FAIL, FakeClock())

        with pytest.raises(OversizeItemError) as exc_info:
            executor.admit(61, '912 (big.iso)', entity_kind='configurationItem', entity_id=4001)

        assert exc_info.value.limit_bytes == 60
        assert exc_info.value.size_bytes == 61

    @pytest.mark.asyncio
    async def test_upload_is_recorded_after_success(self):
        clock = FakeClock()
        executor = self._executor(OversizePolicy.SKIP_AND_NOTE, clock)

        result = await executor.upload(50, Operation(PSAAPIError('HTTP 503: busy'), 7))

        assert result == 7
        assert executor.throttle.bytes_in_window() == 50

    @pytest.mark.asyncio
    async def test_failed_upload_uses_no_budget(self):
        clock = FakeClock()
        executor = self._executor(OversizePolicy.SKIP_AND_NOTE, clock)

        with pytest.raises(PSAAPIError):
            await executor.upload(50, Operation(PSAAPIError('API request failed: denied')))

        assert executor.throttle.bytes_in_window() == 0


def test_base64_size():
    assert base64_size('aGVsbG8=') == 5
    assert base64_size('not base64!') == len('not base64!')
