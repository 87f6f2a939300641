"""Retry with exponential backoff and a sliding-window upload throttle."""

import asyncio
import base64
import binascii
import random
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Tuple, TypeVar

from loguru import logger

from ..api.exceptions import PSARateLimitError
from ..models.request import OversizePolicy, RetryPolicy, ThrottlePolicy
from .exceptions import MigrationError, OversizeItemError, RetryExhaustedError

T = TypeVar('T')

# transports do not expose status codes uniformly, so classify on the text
TRANSIENT_MARKERS = (
    '429',
    'too many requests',
    'timeout',
    'temporarily',
    'gateway',
    'service unavailable',
    '500',
    '502',
    '503',
    '504',
)
MIN_DELAY_MS = 50
MAX_DELAY_MS = 10_000
JITTER_RATIO = 0.3


def is_transient_error(error: BaseException) -> bool:
    """True when retrying the same call may succeed."""
    if isinstance(error, PSARateLimitError):
        return True
    if isinstance(error, MigrationError):
        return False
    text = str(error).lower()
    return any(marker in text for marker in TRANSIENT_MARKERS)


def backoff_delay_ms(
    policy: RetryPolicy, attempt: int, rng: Optional[random.Random] = None
) -> float:
    """Delay before retry number ``attempt + 1``."""
    delay = max(MIN_DELAY_MS, policy.base_delay_ms) * (2 ** attempt)
    if policy.jitter:
        delay += (rng or random).random() * delay * JITTER_RATIO
    return min(delay, MAX_DELAY_MS)


def base64_size(data: str) -> int:
    """Decoded byte length of a base64 payload."""
    try:
        return len(base64.b64decode(data))
    except (binascii.Error, ValueError):
        return len(data.encode('utf-8'))


class RetryExecutor:
    """Runs one operation, retrying transient failures."""

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.policy = policy
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.logger = logger.bind(component='RetryExecutor')

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = 'operation',
        entity_kind: Optional[str] = None,
        entity_id: Optional[int] = None,
        phase: Optional[str] = None,
    ) -> T:
        """Await ``operation`` until it succeeds or fails for good.

        Raises:
            RetryExhaustedError: A transient error outlived ``max_retries``
            Exception: Any non-transient error, unchanged
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not is_transient_error(e):
                    raise
                if attempt >= self.policy.max_retries:
                    raise RetryExhaustedError(
                        f'{description} failed after {attempt + 1} attempts: {e}',
                        attempts=attempt + 1,
                        entity_kind=entity_kind,
                        entity_id=entity_id,
                        phase=phase,
                    ) from e
                delay = backoff_delay_ms(self.policy, attempt, self._rng)
                self.logger.warning(
                    f'{description} hit a transient error ({e}); '
                    f'retry {attempt + 1}/{self.policy.max_retries} in {delay:.0f}ms'
                )
                await self._sleep(delay / 1000)
                attempt += 1


class UploadThrottle:
    """Byte budget over a sliding window of recent uploads.

    Uploads are delayed, never rejected, until they fit.
    """

    def __init__(
        self,
        policy: ThrottlePolicy,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy
        self._clock = clock
        self._sleep = sleep
        self._samples: Deque[Tuple[float, int]] = deque()
        self.logger = logger.bind(component='UploadThrottle')

    def _prune(self, now: float) -> None:
        while self._samples and now - self._samples[0][0] >= self.policy.window_seconds:
            self._samples.popleft()

    def bytes_in_window(self) -> int:
        self._prune(self._clock())
        return sum(size for _, size in self._samples)

    async def acquire(self, size: int) -> None:
        """Wait until ``size`` more bytes fit in the window."""
        while True:
            now = self._clock()
            self._prune(now)
            used = sum(s for _, s in self._samples)
            if not self._samples or used + size <= self.policy.max_bytes_per_window:
                return
            wait = self._samples[0][0] + self.policy.window_seconds - now
            self.logger.info(
                f'Upload of {size} bytes waits {wait:.1f}s '
                f'({used}/{self.policy.max_bytes_per_window} bytes in window)'
            )
            await self._sleep(max(wait, 0.001))

    def record(self, size: int) -> None:
        self._samples.append((self._clock(), size))


class ThrottledRetryExecutor(RetryExecutor):
    """Retry executor that also meters byte-bearing uploads.

    One instance belongs to one run.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy,
        throttle_policy: ThrottlePolicy,
        oversize_policy: OversizePolicy = OversizePolicy.SKIP_AND_NOTE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(retry_policy, sleep=sleep, rng=rng)
        self.throttle_policy = throttle_policy
        self.oversize_policy = oversize_policy
        self.throttle = UploadThrottle(throttle_policy, clock=clock, sleep=sleep)

    def admit(
        self,
        size: int,
        descriptor: str,
        entity_kind: Optional[str] = None,
        entity_id: Optional[int] = None,
    ) -> bool:
        """Apply the oversize policy; False means skip the item.

        Raises:
            OversizeItemError: Under the fail policy
        """
        limit = self.throttle_policy.max_single_item_bytes
        if size <= limit:
            return True
        if self.oversize_policy == OversizePolicy.FAIL:
            raise OversizeItemError(
                f'Attachment {descriptor} exceeds max_single_item_bytes ({limit})',
                size_bytes=size,
                limit_bytes=limit,
                entity_kind=entity_kind,
                entity_id=entity_id,
                phase='copy',
            )
        return False

    async def upload(
        self,
        size: int,
        operation: Callable[[], Awaitable[T]],
        description: str = 'upload',
        **context,
    ) -> T:
        """Throttle, then run the upload with retries, then account for it."""
        await self.throttle.acquire(size)
        result = await self.call(operation, description, **context)
        self.throttle.record(size)
        return result
