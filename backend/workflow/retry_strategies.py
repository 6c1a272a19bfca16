"""Retry policies for calls to external collaborators.

The engine never retries its own transitions or notification deliveries.
Only lookups against the identity directory are retried, since they fail
transiently.

Usage:
    strategy = RETRY_PRESETS["directory"]
    members = await execute_with_retry(directory.resolve_members, strategy, "inspectors")
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    NONE = "none"


class LookupUnavailable(Exception):
    """Raised by collaborators for failures worth retrying."""


_TRANSIENT_STATUS = {429, 502, 503, 504}


@dataclass
class RetryStrategy:
    """Bounded retry with fixed or exponential delays."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    jitter: bool = True
    jitter_range: float = 0.25
    retryable_errors: list[str] = field(default_factory=list)

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries, fail immediately."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(cls, max_retries: int = 3, delay: float = 1.0) -> 'RetryStrategy':
        return cls(policy=RetryPolicy.FIXED, max_retries=max_retries, base_delay=delay, jitter=False)

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        jitter: bool = True,
    ) -> 'RetryStrategy':
        """Exponential backoff with optional jitter."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def from_dict(cls, config: dict) -> 'RetryStrategy':
        """Build a strategy from a settings document.

        Example: ``{"policy": "fixed", "max_retries": 2, "base_delay": 1.0}``
        """
        policy = RetryPolicy(config.get('policy', 'exponential'))
        if policy == RetryPolicy.NONE:
            return cls.none()
        if policy == RetryPolicy.FIXED:
            strategy = cls.fixed(
                max_retries=config.get('max_retries', 3),
                delay=config.get('base_delay', 1.0),
            )
        else:
            strategy = cls.exponential(
                max_retries=config.get('max_retries', 3),
                base_delay=config.get('base_delay', 0.5),
                max_delay=config.get('max_delay', 10.0),
                jitter=config.get('jitter', True),
            )
        strategy.retryable_errors = list(config.get('retryable_errors', []))
        return strategy

    def compute_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0
        if self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)
        if self.jitter and delay > 0:
            spread = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return round(delay, 3)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Whether failure number ``attempt`` is followed by another try."""
        if self.policy == RetryPolicy.NONE or attempt > self.max_retries:
            return False
        if error is None:
            return True
        if self.retryable_errors:
            return type(error).__name__ in self.retryable_errors

        if isinstance(error, (LookupUnavailable, httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
            return True
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code in _TRANSIENT_STATUS
        return False


# ─── Preset strategies ───

RETRY_PRESETS: dict[str, RetryStrategy] = {
    'none': RetryStrategy.none(),
    'directory': RetryStrategy.exponential(max_retries=3, base_delay=0.2, max_delay=2.0),
}


async def execute_with_retry(
    func: Callable[..., Awaitable],
    strategy: RetryStrategy,
    *args,
    on_retry: Optional[Callable] = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
    **kwargs,
):
    """Execute an async callable with the given retry strategy.

    Args:
        func: Async callable to execute.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, error, delay) called before each retry.
        sleep: Awaitable used to wait between attempts.

    Returns:
        The result of func(*args, **kwargs).

    Raises:
        The last exception once the strategy gives up.
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            attempt += 1
            if not strategy.should_retry(attempt, e):
                raise

            delay = strategy.compute_delay(attempt)
            logger.debug(
                "Retrying %s after %s (attempt %d, delay %.3fs)",
                getattr(func, "__name__", func), type(e).__name__, attempt, delay,
            )
            if on_retry:
                result = on_retry(attempt, e, delay)
                if asyncio.iscoroutine(result):
                    await result
            await sleep(delay)
