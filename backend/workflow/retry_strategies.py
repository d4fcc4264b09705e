"""Retry policies for action nodes and collaborator calls.

``max_attempts`` counts every attempt, the first one included: with the
default action policy an action is tried at most five times, waiting
2s, 4s, 8s and 16s between attempts, before the run fails.

The executor drives action retries itself so that each attempt lands in
the audit trail; ``execute_with_retry`` covers plain collaborator reads.
"""

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from core.exceptions import CollaboratorError


class RetryPolicy(str, Enum):
    EXPONENTIAL = "exponential"
    NONE = "none"


_BACKOFF: dict[RetryPolicy, Callable[[float, int], float]] = {
    RetryPolicy.EXPONENTIAL: lambda base, attempt: base * (2 ** (attempt - 1)),
    RetryPolicy.NONE: lambda base, attempt: 0.0,
}


@dataclass
class RetryStrategy:
    policy: RetryPolicy
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 300.0
    jitter: bool = True
    jitter_range: float = 0.5

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """A single attempt."""
        return cls(policy=RetryPolicy.NONE, max_attempts=1, jitter=False)

    @classmethod
    def exponential(
        cls,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: bool = True,
    ) -> 'RetryStrategy':
        return cls(RetryPolicy.EXPONENTIAL, max_attempts, base_delay, max_delay, jitter)

    @classmethod
    def from_settings(cls, settings) -> 'RetryStrategy':
        """The deployment's action policy (``ACTION_MAX_ATTEMPTS``, ``RETRY_*``)."""
        if settings.ACTION_MAX_ATTEMPTS <= 1:
            return cls.none()
        return cls.exponential(
            max_attempts=settings.ACTION_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        )

    def compute_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt`` (1-based)."""
        delay = min(_BACKOFF[self.policy](self.base_delay, attempt), self.max_delay)
        if self.jitter and delay > 0:
            spread = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return round(delay, 3)

    def should_retry(
        self,
        attempt: int,
        error: Optional[Exception] = None,
        retryable: Optional[bool] = None,
    ) -> bool:
        """Whether another attempt may follow failed attempt ``attempt``.

        Args:
            attempt: Number of the attempt that just failed (1-based)
            error: The exception raised, if any
            retryable: Explicit classification; takes precedence over ``error``
        """
        if self.policy == RetryPolicy.NONE or attempt >= self.max_attempts:
            return False
        if retryable is not None:
            return retryable
        return error is None or is_transient_error(error)


def is_transient_error(error: Exception) -> bool:
    """Timeouts, transport failures and collaborator errors marked retryable."""
    if isinstance(error, CollaboratorError):
        return error.retryable
    return isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError))


RETRY_PRESETS: dict[str, RetryStrategy] = {
    'none': RetryStrategy.none(),
    'actions': RetryStrategy.exponential(max_attempts=5, base_delay=2.0, max_delay=60.0),
    'collaborator_read': RetryStrategy.exponential(max_attempts=3, base_delay=0.5, max_delay=5.0),
}


async def execute_with_retry(
    func: Callable[..., Awaitable],
    strategy: RetryStrategy,
    *args,
    on_retry: Optional[Callable] = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
    **kwargs,
):
    """Await ``func(*args, **kwargs)``, retrying transient failures.

    ``on_retry(attempt, error, delay)`` is called before each wait. The last
    exception propagates once it is fatal or attempts run out.
    """
    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not strategy.should_retry(attempt, e):
                raise
            delay = strategy.compute_delay(attempt)
            if on_retry:
                on_retry(attempt, e, delay)
            await sleep(delay)
            attempt += 1
