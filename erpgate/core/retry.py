"""Bounded retry with exponential backoff and jitter for remote ERP calls.

Failures are first turned into a FailureKind. The transport tags its own
errors; httpx exceptions map by type; anything else falls back to matching
the message against known transient patterns.

Usage:
    executor = RetryExecutor(RetryPolicy(max_retries=3))
    result = await executor.run(lambda: client.read("res.partner", [1]))
"""

import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Optional, TypeVar

import httpx
import structlog

from erpgate.core.clock import Clock, system_clock
from erpgate.core.exceptions import FailureKind, RemoteCallError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.2

# Fallback message patterns, checked in order
_MESSAGE_PATTERNS: tuple[tuple[re.Pattern[str], FailureKind], ...] = (
    (re.compile(r"ECONNREFUSED|connection refused", re.I), FailureKind.CONNECTION_REFUSED),
    (re.compile(r"ECONNRESET|connection.*reset", re.I), FailureKind.CONNECTION_RESET),
    (re.compile(r"ENOTFOUND|name or service not known|nodename nor servname", re.I), FailureKind.HOST_NOT_FOUND),
    (re.compile(r"ETIMEDOUT|timed? ?out", re.I), FailureKind.TIMEOUT),
    (re.compile(r"session.*expired", re.I), FailureKind.SESSION_EXPIRED),
    (re.compile(r"another module operation|processing another", re.I), FailureKind.BUSY),
    (re.compile(r"network", re.I), FailureKind.NETWORK),
)

TRANSIENT_KINDS: FrozenSet[FailureKind] = frozenset(
    {
        FailureKind.TIMEOUT,
        FailureKind.CONNECTION_REFUSED,
        FailureKind.HOST_NOT_FOUND,
        FailureKind.CONNECTION_RESET,
        FailureKind.NETWORK,
        FailureKind.SESSION_EXPIRED,
    }
)


def classify_message(message: str) -> FailureKind:
    for pattern, kind in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return kind
    return FailureKind.OTHER


def classify_failure(error: BaseException) -> FailureKind:
    """Map any exception onto the closed set of failure kinds."""
    if isinstance(error, RemoteCallError):
        return error.kind
    if isinstance(error, httpx.TimeoutException):
        return FailureKind.TIMEOUT
    if isinstance(error, httpx.ConnectError):
        kind = classify_message(str(error))
        return kind if kind != FailureKind.OTHER else FailureKind.CONNECTION_REFUSED
    if isinstance(error, httpx.TransportError):
        return FailureKind.NETWORK
    return classify_message(str(error))


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 10.0  # seconds
    backoff_multiplier: float = 2.0
    retryable_kinds: FrozenSet[FailureKind] = field(default=TRANSIENT_KINDS)
    retry_any_error: bool = False

    def is_retryable(self, error: BaseException) -> bool:
        if self.retry_any_error:
            return True
        return classify_failure(error) in self.retryable_kinds


def compute_backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before the retry that follows 0-based ``attempt``.

    min(max_delay, initial_delay * multiplier**attempt) plus up to 20% jitter,
    so the result never exceeds max_delay * 1.2.
    """
    delay = min(policy.max_delay, policy.initial_delay * policy.backoff_multiplier**attempt)
    return delay + delay * JITTER_RATIO * rand()


class RetryHooks:
    """Per-attempt callbacks. Subclass and override what you need."""

    async def before_attempt(self, attempt: int) -> None:
        pass

    async def on_success(self, attempt: int, result: Any, duration_ms: int) -> None:
        pass

    async def on_failure(self, attempt: int, error: BaseException, will_retry: bool, duration_ms: int) -> None:
        pass


class RetryExecutor:
    """Runs an async operation up to ``max_retries + 1`` times."""

    def __init__(
        self,
        policy: RetryPolicy,
        clock: Clock = system_clock,
        rand: Callable[[], float] = random.random,
    ):
        self.policy = policy
        self.clock = clock
        self.rand = rand

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        hooks: Optional[RetryHooks] = None,
        description: str = "operation",
    ) -> T:
        hooks = hooks or RetryHooks()
        last_error: BaseException | None = None

        for attempt in range(self.policy.max_retries + 1):
            await hooks.before_attempt(attempt)
            started = time.perf_counter()
            try:
                result = await operation()
            except Exception as e:
                duration_ms = int((time.perf_counter() - started) * 1000)
                last_error = e
                retryable = self.policy.is_retryable(e)
                will_retry = retryable and attempt < self.policy.max_retries
                await hooks.on_failure(attempt, e, will_retry, duration_ms)

                if not will_retry:
                    break

                delay = compute_backoff_delay(attempt, self.policy, self.rand)
                logger.warning(
                    "Retrying after failure",
                    operation=description,
                    attempt=attempt + 1,
                    max_attempts=self.policy.max_retries + 1,
                    failure_kind=classify_failure(e).value,
                    delay_seconds=round(delay, 3),
                    error=str(e),
                )
                await self.clock.sleep(delay)
                continue

            duration_ms = int((time.perf_counter() - started) * 1000)
            await hooks.on_success(attempt, result, duration_ms)
            return result

        if last_error:
            raise last_error
        raise RuntimeError(f"Unexpected state in retry loop for {description}")
