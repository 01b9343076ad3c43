"""
Retry policy with exponential backoff for the vector index, the graph store
and the LLM/embedding APIs.

Each call owns its own delay counter, so one policy instance can be shared by
any number of concurrent operations. Sleeps go through ``anyio.sleep`` and
only suspend the calling task.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

import anyio

from xiaoguang_lite.domain.errors import TransientServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

SleepFn = Callable[[float], Awaitable[Any]]

DEFAULT_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TransientServiceError,
    ConnectionError,
    TimeoutError,
)


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Success value or failure error of a fallible operation."""

    ok: bool
    value: T | None = None
    error: BaseException | None = None
    attempts: int = 1

    @classmethod
    def success(cls, value: T, *, attempts: int = 1) -> "Outcome[T]":
        return cls(ok=True, value=value, attempts=attempts)

    @classmethod
    def failure(cls, error: BaseException, *, attempts: int = 1) -> "Outcome[T]":
        return cls(ok=False, error=error, attempts=attempts)

    def get_or_raise(self) -> T:
        if self.ok:
            return self.value  # type: ignore[return-value]
        assert self.error is not None
        raise self.error

    def get_or(self, default: T) -> T:
        return self.value if self.ok else default  # type: ignore[return-value]

    def map(self, fn: Callable[[T], U]) -> "Outcome[U]":
        if not self.ok:
            return Outcome(ok=False, error=self.error, attempts=self.attempts)
        return Outcome(ok=True, value=fn(self.value), attempts=self.attempts)  # type: ignore[arg-type]

    def with_attempts(self, attempts: int) -> "Outcome[T]":
        return Outcome(ok=self.ok, value=self.value, error=self.error, attempts=attempts)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_errors: tuple[type[BaseException], ...] = field(
        default=DEFAULT_RETRYABLE_ERRORS
    )

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")

    @classmethod
    def preset(cls, name: str) -> "RetryPolicy":
        key = str(name or "").strip().lower()
        presets = {"default": DEFAULT, "fast": FAST, "persistent": PERSISTENT}
        if key not in presets:
            raise ValueError(f"unknown retry preset: {name}")
        return presets[key]

    def is_retryable(self, exc: BaseException | None) -> bool:
        return exc is not None and isinstance(exc, self.retryable_errors)

    def delay_before_retry(self, retry_number: int) -> float:
        """Sleep taken before the ``retry_number``-th retry (1-based)."""
        if retry_number < 1:
            return 0.0
        delay = self.initial_delay
        for _ in range(retry_number - 1):
            delay = min(delay * self.backoff_multiplier, self.max_delay)
        return min(delay, self.max_delay)

    def _next_delay(self, current: float) -> float:
        return min(current * self.backoff_multiplier, self.max_delay)

    async def execute(
        self,
        operation: Callable[[], Any],
        name: str = "operation",
        *,
        sleep: SleepFn | None = None,
    ) -> Outcome[Any]:
        sleeper = sleep or anyio.sleep
        current_delay = min(self.initial_delay, self.max_delay)
        last_error: BaseException | None = None
        total = self.max_retries + 1

        for attempt in range(1, total + 1):
            try:
                value = await _call(operation)
            except Exception as exc:
                last_error = exc
                if not self.is_retryable(exc):
                    logger.warning(
                        "[RetryPolicy] %s hit non-retryable error: %s", name, exc
                    )
                    return Outcome.failure(exc, attempts=attempt)
                if attempt >= total:
                    logger.error(
                        "[RetryPolicy] %s still failing after %d retries: %s",
                        name,
                        self.max_retries,
                        exc,
                    )
                    break
                logger.warning(
                    "[RetryPolicy] %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    name,
                    attempt,
                    total,
                    current_delay,
                    exc,
                )
                await sleeper(current_delay)
                current_delay = self._next_delay(current_delay)
                continue
            if attempt > 1:
                logger.info("[RetryPolicy] %s succeeded on attempt %d", name, attempt)
            return Outcome.success(value, attempts=attempt)

        assert last_error is not None
        return Outcome.failure(last_error, attempts=total)

    async def execute_result(
        self,
        operation: Callable[[], Any],
        name: str = "operation",
        *,
        sleep: SleepFn | None = None,
    ) -> Outcome[Any]:
        """Like :meth:`execute` for operations that already return an ``Outcome``."""
        sleeper = sleep or anyio.sleep
        current_delay = min(self.initial_delay, self.max_delay)
        last: Outcome[Any] | None = None
        total = self.max_retries + 1

        for attempt in range(1, total + 1):
            try:
                result = await _call(operation)
            except Exception as exc:
                result = Outcome.failure(exc, attempts=attempt)
            if not isinstance(result, Outcome):
                raise TypeError(f"{name} must return an Outcome, got {type(result)!r}")
            if result.ok:
                if attempt > 1:
                    logger.info(
                        "[RetryPolicy] %s succeeded on attempt %d", name, attempt
                    )
                return result.with_attempts(attempt)

            last = result.with_attempts(attempt)
            if not self.is_retryable(result.error):
                logger.warning(
                    "[RetryPolicy] %s hit non-retryable error: %s", name, result.error
                )
                return last
            if attempt >= total:
                logger.error(
                    "[RetryPolicy] %s still failing after %d retries: %s",
                    name,
                    self.max_retries,
                    result.error,
                )
                break
            logger.warning(
                "[RetryPolicy] %s failed (attempt %d/%d), retrying in %.2fs: %s",
                name,
                attempt,
                total,
                current_delay,
                result.error,
            )
            await sleeper(current_delay)
            current_delay = self._next_delay(current_delay)

        assert last is not None
        return last


async def _call(operation: Callable[[], Any]) -> Any:
    value = operation()
    if inspect.isawaitable(value):
        value = await value
    return value


DEFAULT = RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=10.0, backoff_multiplier=2.0)
FAST = RetryPolicy(max_retries=2, initial_delay=0.5, max_delay=2.0, backoff_multiplier=1.5)
PERSISTENT = RetryPolicy(
    max_retries=5, initial_delay=2.0, max_delay=30.0, backoff_multiplier=2.5
)


async def retry_with_policy(
    operation: Callable[[], Any],
    name: str,
    policy: RetryPolicy = DEFAULT,
) -> Outcome[Any]:
    return await policy.execute(operation, name)


async def retry_result_with_policy(
    operation: Callable[[], Any],
    name: str,
    policy: RetryPolicy = DEFAULT,
) -> Outcome[Any]:
    return await policy.execute_result(operation, name)
