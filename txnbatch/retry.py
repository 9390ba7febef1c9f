import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging
import time
from typing import TypeVar


T = TypeVar("T")


def _retry_everything(exc: Exception) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    The policy is an immutable value built once per process and shared by every
    run; it keeps no per-run state. Each failed attempt is logged as a warning and
    reported to ``on_attempt_failure``. Once attempts are exhausted, or the error
    is not retryable, the last exception is re-raised unchanged.
    """

    max_attempts: int = 3
    delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 60.0
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    should_retry: Callable[[Exception], bool] = _retry_everything
    on_attempt_failure: Callable[[int, Exception], None] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        delay = self.delay_seconds * self.backoff_multiplier ** (attempt - 1)
        return min(delay, self.max_delay_seconds)

    def execute(self, fn: Callable[[], T], context: str = "operation") -> T:
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as exc:
                if not self._handle_failure(attempt, exc, context):
                    raise
            time.sleep(self.delay_for(attempt))
            attempt += 1

    async def execute_async(
        self,
        fn: Callable[[], Awaitable[T]],
        context: str = "operation",
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        attempt = 1
        while True:
            try:
                return await fn()
            except Exception as exc:
                if not self._handle_failure(attempt, exc, context):
                    raise
            await sleep(self.delay_for(attempt))
            attempt += 1

    def _handle_failure(self, attempt: int, exc: Exception, context: str) -> bool:
        self.logger.warning(
            "attempt %d/%d of %s failed: %s",
            attempt,
            self.max_attempts,
            context,
            exc,
            extra={"attempt": attempt, "max_attempts": self.max_attempts, "context": context},
        )
        if self.on_attempt_failure:
            self.on_attempt_failure(attempt, exc)

        if attempt >= self.max_attempts or not self.should_retry(exc):
            return False
        return True
