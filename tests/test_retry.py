import asyncio
import logging

import pytest

from txnbatch.errors import LoadError
from txnbatch.retry import RetryPolicy


class FlakyLoader:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise LoadError("input.csv", f"locked (call {self.calls})")
        return "loaded"


def _warnings(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [record for record in caplog.records if record.levelno == logging.WARNING]


def test_succeeds_after_k_failures_with_k_warnings(caplog: pytest.LogCaptureFixture) -> None:
    loader = FlakyLoader(failures=2)
    policy = RetryPolicy(max_attempts=3, delay_seconds=0)

    with caplog.at_level(logging.WARNING):
        assert policy.execute(loader, context="load input.csv") == "loaded"

    assert loader.calls == 3
    warnings = _warnings(caplog)
    assert len(warnings) == 2
    assert [record.attempt for record in warnings] == [1, 2]


def test_exhausted_retries_reraise_last_error_unchanged(caplog: pytest.LogCaptureFixture) -> None:
    loader = FlakyLoader(failures=5)
    policy = RetryPolicy(max_attempts=3, delay_seconds=0)

    with caplog.at_level(logging.WARNING):
        with pytest.raises(LoadError) as excinfo:
            policy.execute(loader)

    assert loader.calls == 3
    assert excinfo.value.reason == "locked (call 3)"
    assert len(_warnings(caplog)) == 3


def test_non_retryable_error_stops_immediately() -> None:
    calls: list[int] = []

    def broken() -> None:
        calls.append(1)
        raise KeyError("bug")

    policy = RetryPolicy(max_attempts=5, delay_seconds=0, should_retry=lambda exc: isinstance(exc, LoadError))
    with pytest.raises(KeyError):
        policy.execute(broken)
    assert len(calls) == 1


def test_attempt_failure_hook_sees_every_failure() -> None:
    seen: list[tuple[int, str]] = []
    policy = RetryPolicy(
        max_attempts=4,
        delay_seconds=0,
        on_attempt_failure=lambda attempt, exc: seen.append((attempt, type(exc).__name__)),
    )

    assert policy.execute(FlakyLoader(failures=3)) == "loaded"
    assert seen == [(1, "LoadError"), (2, "LoadError"), (3, "LoadError")]


def test_backoff_grows_and_is_capped() -> None:
    policy = RetryPolicy(max_attempts=6, delay_seconds=0.5, backoff_multiplier=2, max_delay_seconds=3)

    assert [policy.delay_for(attempt) for attempt in range(1, 6)] == [0.5, 1.0, 2.0, 3, 3]


def test_async_execution_awaits_each_backoff() -> None:
    slept: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        slept.append(seconds)

    loader = FlakyLoader(failures=2)

    async def attempt() -> str:
        return loader()

    policy = RetryPolicy(max_attempts=3, delay_seconds=1, backoff_multiplier=3, max_delay_seconds=60)
    result = asyncio.run(policy.execute_async(attempt, context="load", sleep=fake_sleep))

    assert result == "loaded"
    assert slept == [1, 3]


def test_invalid_configuration_is_rejected() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(delay_seconds=-1)
