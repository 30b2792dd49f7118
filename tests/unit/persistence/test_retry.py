"""
explorer-db - unit tests for the retry executor

File: tests/unit/persistence/test_retry.py

Purpose
- Validate backoff timing, attempt accounting, and error pass-through.

What this test file should cover
- Exactly ``max_attempts`` attempts before an exhausted transient error is re-raised.
- Fatal errors propagate on the first attempt.
- Delay bounds under jitter and the delay cap.
- Cancellation during backoff, and the asyncio variant.
- Structured decision logs for scheduled and exhausted retries.

Functional requirements
- Offline operation.

Non-functional requirements
- Deterministic; only the wall-clock scenario sleeps for real.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time

import pytest
from hypothesis import given
from hypothesis import strategies as st
from structlog.testing import capture_logs

from explorer_db.errors import OperationCancelledError
from explorer_db.persistence.retry import (
    CancelToken,
    RetryPolicy,
    compute_delay,
    with_retry,
    with_retry_async,
)


class _Flaky:
    """Operation that raises ``error`` for the first ``failures`` calls."""

    def __init__(self, failures: int, error: Exception | None = None, result: object = "ok") -> None:
        self.failures = failures
        self.error = error if error is not None else sqlite3.OperationalError("database is locked")
        self.result = result
        self.calls = 0

    def __call__(self) -> object:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


def _no_sleep(_seconds: float) -> None:
    return None


def test_exhausted_transient_error_is_rethrown_after_max_attempts() -> None:
    operation = _Flaky(failures=100)
    policy = RetryPolicy(max_attempts=4, base_delay_ms=1, jitter=0.0)

    with pytest.raises(sqlite3.OperationalError, match="database is locked") as excinfo:
        with_retry(operation, policy, sleep=_no_sleep)

    assert operation.calls == 4
    assert excinfo.value is operation.error


def test_wall_clock_backoff_for_three_attempts() -> None:
    operation = _Flaky(failures=100)
    policy = RetryPolicy(max_attempts=3, base_delay_ms=10, jitter=0.0)

    started = time.perf_counter()
    with pytest.raises(sqlite3.OperationalError):
        with_retry(operation, policy)
    elapsed_s = time.perf_counter() - started

    assert operation.calls == 3
    assert elapsed_s >= 0.030


def test_default_jitter_never_shortens_the_backoff_floor() -> None:
    operation = _Flaky(failures=100)
    policy = RetryPolicy(max_attempts=3, base_delay_ms=10)

    started = time.perf_counter()
    with pytest.raises(sqlite3.OperationalError):
        with_retry(operation, policy, rng=lambda: 0.0)
    elapsed_s = time.perf_counter() - started

    assert operation.calls == 3
    assert elapsed_s >= 0.030


def test_default_jitter_adds_at_most_a_quarter() -> None:
    policy = RetryPolicy(base_delay_ms=100)

    assert compute_delay(policy, 1, rng=lambda: 0.0) == pytest.approx(0.1)
    assert compute_delay(policy, 2, rng=lambda: 0.999) == pytest.approx(0.2 * (1 + 0.25 * 0.999))


def test_success_after_transient_failures_returns_result() -> None:
    delays: list[float] = []
    operation = _Flaky(failures=2, result=42)
    policy = RetryPolicy(max_attempts=5, base_delay_ms=100, jitter=0.0)

    assert with_retry(operation, policy, sleep=delays.append) == 42
    assert operation.calls == 3
    assert delays == [pytest.approx(0.1), pytest.approx(0.2)]


def test_fatal_error_is_not_retried() -> None:
    operation = _Flaky(failures=100, error=sqlite3.IntegrityError("UNIQUE constraint failed: t.id"))

    with pytest.raises(sqlite3.IntegrityError):
        with_retry(operation, RetryPolicy(max_attempts=5), sleep=_no_sleep)

    assert operation.calls == 1


def test_custom_classifier_controls_retryability() -> None:
    operation = _Flaky(failures=2, error=KeyError("flaky"), result="done")

    result = with_retry(
        operation,
        RetryPolicy(max_attempts=3, base_delay_ms=0),
        classifier=lambda exc: isinstance(exc, KeyError),
        sleep=_no_sleep,
    )

    assert result == "done"
    assert operation.calls == 3


def test_delay_doubles_and_respects_cap() -> None:
    policy = RetryPolicy(base_delay_ms=100, multiplier=2.0, jitter=0.0, max_delay_ms=350)

    delays = [compute_delay(policy, attempt) for attempt in range(1, 6)]

    assert delays == [pytest.approx(value) for value in (0.1, 0.2, 0.35, 0.35, 0.35)]


@given(
    attempt=st.integers(min_value=1, max_value=12),
    jitter=st.floats(min_value=0.0, max_value=0.99),
    draw=st.floats(min_value=0.0, max_value=1.0, exclude_max=True),
)
def test_jittered_delay_stays_within_bounds(attempt: int, jitter: float, draw: float) -> None:
    policy = RetryPolicy(base_delay_ms=100, multiplier=2.0, jitter=jitter, max_delay_ms=None)
    nominal_s = 0.1 * 2 ** (attempt - 1)

    delay = compute_delay(policy, attempt, rng=lambda: draw)

    assert delay >= 0.0
    assert nominal_s - 1e-9 <= delay <= nominal_s * (1 + jitter) + 1e-9


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay_ms": -1},
        {"multiplier": 0.5},
        {"jitter": 1.0},
        {"max_delay_ms": -5},
    ],
)
def test_invalid_policies_are_rejected(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)  # type: ignore[arg-type]


def test_decision_logs_record_schedule_and_exhaustion() -> None:
    operation = _Flaky(failures=100)

    with capture_logs() as logs, pytest.raises(sqlite3.OperationalError):
        with_retry(
            operation,
            RetryPolicy(max_attempts=3, base_delay_ms=5, jitter=0.0),
            sleep=_no_sleep,
            label="run: INSERT INTO t",
        )

    events = [entry["event"] for entry in logs]
    assert events == ["db_retry_scheduled", "db_retry_scheduled", "db_retry_exhausted"]
    assert logs[0]["attempt"] == 1
    assert logs[0]["delay_ms"] == pytest.approx(5.0)
    assert logs[1]["delay_ms"] == pytest.approx(10.0)
    assert logs[2]["attempts"] == 3
    assert all(entry["operation"] == "run: INSERT INTO t" for entry in logs)
    assert all(entry["log_level"] == "warning" for entry in logs)


def test_cancel_during_backoff_raises_cancelled_from_last_error() -> None:
    token = CancelToken()
    operation = _Flaky(failures=100)

    def _operation() -> object:
        try:
            return operation()
        finally:
            token.cancel("caller gave up")

    with pytest.raises(OperationCancelledError, match="caller gave up") as excinfo:
        with_retry(_operation, RetryPolicy(max_attempts=5, base_delay_ms=10_000), cancel=token)

    assert operation.calls == 1
    assert isinstance(excinfo.value.__cause__, sqlite3.OperationalError)


def test_already_cancelled_token_prevents_first_attempt() -> None:
    token = CancelToken()
    token.cancel()
    operation = _Flaky(failures=0)

    with pytest.raises(OperationCancelledError):
        with_retry(operation, cancel=token)

    assert operation.calls == 0


def test_cancel_token_deadline_uses_injected_clock() -> None:
    now = [100.0]
    token = CancelToken(timeout_s=5.0, clock=lambda: now[0])

    assert not token.cancelled
    assert token.remaining_s() == pytest.approx(5.0)

    now[0] = 105.0
    assert token.cancelled
    assert token.reason == "deadline exceeded"
    assert token.remaining_s() == 0.0


@pytest.mark.asyncio
async def test_async_retry_counts_attempts_and_awaits_backoff() -> None:
    calls = 0
    delays: list[float] = []

    async def _operation() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise sqlite3.OperationalError("database is locked")
        return "done"

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)
        await asyncio.sleep(0)

    result = await with_retry_async(
        _operation,
        RetryPolicy(max_attempts=5, base_delay_ms=10, jitter=0.0),
        sleep=_sleep,
    )

    assert result == "done"
    assert calls == 3
    assert delays == [pytest.approx(0.01), pytest.approx(0.02)]


@pytest.mark.asyncio
async def test_async_retry_rethrows_after_exhaustion() -> None:
    calls = 0

    async def _operation() -> None:
        nonlocal calls
        calls += 1
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(sqlite3.OperationalError):
        await with_retry_async(_operation, RetryPolicy(max_attempts=2, base_delay_ms=1, jitter=0.0))

    assert calls == 2
