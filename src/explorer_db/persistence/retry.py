"""
explorer-db - retry executor.

File: src/explorer_db/persistence/retry.py

Purpose
- Make transient store contention invisible to callers without masking real errors.

Functional requirements
- Exponential backoff with bounded additive jitter and an optional delay cap.
- Fatal errors are re-raised on first occurrence; exhausted transient errors
  are re-raised unchanged after exactly ``max_attempts`` attempts.
- Backoff in the async variant yields to the event loop.

Caller obligations
- Only idempotent or transactionally scoped work may be wrapped: a write that
  partially applied before the busy signal would be applied twice. The query
  facade only hands this module ``Operation`` values and whole outermost
  transaction scopes.
"""

from __future__ import annotations

import asyncio
import math
import random
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from explorer_db.constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_JITTER,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_MS,
)
from explorer_db.errors import OperationCancelledError, is_transient

T = TypeVar("T")
ErrorClassifier = Callable[[BaseException], bool]

_logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff configuration for one retry loop."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: float = DEFAULT_BASE_DELAY_MS
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = DEFAULT_JITTER
    max_delay_ms: float | None = DEFAULT_MAX_DELAY_MS

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise ValueError("max_attempts must be an integer")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not math.isfinite(self.base_delay_ms) or self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be a finite number >= 0")
        if not math.isfinite(self.multiplier) or self.multiplier < 1:
            raise ValueError("multiplier must be a finite number >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        if self.max_delay_ms is not None and (
            not math.isfinite(self.max_delay_ms) or self.max_delay_ms < 0
        ):
            raise ValueError("max_delay_ms must be a finite number >= 0")

    def to_dict(self) -> dict[str, object]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "multiplier": self.multiplier,
            "jitter": self.jitter,
            "max_delay_ms": self.max_delay_ms,
        }


@dataclass(slots=True)
class RetryState:
    """Attempt bookkeeping owned by a single retry loop."""

    max_attempts: int
    attempt: int = 0
    last_delay_s: float = 0.0
    last_error: BaseException | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


class CancelToken:
    """Cooperative cancellation signal with an optional deadline."""

    __slots__ = ("_clock", "_deadline", "_event", "_reason")

    def __init__(
        self,
        *,
        timeout_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if timeout_s is not None and timeout_s < 0:
            raise ValueError("timeout_s must be >= 0")
        self._clock = clock
        self._deadline = None if timeout_s is None else clock() + timeout_s
        self._event = threading.Event()
        self._reason = "cancelled"

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def reason(self) -> str:
        if not self._event.is_set() and self._deadline_passed():
            return "deadline exceeded"
        return self._reason

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self._deadline_passed()

    def remaining_s(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def wait(self, timeout_s: float) -> bool:
        """Sleep up to ``timeout_s``; return ``True`` if cancelled meanwhile."""

        remaining = self.remaining_s()
        bounded = timeout_s if remaining is None else min(timeout_s, remaining)
        self._event.wait(max(0.0, bounded))
        return self.cancelled

    def _deadline_passed(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline


def compute_delay(
    policy: RetryPolicy,
    attempt: int,
    rng: Callable[[], float] = random.random,
) -> float:
    """Return the backoff delay in seconds after failed attempt number ``attempt``."""

    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    raw_ms = policy.base_delay_ms * policy.multiplier ** (attempt - 1)
    if policy.max_delay_ms is not None:
        raw_ms = min(raw_ms, policy.max_delay_ms)
    # Jitter only lengthens the wait; the floor is the un-jittered delay.
    return raw_ms * (1.0 + policy.jitter * rng()) / 1000.0


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    classifier: ErrorClassifier = is_transient,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
    cancel: CancelToken | None = None,
    label: str = "operation",
    logger: Any | None = None,
) -> T:
    """Invoke ``operation`` until it succeeds, fails fatally, or attempts run out.

    When a ``cancel`` token is supplied the backoff waits on the token instead
    of calling ``sleep`` so a cancellation interrupts the pause.
    """

    resolved = policy if policy is not None else RetryPolicy()
    log = logger if logger is not None else _logger
    state = RetryState(max_attempts=resolved.max_attempts)

    while True:
        _raise_if_cancelled(cancel, label, state)
        state.attempt += 1
        try:
            return operation()
        except Exception as exc:
            if not classifier(exc):
                raise
            state.last_error = exc
            if state.exhausted:
                _log_exhausted(log, label, state, exc)
                raise
            state.last_delay_s = compute_delay(resolved, state.attempt, rng)
            _log_scheduled(log, label, state, exc)

        if cancel is None:
            sleep(state.last_delay_s)
        elif cancel.wait(state.last_delay_s):
            _raise_if_cancelled(cancel, label, state)


async def with_retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    classifier: ErrorClassifier = is_transient,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    cancel: CancelToken | None = None,
    label: str = "operation",
    logger: Any | None = None,
) -> T:
    """Async twin of :func:`with_retry`; backoff awaits instead of blocking."""

    resolved = policy if policy is not None else RetryPolicy()
    log = logger if logger is not None else _logger
    state = RetryState(max_attempts=resolved.max_attempts)

    while True:
        _raise_if_cancelled(cancel, label, state)
        state.attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if not classifier(exc):
                raise
            state.last_error = exc
            if state.exhausted:
                _log_exhausted(log, label, state, exc)
                raise
            state.last_delay_s = compute_delay(resolved, state.attempt, rng)
            _log_scheduled(log, label, state, exc)

        delay = state.last_delay_s
        if cancel is not None:
            remaining = cancel.remaining_s()
            if remaining is not None:
                delay = min(delay, remaining)
        await sleep(delay)


def _raise_if_cancelled(cancel: CancelToken | None, label: str, state: RetryState) -> None:
    if cancel is None or not cancel.cancelled:
        return
    raise OperationCancelledError(
        f"{label} {cancel.reason} after {state.attempt} attempt(s)"
    ) from state.last_error


def _log_scheduled(log: Any, label: str, state: RetryState, exc: BaseException) -> None:
    log.warning(
        "db_retry_scheduled",
        operation=label,
        attempt=state.attempt,
        max_attempts=state.max_attempts,
        delay_ms=round(state.last_delay_s * 1000.0, 3),
        error_type=type(exc).__name__,
        error=str(exc),
    )


def _log_exhausted(log: Any, label: str, state: RetryState, exc: BaseException) -> None:
    log.warning(
        "db_retry_exhausted",
        operation=label,
        attempts=state.attempt,
        error_type=type(exc).__name__,
        error=str(exc),
    )


__all__ = [
    "CancelToken",
    "ErrorClassifier",
    "RetryPolicy",
    "RetryState",
    "compute_delay",
    "with_retry",
    "with_retry_async",
]
