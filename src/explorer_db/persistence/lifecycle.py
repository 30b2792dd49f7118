"""
explorer-db - process shutdown hooks.

File: src/explorer_db/persistence/lifecycle.py

Purpose
- Close the supervised handle when the process is interrupted, terminated, or
  dies from an uncaught exception.

Functional requirements
- Shutdown runs in a helper thread and is bounded by a grace period; a close
  that hangs past it forces the process to exit.
- Previous signal handlers and ``sys.excepthook`` are chained, and restored by
  ``ShutdownHooks.uninstall``.
- Handlers may only be installed from the main thread (a ``signal`` module
  restriction); elsewhere only the atexit and excepthook hooks are installed.
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import sys
import threading
from collections.abc import Callable, Iterable
from types import FrameType, TracebackType
from typing import Any

from explorer_db.constants import DEFAULT_SHUTDOWN_GRACE_S
from explorer_db.persistence.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)

ExitFn = Callable[[int], Any]
ExceptHook = Callable[[type[BaseException], BaseException, TracebackType | None], Any]


def shutdown_within(supervisor: ConnectionSupervisor, grace_period_s: float) -> bool:
    """Run ``supervisor.shutdown()``; return ``False`` if it did not finish in time."""

    errors: list[BaseException] = []

    def _target() -> None:
        try:
            supervisor.shutdown()
        except Exception as exc:  # surfaced through the log, the process is exiting
            errors.append(exc)

    worker = threading.Thread(target=_target, name="explorer-db-shutdown", daemon=True)
    worker.start()
    worker.join(grace_period_s)
    if worker.is_alive():
        logger.error(
            "db_shutdown_timed_out",
            extra={"db_path": supervisor.path, "grace_period_s": grace_period_s},
        )
        return False
    if errors:
        logger.error(
            "db_shutdown_failed",
            extra={"db_path": supervisor.path, "error": str(errors[0])},
        )
    return True


class ShutdownHooks:
    """Installed signal/atexit/excepthook handlers for one supervisor."""

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        *,
        grace_period_s: float = DEFAULT_SHUTDOWN_GRACE_S,
        signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
        exit: ExitFn = os._exit,
    ) -> None:
        if grace_period_s < 0:
            raise ValueError("grace_period_s must be >= 0")
        self._supervisor = supervisor
        self._grace_period_s = grace_period_s
        self._signals = tuple(signals)
        self._exit = exit
        self._previous_handlers: dict[signal.Signals, Any] = {}
        self._previous_excepthook: ExceptHook | None = None
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    @property
    def signals(self) -> tuple[signal.Signals, ...]:
        return tuple(self._previous_handlers)

    def install(self) -> ShutdownHooks:
        if self._installed:
            return self
        if threading.current_thread() is threading.main_thread():
            for signum in self._signals:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
        else:
            logger.warning("db_shutdown_signals_skipped", extra={"reason": "not on main thread"})
        atexit.register(self._handle_atexit)
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._handle_uncaught
        self._installed = True
        logger.debug(
            "db_shutdown_hooks_installed",
            extra={"signals": [s.name for s in self._previous_handlers], "grace_period_s": self._grace_period_s},
        )
        return self

    def uninstall(self) -> None:
        if not self._installed:
            return
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)
        self._previous_handlers.clear()
        atexit.unregister(self._handle_atexit)
        if sys.excepthook == self._handle_uncaught and self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
        self._previous_excepthook = None
        self._installed = False

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        logger.info("db_shutdown_signal", extra={"signal": name})
        if not shutdown_within(self._supervisor, self._grace_period_s):
            self._exit(1)
            return
        previous = self._previous_handlers.get(signal.Signals(signum))
        if callable(previous):
            previous(signum, frame)
            return
        if previous == signal.SIG_IGN:
            return
        self._exit(128 + signum)

    def _handle_atexit(self) -> None:
        shutdown_within(self._supervisor, self._grace_period_s)

    def _handle_uncaught(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        logger.critical(
            "uncaught_exception",
            extra={"error_type": exc_type.__name__, "error": str(exc)},
        )
        shutdown_within(self._supervisor, self._grace_period_s)
        previous = self._previous_excepthook or sys.__excepthook__
        previous(exc_type, exc, tb)


def install_shutdown_hooks(
    supervisor: ConnectionSupervisor,
    *,
    grace_period_s: float = DEFAULT_SHUTDOWN_GRACE_S,
    signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
    exit: ExitFn = os._exit,
) -> ShutdownHooks:
    """Install and return shutdown hooks that close ``supervisor`` on exit."""

    return ShutdownHooks(
        supervisor,
        grace_period_s=grace_period_s,
        signals=signals,
        exit=exit,
    ).install()


__all__ = [
    "DEFAULT_SIGNALS",
    "ShutdownHooks",
    "install_shutdown_hooks",
    "shutdown_within",
]
