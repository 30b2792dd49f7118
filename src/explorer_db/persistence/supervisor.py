"""
explorer-db - connection supervisor.

File: src/explorer_db/persistence/supervisor.py

Purpose
- Own the lifecycle of the single SQLite handle shared by every caller in the
  process and mediate exclusive use of it.

Functional requirements
- Lazy creation with WAL journaling and a busy timeout applied on open.
- Stale or invalidated handles are rebuilt on the next acquire.
- Shutdown is idempotent and never closes an already-closed handle.
- A lease grants one owner at a time the right to issue statements; waiting
  past the lease timeout surfaces as a transient lock error.

Non-functional requirements
- Opening failures are fatal here; retry policy belongs to the retry executor.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final

from explorer_db.constants import (
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_CACHE_SIZE_KIB,
    DEFAULT_JOURNAL_MODE,
    DEFAULT_SYNCHRONOUS,
    JOURNAL_MODES,
    MEMORY_DB_PATH,
    SYNCHRONOUS_MODES,
)
from explorer_db.errors import CallerError, DBConnectionError, TransientLockError

logger = logging.getLogger(__name__)

ConnectFactory = Callable[..., sqlite3.Connection]

_HEALTH_CHECK_SQL: Final[str] = "SELECT 1"


class ConnectionHandle:
    """The one open database session plus the settings it was opened with."""

    __slots__ = (
        "_closed",
        "busy_timeout_ms",
        "connection",
        "generation",
        "journal_mode",
        "opened_at",
        "path",
    )

    def __init__(
        self,
        *,
        connection: sqlite3.Connection,
        path: str,
        generation: int,
        busy_timeout_ms: int,
        journal_mode: str,
        opened_at: float,
    ) -> None:
        self.connection = connection
        self.path = path
        self.generation = generation
        self.busy_timeout_ms = busy_timeout_ms
        self.journal_mode = journal_mode
        self.opened_at = opened_at
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def in_transaction(self) -> bool:
        return self.is_open and self.connection.in_transaction

    def close(self) -> bool:
        """Close the connection; return ``False`` when it was already closed."""

        if self._closed:
            return False
        self._closed = True
        self.connection.close()
        return True

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return (
            f"ConnectionHandle(path={self.path!r}, generation={self.generation}, "
            f"journal_mode={self.journal_mode!r}, {state})"
        )


class HandleLease:
    """Re-entrant, owner-keyed exclusive right to use the shared handle.

    Ownership is tracked by token identity rather than by thread so an asyncio
    transaction can hold the lease across ``asyncio.to_thread`` hops.
    """

    __slots__ = ("_cond", "_depth", "_owner", "_owner_thread")

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._owner: object | None = None
        self._owner_thread: int | None = None
        self._depth = 0

    @property
    def owner(self) -> object | None:
        with self._cond:
            return self._owner

    def held_by(self, owner: object) -> bool:
        with self._cond:
            return self._owner is owner

    def acquire(self, owner: object, *, timeout_s: float | None, bind_thread: bool) -> bool:
        current_thread = threading.get_ident()
        with self._cond:
            if self._owner is owner:
                self._depth += 1
                return True
            if self._owner is not None and self._owner_thread == current_thread:
                raise CallerError(
                    "the handle is leased to an active transaction on this thread; "
                    "issue statements through the transaction facade passed to the callback"
                )
            if not self._cond.wait_for(lambda: self._owner is None, timeout=timeout_s):
                return False
            self._owner = owner
            self._owner_thread = current_thread if bind_thread else None
            self._depth = 1
            return True

    def release(self, owner: object) -> None:
        with self._cond:
            if self._owner is not owner:
                raise CallerError("handle lease released by a non-owner")
            self._depth -= 1
            if self._depth == 0:
                self._owner = None
                self._owner_thread = None
                self._cond.notify_all()


class ConnectionSupervisor:
    """Guarantee exactly one usable SQLite handle for this process.

    Instantiate once at startup and pass it to the query facade; tests create
    a fresh supervisor per case.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        journal_mode: str = DEFAULT_JOURNAL_MODE,
        synchronous: str = DEFAULT_SYNCHRONOUS,
        foreign_keys: bool = True,
        cache_size_kib: int = DEFAULT_CACHE_SIZE_KIB,
        lease_timeout_ms: int | None = None,
        validate_on_acquire: bool = True,
        connect: ConnectFactory = sqlite3.connect,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if cache_size_kib < 0:
            raise ValueError("cache_size_kib must be >= 0")
        if lease_timeout_ms is not None and lease_timeout_ms < 0:
            raise ValueError("lease_timeout_ms must be >= 0")
        normalized_journal = journal_mode.strip().lower()
        if normalized_journal not in JOURNAL_MODES:
            allowed = ", ".join(JOURNAL_MODES)
            raise ValueError(f"journal_mode must be one of: {allowed}; got {journal_mode!r}")
        normalized_sync = synchronous.strip().lower()
        if normalized_sync not in SYNCHRONOUS_MODES:
            allowed = ", ".join(SYNCHRONOUS_MODES)
            raise ValueError(f"synchronous must be one of: {allowed}; got {synchronous!r}")

        raw_path = str(path)
        self._path = raw_path if raw_path == MEMORY_DB_PATH else str(Path(raw_path).expanduser())
        self._busy_timeout_ms = busy_timeout_ms
        self._journal_mode = normalized_journal
        self._synchronous = normalized_sync
        self._foreign_keys = foreign_keys
        self._cache_size_kib = cache_size_kib
        self._lease_timeout_ms = busy_timeout_ms if lease_timeout_ms is None else lease_timeout_ms
        self._validate_on_acquire = validate_on_acquire
        self._connect = connect

        self._lock = threading.RLock()
        self._handle: ConnectionHandle | None = None
        self._generation = 0
        self._shut_down = False
        self._lease = HandleLease()

    @property
    def path(self) -> str:
        return self._path

    @property
    def busy_timeout_ms(self) -> int:
        return self._busy_timeout_ms

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._handle is not None and self._handle.is_open

    @property
    def is_shut_down(self) -> bool:
        with self._lock:
            return self._shut_down

    def settings(self) -> dict[str, object]:
        return {
            "path": self._path,
            "busy_timeout_ms": self._busy_timeout_ms,
            "journal_mode": self._journal_mode,
            "synchronous": self._synchronous,
            "foreign_keys": self._foreign_keys,
            "cache_size_kib": self._cache_size_kib,
            "lease_timeout_ms": self._lease_timeout_ms,
        }

    def open(self) -> ConnectionHandle:
        """Eagerly create the handle (process startup)."""

        return self.acquire()

    def acquire(self) -> ConnectionHandle:
        """Return the live handle, creating or rebuilding it when needed."""

        with self._lock:
            if self._shut_down:
                raise DBConnectionError(f"supervisor for {self._path} is shut down")
            handle = self._handle
            if handle is not None and handle.is_open:
                if not self._validate_on_acquire or self._is_healthy(handle):
                    return handle
                self._drop(handle, reason="health check failed", level=logging.WARNING)
            self._handle = self._open_handle()
            return self._handle

    def release(self) -> None:
        """Close the handle but keep the supervisor usable; idempotent."""

        with self._lock:
            handle = self._handle
            self._handle = None
        if handle is not None:
            self._close(handle, reason="released")

    def shutdown(self) -> None:
        """Close the handle and refuse further acquires; idempotent."""

        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
            handle = self._handle
            self._handle = None
        if handle is not None:
            self._close(handle, reason="shutdown")

    def invalidate(self, reason: str, *, generation: int | None = None) -> bool:
        """Drop the current handle so the next acquire rebuilds it.

        When ``generation`` is given only that generation is dropped; a stale
        invalidation never discards a newer handle. Returns whether a handle
        was dropped.
        """

        with self._lock:
            handle = self._handle
            if handle is None:
                return False
            if generation is not None and handle.generation != generation:
                return False
            self._handle = None
        self._drop(handle, reason=reason, level=logging.WARNING)
        return True

    def acquire_lease(
        self,
        owner: object,
        *,
        timeout_ms: int | None = None,
        bind_thread: bool = True,
    ) -> None:
        """Take exclusive use of the handle for ``owner`` (re-entrant)."""

        wait_ms = self._lease_timeout_ms if timeout_ms is None else timeout_ms
        if not self._lease.acquire(owner, timeout_s=wait_ms / 1000.0, bind_thread=bind_thread):
            raise TransientLockError(
                f"handle for {self._path} is leased to another caller "
                f"(waited {wait_ms}ms)",
                operation="acquire lease",
            )

    def release_lease(self, owner: object) -> None:
        self._lease.release(owner)

    def holds_lease(self, owner: object) -> bool:
        return self._lease.held_by(owner)

    @contextmanager
    def lease(
        self,
        owner: object | None = None,
        *,
        timeout_ms: int | None = None,
        bind_thread: bool = True,
    ) -> Iterator[ConnectionHandle]:
        """Yield the live handle while holding the lease for ``owner``."""

        token = owner if owner is not None else object()
        self.acquire_lease(token, timeout_ms=timeout_ms, bind_thread=bind_thread)
        try:
            yield self.acquire()
        finally:
            self.release_lease(token)

    def __enter__(self) -> ConnectionSupervisor:
        self.open()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.shutdown()

    def _open_handle(self) -> ConnectionHandle:
        self._generation += 1
        if self._path != MEMORY_DB_PATH:
            try:
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise DBConnectionError(
                    f"unable to create directory for {self._path}: {exc}"
                ) from exc

        try:
            conn = self._connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except (sqlite3.Error, OSError) as exc:
            logger.error(
                "db_connection_open_failed",
                extra={"db_path": self._path, "error": str(exc)},
            )
            raise DBConnectionError(f"unable to open database {self._path}: {exc}") from exc

        try:
            conn.row_factory = sqlite3.Row
            journal_mode = self._configure(conn)
        except (sqlite3.Error, DBConnectionError) as exc:
            _close_quietly(conn)
            logger.error(
                "db_connection_open_failed",
                extra={"db_path": self._path, "error": str(exc)},
            )
            if isinstance(exc, DBConnectionError):
                raise
            raise DBConnectionError(f"unable to configure database {self._path}: {exc}") from exc

        handle = ConnectionHandle(
            connection=conn,
            path=self._path,
            generation=self._generation,
            busy_timeout_ms=self._busy_timeout_ms,
            journal_mode=journal_mode,
            opened_at=time.time(),
        )
        logger.info(
            "db_connection_opened",
            extra={
                "db_path": self._path,
                "generation": handle.generation,
                "journal_mode": journal_mode,
                "busy_timeout_ms": self._busy_timeout_ms,
            },
        )
        return handle

    def _configure(self, conn: sqlite3.Connection) -> str:
        conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        conn.execute(f"PRAGMA foreign_keys={'ON' if self._foreign_keys else 'OFF'}")
        journal_row = conn.execute(f"PRAGMA journal_mode={self._journal_mode}").fetchone()
        if journal_row is None:
            raise DBConnectionError(f"failed to configure journal_mode for {self._path}")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != self._journal_mode and self._path != MEMORY_DB_PATH:
            raise DBConnectionError(
                f"journal_mode must be {self._journal_mode!r} for {self._path}, "
                f"store reported {journal_mode!r}"
            )
        conn.execute(f"PRAGMA synchronous={self._synchronous.upper()}")
        conn.execute("PRAGMA temp_store=MEMORY")
        conn.execute(f"PRAGMA cache_size=-{int(self._cache_size_kib)}")
        return journal_mode

    def _is_healthy(self, handle: ConnectionHandle) -> bool:
        try:
            handle.connection.execute(_HEALTH_CHECK_SQL).fetchone()
        except sqlite3.Error as exc:
            logger.warning(
                "db_connection_unhealthy",
                extra={"db_path": self._path, "generation": handle.generation, "error": str(exc)},
            )
            return False
        return True

    def _close(self, handle: ConnectionHandle, *, reason: str) -> None:
        try:
            closed = handle.close()
        except sqlite3.Error as exc:
            logger.error(
                "db_connection_close_failed",
                extra={"db_path": self._path, "generation": handle.generation, "error": str(exc)},
            )
            raise
        if closed:
            logger.info(
                "db_connection_closed",
                extra={"db_path": self._path, "generation": handle.generation, "reason": reason},
            )

    def _drop(self, handle: ConnectionHandle, *, reason: str, level: int) -> None:
        try:
            handle.close()
        except sqlite3.Error as exc:
            logger.debug(
                "db_connection_drop_close_failed",
                extra={"db_path": self._path, "generation": handle.generation, "error": str(exc)},
            )
        logger.log(
            level,
            "db_connection_invalidated",
            extra={"db_path": self._path, "generation": handle.generation, "reason": reason},
        )
        with self._lock:
            if self._handle is handle:
                self._handle = None


def _close_quietly(conn: Any) -> None:
    try:
        conn.close()
    except sqlite3.Error:
        logger.debug("db_connection_close_failed", exc_info=True)


__all__ = [
    "ConnectFactory",
    "ConnectionHandle",
    "ConnectionSupervisor",
    "HandleLease",
]
