"""
explorer-db - error taxonomy.

File: src/explorer_db/errors.py

Purpose
- Typed errors surfaced by the coordinator and the single translation point
  from ``sqlite3`` exceptions into them.

Functional requirements
- Transient busy/locked failures are distinguishable from every other kind.
- Corruption and I/O faults are flagged so the supervisor can drop the handle.
"""

from __future__ import annotations

import sqlite3
from enum import StrEnum
from typing import Final


class CoordinatorError(RuntimeError):
    """Base class for coordinator errors."""


class DBConnectionError(CoordinatorError):
    """Raised when the database handle cannot be opened or configured."""


class TransientLockError(CoordinatorError):
    """Raised when the store (or the handle lease) reports itself busy."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class TransactionError(CoordinatorError):
    """Raised when transaction or savepoint management fails."""

    def __init__(self, message: str, *, depth: int, savepoint: str | None = None) -> None:
        location = f"depth={depth}" if savepoint is None else f"depth={depth}, savepoint={savepoint}"
        super().__init__(f"{message} ({location})")
        self.depth = depth
        self.savepoint = savepoint


class CallerError(CoordinatorError):
    """Raised for malformed statements, bad parameters, and constraint violations."""


class StoreFaultError(CoordinatorError):
    """Raised for non-retryable store faults (corruption, disk I/O, read-only)."""

    def __init__(self, message: str, *, invalidated: bool = False) -> None:
        super().__init__(message)
        self.invalidated = invalidated


class OperationCancelledError(CoordinatorError):
    """Raised when a cancel token fires before an operation could complete."""


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    CALLER = "caller"
    CORRUPTION = "corruption"
    FATAL = "fatal"


def _codes(*names: str) -> frozenset[int]:
    return frozenset(
        code for code in (getattr(sqlite3, name, None) for name in names) if isinstance(code, int)
    )


_BUSY_CODES: Final[frozenset[int]] = _codes("SQLITE_BUSY", "SQLITE_LOCKED")
_CORRUPTION_CODES: Final[frozenset[int]] = _codes(
    "SQLITE_CORRUPT", "SQLITE_NOTADB", "SQLITE_IOERR", "SQLITE_CANTOPEN"
)
_CALLER_CODES: Final[frozenset[int]] = _codes(
    "SQLITE_ERROR",
    "SQLITE_CONSTRAINT",
    "SQLITE_MISMATCH",
    "SQLITE_RANGE",
    "SQLITE_TOOBIG",
    "SQLITE_AUTH",
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
    "database is busy",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
    "disk i/o error",
    "cannot operate on a closed database",
)

_CALLER_SUBSTRINGS: Final[tuple[str, ...]] = (
    "syntax error",
    "no such table",
    "no such column",
    "has no column named",
    "incorrect number of bindings",
    "you did not supply a value for binding",
    "constraint failed",
)


def classify_sqlite_error(exc: BaseException) -> ErrorKind:
    """Classify a raw ``sqlite3`` exception by how the coordinator must react."""

    if isinstance(exc, TransientLockError):
        return ErrorKind.TRANSIENT
    if not isinstance(exc, sqlite3.Error):
        return ErrorKind.FATAL

    message = str(exc).lower()
    code = getattr(exc, "sqlite_errorcode", None)
    primary = code & 0xFF if isinstance(code, int) else None

    if primary in _BUSY_CODES or any(fragment in message for fragment in _BUSY_SUBSTRINGS):
        return ErrorKind.TRANSIENT
    if primary in _CORRUPTION_CODES or any(
        fragment in message for fragment in _CORRUPTION_SUBSTRINGS
    ):
        return ErrorKind.CORRUPTION
    if isinstance(exc, (sqlite3.IntegrityError, sqlite3.InterfaceError, sqlite3.DataError)):
        return ErrorKind.CALLER
    if isinstance(exc, sqlite3.ProgrammingError):
        return ErrorKind.CALLER
    if primary in _CALLER_CODES or any(fragment in message for fragment in _CALLER_SUBSTRINGS):
        return ErrorKind.CALLER
    return ErrorKind.FATAL


def translate_sqlite_error(exc: sqlite3.Error, *, operation: str) -> CoordinatorError:
    """Map a raw ``sqlite3`` exception to the coordinator taxonomy.

    The caller is expected to ``raise translated from exc`` so the original
    error stays on the chain.
    """

    kind = classify_sqlite_error(exc)
    if kind is ErrorKind.TRANSIENT:
        return TransientLockError(f"{operation}: store busy: {exc}", operation=operation)
    if kind is ErrorKind.CALLER:
        return CallerError(f"{operation}: {exc}")
    if kind is ErrorKind.CORRUPTION:
        return StoreFaultError(f"{operation}: store fault: {exc}", invalidated=True)
    return StoreFaultError(f"{operation}: {exc}")


def is_transient(exc: BaseException) -> bool:
    """Default retry classifier: only busy/locked failures are retryable."""

    return classify_sqlite_error(exc) is ErrorKind.TRANSIENT


__all__ = [
    "CallerError",
    "CoordinatorError",
    "DBConnectionError",
    "ErrorKind",
    "OperationCancelledError",
    "StoreFaultError",
    "TransactionError",
    "TransientLockError",
    "classify_sqlite_error",
    "is_transient",
    "translate_sqlite_error",
]
