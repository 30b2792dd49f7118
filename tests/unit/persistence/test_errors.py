"""
explorer-db - unit tests for the error taxonomy

File: tests/unit/persistence/test_errors.py

Purpose
- Validate how raw ``sqlite3`` failures are classified and translated.

What this test file should cover
- Busy/locked detection by message and by extended error code.
- Caller, corruption and fatal classification.
- Translation keeps the operation label and flags corruption for invalidation.

Functional requirements
- Offline operation.

Non-functional requirements
- Deterministic and non-flaky.
"""

from __future__ import annotations

import sqlite3

import pytest

from explorer_db.errors import (
    CallerError,
    ErrorKind,
    StoreFaultError,
    TransactionError,
    TransientLockError,
    classify_sqlite_error,
    is_transient,
    translate_sqlite_error,
)


@pytest.mark.parametrize(
    "message",
    [
        "database is locked",
        "database table is locked",
        "Database Schema Is Locked",
    ],
)
def test_busy_messages_are_transient(message: str) -> None:
    exc = sqlite3.OperationalError(message)

    assert classify_sqlite_error(exc) is ErrorKind.TRANSIENT
    assert is_transient(exc)


def test_busy_error_code_is_transient_regardless_of_message() -> None:
    exc = sqlite3.OperationalError("opaque failure")
    exc.sqlite_errorcode = sqlite3.SQLITE_BUSY  # type: ignore[attr-defined]

    assert classify_sqlite_error(exc) is ErrorKind.TRANSIENT


def test_lease_timeout_error_counts_as_transient() -> None:
    assert is_transient(TransientLockError("leased", operation="acquire lease"))


@pytest.mark.parametrize(
    "exc",
    [
        sqlite3.OperationalError('near "SELEC": syntax error'),
        sqlite3.OperationalError("no such table: missing"),
        sqlite3.IntegrityError("UNIQUE constraint failed: t.id"),
        sqlite3.ProgrammingError("Incorrect number of bindings supplied."),
    ],
)
def test_caller_mistakes_are_not_retryable(exc: sqlite3.Error) -> None:
    assert classify_sqlite_error(exc) is ErrorKind.CALLER
    assert not is_transient(exc)


@pytest.mark.parametrize(
    "message",
    [
        "database disk image is malformed",
        "file is not a database",
        "disk I/O error",
    ],
)
def test_corruption_is_classified(message: str) -> None:
    assert classify_sqlite_error(sqlite3.DatabaseError(message)) is ErrorKind.CORRUPTION


def test_non_sqlite_errors_are_fatal() -> None:
    assert classify_sqlite_error(ValueError("boom")) is ErrorKind.FATAL
    assert classify_sqlite_error(sqlite3.OperationalError("something odd")) is ErrorKind.FATAL


def test_translate_busy_keeps_operation_label() -> None:
    translated = translate_sqlite_error(sqlite3.OperationalError("database is locked"), operation="commit")

    assert isinstance(translated, TransientLockError)
    assert translated.operation == "commit"
    assert "commit" in str(translated)


def test_translate_flags_corruption_for_invalidation() -> None:
    corrupt = translate_sqlite_error(sqlite3.DatabaseError("file is not a database"), operation="query")
    fatal = translate_sqlite_error(sqlite3.OperationalError("something odd"), operation="query")

    assert isinstance(corrupt, StoreFaultError)
    assert corrupt.invalidated is True
    assert isinstance(fatal, StoreFaultError)
    assert fatal.invalidated is False


def test_translate_caller_error() -> None:
    translated = translate_sqlite_error(sqlite3.IntegrityError("NOT NULL constraint failed"), operation="run")

    assert isinstance(translated, CallerError)


def test_transaction_error_reports_depth_and_savepoint() -> None:
    outer = TransactionError("commit failed", depth=1)
    inner = TransactionError("release failed", depth=2, savepoint="sp_2")

    assert str(outer) == "commit failed (depth=1)"
    assert str(inner) == "release failed (depth=2, savepoint=sp_2)"
    assert inner.depth == 2
    assert inner.savepoint == "sp_2"
