"""Statement execution against a leased handle, with error translation at the sqlite boundary."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from explorer_db.errors import StoreFaultError, translate_sqlite_error
from explorer_db.persistence.operations import Operation, SQLValue
from explorer_db.persistence.supervisor import ConnectionHandle, ConnectionSupervisor

logger = logging.getLogger(__name__)

RowValue = str | int | float | bytes | None
Row = dict[str, RowValue]


@dataclass(frozen=True, slots=True)
class RunResult:
    """Affected-row metadata returned by write statements."""

    rowcount: int
    last_row_id: int | None = None

    def to_dict(self) -> dict[str, int | None]:
        return {"rowcount": self.rowcount, "last_row_id": self.last_row_id}


def perform(
    supervisor: ConnectionSupervisor,
    handle: ConnectionHandle,
    operation: Operation,
) -> list[Row] | RunResult:
    """Execute ``operation`` once on ``handle``; the caller holds the lease."""

    label = operation.display_label
    try:
        if operation.kind == "query":
            cursor = handle.connection.execute(operation.statement, operation.bound())
            return [_row_to_dict(row) for row in cursor.fetchall()]
        if operation.kind == "run":
            cursor = handle.connection.execute(operation.statement, operation.bound())
            return RunResult(rowcount=cursor.rowcount, last_row_id=cursor.lastrowid)
        cursor = handle.connection.executemany(operation.statement, operation.bound_rows())
        return RunResult(rowcount=cursor.rowcount, last_row_id=None)
    except sqlite3.Error as exc:
        raise _translate(supervisor, handle, exc, operation=label) from exc


def control(
    supervisor: ConnectionSupervisor,
    handle: ConnectionHandle,
    sql: str,
    params: tuple[SQLValue, ...] = (),
    *,
    operation: str,
) -> None:
    """Execute a transaction-control or maintenance statement."""

    try:
        handle.connection.execute(sql, params)
    except sqlite3.Error as exc:
        raise _translate(supervisor, handle, exc, operation=operation) from exc


def _translate(
    supervisor: ConnectionSupervisor,
    handle: ConnectionHandle,
    exc: sqlite3.Error,
    *,
    operation: str,
) -> Exception:
    translated = translate_sqlite_error(exc, operation=operation)
    if isinstance(translated, StoreFaultError) and translated.invalidated:
        supervisor.invalidate(f"{operation}: {exc}", generation=handle.generation)
    return translated


def _row_to_dict(row: sqlite3.Row) -> Row:
    raw = dict(row)
    return {str(key): raw[key] for key in raw}


__all__ = ["Row", "RowValue", "RunResult", "control", "perform"]
