"""Operational diagnostics over a query facade: health, integrity, backup, table counts."""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path

from explorer_db.errors import CoordinatorError, translate_sqlite_error
from explorer_db.persistence.facade import QueryFacade

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectionReport:
    """Outcome of a connectivity check."""

    ok: bool
    path: str
    generation: int | None = None
    journal_mode: str | None = None
    sqlite_version: str | None = None
    latency_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "path": self.path,
            "generation": self.generation,
            "journal_mode": self.journal_mode,
            "sqlite_version": self.sqlite_version,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


def check_connection(facade: QueryFacade) -> ConnectionReport:
    """Probe the store for its version and journal mode; failures are reported, not raised."""

    supervisor = facade.supervisor
    started = time.perf_counter()
    try:
        version = facade.scalar("SELECT sqlite_version()")
        journal_mode = facade.scalar("PRAGMA journal_mode")
    except CoordinatorError as exc:
        logger.warning("db_check_failed", extra={"db_path": supervisor.path, "error": str(exc)})
        return ConnectionReport(ok=False, path=supervisor.path, error=str(exc))
    latency_ms = round((time.perf_counter() - started) * 1000.0, 3)
    return ConnectionReport(
        ok=True,
        path=supervisor.path,
        generation=supervisor.generation,
        journal_mode=None if journal_mode is None else str(journal_mode),
        sqlite_version=None if version is None else str(version),
        latency_ms=latency_ms,
    )


def integrity_check(facade: QueryFacade, *, max_errors: int = 100) -> tuple[str, ...]:
    """Return integrity-check errors; empty tuple means OK."""

    if max_errors <= 0:
        raise ValueError("max_errors must be > 0")
    rows = facade.query(f"PRAGMA integrity_check({int(max_errors)})")
    messages = tuple(str(next(iter(row.values()), "")) for row in rows)
    if messages == ("ok",):
        return ()
    return messages


def backup(facade: QueryFacade, destination: str | Path) -> Path:
    """Create a consistent snapshot using the SQLite backup API."""

    supervisor = facade.supervisor
    destination_path = Path(destination).expanduser()
    destination_path.parent.mkdir(parents=True, exist_ok=True)

    with supervisor.lease() as handle:
        try:
            with closing(
                sqlite3.connect(
                    destination_path,
                    timeout=supervisor.busy_timeout_ms / 1000.0,
                    isolation_level=None,
                    check_same_thread=False,
                )
            ) as target:
                handle.connection.backup(target)
                target.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as exc:
            raise translate_sqlite_error(exc, operation="backup") from exc

    logger.info(
        "db_backup_written",
        extra={"db_path": supervisor.path, "destination": str(destination_path)},
    )
    return destination_path


def table_counts(facade: QueryFacade) -> dict[str, int]:
    """Row count per user table, keyed by table name in name order."""

    tables = facade.query(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    )
    counts: dict[str, int] = {}
    for row in tables:
        name = str(row["name"])
        quoted = '"' + name.replace('"', '""') + '"'
        counts[name] = int(facade.scalar(f"SELECT COUNT(*) FROM {quoted}") or 0)
    return counts


__all__ = [
    "ConnectionReport",
    "backup",
    "check_connection",
    "integrity_check",
    "table_counts",
]
