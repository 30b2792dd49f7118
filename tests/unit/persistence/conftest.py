"""Shared deterministic fixtures for persistence tests."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

import pytest

from explorer_db.persistence.facade import QueryFacade
from explorer_db.persistence.retry import RetryPolicy
from explorer_db.persistence.supervisor import ConnectionSupervisor

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

FAST_POLICY = RetryPolicy(max_attempts=5, base_delay_ms=1, jitter=0.0, max_delay_ms=5)


class CloseCounter:
    """``connect`` stand-in that records every connection it opens."""

    def __init__(self) -> None:
        self.connections: list[sqlite3.Connection] = []
        self.close_calls = 0

    def __call__(self, path: str, **kwargs: Any) -> sqlite3.Connection:
        counter = self

        class _CountingConnection(sqlite3.Connection):
            def close(self) -> None:
                counter.close_calls += 1
                super().close()

        conn = sqlite3.connect(path, factory=_CountingConnection, **kwargs)
        self.connections.append(conn)
        return conn


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "db" / "explorer.db"


@pytest.fixture
def close_counter() -> CloseCounter:
    return CloseCounter()


@pytest.fixture
def make_supervisor(db_path: Path) -> Iterator[Callable[..., ConnectionSupervisor]]:
    created: list[ConnectionSupervisor] = []

    def _make(**kwargs: Any) -> ConnectionSupervisor:
        supervisor = ConnectionSupervisor(kwargs.pop("path", db_path), **kwargs)
        created.append(supervisor)
        return supervisor

    yield _make
    for supervisor in created:
        supervisor.shutdown()


@pytest.fixture
def supervisor(make_supervisor: Callable[..., ConnectionSupervisor]) -> ConnectionSupervisor:
    return make_supervisor()


@pytest.fixture
def facade(supervisor: ConnectionSupervisor) -> QueryFacade:
    built = QueryFacade(supervisor, policy=FAST_POLICY, sleep=lambda _s: None)
    built.run("CREATE TABLE t (id INTEGER PRIMARY KEY)")
    return built


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return FAST_POLICY
