"""
explorer-db - unit tests for the asyncio query facade

File: tests/unit/persistence/test_async_facade.py

Purpose
- Validate that coroutine callers get the same guarantees as the blocking facade.

What this test file should cover
- Concurrent ``run`` coroutines all succeed.
- Rollback on exception and savepoint isolation inside async transactions.
- Whole-transaction retry on transient errors with awaited backoff.
- Root-facade calls from inside an async transaction are rejected, not deadlocked.
- Blocking facade calls made on the event loop thread are rejected at once.

Functional requirements
- Offline operation against temporary on-disk databases.

Non-functional requirements
- Deterministic and non-flaky.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time

import pytest

from explorer_db.errors import CallerError
from explorer_db.persistence.async_facade import AsyncQueryFacade, AsyncTransactionFacade
from explorer_db.persistence.facade import QueryFacade


async def _no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def _async(facade: QueryFacade) -> AsyncQueryFacade:
    return AsyncQueryFacade(facade, sleep=_no_sleep)


async def _ids(db: AsyncQueryFacade) -> list[int]:
    return [int(row["id"]) for row in await db.query("SELECT id FROM t ORDER BY id")]


@pytest.mark.asyncio
async def test_concurrent_async_runs_all_succeed(facade: QueryFacade) -> None:
    db = _async(facade)

    await asyncio.gather(*(db.run("INSERT INTO t (id) VALUES (?)", (value,)) for value in range(1, 6)))

    assert await db.scalar("SELECT COUNT(*) FROM t") == 5


@pytest.mark.asyncio
async def test_async_transaction_rolls_back_on_exception(facade: QueryFacade) -> None:
    db = _async(facade)

    async def _callback(tx: AsyncTransactionFacade) -> None:
        await tx.run("INSERT INTO t (id) VALUES (1)")
        await tx.run("INSERT INTO t (id) VALUES (2)")
        raise RuntimeError("abort")

    with pytest.raises(RuntimeError, match="abort"):
        await db.with_transaction(_callback)

    assert await db.scalar("SELECT COUNT(*) FROM t") == 0
    assert not facade.supervisor.acquire().in_transaction


@pytest.mark.asyncio
async def test_async_savepoint_isolation(facade: QueryFacade) -> None:
    db = _async(facade)

    async def _inner(tx: AsyncTransactionFacade) -> None:
        assert tx.depth == 2
        await tx.run("INSERT INTO t (id) VALUES (2)")
        raise ValueError("inner failure")

    async def _outer(tx: AsyncTransactionFacade) -> str:
        await tx.run("INSERT INTO t (id) VALUES (1)")
        with pytest.raises(ValueError):
            await tx.with_transaction(_inner)
        return "done"

    assert await db.with_transaction(_outer) == "done"
    assert await _ids(db) == [1]


@pytest.mark.asyncio
async def test_async_transaction_retries_on_transient_error(facade: QueryFacade) -> None:
    db = _async(facade)
    attempts = 0

    async def _callback(tx: AsyncTransactionFacade) -> None:
        nonlocal attempts
        attempts += 1
        await tx.run("INSERT INTO t (id) VALUES (1)")
        if attempts < 3:
            raise sqlite3.OperationalError("database is locked")

    await db.with_transaction(_callback)

    assert attempts == 3
    assert await _ids(db) == [1]


@pytest.mark.asyncio
async def test_root_call_inside_async_transaction_is_rejected(facade: QueryFacade) -> None:
    db = _async(facade)

    async def _callback(tx: AsyncTransactionFacade) -> None:
        await tx.run("INSERT INTO t (id) VALUES (1)")
        await db.run("INSERT INTO t (id) VALUES (2)")

    with pytest.raises(CallerError, match="transaction facade"):
        await db.with_transaction(_callback)

    assert await _ids(db) == []


@pytest.mark.asyncio
async def test_blocking_call_inside_async_transaction_is_rejected(facade: QueryFacade) -> None:
    db = _async(facade)

    async def _callback(tx: AsyncTransactionFacade) -> None:
        await tx.run("INSERT INTO t (id) VALUES (1)")
        facade.query("SELECT id FROM t")

    started = time.perf_counter()
    with pytest.raises(CallerError, match="event loop"):
        await db.with_transaction(_callback)

    assert time.perf_counter() - started < 1.0
    assert await _ids(db) == []


@pytest.mark.asyncio
async def test_blocking_calls_on_the_event_loop_thread_are_rejected(facade: QueryFacade) -> None:
    with pytest.raises(CallerError, match="event loop"):
        facade.run("INSERT INTO t (id) VALUES (1)")
    with pytest.raises(CallerError, match="event loop"):
        facade.with_transaction(lambda tx: tx.run("INSERT INTO t (id) VALUES (2)"))

    await asyncio.to_thread(facade.run, "INSERT INTO t (id) VALUES (3)")

    assert await _ids(_async(facade)) == [3]


@pytest.mark.asyncio
async def test_concurrent_async_transactions_serialize(facade: QueryFacade) -> None:
    db = _async(facade)

    async def _transfer(value: int) -> None:
        async def _callback(tx: AsyncTransactionFacade) -> None:
            await tx.run("INSERT INTO t (id) VALUES (?)", (value,))
            await asyncio.sleep(0)
            await tx.run("INSERT INTO t (id) VALUES (?)", (value + 100,))

        await db.with_transaction(_callback)

    await asyncio.gather(*(_transfer(value) for value in range(1, 4)))

    assert await _ids(db) == [1, 2, 3, 101, 102, 103]
