"""
explorer-db - asyncio query facade.

File: src/explorer_db/persistence/async_facade.py

Purpose
- Expose the query facade to coroutine callers without blocking the event loop.

Functional requirements
- Statements run in worker threads via ``asyncio.to_thread``.
- Retry backoff awaits ``asyncio.sleep`` so other tasks keep running.
- An async transaction holds the handle lease across thread hops; the lease is
  keyed by the transaction context, not by the worker thread.
"""

from __future__ import annotations

import asyncio
import contextvars
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from explorer_db.errors import CallerError, OperationCancelledError
from explorer_db.observability.logging import correlation_scope
from explorer_db.persistence.execution import Row, RunResult, perform
from explorer_db.persistence.facade import QueryFacade
from explorer_db.persistence.operations import Operation, SQLParams
from explorer_db.persistence.retry import CancelToken, with_retry_async
from explorer_db.persistence.transactions import TransactionContext

T = TypeVar("T")

# Only used to reject root-facade calls made from inside an async transaction
# callback; those would otherwise wait on the lease their own task holds.
_active_transaction: contextvars.ContextVar[TransactionContext | None] = contextvars.ContextVar(
    "explorer_db_active_transaction", default=None
)


class AsyncQueryFacade:
    """Coroutine twin of :class:`QueryFacade` sharing its supervisor and policy."""

    def __init__(
        self,
        facade: QueryFacade,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._facade = facade
        self._sleep = sleep

    @property
    def facade(self) -> QueryFacade:
        return self._facade

    async def query(self, statement: str, params: SQLParams = (), *, cancel: CancelToken | None = None) -> list[Row]:
        return await self.execute(Operation.query(statement, params), cancel=cancel)  # type: ignore[return-value]

    async def query_one(
        self, statement: str, params: SQLParams = (), *, cancel: CancelToken | None = None
    ) -> Row | None:
        rows = await self.query(statement, params, cancel=cancel)
        return rows[0] if rows else None

    async def scalar(self, statement: str, params: SQLParams = (), *, cancel: CancelToken | None = None) -> Any:
        row = await self.query_one(statement, params, cancel=cancel)
        if row is None:
            return None
        return next(iter(row.values()), None)

    async def run(self, statement: str, params: SQLParams = (), *, cancel: CancelToken | None = None) -> RunResult:
        return await self.execute(Operation.run(statement, params), cancel=cancel)  # type: ignore[return-value]

    async def run_many(
        self,
        statement: str,
        params_seq: Iterable[SQLParams],
        *,
        cancel: CancelToken | None = None,
    ) -> RunResult:
        operation = Operation.run_many(statement, params_seq)
        return await self.execute(operation, cancel=cancel)  # type: ignore[return-value]

    async def execute(self, operation: Operation, *, cancel: CancelToken | None = None) -> list[Row] | RunResult:
        _reject_inside_transaction()
        facade = self._facade
        return await with_retry_async(
            lambda: asyncio.to_thread(facade.execute_once, operation),
            facade.policy,
            classifier=operation.classifier or facade.classifier,
            sleep=self._sleep,
            rng=facade.rng,
            cancel=cancel,
            label=operation.display_label,
            logger=facade.decision_logger,
        )

    async def with_transaction(
        self,
        callback: Callable[[AsyncTransactionFacade], Awaitable[T]],
        *,
        cancel: CancelToken | None = None,
    ) -> T:
        _reject_inside_transaction()
        facade = self._facade

        async def attempt() -> T:
            context = TransactionContext(bind_thread=False)
            tx = AsyncTransactionFacade(facade, context, cancel=cancel)
            return await tx._run_scope(callback)

        return await with_retry_async(
            attempt,
            facade.policy,
            classifier=facade.classifier,
            sleep=self._sleep,
            rng=facade.rng,
            cancel=cancel,
            label="transaction",
            logger=facade.decision_logger,
        )


class AsyncTransactionFacade:
    """Coroutine statement surface bound to one active ``TransactionContext``."""

    def __init__(
        self,
        root: QueryFacade,
        context: TransactionContext,
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        self._root = root
        self._context = context
        self._cancel = cancel

    @property
    def context(self) -> TransactionContext:
        return self._context

    @property
    def depth(self) -> int:
        return self._context.depth

    async def query(self, statement: str, params: SQLParams = ()) -> list[Row]:
        return await self.execute(Operation.query(statement, params))  # type: ignore[return-value]

    async def query_one(self, statement: str, params: SQLParams = ()) -> Row | None:
        rows = await self.query(statement, params)
        return rows[0] if rows else None

    async def scalar(self, statement: str, params: SQLParams = ()) -> Any:
        row = await self.query_one(statement, params)
        if row is None:
            return None
        return next(iter(row.values()), None)

    async def run(self, statement: str, params: SQLParams = ()) -> RunResult:
        return await self.execute(Operation.run(statement, params))  # type: ignore[return-value]

    async def run_many(self, statement: str, params_seq: Iterable[SQLParams]) -> RunResult:
        return await self.execute(Operation.run_many(statement, params_seq))  # type: ignore[return-value]

    async def execute(self, operation: Operation) -> list[Row] | RunResult:
        self._check_usable()
        return await asyncio.to_thread(self._execute_sync, operation)

    async def with_transaction(self, callback: Callable[[AsyncTransactionFacade], Awaitable[T]]) -> T:
        """Run ``callback`` inside a savepoint of the active transaction."""

        self._check_usable()
        return await self._run_scope(callback)

    async def _run_scope(self, callback: Callable[[AsyncTransactionFacade], Awaitable[T]]) -> T:
        coordinator = self._root.coordinator
        context = self._context
        with correlation_scope(transaction_id=context.transaction_id):
            scope = await asyncio.to_thread(coordinator.begin, context)
            token = _active_transaction.set(context)
            try:
                result = await callback(self)
            except BaseException as exc:
                _active_transaction.reset(token)
                await asyncio.shield(asyncio.to_thread(coordinator.rollback_after_failure, context, scope, exc))
                raise
            _active_transaction.reset(token)
            await asyncio.shield(asyncio.to_thread(coordinator.commit, context, scope))
            return result

    def _execute_sync(self, operation: Operation) -> list[Row] | RunResult:
        coordinator = self._root.coordinator
        handle = coordinator.handle_for(self._context)
        return perform(coordinator.supervisor, handle, operation)

    def _check_usable(self) -> None:
        if not self._context.active:
            raise CallerError("transaction facade used after its transaction ended")
        if self._cancel is not None and self._cancel.cancelled:
            raise OperationCancelledError(
                f"transaction {self._context.transaction_id} {self._cancel.reason}"
            )


def _reject_inside_transaction() -> None:
    context = _active_transaction.get()
    if context is not None and context.active:
        raise CallerError(
            "the handle is leased to an active transaction in this task; "
            "issue statements through the transaction facade passed to the callback"
        )


__all__ = ["AsyncQueryFacade", "AsyncTransactionFacade"]
