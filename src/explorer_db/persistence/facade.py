"""
explorer-db - query facade.

File: src/explorer_db/persistence/facade.py

Purpose
- The only surface application code calls. Hides whether a call is a plain
  read, a retried write, or part of a larger transaction.

Functional requirements
- ``query``/``run`` run one ``Operation`` under the handle lease, wrapped in the
  retry executor.
- ``with_transaction`` delegates to the transaction coordinator; the callback
  receives a ``TransactionFacade`` so nested calls join the active transaction.
- Blocking entry points refuse to run on an event loop thread; coroutine
  callers go through ``AsyncQueryFacade``.
- The outermost transaction is retried as a whole; nested scopes are not
  retried on their own.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from explorer_db.errors import CallerError, OperationCancelledError, is_transient
from explorer_db.persistence.execution import Row, RunResult, perform
from explorer_db.persistence.operations import Operation, SQLParams
from explorer_db.persistence.retry import CancelToken, ErrorClassifier, RetryPolicy, with_retry
from explorer_db.persistence.supervisor import ConnectionSupervisor
from explorer_db.persistence.transactions import TransactionContext, TransactionCoordinator

T = TypeVar("T")

logger = logging.getLogger(__name__)


class QueryFacade:
    """Retrying read/write/transaction entry point over one supervisor."""

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        *,
        policy: RetryPolicy | None = None,
        classifier: ErrorClassifier | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
        decision_logger: Any | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._policy = policy if policy is not None else RetryPolicy()
        self._classifier = classifier if classifier is not None else is_transient
        self._sleep = sleep
        self._rng = rng
        self._decision_logger = decision_logger
        self._coordinator = TransactionCoordinator(
            supervisor,
            self._policy,
            classifier=self._classifier,
            sleep=sleep,
            rng=rng,
            decision_logger=decision_logger,
        )

    @property
    def supervisor(self) -> ConnectionSupervisor:
        return self._supervisor

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    @property
    def coordinator(self) -> TransactionCoordinator:
        return self._coordinator

    @property
    def rng(self) -> Callable[[], float]:
        return self._rng

    @property
    def decision_logger(self) -> Any | None:
        return self._decision_logger

    def query(self, statement: str, params: SQLParams = (), *, cancel: CancelToken | None = None) -> list[Row]:
        return self.execute(Operation.query(statement, params), cancel=cancel)  # type: ignore[return-value]

    def query_one(self, statement: str, params: SQLParams = (), *, cancel: CancelToken | None = None) -> Row | None:
        rows = self.query(statement, params, cancel=cancel)
        return rows[0] if rows else None

    def scalar(self, statement: str, params: SQLParams = (), *, cancel: CancelToken | None = None) -> Any:
        row = self.query_one(statement, params, cancel=cancel)
        if row is None:
            return None
        return next(iter(row.values()), None)

    def run(self, statement: str, params: SQLParams = (), *, cancel: CancelToken | None = None) -> RunResult:
        return self.execute(Operation.run(statement, params), cancel=cancel)  # type: ignore[return-value]

    def run_many(
        self,
        statement: str,
        params_seq: Iterable[SQLParams],
        *,
        cancel: CancelToken | None = None,
    ) -> RunResult:
        """Apply ``statement`` to every parameter set in one atomic transaction."""

        return self.execute(Operation.run_many(statement, params_seq), cancel=cancel)  # type: ignore[return-value]

    def execute(self, operation: Operation, *, cancel: CancelToken | None = None) -> list[Row] | RunResult:
        """Run ``operation`` with retry; the path every convenience method takes."""

        _assert_sync_io_allowed(operation.display_label)
        return with_retry(
            lambda: self.execute_once(operation),
            self._policy,
            classifier=operation.classifier or self._classifier,
            sleep=self._sleep,
            rng=self._rng,
            cancel=cancel,
            label=operation.display_label,
            logger=self._decision_logger,
        )

    def execute_once(self, operation: Operation) -> list[Row] | RunResult:
        """Run ``operation`` exactly once under a fresh lease, without retry."""

        if operation.kind == "run_many":
            return self._coordinator.run(
                lambda context: perform(self._supervisor, self._coordinator.handle_for(context), operation)
            )
        with self._supervisor.lease() as handle:
            logger.debug(
                "db_statement",
                extra={"operation": operation.preview, "kind": operation.kind, "generation": handle.generation},
            )
            return perform(self._supervisor, handle, operation)

    def with_transaction(
        self,
        callback: Callable[[TransactionFacade], T],
        *,
        cancel: CancelToken | None = None,
    ) -> T:
        """Run ``callback`` atomically; any exception rolls everything back."""

        _assert_sync_io_allowed("transaction")

        def attempt() -> T:
            context = TransactionContext()
            return self._coordinator.run(
                lambda ctx: callback(TransactionFacade(self, ctx, cancel=cancel)),
                context,
            )

        return with_retry(
            attempt,
            self._policy,
            classifier=self._classifier,
            sleep=self._sleep,
            rng=self._rng,
            cancel=cancel,
            label="transaction",
            logger=self._decision_logger,
        )


class TransactionFacade:
    """Statement surface bound to one active ``TransactionContext``.

    Statements run directly on the leased handle without per-statement retry;
    a transient failure rolls back to the enclosing scope and the outermost
    scope is retried by the root facade.
    """

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

    @property
    def transaction_id(self) -> str:
        return self._context.transaction_id

    def query(self, statement: str, params: SQLParams = ()) -> list[Row]:
        return self.execute(Operation.query(statement, params))  # type: ignore[return-value]

    def query_one(self, statement: str, params: SQLParams = ()) -> Row | None:
        rows = self.query(statement, params)
        return rows[0] if rows else None

    def scalar(self, statement: str, params: SQLParams = ()) -> Any:
        row = self.query_one(statement, params)
        if row is None:
            return None
        return next(iter(row.values()), None)

    def run(self, statement: str, params: SQLParams = ()) -> RunResult:
        return self.execute(Operation.run(statement, params))  # type: ignore[return-value]

    def run_many(self, statement: str, params_seq: Iterable[SQLParams]) -> RunResult:
        return self.execute(Operation.run_many(statement, params_seq))  # type: ignore[return-value]

    def execute(self, operation: Operation) -> list[Row] | RunResult:
        if not self._context.active:
            raise CallerError("transaction facade used after its transaction ended")
        if self._cancel is not None and self._cancel.cancelled:
            raise OperationCancelledError(
                f"transaction {self._context.transaction_id} {self._cancel.reason}"
            )
        coordinator = self._root.coordinator
        handle = coordinator.handle_for(self._context)
        return perform(coordinator.supervisor, handle, operation)

    def with_transaction(self, callback: Callable[[TransactionFacade], T]) -> T:
        """Run ``callback`` inside a savepoint of the active transaction."""

        if not self._context.active:
            raise CallerError("transaction facade used after its transaction ended")
        return self._root.coordinator.run(lambda _ctx: callback(self), self._context)



def _is_async_event_loop_thread() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def _assert_sync_io_allowed(operation: str) -> None:
    if not _is_async_event_loop_thread():
        return
    raise CallerError(
        f"{operation} is disallowed from an active event loop thread; "
        "use AsyncQueryFacade or offload the call via asyncio.to_thread(...)"
    )

__all__ = ["QueryFacade", "TransactionFacade"]
