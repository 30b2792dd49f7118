"""
explorer-db - transaction coordinator.

File: src/explorer_db/persistence/transactions.py

Purpose
- Atomic multi-statement execution with logical nesting through savepoints.

Functional requirements
- Depth 0 -> 1 begins a real transaction; deeper scopes create ``sp_<depth>``
  savepoints. Only one scope is active per depth, so names never collide.
- Any exception leaving a scope rolls that scope back (savepoint only when
  nested) and is re-raised unchanged.
- Commit failures that are transient go through the retry executor; a commit
  that still fails is rolled back before the error propagates.
- Nesting state lives on an explicit ``TransactionContext`` passed down the call
  chain, never in thread-local or ambient state.
- Every log record emitted inside a scope carries its ``transaction_id``.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable
from enum import StrEnum
from typing import Any, TypeVar

import structlog

from explorer_db.errors import (
    CoordinatorError,
    TransactionError,
    TransientLockError,
    is_transient,
)
from explorer_db.observability.logging import correlation_scope
from explorer_db.persistence.execution import control
from explorer_db.persistence.retry import ErrorClassifier, RetryPolicy, with_retry
from explorer_db.persistence.supervisor import ConnectionHandle, ConnectionSupervisor

T = TypeVar("T")

logger = logging.getLogger(__name__)
_decisions = structlog.get_logger(__name__)


class ScopeState(StrEnum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class TransactionScope:
    """One in-flight atomic unit; its terminal state is set exactly once."""

    __slots__ = ("depth", "savepoint_name", "state")

    def __init__(self, depth: int, savepoint_name: str | None) -> None:
        self.depth = depth
        self.savepoint_name = savepoint_name
        self.state = ScopeState.ACTIVE

    @property
    def is_outermost(self) -> bool:
        return self.depth == 1

    @property
    def is_active(self) -> bool:
        return self.state is ScopeState.ACTIVE

    def finish(self, state: ScopeState) -> None:
        if state is ScopeState.ACTIVE:
            raise ValueError("a scope cannot transition back to active")
        if self.state is not ScopeState.ACTIVE:
            raise TransactionError(
                f"scope already {self.state.value}; cannot mark {state.value}",
                depth=self.depth,
                savepoint=self.savepoint_name,
            )
        self.state = state

    def __repr__(self) -> str:
        return (
            f"TransactionScope(depth={self.depth}, savepoint={self.savepoint_name!r}, "
            f"state={self.state.value})"
        )


def savepoint_name_for(depth: int) -> str:
    if depth < 2:
        raise ValueError("savepoints exist only for depth >= 2")
    return f"sp_{depth}"


class TransactionContext:
    """Explicit nesting state for one logical call stack.

    The context is also the lease owner: while its outermost scope is active
    no other caller may issue statements on the shared handle.
    """

    __slots__ = ("_generation", "_scopes", "bind_thread", "transaction_id")

    def __init__(self, *, bind_thread: bool = True) -> None:
        self.bind_thread = bind_thread
        self.transaction_id = uuid.uuid4().hex[:12]
        self._scopes: list[TransactionScope] = []
        self._generation: int | None = None

    @property
    def depth(self) -> int:
        return len(self._scopes)

    @property
    def active(self) -> bool:
        return bool(self._scopes)

    @property
    def current(self) -> TransactionScope | None:
        return self._scopes[-1] if self._scopes else None

    @property
    def generation(self) -> int | None:
        return self._generation

    def scopes(self) -> tuple[TransactionScope, ...]:
        return tuple(self._scopes)

    def _push(self, scope: TransactionScope) -> None:
        self._scopes.append(scope)

    def _pop(self, scope: TransactionScope) -> None:
        if not self._scopes or self._scopes[-1] is not scope:
            raise TransactionError(
                "transaction scopes must exit in LIFO order",
                depth=scope.depth,
                savepoint=scope.savepoint_name,
            )
        self._scopes.pop()
        if not self._scopes:
            self._generation = None

    def __repr__(self) -> str:
        return f"TransactionContext(id={self.transaction_id}, depth={self.depth})"


class TransactionCoordinator:
    """Begin/commit/rollback primitives plus the ``run`` orchestration."""

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        policy: RetryPolicy | None = None,
        *,
        immediate: bool = True,
        classifier: ErrorClassifier = is_transient,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
        decision_logger: Any | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._policy = policy if policy is not None else RetryPolicy()
        self._begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._classifier = classifier
        self._sleep = sleep
        self._rng = rng
        self._decisions = decision_logger if decision_logger is not None else _decisions

    @property
    def supervisor(self) -> ConnectionSupervisor:
        return self._supervisor

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    def begin(self, context: TransactionContext) -> TransactionScope:
        depth = context.depth + 1
        if depth == 1:
            scope = self._begin_outermost(context)
        else:
            name = savepoint_name_for(depth)
            handle = self.handle_for(context)
            self._control(handle, f"SAVEPOINT {name}", depth=depth, savepoint=name, step="savepoint")
            scope = TransactionScope(depth, name)
        context._push(scope)
        logger.debug(
            "db_transaction_scope_entered",
            extra={
                "transaction_id": context.transaction_id,
                "depth": depth,
                "savepoint": scope.savepoint_name,
            },
        )
        return scope

    def commit(self, context: TransactionContext, scope: TransactionScope) -> None:
        self._require_current(context, scope)
        try:
            handle = self.handle_for(context)
            if scope.is_outermost:
                with_retry(
                    lambda: self._control(handle, "COMMIT", depth=1, savepoint=None, step="commit"),
                    self._policy,
                    classifier=self._classifier,
                    sleep=self._sleep,
                    rng=self._rng,
                    label="commit transaction",
                    logger=self._decisions,
                )
            else:
                name = scope.savepoint_name
                self._control(
                    handle, f"RELEASE SAVEPOINT {name}", depth=scope.depth, savepoint=name, step="release"
                )
        except BaseException as exc:
            self._abort(context, scope, exc)
            raise

        scope.finish(ScopeState.COMMITTED)
        self._exit(context, scope)
        logger.debug(
            "db_transaction_scope_committed",
            extra={
                "transaction_id": context.transaction_id,
                "depth": scope.depth,
                "savepoint": scope.savepoint_name,
            },
        )

    def rollback(self, context: TransactionContext, scope: TransactionScope) -> None:
        self._require_current(context, scope)
        try:
            self._issue_rollback(context, scope)
        finally:
            if scope.is_active:
                scope.finish(ScopeState.ROLLED_BACK)
            self._exit(context, scope)

    def run(
        self,
        callback: Callable[[TransactionContext], T],
        context: TransactionContext | None = None,
    ) -> T:
        """Run ``callback`` inside a new scope of ``context`` (``withTransaction``)."""

        ctx = context if context is not None else TransactionContext()
        with correlation_scope(transaction_id=ctx.transaction_id):
            scope = self.begin(ctx)
            try:
                result = callback(ctx)
            except BaseException as exc:
                self.rollback_after_failure(ctx, scope, exc)
                raise
            self.commit(ctx, scope)
            return result

    def rollback_after_failure(
        self,
        context: TransactionContext,
        scope: TransactionScope,
        exc: BaseException,
    ) -> None:
        """Roll ``scope`` back after ``exc`` escaped it, never masking ``exc``."""

        self._unwind_above(context, scope, exc)
        self._decisions.warning(
            "db_transaction_rolled_back",
            transaction_id=context.transaction_id,
            depth=scope.depth,
            savepoint=scope.savepoint_name,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        try:
            self.rollback(context, scope)
        except (CoordinatorError, OSError) as rollback_exc:
            logger.error(
                "db_transaction_rollback_failed",
                extra={
                    "transaction_id": context.transaction_id,
                    "depth": scope.depth,
                    "savepoint": scope.savepoint_name,
                    "error": str(rollback_exc),
                },
            )
            exc.add_note(f"rollback also failed: {rollback_exc}")

    def handle_for(self, context: TransactionContext) -> ConnectionHandle:
        """Re-acquire the handle for a statement inside ``context``."""

        current = context.current
        depth = context.depth
        savepoint = current.savepoint_name if current is not None else None
        if not context.active:
            raise TransactionError("no active transaction", depth=0)
        if not self._supervisor.holds_lease(context):
            raise TransactionError("transaction no longer holds the handle lease", depth=depth, savepoint=savepoint)
        handle = self._supervisor.acquire()
        if handle.generation != context.generation:
            raise TransactionError(
                "connection handle was invalidated during the transaction",
                depth=depth,
                savepoint=savepoint,
            )
        return handle

    def _begin_outermost(self, context: TransactionContext) -> TransactionScope:
        self._supervisor.acquire_lease(context, bind_thread=context.bind_thread)
        try:
            handle = self._supervisor.acquire()
            if handle.in_transaction:
                raise TransactionError(
                    "handle already has an open transaction outside the coordinator",
                    depth=1,
                )
            self._control(handle, self._begin_sql, depth=1, savepoint=None, step="begin")
        except BaseException:
            self._supervisor.release_lease(context)
            raise
        context._generation = handle.generation
        return TransactionScope(1, None)

    def _issue_rollback(self, context: TransactionContext, scope: TransactionScope) -> None:
        try:
            handle = self.handle_for(context)
        except TransactionError as exc:
            # Closing the old handle already discarded the uncommitted work.
            logger.warning(
                "db_transaction_rollback_skipped",
                extra={"transaction_id": context.transaction_id, "depth": scope.depth, "error": str(exc)},
            )
            return
        if not handle.in_transaction:
            logger.warning(
                "db_transaction_already_ended",
                extra={"transaction_id": context.transaction_id, "depth": scope.depth},
            )
            return
        if scope.is_outermost:
            self._control(handle, "ROLLBACK", depth=1, savepoint=None, step="rollback")
            return
        name = scope.savepoint_name
        self._control(
            handle, f"ROLLBACK TO SAVEPOINT {name}", depth=scope.depth, savepoint=name, step="rollback to"
        )
        self._control(
            handle, f"RELEASE SAVEPOINT {name}", depth=scope.depth, savepoint=name, step="release"
        )

    def _abort(self, context: TransactionContext, scope: TransactionScope, exc: BaseException) -> None:
        if not scope.is_active:
            return
        self.rollback_after_failure(context, scope, exc)

    def _unwind_above(
        self,
        context: TransactionContext,
        scope: TransactionScope,
        exc: BaseException,
    ) -> None:
        while context.current is not None and context.current is not scope:
            inner = context.current
            logger.warning(
                "db_transaction_unclosed_scope",
                extra={"transaction_id": context.transaction_id, "depth": inner.depth},
            )
            try:
                self.rollback(context, inner)
            except (CoordinatorError, OSError) as rollback_exc:
                exc.add_note(f"rollback of depth {inner.depth} failed: {rollback_exc}")

    def _require_current(self, context: TransactionContext, scope: TransactionScope) -> None:
        if context.current is not scope:
            raise TransactionError(
                "scope is not the innermost active scope of this context",
                depth=scope.depth,
                savepoint=scope.savepoint_name,
            )
        if not scope.is_active:
            raise TransactionError(
                f"scope already {scope.state.value}",
                depth=scope.depth,
                savepoint=scope.savepoint_name,
            )

    def _exit(self, context: TransactionContext, scope: TransactionScope) -> None:
        context._pop(scope)
        if scope.is_outermost:
            self._supervisor.release_lease(context)

    def _control(
        self,
        handle: ConnectionHandle,
        sql: str,
        *,
        depth: int,
        savepoint: str | None,
        step: str,
    ) -> None:
        try:
            control(self._supervisor, handle, sql, operation=step)
        except TransientLockError:
            raise
        except CoordinatorError as exc:
            raise TransactionError(f"{step} failed: {exc}", depth=depth, savepoint=savepoint) from exc


__all__ = [
    "ScopeState",
    "TransactionContext",
    "TransactionCoordinator",
    "TransactionScope",
    "savepoint_name_for",
]
