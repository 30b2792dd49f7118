"""
explorer-db - persistence layer.

File: src/explorer_db/persistence/__init__.py

Purpose
- Connection supervision, retry, transactions and the query facade callers use.

Functional requirements
- Every statement reaches the store through the supervisor's single handle.
"""

from __future__ import annotations

from explorer_db.persistence.async_facade import AsyncQueryFacade, AsyncTransactionFacade
from explorer_db.persistence.diagnostics import (
    ConnectionReport,
    backup,
    check_connection,
    integrity_check,
    table_counts,
)
from explorer_db.persistence.execution import Row, RunResult
from explorer_db.persistence.facade import QueryFacade, TransactionFacade
from explorer_db.persistence.lifecycle import ShutdownHooks, install_shutdown_hooks
from explorer_db.persistence.operations import Operation
from explorer_db.persistence.retry import (
    CancelToken,
    RetryPolicy,
    compute_delay,
    with_retry,
    with_retry_async,
)
from explorer_db.persistence.supervisor import ConnectionHandle, ConnectionSupervisor
from explorer_db.persistence.transactions import (
    ScopeState,
    TransactionContext,
    TransactionCoordinator,
    TransactionScope,
)

__all__ = [
    "AsyncQueryFacade",
    "AsyncTransactionFacade",
    "CancelToken",
    "ConnectionHandle",
    "ConnectionReport",
    "ConnectionSupervisor",
    "Operation",
    "QueryFacade",
    "RetryPolicy",
    "Row",
    "RunResult",
    "ScopeState",
    "ShutdownHooks",
    "TransactionContext",
    "TransactionCoordinator",
    "TransactionFacade",
    "TransactionScope",
    "backup",
    "check_connection",
    "compute_delay",
    "install_shutdown_hooks",
    "integrity_check",
    "table_counts",
    "with_retry",
    "with_retry_async",
]
