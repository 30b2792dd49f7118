"""Build runtime objects from a validated config mapping."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from explorer_db.persistence.facade import QueryFacade
from explorer_db.persistence.retry import RetryPolicy
from explorer_db.persistence.supervisor import ConnectionSupervisor


def build_supervisor(config: Mapping[str, Any]) -> ConnectionSupervisor:
    database = config["database"]
    return ConnectionSupervisor(
        database["path"],
        busy_timeout_ms=database["busy_timeout_ms"],
        journal_mode=database["journal_mode"],
        synchronous=database["synchronous"],
        foreign_keys=database["foreign_keys"],
        cache_size_kib=database["cache_size_kib"],
    )


def build_retry_policy(config: Mapping[str, Any]) -> RetryPolicy:
    retry = config["retry"]
    return RetryPolicy(
        max_attempts=retry["max_attempts"],
        base_delay_ms=retry["base_delay_ms"],
        multiplier=retry["multiplier"],
        jitter=retry["jitter"],
        max_delay_ms=retry["max_delay_ms"],
    )


def build_facade(
    config: Mapping[str, Any],
    *,
    supervisor: ConnectionSupervisor | None = None,
) -> QueryFacade:
    """Return a facade over ``supervisor`` (built from ``config`` when omitted)."""

    resolved = supervisor if supervisor is not None else build_supervisor(config)
    return QueryFacade(resolved, policy=build_retry_policy(config))


__all__ = ["build_facade", "build_retry_policy", "build_supervisor"]
