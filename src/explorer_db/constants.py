"""Stable constants shared across the coordinator layers."""

from __future__ import annotations

from typing import Final

# Config schema.
CONFIG_SCHEMA_VERSION: Final[int] = 1
DEFAULT_CONFIG_FILE: Final[str] = "explorer_db.toml"
ENV_PREFIX: Final[str] = "EXPLORER_DB_"
LEGACY_DB_PATH_ENV: Final[str] = "DB_PATH"
DEFAULT_DB_PATH: Final[str] = "db/github_explorer.db"

# Connection supervisor.
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_JOURNAL_MODE: Final[str] = "wal"
DEFAULT_SYNCHRONOUS: Final[str] = "normal"
DEFAULT_CACHE_SIZE_KIB: Final[int] = 20_000
JOURNAL_MODES: Final[tuple[str, ...]] = ("delete", "memory", "off", "persist", "truncate", "wal")
SYNCHRONOUS_MODES: Final[tuple[str, ...]] = ("extra", "full", "normal", "off")
MEMORY_DB_PATH: Final[str] = ":memory:"

# Retry executor.
DEFAULT_MAX_ATTEMPTS: Final[int] = 5
DEFAULT_BASE_DELAY_MS: Final[int] = 100
DEFAULT_BACKOFF_MULTIPLIER: Final[float] = 2.0
DEFAULT_JITTER: Final[float] = 0.25
DEFAULT_MAX_DELAY_MS: Final[int] = 5_000

# Process lifecycle.
DEFAULT_SHUTDOWN_GRACE_S: Final[float] = 5.0

# Logging.
STATEMENT_LOG_PREVIEW_CHARS: Final[int] = 100

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_BASE_DELAY_MS",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "DEFAULT_CACHE_SIZE_KIB",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_DB_PATH",
    "DEFAULT_JITTER",
    "DEFAULT_JOURNAL_MODE",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_DELAY_MS",
    "DEFAULT_SHUTDOWN_GRACE_S",
    "DEFAULT_SYNCHRONOUS",
    "ENV_PREFIX",
    "JOURNAL_MODES",
    "LEGACY_DB_PATH_ENV",
    "MEMORY_DB_PATH",
    "STATEMENT_LOG_PREVIEW_CHARS",
    "SYNCHRONOUS_MODES",
]
