"""Public observability primitives: JSON-lines logging and the structlog bridge."""

from explorer_db.observability.logging import (
    CORRELATION_KEYS,
    JsonLineFormatter,
    LogSettings,
    LogSink,
    configure_structlog,
    correlation_scope,
    redact,
    setup_logging,
    shutdown_logging,
    start_logging,
)

__all__ = [
    "CORRELATION_KEYS",
    "JsonLineFormatter",
    "LogSettings",
    "LogSink",
    "configure_structlog",
    "correlation_scope",
    "redact",
    "setup_logging",
    "shutdown_logging",
    "start_logging",
]
