"""
explorer-db - JSON-lines logging.

File: src/explorer_db/observability/logging.py

Purpose
- One log sink per process run: every ``explorer_db.*`` stdlib record and every
  structlog decision event ends up as one JSON object per line.

Functional requirements
- Records are queued by the emitting thread and written by a listener thread;
  a full queue drops records instead of blocking a database caller.
- Correlation fields (``transaction_id`` and friends) are bound through
  ``structlog.contextvars`` so worker threads started with ``asyncio.to_thread``
  inherit them.
- Bound statement parameters, credentials and GitHub tokens never reach disk.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import queue
import re
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

REDACTED: Final[str] = "***REDACTED***"
LOG_FILENAME: Final[str] = "explorer_db.jsonl"
ROOT_LOGGER: Final[str] = "explorer_db"

CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "transaction_id", "operation_id")

_SECRET_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "api_key",
    "authorization",
    "credential",
)
_PARAMETER_KEYS: Final[frozenset[str]] = frozenset({"params", "parameters", "bindings"})

_ASSIGNMENT = re.compile(r"(?i)\b(api[_-]?key|token|password|secret|authorization)\s*([:=])\s*([^\s,;]+)")
_BEARER = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_GITHUB_TOKEN = re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})\b")

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "correlation"}

_active_lock = threading.Lock()
_active_sink: LogSink | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LogSettings:
    run_id: str
    log_dir: Path | str = Path("logs")
    level: int | str = "INFO"
    logger_name: str = ROOT_LOGGER
    to_stdout: bool = False
    queue_size: int = 4096
    filename: str = LOG_FILENAME


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Stamps correlation fields in the caller's context, never blocks on a full queue."""

    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped_lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        bound = structlog.contextvars.get_contextvars()
        correlation = {key: str(bound[key]) for key in CORRELATION_KEYS if bound.get(key)}
        if correlation:
            record.correlation = correlation
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self.dropped += 1


class JsonLineFormatter(logging.Formatter):
    def __init__(self, run_id: str) -> None:
        super().__init__()
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
            "run_id": self._run_id,
        }
        event.update(getattr(record, "correlation", {}))

        fields: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            if key in CORRELATION_KEYS:
                event[key] = str(value)
                continue
            fields[key] = value
        if fields:
            event["fields"] = redact(_jsonable(fields))
        if record.exc_info is not None:
            event["exception"] = redact(self.formatException(record.exc_info))
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class LogSink:
    """A running queue listener plus the handlers it writes to."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_path: Path,
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
        outputs: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._outputs = outputs
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def flush(self, *, timeout_s: float = 2.0) -> None:
        log_queue = self._queue_handler.queue
        deadline = time.monotonic() + max(timeout_s, 0.0)
        while getattr(log_queue, "unfinished_tasks", 0) > 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        for handler in self._outputs:
            handler.flush()

    def close(self, *, timeout_s: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_s=timeout_s)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for handler in self._outputs:
                handler.close()
            self._closed = True


def start_logging(settings: LogSettings) -> LogSink:
    """Replace any active sink with one writing to ``<log_dir>/<run_id>/<filename>``."""

    global _active_sink

    run_id = settings.run_id.strip() if isinstance(settings.run_id, str) else ""
    if not run_id:
        raise ValueError("run_id must be a non-empty string")
    if Path(settings.filename).name != settings.filename or not settings.filename.strip():
        raise ValueError("filename must be a bare file name without path separators")
    if settings.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _parse_level(settings.level)

    shutdown_logging()

    log_path = Path(settings.log_dir) / run_id / settings.filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = JsonLineFormatter(run_id)
    outputs: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if settings.to_stdout:
        outputs.append(logging.StreamHandler())
    for handler in outputs:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    logger = logging.getLogger(settings.logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.setLevel(level)
    logger.propagate = False

    queue_handler = _DroppingQueueHandler(queue.Queue(maxsize=settings.queue_size))
    listener = logging.handlers.QueueListener(queue_handler.queue, *outputs, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    sink = LogSink(
        logger=logger,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        outputs=tuple(outputs),
    )
    with _active_lock:
        _active_sink = sink
    _register_atexit()
    return sink


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """Start logging from an ``[observability]`` config section and return the logger."""

    cfg = dict(observability_config or {})
    level = cfg.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else cfg.get("log_dir", "logs")
    sink = start_logging(
        LogSettings(
            run_id=run_id,
            log_dir=base_dir if isinstance(base_dir, (str, Path)) else "logs",
            level=level if isinstance(level, (int, str)) else "INFO",
            logger_name=logger_name,
            to_stdout=bool(cfg.get("log_to_stdout", False)),
        )
    )
    return sink.logger


def shutdown_logging(sink: LogSink | None = None) -> None:
    """Drain and close ``sink`` (default: the active one). Safe to call repeatedly."""

    global _active_sink
    with _active_lock:
        target = sink if sink is not None else _active_sink
        if target is _active_sink:
            _active_sink = None
    if target is not None:
        target.close()


def configure_structlog() -> None:
    """Route structlog events into the stdlib ``explorer_db`` logger tree.

    Event keyword arguments become ``extra`` fields, so they land in the same
    JSON-lines sink under ``fields``.
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@contextmanager
def correlation_scope(**fields: str) -> Iterator[None]:
    """Bind correlation fields for every record emitted inside the block."""

    for key, value in fields.items():
        if key not in CORRELATION_KEYS:
            raise ValueError(f"unknown correlation key {key!r}")
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"correlation value for {key!r} must be a non-empty string")
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def redact(value: Any, *, key: str | None = None) -> Any:
    """Mask secrets and bound statement parameters in ``value``."""

    if key is not None:
        lowered = key.lower()
        if lowered in _PARAMETER_KEYS or any(term in lowered for term in _SECRET_KEY_TERMS):
            return REDACTED
    if isinstance(value, str):
        masked = _ASSIGNMENT.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", value)
        masked = _BEARER.sub(f"Bearer {REDACTED}", masked)
        return _GITHUB_TOKEN.sub(REDACTED, masked)
    if isinstance(value, dict):
        return {k: redact(item, key=k) for k, item in value.items()}
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(k): _jsonable(item) for k, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _parse_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(str(value).strip().upper())
    if not isinstance(parsed, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return parsed


def _register_atexit() -> None:
    global _atexit_registered
    if not _atexit_registered:
        atexit.register(shutdown_logging)
        _atexit_registered = True


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
