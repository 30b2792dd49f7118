"""
explorer-db - configuration schema and validation.

File: src/explorer_db/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject unknown fields so typos in ``explorer_db.toml`` fail loudly.

Non-functional requirements
- Keep rules deterministic and easy to audit.
- Preserve backwards compatibility through explicit migration messages.
"""

from __future__ import annotations

import copy
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from explorer_db.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_CACHE_SIZE_KIB,
    DEFAULT_DB_PATH,
    DEFAULT_JITTER,
    DEFAULT_JOURNAL_MODE,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_SHUTDOWN_GRACE_S,
    DEFAULT_SYNCHRONOUS,
    JOURNAL_MODES,
    MEMORY_DB_PATH,
    SYNCHRONOUS_MODES,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("database", "path"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class DatabaseConfig(TypedDict):
    path: str
    busy_timeout_ms: int
    journal_mode: str
    synchronous: str
    foreign_keys: bool
    cache_size_kib: int


class RetryConfig(TypedDict):
    max_attempts: int
    base_delay_ms: float
    multiplier: float
    jitter: float
    max_delay_ms: float


class ShutdownConfig(TypedDict):
    grace_period_s: float
    install_signal_handlers: bool


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool


class ExplorerDBConfig(TypedDict):
    meta: MetaConfig
    database: DatabaseConfig
    retry: RetryConfig
    shutdown: ShutdownConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[ExplorerDBConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "database": {
        "path": DEFAULT_DB_PATH,
        "busy_timeout_ms": DEFAULT_BUSY_TIMEOUT_MS,
        "journal_mode": DEFAULT_JOURNAL_MODE,
        "synchronous": DEFAULT_SYNCHRONOUS,
        "foreign_keys": True,
        "cache_size_kib": DEFAULT_CACHE_SIZE_KIB,
    },
    "retry": {
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
        "base_delay_ms": float(DEFAULT_BASE_DELAY_MS),
        "multiplier": DEFAULT_BACKOFF_MULTIPLIER,
        "jitter": DEFAULT_JITTER,
        "max_delay_ms": float(DEFAULT_MAX_DELAY_MS),
    },
    "shutdown": {
        "grace_period_s": DEFAULT_SHUTDOWN_GRACE_S,
        "install_signal_handlers": True,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": False,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> ExplorerDBConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade explorer_db.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the explorer-db runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    required = {"meta", "database", "retry", "shutdown", "observability"}
    _reject_unknown_keys(payload, required, "", issues)
    _require_keys(payload, required, "", issues)

    out: dict[str, Any] = {}
    _section(payload, key="meta", issues=issues, validator=_validate_meta, out=out)
    _section(payload, key="database", issues=issues, validator=_validate_database, out=out)
    _section(payload, key="retry", issues=issues, validator=_validate_retry, out=out)
    _section(payload, key="shutdown", issues=issues, validator=_validate_shutdown, out=out)
    _section(payload, key="observability", issues=issues, validator=_validate_observability, out=out)
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]],
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_obj = _as_object(raw, key, issues)
    if section_obj is None:
        return
    out[key] = validator(section_obj, key, issues)


def _validate_meta(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"schema_version"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_database(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {
        "path",
        "busy_timeout_ms",
        "journal_mode",
        "synchronous",
        "foreign_keys",
        "cache_size_kib",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "path" in payload:
        parsed_path = _as_path_text(payload["path"], _join(path, "path"), issues)
        if parsed_path is not None:
            out["path"] = parsed_path
    for key in ("busy_timeout_ms", "cache_size_kib"):
        if key in payload:
            parsed_int = _as_int(payload[key], _join(path, key), issues, minimum=0)
            if parsed_int is not None:
                out[key] = parsed_int
    if "journal_mode" in payload:
        parsed_journal = _as_enum(
            _lowered(payload["journal_mode"]),
            _join(path, "journal_mode"),
            issues,
            allowed_values=JOURNAL_MODES,
        )
        if parsed_journal is not None:
            out["journal_mode"] = parsed_journal
    if "synchronous" in payload:
        parsed_sync = _as_enum(
            _lowered(payload["synchronous"]),
            _join(path, "synchronous"),
            issues,
            allowed_values=SYNCHRONOUS_MODES,
        )
        if parsed_sync is not None:
            out["synchronous"] = parsed_sync
    if "foreign_keys" in payload:
        parsed_fk = _as_bool(payload["foreign_keys"], _join(path, "foreign_keys"), issues)
        if parsed_fk is not None:
            out["foreign_keys"] = parsed_fk
    return out


def _validate_retry(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"max_attempts", "base_delay_ms", "multiplier", "jitter", "max_delay_ms"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "max_attempts" in payload:
        parsed_attempts = _as_int(payload["max_attempts"], _join(path, "max_attempts"), issues, minimum=1)
        if parsed_attempts is not None:
            out["max_attempts"] = parsed_attempts
    for key, minimum in (("base_delay_ms", 0.0), ("multiplier", 1.0), ("max_delay_ms", 0.0)):
        if key in payload:
            parsed_float = _as_float(payload[key], _join(path, key), issues, minimum=minimum)
            if parsed_float is not None:
                out[key] = parsed_float
    if "jitter" in payload:
        parsed_jitter = _as_float(payload["jitter"], _join(path, "jitter"), issues, minimum=0.0)
        if parsed_jitter is not None:
            if parsed_jitter >= 1.0:
                issues.add(_join(path, "jitter"), "must be < 1.0")
            else:
                out["jitter"] = parsed_jitter

    base = out.get("base_delay_ms")
    cap = out.get("max_delay_ms")
    if base is not None and cap is not None and cap < base:
        issues.add(_join(path, "max_delay_ms"), "must be >= retry.base_delay_ms")
    return out


def _validate_shutdown(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"grace_period_s", "install_signal_handlers"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "grace_period_s" in payload:
        parsed_grace = _as_float(payload["grace_period_s"], _join(path, "grace_period_s"), issues, minimum=0.0)
        if parsed_grace is not None:
            out["grace_period_s"] = parsed_grace
    if "install_signal_handlers" in payload:
        parsed_install = _as_bool(
            payload["install_signal_handlers"], _join(path, "install_signal_handlers"), issues
        )
        if parsed_install is not None:
            out["install_signal_handlers"] = parsed_install
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_stdout"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw_level = payload["log_level"]
        parsed_level = _as_enum(
            raw_level.upper() if isinstance(raw_level, str) else raw_level,
            _join(path, "log_level"),
            issues,
            allowed_values=LOG_LEVELS,
        )
        if parsed_level is not None:
            out["log_level"] = parsed_level
    if "log_dir" in payload:
        parsed_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_dir is not None:
            out["log_dir"] = parsed_dir
    if "log_to_stdout" in payload:
        parsed_stdout = _as_bool(payload["log_to_stdout"], _join(path, "log_to_stdout"), issues)
        if parsed_stdout is not None:
            out["log_to_stdout"] = parsed_stdout
    return out


def is_memory_path(value: object) -> bool:
    return value == MEMORY_DB_PATH


def _lowered(value: object) -> object:
    return value.strip().lower() if isinstance(value, str) else value


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        item = value[key]
        out[key] = _deep_copy_mapping(item) if isinstance(item, Mapping) else copy.deepcopy(item)
    return out


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "ExplorerDBConfig",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "is_memory_path",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
