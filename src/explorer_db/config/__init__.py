"""
explorer-db config package public API.

File: src/explorer_db/config/__init__.py

Purpose
- Export config loading/validation entrypoints, public error types, and the
  builders that turn a config into a supervisor, retry policy, or facade.

Functional requirements
- Support loading from ``explorer_db.toml`` + ``EXPLORER_DB_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from explorer_db.config.builders import build_facade, build_retry_policy, build_supervisor
from explorer_db.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from explorer_db.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    ExplorerDBConfig,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "ExplorerDBConfig",
    "PATH_FIELDS",
    "assert_valid_config",
    "build_facade",
    "build_retry_policy",
    "build_supervisor",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "validate_config",
]
