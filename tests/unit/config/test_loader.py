"""
explorer-db - unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and explicit overrides.

What this test file should cover
- Precedence: overrides > env > file > defaults.
- ``EXPLORER_DB_`` env mapping, type coercion and the ``DB_PATH`` fallback.
- Path normalization relative to the config file; ``:memory:`` untouched.
- Deterministic effective config dumping.

Functional requirements
- Offline operation.

Non-functional requirements
- Deterministic output across repeated loads.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from explorer_db.config import (
    ConfigLoadError,
    ConfigValidationError,
    build_facade,
    build_retry_policy,
    dump_effective_config,
    load_config,
)


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_override(tmp_path: Path) -> None:
    config_path = tmp_path / "explorer_db.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[retry]
max_attempts = 4
""".strip(),
    )

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ={"EXPLORER_DB_RETRY_MAX_ATTEMPTS": "6"})
    override_loaded = load_config(
        config_path,
        environ={"EXPLORER_DB_RETRY_MAX_ATTEMPTS": "6"},
        overrides={"retry.max_attempts": 7},
    )

    assert default_loaded["retry"]["max_attempts"] == 5
    assert file_loaded["retry"]["max_attempts"] == 4
    assert env_loaded["retry"]["max_attempts"] == 6
    assert override_loaded["retry"]["max_attempts"] == 7


def test_env_mapping_coerces_types(tmp_path: Path) -> None:
    config_path = tmp_path / "explorer_db.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "EXPLORER_DB_DATABASE_BUSY_TIMEOUT_MS": "250",
            "EXPLORER_DB_DATABASE_FOREIGN_KEYS": "off",
            "EXPLORER_DB_RETRY_JITTER": "0.1",
            "EXPLORER_DB_OBSERVABILITY_LOG_LEVEL": "debug",
        },
    )

    assert loaded["database"]["busy_timeout_ms"] == 250
    assert loaded["database"]["foreign_keys"] is False
    assert loaded["retry"]["jitter"] == pytest.approx(0.1)
    assert loaded["observability"]["log_level"] == "DEBUG"


def test_invalid_env_coercion_raises_actionable_error(tmp_path: Path) -> None:
    config_path = tmp_path / "explorer_db.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match="EXPLORER_DB_RETRY_MAX_ATTEMPTS"):
        load_config(config_path, environ={"EXPLORER_DB_RETRY_MAX_ATTEMPTS": "many"})


def test_legacy_db_path_is_used_when_prefixed_variable_absent(tmp_path: Path) -> None:
    config_path = tmp_path / "explorer_db.toml"
    _write_config(config_path, "")

    legacy = load_config(config_path, environ={"DB_PATH": "/data/legacy.db"})
    prefixed = load_config(
        config_path,
        environ={"DB_PATH": "/data/legacy.db", "EXPLORER_DB_DATABASE_PATH": "/data/prefixed.db"},
    )

    assert legacy["database"]["path"] == "/data/legacy.db"
    assert prefixed["database"]["path"] == "/data/prefixed.db"


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "explorer_db.toml"
    _write_config(
        config_path,
        """
[database]
path = "../data/explorer.db"

[observability]
log_dir = "logs"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    assert loaded["database"]["path"] == (tmp_path.resolve() / "data" / "explorer.db").as_posix()
    assert loaded["observability"]["log_dir"] == (tmp_path.resolve() / "conf" / "logs").as_posix()


def test_memory_path_is_not_normalized(tmp_path: Path) -> None:
    config_path = tmp_path / "explorer_db.toml"
    _write_config(config_path, "")

    loaded = load_config(config_path, environ={}, overrides={"database.path": ":memory:"})

    assert loaded["database"]["path"] == ":memory:"


def test_missing_explicit_config_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_reported(tmp_path: Path) -> None:
    config_path = tmp_path / "explorer_db.toml"
    _write_config(config_path, "[retry\nmax_attempts = ")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_invalid_file_values_fail_validation(tmp_path: Path) -> None:
    config_path = tmp_path / "explorer_db.toml"
    _write_config(config_path, '[database]\njournal_mode = "bogus"\n')

    with pytest.raises(ConfigValidationError, match="database.journal_mode"):
        load_config(config_path, environ={})


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / "explorer_db.toml"
    _write_config(config_path, "[retry]\nbase_delay_ms = 50\n")
    environ = {"EXPLORER_DB_RETRY_MAX_ATTEMPTS": "3"}

    first = dump_effective_config(load_config(config_path, environ=environ))
    second = dump_effective_config(load_config(config_path, environ=environ))

    assert first == second
    assert json.loads(first)["retry"] == {
        "base_delay_ms": 50.0,
        "jitter": 0.25,
        "max_attempts": 3,
        "max_delay_ms": 5000.0,
        "multiplier": 2.0,
    }


def test_builders_follow_loaded_config(tmp_path: Path) -> None:
    config_path = tmp_path / "explorer_db.toml"
    _write_config(
        config_path,
        """
[database]
path = "store.db"
busy_timeout_ms = 750

[retry]
max_attempts = 3
jitter = 0.0
""".strip(),
    )
    config = load_config(config_path, environ={})

    policy = build_retry_policy(config)
    facade = build_facade(config)
    try:
        assert policy.max_attempts == 3
        assert policy.jitter == 0.0
        assert facade.policy == policy
        assert facade.supervisor.path == (tmp_path.resolve() / "store.db").as_posix()
        assert facade.supervisor.busy_timeout_ms == 750
    finally:
        facade.supervisor.shutdown()
