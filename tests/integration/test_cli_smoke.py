"""
explorer-db - CLI smoke contracts

File: tests/integration/test_cli_smoke.py

Purpose
- Enforce CLI behavior for ``python -m explorer_db`` check/integrity/backup/counts/config.
- Verify exit codes, JSON output shape, and on-disk side effects.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import subprocess
import sys
from collections.abc import Iterator
from contextlib import closing
from pathlib import Path

import pytest
import structlog

from explorer_db.main import ExitCode, cli_entrypoint
from explorer_db.observability import shutdown_logging

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"

pytestmark = pytest.mark.integration


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DB_PATH", raising=False)
    for name in list(os.environ):
        if name.startswith("EXPLORER_DB_"):
            monkeypatch.delenv(name)
    yield
    shutdown_logging()
    structlog.reset_defaults()
    package_logger = logging.getLogger("explorer_db")
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


def _seed(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute("CREATE TABLE repos (id INTEGER PRIMARY KEY, name TEXT)")
        conn.executemany("INSERT INTO repos (name) VALUES (?)", [("a",), ("b",)])
        conn.commit()


def _json_output(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    out = capsys.readouterr().out.strip().splitlines()
    return json.loads(out[-1])


def test_check_reports_reachable_store(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db_path = tmp_path / "db" / "explorer.db"

    code = cli_entrypoint(["check", "--db", str(db_path), "--json"])

    payload = _json_output(capsys)
    assert code == ExitCode.SUCCESS
    assert payload["command"] == "check"
    assert payload["ok"] is True
    assert payload["journal_mode"] == "wal"
    assert db_path.exists()


def test_check_reports_unreachable_store(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")

    code = cli_entrypoint(["check", "--db", str(blocker / "nested" / "explorer.db")])

    out = capsys.readouterr().out
    assert code == ExitCode.CHECK_FAILED
    assert "FAIL" in out


def test_legacy_db_path_env_is_honoured(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    db_path = tmp_path / "legacy" / "explorer.db"
    _seed(db_path)
    monkeypatch.setenv("DB_PATH", str(db_path))

    code = cli_entrypoint(["counts", "--json"])

    assert code == ExitCode.SUCCESS
    assert _json_output(capsys)["tables"] == {"repos": 2}


def test_integrity_and_counts_plain_text(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db_path = tmp_path / "explorer.db"
    _seed(db_path)

    assert cli_entrypoint(["integrity", "--db", str(db_path)]) == ExitCode.SUCCESS
    assert cli_entrypoint(["counts", "--db", str(db_path)]) == ExitCode.SUCCESS

    out = capsys.readouterr().out
    assert "integrity check passed" in out
    assert "repos" in out


def test_integrity_rejects_non_positive_limit(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli_entrypoint(["integrity", "--db", str(tmp_path / "x.db"), "--max-errors", "0"])

    assert code == ExitCode.CONFIG_ERROR
    assert "max_errors" in capsys.readouterr().err


def test_backup_writes_snapshot(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db_path = tmp_path / "explorer.db"
    _seed(db_path)
    destination = tmp_path / "backups" / "snapshot.db"

    code = cli_entrypoint(["backup", str(destination), "--db", str(db_path), "--json"])

    payload = _json_output(capsys)
    assert code == ExitCode.SUCCESS
    assert payload["destination"] == str(destination.resolve())
    with closing(sqlite3.connect(destination)) as conn:
        assert conn.execute("SELECT COUNT(*) FROM repos").fetchone()[0] == 2


def test_config_command_reflects_file_and_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = tmp_path / "explorer_db.toml"
    config_path.write_text('[database]\npath = "data/store.db"\n', encoding="utf-8")
    monkeypatch.setenv("EXPLORER_DB_RETRY_MAX_ATTEMPTS", "3")

    code = cli_entrypoint(["config", "--config", str(config_path), "--json"])

    config = _json_output(capsys)["config"]
    assert code == ExitCode.SUCCESS
    assert config["retry"]["max_attempts"] == 3  # type: ignore[index]
    assert config["database"]["path"] == (tmp_path.resolve() / "data" / "store.db").as_posix()  # type: ignore[index]


def test_missing_config_file_is_config_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli_entrypoint(["config", "--config", str(tmp_path / "absent.toml")])

    assert code == ExitCode.CONFIG_ERROR
    assert "config file not found" in capsys.readouterr().err


def test_log_flag_writes_json_lines(tmp_path: Path) -> None:
    db_path = tmp_path / "explorer.db"
    config_path = tmp_path / "explorer_db.toml"
    config_path.write_text('[observability]\nlog_dir = "logs"\nlog_level = "DEBUG"\n', encoding="utf-8")

    code = cli_entrypoint(["check", "--config", str(config_path), "--db", str(db_path), "--log"])

    assert code == ExitCode.SUCCESS
    log_files = list((tmp_path / "logs").glob("*/explorer_db.jsonl"))
    assert len(log_files) == 1
    messages = [json.loads(line)["message"] for line in log_files[0].read_text(encoding="utf-8").splitlines()]
    assert "db_connection_opened" in messages
    assert "db_connection_closed" in messages


def test_module_entrypoint_subprocess(tmp_path: Path) -> None:
    env = os.environ.copy()
    existing_pythonpath = env.get("PYTHONPATH")
    env["PYTHONPATH"] = str(SRC_PATH) if not existing_pythonpath else f"{SRC_PATH}:{existing_pythonpath}"
    env.pop("DB_PATH", None)

    completed = subprocess.run(
        [sys.executable, "-m", "explorer_db", "check", "--db", str(tmp_path / "sub.db"), "--json"],
        cwd=tmp_path,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )

    assert completed.returncode == 0, completed.stderr
    assert json.loads(completed.stdout.strip())["ok"] is True
