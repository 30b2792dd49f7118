"""Command-line interface router for explorer-db diagnostics."""

from __future__ import annotations

import argparse
import json
import sys
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from explorer_db.config import (
    ConfigLoadError,
    ConfigValidationError,
    build_facade,
    build_supervisor,
    dump_effective_config,
    load_config,
)
from explorer_db.errors import CoordinatorError
from explorer_db.observability import setup_logging, shutdown_logging
from explorer_db.persistence import (
    QueryFacade,
    backup,
    check_connection,
    install_shutdown_hooks,
    integrity_check,
    table_counts,
)
from explorer_db.ui.render import ReportWriter, report_writer


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for the diagnostic commands."""

    parser = argparse.ArgumentParser(
        prog="explorer-db",
        description=(
            "explorer-db - database access coordinator diagnostics.\n\n"
            "Common workflows:\n"
            "  explorer-db check                 Verify the store opens and answers\n"
            "  explorer-db integrity             Run PRAGMA integrity_check\n"
            "  explorer-db backup out.db         Write a consistent snapshot\n"
            "  explorer-db counts                Row counts per table\n"
            "  explorer-db config                Show the effective configuration\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to explorer_db TOML config (default: ./explorer_db.toml if present).",
    )
    common.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Database path; overrides database.path from config and env.",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    common.add_argument(
        "--log",
        action="store_true",
        default=False,
        help="Write JSON-lines logs under observability.log_dir.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    check_parser = subparsers.add_parser(
        "check", parents=[common], help="Verify the database opens and answers a health query"
    )
    check_parser.set_defaults(handler=_cmd_check)

    integrity_parser = subparsers.add_parser(
        "integrity", parents=[common], help="Run PRAGMA integrity_check"
    )
    integrity_parser.add_argument(
        "--max-errors", type=int, default=100, help="Maximum errors to report (default: 100)"
    )
    integrity_parser.set_defaults(handler=_cmd_integrity)

    backup_parser = subparsers.add_parser(
        "backup", parents=[common], help="Write a consistent snapshot of the database"
    )
    backup_parser.add_argument("destination", help="Destination file for the snapshot")
    backup_parser.set_defaults(handler=_cmd_backup)

    counts_parser = subparsers.add_parser(
        "counts", parents=[common], help="Show row counts for every table"
    )
    counts_parser.set_defaults(handler=_cmd_counts)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Show the effective configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        if getattr(namespace, "log", False):
            shutdown_logging()
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_check(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _open_facade(config) as facade:
        report = check_connection(facade)

    if _flag(args, "json"):
        _emit_json({"command": "check", **report.to_dict()})
        return 0 if report.ok else 1

    out = _writer(args)
    if report.ok:
        out.status(True, f"database reachable: {report.path}")
        out.field("SQLite", report.sqlite_version)
        out.field("Journal mode", report.journal_mode)
        out.field("Latency (ms)", report.latency_ms)
        return 0
    out.status(False, f"database unreachable: {report.path}")
    out.field("Error", report.error)
    return 1


def _cmd_integrity(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    max_errors = int(getattr(args, "max_errors", 100))
    try:
        with _open_facade(config) as facade:
            problems = integrity_check(facade, max_errors=max_errors)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    except CoordinatorError as exc:
        raise CLIError(f"integrity check failed: {exc}") from exc

    if _flag(args, "json"):
        _emit_json({"command": "integrity", "ok": not problems, "errors": list(problems)})
        return 0 if not problems else 1

    out = _writer(args)
    if not problems:
        out.status(True, "integrity check passed")
        return 0
    out.status(False, "integrity check reported problems")
    out.bullets(problems)
    return 1


def _cmd_backup(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    destination = Path(str(args.destination)).expanduser().resolve()
    started = time.perf_counter()
    supervisor = build_supervisor(config)
    shutdown_cfg = config["shutdown"]
    hooks = None
    if shutdown_cfg["install_signal_handlers"]:
        hooks = install_shutdown_hooks(supervisor, grace_period_s=shutdown_cfg["grace_period_s"])
    try:
        written = backup(build_facade(config, supervisor=supervisor), destination)
    except CoordinatorError as exc:
        raise CLIError(f"backup failed: {exc}") from exc
    finally:
        if hooks is not None:
            hooks.uninstall()
        supervisor.shutdown()
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 1)

    if _flag(args, "json"):
        _emit_json({"command": "backup", "destination": str(written), "elapsed_ms": elapsed_ms})
        return 0

    out = _writer(args)
    out.status(True, f"backup written: {written}")
    out.field("Elapsed (ms)", elapsed_ms)
    return 0


def _cmd_counts(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    try:
        with _open_facade(config) as facade:
            counts = table_counts(facade)
    except CoordinatorError as exc:
        raise CLIError(f"table count failed: {exc}") from exc

    if _flag(args, "json"):
        _emit_json({"command": "counts", "tables": counts})
        return 0

    out = _writer(args)
    if not counts:
        out.line("no tables")
        return 0
    out.table(("Table", "Rows"), [(name, str(count)) for name, count in counts.items()])
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)

    if _flag(args, "json"):
        _emit_json({"command": "config", "config": config})
        return 0

    out = _writer(args)
    out.line(json.dumps(json.loads(dump_effective_config(config)), indent=2, sort_keys=True))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _open_facade(config: Mapping[str, Any]) -> Iterator[QueryFacade]:
    """Build a facade from config and shut its supervisor down on exit."""

    facade = build_facade(config)
    try:
        yield facade
    finally:
        facade.supervisor.shutdown()


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = getattr(args, "config_path", None)
    overrides: dict[str, object] = {}
    db_path = getattr(args, "db_path", None)
    if isinstance(db_path, str) and db_path.strip():
        overrides["database.path"] = db_path.strip()

    try:
        config = load_config(config_path, overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    if _flag(args, "log"):
        setup_logging(config["observability"], run_id=time.strftime("%Y%m%dT%H%M%S"))
    return config


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _writer(args: argparse.Namespace) -> ReportWriter:
    return report_writer(no_color=_flag(args, "no_color"))


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


__all__ = ["CLIError", "build_parser", "run_cli"]
