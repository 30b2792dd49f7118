"""Module entrypoint for ``python -m explorer_db``."""

from __future__ import annotations

from explorer_db.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
