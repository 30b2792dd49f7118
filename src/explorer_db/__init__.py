"""
explorer-db - database access coordinator for the GitHub Explorer pipeline.

File: src/explorer_db/__init__.py

Purpose
- Package root. Serialized, retried, transactional access to one embedded
  SQLite store shared by every caller in the process.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
