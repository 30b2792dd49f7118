"""Plain-text report output for the explorer-db CLI.

Status markers are colored only on a terminal, and never when NO_COLOR is set
or ``--no-color`` is passed.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Sequence
from typing import TextIO

_GREEN = "\x1b[32m"
_RED = "\x1b[31m"
_RESET = "\x1b[0m"


class ReportWriter:
    def __init__(self, stream: TextIO | None = None, *, color: bool = False) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._color = color

    def status(self, passed: bool, label: str) -> None:
        marker = "OK" if passed else "FAIL"
        if self._color:
            marker = f"{_GREEN if passed else _RED}{marker}{_RESET}"
        self.line(f"{marker}  {label}")

    def field(self, key: str, value: object) -> None:
        self.line(f"  {key}: {value}")

    def bullets(self, entries: Sequence[str]) -> None:
        for entry in entries:
            self.line(f"  - {entry}")

    def table(self, headers: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
        widths = [max(len(str(cell)) for cell in column) for column in zip(headers, *rows, strict=False)]
        for cells in (headers, ["-" * width for width in widths], *rows):
            padded = (str(cell).ljust(width) for cell, width in zip(cells, widths, strict=False))
            self.line("  ".join(padded).rstrip())

    def line(self, text: str) -> None:
        print(text, file=self._stream)


def report_writer(*, no_color: bool = False, stream: TextIO | None = None) -> ReportWriter:
    target = stream if stream is not None else sys.stdout
    color = not no_color and not os.environ.get("NO_COLOR") and target.isatty()
    return ReportWriter(target, color=color)


__all__ = ["ReportWriter", "report_writer"]
