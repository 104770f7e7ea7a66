"""Plain-text output rendering for the ``converge`` CLI.

File: src/converge_engine/ui/render.py

Purpose
- Keep every human-facing print in one place so command handlers only
  decide *what* to show.
- Respect ``NO_COLOR`` and ``--no-color``; color is limited to status words.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final

from converge_engine.domain.models import ActionKind, ResourceStatus

if TYPE_CHECKING:
    from collections.abc import Sequence

    from converge_engine.domain.models import ConvergenceReport

_ANSI: Final[dict[str, str]] = {
    "green": "\033[32m",
    "red": "\033[31m",
    "yellow": "\033[33m",
    "dim": "\033[2m",
}
_RESET: Final[str] = "\033[0m"

_STATUS_COLORS: Final[dict[ResourceStatus, str]] = {
    ResourceStatus.UNCHANGED: "dim",
    ResourceStatus.CHANGED: "green",
    ResourceStatus.FAILED: "red",
    ResourceStatus.SKIPPED: "yellow",
}


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag or os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Deterministic plain-text renderer."""

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)

    def heading(self, text: str) -> None:
        print(text)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        print(f"\n{title}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print an aligned ASCII table; nothing is printed for zero rows."""

        if not rows:
            return
        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], len(cell))

        def _pad(cells: Sequence[str]) -> str:
            return "  ".join(
                (cells[i] if i < len(cells) else "").ljust(widths[i]) for i in range(len(widths))
            ).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(headers)}")
        print(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            print(f"  {_pad(row)}")

    def ok(self, label: str) -> None:
        print(f"  {self._paint('OK', 'green')}  {label}")

    def fail(self, label: str) -> None:
        print(f"  {self._paint('FAIL', 'red')}  {label}")

    def report(self, report: ConvergenceReport) -> None:
        """Render one convergence report: a status line per resource, then totals."""

        mode = " (noop)" if report.noop else ""
        self.heading(f"Run {report.run_id}{mode}")
        for outcome in report.outcomes:
            status = self._paint(f"{outcome.status.value:<9}", _STATUS_COLORS[outcome.status])
            line = f"  {status} {outcome.ref}"
            if outcome.status is ResourceStatus.CHANGED or (
                report.noop and outcome.action is not ActionKind.NOOP
            ):
                line += f" [{outcome.action.value}]"
            if outcome.error:
                line += f": {outcome.error}"
            print(line)
            if self.verbose:
                for change in outcome.changes:
                    print(f"      {change.attribute}: {change.current!r} -> {change.desired!r}")
        counts = report.counts()
        summary = ", ".join(f"{key}={value}" for key, value in counts.items())
        self.kv("Summary", summary)
        if report.cancelled:
            self.text("Run was cancelled before every resource was processed.")

    def _paint(self, text: str, color: str) -> str:
        if not self._color:
            return text
        return f"{_ANSI[color]}{text}{_RESET}"


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
