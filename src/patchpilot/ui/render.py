"""Plain-text output rendering for the patchpilot CLI.

File: src/patchpilot/ui/render.py

Purpose
- Keep human-readable formatting out of the command handlers.
- Render workflow status, statistics and policy results deterministically.

Functional requirements
- Output goes to the injected stream (stdout by default) and never to the log sinks.
- JSON output is produced by the command handlers, not here.
"""

from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from patchpilot.domain.models import (
        CommandValidation,
        PolicyCheckResult,
        WorkflowStatistics,
        WorkflowStatus,
    )


class CLIRenderer:
    """Thin CLI output renderer producing stable plain text."""

    def __init__(self, *, stream: TextIO | None = None, verbose: bool = False) -> None:
        self.verbose = verbose
        self._stream = stream

    def _print(self, text: str = "") -> None:
        print(text, file=self._stream if self._stream is not None else sys.stdout)

    def kv(self, key: str, value: object) -> None:
        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def section(self, title: str) -> None:
        self._print(f"\n{title}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def table(self, headers: Sequence[str], rows: Sequence[Sequence[object]]) -> None:
        """Print an aligned two-space separated table; nothing for empty ``rows``."""

        if not rows:
            return
        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], len(str(cell)))

        def _pad(cells: Sequence[object]) -> str:
            padded = [
                (str(cells[index]) if index < len(cells) else "").ljust(width)
                for index, width in enumerate(widths)
            ]
            return "  ".join(padded).rstrip()

        self._print(f"  {_pad(list(headers))}")
        self._print(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            self._print(f"  {_pad(list(row))}")

    # ------------------------------------------------------------------
    # Domain views
    # ------------------------------------------------------------------

    def command_validation(self, validation: CommandValidation) -> None:
        self.kv("Command", validation.command)
        self.kv("Safe", "yes" if validation.safe else "no")
        if validation.violations:
            self.section("Violations:")
            self.items(validation.violations)

    def policy_result(self, kind: str, result: PolicyCheckResult) -> None:
        self.kv("Document", kind)
        self.kv("Passed", "yes" if result.passed else "no")
        self.kv("Risk", f"{result.risk_level} ({result.risk_score})")
        if result.violations:
            self.section("Violations:")
            self.items(result.violations)
        if result.warnings:
            self.section("Warnings:")
            self.items(result.warnings)
        if result.required_checks:
            self.section("Required checks:")
            self.table(
                ("name", "mandatory", "description"),
                [
                    (check["name"], "yes" if check["mandatory"] else "no", check["description"])
                    for check in result.required_checks
                ],
            )
        if result.review_checklist:
            self.section("Review checklist:")
            self.items(result.review_checklist)

    def workflow_status(self, status: WorkflowStatus) -> None:
        self.kv("Workflow", status.workflow_id)
        self.kv("Ticket", status.ticket_ref)
        self.kv("State", status.state + (" (cancelled)" if status.cancelled else ""))
        self.kv("Retries", status.retries)
        self.kv("Duration", f"{status.duration_minutes:.2f} min")
        self.kv("Created", status.created_at)
        self.kv("Updated", status.updated_at)
        if status.last_failure_reason:
            self.kv("Failure", status.last_failure_reason)
        if status.next_possible_states:
            self.kv("Next", ", ".join(status.next_possible_states))
        if self.verbose and status.events:
            self.section("Events:")
            for event in status.events:
                self.text("  " + json.dumps(dict(event), sort_keys=True, ensure_ascii=False))

    def statistics(self, stats: WorkflowStatistics) -> None:
        self.kv("Total", stats.total)
        self.kv("Completed", stats.completed)
        self.kv("Failed", stats.failed)
        self.kv("In progress", stats.in_progress)
        self.kv("Success rate", f"{stats.success_rate:.2f}%")
        self.kv("Average duration", f"{stats.average_duration_minutes:.2f} min")
        self.section("By state:")
        self.table(("state", "count"), sorted(_count_rows(stats.by_state)))


def _count_rows(counts: Mapping[str, int]) -> list[tuple[str, int]]:
    return [(state, count) for state, count in counts.items()]


def create_renderer(*, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
