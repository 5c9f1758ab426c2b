"""
patchpilot — request/response value types.

File: src/patchpilot/domain/models.py

Purpose
- Typed values exchanged between the command guard, sandbox, policy enforcer, schema
  validator and workflow state machine.

Functional requirements
- Workflow is the only long-lived entity (see ``domain.workflow``); everything here is
  produced per call and owned by its producer.
- Parsed plan/patch payloads are lenient about optional fields; structural strictness is the
  schema validator's job.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from patchpilot.constants import RISK_LEVELS
from patchpilot.domain.events import JSONValue
from patchpilot.errors import SandboxTimeout


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReviewStatus(StrEnum):
    APPROVED = "approved"
    NEEDS_CHANGES = "needs_changes"
    REJECTED = "rejected"


BLOCKING_SEVERITIES: frozenset[str] = frozenset({"high", "critical"})


# ---------------------------------------------------------------------------
# Command guard / sandbox
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CommandValidation:
    """Outcome of one guard validation call; never persisted."""

    command: str
    normalized: str
    violations: tuple[str, ...] = ()

    @property
    def safe(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "normalized": self.normalized,
            "violations": list(self.violations),
            "safe": self.safe,
        }


@dataclass(frozen=True, slots=True)
class SanitizedOutput:
    output: str
    truncated: bool
    original_size: int
    sanitized: bool = True


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Captured outcome of one sandbox or direct invocation.

    Non-zero exits, timeouts and infrastructure failures all land here rather than being
    raised.
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    signal: int | None = None
    log_paths: Mapping[str, str] = field(default_factory=dict)
    command: str = ""
    run_id: str | None = None

    def is_successful(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def combined_output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()

    def has_errors(self) -> bool:
        return self.exit_code != 0 or bool(self.stderr.strip())

    def raise_for_timeout(self) -> ProcessResult:
        if self.timed_out:
            raise SandboxTimeout(
                f"command timed out after {self.duration_seconds:.1f}s: {self.command}",
                result=self,
            )
        return self

    def to_dict(self) -> dict[str, object]:
        return {
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_seconds": round(self.duration_seconds, 3),
            "timed_out": self.timed_out,
            "signal": self.signal,
            "log_paths": dict(self.log_paths),
            "command": self.command,
            "run_id": self.run_id,
        }


@dataclass(frozen=True, slots=True)
class CheckRun:
    """One required check executed for a patch (lint, unit_tests, security_<tool>, ...)."""

    name: str
    passed: bool
    exit_code: int | None = None
    command: str | None = None
    skipped: bool = False
    timed_out: bool = False
    output_excerpt: str = ""

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "passed": self.passed,
            "exit_code": self.exit_code,
            "command": self.command,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
            "output_excerpt": self.output_excerpt,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CheckRun:
        exit_code = data.get("exit_code")
        command = data.get("command")
        return cls(
            name=str(data["name"]),
            passed=bool(data.get("passed", False)),
            exit_code=int(exit_code) if exit_code is not None else None,
            command=str(command) if command is not None else None,
            skipped=bool(data.get("skipped", False)),
            timed_out=bool(data.get("timed_out", False)),
            output_excerpt=str(data.get("output_excerpt", "")),
        )


# ---------------------------------------------------------------------------
# Plan / patch / repo profile payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PlanStep:
    id: str
    intent: str = ""
    targets: tuple[str, ...] = ()
    rationale: str = ""
    dependencies: tuple[str, ...] = ()
    risk_factors: tuple[str, ...] = ()
    estimated_hours: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PlanStep:
        hours = data.get("estimated_hours")
        return cls(
            id=str(data["id"]),
            intent=str(data.get("intent", "")),
            targets=tuple(_target_path(item) for item in data.get("targets", ())),
            rationale=str(data.get("rationale", "")),
            dependencies=tuple(str(item) for item in data.get("dependencies", ())),
            risk_factors=tuple(str(item) for item in data.get("risk_factors", ())),
            estimated_hours=float(hours) if hours is not None else None,
        )


@dataclass(frozen=True, slots=True)
class PlanJson:
    steps: tuple[PlanStep, ...]
    test_strategy: str = ""
    risk: str = RiskLevel.MEDIUM.value
    estimated_hours: float = 0.0
    dependencies: tuple[str, ...] = ()
    files_affected: tuple[str, ...] = ()
    breaking_changes: tuple[str, ...] = ()
    summary: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def risk_level(self) -> str:
        return self.risk if self.risk in RISK_LEVELS else RiskLevel.MEDIUM.value

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PlanJson:
        summary = data.get("summary")
        return cls(
            steps=tuple(PlanStep.from_dict(step) for step in data.get("steps", ())),
            test_strategy=str(data.get("test_strategy", "")),
            risk=str(data.get("risk", RiskLevel.MEDIUM.value)),
            estimated_hours=float(data.get("estimated_hours", 0.0)),
            dependencies=tuple(str(item) for item in data.get("dependencies", ())),
            files_affected=tuple(str(item) for item in data.get("files_affected", ())),
            breaking_changes=tuple(str(item) for item in data.get("breaking_changes", ())),
            summary=str(summary) if summary is not None else None,
            metadata=dict(data.get("metadata", {})),
        )


@dataclass(frozen=True, slots=True)
class PatchSummaryJson:
    files_touched: tuple[str, ...]
    additions: int = 0
    deletions: int = 0
    risk_score: int = 0
    summary: str = ""
    breaking_changes: bool = False
    requires_migration: bool = False
    test_coverage: float | None = None
    changes: tuple[Mapping[str, Any], ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def total_lines_changed(self) -> int:
        return self.additions + self.deletions

    @property
    def diff_stats(self) -> dict[str, int]:
        return {"additions": self.additions, "deletions": self.deletions}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PatchSummaryJson:
        diff_stats = data.get("diff_stats") or {}
        coverage = data.get("test_coverage")
        return cls(
            files_touched=tuple(_target_path(item) for item in data.get("files_touched", ())),
            additions=int(diff_stats.get("additions", 0)),
            deletions=int(diff_stats.get("deletions", 0)),
            risk_score=int(data.get("risk_score", 0)),
            summary=str(data.get("summary", "")),
            breaking_changes=bool(data.get("breaking_changes", False)),
            requires_migration=bool(data.get("requires_migration", False)),
            test_coverage=float(coverage) if coverage is not None else None,
            changes=tuple(dict(item) for item in data.get("changes", ())),
            metadata=dict(data.get("metadata", {})),
        )


@dataclass(frozen=True, slots=True)
class RepoProfile:
    """Detected repository facts; ``commands`` doubles as the sandbox allow-list."""

    commands: Mapping[str, str] = field(default_factory=dict)
    languages: tuple[str, ...] = ()
    frameworks: Mapping[str, str] = field(default_factory=dict)
    tools: tuple[str, ...] = ()
    dependencies: Mapping[str, Any] = field(default_factory=dict)
    manifests: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def primary_language(self) -> str | None:
        return self.languages[0] if self.languages else None

    @property
    def primary_framework(self) -> str | None:
        return next(iter(self.frameworks), None)

    def has_command(self, name: str) -> bool:
        return name in self.commands

    def get_command(self, name: str, default: str | None = None) -> str | None:
        return self.commands.get(name, default)

    def allowed_commands(self) -> tuple[str, ...]:
        return tuple(self.commands.values())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RepoProfile:
        return cls(
            commands={str(k): str(v) for k, v in dict(data.get("commands", {})).items()},
            languages=tuple(str(item) for item in data.get("languages", ())),
            frameworks={str(k): str(v) for k, v in dict(data.get("frameworks", {})).items()},
            tools=tuple(str(item) for item in data.get("tools", ())),
            dependencies=dict(data.get("dependencies", {})),
            manifests=tuple(str(item) for item in data.get("manifests", ())),
            metadata=dict(data.get("metadata", {})),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "commands": dict(self.commands),
            "languages": list(self.languages),
            "frameworks": dict(self.frameworks),
            "tools": list(self.tools),
            "dependencies": dict(self.dependencies),
            "manifests": list(self.manifests),
            "metadata": dict(self.metadata),
        }


# ---------------------------------------------------------------------------
# Policy / validation / review results
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class PolicyCheckResult:
    """Compliance outcome for one plan or patch.

    Mutated only by the enforcer that produced it; returned as data, never raised.
    """

    passed: bool = True
    violations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    required_checks: list[dict[str, Any]] = field(default_factory=list)
    security_findings: list[dict[str, str]] = field(default_factory=list)
    review_checklist: list[str] = field(default_factory=list)
    risk_score: int = 0
    risk_level: str = RiskLevel.LOW.value
    retryable: bool = False
    retry_reason: str | None = None

    def add_violation(self, violation: str) -> None:
        self.violations.append(violation)
        self.passed = False

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def add_check(self, name: str, mandatory: bool, description: str) -> None:
        self.required_checks.append(
            {"name": name, "mandatory": mandatory, "description": description}
        )

    def add_security_finding(self, tool: str, message: str, severity: str = "medium") -> None:
        self.security_findings.append({"tool": tool, "message": message, "severity": severity})
        if severity in BLOCKING_SEVERITIES:
            self.passed = False

    def mandatory_check_names(self) -> tuple[str, ...]:
        return tuple(check["name"] for check in self.required_checks if check["mandatory"])

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level,
            "violations": list(self.violations),
            "warnings": list(self.warnings),
            "required_checks": [dict(check) for check in self.required_checks],
            "security_findings": [dict(finding) for finding in self.security_findings],
            "review_checklist": list(self.review_checklist),
            "retryable": self.retryable,
            "retry_reason": self.retry_reason,
        }


@dataclass(slots=True)
class ValidationResult:
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    schema_version: str = "1.0"

    def add_error(self, error: str) -> None:
        self.errors.append(error)
        self.is_valid = False

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def all_issues(self) -> list[str]:
        return [*self.errors, *self.warnings]

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "schema_version": self.schema_version,
        }


@dataclass(frozen=True, slots=True)
class ReviewResult:
    status: ReviewStatus
    issues: tuple[Mapping[str, Any], ...] = ()
    suggestions: tuple[Mapping[str, Any], ...] = ()
    quality_score: int = 0
    summary: str = ""
    security_issues: tuple[Mapping[str, Any], ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def is_approved(self) -> bool:
        return self.status is ReviewStatus.APPROVED

    def needs_changes(self) -> bool:
        return self.status is ReviewStatus.NEEDS_CHANGES

    def issue_count(self) -> int:
        return len(self.issues) + len(self.security_issues)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "issues": [dict(item) for item in self.issues],
            "suggestions": [dict(item) for item in self.suggestions],
            "quality_score": self.quality_score,
            "summary": self.summary,
            "security_issues": [dict(item) for item in self.security_issues],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ReviewResult:
        return cls(
            status=ReviewStatus(data.get("status", ReviewStatus.NEEDS_CHANGES.value)),
            issues=tuple(dict(item) for item in data.get("issues", ())),
            suggestions=tuple(dict(item) for item in data.get("suggestions", ())),
            quality_score=int(data.get("quality_score", 0)),
            summary=str(data.get("summary", "")),
            security_issues=tuple(dict(item) for item in data.get("security_issues", ())),
            metadata=dict(data.get("metadata", {})),
        )


# ---------------------------------------------------------------------------
# Workflow introspection
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class WorkflowStatus:
    workflow_id: str
    ticket_ref: str
    state: str
    retries: int
    is_complete: bool
    is_failed: bool
    cancelled: bool
    duration_seconds: float
    next_possible_states: tuple[str, ...]
    last_failure_reason: str | None
    events: tuple[Mapping[str, Any], ...]
    created_at: str
    updated_at: str

    @property
    def duration_minutes(self) -> float:
        return round(self.duration_seconds / 60.0, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "ticket_ref": self.ticket_ref,
            "current_state": self.state,
            "retries": self.retries,
            "is_complete": self.is_complete,
            "is_failed": self.is_failed,
            "cancelled": self.cancelled,
            "duration_minutes": self.duration_minutes,
            "next_possible_states": list(self.next_possible_states),
            "last_failure_reason": self.last_failure_reason,
            "metadata": [dict(event) for event in self.events],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True, slots=True)
class WorkflowStatistics:
    total: int
    completed: int
    failed: int
    in_progress: int
    success_rate: float
    average_duration_minutes: float
    by_state: Mapping[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_workflows": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "in_progress": self.in_progress,
            "success_rate": self.success_rate,
            "average_duration_minutes": self.average_duration_minutes,
            "by_state": dict(self.by_state),
        }


def _target_path(item: object) -> str:
    if isinstance(item, Mapping):
        return str(item.get("path", ""))
    return str(item)


def as_string_tuple(values: Sequence[object] | None) -> tuple[str, ...]:
    return tuple(str(item) for item in values or ())


__all__ = [
    "BLOCKING_SEVERITIES",
    "CheckRun",
    "CommandValidation",
    "PatchSummaryJson",
    "PlanJson",
    "PlanStep",
    "PolicyCheckResult",
    "ProcessResult",
    "RepoProfile",
    "ReviewResult",
    "ReviewStatus",
    "RiskLevel",
    "SanitizedOutput",
    "ValidationResult",
    "WorkflowStatistics",
    "WorkflowStatus",
    "as_string_tuple",
]
