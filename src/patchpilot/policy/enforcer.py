"""
patchpilot — policy enforcer

File: src/patchpilot/policy/enforcer.py

Purpose
- Score risk and check compliance of plans and patches against configured limits, path rules
  and mandatory checks.

Functional requirements
- Compliance outcomes are returned as ``PolicyCheckResult`` data; nothing here raises for a
  failing plan or patch.
- Risk scores are additive over the configured weight table and clamped to [0, 100].
- Required checks are declared here and executed by the calling stage through the sandbox.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Final

import structlog
import yaml

from patchpilot.config.settings import PolicySettings, ReviewRequirements
from patchpilot.constants import POLICY_VERSION, RISK_LEVELS
from patchpilot.domain.models import (
    BLOCKING_SEVERITIES,
    CheckRun,
    PatchSummaryJson,
    PlanJson,
    PolicyCheckResult,
    ReviewResult,
    ReviewStatus,
)
from patchpilot.errors import SecurityPolicyError

UNKNOWN_RISK_FACTOR_WEIGHT: Final[int] = 5
LARGE_PLAN_FILE_COUNT: Final[int] = 10
LARGE_PATCH_LOC: Final[int] = 300
LARGE_CHECKLIST_FILE_COUNT: Final[int] = 10

BASE_CHECKLIST: Final[tuple[str, ...]] = (
    "Code follows project style guidelines",
    "Tests pass locally",
    "No hardcoded secrets or credentials",
    "Error handling is appropriate",
    "Documentation updated if needed",
)

MANDATORY_CHECK_DESCRIPTIONS: Final[Mapping[str, str]] = {
    "lint": "Linting check required",
    "typecheck": "Type checking required",
    "unit_tests": "Unit tests required",
    "integration_tests": "Integration tests required",
    "security_scan": "Security scan required",
}

_DEFAULT_WEIGHTS: Final[Mapping[str, int]] = {
    "database_migration": 30,
    "api_breaking_change": 25,
    "security_vulnerability": 40,
    "large_changeset": 10,
    "insufficient_test_coverage": 20,
}


@dataclass(frozen=True, slots=True)
class SecurityPolicy:
    """Extra rules loaded from an optional security policy YAML file."""

    security_tools: tuple[str, ...] = ()
    forbidden_paths: tuple[str, ...] = ()


def load_security_policy(path: str | Path) -> SecurityPolicy:
    """Parse a security policy file.

    Accepted shape::

        security_tools: [semgrep, bandit]        # or {semgrep: {enabled: true}}
        forbidden_paths: ["secrets/**"]

    Raises:
        SecurityPolicyError: the file is missing, unreadable, or malformed.
    """
    policy_path = Path(path)
    try:
        with policy_path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except OSError as exc:
        raise SecurityPolicyError(
            f"Failed to read security policy {policy_path.as_posix()}: {exc}"
        ) from exc
    except yaml.YAMLError as exc:
        raise SecurityPolicyError(f"Invalid YAML in {policy_path.as_posix()}: {exc}") from exc

    if payload is None:
        return SecurityPolicy()
    if not isinstance(payload, Mapping):
        raise SecurityPolicyError(f"{policy_path.as_posix()} must contain a mapping")

    unknown = sorted(set(payload) - {"security_tools", "forbidden_paths"})
    if unknown:
        raise SecurityPolicyError(
            f"{policy_path.as_posix()} has unknown keys: {', '.join(map(str, unknown))}"
        )
    return SecurityPolicy(
        security_tools=_parse_tools(payload.get("security_tools"), policy_path),
        forbidden_paths=_parse_string_list(
            payload.get("forbidden_paths"), policy_path, "forbidden_paths"
        ),
    )


def _parse_tools(value: object, path: Path) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, Mapping):
        enabled: list[str] = []
        for name in sorted(value):
            options = value[name]
            if options is None or options is True:
                enabled.append(str(name))
            elif isinstance(options, Mapping):
                if options.get("enabled", False):
                    enabled.append(str(name))
            elif options is not False:
                raise SecurityPolicyError(
                    f"{path.as_posix()}: security_tools.{name} must be a bool or mapping"
                )
        return tuple(enabled)
    return _parse_string_list(value, path, "security_tools")


def _parse_string_list(value: object, path: Path, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise SecurityPolicyError(f"{path.as_posix()}: {field_name} must be a list of strings")
    return tuple(item.strip() for item in value if item.strip())


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        if pattern.startswith("**/", index):
            parts.append("(?:.*/)?")
            index += 3
        elif pattern.startswith("**", index):
            parts.append(".*")
            index += 2
        elif pattern[index] == "*":
            parts.append("[^/]*")
            index += 1
        else:
            parts.append(re.escape(pattern[index]))
            index += 1
    return re.compile("^" + "".join(parts) + "$")


def path_matches(path: str, pattern: str) -> bool:
    """Glob match where ``**`` spans directories and ``*`` stays within one segment."""
    return _glob_regex(pattern).match(path) is not None


def risk_level_for(score: int, thresholds: Mapping[str, int]) -> str:
    """Highest level whose lower bound ``score`` reaches; ``low`` below every bound."""
    level = RISK_LEVELS[0]
    for candidate in RISK_LEVELS[1:]:
        bound = thresholds.get(candidate)
        if bound is not None and score >= bound:
            level = candidate
    return level


def clamp_score(score: int) -> int:
    return max(0, min(100, score))


class PolicyEnforcer:
    """Applies one immutable :class:`PolicySettings` to plans and patches."""

    def __init__(
        self,
        settings: PolicySettings | None = None,
        *,
        security_policy: SecurityPolicy | None = None,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings or PolicySettings()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        if security_policy is None and self._settings.security_policy_file is not None:
            security_policy = load_security_policy(self._settings.security_policy_file)
        self._security_policy = security_policy or SecurityPolicy()
        self._weights: Mapping[str, int] = {**_DEFAULT_WEIGHTS, **self._settings.risk_weights}

    @property
    def settings(self) -> PolicySettings:
        return self._settings

    @property
    def security_tools(self) -> tuple[str, ...]:
        return tuple(
            dict.fromkeys((*self._settings.security_tools, *self._security_policy.security_tools))
        )

    @property
    def forbidden_paths(self) -> tuple[str, ...]:
        return tuple(
            dict.fromkeys(
                (*self._settings.forbidden_paths, *self._security_policy.forbidden_paths)
            )
        )

    # ------------------------------------------------------------------
    # Compliance
    # ------------------------------------------------------------------

    def check_plan_compliance(self, plan: PlanJson) -> PolicyCheckResult:
        result = PolicyCheckResult()
        settings = self._settings

        step_count = len(plan.steps)
        if step_count > settings.max_plan_steps:
            result.add_violation(
                f"Plan has too many steps: {step_count} (max: {settings.max_plan_steps})"
            )
            result.retryable = True

        file_count = len(plan.files_affected)
        if file_count > settings.max_files_changed:
            result.add_warning(
                f"Plan affects many files: {file_count} (max: {settings.max_files_changed})"
            )

        self._check_paths(plan.files_affected, result)

        result.risk_score = self.plan_risk_score(plan)
        result.risk_level = self.risk_level(result.risk_score)

        if not result.passed and result.retryable:
            result.retry_reason = "Policy violations can be fixed: " + "; ".join(
                result.violations
            )

        self._logger.info(
            "plan_compliance_checked",
            passed=result.passed,
            risk_score=result.risk_score,
            risk_level=result.risk_level,
            violations=len(result.violations),
            warnings=len(result.warnings),
        )
        return result

    def check_patch_compliance(self, patch: PatchSummaryJson) -> PolicyCheckResult:
        result = PolicyCheckResult()
        settings = self._settings

        total_loc = patch.total_lines_changed()
        if total_loc > settings.max_loc_changed:
            result.add_violation(
                f"Too many lines changed: {total_loc} (max: {settings.max_loc_changed})"
            )
        file_count = len(patch.files_touched)
        if file_count > settings.max_files_changed:
            result.add_violation(
                f"Too many files changed: {file_count} (max: {settings.max_files_changed})"
            )

        self._check_paths(patch.files_touched, result)
        self._declare_required_checks(result)

        result.risk_score = self.patch_risk_score(patch)
        result.risk_level = self.risk_level(result.risk_score)
        result.review_checklist = self.review_checklist(patch, result.risk_level)

        self._logger.info(
            "patch_compliance_checked",
            passed=result.passed,
            risk_score=result.risk_score,
            risk_level=result.risk_level,
            violations=len(result.violations),
            required_checks=[check["name"] for check in result.required_checks],
        )
        return result

    def required_checks(self) -> list[dict[str, Any]]:
        """Checks the test stage must run for a patch, mandatory ones first."""
        result = PolicyCheckResult()
        self._declare_required_checks(result)
        return result.required_checks

    def record_check_results(
        self, result: PolicyCheckResult, check_runs: Iterable[CheckRun]
    ) -> PolicyCheckResult:
        """Fold executed check outcomes into ``result`` (mutated and returned)."""
        runs = {run.name: run for run in check_runs}
        for check in result.required_checks:
            name = check["name"]
            run = runs.get(name)
            if check["mandatory"]:
                if run is None or run.skipped:
                    result.add_violation(f"Mandatory check not run: {name}")
                elif run.timed_out:
                    result.add_violation(f"Mandatory check timed out: {name}")
                elif not run.passed:
                    result.add_violation(f"Mandatory check failed: {name}")
                continue
            if run is None or run.skipped:
                result.add_warning(f"Optional check skipped: {name}")
            elif not run.passed:
                tool = name.removeprefix("security_")
                message = run.output_excerpt.strip() or f"Security scan with {tool} reported issues"
                result.add_security_finding(tool, message, severity="medium")
        return result

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------

    def weight(self, factor: str, default: int = UNKNOWN_RISK_FACTOR_WEIGHT) -> int:
        return self._weights.get(factor, default)

    def plan_risk_score(self, plan: PlanJson) -> int:
        score = sum(self.weight(factor) for step in plan.steps for factor in step.risk_factors)
        if len(plan.files_affected) > LARGE_PLAN_FILE_COUNT:
            score += self.weight("large_changeset")
        return clamp_score(score)

    def patch_risk_score(self, patch: PatchSummaryJson) -> int:
        score = patch.risk_score
        if patch.total_lines_changed() > LARGE_PATCH_LOC:
            score += self.weight("large_changeset")
        if patch.breaking_changes:
            score += self.weight("api_breaking_change")
        if patch.requires_migration:
            score += self.weight("database_migration")
        if (
            patch.test_coverage is not None
            and patch.test_coverage < self._settings.min_test_coverage
        ):
            score += self.weight("insufficient_test_coverage")
        return clamp_score(score)

    def risk_level(self, score: int) -> str:
        return risk_level_for(score, self._settings.risk_thresholds)

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def review_requirements(self, risk_level: str) -> ReviewRequirements:
        return self._settings.review_requirements.get(risk_level, ReviewRequirements())

    def review_checklist(self, patch: PatchSummaryJson, risk_level: str) -> list[str]:
        checklist = list(BASE_CHECKLIST)
        requirements = self.review_requirements(risk_level)
        if requirements.require_senior:
            checklist.append("Senior developer review required")
        if requirements.require_security_review:
            checklist.append("Security team review required")
        if requirements.min_reviewers > 1:
            checklist.append(f"Minimum {requirements.min_reviewers} reviewers required")

        if len(patch.files_touched) > LARGE_CHECKLIST_FILE_COUNT:
            checklist.append("Large changeset - extra careful review needed")
        if patch.requires_migration:
            checklist.append("Database migration - verify rollback procedure")
        if patch.breaking_changes:
            checklist.append("Breaking changes - check backward compatibility")
        return checklist

    def generate_review_result(
        self, patch: PatchSummaryJson, result: PolicyCheckResult
    ) -> ReviewResult:
        issues: list[dict[str, Any]] = [
            {"type": "policy_violation", "severity": "high", "message": violation}
            for violation in result.violations
        ]
        issues.extend(
            {
                "type": "security",
                "severity": finding.get("severity", "medium"),
                "message": finding.get("message", "Security issue found"),
            }
            for finding in result.security_findings
        )
        suggestions = [{"type": "improvement", "message": warning} for warning in result.warnings]
        security_issues = tuple(
            dict(finding)
            for finding in result.security_findings
            if finding.get("severity") in BLOCKING_SEVERITIES
        )
        return ReviewResult(
            status=ReviewStatus.APPROVED if result.passed else ReviewStatus.NEEDS_CHANGES,
            issues=tuple(issues),
            suggestions=tuple(suggestions),
            quality_score=100 - result.risk_score,
            summary=f"Policy check completed with risk level: {result.risk_level}",
            security_issues=security_issues,
            metadata={
                "risk_level": result.risk_level,
                "risk_score": result.risk_score,
                "review_checklist": list(result.review_checklist),
                "review_requirements": self.review_requirements(result.risk_level).to_dict(),
                "files_touched": len(patch.files_touched),
                "policy_version": POLICY_VERSION,
            },
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_paths(self, paths: Sequence[str], result: PolicyCheckResult) -> None:
        include = self._settings.allowed_paths
        exclude = self.forbidden_paths
        for path in paths:
            excluded = any(path_matches(path, pattern) for pattern in exclude)
            allowed = not include or any(path_matches(path, pattern) for pattern in include)
            if excluded or not allowed:
                result.add_violation(f"Path not allowed for modification: {path}")

    def _declare_required_checks(self, result: PolicyCheckResult) -> None:
        enabled = self._settings.mandatory_checks
        for name, description in MANDATORY_CHECK_DESCRIPTIONS.items():
            if enabled.get(name, name != "integration_tests"):
                result.add_check(name, True, description)
        for tool in self.security_tools:
            result.add_check(f"security_{tool}", False, f"Security scan with {tool}")


__all__ = [
    "BASE_CHECKLIST",
    "MANDATORY_CHECK_DESCRIPTIONS",
    "PolicyEnforcer",
    "SecurityPolicy",
    "clamp_score",
    "load_security_policy",
    "path_matches",
    "risk_level_for",
]
