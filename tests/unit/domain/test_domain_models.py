"""Value-type helpers: process results, payload parsing, review and policy results."""

from __future__ import annotations

import pytest

from patchpilot.domain.models import (
    CheckRun,
    PatchSummaryJson,
    PlanJson,
    PolicyCheckResult,
    ProcessResult,
    RepoProfile,
    ReviewResult,
    ReviewStatus,
    ValidationResult,
)
from patchpilot.errors import SandboxTimeout


def test_process_result_helpers() -> None:
    ok = ProcessResult(exit_code=0, stdout="built\n", stderr="")
    assert ok.is_successful()
    assert not ok.has_errors()
    assert ok.combined_output() == "built"

    noisy = ProcessResult(exit_code=0, stdout="", stderr="deprecated flag")
    assert noisy.is_successful()
    assert noisy.has_errors()

    timed_out = ProcessResult(exit_code=124, timed_out=True, command="sleep 10")
    assert not timed_out.is_successful()
    with pytest.raises(SandboxTimeout, match="sleep 10"):
        timed_out.raise_for_timeout()
    assert ok.raise_for_timeout() is ok

    payload = ProcessResult(exit_code=1, duration_seconds=0.12345).to_dict()
    assert payload["duration_seconds"] == 0.123
    assert payload["log_paths"] == {}


def test_plan_from_dict_and_default_risk() -> None:
    plan = PlanJson.from_dict(
        {
            "steps": [
                {"id": "s1", "intent": "edit", "targets": [{"path": "src/a.py"}, "src/b.py"]},
                {"id": "s2", "dependencies": ["s1"], "risk_factors": ["auth_change"]},
            ],
            "files_affected": ["src/a.py"],
            "risk": "extreme",
        }
    )
    assert [step.id for step in plan.steps] == ["s1", "s2"]
    assert plan.steps[0].targets == ("src/a.py", "src/b.py")
    assert plan.steps[1].risk_factors == ("auth_change",)
    assert plan.risk_level() == "medium"
    assert PlanJson.from_dict({"steps": [], "risk": "high"}).risk_level() == "high"


def test_patch_from_dict_reads_diff_stats() -> None:
    patch = PatchSummaryJson.from_dict(
        {
            "files_touched": ["src/a.py", {"path": "tests/test_a.py"}],
            "diff_stats": {"additions": 12, "deletions": 3},
            "risk_score": 15,
            "test_coverage": 81.5,
        }
    )
    assert patch.files_touched == ("src/a.py", "tests/test_a.py")
    assert patch.total_lines_changed() == 15
    assert patch.diff_stats == {"additions": 12, "deletions": 3}
    assert patch.test_coverage == 81.5
    assert not patch.breaking_changes


def test_repo_profile_commands_are_the_allow_list() -> None:
    profile = RepoProfile.from_dict(
        {"commands": {"test": "pytest -q", "lint": "ruff check ."}, "languages": ["python"]}
    )
    assert profile.primary_language == "python"
    assert profile.has_command("test")
    assert profile.get_command("typecheck") is None
    assert profile.get_command("typecheck", "mypy") == "mypy"
    assert set(profile.allowed_commands()) == {"pytest -q", "ruff check ."}
    assert RepoProfile.from_dict(profile.to_dict()) == profile
    assert RepoProfile().primary_language is None


def test_policy_check_result_builder() -> None:
    result = PolicyCheckResult()
    result.add_warning("many files")
    assert result.passed

    result.add_security_finding("bandit", "weak hash", severity="medium")
    assert result.passed
    result.add_security_finding("semgrep", "sql injection", severity="high")
    assert not result.passed

    result.add_check("lint", True, "Code linting")
    result.add_check("security_bandit", False, "Security scan with bandit")
    assert result.mandatory_check_names() == ("lint",)

    payload = result.to_dict()
    assert payload["passed"] is False
    assert [finding["tool"] for finding in payload["security_findings"]] == ["bandit", "semgrep"]


def test_validation_result_tracks_errors_and_warnings() -> None:
    result = ValidationResult()
    result.add_warning("estimated hours high")
    assert result.is_valid
    assert result.has_warnings()
    result.add_error("$.steps: required")
    assert not result.is_valid
    assert result.all_issues() == ["$.steps: required", "estimated hours high"]


def test_review_result_roundtrip_and_status_helpers() -> None:
    review = ReviewResult(
        status=ReviewStatus.NEEDS_CHANGES,
        issues=({"type": "policy_violation", "message": "too big"},),
        security_issues=({"tool": "semgrep", "severity": "high"},),
        summary="needs work",
    )
    assert review.needs_changes()
    assert not review.is_approved()
    assert review.issue_count() == 2
    assert ReviewResult.from_dict(review.to_dict()) == review


def test_check_run_roundtrip() -> None:
    run = CheckRun(name="lint", passed=False, exit_code=1, command="ruff check .")
    assert CheckRun.from_dict(run.to_dict()) == run
    skipped = CheckRun.from_dict({"name": "typecheck", "skipped": True})
    assert skipped.skipped
    assert not skipped.passed
