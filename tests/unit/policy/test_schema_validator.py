from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from patchpilot.errors import SchemaNotFound, ValidationFailed
from patchpilot.policy.schema_validator import PATCH_SCHEMA, PLAN_SCHEMA, SchemaValidator


def _plan(**overrides: Any) -> dict[str, Any]:
    plan: dict[str, Any] = {
        "steps": [{"id": "s1", "intent": "edit", "targets": ["src/app.py"]}],
        "test_strategy": "unit tests for app",
        "risk": "low",
        "estimated_hours": 2,
    }
    plan.update(overrides)
    return plan


def _patch(**overrides: Any) -> dict[str, Any]:
    patch: dict[str, Any] = {
        "files_touched": ["src/app.py"],
        "diff_stats": {"additions": 10, "deletions": 2},
        "risk_score": 5,
        "summary": "fix null check",
    }
    patch.update(overrides)
    return patch


def test_valid_plan_passes() -> None:
    result = SchemaValidator().validate_plan(_plan())
    assert result.is_valid
    assert result.errors == []
    assert result.schema_version == "1.0"


def test_structural_errors_raise_with_result() -> None:
    with pytest.raises(ValidationFailed, match="Plan validation failed") as excinfo:
        SchemaValidator().validate_plan({"steps": []})
    assert excinfo.value.result is not None
    assert not excinfo.value.result.is_valid
    assert len(excinfo.value.result.errors) >= 3


def test_validate_reports_without_raising() -> None:
    result = SchemaValidator().validate({"steps": "nope"}, PLAN_SCHEMA)
    assert not result.is_valid
    assert any(error.startswith("$.steps") for error in result.errors)


def test_plan_business_rules() -> None:
    validator = SchemaValidator()
    with pytest.raises(ValidationFailed, match="invalid dependency: s9"):
        validator.validate_plan(_plan(steps=[{"id": "s1", "dependencies": ["s9"]}]))

    result = validator.validate_plan(
        _plan(
            steps=[{"id": "s1", "risk_factors": ["database_migration"]}],
            estimated_hours=80,
        )
    )
    assert result.is_valid
    assert "Plan estimated time is very high: 80 hours" in result.warnings
    assert "Plan marked as low risk but contains high-risk factors" in result.warnings


def test_valid_patch_passes_with_warnings() -> None:
    result = SchemaValidator().validate_patch(
        _patch(
            test_strategy={"tests_added": 0, "tests_modified": 0},
            risk={"score": 45, "level": "low"},
        )
    )
    assert result.is_valid
    assert "No tests added or modified in patch" in result.warnings
    assert "Risk level mismatch: marked as low but score 45 suggests high" in result.warnings


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"security": {"vulnerabilities_found": 2}}, "Security vulnerabilities found: 2"),
        ({"test_strategy": {"coverage": {"after": 50}}}, "Test coverage below minimum"),
        ({"risk_score": 101}, "Patch validation failed"),
        ({"diff_stats": {"additions": -1, "deletions": 0}}, "Patch validation failed"),
    ],
)
def test_patch_errors_raise(overrides: dict[str, Any], message: str) -> None:
    with pytest.raises(ValidationFailed, match=message):
        SchemaValidator().validate_patch(_patch(**overrides))


def test_statistics_block_drives_size_warnings() -> None:
    result = SchemaValidator().validate_patch(
        _patch(statistics={"total_lines_added": 900, "total_lines_removed": 0, "total_files": 1})
    )
    assert "Patch changes too many lines: 900 (max: 500)" in result.warnings


def test_unknown_schema_names() -> None:
    validator = SchemaValidator()
    for name in ("nope.v1", "../plan.v1", "sub/plan.v1"):
        with pytest.raises(SchemaNotFound):
            validator.validate({}, name)


def test_schema_dirs_take_precedence(tmp_path: Path) -> None:
    (tmp_path / f"{PATCH_SCHEMA}.json").write_text(
        json.dumps({"type": "object", "version": "2.0"}), encoding="utf-8"
    )
    result = SchemaValidator(schema_dirs=[tmp_path]).validate({}, PATCH_SCHEMA)
    assert result.is_valid
    assert result.schema_version == "2.0"


def test_broken_schema_file_is_reported(tmp_path: Path) -> None:
    (tmp_path / "broken.json").write_text("{", encoding="utf-8")
    (tmp_path / "invalid.json").write_text(json.dumps({"type": 12}), encoding="utf-8")
    validator = SchemaValidator(schema_dirs=[tmp_path])
    with pytest.raises(ValidationFailed, match="Invalid schema JSON"):
        validator.validate({}, "broken")
    with pytest.raises(ValidationFailed, match="Invalid schema: invalid"):
        validator.validate({}, "invalid")
