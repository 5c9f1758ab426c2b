"""Structural validation of plan/patch payloads against bundled JSON Schemas."""

from __future__ import annotations

import json
import threading
from collections.abc import Mapping, Sequence
from importlib import resources
from pathlib import Path
from typing import Any, Final

import jsonschema
import structlog
from jsonschema import Draft202012Validator

from patchpilot.config.settings import PolicySettings
from patchpilot.domain.models import ValidationResult
from patchpilot.errors import SchemaNotFound, ValidationFailed
from patchpilot.policy.enforcer import risk_level_for

PLAN_SCHEMA: Final[str] = "plan.v1"
PATCH_SCHEMA: Final[str] = "patch.v1"

HIGH_RISK_PLAN_FACTORS: Final[frozenset[str]] = frozenset(
    {"database_migration", "api_change", "security_sensitive", "data_loss_risk"}
)
MAX_PLAN_ESTIMATED_HOURS: Final[float] = 40.0
MAX_COVERAGE_DROP: Final[float] = -5.0


class SchemaValidator:
    """Loads named schemas once and validates payloads against them.

    Bundled schemas live in ``patchpilot/policy/schemas``; ``schema_dirs`` are searched first.
    """

    def __init__(
        self,
        settings: PolicySettings | None = None,
        *,
        schema_dirs: Sequence[str | Path] = (),
        logger: Any | None = None,
    ) -> None:
        self._settings = settings or PolicySettings()
        self._schema_dirs = tuple(Path(item) for item in schema_dirs)
        self._validators: dict[str, Draft202012Validator] = {}
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def validate(self, data: object, schema_name: str) -> ValidationResult:
        """Validate ``data``; structural mismatches populate ``errors``.

        Raises:
            SchemaNotFound: ``schema_name`` is not registered.
            ValidationFailed: the schema file itself is not valid JSON Schema.
        """
        validator = self._validator(schema_name)
        result = ValidationResult(schema_version=str(validator.schema.get("version", "1.0")))
        errors = sorted(validator.iter_errors(data), key=lambda err: err.json_path)
        for error in errors:
            result.add_error(f"{error.json_path}: {error.message}")
        if not result.is_valid:
            self._logger.warning(
                "schema_validation_failed", schema=schema_name, errors=result.errors
            )
        return result

    def validate_plan(self, plan_data: Mapping[str, Any]) -> ValidationResult:
        """Structural and business validation for a plan.

        Raises:
            ValidationFailed: structural errors or business-rule errors were found.
        """
        result = self.validate(plan_data, PLAN_SCHEMA)
        if not result.is_valid:
            raise ValidationFailed("Plan validation failed: " + "; ".join(result.errors), result)
        self._plan_business_rules(plan_data, result)
        if not result.is_valid:
            raise ValidationFailed("Plan validation failed: " + "; ".join(result.errors), result)
        return result

    def validate_patch(self, patch_data: Mapping[str, Any]) -> ValidationResult:
        """Structural and business validation for a patch summary.

        Raises:
            ValidationFailed: structural errors or business-rule errors were found.
        """
        result = self.validate(patch_data, PATCH_SCHEMA)
        if not result.is_valid:
            raise ValidationFailed("Patch validation failed: " + "; ".join(result.errors), result)
        self._patch_business_rules(patch_data, result)
        if not result.is_valid:
            raise ValidationFailed("Patch validation failed: " + "; ".join(result.errors), result)
        return result

    def _validator(self, schema_name: str) -> Draft202012Validator:
        with self._lock:
            cached = self._validators.get(schema_name)
            if cached is not None:
                return cached
            schema = self._load_schema(schema_name)
            try:
                Draft202012Validator.check_schema(schema)
            except jsonschema.SchemaError as exc:
                raise ValidationFailed(f"Invalid schema: {schema_name} - {exc.message}") from exc
            validator = Draft202012Validator(schema)
            self._validators[schema_name] = validator
            return validator

    def _load_schema(self, schema_name: str) -> dict[str, Any]:
        if "/" in schema_name or "\\" in schema_name or schema_name.startswith("."):
            raise SchemaNotFound(schema_name)
        filename = f"{schema_name}.json"
        for directory in self._schema_dirs:
            candidate = directory / filename
            if candidate.is_file():
                return _parse_schema(candidate.read_text(encoding="utf-8"), schema_name)
        bundled = resources.files("patchpilot.policy").joinpath("schemas", filename)
        if not bundled.is_file():
            raise SchemaNotFound(schema_name)
        return _parse_schema(bundled.read_text(encoding="utf-8"), schema_name)

    def _plan_business_rules(self, data: Mapping[str, Any], result: ValidationResult) -> None:
        settings = self._settings
        steps: list[Mapping[str, Any]] = list(data.get("steps", ()))

        if len(steps) > settings.max_plan_steps:
            result.add_error(
                f"Plan has too many steps: {len(steps)} (max: {settings.max_plan_steps})"
            )

        files = data.get("files_affected", ())
        if len(files) > settings.max_files_changed:
            result.add_warning(
                f"Plan affects many files: {len(files)} "
                f"(recommended max: {settings.max_files_changed})"
            )

        step_ids = {step["id"] for step in steps}
        for step in steps:
            for dependency in step.get("dependencies", ()):
                if dependency not in step_ids:
                    result.add_error(f"Step {step['id']} has invalid dependency: {dependency}")

        hours = data.get("estimated_hours")
        if hours is not None and hours > MAX_PLAN_ESTIMATED_HOURS:
            result.add_warning(f"Plan estimated time is very high: {hours} hours")

        has_high_risk = any(
            factor in HIGH_RISK_PLAN_FACTORS
            for step in steps
            for factor in step.get("risk_factors", ())
        )
        if has_high_risk and data.get("risk") == "low":
            result.add_warning("Plan marked as low risk but contains high-risk factors")

    def _patch_business_rules(self, data: Mapping[str, Any], result: ValidationResult) -> None:
        settings = self._settings

        statistics = data.get("statistics")
        if isinstance(statistics, Mapping):
            total_loc = statistics.get("total_lines_added", 0) + statistics.get(
                "total_lines_removed", 0
            )
            file_count = statistics.get("total_files", 0)
        else:
            diff_stats = data.get("diff_stats", {})
            total_loc = diff_stats.get("additions", 0) + diff_stats.get("deletions", 0)
            file_count = len(data.get("files_touched", ()))

        if total_loc > settings.max_loc_changed:
            result.add_warning(
                f"Patch changes too many lines: {total_loc} (max: {settings.max_loc_changed})"
            )
        if file_count > settings.max_files_changed:
            result.add_warning(
                f"Patch affects too many files: {file_count} (max: {settings.max_files_changed})"
            )

        test_strategy = data.get("test_strategy")
        coverage = test_strategy.get("coverage") if isinstance(test_strategy, Mapping) else None
        if isinstance(coverage, Mapping):
            after = coverage.get("after")
            if after is not None and after < settings.min_test_coverage:
                result.add_error(
                    f"Test coverage below minimum: {after}% (min: {settings.min_test_coverage}%)"
                )
            delta = coverage.get("delta")
            if delta is not None and delta < MAX_COVERAGE_DROP:
                result.add_warning(f"Test coverage decreased significantly: {delta}%")

        security = data.get("security")
        vulnerabilities = (
            security.get("vulnerabilities_found", 0) if isinstance(security, Mapping) else 0
        )
        if vulnerabilities > 0:
            result.add_error(f"Security vulnerabilities found: {vulnerabilities}")

        risk = data.get("risk")
        if isinstance(risk, Mapping) and "level" in risk:
            score = risk.get("score", 0)
            expected = risk_level_for(score, settings.risk_thresholds)
            if risk["level"] != expected:
                result.add_warning(
                    f"Risk level mismatch: marked as {risk['level']} "
                    f"but score {score} suggests {expected}"
                )

        if isinstance(test_strategy, Mapping) and (
            test_strategy.get("tests_added", 0) == 0
            and test_strategy.get("tests_modified", 0) == 0
        ):
            result.add_warning("No tests added or modified in patch")


def _parse_schema(text: str, schema_name: str) -> dict[str, Any]:
    try:
        schema = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationFailed(f"Invalid schema JSON: {schema_name} - {exc.msg}") from exc
    if not isinstance(schema, dict):
        raise ValidationFailed(f"Invalid schema JSON: {schema_name} - root must be an object")
    return schema


__all__ = ["PATCH_SCHEMA", "PLAN_SCHEMA", "SchemaValidator"]
