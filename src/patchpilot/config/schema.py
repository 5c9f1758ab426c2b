"""
patchpilot — configuration schema and validation.

File: src/patchpilot/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Validation rules for required fields, types, enums and numeric constraints.
- Deterministic deep-merge and redaction helpers.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Unknown keys are rejected; secret-looking keys are rejected with a dedicated message.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from functools import partial as bind
from typing import Any, Final, Literal, TypedDict

from patchpilot.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_ALLOWED_PATHS,
    DEFAULT_DISPATCH_DELAY_SECONDS,
    DEFAULT_MAX_FIX_ITERATIONS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_SANDBOX_TIMEOUT_SECONDS,
    DIRECT_RUN_TIMEOUT_SECONDS,
    MAX_ARGUMENTS,
    MAX_COMMAND_LENGTH,
    MAX_OUTPUT_SIZE,
    MAX_SANDBOX_TIMEOUT_SECONDS,
    RATE_LIMIT_ATTEMPTS,
    RATE_LIMIT_DECAY_SECONDS,
    RISK_LEVELS,
)
from patchpilot.sandbox.network_policy import DEFAULT_ALLOWED_REGISTRIES
from patchpilot.security.redaction import is_sensitive_key

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

MANDATORY_CHECK_NAMES: Final[tuple[str, ...]] = (
    "lint",
    "typecheck",
    "unit_tests",
    "integration_tests",
    "security_scan",
)

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "artifact_root"),
    ("paths", "log_dir"),
    ("policies", "security_policy_file"),
)


class MetaConfig(TypedDict):
    schema_version: int


class GuardConfig(TypedDict):
    max_command_length: int
    max_arguments: int
    allowed_paths: list[str]
    rate_limit_attempts: int
    rate_limit_decay_seconds: float
    max_output_size: int


class SandboxConfig(TypedDict):
    backend: Literal["docker", "podman", "none"]
    image_prefix: str
    default_timeout_seconds: int
    max_timeout_seconds: int
    direct_timeout_seconds: int
    max_output_size: int
    memory: str
    cpus: str
    pids_limit: int
    tmp_size: str
    home_size: str
    user: str
    registry_egress: bool
    egress_network: str
    allowed_registries: list[str]
    archive_logs: bool
    block_on_guard_violations: bool


class ReviewRequirement(TypedDict, total=False):
    min_reviewers: int
    require_senior: bool
    require_security_review: bool


class PoliciesConfig(TypedDict):
    max_plan_steps: int
    max_files_changed: int
    max_loc_changed: int
    min_test_coverage: float
    allowed_paths: list[str]
    forbidden_paths: list[str]
    mandatory_checks: dict[str, bool]
    check_commands: dict[str, str]
    security_tools: list[str]
    risk_weights: dict[str, int]
    risk_thresholds: dict[str, int]
    review_requirements: dict[str, ReviewRequirement]
    security_policy_file: str


class WorkflowConfig(TypedDict):
    max_retries: int
    max_fix_iterations: int
    dispatch_delay_seconds: float
    worker_concurrency: int


class PathsConfig(TypedDict):
    state_db: str
    artifact_root: str
    log_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    redact_secrets: bool


class PatchPilotConfig(TypedDict):
    meta: MetaConfig
    guard: GuardConfig
    sandbox: SandboxConfig
    policies: PoliciesConfig
    workflow: WorkflowConfig
    paths: PathsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[PatchPilotConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "guard": {
        "max_command_length": MAX_COMMAND_LENGTH,
        "max_arguments": MAX_ARGUMENTS,
        "allowed_paths": list(DEFAULT_ALLOWED_PATHS),
        "rate_limit_attempts": RATE_LIMIT_ATTEMPTS,
        "rate_limit_decay_seconds": float(RATE_LIMIT_DECAY_SECONDS),
        "max_output_size": MAX_OUTPUT_SIZE,
    },
    "sandbox": {
        "backend": "docker",
        "image_prefix": "synapticore/",
        "default_timeout_seconds": DEFAULT_SANDBOX_TIMEOUT_SECONDS,
        "max_timeout_seconds": MAX_SANDBOX_TIMEOUT_SECONDS,
        "direct_timeout_seconds": DIRECT_RUN_TIMEOUT_SECONDS,
        "max_output_size": MAX_OUTPUT_SIZE,
        "memory": "512m",
        "cpus": "1",
        "pids_limit": 100,
        "tmp_size": "128M",
        "home_size": "64M",
        "user": "1000:1000",
        "registry_egress": False,
        "egress_network": "patchpilot-egress",
        "allowed_registries": list(DEFAULT_ALLOWED_REGISTRIES),
        "archive_logs": True,
        "block_on_guard_violations": False,
    },
    "policies": {
        "max_plan_steps": 50,
        "max_files_changed": 20,
        "max_loc_changed": 500,
        "min_test_coverage": 70.0,
        "allowed_paths": [],
        "forbidden_paths": [".env", ".env.*", "**/*.pem", "**/*.key", ".git/**"],
        "mandatory_checks": {
            "lint": True,
            "typecheck": True,
            "unit_tests": True,
            "integration_tests": False,
            "security_scan": True,
        },
        "check_commands": {
            "lint": "lint",
            "typecheck": "typecheck",
            "unit_tests": "test",
            "integration_tests": "test_integration",
            "security_scan": "security",
        },
        "security_tools": [],
        "risk_weights": {
            "database_migration": 30,
            "api_breaking_change": 25,
            "security_vulnerability": 40,
            "large_changeset": 10,
            "insufficient_test_coverage": 20,
        },
        "risk_thresholds": {
            "medium": 20,
            "high": 40,
            "critical": 60,
        },
        "review_requirements": {
            "low": {"min_reviewers": 1, "require_senior": False, "require_security_review": False},
            "medium": {
                "min_reviewers": 1,
                "require_senior": False,
                "require_security_review": False,
            },
            "high": {"min_reviewers": 2, "require_senior": True, "require_security_review": False},
            "critical": {
                "min_reviewers": 2,
                "require_senior": True,
                "require_security_review": True,
            },
        },
        "security_policy_file": "",
    },
    "workflow": {
        "max_retries": DEFAULT_MAX_RETRIES,
        "max_fix_iterations": DEFAULT_MAX_FIX_ITERATIONS,
        "dispatch_delay_seconds": DEFAULT_DISPATCH_DELAY_SECONDS,
        "worker_concurrency": 4,
    },
    "paths": {
        "state_db": "state/patchpilot.sqlite",
        "artifact_root": "artifacts/",
        "log_dir": "logs/",
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_Parser = Callable[[object, str, _IssueCollector], Any]


def default_config() -> PatchPilotConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade patchpilot.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the patchpilot runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, "", issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and CLI output."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config)
    if isinstance(redacted, dict):
        return redacted
    return {}


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


def _validate_root(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    sections: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "guard": _validate_guard,
        "sandbox": _validate_sandbox,
        "policies": _validate_policies,
        "workflow": _validate_workflow,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, set(sections), path, issues)
    _require_keys(payload, set(sections), path, issues)

    out: dict[str, Any] = {}
    for key, validator in sections.items():
        _section(payload, key=key, path=path, issues=issues, validator=validator, out=out)
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    path: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]],
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_path = _join(path, key)
    section_obj = _as_object(raw, section_path, issues)
    if section_obj is None:
        return
    out[key] = validator(section_obj, section_path, issues)


def _validate_fields(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    fields: Mapping[str, _Parser],
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(fields), path, issues)
    _require_keys(payload, set(fields), path, issues)
    out: dict[str, Any] = {}
    for key, parser in fields.items():
        if key not in payload:
            continue
        parsed = parser(payload[key], _join(path, key), issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out = _validate_fields(payload, path, issues, {"schema_version": bind(_as_int, minimum=1)})
    version = out.get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.add(_join(path, "schema_version"), migration_guidance(version))
    return out


def _validate_guard(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    return _validate_fields(
        payload,
        path,
        issues,
        {
            "max_command_length": bind(_as_int, minimum=1),
            "max_arguments": bind(_as_int, minimum=1),
            "allowed_paths": _as_absolute_path_list,
            "rate_limit_attempts": bind(_as_int, minimum=1),
            "rate_limit_decay_seconds": bind(_as_float, minimum=1.0),
            "max_output_size": bind(_as_int, minimum=1),
        },
    )


def _validate_sandbox(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out = _validate_fields(
        payload,
        path,
        issues,
        {
            "backend": bind(_as_enum, allowed_values=("docker", "podman", "none")),
            "image_prefix": _as_image_prefix,
            "default_timeout_seconds": bind(_as_int, minimum=1),
            "max_timeout_seconds": bind(_as_int, minimum=1),
            "direct_timeout_seconds": bind(_as_int, minimum=1),
            "max_output_size": bind(_as_int, minimum=1),
            "memory": _as_str,
            "cpus": _as_str,
            "pids_limit": bind(_as_int, minimum=1),
            "tmp_size": _as_str,
            "home_size": _as_str,
            "user": _as_str,
            "registry_egress": _as_bool,
            "egress_network": _as_str,
            "allowed_registries": _as_str_list,
            "archive_logs": _as_bool,
            "block_on_guard_violations": _as_bool,
        },
    )
    default_timeout = out.get("default_timeout_seconds")
    max_timeout = out.get("max_timeout_seconds")
    if default_timeout is not None and max_timeout is not None and default_timeout > max_timeout:
        issues.add(
            _join(path, "default_timeout_seconds"), "must be <= sandbox.max_timeout_seconds"
        )
    return out


def _validate_policies(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    return _validate_fields(
        payload,
        path,
        issues,
        {
            "max_plan_steps": bind(_as_int, minimum=1),
            "max_files_changed": bind(_as_int, minimum=1),
            "max_loc_changed": bind(_as_int, minimum=1),
            "min_test_coverage": bind(_as_float, minimum=0.0, maximum=100.0),
            "allowed_paths": _as_str_list,
            "forbidden_paths": _as_str_list,
            "mandatory_checks": _as_mandatory_checks,
            "check_commands": _as_check_commands,
            "security_tools": _as_str_list,
            "risk_weights": _as_risk_weights,
            "risk_thresholds": _as_risk_thresholds,
            "review_requirements": _as_review_requirements,
            "security_policy_file": _as_optional_path_text,
        },
    )


def _validate_workflow(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    return _validate_fields(
        payload,
        path,
        issues,
        {
            "max_retries": bind(_as_int, minimum=0),
            "max_fix_iterations": bind(_as_int, minimum=0),
            "dispatch_delay_seconds": bind(_as_float, minimum=0.0),
            "worker_concurrency": bind(_as_int, minimum=1),
        },
    )


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    return _validate_fields(
        payload,
        path,
        issues,
        {"state_db": _as_path_text, "artifact_root": _as_path_text, "log_dir": _as_path_text},
    )


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    return _validate_fields(
        payload,
        path,
        issues,
        {
            "log_level": bind(_as_enum, allowed_values=("DEBUG", "INFO", "WARNING", "ERROR")),
            "log_format": bind(_as_enum, allowed_values=("json", "text")),
            "redact_secrets": _as_bool,
        },
    )


# ---------------------------------------------------------------------------
# Compound policy values
# ---------------------------------------------------------------------------


def _as_mandatory_checks(value: object, path: str, issues: _IssueCollector) -> dict[str, bool]:
    section = _as_object(value, path, issues)
    if section is None:
        return {}
    _reject_unknown_keys(section, set(MANDATORY_CHECK_NAMES), path, issues)
    out: dict[str, bool] = {}
    for name in MANDATORY_CHECK_NAMES:
        if name in section:
            parsed = _as_bool(section[name], _join(path, name), issues)
            if parsed is not None:
                out[name] = parsed
    return out


def _as_check_commands(value: object, path: str, issues: _IssueCollector) -> dict[str, str]:
    section = _as_object(value, path, issues)
    if section is None:
        return {}
    out: dict[str, str] = {}
    for name in sorted(section):
        parsed = _as_str(section[name], _join(path, name), issues)
        if parsed is not None:
            out[name] = parsed
    return out


def _as_risk_weights(value: object, path: str, issues: _IssueCollector) -> dict[str, int]:
    section = _as_object(value, path, issues)
    if section is None:
        return {}
    out: dict[str, int] = {}
    for name in sorted(section):
        parsed = _as_int(section[name], _join(path, name), issues, minimum=0)
        if parsed is not None:
            out[name] = parsed
    return out


def _as_risk_thresholds(value: object, path: str, issues: _IssueCollector) -> dict[str, int]:
    section = _as_object(value, path, issues)
    if section is None:
        return {}
    levels = RISK_LEVELS[1:]
    _reject_unknown_keys(section, set(levels), path, issues)
    _require_keys(section, set(levels), path, issues)
    out: dict[str, int] = {}
    for level in levels:
        if level in section:
            parsed = _as_int(section[level], _join(path, level), issues, minimum=0)
            if parsed is not None and parsed > 100:
                issues.add(_join(path, level), "must be <= 100")
            elif parsed is not None:
                out[level] = parsed
    ordered = [out[level] for level in levels if level in out]
    if len(ordered) == len(levels) and ordered != sorted(set(ordered)):
        issues.add(path, "thresholds must be strictly ascending (medium < high < critical)")
    return out


def _as_review_requirements(
    value: object, path: str, issues: _IssueCollector
) -> dict[str, dict[str, Any]]:
    section = _as_object(value, path, issues)
    if section is None:
        return {}
    _reject_unknown_keys(section, set(RISK_LEVELS), path, issues)
    out: dict[str, dict[str, Any]] = {}
    for level in RISK_LEVELS:
        if level not in section:
            continue
        level_path = _join(path, level)
        level_obj = _as_object(section[level], level_path, issues)
        if level_obj is None:
            continue
        fields: dict[str, _Parser] = {
            "min_reviewers": bind(_as_int, minimum=0),
            "require_senior": _as_bool,
            "require_security_review": _as_bool,
        }
        _reject_unknown_keys(level_obj, set(fields), level_path, issues)
        parsed_level: dict[str, Any] = {}
        for key, parser in fields.items():
            if key in level_obj:
                parsed = parser(level_obj[key], _join(level_path, key), issues)
                if parsed is not None:
                    parsed_level[key] = parsed
        out[level] = parsed_level
    return out


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_image_prefix(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if parsed and not parsed.endswith("/"):
        issues.add(path, "must be empty or end with '/'")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_optional_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    if isinstance(value, str) and not value.strip():
        return ""
    return _as_path_text(value, path, issues)


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is not None and parsed not in out:
            out.append(parsed)
    return out


def _as_absolute_path_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    parsed = _as_str_list(value, path, issues)
    if parsed is None:
        return None
    for index, item in enumerate(parsed):
        if not item.startswith("/"):
            issues.add(f"{path}[{index}]", "must be an absolute path")
        elif ".." in item.split("/"):
            issues.add(f"{path}[{index}]", "must not contain '..' segments")
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if maximum is not None and parsed > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if is_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_deep_copy_value(item) for item in value)
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None = None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if is_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "MANDATORY_CHECK_NAMES",
    "PATH_FIELDS",
    "PatchPilotConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
