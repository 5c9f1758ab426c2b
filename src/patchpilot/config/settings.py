"""Typed, immutable views over a validated config mapping.

Components receive these objects at construction instead of reading global config.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from patchpilot.config.schema import DEFAULT_CONFIG, assert_valid_config, default_config
from patchpilot.constants import (
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
)
from patchpilot.sandbox.network_policy import DEFAULT_ALLOWED_REGISTRIES

_POLICY_DEFAULTS = DEFAULT_CONFIG["policies"]


def _frozen(mapping: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True, slots=True)
class GuardSettings:
    max_command_length: int = MAX_COMMAND_LENGTH
    max_arguments: int = MAX_ARGUMENTS
    allowed_paths: tuple[str, ...] = DEFAULT_ALLOWED_PATHS
    rate_limit_attempts: int = RATE_LIMIT_ATTEMPTS
    rate_limit_decay_seconds: float = float(RATE_LIMIT_DECAY_SECONDS)
    max_output_size: int = MAX_OUTPUT_SIZE

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> GuardSettings:
        return cls(
            max_command_length=section["max_command_length"],
            max_arguments=section["max_arguments"],
            allowed_paths=tuple(section["allowed_paths"]),
            rate_limit_attempts=section["rate_limit_attempts"],
            rate_limit_decay_seconds=float(section["rate_limit_decay_seconds"]),
            max_output_size=section["max_output_size"],
        )


@dataclass(frozen=True, slots=True)
class SandboxSettings:
    backend: str = "docker"
    image_prefix: str = "synapticore/"
    default_timeout_seconds: int = DEFAULT_SANDBOX_TIMEOUT_SECONDS
    max_timeout_seconds: int = MAX_SANDBOX_TIMEOUT_SECONDS
    direct_timeout_seconds: int = DIRECT_RUN_TIMEOUT_SECONDS
    max_output_size: int = MAX_OUTPUT_SIZE
    memory: str = "512m"
    cpus: str = "1"
    pids_limit: int = 100
    tmp_size: str = "128M"
    home_size: str = "64M"
    user: str = "1000:1000"
    registry_egress: bool = False
    egress_network: str = "patchpilot-egress"
    allowed_registries: tuple[str, ...] = DEFAULT_ALLOWED_REGISTRIES
    archive_logs: bool = True
    block_on_guard_violations: bool = False

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> SandboxSettings:
        values = dict(section)
        values["allowed_registries"] = tuple(values["allowed_registries"])
        return cls(**values)


@dataclass(frozen=True, slots=True)
class ReviewRequirements:
    min_reviewers: int = 1
    require_senior: bool = False
    require_security_review: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "min_reviewers": self.min_reviewers,
            "require_senior": self.require_senior,
            "require_security_review": self.require_security_review,
        }


def _default_review_requirements() -> Mapping[str, ReviewRequirements]:
    return _frozen(
        {
            level: ReviewRequirements(**values)
            for level, values in _POLICY_DEFAULTS["review_requirements"].items()
        }
    )


@dataclass(frozen=True, slots=True)
class PolicySettings:
    max_plan_steps: int = _POLICY_DEFAULTS["max_plan_steps"]
    max_files_changed: int = _POLICY_DEFAULTS["max_files_changed"]
    max_loc_changed: int = _POLICY_DEFAULTS["max_loc_changed"]
    min_test_coverage: float = _POLICY_DEFAULTS["min_test_coverage"]
    allowed_paths: tuple[str, ...] = ()
    forbidden_paths: tuple[str, ...] = tuple(_POLICY_DEFAULTS["forbidden_paths"])
    mandatory_checks: Mapping[str, bool] = field(
        default_factory=lambda: _frozen(_POLICY_DEFAULTS["mandatory_checks"])
    )
    check_commands: Mapping[str, str] = field(
        default_factory=lambda: _frozen(_POLICY_DEFAULTS["check_commands"])
    )
    security_tools: tuple[str, ...] = ()
    risk_weights: Mapping[str, int] = field(
        default_factory=lambda: _frozen(_POLICY_DEFAULTS["risk_weights"])
    )
    risk_thresholds: Mapping[str, int] = field(
        default_factory=lambda: _frozen(_POLICY_DEFAULTS["risk_thresholds"])
    )
    review_requirements: Mapping[str, ReviewRequirements] = field(
        default_factory=_default_review_requirements
    )
    security_policy_file: Path | None = None

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> PolicySettings:
        policy_file = section.get("security_policy_file") or ""
        return cls(
            max_plan_steps=section["max_plan_steps"],
            max_files_changed=section["max_files_changed"],
            max_loc_changed=section["max_loc_changed"],
            min_test_coverage=float(section["min_test_coverage"]),
            allowed_paths=tuple(section["allowed_paths"]),
            forbidden_paths=tuple(section["forbidden_paths"]),
            mandatory_checks=_frozen(section["mandatory_checks"]),
            check_commands=_frozen(section["check_commands"]),
            security_tools=tuple(section["security_tools"]),
            risk_weights=_frozen(section["risk_weights"]),
            risk_thresholds=_frozen(section["risk_thresholds"]),
            review_requirements=_frozen(
                {
                    level: ReviewRequirements(**values)
                    for level, values in section["review_requirements"].items()
                }
            ),
            security_policy_file=Path(policy_file) if policy_file else None,
        )


@dataclass(frozen=True, slots=True)
class WorkflowSettings:
    max_retries: int = DEFAULT_MAX_RETRIES
    max_fix_iterations: int = DEFAULT_MAX_FIX_ITERATIONS
    dispatch_delay_seconds: float = DEFAULT_DISPATCH_DELAY_SECONDS
    worker_concurrency: int = 4

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> WorkflowSettings:
        return cls(
            max_retries=section["max_retries"],
            max_fix_iterations=section["max_fix_iterations"],
            dispatch_delay_seconds=float(section["dispatch_delay_seconds"]),
            worker_concurrency=section["worker_concurrency"],
        )


@dataclass(frozen=True, slots=True)
class PathSettings:
    state_db: Path = Path("state/patchpilot.sqlite")
    artifact_root: Path = Path("artifacts")
    log_dir: Path = Path("logs")


@dataclass(frozen=True, slots=True)
class ObservabilitySettings:
    log_level: str = "INFO"
    log_format: str = "json"
    redact_secrets: bool = True


@dataclass(frozen=True, slots=True)
class Settings:
    """Complete runtime settings; satisfies the ``ConfigProvider`` contract."""

    guard: GuardSettings = field(default_factory=GuardSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    policies: PolicySettings = field(default_factory=PolicySettings)
    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)
    paths: PathSettings = field(default_factory=PathSettings)
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> Settings:
        """Build settings from a config mapping; the mapping is validated first."""
        validated = assert_valid_config(config)
        paths = validated["paths"]
        return cls(
            guard=GuardSettings.from_config(validated["guard"]),
            sandbox=SandboxSettings.from_config(validated["sandbox"]),
            policies=PolicySettings.from_config(validated["policies"]),
            workflow=WorkflowSettings.from_config(validated["workflow"]),
            paths=PathSettings(
                state_db=Path(paths["state_db"]),
                artifact_root=Path(paths["artifact_root"]),
                log_dir=Path(paths["log_dir"]),
            ),
            observability=ObservabilitySettings(**validated["observability"]),
        )

    @classmethod
    def defaults(cls) -> Settings:
        return cls.from_config(default_config())


__all__ = [
    "GuardSettings",
    "ObservabilitySettings",
    "PathSettings",
    "PolicySettings",
    "ReviewRequirements",
    "SandboxSettings",
    "Settings",
    "WorkflowSettings",
]
