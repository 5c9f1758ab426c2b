"""
patchpilot config package public API.

File: src/patchpilot/config/__init__.py

Purpose
- Export config loading/validation entrypoints, typed settings and public error types.

Functional requirements
- Support loading from ``patchpilot.toml`` + ``PATCHPILOT_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from patchpilot.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    effective_config,
    load_config,
    load_config_file,
    normalize_paths,
)
from patchpilot.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    PatchPilotConfig,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)
from patchpilot.config.settings import (
    GuardSettings,
    ObservabilitySettings,
    PathSettings,
    PolicySettings,
    ReviewRequirements,
    SandboxSettings,
    Settings,
    WorkflowSettings,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "GuardSettings",
    "ObservabilitySettings",
    "PATH_FIELDS",
    "PatchPilotConfig",
    "PathSettings",
    "PolicySettings",
    "ReviewRequirements",
    "SandboxSettings",
    "Settings",
    "WorkflowSettings",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "load_config_file",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
