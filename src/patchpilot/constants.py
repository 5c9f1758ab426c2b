"""Stable constants shared across the guard, sandbox, policy and workflow layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1
POLICY_VERSION: Final[str] = "1.0"

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
ARTIFACTS_DIR: Final[PurePosixPath] = PurePosixPath("artifacts")
LOGS_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Command guard limits.
MAX_COMMAND_LENGTH: Final[int] = 4096
MAX_ARGUMENTS: Final[int] = 100
DEFAULT_ALLOWED_PATHS: Final[tuple[str, ...]] = ("/workspace", "/tmp", "/home/runner")
RESTRICTED_PATHS: Final[tuple[str, ...]] = ("/etc", "/sys", "/proc", "/dev", "/boot", "/root")
REDACTION_MARKER: Final[str] = "[REDACTED]"

# Sandbox limits.
MAX_OUTPUT_SIZE: Final[int] = 1_048_576
DEFAULT_SANDBOX_TIMEOUT_SECONDS: Final[int] = 300
MAX_SANDBOX_TIMEOUT_SECONDS: Final[int] = 600
DIRECT_RUN_TIMEOUT_SECONDS: Final[int] = 1800
RATE_LIMIT_ATTEMPTS: Final[int] = 10
RATE_LIMIT_DECAY_SECONDS: Final[int] = 60
FALLBACK_RUNNER_IMAGE: Final[str] = "ubuntu:22.04"
SANDBOX_WORKDIR: Final[str] = "/workspace"

# Workflow defaults.
DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_MAX_FIX_ITERATIONS: Final[int] = 2
DEFAULT_DISPATCH_DELAY_SECONDS: Final[float] = 5.0

# Risk levels in ascending order.
RISK_LEVELS: Final[tuple[str, ...]] = ("low", "medium", "high", "critical")
RISK_LEVEL_WEIGHT: Final[dict[str, int]] = {
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}

__all__ = [
    "ARTIFACTS_DIR",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_ALLOWED_PATHS",
    "DEFAULT_DISPATCH_DELAY_SECONDS",
    "DEFAULT_MAX_FIX_ITERATIONS",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_SANDBOX_TIMEOUT_SECONDS",
    "DIRECT_RUN_TIMEOUT_SECONDS",
    "FALLBACK_RUNNER_IMAGE",
    "LOGS_DIR",
    "MAX_ARGUMENTS",
    "MAX_COMMAND_LENGTH",
    "MAX_OUTPUT_SIZE",
    "MAX_SANDBOX_TIMEOUT_SECONDS",
    "POLICY_VERSION",
    "RATE_LIMIT_ATTEMPTS",
    "RATE_LIMIT_DECAY_SECONDS",
    "REDACTION_MARKER",
    "RESTRICTED_PATHS",
    "RISK_LEVELS",
    "RISK_LEVEL_WEIGHT",
    "SANDBOX_WORKDIR",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
]
