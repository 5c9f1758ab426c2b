"""Runner image selection and container invocation flags for isolated sandbox runs."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from patchpilot.constants import FALLBACK_RUNNER_IMAGE, SANDBOX_WORKDIR
from patchpilot.sandbox.network_policy import NetworkPolicy, NetworkPolicyMode

if TYPE_CHECKING:
    from patchpilot.config.settings import SandboxSettings

# Images are relative to the configured prefix.
RUNNER_IMAGES: Final[Mapping[str, str]] = {
    "php": "runner:php",
    "node": "runner:node",
    "javascript": "runner:node",
    "typescript": "runner:node",
    "python": "runner:python",
    "go": "runner:go",
    "java": "runner:java",
    "kotlin": "runner:java",
    "ruby": "runner:ruby",
    "rust": "runner:rust",
    "csharp": "runner:dotnet",
}

RETAINED_CAPABILITIES: Final[tuple[str, ...]] = ("CHOWN", "SETUID", "SETGID")
CONTAINER_NAME_PREFIX: Final[str] = "patchpilot-"


class SandboxBackend(StrEnum):
    """Backend names accepted by the sandbox executor."""

    NONE = "none"
    DOCKER = "docker"
    PODMAN = "podman"

    @property
    def isolated(self) -> bool:
        return self is not SandboxBackend.NONE


def coerce_backend(value: SandboxBackend | str) -> SandboxBackend:
    if isinstance(value, SandboxBackend):
        return value
    if not isinstance(value, str):
        raise ValueError("backend must be a string or SandboxBackend")
    normalized = value.strip().lower()
    try:
        return SandboxBackend(normalized)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in SandboxBackend)
        raise ValueError(f"unsupported backend {value!r}; expected one of: {allowed}") from exc


def resolve_image(language: str, *, prefix: str = "synapticore/", logger: Any | None = None) -> str:
    """Map ``language`` to its runner image, falling back to a generic image."""
    image = RUNNER_IMAGES.get(language.strip().lower())
    if image is None:
        log = logger if logger is not None else structlog.get_logger(__name__)
        log.warning("runner_image_fallback", language=language, image=FALLBACK_RUNNER_IMAGE)
        return FALLBACK_RUNNER_IMAGE
    return f"{prefix}{image}"


def container_name(run_id: str) -> str:
    return f"{CONTAINER_NAME_PREFIX}{run_id}"


@dataclass(frozen=True, slots=True)
class IsolationProfile:
    """Resource and privilege ceilings applied to every isolated invocation."""

    user: str = "1000:1000"
    memory: str = "512m"
    cpus: str = "1"
    pids_limit: int = 100
    tmp_size: str = "128M"
    home_size: str = "64M"
    network: str = "none"

    @classmethod
    def from_settings(cls, settings: SandboxSettings, *, network: str = "none") -> IsolationProfile:
        return cls(
            user=settings.user,
            memory=settings.memory,
            cpus=settings.cpus,
            pids_limit=settings.pids_limit,
            tmp_size=settings.tmp_size,
            home_size=settings.home_size,
            network=network,
        )

    def flags(self) -> list[str]:
        flags = [
            f"--user={self.user}",
            "--read-only",
            f"--tmpfs=/tmp:rw,noexec,nosuid,size={self.tmp_size}",
            f"--tmpfs=/home/runner:rw,noexec,nosuid,size={self.home_size}",
            f"--memory={self.memory}",
            f"--memory-swap={self.memory}",
            f"--cpus={self.cpus}",
            f"--pids-limit={self.pids_limit}",
            "--security-opt=no-new-privileges",
            "--cap-drop=ALL",
        ]
        flags.extend(f"--cap-add={cap}" for cap in RETAINED_CAPABILITIES)
        flags.append(f"--network={self.network}")
        return flags


def select_network(
    settings: SandboxSettings,
    *,
    network_policy: NetworkPolicy | None = None,
    logger: Any | None = None,
) -> str:
    """Return the container network; egress requires every registry to pass the policy.

    Raises:
        NetworkPolicyViolationError: a configured registry is not in the allow-list.
    """
    if not settings.registry_egress:
        return "none"
    policy = network_policy or NetworkPolicy(
        mode=NetworkPolicyMode.ALLOWLIST, allowlist=settings.allowed_registries, logger=logger
    )
    for registry in settings.allowed_registries:
        policy.enforce(registry)
    return settings.egress_network


def build_container_argv(
    backend: SandboxBackend,
    *,
    run_id: str,
    image: str,
    workspace_path: Path,
    command: str,
    env: Mapping[str, str],
    profile: IsolationProfile,
) -> list[str]:
    """Build the ``docker run`` / ``podman run`` argv for one invocation."""
    if not backend.isolated:
        raise ValueError("container argv requires an isolated backend")
    argv = [
        backend.value,
        "run",
        "--rm",
        f"--name={container_name(run_id)}",
        *profile.flags(),
        f"--volume={workspace_path}:{SANDBOX_WORKDIR}:rw",
        f"--workdir={SANDBOX_WORKDIR}",
    ]
    for key in sorted(env):
        argv.extend(["-e", f"{key}={env[key]}"])
    argv.extend([image, "/bin/sh", "-c", command])
    return argv


def build_local_argv(command: str) -> list[str]:
    return ["/bin/sh", "-c", command]


__all__ = [
    "CONTAINER_NAME_PREFIX",
    "IsolationProfile",
    "RETAINED_CAPABILITIES",
    "RUNNER_IMAGES",
    "SandboxBackend",
    "build_container_argv",
    "build_local_argv",
    "coerce_backend",
    "container_name",
    "resolve_image",
    "select_network",
]
