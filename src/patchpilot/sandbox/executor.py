"""
patchpilot — sandbox executor

File: src/patchpilot/sandbox/executor.py

Purpose
- Run guard-validated commands inside a resource-constrained, network-restricted container
  and return captured, sanitized output as a ``ProcessResult``.

Functional requirements
- Rate limit and guard validation happen before any image is selected or process spawned;
  their violations are raised.
- Non-zero exits, timeouts and infrastructure failures are returned, never raised.
- Captured streams are size bounded, redacted and optionally archived per run.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import psutil
import structlog

from patchpilot.config.settings import SandboxSettings
from patchpilot.contracts import ObjectStore
from patchpilot.domain.ids import generate_sandbox_run_id
from patchpilot.domain.models import ProcessResult, RepoProfile
from patchpilot.errors import CommandBlocked
from patchpilot.sandbox.isolation import (
    IsolationProfile,
    SandboxBackend,
    build_container_argv,
    build_local_argv,
    coerce_backend,
    container_name,
    resolve_image,
    select_network,
)
from patchpilot.sandbox.network_policy import NetworkPolicy
from patchpilot.sandbox.process import CapturedProcess, run_bounded
from patchpilot.security.command_guard import CommandGuard
from patchpilot.security.redaction import truncation_marker

TIMEOUT_EXIT_CODE = 124
_KILL_TIMEOUT_SECONDS = 10


class SandboxExecutor:
    """Policy-gated command runner.

    One instance is shared by every stage job; it holds no per-run state.
    """

    def __init__(
        self,
        guard: CommandGuard,
        settings: SandboxSettings | None = None,
        *,
        object_store: ObjectStore | None = None,
        network_policy: NetworkPolicy | None = None,
        logger: Any | None = None,
    ) -> None:
        self._guard = guard
        self._settings = settings or SandboxSettings()
        self._backend = coerce_backend(self._settings.backend)
        self._object_store = object_store
        self._network_policy = network_policy
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def backend(self) -> SandboxBackend:
        return self._backend

    @property
    def guard(self) -> CommandGuard:
        return self._guard

    def run(
        self,
        workspace_path: str | Path,
        command: str,
        language: str,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        repo_profile: RepoProfile | None = None,
        allowed_paths: Sequence[str] = (),
        ticket_id: str | None = None,
    ) -> ProcessResult:
        """Validate and run ``command`` in an isolated runner for ``language``.

        Raises:
            CommandBlocked: the rate limit tripped or the guard refused the command.
            PathViolation: the command references a path outside the allowed roots.
        """
        workspace = Path(workspace_path)
        run_id = generate_sandbox_run_id()
        requested = self._settings.default_timeout_seconds if timeout is None else timeout
        effective_timeout = min(float(requested), float(self._settings.max_timeout_seconds))

        if ticket_id is not None:
            key = self._guard.get_rate_limit_key(ticket_id, command)
            if self._guard.is_rate_limited(key):
                raise CommandBlocked("Command execution rate limited", command=command)

        validation = self._guard.validate_command(
            command, repo_profile, [str(workspace), *allowed_paths]
        )
        if self._settings.block_on_guard_violations and not validation.safe:
            raise CommandBlocked(
                "Command rejected by policy: " + "; ".join(validation.violations),
                command=command,
            )

        network = (
            select_network(
                self._settings, network_policy=self._network_policy, logger=self._logger
            )
            if self._backend.isolated
            else "none"
        )
        self._logger.info(
            "sandbox_run_started",
            run_id=run_id,
            backend=self._backend.value,
            language=language,
            command=command,
            timeout_seconds=effective_timeout,
            network=network,
        )

        run_env = self._runner_env(env)
        try:
            if self._backend.isolated:
                argv = build_container_argv(
                    self._backend,
                    run_id=run_id,
                    image=resolve_image(
                        language, prefix=self._settings.image_prefix, logger=self._logger
                    ),
                    workspace_path=workspace.resolve(),
                    command=command,
                    env=run_env,
                    profile=IsolationProfile.from_settings(self._settings, network=network),
                )
                captured = run_bounded(
                    argv,
                    cwd=workspace,
                    env=self._host_env(),
                    timeout_seconds=effective_timeout,
                    max_output_bytes=self._settings.max_output_size,
                    on_timeout=lambda: self._kill_container(run_id),
                    logger=self._logger,
                )
            else:
                captured = run_bounded(
                    build_local_argv(command),
                    cwd=workspace,
                    env={**self._host_env(), **run_env},
                    timeout_seconds=effective_timeout,
                    max_output_bytes=self._settings.max_output_size,
                    logger=self._logger,
                )
        except (OSError, subprocess.SubprocessError, psutil.Error) as exc:
            self._logger.error("sandbox_run_failed", run_id=run_id, error=str(exc))
            return ProcessResult(
                exit_code=1, stderr=str(exc), command=command, run_id=run_id
            )

        result = self._to_result(captured, command=command, run_id=run_id)
        if self._settings.archive_logs:
            result = self._archive(result)
        self._logger.info(
            "sandbox_run_completed",
            run_id=run_id,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    def run_direct(
        self,
        workspace_path: str | Path,
        command: str,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        """Run a trusted command on the host; timeout, capture and redaction still apply."""
        run_id = generate_sandbox_run_id()
        effective_timeout = float(
            self._settings.direct_timeout_seconds if timeout is None else timeout
        )
        self._logger.debug("sandbox_direct_run_started", run_id=run_id, command=command)
        try:
            captured = run_bounded(
                build_local_argv(command),
                cwd=Path(workspace_path),
                env={**self._host_env(), **dict(env or {})},
                timeout_seconds=effective_timeout,
                max_output_bytes=self._settings.max_output_size,
                logger=self._logger,
            )
        except (OSError, subprocess.SubprocessError, psutil.Error) as exc:
            self._logger.error("sandbox_direct_run_failed", run_id=run_id, error=str(exc))
            return ProcessResult(exit_code=1, stderr=str(exc), command=command, run_id=run_id)
        return self._to_result(captured, command=command, run_id=run_id)

    def _runner_env(self, env: Mapping[str, str] | None) -> dict[str, str]:
        merged = dict(env or {})
        merged["RUNNER_TIMEOUT"] = str(self._settings.max_timeout_seconds)
        merged["RUNNER_MAX_OUTPUT"] = str(self._settings.max_output_size)
        return merged

    def _host_env(self) -> dict[str, str]:
        host_path = os.environ.get("PATH")
        return {"PATH": host_path} if host_path else {}

    def _to_result(self, captured: CapturedProcess, *, command: str, run_id: str) -> ProcessResult:
        max_size = self._settings.max_output_size
        stdout = self._bounded_text(captured.stdout, captured.stdout_size, max_size)
        stderr = self._bounded_text(captured.stderr, captured.stderr_size, max_size)

        if captured.timed_out:
            exit_code = TIMEOUT_EXIT_CODE
        elif captured.returncode is None:
            exit_code = 1
        elif captured.returncode < 0:
            exit_code = 128 + (captured.signal or 0)
        else:
            exit_code = captured.returncode

        return ProcessResult(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=captured.duration_seconds,
            timed_out=captured.timed_out,
            signal=captured.signal,
            command=command,
            run_id=run_id,
        )

    def _bounded_text(self, text: str, source_size: int, max_size: int) -> str:
        sanitized = self._guard.sanitize_output(text, max_size)
        if source_size > max_size and not sanitized.truncated:
            return sanitized.output + truncation_marker(source_size, max_size)
        return sanitized.output

    def _archive(self, result: ProcessResult) -> ProcessResult:
        if self._object_store is None or result.run_id is None:
            return result
        log_paths: dict[str, str] = {}
        try:
            for stream, text in (("stdout", result.stdout), ("stderr", result.stderr)):
                if text:
                    key = f"logs/runs/{result.run_id}/{stream}.log"
                    log_paths[stream] = self._object_store.put(key, text.encode("utf-8"))
        except OSError as exc:
            self._logger.warning("sandbox_log_archive_failed", run_id=result.run_id, error=str(exc))
        if not log_paths:
            return result
        return ProcessResult(
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_seconds=result.duration_seconds,
            timed_out=result.timed_out,
            signal=result.signal,
            log_paths=log_paths,
            command=result.command,
            run_id=result.run_id,
        )

    def _kill_container(self, run_id: str) -> None:
        name = container_name(run_id)
        try:
            subprocess.run(
                [self._backend.value, "kill", name],
                check=False,
                capture_output=True,
                timeout=_KILL_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            self._logger.warning("sandbox_container_kill_failed", container=name, error=str(exc))


__all__ = ["SandboxExecutor", "TIMEOUT_EXIT_CODE"]
