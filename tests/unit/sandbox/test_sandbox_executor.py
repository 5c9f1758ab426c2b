"""Local-backend sandbox runs: capture, bounding, archiving and guard integration."""

from __future__ import annotations

from pathlib import Path

import pytest

from patchpilot.config.settings import SandboxSettings
from patchpilot.constants import REDACTION_MARKER
from patchpilot.errors import CommandBlocked, PathViolation
from patchpilot.sandbox.executor import TIMEOUT_EXIT_CODE, SandboxExecutor
from patchpilot.sandbox.isolation import SandboxBackend
from patchpilot.sandbox.rate_limiter import SlidingWindowRateLimiter
from patchpilot.security.command_guard import CommandGuard
from patchpilot.storage import InMemoryObjectStore


def _executor(**overrides: object) -> tuple[SandboxExecutor, InMemoryObjectStore]:
    store = InMemoryObjectStore()
    settings = SandboxSettings(backend="none", **overrides)  # type: ignore[arg-type]
    return SandboxExecutor(CommandGuard(), settings, object_store=store), store


def test_successful_run_is_captured_and_archived(tmp_path: Path) -> None:
    executor, store = _executor()
    assert executor.backend is SandboxBackend.NONE

    result = executor.run(tmp_path, "echo ok", "python")

    assert result.exit_code == 0
    assert result.is_successful()
    assert result.combined_output() == "ok"
    assert result.run_id is not None
    stdout_key = f"logs/runs/{result.run_id}/stdout.log"
    assert result.log_paths == {"stdout": f"memory://{stdout_key}"}
    assert store.get(stdout_key) == b"ok\n"


def test_non_zero_exit_is_returned_not_raised(tmp_path: Path) -> None:
    executor, _ = _executor()
    assert executor.run(tmp_path, "false", "python").exit_code == 1
    assert executor.run(tmp_path, "exit 3", "python").exit_code == 3


def test_timeout_maps_to_exit_124(tmp_path: Path) -> None:
    executor, _ = _executor()
    result = executor.run(tmp_path, "sleep 5", "python", timeout=0.5)
    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.duration_seconds < 5


def test_output_is_bounded_and_redacted(tmp_path: Path) -> None:
    executor, _ = _executor(max_output_size=100)
    bounded = executor.run(tmp_path, "seq 1 5000", "python")
    assert "OUTPUT TRUNCATED" in bounded.stdout
    assert len(bounded.stdout) < 300

    redacted = executor.run(tmp_path, "echo token=abc123", "python")
    assert "abc123" not in redacted.stdout
    assert REDACTION_MARKER in redacted.stdout


def test_spawn_failure_becomes_result(tmp_path: Path) -> None:
    executor, _ = _executor()
    result = executor.run(tmp_path / "missing", "echo ok", "python")
    assert result.exit_code == 1
    assert result.stderr


def test_guard_refusals_are_raised(tmp_path: Path) -> None:
    executor, _ = _executor()
    with pytest.raises(CommandBlocked):
        executor.run(tmp_path, "sudo ls", "python")
    with pytest.raises(PathViolation):
        executor.run(tmp_path, "cat /etc/hostname", "python")


def test_workspace_is_an_allowed_path(tmp_path: Path) -> None:
    (tmp_path / "notes.txt").write_text("hello\n", encoding="utf-8")
    executor, _ = _executor()
    result = executor.run(tmp_path, f"cat {tmp_path / 'notes.txt'}", "python")
    assert result.combined_output() == "hello"


def test_guard_violations_block_when_configured(tmp_path: Path) -> None:
    executor, _ = _executor(block_on_guard_violations=True)
    with pytest.raises(CommandBlocked, match="rejected by policy"):
        executor.run(tmp_path, "cat /workspace/sys/x", "python")


def test_rate_limit_applies_per_ticket(tmp_path: Path) -> None:
    guard = CommandGuard(
        rate_limiter=SlidingWindowRateLimiter(max_attempts=1, decay_seconds=60)
    )
    executor = SandboxExecutor(guard, SandboxSettings(backend="none", archive_logs=False))

    first = executor.run(tmp_path, "echo ok", "python", ticket_id="PROJ-1")
    assert first.log_paths == {}
    with pytest.raises(CommandBlocked, match="rate limited"):
        executor.run(tmp_path, "echo ok", "python", ticket_id="PROJ-1")
    assert executor.run(tmp_path, "echo ok", "python", ticket_id="PROJ-2").exit_code == 0


def test_run_direct_skips_guard(tmp_path: Path) -> None:
    executor, store = _executor()
    result = executor.run_direct(tmp_path, "echo direct > out.txt")
    assert result.exit_code == 0
    assert (tmp_path / "out.txt").read_text(encoding="utf-8") == "direct\n"
    assert store.keys() == []
