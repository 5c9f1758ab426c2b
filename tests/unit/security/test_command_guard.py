"""Command guard policy tests."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from patchpilot.config.settings import GuardSettings
from patchpilot.domain.models import RepoProfile
from patchpilot.errors import CommandBlocked, GuardViolation, PathViolation
from patchpilot.sandbox.rate_limiter import SlidingWindowRateLimiter
from patchpilot.security.command_guard import (
    CommandGuard,
    extract_base_command,
    extract_paths,
    is_path_allowed,
)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_safe_command_has_no_violations() -> None:
    validation = CommandGuard().validate_command("pytest  -q   tests")
    assert validation.safe
    assert validation.normalized == "pytest -q tests"
    assert validation.violations == ()


@pytest.mark.parametrize(
    "command",
    [
        "rm -rf /",
        "sudo make install",
        "cat a.txt | grep x",
        "echo hi > out.txt",
        "make && make install",
        "echo `whoami`",
        "SSH user@host",
    ],
)
def test_deny_list_raises_before_anything_else(command: str) -> None:
    with pytest.raises(CommandBlocked, match="blocked operation"):
        CommandGuard().validate_command(command)


def test_length_limit_is_fatal() -> None:
    guard = CommandGuard(GuardSettings(max_command_length=10))
    with pytest.raises(CommandBlocked, match="maximum length of 10"):
        guard.validate_command("pytest -q tests/unit")


def test_guard_violations_are_permission_errors() -> None:
    assert issubclass(CommandBlocked, GuardViolation)
    assert issubclass(PathViolation, PermissionError)


def test_restricted_absolute_path_raises_path_violation() -> None:
    with pytest.raises(PathViolation) as excinfo:
        CommandGuard().validate_command("cat /etc/hostname")
    assert excinfo.value.path == "/etc/hostname"


@pytest.mark.parametrize("allowed", [["/"], ["/etc"], ["/proc", "/workspace"]])
def test_allow_list_cannot_open_restricted_roots(allowed: list[str]) -> None:
    with pytest.raises(PathViolation):
        CommandGuard().validate_command("cat /etc/shadow", allowed_paths=allowed)
    assert not is_path_allowed("/proc/self/environ", allowed)


def test_parent_escape_raises_path_violation() -> None:
    with pytest.raises(PathViolation):
        CommandGuard().validate_command("cat ../secrets.txt")


def test_workspace_paths_can_be_allowed_per_call() -> None:
    guard = CommandGuard()
    validation = guard.validate_command(
        "cat /srv/checkout/README.md", allowed_paths=["/srv/checkout"]
    )
    assert validation.safe
    assert guard.validate_command("cat /workspace/src/app.py").safe


def test_dangerous_pattern_is_reported_not_raised() -> None:
    validation = CommandGuard().validate_command("cat /workspace/sys/x")
    assert not validation.safe
    assert any("dangerous pattern" in violation for violation in validation.violations)


def test_allow_list_from_repo_profile() -> None:
    profile = RepoProfile(commands={"test": "npm run test", "lint": "eslint src"})
    guard = CommandGuard()

    assert guard.validate_command("npm run test -- --watch=false", profile).safe
    assert guard.validate_command("eslint src --fix", profile).safe

    rejected = guard.validate_command("npm run build", profile)
    assert rejected.violations == ("Command 'npm run build' not in allowed list from repo profile",)


def test_argument_count_violation_text() -> None:
    guard = CommandGuard(GuardSettings(max_arguments=3))
    validation = guard.validate_command("pytest -q -x tests")
    assert validation.violations == ("Command has too many arguments (4 > 3)",)


def test_base_command_extraction() -> None:
    assert extract_base_command("npm run build --prod") == "npm run build"
    assert extract_base_command("composer run-script lint x") == "composer run-script lint"
    assert extract_base_command("yarn install") == "yarn"
    assert extract_base_command("pytest -q") == "pytest"


def test_path_extraction_and_allowance() -> None:
    paths = extract_paths("tool /a /workspace/src ../up vendor/bin/phpunit")
    assert "/a" not in paths
    assert "/workspace/src" in paths
    assert "../up" in paths
    assert "vendor/bin/phpunit" in paths

    assert is_path_allowed("vendor/bin/phpunit", ())
    assert is_path_allowed("src/app.py", ())
    assert not is_path_allowed("../up", ("/workspace",))
    assert not is_path_allowed("/proc/self/environ", ("/workspace",))


def test_rate_limit_key_format() -> None:
    key = CommandGuard().get_rate_limit_key("PROJ-7", "npm test")
    prefix, _, digest = key.rpartition(":")
    assert prefix == "runner:rate_limit:PROJ-7"
    assert len(digest) == 8


def test_rate_limit_blocks_after_max_attempts_and_decays() -> None:
    clock = _FakeClock()
    guard = CommandGuard(
        rate_limiter=SlidingWindowRateLimiter(max_attempts=2, decay_seconds=60, clock=clock)
    )
    key = guard.get_rate_limit_key("PROJ-8", "npm test")

    assert not guard.is_rate_limited(key)
    assert not guard.is_rate_limited(key)
    assert guard.is_rate_limited(key)

    clock.now += 61
    assert not guard.is_rate_limited(key)


@given(st.integers(min_value=1, max_value=6), st.integers(min_value=0, max_value=20))
def test_rate_limiter_admits_at_most_max_attempts_per_window(limit: int, calls: int) -> None:
    limiter = SlidingWindowRateLimiter(max_attempts=limit, decay_seconds=60, clock=_FakeClock())
    admitted = sum(1 for _ in range(calls) if not limiter.is_limited("key"))
    assert admitted == min(limit, calls)


def test_expired_rate_limit_windows_are_dropped() -> None:
    clock = _FakeClock()
    limiter = SlidingWindowRateLimiter(max_attempts=2, decay_seconds=60, clock=clock)
    for index in range(1000):
        limiter.is_limited(f"runner:rate_limit:PROJ-9:{index:08x}")
    assert limiter.tracked_keys == 1000

    clock.now += 100
    assert not limiter.is_limited("runner:rate_limit:PROJ-9:fresh")
    assert limiter.tracked_keys == 1


def test_live_windows_survive_a_sweep() -> None:
    clock = _FakeClock()
    limiter = SlidingWindowRateLimiter(max_attempts=1, decay_seconds=60, clock=clock)
    assert not limiter.is_limited("old")
    clock.now += 50
    assert not limiter.is_limited("recent")

    clock.now += 20
    assert not limiter.is_limited("other")
    assert limiter.is_limited("recent")
    assert limiter.attempts("old") == 0
