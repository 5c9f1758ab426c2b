"""Process exit-code routing at the CLI boundary."""

from __future__ import annotations

import pytest

from patchpilot import main
from patchpilot.config.loader import ConfigLoadError
from patchpilot.errors import CommandBlocked, PathViolation, SecurityPolicyError
from patchpilot.main import ExitCode


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ConfigLoadError("bad toml"), ExitCode.CONFIG_ERROR),
        (SecurityPolicyError("bad yaml"), ExitCode.CONFIG_ERROR),
        (CommandBlocked("nope", command="sudo ls"), ExitCode.GUARD_VIOLATION),
        (PathViolation("nope", path="/etc"), ExitCode.GUARD_VIOLATION),
        (RuntimeError("boom"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_exceptions_map_to_exit_codes(error: Exception, expected: ExitCode) -> None:
    assert main._route_exception(error) is expected


def test_chained_cause_is_inspected() -> None:
    try:
        try:
            raise ConfigLoadError("missing file")
        except ConfigLoadError as inner:
            raise RuntimeError("wrapper") from inner
    except RuntimeError as outer:
        assert main._route_exception(outer) is ExitCode.CONFIG_ERROR


def test_raw_exit_codes_are_normalized(capsys: pytest.CaptureFixture[str]) -> None:
    assert main._normalize_exit_code(None) == ExitCode.SUCCESS
    assert main._normalize_exit_code(3) == ExitCode.GUARD_VIOLATION
    assert main._normalize_exit_code(42) == ExitCode.INTERNAL_ERROR
    assert main._normalize_exit_code("usage problem") == ExitCode.INTERNAL_ERROR
    assert "usage problem" in capsys.readouterr().err


def test_argparse_errors_do_not_escape(capsys: pytest.CaptureFixture[str]) -> None:
    assert main.cli_entrypoint(["no-such-command"]) == 2
    assert "invalid choice" in capsys.readouterr().err


def test_unexpected_errors_print_a_traceback(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def explode(argv: object) -> int:
        raise KeyError("unexpected")

    monkeypatch.setattr("patchpilot.ui.cli.run_cli", explode)
    assert main.cli_entrypoint(["stats"]) == ExitCode.INTERNAL_ERROR
    assert "Traceback" in capsys.readouterr().err
