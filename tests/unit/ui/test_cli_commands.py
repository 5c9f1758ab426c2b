"""CLI command routing with JSON output."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from patchpilot.config import Settings, load_config
from patchpilot.control_plane.dispatcher import SynchronousDispatcher
from patchpilot.control_plane.state_machine import WorkflowStateMachine
from patchpilot.domain.states import WorkflowState
from patchpilot.domain.workflow import Workflow
from patchpilot.main import ExitCode, cli_entrypoint
from patchpilot.persistence import StateDB, WorkflowRepo
from patchpilot.ui.cli import run_cli

_CONFIG = """
[paths]
state_db = "state/cli.sqlite"
log_dir = "logs"

[observability]
log_level = "WARNING"
"""


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "patchpilot.toml"
    path.write_text(_CONFIG, encoding="utf-8")
    return path


def _run_json(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict[str, Any]]:
    code = run_cli([*argv, "--json"])
    out = capsys.readouterr().out.strip().splitlines()
    return code, json.loads(out[-1])


def _seed_workflow(config_path: Path, ticket_ref: str) -> str:
    settings = Settings.from_config(load_config(config_path))
    with StateDB(settings.paths.state_db) as db:
        machine = WorkflowStateMachine(WorkflowRepo(db), SynchronousDispatcher())
        workflow = machine.start(ticket_ref)
        machine.transition(workflow, WorkflowState.CONTEXT_READY)
        return workflow.id


def test_guard_check_safe_command(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run_json(
        capsys, "guard-check", "ls /workspace", "--config", str(config_path)
    )
    assert code == ExitCode.SUCCESS
    assert payload["command"] == "guard-check"
    assert payload["result"]["safe"] is True
    assert payload["result"]["violations"] == []


def test_guard_check_reports_violations(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code, payload = _run_json(
        capsys, "guard-check", "cat /workspace/proc/x", "--config", str(config_path)
    )
    assert code == ExitCode.CHECK_FAILED
    assert payload["result"]["safe"] is False


def test_blocked_command_exits_with_guard_code(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = cli_entrypoint(["guard-check", "sudo rm -rf /", "--config", str(config_path)])
    assert code == ExitCode.GUARD_VIOLATION
    assert "blocked operation" in capsys.readouterr().err


def test_policy_check_patch(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    document = tmp_path / "patch.json"
    document.write_text(
        json.dumps(
            {
                "files_touched": ["src/db.py", "migrations/0002.sql"],
                "diff_stats": {"additions": 40, "deletions": 5},
                "risk_score": 0,
                "summary": "rename column",
                "breaking_changes": True,
                "requires_migration": True,
            }
        ),
        encoding="utf-8",
    )
    code, payload = _run_json(
        capsys, "policy-check", "patch", str(document), "--config", str(config_path)
    )

    assert code == ExitCode.SUCCESS
    assert payload["policy"]["risk_score"] == 55
    assert payload["policy"]["risk_level"] == "high"
    assert "Database migration - verify rollback procedure" in payload["policy"]["review_checklist"]
    assert payload["review"]["status"] == "approved"


def test_policy_check_schema_errors(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    document = tmp_path / "plan.json"
    document.write_text(json.dumps({"steps": []}), encoding="utf-8")
    code, payload = _run_json(
        capsys, "policy-check", "plan", str(document), "--config", str(config_path)
    )
    assert code == ExitCode.CHECK_FAILED
    assert payload["validation"]["is_valid"] is False
    assert payload["policy"] is None


def test_policy_check_missing_document(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = run_cli(["policy-check", "plan", str(tmp_path / "nope.json"), "--config", str(config_path)])
    assert code == ExitCode.CONFIG_ERROR
    assert "document not found" in capsys.readouterr().err


def test_status_cancel_and_retry(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    workflow_id = _seed_workflow(config_path, "PROJ-40")

    code, payload = _run_json(capsys, "status", workflow_id, "--config", str(config_path))
    assert code == ExitCode.SUCCESS
    assert payload["workflow"]["state"] == "CONTEXT_READY"

    code, payload = _run_json(capsys, "cancel", workflow_id, "--config", str(config_path))
    assert code == ExitCode.SUCCESS
    assert payload["workflow"]["state"] == "FAILED"
    assert payload["workflow"]["cancelled"] is True

    code, payload = _run_json(capsys, "retry", workflow_id, "--config", str(config_path))
    assert code == ExitCode.SUCCESS
    assert payload["workflow"]["state"] == "INGESTED"
    assert payload["workflow"]["retries"] == 1

    code = run_cli(["retry", workflow_id, "--config", str(config_path)])
    assert code == ExitCode.CHECK_FAILED
    assert "not retryable" in capsys.readouterr().err


def test_stats(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _seed_workflow(config_path, "PROJ-41")
    code, payload = _run_json(capsys, "stats", "--config", str(config_path))
    assert code == ExitCode.SUCCESS
    assert payload["statistics"]["total"] == 1
    assert payload["statistics"]["in_progress"] == 1


def test_unknown_and_malformed_workflow_ids(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = run_cli(["status", Workflow.new("PROJ-42").id, "--config", str(config_path)])
    assert code == ExitCode.CHECK_FAILED
    assert "workflow not found" in capsys.readouterr().err

    code = run_cli(["status", "wf-missing", "--config", str(config_path)])
    assert code == ExitCode.CONFIG_ERROR
    assert "invalid workflow id" in capsys.readouterr().err


def test_config_is_printed_redacted(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run_json(capsys, "config", "--config", str(config_path))
    assert code == ExitCode.SUCCESS
    assert payload["config"]["observability"]["log_level"] == "WARNING"
    assert payload["config"]["paths"]["state_db"].endswith("state/cli.sqlite")


def test_missing_config_file_is_a_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = run_cli(["stats", "--config", str(tmp_path / "absent.toml")])
    assert code == ExitCode.CONFIG_ERROR
    assert capsys.readouterr().err.startswith("error:")


def test_plain_text_guard_output(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["guard-check", "pytest -q", "--config", str(config_path)]) == ExitCode.SUCCESS
    out = capsys.readouterr().out
    assert "Command: pytest -q" in out
    assert "Safe: yes" in out
