"""Stage strategies driven through the synchronous dispatcher."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from patchpilot.config.settings import SandboxSettings, WorkflowSettings
from patchpilot.control_plane.dispatcher import SynchronousDispatcher
from patchpilot.control_plane.stages import (
    MAX_FIX_ITERATIONS_REASON,
    StageCollaborators,
    StageRunner,
)
from patchpilot.control_plane.state_machine import WorkflowStateMachine
from patchpilot.domain.models import CheckRun, ReviewResult, ReviewStatus
from patchpilot.domain.states import WorkflowState
from patchpilot.domain.workflow import Workflow
from patchpilot.errors import ServiceUnavailable, StageExecutionFailed
from patchpilot.persistence import StateDB, WorkflowRepo
from patchpilot.policy.enforcer import PolicyEnforcer
from patchpilot.policy.schema_validator import SchemaValidator
from patchpilot.sandbox.executor import SandboxExecutor
from patchpilot.security.command_guard import CommandGuard

_PLAN = {
    "steps": [
        {"id": "s1", "intent": "edit", "targets": ["src/app.py"]},
        {"id": "s2", "intent": "test", "targets": ["tests/test_app.py"], "dependencies": ["s1"]},
    ],
    "files_affected": ["src/app.py", "tests/test_app.py"],
    "test_strategy": "unit tests for the null check",
    "risk": "low",
    "estimated_hours": 1,
}

_PATCH = {
    "files_touched": ["src/app.py", "tests/test_app.py"],
    "diff_stats": {"additions": 14, "deletions": 3},
    "risk_score": 0,
    "summary": "guard against missing config",
    "test_strategy": {"tests_added": 1},
}


class _Context:
    def __init__(self, workspace: Path, commands: Mapping[str, str]) -> None:
        self.workspace = workspace
        self.commands = dict(commands)

    def build_context(self, ticket: Mapping[str, Any]) -> Mapping[str, Any]:
        return {
            "workspace_path": str(self.workspace),
            "language": "python",
            "repo_profile": {"commands": self.commands, "languages": ["python"]},
        }


class _Planner:
    def __init__(self, plan: Mapping[str, Any] | Exception = _PLAN) -> None:
        self.result = plan

    def plan(self, ticket: Mapping[str, Any], context: Mapping[str, Any]) -> Mapping[str, Any]:
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class _Implementer:
    def __init__(self) -> None:
        self.fix_calls = 0

    def implement(self, plan: Mapping[str, Any], context: Mapping[str, Any]) -> Mapping[str, Any]:
        return _PATCH

    def fix(
        self,
        patch: Mapping[str, Any],
        feedback: Mapping[str, Any],
        context: Mapping[str, Any],
    ) -> Mapping[str, Any]:
        self.fix_calls += 1
        assert "check_runs" in feedback
        return patch


class _Reviewer:
    def __init__(self, verdict: ReviewStatus = ReviewStatus.APPROVED) -> None:
        self.verdict = verdict
        self.calls = 0

    def review(
        self,
        patch: Mapping[str, Any],
        check_runs: Sequence[CheckRun],
        policy_review: ReviewResult,
    ) -> ReviewResult:
        self.calls += 1
        return ReviewResult(status=self.verdict, summary=f"reviewed {len(check_runs)} checks")


class _CodeHost:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def clone(self, ticket_ref: str, destination: Path) -> Path:
        return destination

    def create_branch(self, workspace: Path, branch: str) -> None:
        self.calls.append(f"branch:{branch}")

    def commit_all(self, workspace: Path, message: str) -> str:
        self.calls.append("commit")
        return "abc123"

    def push(self, workspace: Path, branch: str) -> None:
        self.calls.append("push")

    def open_pr(self, workspace: Path, *, branch: str, title: str, body: str) -> str:
        self.calls.append(f"pr:{title}")
        return "https://git.example.test/acme/app/pull/7"


_PASSING = {
    "lint": "echo lint",
    "typecheck": "echo types",
    "test": "echo tests",
    "security": "echo sec",
}


def _runner(
    tmp_path: Path,
    *,
    commands: Mapping[str, str] = _PASSING,
    planner: _Planner | None = None,
    implementer: _Implementer | None = None,
    reviewer: _Reviewer | None = None,
    code_host: _CodeHost | None = None,
) -> tuple[WorkflowStateMachine, StageRunner, SynchronousDispatcher]:
    workspace = tmp_path / "workspace"
    workspace.mkdir(exist_ok=True)
    dispatcher = SynchronousDispatcher()
    machine = WorkflowStateMachine(
        WorkflowRepo(StateDB(tmp_path / "state.sqlite")),
        dispatcher,
        WorkflowSettings(max_fix_iterations=2),
    )
    runner = StageRunner(
        machine,
        StageCollaborators(
            context_builder=_Context(workspace, commands),
            planner=planner or _Planner(),
            implementer=implementer or _Implementer(),
            reviewer=reviewer,
            code_host=code_host,
        ),
        executor=SandboxExecutor(CommandGuard(), SandboxSettings(backend="none")),
        enforcer=PolicyEnforcer(),
        validator=SchemaValidator(),
    )
    return machine, runner, dispatcher


def _reload(machine: WorkflowStateMachine, workflow: Workflow) -> Workflow:
    stored = machine.get(workflow.id)
    assert stored is not None
    return stored


def test_every_non_terminal_state_has_a_strategy(tmp_path: Path) -> None:
    _, runner, _ = _runner(tmp_path)
    assert set(runner.strategies) == {
        state for state in WorkflowState if state not in (WorkflowState.DONE, WorkflowState.FAILED)
    }


def test_happy_path_opens_pull_request_and_completes(tmp_path: Path) -> None:
    code_host = _CodeHost()
    reviewer = _Reviewer()
    machine, _, dispatcher = _runner(tmp_path, reviewer=reviewer, code_host=code_host)

    workflow = _reload(machine, machine.start("PROJ-20"))

    assert workflow.state is WorkflowState.DONE
    assert [event.to_dict()["to_state"] for event in workflow.events] == [
        "CONTEXT_READY",
        "PLANNED",
        "IMPLEMENTING",
        "TESTING",
        "REVIEWING",
        "PR_CREATED",
        "DONE",
    ]
    assert workflow.artifact("checks_passed") is True
    assert workflow.artifact("pr_url") == "https://git.example.test/acme/app/pull/7"
    assert code_host.calls[:3] == ["branch:patchpilot/PROJ-20", "commit", "push"]
    assert code_host.calls[3].startswith("pr:PROJ-20: guard against missing config")
    assert reviewer.calls == 1
    assert len(dispatcher.history) == 7

    runs = {run["name"]: run for run in workflow.artifact("check_runs")}  # type: ignore[union-attr]
    assert runs["lint"]["command"] == "echo lint"
    assert runs["unit_tests"]["passed"] is True


def test_failing_checks_loop_until_fix_limit_is_reached(tmp_path: Path) -> None:
    implementer = _Implementer()
    machine, _, _ = _runner(
        tmp_path, commands={**_PASSING, "test": "false"}, implementer=implementer
    )

    workflow = _reload(machine, machine.start("PROJ-21"))

    assert workflow.state is WorkflowState.FAILED
    assert workflow.last_failure_reason == MAX_FIX_ITERATIONS_REASON
    assert workflow.fix_iterations == 2
    assert implementer.fix_calls == 2
    assert workflow.artifact("checks_passed") is False


def test_missing_check_command_is_skipped_and_blocks_review(tmp_path: Path) -> None:
    commands = {key: value for key, value in _PASSING.items() if key != "typecheck"}
    machine, _, _ = _runner(tmp_path, commands=commands)

    workflow = _reload(machine, machine.start("PROJ-22"))

    runs = {run["name"]: run for run in workflow.artifact("check_runs")}  # type: ignore[union-attr]
    assert runs["typecheck"]["skipped"] is True
    assert workflow.state is WorkflowState.FAILED
    assert workflow.last_failure_reason == MAX_FIX_ITERATIONS_REASON


def test_collaborator_exception_fails_workflow_with_cause(tmp_path: Path) -> None:
    machine, _, _ = _runner(tmp_path, planner=_Planner(ConnectionError("planner offline")))

    workflow = _reload(machine, machine.start("PROJ-23"))

    assert workflow.state is WorkflowState.FAILED
    assert workflow.last_failure_reason == "planner offline"
    failed = workflow.events[-1].to_dict()
    assert failed["from_state"] == "CONTEXT_READY"
    assert failed["error_type"] == "ConnectionError"


def test_transient_outage_fails_then_recovers_on_retry(tmp_path: Path) -> None:
    planner = _Planner(ServiceUnavailable("planner rate limited"))
    machine, _, _ = _runner(tmp_path, planner=planner)

    failed = _reload(machine, machine.start("PROJ-29"))
    assert failed.is_failed
    assert failed.events[-1].to_dict()["error_type"] == "ServiceUnavailable"
    assert isinstance(ServiceUnavailable("x"), StageExecutionFailed)

    planner.result = _PLAN
    recovered = _reload(machine, machine.retry(failed))

    assert recovered.state is WorkflowState.DONE
    assert recovered.retries == 1


def test_invalid_plan_fails_with_validation_error(tmp_path: Path) -> None:
    machine, _, _ = _runner(tmp_path, planner=_Planner({"steps": []}))

    workflow = _reload(machine, machine.start("PROJ-24"))

    assert workflow.is_failed
    assert "Plan validation failed" in (workflow.last_failure_reason or "")


def test_plan_policy_violation_fails_without_dispatching_implement(tmp_path: Path) -> None:
    plan = {**_PLAN, "files_affected": [".env"]}
    machine, _, dispatcher = _runner(tmp_path, planner=_Planner(plan))

    workflow = _reload(machine, machine.start("PROJ-25"))

    assert workflow.is_failed
    assert (workflow.last_failure_reason or "").startswith("Plan violates policy:")
    assert workflow.artifact("plan_compliance") is not None
    assert WorkflowState.PLANNED not in [state for _, state in dispatcher.history]


def test_reviewer_rejection_sends_patch_back_to_fixing(tmp_path: Path) -> None:
    implementer = _Implementer()
    reviewer = _Reviewer(ReviewStatus.NEEDS_CHANGES)
    machine, _, _ = _runner(tmp_path, implementer=implementer, reviewer=reviewer)

    workflow = _reload(machine, machine.start("PROJ-26"))

    assert workflow.is_failed
    assert workflow.last_failure_reason == MAX_FIX_ITERATIONS_REASON
    assert reviewer.calls == 3
    assert implementer.fix_calls == 2


def test_stale_stage_job_is_ignored(tmp_path: Path) -> None:
    machine, runner, _ = _runner(tmp_path)
    workflow = _reload(machine, machine.start("PROJ-27"))
    assert workflow.state is WorkflowState.DONE

    runner.run_stage(workflow.id, WorkflowState.PLANNED)

    assert _reload(machine, workflow) == workflow


def test_cancelled_workflow_is_not_resumed(tmp_path: Path) -> None:
    dispatcher = SynchronousDispatcher()
    machine = WorkflowStateMachine(WorkflowRepo(StateDB(tmp_path / "state.sqlite")), dispatcher)
    workflow = machine.start("PROJ-28")
    cancelled = machine.cancel(workflow)

    _, runner, _ = _runner(tmp_path)
    runner.run_stage(cancelled.id, WorkflowState.INGESTED)
    assert machine.get(cancelled.id) == cancelled
