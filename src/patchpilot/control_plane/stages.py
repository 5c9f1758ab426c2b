"""
patchpilot — stage strategies

File: src/patchpilot/control_plane/stages.py

Purpose
- Map each non-terminal workflow state to the work done on entry and the state it leads to.

Functional requirements
- A stage job re-reads its workflow and does nothing if the state moved on since dispatch.
- Collaborator and sandbox failures become a FAILED transition with the cause recorded.
- Required checks run through the sandbox on entry to TESTING (after implement and after fix).
- Fix loops are bounded by ``max_fix_iterations``.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Final

import structlog

from patchpilot.config.settings import PolicySettings, WorkflowSettings
from patchpilot.contracts import (
    CodeHost,
    ContextBuilder,
    Implementer,
    Planner,
    Reviewer,
    TicketSource,
)
from patchpilot.control_plane.state_machine import WorkflowStateMachine
from patchpilot.domain.events import JSONValue, as_json_object
from patchpilot.domain.models import (
    CheckRun,
    PatchSummaryJson,
    PlanJson,
    RepoProfile,
)
from patchpilot.domain.states import WorkflowState
from patchpilot.domain.workflow import Workflow
from patchpilot.errors import ConcurrentModification
from patchpilot.observability.logging import correlation_scope
from patchpilot.policy.enforcer import PolicyEnforcer
from patchpilot.policy.schema_validator import SchemaValidator
from patchpilot.sandbox.executor import SandboxExecutor

MAX_FIX_ITERATIONS_REASON: Final[str] = "max_fix_iterations_reached"
DEFAULT_LANGUAGE: Final[str] = "generic"
OUTPUT_EXCERPT_CHARS: Final[int] = 2000

_SECURITY_SCAN_COMMAND: Final[str] = "security"


@dataclass(frozen=True, slots=True)
class StageOutcome:
    """Result of one stage: move to ``target``, or fail with ``failure``."""

    target: WorkflowState | None = None
    artifacts: Mapping[str, JSONValue] = field(default_factory=dict)
    failure: str | None = None

    def __post_init__(self) -> None:
        if (self.target is None) == (self.failure is None):
            raise ValueError("StageOutcome needs exactly one of target or failure")


@dataclass(frozen=True, slots=True)
class StageCollaborators:
    context_builder: ContextBuilder
    planner: Planner
    implementer: Implementer
    reviewer: Reviewer | None = None
    code_host: CodeHost | None = None
    ticket_source: TicketSource | None = None


StageStrategy = Callable[[Workflow], StageOutcome]


class StageRunner:
    """Executes the stage strategy for a workflow's current state."""

    def __init__(
        self,
        machine: WorkflowStateMachine,
        collaborators: StageCollaborators,
        *,
        executor: SandboxExecutor,
        enforcer: PolicyEnforcer,
        validator: SchemaValidator,
        workflow_settings: WorkflowSettings | None = None,
        logger: Any | None = None,
    ) -> None:
        self._machine = machine
        self._collaborators = collaborators
        self._executor = executor
        self._enforcer = enforcer
        self._validator = validator
        self._settings = workflow_settings or machine.settings
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._strategies: Mapping[WorkflowState, StageStrategy] = MappingProxyType(
            {
                WorkflowState.INGESTED: self._build_context,
                WorkflowState.CONTEXT_READY: self._plan,
                WorkflowState.PLANNED: self._implement,
                WorkflowState.IMPLEMENTING: self._run_checks,
                WorkflowState.TESTING: self._evaluate_checks,
                WorkflowState.REVIEWING: self._review,
                WorkflowState.FIXING: self._fix,
                WorkflowState.PR_CREATED: self._complete,
            }
        )
        machine.attach_stage_handler(self.run_stage)

    @property
    def strategies(self) -> Mapping[WorkflowState, StageStrategy]:
        return self._strategies

    @property
    def policy_settings(self) -> PolicySettings:
        return self._enforcer.settings

    def run_stage(self, workflow_id: str, expected_state: WorkflowState) -> None:
        """Stage job entry point used by the dispatcher."""
        workflow = self._machine.get(workflow_id)
        if workflow is None or workflow.state is not expected_state:
            self._logger.info(
                "stage_job_stale",
                workflow_id=workflow_id,
                expected_state=expected_state.value,
                actual_state=None if workflow is None else workflow.state.value,
            )
            return
        strategy = self._strategies.get(workflow.state)
        if strategy is None:
            return

        with correlation_scope(
            workflow_id=workflow.id, ticket_ref=workflow.ticket_ref, stage=workflow.state.value
        ):
            try:
                outcome = strategy(workflow)
            except Exception as exc:
                self._logger.error(
                    "stage_failed",
                    workflow_id=workflow.id,
                    stage=workflow.state.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self._persist_failure(workflow, str(exc) or type(exc).__name__, exc)
                return
            self._apply(workflow, outcome)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _build_context(self, workflow: Workflow) -> StageOutcome:
        ticket_source = self._collaborators.ticket_source
        ticket: Mapping[str, Any] = (
            ticket_source.fetch(workflow.ticket_ref)
            if ticket_source is not None
            else {"id": workflow.ticket_ref}
        )
        context = self._collaborators.context_builder.build_context(ticket)
        return StageOutcome(
            WorkflowState.CONTEXT_READY,
            {"ticket": _json(ticket, "ticket"), "context": _json(context, "context")},
        )

    def _plan(self, workflow: Workflow) -> StageOutcome:
        plan_data = self._collaborators.planner.plan(
            _mapping(workflow.artifact("ticket")), _mapping(workflow.artifact("context"))
        )
        validation = self._validator.validate_plan(plan_data)
        compliance = self._enforcer.check_plan_compliance(PlanJson.from_dict(plan_data))
        artifacts = {
            "plan": _json(plan_data, "plan"),
            "plan_validation": _json(validation.to_dict(), "plan_validation"),
            "plan_compliance": _json(compliance.to_dict(), "plan_compliance"),
        }
        if not compliance.passed:
            reason = compliance.retry_reason or "Plan violates policy: " + "; ".join(
                compliance.violations
            )
            return StageOutcome(artifacts=artifacts, failure=reason)
        return StageOutcome(WorkflowState.PLANNED, artifacts)

    def _implement(self, workflow: Workflow) -> StageOutcome:
        patch_data = self._collaborators.implementer.implement(
            _mapping(workflow.artifact("plan")), _mapping(workflow.artifact("context"))
        )
        self._validator.validate_patch(patch_data)
        return StageOutcome(WorkflowState.IMPLEMENTING, {"patch": _json(patch_data, "patch")})

    def _run_checks(self, workflow: Workflow) -> StageOutcome:
        return StageOutcome(WorkflowState.TESTING, self._check_artifacts(workflow))

    def _evaluate_checks(self, workflow: Workflow) -> StageOutcome:
        if workflow.artifact("checks_passed") is True:
            return StageOutcome(WorkflowState.REVIEWING)
        return self._fix_or_fail(workflow, {})

    def _review(self, workflow: Workflow) -> StageOutcome:
        patch_data = _mapping(workflow.artifact("patch"))
        patch = PatchSummaryJson.from_dict(patch_data)
        check_runs = _check_runs(workflow.artifact("check_runs"))

        compliance = self._enforcer.check_patch_compliance(patch)
        self._enforcer.record_check_results(compliance, check_runs)
        review = self._enforcer.generate_review_result(patch, compliance)
        reviewer = self._collaborators.reviewer
        if reviewer is not None and review.is_approved():
            review = reviewer.review(patch_data, check_runs, review)

        artifacts: dict[str, JSONValue] = {
            "patch_compliance": _json(compliance.to_dict(), "patch_compliance"),
            "review": _json(review.to_dict(), "review"),
        }
        if not (compliance.passed and review.is_approved()):
            return self._fix_or_fail(workflow, artifacts)

        pr_url = self._open_pull_request(
            workflow, patch, review.summary, compliance.review_checklist
        )
        if pr_url is not None:
            artifacts["pr_url"] = pr_url
        return StageOutcome(WorkflowState.PR_CREATED, artifacts)

    def _fix(self, workflow: Workflow) -> StageOutcome:
        feedback = {
            "check_runs": workflow.artifact("check_runs") or [],
            "review": workflow.artifact("review") or {},
            "patch_compliance": workflow.artifact("patch_compliance") or {},
        }
        patch_data = self._collaborators.implementer.fix(
            _mapping(workflow.artifact("patch")), feedback, _mapping(workflow.artifact("context"))
        )
        self._validator.validate_patch(patch_data)
        artifacts: dict[str, JSONValue] = {"patch": _json(patch_data, "patch")}
        artifacts.update(self._check_artifacts(workflow))
        return StageOutcome(WorkflowState.TESTING, artifacts)

    def _complete(self, workflow: Workflow) -> StageOutcome:
        return StageOutcome(WorkflowState.DONE)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fix_or_fail(
        self, workflow: Workflow, artifacts: Mapping[str, JSONValue]
    ) -> StageOutcome:
        if workflow.fix_iterations >= self._settings.max_fix_iterations:
            return StageOutcome(artifacts=artifacts, failure=MAX_FIX_ITERATIONS_REASON)
        return StageOutcome(WorkflowState.FIXING, artifacts)

    def _check_artifacts(self, workflow: Workflow) -> dict[str, JSONValue]:
        runs = self.execute_required_checks(workflow)
        mandatory = {
            check["name"] for check in self._enforcer.required_checks() if check["mandatory"]
        }
        passed = all(
            run.passed and not run.skipped and not run.timed_out
            for run in runs
            if run.name in mandatory
        )
        return {
            "check_runs": [run.to_dict() for run in runs],
            "checks_passed": passed,
        }

    def execute_required_checks(self, workflow: Workflow) -> list[CheckRun]:
        """Run every declared check in the sandbox; missing commands are reported as skipped."""
        context = _mapping(workflow.artifact("context"))
        workspace = context.get("workspace_path")
        profile = RepoProfile.from_dict(_mapping(context.get("repo_profile")))
        language = str(context.get("language") or profile.primary_language or DEFAULT_LANGUAGE)

        runs: list[CheckRun] = []
        for check in self._enforcer.required_checks():
            name = str(check["name"])
            command = self._command_for(name, profile)
            if command is None or not workspace:
                self._logger.info("check_skipped", workflow_id=workflow.id, check=name)
                runs.append(CheckRun(name=name, passed=False, skipped=True))
                continue
            result = self._executor.run(
                Path(str(workspace)),
                command,
                language,
                repo_profile=profile,
                ticket_id=workflow.ticket_ref,
            )
            runs.append(
                CheckRun(
                    name=name,
                    passed=result.is_successful(),
                    exit_code=result.exit_code,
                    command=command,
                    timed_out=result.timed_out,
                    output_excerpt=result.combined_output()[-OUTPUT_EXCERPT_CHARS:],
                )
            )
        self._logger.info(
            "checks_completed",
            workflow_id=workflow.id,
            results={run.name: "skipped" if run.skipped else run.passed for run in runs},
        )
        return runs

    def _command_for(self, check_name: str, profile: RepoProfile) -> str | None:
        if check_name.startswith("security_") and check_name != "security_scan":
            tool = check_name.removeprefix("security_")
            return profile.get_command(check_name) or profile.get_command(tool)
        key = self.policy_settings.check_commands.get(check_name, check_name)
        if check_name == "security_scan":
            return profile.get_command(key) or profile.get_command(_SECURITY_SCAN_COMMAND)
        return profile.get_command(key)

    def _open_pull_request(
        self,
        workflow: Workflow,
        patch: PatchSummaryJson,
        summary: str,
        checklist: Sequence[str],
    ) -> str | None:
        code_host = self._collaborators.code_host
        workspace = _mapping(workflow.artifact("context")).get("workspace_path")
        if code_host is None or not workspace:
            return None
        path = Path(str(workspace))
        branch = f"patchpilot/{workflow.ticket_ref}"
        title = f"{workflow.ticket_ref}: {patch.summary or 'automated change'}"
        body = "\n".join([summary, "", "Review checklist:", *(f"- {item}" for item in checklist)])
        code_host.create_branch(path, branch)
        code_host.commit_all(path, title)
        code_host.push(path, branch)
        url = code_host.open_pr(path, branch=branch, title=title, body=body)
        self._logger.info("pull_request_opened", workflow_id=workflow.id, url=url)
        return url

    def _apply(self, workflow: Workflow, outcome: StageOutcome) -> None:
        try:
            if outcome.failure is not None:
                self._machine.fail(workflow, outcome.failure, artifacts=outcome.artifacts)
            else:
                assert outcome.target is not None
                self._machine.transition(workflow, outcome.target, artifacts=outcome.artifacts)
        except ConcurrentModification:
            self._logger.info(
                "stage_result_discarded",
                workflow_id=workflow.id,
                stage=workflow.state.value,
            )

    def _persist_failure(self, workflow: Workflow, reason: str, error: Exception) -> None:
        try:
            self._machine.fail(workflow, reason, error)
        except ConcurrentModification:
            self._logger.info(
                "stage_failure_discarded", workflow_id=workflow.id, stage=workflow.state.value
            )


def _mapping(value: object) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _json(value: object, path: str) -> dict[str, JSONValue]:
    return as_json_object(value, path)


def _check_runs(value: object) -> list[CheckRun]:
    if not isinstance(value, list):
        return []
    return [CheckRun.from_dict(item) for item in value if isinstance(item, Mapping)]


__all__ = [
    "MAX_FIX_ITERATIONS_REASON",
    "StageCollaborators",
    "StageOutcome",
    "StageRunner",
]
