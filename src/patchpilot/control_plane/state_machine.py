"""
patchpilot — workflow state machine

File: src/patchpilot/control_plane/state_machine.py

Purpose
- Own every workflow mutation: start, transition, fail, cancel and retry.

Functional requirements
- Every change is a compare-and-set through :class:`WorkflowRepo`; a lost race surfaces as
  ``ConcurrentModification`` and leaves the stored workflow untouched.
- The next stage is dispatched only after, and only by, the call that persisted the state it
  belongs to. At most one stage job per workflow is ever in flight.
- Cancellation is the single sanctioned bypass of the edge table.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from patchpilot.config.settings import WorkflowSettings
from patchpilot.contracts import TicketSource
from patchpilot.control_plane.dispatcher import Dispatcher, StageHandler, StageJob
from patchpilot.domain.events import Cancelled, Failed, JSONValue, Retried, Transitioned
from patchpilot.domain.models import WorkflowStatistics, WorkflowStatus
from patchpilot.domain.states import WorkflowState, can_transition
from patchpilot.domain.workflow import Workflow
from patchpilot.errors import (
    InvalidTransition,
    NotRetryable,
    PatchPilotError,
    RetryLimitExceeded,
    WorkflowAlreadyExists,
    WorkflowNotFound,
)
from patchpilot.persistence.repositories import WorkflowRepo

WorkflowRef = Workflow | str


class WorkflowStateMachine:
    """Persisted workflow lifecycle with single-flight stage dispatch."""

    def __init__(
        self,
        repo: WorkflowRepo,
        dispatcher: Dispatcher,
        settings: WorkflowSettings | None = None,
        *,
        ticket_source: TicketSource | None = None,
        logger: Any | None = None,
    ) -> None:
        self._repo = repo
        self._dispatcher = dispatcher
        self._settings = settings or WorkflowSettings()
        self._ticket_source = ticket_source
        self._stage_handler: StageHandler | None = None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> WorkflowSettings:
        return self._settings

    def attach_stage_handler(self, handler: StageHandler) -> None:
        """Register the callable that executes the stage for a ``(workflow_id, state)``."""
        self._stage_handler = handler

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, ticket_ref: str) -> Workflow:
        """Create a workflow at INGESTED and dispatch its first stage.

        A ticket that already has an active workflow gets that workflow back unchanged. The
        active check and the insert share one transaction, so concurrent starts converge on a
        single workflow.
        """
        try:
            workflow = self._repo.create(Workflow.new(ticket_ref), exclusive=True)
        except WorkflowAlreadyExists as exc:
            self._logger.info(
                "workflow_already_active", workflow_id=exc.workflow_id, ticket_ref=ticket_ref
            )
            return self._repo.require(exc.workflow_id)
        return self._started(workflow)

    def start_workflow(self, ticket_ref: str, *, exclusive: bool = False) -> str:
        """Start automation for a ticket and return the workflow id.

        Raises:
            WorkflowAlreadyExists: ``exclusive`` is set and the ticket has an active workflow.
        """
        if not exclusive:
            return self.start(ticket_ref).id
        workflow = self._repo.create(Workflow.new(ticket_ref), exclusive=True)
        return self._started(workflow).id

    def transition(
        self,
        workflow: WorkflowRef,
        target: WorkflowState | str,
        *,
        artifacts: Mapping[str, JSONValue] | None = None,
    ) -> Workflow:
        """Move along one edge of the transition table and dispatch the next stage.

        Raises:
            InvalidTransition: ``target`` is not reachable from the current state, or the
                workflow changed concurrently (``ConcurrentModification``).
        """
        current = self._resolve(workflow)
        target_state = WorkflowState(target)
        if current.state is WorkflowState.FAILED or not can_transition(
            current.state, target_state
        ):
            self._logger.warning(
                "workflow_transition_rejected",
                workflow_id=current.id,
                from_state=current.state.value,
                to_state=target_state.value,
            )
            raise InvalidTransition(
                f"Invalid transition from {current.state.value} to {target_state.value}",
                from_state=current.state,
                to_state=target_state,
            )
        updated = self._repo.compare_and_set(
            current, Transitioned(current.state, target_state), artifacts=artifacts
        )
        self._logger.info(
            "workflow_transitioned",
            workflow_id=updated.id,
            ticket_ref=updated.ticket_ref,
            from_state=current.state.value,
            to_state=updated.state.value,
        )
        self._after_persist(updated)
        return updated

    def fail(
        self,
        workflow: WorkflowRef,
        reason: str,
        error: BaseException | None = None,
        *,
        artifacts: Mapping[str, JSONValue] | None = None,
    ) -> Workflow:
        """Force FAILED and record the cause. Terminal workflows are returned unchanged."""
        current = self._resolve(workflow)
        if current.is_terminal:
            self._logger.info(
                "workflow_fail_ignored", workflow_id=current.id, state=current.state.value
            )
            return current
        event = Failed(
            current.state,
            reason=reason or "unknown error",
            error_type=type(error).__name__ if error is not None else None,
        )
        updated = self._repo.compare_and_set(current, event, artifacts=artifacts)
        self._logger.error(
            "workflow_failed",
            workflow_id=updated.id,
            ticket_ref=updated.ticket_ref,
            from_state=current.state.value,
            reason=event.reason,
            error_type=event.error_type,
        )
        self._after_persist(updated)
        return updated

    def cancel(self, workflow: WorkflowRef) -> Workflow:
        """Force a non-terminal workflow into FAILED with a cancellation marker.

        In-flight stage jobs notice at their next persistence attempt.

        Raises:
            InvalidTransition: the workflow is already DONE or FAILED.
        """
        current = self._resolve(workflow)
        if current.is_terminal:
            raise InvalidTransition(
                f"Cannot cancel workflow in terminal state {current.state.value}",
                from_state=current.state,
                to_state=WorkflowState.FAILED,
            )
        updated = self._repo.compare_and_set(current, Cancelled(current.state))
        self._logger.info(
            "workflow_cancelled",
            workflow_id=updated.id,
            ticket_ref=updated.ticket_ref,
            from_state=current.state.value,
        )
        self._after_persist(updated)
        return updated

    def retry(self, workflow: WorkflowRef) -> Workflow:
        """Reset a FAILED workflow to INGESTED and dispatch it again.

        Raises:
            NotRetryable: the workflow is not FAILED.
            RetryLimitExceeded: ``retries`` already reached ``max_retries``.
        """
        current = self._resolve(workflow)
        if current.state is not WorkflowState.FAILED:
            raise NotRetryable(
                f"Workflow {current.id} is not retryable from state {current.state.value}"
            )
        if current.retries >= self._settings.max_retries:
            raise RetryLimitExceeded(current.id, current.retries, self._settings.max_retries)
        updated = self._repo.compare_and_set(current, Retried(current.retries + 1))
        self._logger.info(
            "workflow_retried",
            workflow_id=updated.id,
            ticket_ref=updated.ticket_ref,
            retries=updated.retries,
        )
        self._after_persist(updated)
        return updated

    def record_artifacts(
        self, workflow: WorkflowRef, artifacts: Mapping[str, JSONValue]
    ) -> Workflow:
        """Store stage outputs without changing state; nothing is dispatched."""
        return self._repo.update_artifacts(self._resolve(workflow), artifacts)

    def dispatch_next(self, workflow: Workflow) -> None:
        """Queue the stage job for ``workflow.state``."""
        if self._stage_handler is None:
            self._logger.debug("stage_dispatch_skipped", workflow_id=workflow.id)
            return
        self._dispatcher.dispatch(StageJob(workflow.id, workflow.state, self._stage_handler))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, workflow_id: str) -> Workflow | None:
        return self._repo.get(workflow_id)

    def find_by_ticket(self, ticket_ref: str) -> Workflow | None:
        return self._repo.latest_for_ticket(ticket_ref)

    def status(self, workflow: WorkflowRef) -> WorkflowStatus:
        current = self._resolve(workflow)
        return WorkflowStatus(
            workflow_id=current.id,
            ticket_ref=current.ticket_ref,
            state=current.state.value,
            retries=current.retries,
            is_complete=current.is_complete,
            is_failed=current.is_failed,
            cancelled=current.cancelled,
            duration_seconds=current.duration_seconds,
            next_possible_states=tuple(state.value for state in current.next_possible_states()),
            last_failure_reason=current.last_failure_reason,
            events=tuple(event.to_dict() for event in current.events),
            created_at=current.created_at.isoformat(),
            updated_at=current.updated_at.isoformat(),
        )

    def statistics(self) -> WorkflowStatistics:
        counts = self._repo.count_by_state()
        total = sum(counts.values())
        completed = counts[WorkflowState.DONE]
        failed = counts[WorkflowState.FAILED]
        success_rate = round(completed / total * 100, 2) if total else 0.0
        average_seconds = self._repo.average_duration_seconds(WorkflowState.DONE)
        return WorkflowStatistics(
            total=total,
            completed=completed,
            failed=failed,
            in_progress=total - completed - failed,
            success_rate=success_rate,
            average_duration_minutes=round(average_seconds / 60.0, 2),
            by_state={state.value: count for state, count in counts.items()},
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _started(self, workflow: Workflow) -> Workflow:
        self._logger.info(
            "workflow_started", workflow_id=workflow.id, ticket_ref=workflow.ticket_ref
        )
        self._after_persist(workflow)
        return workflow

    def _resolve(self, workflow: WorkflowRef) -> Workflow:
        if isinstance(workflow, Workflow):
            return workflow
        found = self._repo.get(workflow)
        if found is None:
            raise WorkflowNotFound(workflow)
        return found

    def _after_persist(self, workflow: Workflow) -> None:
        if workflow.is_terminal:
            self._notify_ticket(workflow)
            return
        self.dispatch_next(workflow)

    def _notify_ticket(self, workflow: Workflow) -> None:
        if self._ticket_source is None:
            return
        if workflow.is_complete:
            message = f"Automation completed for {workflow.ticket_ref} ({workflow.id})."
        elif workflow.cancelled:
            message = f"Automation cancelled for {workflow.ticket_ref} ({workflow.id})."
        else:
            message = (
                f"Automation failed for {workflow.ticket_ref} ({workflow.id}): "
                f"{workflow.last_failure_reason or 'unknown error'}"
            )
        try:
            self._ticket_source.comment(workflow.ticket_ref, message)
        except (PatchPilotError, OSError) as exc:
            self._logger.warning(
                "ticket_comment_failed",
                workflow_id=workflow.id,
                ticket_ref=workflow.ticket_ref,
                error=str(exc),
            )


__all__ = ["WorkflowRef", "WorkflowStateMachine"]
