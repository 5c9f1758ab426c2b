"""
patchpilot — error taxonomy.

File: src/patchpilot/errors.py

Purpose
- One exception family for guard, sandbox, policy, schema and workflow failures.

Functional requirements
- Guard violations and invalid transitions are raised before any process spawns or any
  state mutates.
- Compliance outcomes and sandbox exit codes are data, not exceptions; only the types
  below are ever raised across module boundaries.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from patchpilot.domain.models import ProcessResult, ValidationResult
    from patchpilot.domain.states import WorkflowState


class PatchPilotError(RuntimeError):
    """Base class for all patchpilot errors."""


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class GuardViolation(PatchPilotError, PermissionError):
    """Raised when a command or path is refused by the command guard."""


class CommandBlocked(GuardViolation):
    """Command is too long, matches the deny-list, or is rate limited."""

    def __init__(self, message: str, *, command: str | None = None) -> None:
        super().__init__(message)
        self.command = command


class PathViolation(GuardViolation):
    """Command references a path outside the allowed roots."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


# ---------------------------------------------------------------------------
# Schema / validation
# ---------------------------------------------------------------------------


class SchemaNotFound(PatchPilotError, LookupError):
    """Raised when a named schema is not registered."""

    def __init__(self, schema_name: str) -> None:
        super().__init__(f"Schema not found: {schema_name}")
        self.schema_name = schema_name


class ValidationFailed(PatchPilotError, ValueError):
    """Raised when a plan or patch payload fails structural or business validation."""

    def __init__(self, message: str, result: ValidationResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class SecurityPolicyError(PatchPilotError, ValueError):
    """Raised when the security policy YAML file is unreadable or malformed."""


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


class SandboxTimeout(PatchPilotError, TimeoutError):
    """Raised by callers that escalate a timed-out ``ProcessResult``."""

    def __init__(self, message: str, result: ProcessResult | None = None) -> None:
        super().__init__(message)
        self.result = result


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class WorkflowError(PatchPilotError):
    """Base class for workflow state machine errors."""


class WorkflowNotFound(WorkflowError, LookupError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowAlreadyExists(WorkflowError):
    def __init__(self, ticket_ref: str, workflow_id: str) -> None:
        super().__init__(f"ticket {ticket_ref} already has active workflow {workflow_id}")
        self.ticket_ref = ticket_ref
        self.workflow_id = workflow_id


class InvalidTransition(WorkflowError):
    """Target state is not reachable from the current state."""

    def __init__(
        self,
        message: str,
        *,
        from_state: WorkflowState | None = None,
        to_state: WorkflowState | None = None,
    ) -> None:
        super().__init__(message)
        self.from_state = from_state
        self.to_state = to_state


class ConcurrentModification(InvalidTransition):
    """Compare-and-set write lost against a concurrent writer."""


class NotRetryable(WorkflowError):
    """Retry requested for a workflow that is not in FAILED."""


class RetryLimitExceeded(WorkflowError):
    def __init__(self, workflow_id: str, retries: int, max_retries: int) -> None:
        super().__init__(
            f"workflow {workflow_id} exceeded retry limit ({retries}/{max_retries})"
        )
        self.workflow_id = workflow_id
        self.retries = retries
        self.max_retries = max_retries


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class StageExecutionFailed(PatchPilotError):
    """A stage collaborator failed; the stage runner records it and fails the workflow."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage} stage failed: {message}")
        self.stage = stage
        self.reason = message


class ServiceUnavailable(StageExecutionFailed):
    """Collaborator is temporarily unreachable; eligible for bounded retry."""


__all__ = [
    "CommandBlocked",
    "ConcurrentModification",
    "GuardViolation",
    "InvalidTransition",
    "NotRetryable",
    "PatchPilotError",
    "PathViolation",
    "RetryLimitExceeded",
    "SandboxTimeout",
    "SchemaNotFound",
    "SecurityPolicyError",
    "ServiceUnavailable",
    "StageExecutionFailed",
    "ValidationFailed",
    "WorkflowAlreadyExists",
    "WorkflowError",
    "WorkflowNotFound",
]
