"""
patchpilot — domain layer

File: src/patchpilot/domain/__init__.py

Purpose
- Domain types shared across the guard, sandbox, policy and control planes: Workflow, workflow
  events, compliance/validation results, process results.

Functional requirements
- Domain objects are serializable and free of IO side effects.
"""

from patchpilot.domain.events import (
    Cancelled,
    Failed,
    Retried,
    Transitioned,
    WorkflowEvent,
    WorkflowEventKind,
    event_from_dict,
)
from patchpilot.domain.models import (
    CheckRun,
    CommandValidation,
    PatchSummaryJson,
    PlanJson,
    PlanStep,
    PolicyCheckResult,
    ProcessResult,
    RepoProfile,
    ReviewResult,
    ReviewStatus,
    RiskLevel,
    SanitizedOutput,
    ValidationResult,
    WorkflowStatistics,
    WorkflowStatus,
)
from patchpilot.domain.states import (
    INITIAL_STATE,
    TERMINAL_STATES,
    TRANSITIONS,
    WorkflowState,
    can_transition,
    next_states,
)
from patchpilot.domain.workflow import Workflow

__all__ = [
    "INITIAL_STATE",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "Cancelled",
    "CheckRun",
    "CommandValidation",
    "Failed",
    "PatchSummaryJson",
    "PlanJson",
    "PlanStep",
    "PolicyCheckResult",
    "ProcessResult",
    "RepoProfile",
    "Retried",
    "ReviewResult",
    "ReviewStatus",
    "RiskLevel",
    "SanitizedOutput",
    "Transitioned",
    "ValidationResult",
    "Workflow",
    "WorkflowEvent",
    "WorkflowEventKind",
    "WorkflowState",
    "WorkflowStatistics",
    "WorkflowStatus",
    "can_transition",
    "event_from_dict",
    "next_states",
]
