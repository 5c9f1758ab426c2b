"""Workflow states and the allowed-edge table."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from types import MappingProxyType
from typing import Final


class WorkflowState(StrEnum):
    INGESTED = "INGESTED"
    CONTEXT_READY = "CONTEXT_READY"
    PLANNED = "PLANNED"
    IMPLEMENTING = "IMPLEMENTING"
    TESTING = "TESTING"
    REVIEWING = "REVIEWING"
    FIXING = "FIXING"
    PR_CREATED = "PR_CREATED"
    DONE = "DONE"
    FAILED = "FAILED"


INITIAL_STATE: Final[WorkflowState] = WorkflowState.INGESTED
TERMINAL_STATES: Final[frozenset[WorkflowState]] = frozenset(
    {WorkflowState.DONE, WorkflowState.FAILED}
)

# FAILED -> INGESTED is only taken by retry.
TRANSITIONS: Final[Mapping[WorkflowState, frozenset[WorkflowState]]] = MappingProxyType(
    {
        WorkflowState.INGESTED: frozenset({WorkflowState.CONTEXT_READY}),
        WorkflowState.CONTEXT_READY: frozenset({WorkflowState.PLANNED}),
        WorkflowState.PLANNED: frozenset({WorkflowState.IMPLEMENTING}),
        WorkflowState.IMPLEMENTING: frozenset({WorkflowState.TESTING}),
        WorkflowState.TESTING: frozenset({WorkflowState.REVIEWING, WorkflowState.FIXING}),
        WorkflowState.REVIEWING: frozenset({WorkflowState.FIXING, WorkflowState.PR_CREATED}),
        WorkflowState.FIXING: frozenset({WorkflowState.TESTING}),
        WorkflowState.PR_CREATED: frozenset({WorkflowState.DONE}),
        WorkflowState.DONE: frozenset(),
        WorkflowState.FAILED: frozenset({WorkflowState.INGESTED}),
    }
)


def can_transition(from_state: WorkflowState, to_state: WorkflowState) -> bool:
    """Return whether ``from_state -> to_state`` is an allowed edge."""
    return to_state in TRANSITIONS[WorkflowState(from_state)]


def next_states(state: WorkflowState) -> tuple[WorkflowState, ...]:
    """States reachable in one step, in declaration order."""
    allowed = TRANSITIONS[WorkflowState(state)]
    return tuple(candidate for candidate in WorkflowState if candidate in allowed)


def is_terminal(state: WorkflowState) -> bool:
    return WorkflowState(state) in TERMINAL_STATES


__all__ = [
    "INITIAL_STATE",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "WorkflowState",
    "can_transition",
    "is_terminal",
    "next_states",
]
