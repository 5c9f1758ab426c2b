"""Workflow aggregate: one ticket's progress through the automation pipeline."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from patchpilot.domain import ids
from patchpilot.domain.events import (
    Cancelled,
    Failed,
    JSONValue,
    Retried,
    Transitioned,
    WorkflowEvent,
    as_json_object,
    utc_now,
)
from patchpilot.domain.states import (
    INITIAL_STATE,
    TERMINAL_STATES,
    WorkflowState,
    next_states,
)


@dataclass(frozen=True, slots=True)
class Workflow:
    """Immutable snapshot of a persisted workflow row plus its event log.

    ``version`` increments on every persisted change and is the compare-and-set token used
    by the repository.
    """

    id: str
    ticket_ref: str
    state: WorkflowState = INITIAL_STATE
    retries: int = 0
    version: int = 1
    events: tuple[WorkflowEvent, ...] = ()
    artifacts: dict[str, JSONValue] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        ids.validate_workflow_id(self.id)
        if not isinstance(self.ticket_ref, str) or not self.ticket_ref.strip():
            raise ValueError("Workflow.ticket_ref must be a non-empty string")
        object.__setattr__(self, "state", WorkflowState(self.state))
        if isinstance(self.retries, bool) or not isinstance(self.retries, int):
            raise ValueError("Workflow.retries must be an integer")
        if self.retries < 0:
            raise ValueError("Workflow.retries must be >= 0")
        if self.version < 1:
            raise ValueError("Workflow.version must be >= 1")
        object.__setattr__(self, "events", tuple(self.events))
        object.__setattr__(self, "artifacts", as_json_object(self.artifacts, "Workflow.artifacts"))
        for name in ("created_at", "updated_at"):
            value = getattr(self, name)
            if value.tzinfo is None:
                raise ValueError(f"Workflow.{name} must be timezone-aware")
            object.__setattr__(self, name, value.astimezone(UTC))

    @classmethod
    def new(cls, ticket_ref: str, *, now: datetime | None = None) -> Workflow:
        timestamp = now or utc_now()
        return cls(
            id=ids.generate_workflow_id(),
            ticket_ref=ticket_ref.strip(),
            created_at=timestamp,
            updated_at=timestamp,
        )

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def is_complete(self) -> bool:
        return self.state is WorkflowState.DONE

    @property
    def is_failed(self) -> bool:
        return self.state is WorkflowState.FAILED

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def cancelled(self) -> bool:
        return self.is_failed and bool(self.events) and isinstance(self.events[-1], Cancelled)

    @property
    def fix_iterations(self) -> int:
        """Entries into FIXING since the most recent retry."""
        count = 0
        for event in reversed(self.events):
            if isinstance(event, Retried):
                break
            if isinstance(event, Transitioned) and event.to_state is WorkflowState.FIXING:
                count += 1
        return count

    @property
    def last_failure_reason(self) -> str | None:
        for event in reversed(self.events):
            if isinstance(event, Failed):
                return event.reason
            if isinstance(event, Cancelled):
                return "cancelled"
        return None

    @property
    def duration_seconds(self) -> float:
        """Elapsed time; terminal workflows stop the clock at their last transition."""
        end = self.updated_at if self.is_terminal else utc_now()
        return max(0.0, (end - self.created_at).total_seconds())

    def next_possible_states(self) -> tuple[WorkflowState, ...]:
        return next_states(self.state)

    def artifact(self, key: str) -> Any:
        return self.artifacts.get(key)

    # ------------------------------------------------------------------
    # Successor snapshots (persisted only through the repository CAS)
    # ------------------------------------------------------------------

    def apply(
        self,
        event: WorkflowEvent,
        *,
        artifacts: Mapping[str, JSONValue] | None = None,
    ) -> Workflow:
        """Return the successor snapshot after ``event``; ``version`` is bumped."""
        merged = dict(self.artifacts)
        if artifacts:
            merged.update(artifacts)
        retries = event.retry_count if isinstance(event, Retried) else self.retries
        return replace(
            self,
            state=event.resulting_state,
            retries=retries,
            version=self.version + 1,
            events=(*self.events, event),
            artifacts=merged,
            updated_at=event.occurred_at,
        )

    def with_artifacts(self, artifacts: Mapping[str, JSONValue]) -> Workflow:
        merged = dict(self.artifacts)
        merged.update(artifacts)
        return replace(self, version=self.version + 1, artifacts=merged, updated_at=utc_now())


__all__ = ["Workflow"]
