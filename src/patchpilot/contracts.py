"""
patchpilot — collaborator contracts.

File: src/patchpilot/contracts.py

Purpose
- Narrow interfaces for the external systems the core drives: ticket tracker, code host,
  AI stage executors, object storage and configuration.

Functional requirements
- Implementations live outside the core; they signal failure by raising
  ``StageExecutionFailed`` (or ``ServiceUnavailable`` for transient outages).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from patchpilot.config.settings import (
        GuardSettings,
        PolicySettings,
        SandboxSettings,
        WorkflowSettings,
    )
    from patchpilot.domain.models import CheckRun, ReviewResult


@runtime_checkable
class TicketSource(Protocol):
    """Ticket tracker integration."""

    def fetch(self, ticket_ref: str) -> Mapping[str, Any]: ...

    def comment(self, ticket_ref: str, text: str) -> None: ...

    def transition_status(self, ticket_ref: str, status: str) -> None: ...


@runtime_checkable
class CodeHost(Protocol):
    """Repository hosting integration used by the PR stage."""

    def clone(self, ticket_ref: str, destination: Path) -> Path: ...

    def create_branch(self, workspace: Path, branch: str) -> None: ...

    def commit_all(self, workspace: Path, message: str) -> str: ...

    def push(self, workspace: Path, branch: str) -> None: ...

    def open_pr(self, workspace: Path, *, branch: str, title: str, body: str) -> str: ...


class ContextBuilder(Protocol):
    """Builds the repository context bundle (workspace path and repo profile) for a ticket."""

    def build_context(self, ticket: Mapping[str, Any]) -> Mapping[str, Any]: ...


class Planner(Protocol):
    def plan(
        self, ticket: Mapping[str, Any], context: Mapping[str, Any]
    ) -> Mapping[str, Any]: ...


class Implementer(Protocol):
    """Produces a patch summary for a plan, or a follow-up patch for failed checks/review."""

    def implement(
        self, plan: Mapping[str, Any], context: Mapping[str, Any]
    ) -> Mapping[str, Any]: ...

    def fix(
        self,
        patch: Mapping[str, Any],
        feedback: Mapping[str, Any],
        context: Mapping[str, Any],
    ) -> Mapping[str, Any]: ...


class Reviewer(Protocol):
    def review(
        self,
        patch: Mapping[str, Any],
        check_runs: Sequence[CheckRun],
        policy_review: ReviewResult,
    ) -> ReviewResult: ...


@runtime_checkable
class ObjectStore(Protocol):
    """Durable byte storage keyed by relative path."""

    def put(self, path: str, data: bytes) -> str: ...

    def get(self, path: str) -> bytes: ...

    def exists(self, path: str) -> bool: ...


class ConfigProvider(Protocol):
    """Supplies every threshold, weight table and limit referenced by the core."""

    @property
    def guard(self) -> GuardSettings: ...

    @property
    def sandbox(self) -> SandboxSettings: ...

    @property
    def policies(self) -> PolicySettings: ...

    @property
    def workflow(self) -> WorkflowSettings: ...


__all__ = [
    "CodeHost",
    "ConfigProvider",
    "ContextBuilder",
    "Implementer",
    "ObjectStore",
    "Planner",
    "Reviewer",
    "TicketSource",
]
