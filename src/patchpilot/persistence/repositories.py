"""
patchpilot — workflow repository

File: src/patchpilot/persistence/repositories.py

Purpose
- Read and write :class:`~patchpilot.domain.workflow.Workflow` snapshots and their event log.

Functional requirements
- Every state change is a compare-and-set on ``workflows.version`` plus an event append, in one
  transaction. A lost race raises :class:`~patchpilot.errors.ConcurrentModification`.
- ``workflow_events`` rows are only ever inserted.

Non-functional requirements
- Artifacts are stored with sensitive keys redacted.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, cast

from patchpilot.domain import ids
from patchpilot.domain.events import (
    JSONValue,
    WorkflowEvent,
    as_json_object,
    event_from_json,
    event_to_json,
)
from patchpilot.domain.states import TERMINAL_STATES, WorkflowState
from patchpilot.domain.workflow import Workflow
from patchpilot.errors import (
    ConcurrentModification,
    WorkflowAlreadyExists,
    WorkflowNotFound,
)
from patchpilot.persistence.state_db import RowValue, SQLParams, StateDB, canonical_json
from patchpilot.security.redaction import redact_structure

_MAX_PAGE_SIZE: Final[int] = 1_000

_TERMINAL_STATE_VALUES: Final[tuple[str, ...]] = tuple(
    sorted(state.value for state in TERMINAL_STATES)
)

_WORKFLOW_COLUMNS: Final[str] = (
    "id, ticket_ref, state, retries, version, artifacts_json, created_at, updated_at"
)


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class WorkflowRepo(_BaseRepo):
    """Repository for workflow rows and their append-only event log."""

    def create(self, workflow: Workflow, *, exclusive: bool = False) -> Workflow:
        """Insert a new workflow.

        With ``exclusive`` the insert is refused when the ticket already has a non-terminal
        workflow; the check and the insert share one ``BEGIN IMMEDIATE`` transaction.
        """
        sanitized = _sanitize_workflow(workflow)
        with self._db.transaction() as conn:
            if exclusive:
                active = self._find_active(sanitized.ticket_ref, conn=conn)
                if active is not None:
                    raise WorkflowAlreadyExists(sanitized.ticket_ref, active.id)
            try:
                self._db.execute(
                    f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        sanitized.id,
                        sanitized.ticket_ref,
                        sanitized.state.value,
                        sanitized.retries,
                        sanitized.version,
                        canonical_json(sanitized.artifacts),
                        _iso8601z(sanitized.created_at),
                        _iso8601z(sanitized.updated_at),
                    ),
                    conn=conn,
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"workflow already stored: {sanitized.id}") from exc
            self._append_events(conn, sanitized.id, sanitized.events, start_seq=1)
        return sanitized

    def get(self, workflow_id: str) -> Workflow | None:
        ids.validate_workflow_id(workflow_id)
        with self._db.connection() as conn:
            row = self._db.query_one(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = ?",
                (workflow_id,),
                conn=conn,
            )
            if row is None:
                return None
            return self._hydrate(row, conn=conn)

    def require(self, workflow_id: str) -> Workflow:
        workflow = self.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    def find_active_by_ticket(self, ticket_ref: str) -> Workflow | None:
        with self._db.connection() as conn:
            return self._find_active(ticket_ref, conn=conn)

    def latest_for_ticket(self, ticket_ref: str) -> Workflow | None:
        with self._db.connection() as conn:
            row = self._db.query_one(
                f"""
                SELECT {_WORKFLOW_COLUMNS} FROM workflows
                WHERE ticket_ref = ?
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (ticket_ref,),
                conn=conn,
            )
            return None if row is None else self._hydrate(row, conn=conn)

    def list(
        self,
        *,
        state: WorkflowState | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Workflow]:
        self._validate_page(limit, offset)
        sql = f"SELECT {_WORKFLOW_COLUMNS} FROM workflows"
        params: list[object] = []
        if state is not None:
            sql += " WHERE state = ?"
            params.append(WorkflowState(state).value)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        with self._db.connection() as conn:
            rows = self._db.query_all(sql, cast("SQLParams", tuple(params)), conn=conn)
            return [self._hydrate(row, conn=conn) for row in rows]

    def count_by_state(self) -> dict[WorkflowState, int]:
        rows = self._db.query_all(
            "SELECT state, COUNT(*) AS total FROM workflows GROUP BY state ORDER BY state"
        )
        counts = {state: 0 for state in WorkflowState}
        for row in rows:
            counts[WorkflowState(_row_text(row, "state", "workflows.state"))] = int(
                cast("int", row["total"])
            )
        return counts

    def average_duration_seconds(self, state: WorkflowState | str) -> float:
        """Mean of ``updated_at - created_at`` over workflows currently in ``state``."""
        row = self._db.query_one(
            """
            SELECT AVG((julianday(updated_at) - julianday(created_at)) * 86400.0) AS seconds
            FROM workflows WHERE state = ?
            """,
            (WorkflowState(state).value,),
        )
        value = None if row is None else row["seconds"]
        return float(value) if isinstance(value, (int, float)) else 0.0

    def compare_and_set(
        self,
        workflow: Workflow,
        event: WorkflowEvent,
        *,
        artifacts: Mapping[str, JSONValue] | None = None,
    ) -> Workflow:
        """Persist ``workflow.apply(event)`` if nobody wrote since ``workflow`` was read.

        Raises:
            ConcurrentModification: the stored version no longer matches ``workflow.version``.
            WorkflowNotFound: the row does not exist.
        """
        successor = _sanitize_workflow(workflow.apply(event, artifacts=artifacts))
        with self._db.transaction() as conn:
            self._swap(conn, expected=workflow, successor=successor)
            self._append_events(conn, successor.id, (event,), start_seq=len(workflow.events) + 1)
        return successor

    def update_artifacts(
        self, workflow: Workflow, artifacts: Mapping[str, JSONValue]
    ) -> Workflow:
        """Merge stage outputs into ``workflow.artifacts`` under the same version check."""
        successor = _sanitize_workflow(workflow.with_artifacts(artifacts))
        with self._db.transaction() as conn:
            self._swap(conn, expected=workflow, successor=successor)
        return successor

    def events(self, workflow_id: str) -> tuple[WorkflowEvent, ...]:
        ids.validate_workflow_id(workflow_id)
        with self._db.connection() as conn:
            return self._load_events(workflow_id, conn=conn)

    def _swap(self, conn: sqlite3.Connection, *, expected: Workflow, successor: Workflow) -> None:
        updated = self._db.execute(
            """
            UPDATE workflows
            SET state = ?, retries = ?, version = ?, artifacts_json = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                successor.state.value,
                successor.retries,
                successor.version,
                canonical_json(successor.artifacts),
                _iso8601z(successor.updated_at),
                expected.id,
                expected.version,
            ),
            conn=conn,
        )
        if updated == 1:
            return
        current = self._db.query_one(
            "SELECT state, version FROM workflows WHERE id = ?", (expected.id,), conn=conn
        )
        if current is None:
            raise WorkflowNotFound(expected.id)
        raise ConcurrentModification(
            f"workflow {expected.id} changed concurrently "
            f"(expected version {expected.version}, found {current['version']})",
            from_state=expected.state,
            to_state=successor.state,
        )

    def _append_events(
        self,
        conn: sqlite3.Connection,
        workflow_id: str,
        events: tuple[WorkflowEvent, ...],
        *,
        start_seq: int,
    ) -> None:
        for offset, event in enumerate(events):
            self._db.execute(
                """
                INSERT INTO workflow_events (workflow_id, seq, kind, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    workflow_id,
                    start_seq + offset,
                    event.kind.value,
                    event_to_json(event),
                    _iso8601z(event.occurred_at),
                ),
                conn=conn,
            )

    def _find_active(self, ticket_ref: str, *, conn: sqlite3.Connection) -> Workflow | None:
        placeholders = ", ".join("?" for _ in _TERMINAL_STATE_VALUES)
        row = self._db.query_one(
            f"""
            SELECT {_WORKFLOW_COLUMNS} FROM workflows
            WHERE ticket_ref = ? AND state NOT IN ({placeholders})
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (ticket_ref.strip(), *_TERMINAL_STATE_VALUES),
            conn=conn,
        )
        return None if row is None else self._hydrate(row, conn=conn)

    def _load_events(
        self, workflow_id: str, *, conn: sqlite3.Connection
    ) -> tuple[WorkflowEvent, ...]:
        rows = self._db.query_all(
            "SELECT payload_json FROM workflow_events WHERE workflow_id = ? ORDER BY seq",
            (workflow_id,),
            conn=conn,
        )
        return tuple(
            event_from_json(_row_text(row, "payload_json", "workflow_events.payload_json"))
            for row in rows
        )

    def _hydrate(self, row: Mapping[str, RowValue], *, conn: sqlite3.Connection) -> Workflow:
        workflow_id = _row_text(row, "id", "workflows.id")
        return Workflow(
            id=workflow_id,
            ticket_ref=_row_text(row, "ticket_ref", "workflows.ticket_ref"),
            state=WorkflowState(_row_text(row, "state", "workflows.state")),
            retries=int(cast("int", row["retries"])),
            version=int(cast("int", row["version"])),
            events=self._load_events(workflow_id, conn=conn),
            artifacts=_load_json_object(
                _row_text(row, "artifacts_json", "workflows.artifacts_json"),
                "workflows.artifacts_json",
            ),
            created_at=_parse_iso8601(_row_text(row, "created_at", "workflows.created_at")),
            updated_at=_parse_iso8601(_row_text(row, "updated_at", "workflows.updated_at")),
        )


def _sanitize_workflow(workflow: Workflow) -> Workflow:
    redacted = as_json_object(redact_structure(workflow.artifacts), "Workflow.artifacts")
    if redacted == workflow.artifacts:
        return workflow
    return Workflow(
        id=workflow.id,
        ticket_ref=workflow.ticket_ref,
        state=workflow.state,
        retries=workflow.retries,
        version=workflow.version,
        events=workflow.events,
        artifacts=redacted,
        created_at=workflow.created_at,
        updated_at=workflow.updated_at,
    )


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text value")
    return value


def _load_json_object(payload: str, path: str) -> dict[str, JSONValue]:
    try:
        loaded = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path}: invalid JSON ({exc})") from exc
    return as_json_object(loaded, path)


def _parse_iso8601(value: str) -> datetime:
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp must be timezone-aware: {value!r}")
    return parsed.astimezone(UTC)


def _iso8601z(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = ["WorkflowRepo"]
