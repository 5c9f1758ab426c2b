"""SQLite state DB and workflow repository."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from patchpilot.domain import ids
from patchpilot.domain.events import Failed, Transitioned
from patchpilot.domain.states import WorkflowState
from patchpilot.domain.workflow import Workflow
from patchpilot.errors import ConcurrentModification, WorkflowAlreadyExists, WorkflowNotFound
from patchpilot.persistence import StateDB, WorkflowRepo


@pytest.fixture()
def db(tmp_path: Path) -> StateDB:
    return StateDB(tmp_path / "state" / "patchpilot.sqlite")


@pytest.fixture()
def repo(db: StateDB) -> WorkflowRepo:
    return WorkflowRepo(db)


def _advance(repo: WorkflowRepo, workflow: Workflow, target: WorkflowState) -> Workflow:
    return repo.compare_and_set(workflow, Transitioned(workflow.state, target))


def test_migrations_are_idempotent(db: StateDB) -> None:
    assert db.migrate() == 1
    assert db.migrate() == 1
    assert db.path.parent.is_dir()
    tables = {row["name"] for row in db.query_all("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"schema_versions", "workflows", "workflow_events"} <= tables
    assert db.integrity_check() == ()


def test_create_and_read_back(repo: WorkflowRepo) -> None:
    created = repo.create(Workflow.new("PROJ-1"))
    loaded = repo.require(created.id)

    assert loaded.id == created.id
    assert loaded.ticket_ref == "PROJ-1"
    assert loaded.state is WorkflowState.INGESTED
    assert loaded.version == 1
    assert loaded.created_at == created.created_at


def test_unknown_and_malformed_ids(repo: WorkflowRepo) -> None:
    assert repo.get(ids.generate_workflow_id()) is None
    with pytest.raises(WorkflowNotFound):
        repo.require(ids.generate_workflow_id())
    with pytest.raises(ValueError):
        repo.get("wf-nope")


def test_compare_and_set_appends_events(repo: WorkflowRepo) -> None:
    workflow = repo.create(Workflow.new("PROJ-2"))
    moved = _advance(repo, workflow, WorkflowState.CONTEXT_READY)
    moved = repo.compare_and_set(
        moved,
        Transitioned(moved.state, WorkflowState.PLANNED),
        artifacts={"plan": {"steps": 1}},
    )

    stored = repo.require(workflow.id)
    assert stored.state is WorkflowState.PLANNED
    assert stored.version == 3
    assert stored.artifact("plan") == {"steps": 1}
    assert repo.events(workflow.id) == moved.events
    assert [event.to_state for event in stored.events] == [  # type: ignore[union-attr]
        WorkflowState.CONTEXT_READY,
        WorkflowState.PLANNED,
    ]


def test_stale_snapshot_loses_the_race(repo: WorkflowRepo) -> None:
    workflow = repo.create(Workflow.new("PROJ-3"))
    _advance(repo, workflow, WorkflowState.CONTEXT_READY)

    with pytest.raises(ConcurrentModification, match="expected version 1, found 2"):
        repo.compare_and_set(workflow, Failed(workflow.state, "late writer"))
    with pytest.raises(ConcurrentModification):
        repo.update_artifacts(workflow, {"x": 1})
    assert len(repo.events(workflow.id)) == 1


def test_event_log_is_append_only(repo: WorkflowRepo, db: StateDB) -> None:
    workflow = repo.create(Workflow.new("PROJ-4"))
    _advance(repo, workflow, WorkflowState.CONTEXT_READY)

    with pytest.raises(sqlite3.IntegrityError, match="append-only"):
        db.execute("UPDATE workflow_events SET kind = 'failed'")
    with pytest.raises(sqlite3.IntegrityError, match="append-only"):
        db.execute("DELETE FROM workflow_events")


def test_exclusive_create_refuses_second_active_workflow(repo: WorkflowRepo) -> None:
    first = repo.create(Workflow.new("PROJ-5"), exclusive=True)
    with pytest.raises(WorkflowAlreadyExists) as excinfo:
        repo.create(Workflow.new("PROJ-5"), exclusive=True)
    assert excinfo.value.workflow_id == first.id
    assert repo.find_active_by_ticket("PROJ-5") is not None

    repo.compare_and_set(first, Failed(first.state, "gave up"))
    assert repo.find_active_by_ticket("PROJ-5") is None
    second = repo.create(Workflow.new("PROJ-5"), exclusive=True)
    assert repo.latest_for_ticket("PROJ-5").id == second.id  # type: ignore[union-attr]


def test_artifacts_are_redacted_on_write(repo: WorkflowRepo) -> None:
    workflow = repo.create(Workflow.new("PROJ-6"))
    updated = repo.update_artifacts(workflow, {"context": {"api_token": "abc", "files": 2}})

    stored = repo.require(workflow.id)
    assert stored.version == updated.version == 2
    assert stored.artifact("context") == {"api_token": "[REDACTED]", "files": 2}


def test_listing_and_statistics(repo: WorkflowRepo) -> None:
    start = datetime(2026, 5, 1, 8, 0, tzinfo=UTC)
    done = repo.create(Workflow.new("PROJ-7", now=start))
    for target in (
        WorkflowState.CONTEXT_READY,
        WorkflowState.PLANNED,
        WorkflowState.IMPLEMENTING,
        WorkflowState.TESTING,
        WorkflowState.REVIEWING,
        WorkflowState.PR_CREATED,
    ):
        done = repo.compare_and_set(done, Transitioned(done.state, target, occurred_at=start))
    repo.compare_and_set(
        done,
        Transitioned(done.state, WorkflowState.DONE, occurred_at=start + timedelta(minutes=10)),
    )
    repo.create(Workflow.new("PROJ-8"))

    counts = repo.count_by_state()
    assert counts[WorkflowState.DONE] == 1
    assert counts[WorkflowState.INGESTED] == 1
    assert counts[WorkflowState.FAILED] == 0
    assert repo.average_duration_seconds(WorkflowState.DONE) == pytest.approx(600.0, abs=0.01)
    assert repo.average_duration_seconds("FAILED") == 0.0

    assert [wf.ticket_ref for wf in repo.list(state=WorkflowState.DONE)] == ["PROJ-7"]
    assert len(repo.list()) == 2
    with pytest.raises(ValueError):
        repo.list(limit=0)


def test_backup_produces_readable_copy(repo: WorkflowRepo, db: StateDB, tmp_path: Path) -> None:
    workflow = repo.create(Workflow.new("PROJ-9"))
    copy_path = db.backup(tmp_path / "backup" / "copy.sqlite")
    restored = WorkflowRepo(StateDB(copy_path))
    assert restored.require(workflow.id).ticket_ref == "PROJ-9"
