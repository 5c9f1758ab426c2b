"""Dispatcher ordering and background execution."""

from __future__ import annotations

import threading

import pytest

from patchpilot.control_plane.dispatcher import AsyncDispatcher, StageJob, SynchronousDispatcher
from patchpilot.domain.states import WorkflowState


def test_synchronous_dispatcher_runs_nested_jobs_in_fifo_order() -> None:
    dispatcher = SynchronousDispatcher()
    order: list[str] = []

    def handler(workflow_id: str, state: WorkflowState) -> None:
        order.append(f"start:{workflow_id}")
        if workflow_id == "a":
            dispatcher.dispatch(StageJob("b", WorkflowState.PLANNED, handler))
            dispatcher.dispatch(StageJob("c", WorkflowState.PLANNED, handler))
        order.append(f"end:{workflow_id}")

    dispatcher.dispatch(StageJob("a", WorkflowState.INGESTED, handler))

    assert order == ["start:a", "end:a", "start:b", "end:b", "start:c", "end:c"]
    assert dispatcher.history == [
        ("a", WorkflowState.INGESTED),
        ("b", WorkflowState.PLANNED),
        ("c", WorkflowState.PLANNED),
    ]


def test_synchronous_dispatcher_recovers_after_a_crashing_job() -> None:
    dispatcher = SynchronousDispatcher()

    def boom(workflow_id: str, state: WorkflowState) -> None:
        raise RuntimeError("stage crashed")

    with pytest.raises(RuntimeError, match="stage crashed"):
        dispatcher.dispatch(StageJob("a", WorkflowState.INGESTED, boom))

    seen: list[str] = []
    dispatcher.dispatch(StageJob("b", WorkflowState.INGESTED, lambda wid, _: seen.append(wid)))
    assert seen == ["b"]


def test_async_dispatcher_runs_jobs_off_thread() -> None:
    dispatcher = AsyncDispatcher(delay_seconds=0, concurrency=2)
    seen: list[tuple[str, WorkflowState]] = []
    threads: set[int] = set()
    lock = threading.Lock()

    def handler(workflow_id: str, state: WorkflowState) -> None:
        with lock:
            seen.append((workflow_id, state))
            threads.add(threading.get_ident())

    try:
        for index in range(5):
            dispatcher.dispatch(StageJob(f"wf-{index}", WorkflowState.TESTING, handler))
        assert dispatcher.wait_idle(timeout=5)
        assert dispatcher.in_flight == 0
    finally:
        dispatcher.shutdown(timeout=5)

    assert sorted(workflow_id for workflow_id, _ in seen) == [f"wf-{i}" for i in range(5)]
    assert threading.get_ident() not in threads


def test_async_dispatcher_refuses_work_after_shutdown() -> None:
    dispatcher = AsyncDispatcher(delay_seconds=0)
    dispatcher.start()
    dispatcher.shutdown(timeout=5)
    with pytest.raises(RuntimeError, match="shut down"):
        dispatcher.dispatch(StageJob("x", WorkflowState.INGESTED, lambda wid, state: None))


def test_async_dispatcher_rejects_negative_delay() -> None:
    with pytest.raises(ValueError):
        AsyncDispatcher(delay_seconds=-1)
