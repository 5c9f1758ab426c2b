"""Stage job dispatch.

A dispatcher receives a :class:`StageJob` from the state machine after the state that
triggered it has been persisted. :class:`AsyncDispatcher` runs jobs on a background event
loop with a short delay and a concurrency cap; :class:`SynchronousDispatcher` runs them inline
in FIFO order, which keeps tests and one-shot CLI runs deterministic.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from patchpilot.constants import DEFAULT_DISPATCH_DELAY_SECONDS
from patchpilot.domain.states import WorkflowState
from patchpilot.utils.concurrency import BackgroundLoop, BoundedSemaphore, CancellationToken

StageHandler = Callable[[str, WorkflowState], None]


@dataclass(frozen=True, slots=True)
class StageJob:
    """Run the stage for ``state`` of ``workflow_id``; the handler re-checks the state."""

    workflow_id: str
    state: WorkflowState
    handler: StageHandler

    def __call__(self) -> None:
        self.handler(self.workflow_id, self.state)


class Dispatcher(Protocol):
    def dispatch(self, job: StageJob) -> None: ...


class SynchronousDispatcher:
    """Runs jobs on the calling thread once the outermost ``dispatch`` call drains the queue.

    Jobs dispatched from inside a running job are queued, not nested, so the stack stays flat
    and each job observes the state persisted by the previous one.
    """

    def __init__(self, *, logger: Any | None = None) -> None:
        self._pending: deque[StageJob] = deque()
        self._draining = False
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self.history: list[tuple[str, WorkflowState]] = []

    def dispatch(self, job: StageJob) -> None:
        with self._lock:
            self._pending.append(job)
            self.history.append((job.workflow_id, job.state))
            if self._draining:
                return
            self._draining = True
        try:
            while True:
                with self._lock:
                    if not self._pending:
                        return
                    current = self._pending.popleft()
                self._logger.debug(
                    "stage_job_started", workflow_id=current.workflow_id, state=current.state.value
                )
                current()
        finally:
            with self._lock:
                self._draining = False
                self._pending.clear()


class AsyncDispatcher:
    """Fire-and-forget dispatch onto a background event loop.

    Each job sleeps ``delay_seconds`` first so the triggering write is committed and visible,
    then runs in a worker thread while holding one of ``concurrency`` permits.
    """

    def __init__(
        self,
        *,
        delay_seconds: float = DEFAULT_DISPATCH_DELAY_SECONDS,
        concurrency: int = 4,
        logger: Any | None = None,
    ) -> None:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        self._delay_seconds = delay_seconds
        self._semaphore = BoundedSemaphore(concurrency)
        self._token = CancellationToken()
        self._loop = BackgroundLoop(name="patchpilot-dispatch")
        self._futures: set[Future[None]] = set()
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._futures)

    def start(self) -> None:
        self._loop.start()

    def dispatch(self, job: StageJob) -> None:
        if self._token.is_cancelled:
            raise RuntimeError("dispatcher is shut down")
        self.start()
        future = self._loop.submit(self._run(job))
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        self._logger.debug(
            "stage_job_dispatched",
            workflow_id=job.workflow_id,
            state=job.state.value,
            delay_seconds=self._delay_seconds,
        )

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is pending or running; returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = set(self._futures)
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait_futures(pending, timeout=remaining)

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        if wait:
            self.wait_idle(timeout)
        self._token.cancel()
        self._loop.stop(timeout=timeout)

    async def _run(self, job: StageJob) -> None:
        await asyncio.sleep(self._delay_seconds)
        if self._token.is_cancelled:
            self._logger.info(
                "stage_job_dropped", workflow_id=job.workflow_id, state=job.state.value
            )
            return
        async with self._semaphore.permit():
            try:
                await asyncio.to_thread(job)
            except Exception:
                self._logger.exception(
                    "stage_job_crashed", workflow_id=job.workflow_id, state=job.state.value
                )
                raise

    def _forget(self, future: Future[None]) -> None:
        with self._lock:
            self._futures.discard(future)


__all__ = [
    "AsyncDispatcher",
    "Dispatcher",
    "StageHandler",
    "StageJob",
    "SynchronousDispatcher",
]
