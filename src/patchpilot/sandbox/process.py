"""Bounded subprocess execution with process-tree cleanup on every exit path."""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

import psutil
import structlog

_READ_CHUNK = 65_536
_KILL_WAIT_SECONDS = 5.0
_READER_JOIN_SECONDS = 5.0


@dataclass(frozen=True, slots=True)
class CapturedProcess:
    """Raw outcome of one bounded invocation; stream text holds at most the byte cap."""

    argv: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    stdout_size: int
    stderr_size: int
    timed_out: bool
    duration_seconds: float

    @property
    def signal(self) -> int | None:
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None


class _BoundedReader(threading.Thread):
    """Drain one pipe, keeping only the first ``limit`` bytes while counting the rest."""

    def __init__(self, stream: IO[bytes], limit: int) -> None:
        super().__init__(daemon=True)
        self._stream = stream
        self._limit = limit
        self._chunks: list[bytes] = []
        self._kept = 0
        self.total = 0

    def run(self) -> None:
        try:
            while chunk := self._stream.read(_READ_CHUNK):
                self.total += len(chunk)
                room = self._limit - self._kept
                if room > 0:
                    kept = chunk[:room]
                    self._chunks.append(kept)
                    self._kept += len(kept)
        finally:
            self._stream.close()

    def text(self) -> str:
        raw = b"".join(self._chunks)
        return raw.decode("utf-8", errors="replace").replace("\r\n", "\n")


def kill_process_tree(pid: int, *, logger: Any | None = None) -> None:
    """SIGKILL ``pid``, every descendant and its session group."""
    log = logger if logger is not None else structlog.get_logger(__name__)
    try:
        parent = psutil.Process(pid)
        victims = [*parent.children(recursive=True), parent]
    except psutil.NoSuchProcess:
        victims = []
    for proc in victims:
        with suppress(psutil.NoSuchProcess):
            proc.kill()
    if victims:
        _, alive = psutil.wait_procs(victims, timeout=_KILL_WAIT_SECONDS)
        if alive:
            log.warning("process_tree_survivors", pid=pid, survivors=[p.pid for p in alive])
    _kill_session(pid)


def _kill_session(pgid: int) -> None:
    if hasattr(os, "killpg"):
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(pgid, signal.SIGKILL)


def run_bounded(
    argv: Sequence[str],
    *,
    cwd: Path | str,
    env: Mapping[str, str] | None,
    timeout_seconds: float,
    max_output_bytes: int,
    on_timeout: Callable[[], None] | None = None,
    logger: Any | None = None,
) -> CapturedProcess:
    """Run ``argv`` to completion or until ``timeout_seconds`` elapse.

    The child runs in its own session; on timeout (or any exception while waiting) the
    whole tree is killed before this function returns.

    Raises:
        OSError: the executable could not be spawned.
    """
    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0")
    if max_output_bytes < 0:
        raise ValueError("max_output_bytes must be >= 0")
    log = logger if logger is not None else structlog.get_logger(__name__)

    started = time.monotonic()
    process = subprocess.Popen(
        list(argv),
        cwd=str(cwd),
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    assert process.stdout is not None and process.stderr is not None
    stdout_reader = _BoundedReader(process.stdout, max_output_bytes)
    stderr_reader = _BoundedReader(process.stderr, max_output_bytes)
    stdout_reader.start()
    stderr_reader.start()

    timed_out = False
    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        log.warning("process_timed_out", argv=list(argv)[:3], timeout_seconds=timeout_seconds)
        if on_timeout is not None:
            on_timeout()
    finally:
        if process.poll() is None:
            kill_process_tree(process.pid, logger=log)
            process.wait()
        _kill_session(process.pid)
        stdout_reader.join(_READER_JOIN_SECONDS)
        stderr_reader.join(_READER_JOIN_SECONDS)

    return CapturedProcess(
        argv=tuple(argv),
        returncode=process.returncode,
        stdout=stdout_reader.text(),
        stderr=stderr_reader.text(),
        stdout_size=stdout_reader.total,
        stderr_size=stderr_reader.total,
        timed_out=timed_out,
        duration_seconds=time.monotonic() - started,
    )


__all__ = ["CapturedProcess", "kill_process_tree", "run_bounded"]
