"""Object stores keyed by relative POSIX paths (``logs/runs/<run_id>/stdout.log``)."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import structlog

from patchpilot.utils.fs import atomic_write, resolve_under
from patchpilot.utils.hashing import sha256_bytes


class LocalObjectStore:
    """Filesystem-backed store rooted at ``root``; ``put`` returns the absolute file path."""

    def __init__(self, root: str | Path, *, logger: Any | None = None) -> None:
        self._root = Path(root).expanduser()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def root(self) -> Path:
        return self._root

    def put(self, path: str, data: bytes) -> str:
        self._root.mkdir(parents=True, exist_ok=True)
        target = resolve_under(self._root, path)
        atomic_write(target, data)
        self._logger.debug(
            "object_stored", key=path, size=len(data), sha256=sha256_bytes(data)
        )
        return str(target)

    def get(self, path: str) -> bytes:
        target = resolve_under(self._root, path)
        if not target.is_file():
            raise FileNotFoundError(f"object not found: {path}")
        return target.read_bytes()

    def exists(self, path: str) -> bool:
        return resolve_under(self._root, path).is_file()


class InMemoryObjectStore:
    """Dictionary-backed store; ``put`` returns ``memory://<key>``."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, path: str, data: bytes) -> str:
        _validate_key(path)
        with self._lock:
            self._objects[path] = bytes(data)
        return f"memory://{path}"

    def get(self, path: str) -> bytes:
        with self._lock:
            try:
                return self._objects[path]
            except KeyError:
                raise FileNotFoundError(f"object not found: {path}") from None

    def exists(self, path: str) -> bool:
        with self._lock:
            return path in self._objects

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._objects)


def _validate_key(path: str) -> None:
    if not path or path.startswith("/") or ".." in path.split("/"):
        raise ValueError(f"storage key is not safe: {path!r}")


__all__ = ["InMemoryObjectStore", "LocalObjectStore"]
