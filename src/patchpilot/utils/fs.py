"""
patchpilot — filesystem utilities

File: src/patchpilot/utils/fs.py

Purpose
- Atomic writes for archived run logs and confinement checks for object-store keys.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Relative keys never resolve outside their root (no absolute keys, no ``..`` segments).
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path, PurePosixPath

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "is_within",
    "resolve_under",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``, creating parent directories as needed.

    The temp file lives beside the target, is fsynced, then moved over it with ``os.replace``.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if ``child`` resolves to ``parent`` or somewhere below it."""

    resolved_parent = Path(parent).resolve()
    resolved_child = Path(child).resolve()
    try:
        resolved_child.relative_to(resolved_parent)
    except ValueError:
        return False
    return True


def resolve_under(root: PathLike, key: str) -> Path:
    """Map a relative POSIX ``key`` onto ``root``.

    Raises:
        ValueError: the key is empty, absolute, contains ``.``/``..`` segments, or escapes
            ``root`` through a symlink.
    """

    if not key or "\\" in key:
        raise ValueError(f"invalid storage key: {key!r}")
    posix_key = PurePosixPath(key)
    if posix_key.is_absolute():
        raise ValueError(f"storage key must be relative: {key!r}")
    if any(part in {"", ".", ".."} for part in posix_key.parts) or key.endswith("/"):
        raise ValueError(f"storage key is not safe: {key!r}")
    base = Path(root)
    candidate = base.joinpath(*posix_key.parts)
    if not is_within(candidate, base):
        raise ValueError(f"storage key escapes root: {key!r}")
    return candidate


def _fsync_directory(path: Path) -> None:
    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
