"""
patchpilot — hashing utilities

File: src/patchpilot/utils/hashing.py

Purpose
- Deterministic digests for rate-limit keys, archived artifacts and migration checksums.

Non-functional requirements
- Standard library only.
"""

from __future__ import annotations

import hashlib

__all__ = [
    "command_digest",
    "sha256_bytes",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def command_digest(command: str, *, length: int = 8) -> str:
    """Short MD5 prefix of ``command``; used only as a bucketing key, never for integrity."""

    if length <= 0 or length > 32:
        raise ValueError("length must be in [1, 32]")
    return hashlib.md5(command.encode("utf-8"), usedforsecurity=False).hexdigest()[:length]
