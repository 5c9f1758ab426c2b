"""Utility exports for filesystem, hashing, and concurrency helpers."""

from patchpilot.utils.concurrency import BackgroundLoop, BoundedSemaphore, CancellationToken
from patchpilot.utils.fs import atomic_write, is_within, resolve_under
from patchpilot.utils.hashing import command_digest, sha256_bytes, sha256_text

__all__ = [
    "BackgroundLoop",
    "BoundedSemaphore",
    "CancellationToken",
    "atomic_write",
    "command_digest",
    "is_within",
    "resolve_under",
    "sha256_bytes",
    "sha256_text",
]
