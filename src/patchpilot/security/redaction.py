"""
patchpilot — security redaction utilities

File: src/patchpilot/security/redaction.py

Purpose
- Redaction rules for sandbox output, logs and configuration dumps.

Functional requirements
- Credential-shaped substrings (api_key=, token=, password=, secret=, Bearer <token>) in
  command output are replaced with ``[REDACTED]``.
- Output is bounded: text beyond ``max_size`` characters is dropped and an explicit marker is
  appended, so ``len(output) <= max_size + len(marker)``.
- Structured values (log event dicts, effective config) are redacted by key name.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final, TypeAlias

from patchpilot.constants import MAX_OUTPUT_SIZE, REDACTION_MARKER
from patchpilot.domain.models import SanitizedOutput

KeyPath: TypeAlias = tuple[str, ...]

SENSITIVE_KEY_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth_token",
        "authorization",
        "client_secret",
        "credentials",
        "password",
        "passwd",
        "private_key",
        "refresh_token",
        "secret",
        "secret_key",
        "token",
    }
)

_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_access_token",
    "_auth_token",
    "_password",
    "_secret",
    "_token",
)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]


_OUTPUT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule("api_key", re.compile(r"""api[_-]?key\s*[:=]\s*["']?[\w\-]+["']?""", re.I)),
    _TextRule("token", re.compile(r"""token\s*[:=]\s*["']?[\w\-]+["']?""", re.I)),
    _TextRule("password", re.compile(r"""password\s*[:=]\s*["']?[^"'\s]+["']?""", re.I)),
    _TextRule("secret", re.compile(r"""secret\s*[:=]\s*["']?[\w\-]+["']?""", re.I)),
    _TextRule("bearer", re.compile(r"bearer\s+[\w\-.]+", re.I)),
)


def truncation_marker(original_size: int, max_size: int) -> str:
    return f"\n\n[OUTPUT TRUNCATED - Original size: {original_size} bytes, limit: {max_size} bytes]"


def redact_text(text: str, *, replacement: str = REDACTION_MARKER) -> str:
    """Replace credential-shaped substrings. Idempotent for stable inputs."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")
    redacted = text
    for rule in _OUTPUT_RULES:
        redacted = rule.pattern.sub(replacement, redacted)
    return redacted


def sanitize_output(text: str, max_size: int = MAX_OUTPUT_SIZE) -> SanitizedOutput:
    """Redact then bound ``text`` to ``max_size`` characters plus a truncation marker.

    ``truncated`` is set whenever the raw text exceeded ``max_size``, even if redaction
    alone brought it under the cap.
    """

    if max_size < 0:
        raise ValueError("max_size must be >= 0")
    original_size = len(text)
    output = redact_text(text)
    truncated = original_size > max_size or len(output) > max_size
    if truncated:
        output = output[:max_size] + truncation_marker(original_size, max_size)
    return SanitizedOutput(output=output, truncated=truncated, original_size=original_size)


def is_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if not normalized:
        return False
    if normalized in SENSITIVE_KEY_DENYLIST:
        return True
    return any(normalized.endswith(suffix) for suffix in _SENSITIVE_KEY_SUFFIXES)


def redact_structure(value: object, *, replacement: str = REDACTION_MARKER) -> object:
    """Return a deep-redacted copy: sensitive keys are masked and strings are text-redacted."""

    return _redact_structure(value, key_path=(), replacement=replacement)


def _redact_structure(value: object, *, key_path: KeyPath, replacement: str) -> object:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_text(value, replacement=replacement)
    if isinstance(value, Mapping):
        out: dict[object, object] = {}
        for key, item in value.items():
            if isinstance(key, str) and is_sensitive_key(key):
                out[key] = replacement
            else:
                out[key] = _redact_structure(
                    item, key_path=(*key_path, str(key)), replacement=replacement
                )
        return out
    if isinstance(value, (list, tuple)):
        items = [
            _redact_structure(item, key_path=(*key_path, f"[{index}]"), replacement=replacement)
            for index, item in enumerate(value)
        ]
        return items if isinstance(value, list) else tuple(items)
    return value


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


__all__ = [
    "SENSITIVE_KEY_DENYLIST",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
    "sanitize_output",
    "truncation_marker",
]
