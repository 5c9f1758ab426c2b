"""
patchpilot — public security utilities

Purpose
- Command validation and output/secret redaction shared by the sandbox, config and logging
  layers.

Functional requirements
- Must provide consistent redaction utilities.
- Must fail closed for critical safety checks.
"""

from patchpilot.security.redaction import (
    SENSITIVE_KEY_DENYLIST,
    is_sensitive_key,
    redact_structure,
    redact_text,
    sanitize_output,
    truncation_marker,
)

__all__ = [
    "SENSITIVE_KEY_DENYLIST",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
    "sanitize_output",
    "truncation_marker",
]
