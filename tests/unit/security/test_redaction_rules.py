"""Output redaction and bounding."""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from patchpilot.constants import REDACTION_MARKER
from patchpilot.security import (
    is_sensitive_key,
    redact_structure,
    redact_text,
    sanitize_output,
    truncation_marker,
)


def test_credential_shapes_are_redacted() -> None:
    assert redact_text("api_key=abc123 ok") == f"{REDACTION_MARKER} ok"
    assert redact_text("password: hunter2") == REDACTION_MARKER
    assert redact_text("Authorization: Bearer abc.def") == f"Authorization: {REDACTION_MARKER}"
    assert redact_text("SECRET = 'xyz'") == REDACTION_MARKER
    assert redact_text("nothing to see") == "nothing to see"


def test_sanitize_truncates_with_marker() -> None:
    result = sanitize_output("x" * 100, max_size=10)
    assert result.truncated
    assert result.original_size == 100
    assert result.output == "x" * 10 + truncation_marker(100, 10)
    assert "OUTPUT TRUNCATED" in result.output


def test_oversized_output_is_flagged_even_when_redaction_shrinks_it() -> None:
    result = sanitize_output("token=" + "a" * 50, max_size=20)
    assert result.original_size == 56
    assert result.truncated
    assert result.output == REDACTION_MARKER + truncation_marker(56, 20)


def test_sanitize_small_output_untouched() -> None:
    result = sanitize_output("all good", max_size=64)
    assert not result.truncated
    assert result.output == "all good"
    assert result.sanitized


@given(st.text(max_size=200), st.integers(min_value=0, max_value=50))
def test_sanitized_output_is_bounded(text: str, max_size: int) -> None:
    result = sanitize_output(text, max_size=max_size)
    assert len(result.output) <= max_size + len(truncation_marker(len(text), max_size))
    if not result.truncated:
        assert len(result.output) <= max_size


def test_sensitive_key_detection() -> None:
    assert is_sensitive_key("apiKey")
    assert is_sensitive_key("GITHUB_TOKEN")
    assert is_sensitive_key("db-password")
    assert not is_sensitive_key("tokens_used")
    assert not is_sensitive_key("")


def test_structures_are_redacted_by_key_and_content() -> None:
    redacted = redact_structure(
        {
            "password": "x",
            "nested": [{"clientSecret": 1}, "token=abc"],
            "pair": ("ok", "api_key=1"),
            "count": 3,
        }
    )
    assert redacted == {
        "password": REDACTION_MARKER,
        "nested": [{"clientSecret": REDACTION_MARKER}, REDACTION_MARKER],
        "pair": ("ok", REDACTION_MARKER),
        "count": 3,
    }
