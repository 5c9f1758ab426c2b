"""JSON-lines logging: redaction, correlation fields and structlog routing."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from uuid import uuid4

import pytest
import structlog

from patchpilot.config.settings import ObservabilitySettings
from patchpilot.constants import REDACTION_MARKER
from patchpilot.observability.logging import (
    LoggingConfig,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_stdlib_records_are_redacted_json_lines(tmp_path: Path) -> None:
    logger_name = f"patchpilot-tests-{uuid4().hex}"
    handle = setup_structured_logging(
        LoggingConfig(base_log_dir=tmp_path, logger_name=logger_name, log_to_stream=False)
    )

    with correlation_scope(workflow_id="wf-1", run_id="run-1"):
        logging.getLogger(logger_name).info(
            "pushing with token=abc123",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )
    shutdown_logging(handle)

    [record] = _read_json_lines(handle.log_path)
    assert record["level"] == "INFO"
    assert "abc123" not in str(record["message"])
    assert record["workflow_id"] == "wf-1"
    assert record["run_id"] == "run-1"
    assert record["fields"] == {"nested": {"password": REDACTION_MARKER, "safe": "ok"}}
    assert str(record["timestamp"]).endswith("Z")


def test_structlog_events_share_the_pipeline(tmp_path: Path) -> None:
    handle = setup_logging(
        ObservabilitySettings(log_level="DEBUG"), log_dir=tmp_path, log_to_stream=False
    )
    logger = structlog.get_logger("patchpilot.tests.routing")

    with correlation_scope(workflow_id="wf-2", stage="TESTING"):
        logger.info("checks_completed", results={"lint": True}, thread="main")
    shutdown_logging(handle)

    [record] = _read_json_lines(handle.log_path)
    assert record["message"] == "checks_completed"
    assert record["logger"] == "patchpilot.tests.routing"
    assert record["stage"] == "TESTING"
    assert record["fields"] == {"results": {"lint": True}, "field_thread": "main"}


def test_level_filters_records(tmp_path: Path) -> None:
    handle = setup_logging(
        ObservabilitySettings(log_level="WARNING"), log_dir=tmp_path, log_to_stream=False
    )
    logger = logging.getLogger("patchpilot.tests.levels")
    logger.info("dropped")
    logger.warning("kept")
    shutdown_logging(handle)

    assert [record["message"] for record in _read_json_lines(handle.log_path)] == ["kept"]


def test_correlation_scope_nests_and_restores() -> None:
    assert get_correlation_context() == {}
    with correlation_scope(workflow_id="wf-3"):
        with correlation_scope(run_id="run-3", workflow_id=None):
            assert get_correlation_context() == {"run_id": "run-3"}
        assert get_correlation_context() == {"workflow_id": "wf-3"}
    assert get_correlation_context() == {}


def test_setup_replaces_previous_handle(tmp_path: Path) -> None:
    first = setup_logging(log_dir=tmp_path / "a", log_to_stream=False)
    second = setup_logging(log_dir=tmp_path / "b", log_to_stream=False)

    assert first.is_shutdown
    assert get_active_logging_handle() is second
    assert second.log_path == tmp_path / "b" / "patchpilot.jsonl"


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"queue_size": 0}, "queue_size"),
        ({"log_filename": "nested/log.jsonl"}, "bare file name"),
        ({"stream_format": "xml"}, "stream_format"),
    ],
)
def test_invalid_logging_config(tmp_path: Path, overrides: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        setup_structured_logging(LoggingConfig(base_log_dir=tmp_path, **overrides))  # type: ignore[arg-type]
