"""Workflow event serialization tests."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from patchpilot.domain.events import (
    Cancelled,
    Failed,
    Retried,
    Transitioned,
    WorkflowEventKind,
    as_json_object,
    event_from_dict,
    event_from_json,
    event_to_json,
)
from patchpilot.domain.states import WorkflowState

_AT = datetime(2026, 2, 1, 10, 30, 0, tzinfo=UTC)


def test_each_variant_serializes_with_kind_discriminator() -> None:
    events = [
        Transitioned(WorkflowState.TESTING, WorkflowState.FIXING, occurred_at=_AT),
        Failed(WorkflowState.PLANNED, "planner exploded", "RuntimeError", occurred_at=_AT),
        Cancelled(WorkflowState.REVIEWING, occurred_at=_AT),
        Retried(2, occurred_at=_AT),
    ]
    kinds = [event.to_dict()["kind"] for event in events]
    assert kinds == [member.value for member in WorkflowEventKind]

    for event in events:
        assert event_from_json(event_to_json(event)) == event


def test_transitioned_payload_shape() -> None:
    payload = Transitioned("INGESTED", "CONTEXT_READY", occurred_at=_AT).to_dict()  # type: ignore[arg-type]
    assert payload == {
        "kind": "transitioned",
        "from_state": "INGESTED",
        "to_state": "CONTEXT_READY",
        "occurred_at": "2026-02-01T10:30:00.000000Z",
    }


def test_resulting_states() -> None:
    assert Failed(WorkflowState.TESTING, "boom").resulting_state is WorkflowState.FAILED
    assert Cancelled(WorkflowState.TESTING).resulting_state is WorkflowState.FAILED
    assert Retried(1).resulting_state is WorkflowState.INGESTED


def test_unknown_kind_is_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported kind"):
        event_from_dict({"kind": "paused", "occurred_at": "2026-02-01T10:30:00Z"})


def test_stray_and_missing_fields_are_rejected() -> None:
    with pytest.raises(ValueError, match="unexpected fields"):
        event_from_dict(
            {
                "kind": "retried",
                "retry_count": 1,
                "occurred_at": "2026-02-01T10:30:00Z",
                "extra": True,
            }
        )
    with pytest.raises(ValueError, match="missing required fields"):
        event_from_dict({"kind": "failed", "from_state": "TESTING", "occurred_at": "2026-02-01T10:30:00Z"})


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        Retried(0)
    with pytest.raises(ValueError):
        Failed(WorkflowState.TESTING, "   ")
    with pytest.raises(ValueError, match="timezone-aware"):
        Cancelled(WorkflowState.TESTING, occurred_at=datetime(2026, 1, 1))  # noqa: DTZ001
    with pytest.raises(ValueError, match="invalid JSON"):
        event_from_json("{not json")


def test_as_json_object_normalizes_tuples_and_mappings() -> None:
    from types import MappingProxyType

    parsed = as_json_object(MappingProxyType({"a": (1, 2), "b": {"c": None}}), "payload")
    assert parsed == {"a": [1, 2], "b": {"c": None}}

    with pytest.raises(ValueError, match="expected object"):
        as_json_object([1, 2], "payload")
    with pytest.raises(ValueError, match="keys must be strings"):
        as_json_object({1: "x"}, "payload")
