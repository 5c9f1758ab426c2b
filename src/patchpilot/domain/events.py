"""Append-only workflow event log: tagged variants and their JSON serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import ClassVar

from patchpilot.domain.states import WorkflowState

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class WorkflowEventKind(StrEnum):
    TRANSITIONED = "transitioned"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRIED = "retried"


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Transitioned:
    """Normal edge-table move."""

    kind: ClassVar[WorkflowEventKind] = WorkflowEventKind.TRANSITIONED

    from_state: WorkflowState
    to_state: WorkflowState
    occurred_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "from_state", WorkflowState(self.from_state))
        object.__setattr__(self, "to_state", WorkflowState(self.to_state))
        object.__setattr__(
            self, "occurred_at", _as_utc_datetime(self.occurred_at, "Transitioned.occurred_at")
        )

    @property
    def resulting_state(self) -> WorkflowState:
        return self.to_state

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "occurred_at": _datetime_to_iso8601z(self.occurred_at),
        }


@dataclass(frozen=True, slots=True)
class Failed:
    """Stage failure; the workflow is forced into FAILED and the cause is kept."""

    kind: ClassVar[WorkflowEventKind] = WorkflowEventKind.FAILED

    from_state: WorkflowState
    reason: str
    error_type: str | None = None
    occurred_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "from_state", WorkflowState(self.from_state))
        object.__setattr__(self, "reason", _as_str(self.reason, "Failed.reason"))
        object.__setattr__(
            self, "occurred_at", _as_utc_datetime(self.occurred_at, "Failed.occurred_at")
        )

    @property
    def resulting_state(self) -> WorkflowState:
        return WorkflowState.FAILED

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "from_state": self.from_state.value,
            "reason": self.reason,
            "error_type": self.error_type,
            "occurred_at": _datetime_to_iso8601z(self.occurred_at),
        }


@dataclass(frozen=True, slots=True)
class Cancelled:
    kind: ClassVar[WorkflowEventKind] = WorkflowEventKind.CANCELLED

    from_state: WorkflowState
    occurred_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "from_state", WorkflowState(self.from_state))
        object.__setattr__(
            self, "occurred_at", _as_utc_datetime(self.occurred_at, "Cancelled.occurred_at")
        )

    @property
    def resulting_state(self) -> WorkflowState:
        return WorkflowState.FAILED

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "from_state": self.from_state.value,
            "cancelled": True,
            "occurred_at": _datetime_to_iso8601z(self.occurred_at),
        }


@dataclass(frozen=True, slots=True)
class Retried:
    kind: ClassVar[WorkflowEventKind] = WorkflowEventKind.RETRIED

    retry_count: int
    occurred_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if isinstance(self.retry_count, bool) or not isinstance(self.retry_count, int):
            raise ValueError("Retried.retry_count: expected integer")
        if self.retry_count < 1:
            raise ValueError("Retried.retry_count: must be >= 1")
        object.__setattr__(
            self, "occurred_at", _as_utc_datetime(self.occurred_at, "Retried.occurred_at")
        )

    @property
    def resulting_state(self) -> WorkflowState:
        return WorkflowState.INGESTED

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "retry_count": self.retry_count,
            "occurred_at": _datetime_to_iso8601z(self.occurred_at),
        }


WorkflowEvent = Transitioned | Failed | Cancelled | Retried


def event_from_dict(data: object) -> WorkflowEvent:
    """Parse one serialized event; unknown kinds and stray fields are rejected."""
    if not isinstance(data, dict):
        raise ValueError(f"WorkflowEvent: expected object, got {type(data).__name__}")
    raw_kind = data.get("kind")
    try:
        kind = WorkflowEventKind(raw_kind)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in WorkflowEventKind)
        raise ValueError(
            f"WorkflowEvent.kind: unsupported kind {raw_kind!r}; allowed: {allowed}"
        ) from exc

    if kind is WorkflowEventKind.TRANSITIONED:
        parsed = _expect_object(data, "Transitioned", required={"from_state", "to_state"})
        return Transitioned(
            from_state=_as_state(parsed["from_state"], "Transitioned.from_state"),
            to_state=_as_state(parsed["to_state"], "Transitioned.to_state"),
            occurred_at=_as_utc_datetime(parsed["occurred_at"], "Transitioned.occurred_at"),
        )
    if kind is WorkflowEventKind.FAILED:
        parsed = _expect_object(
            data, "Failed", required={"from_state", "reason"}, optional={"error_type"}
        )
        error_type = parsed.get("error_type")
        return Failed(
            from_state=_as_state(parsed["from_state"], "Failed.from_state"),
            reason=_as_str(parsed["reason"], "Failed.reason"),
            error_type=None if error_type is None else _as_str(error_type, "Failed.error_type"),
            occurred_at=_as_utc_datetime(parsed["occurred_at"], "Failed.occurred_at"),
        )
    if kind is WorkflowEventKind.CANCELLED:
        parsed = _expect_object(data, "Cancelled", required={"from_state"}, optional={"cancelled"})
        return Cancelled(
            from_state=_as_state(parsed["from_state"], "Cancelled.from_state"),
            occurred_at=_as_utc_datetime(parsed["occurred_at"], "Cancelled.occurred_at"),
        )
    parsed = _expect_object(data, "Retried", required={"retry_count"})
    retry_count = parsed["retry_count"]
    if isinstance(retry_count, bool) or not isinstance(retry_count, int):
        raise ValueError("Retried.retry_count: expected integer")
    return Retried(
        retry_count=retry_count,
        occurred_at=_as_utc_datetime(parsed["occurred_at"], "Retried.occurred_at"),
    )


def event_to_json(event: WorkflowEvent) -> str:
    return json.dumps(event.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def event_from_json(raw: str) -> WorkflowEvent:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"WorkflowEvent: invalid JSON: {exc}") from exc
    return event_from_dict(parsed)


def as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    """Validate that ``value`` is a finite, string-keyed JSON object."""
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: expected object")
    return parsed


def _expect_object(
    value: dict[str, object],
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    required = required | {"kind", "occurred_at"}
    allowed = required | (optional or set())
    unknown = sorted(key for key in value if key not in allowed)
    if unknown:
        raise ValueError(f"{path}: unexpected fields: {unknown}")
    missing = sorted(key for key in required if key not in value)
    if missing:
        raise ValueError(f"{path}: missing required fields: {missing}")
    return value


def _as_str(value: object, path: str, *, max_len: int = 4096) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    parsed = value.strip()
    if not parsed:
        raise ValueError(f"{path}: must not be empty")
    if len(parsed) > max_len:
        return parsed[:max_len]
    return parsed


def _as_state(value: object, path: str) -> WorkflowState:
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string state, got {type(value).__name__}")
    try:
        return WorkflowState(value)
    except ValueError as exc:
        raise ValueError(f"{path}: unknown workflow state {value!r}") from exc


def _as_utc_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise ValueError(f"{path}: invalid ISO-8601 datetime: {value!r}") from exc
    else:
        raise ValueError(
            f"{path}: expected datetime or ISO-8601 string, got {type(value).__name__}"
        )

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise ValueError(f"{path}: datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > 32:
        raise ValueError(f"{path}: JSON nesting too deep")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: float value must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path}: object keys must be strings")
            out[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return out
    raise ValueError(f"{path}: value is not JSON-serializable ({type(value).__name__})")


__all__ = [
    "Cancelled",
    "Failed",
    "JSONScalar",
    "JSONValue",
    "Retried",
    "Transitioned",
    "WorkflowEvent",
    "WorkflowEventKind",
    "as_json_object",
    "event_from_dict",
    "event_from_json",
    "event_to_json",
    "utc_now",
]
