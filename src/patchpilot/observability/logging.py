"""Structured logging setup with JSON-lines output and redaction support.

``structlog`` loggers (``structlog.get_logger(__name__)``) are routed through the standard
library so component events and plain ``logging`` records share one queue-backed pipeline:

    component -> structlog processors -> stdlib logger "patchpilot" -> QueueHandler
        -> QueueListener -> file sink (JSON lines) + stream sink (JSON or text)
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import sys
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, cast

import structlog

from patchpilot.config.settings import ObservabilitySettings
from patchpilot.security.redaction import redact_structure, redact_text

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_DEFAULT_LOG_FILENAME: Final[str] = "patchpilot.jsonl"
_DEFAULT_LOGGER_NAME: Final[str] = "patchpilot"
_DEFAULT_QUEUE_SIZE: Final[int] = 4096
_NON_FINITE: Final[str] = "<non-finite>"

_CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "workflow_id",
    "ticket_ref",
    "run_id",
    "stage",
)

# attributes every LogRecord carries; anything else on a record arrived via ``extra``
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    {*logging.makeLogRecord({}).__dict__, "message", "asctime", "taskName"}
)

_CorrelationState = tuple[tuple[str, str], ...]
_CORRELATION_CONTEXT: contextvars.ContextVar[_CorrelationState] = contextvars.ContextVar(
    "patchpilot_correlation", default=()
)

_ACTIVE_HANDLE_LOCK = threading.Lock()
_ACTIVE_HANDLE: StructuredLoggingHandle | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for queue-backed structured logging."""

    base_log_dir: Path | str = Path("logs")
    logger_name: str = _DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = _DEFAULT_QUEUE_SIZE
    log_filename: str = _DEFAULT_LOG_FILENAME
    log_to_stream: bool = True
    stream_format: str = "json"
    redact_secrets: bool = True


def setup_logging(
    settings: ObservabilitySettings | None = None,
    *,
    log_dir: Path | str = "logs",
    log_to_stream: bool = True,
) -> StructuredLoggingHandle:
    """Configure logging from the ``[observability]`` settings and return the handle."""

    resolved = settings or ObservabilitySettings()
    return setup_structured_logging(
        LoggingConfig(
            base_log_dir=log_dir,
            level=resolved.log_level,
            log_to_stream=log_to_stream,
            stream_format=resolved.log_format,
            redact_secrets=resolved.redact_secrets,
        )
    )


class _QueueHandler(logging.handlers.QueueHandler):
    """Non-blocking enqueue that counts records lost to a full queue.

    Correlation fields are copied onto the record here, on the emitting thread;
    the listener thread cannot see the caller's context variables.
    """

    def __init__(self, log_queue: queue.Queue[object]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        context = get_correlation_context()
        if context:
            record.correlation = context
        return cast("logging.LogRecord", super().prepare(record))

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, *, redact: bool) -> None:
        super().__init__()
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(
            _event_dict(record, redact=self._redact, formatter=self),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )


class _TextFormatter(_JsonLineFormatter):
    """``timestamp level logger message key=value ...`` for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        event = _event_dict(record, redact=self._redact, formatter=self)
        head = f"{event.pop('timestamp')} {event.pop('level'):<7} {event.pop('logger')}"
        message = event.pop("message")
        fields = event.pop("fields", {})
        exception = event.pop("exception", None)
        pairs = [f"{key}={value}" for key, value in sorted(event.items())]
        if isinstance(fields, dict):
            pairs.extend(
                f"{key}={json.dumps(value, ensure_ascii=False)}"
                for key, value in sorted(fields.items())
            )
        line = " ".join([head, str(message), *pairs])
        return f"{line}\n{exception}" if exception else line


class StructuredLoggingHandle:
    """A running logging pipeline: the queue, its listener thread and the sinks behind it."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_path: Path,
        queue_handler: _QueueHandler,
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait up to ``timeout_seconds`` for the listener to drain, then flush every sink."""

        pending = cast("queue.Queue[object]", self._queue_handler.queue)
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while pending.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._listener.handlers:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._listener.handlers:
                sink.close()
            self._closed = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Start a queue-backed JSON-lines pipeline and route ``structlog`` through it.

    Any pipeline started earlier is shut down first, so repeated calls (one per
    CLI invocation in tests) never leak listener threads or open files.
    """

    _validate(config)
    _shutdown_previous_active_handle()

    level = _parse_log_level(config.level)
    log_dir = Path(config.base_log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / config.log_filename

    sinks = _build_sinks(config, log_path, level)
    queue_handler = _QueueHandler(queue.Queue(maxsize=config.queue_size))
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger, log_path=log_path, queue_handler=queue_handler, listener=listener
    )
    global _ACTIVE_HANDLE
    with _ACTIVE_HANDLE_LOCK:
        _ACTIVE_HANDLE = handle
    _register_atexit_shutdown()
    return handle


def _validate(config: LoggingConfig) -> None:
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    if not config.log_filename or Path(config.log_filename).name != config.log_filename:
        raise ValueError("log_filename must be a bare file name")
    if config.stream_format not in {"json", "text"}:
        raise ValueError(f"unsupported stream_format {config.stream_format!r}")


def _build_sinks(config: LoggingConfig, log_path: Path, level: int) -> list[logging.Handler]:
    file_sink = logging.FileHandler(log_path, encoding="utf-8")
    file_sink.setFormatter(_JsonLineFormatter(redact=config.redact_secrets))
    sinks: list[logging.Handler] = [file_sink]
    if config.log_to_stream:
        stream_sink = logging.StreamHandler(sys.stderr)
        formatter_type = _JsonLineFormatter if config.stream_format == "json" else _TextFormatter
        stream_sink.setFormatter(formatter_type(redact=config.redact_secrets))
        sinks.append(stream_sink)
    for sink in sinks:
        sink.setLevel(level)
    return sinks


def configure_structlog() -> None:
    """Send structlog events to stdlib loggers; fields travel as ``extra``."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _rename_reserved_fields,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def flush_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Flush queued logs to configured sinks."""
    resolved = handle if handle is not None else get_active_logging_handle()
    if resolved is not None:
        resolved.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Shutdown logging listener and close all sinks."""
    resolved = handle if handle is not None else get_active_logging_handle()
    if resolved is None:
        return

    resolved.shutdown(timeout_seconds=timeout_seconds)

    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        if _ACTIVE_HANDLE is resolved:
            _ACTIVE_HANDLE = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _ACTIVE_HANDLE_LOCK:
        return _ACTIVE_HANDLE


def get_correlation_context() -> dict[str, str]:
    """Return the current correlation context as a plain dictionary."""
    return dict(_CORRELATION_CONTEXT.get())


def set_correlation_fields(**fields: str | None) -> contextvars.Token[_CorrelationState]:
    """Set correlation fields for the active context and return a reset token."""
    state = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            state.pop(key, None)
            continue
        normalized = str(value).strip()
        if not normalized:
            raise ValueError(f"correlation value for {key!r} must not be empty")
        state[key] = normalized
    return _CORRELATION_CONTEXT.set(tuple(state.items()))


def reset_correlation_fields(token: contextvars.Token[_CorrelationState]) -> None:
    _CORRELATION_CONTEXT.reset(token)


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields (``workflow_id``, ``run_id``, ...) for log records."""
    token = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(token)


def _rename_reserved_fields(
    logger: object, method_name: str, event_dict: dict[str, object]
) -> dict[str, object]:
    # LogRecord refuses ``extra`` keys that shadow its own attributes.
    del logger, method_name
    for key in [key for key in event_dict if key in _RECORD_ATTRIBUTES]:
        event_dict[f"field_{key}"] = event_dict.pop(key)
    return event_dict


def _event_dict(
    record: logging.LogRecord, *, redact: bool, formatter: logging.Formatter
) -> dict[str, JSONValue]:
    message = record.getMessage()
    event: dict[str, JSONValue] = {
        "timestamp": _iso8601z_from_epoch(record.created),
        "level": record.levelname,
        "logger": record.name,
        "message": redact_text(message) if redact else message,
    }

    correlation = getattr(record, "correlation", None)
    if isinstance(correlation, Mapping):
        for key, value in sorted(correlation.items()):
            event[str(key)] = str(value)

    extras = _extract_extra_fields(record)
    for key in _CORRELATION_KEYS:
        value = extras.pop(key, None)
        if isinstance(value, str) and value:
            event.setdefault(key, value)
    if extras:
        fields = _normalize_json_value(redact_structure(extras) if redact else extras)
        event["fields"] = fields

    if record.exc_info:
        text = formatter.formatException(record.exc_info)
        event["exception"] = redact_text(text) if redact else text
    return event


def _register_atexit_shutdown() -> None:
    global _ATEXIT_REGISTERED
    if _ATEXIT_REGISTERED:
        return
    atexit.register(shutdown_logging)
    _ATEXIT_REGISTERED = True


def _shutdown_previous_active_handle() -> None:
    existing = get_active_logging_handle()
    if existing is not None:
        existing.shutdown()

    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        _ACTIVE_HANDLE = None


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(value.strip().upper())
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _iso8601z_from_epoch(epoch_seconds: float) -> str:
    timestamp = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _extract_extra_fields(record: logging.LogRecord) -> dict[str, object]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRIBUTES
        and key != "correlation"
        and not key.startswith("_")
    }


def _normalize_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _NON_FINITE
    if isinstance(value, datetime):
        normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return normalized.astimezone(UTC).isoformat(timespec="microseconds").replace(
            "+00:00", "Z"
        )
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _normalize_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_json_value(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize_json_value(item) for item in value), key=repr)
    return str(value)


__all__ = [
    "JSONValue",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
