"""
patchpilot — state database

File: src/patchpilot/persistence/state_db.py

Purpose
- Own the SQLite file that backs workflow state: schema migrations, connection
  settings, transactions and maintenance helpers (backup, integrity check).

Notes
- Connections are opened per operation with ``check_same_thread=False`` so
  background dispatch workers and the CLI can share one ``StateDB`` object.
- WAL journaling keeps ``status`` reads from blocking behind stage writers.
- ``workflow_events`` is append-only; triggers abort UPDATE and DELETE.
- Transient SQLITE_BUSY errors are retried with exponential backoff.
  Constraint failures are never retried and surface as ``sqlite3.IntegrityError``.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from itertools import count
from pathlib import Path
from typing import Any, Final

import structlog

from patchpilot.constants import STATE_DB_SCHEMA_VERSION
from patchpilot.domain.events import WorkflowEventKind
from patchpilot.domain.states import WorkflowState

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _one_of(column: str, enum_type: type[WorkflowState] | type[WorkflowEventKind]) -> str:
    values = sorted(member.value for member in enum_type)
    allowed = ", ".join(f"'{value}'" for value in values)
    return f"CHECK ({column} IN ({allowed}))"


_SCHEMA_VERSIONS_DDL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_APPEND_ONLY_TRIGGER: Final[str] = """
CREATE TRIGGER IF NOT EXISTS trg_workflow_events_no_{verb}
BEFORE {statement} ON workflow_events
BEGIN
    SELECT RAISE(ABORT, 'workflow_events is append-only');
END
"""


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str = field(init=False)

    def __post_init__(self) -> None:
        digest = hashlib.sha256(f"{self.version}:{self.name}\n".encode())
        for statement in self.statements:
            # trailing whitespace and indentation changes must not alter the checksum
            lines = (line.strip() for line in statement.strip().splitlines())
            digest.update("\n".join(lines).encode("utf-8") + b"\n--\n")
        object.__setattr__(self, "checksum", digest.hexdigest())


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="workflow_state_schema",
        statements=(
            _SCHEMA_VERSIONS_DDL,
            f"""
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                ticket_ref TEXT NOT NULL,
                state TEXT NOT NULL {_one_of("state", WorkflowState)},
                retries INTEGER NOT NULL CHECK (retries >= 0),
                version INTEGER NOT NULL CHECK (version >= 1),
                artifacts_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS workflow_events (
                workflow_id TEXT NOT NULL REFERENCES workflows(id),
                seq INTEGER NOT NULL CHECK (seq >= 1),
                kind TEXT NOT NULL {_one_of("kind", WorkflowEventKind)},
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (workflow_id, seq)
            )
            """,
            _APPEND_ONLY_TRIGGER.format(verb="update", statement="UPDATE"),
            _APPEND_ONLY_TRIGGER.format(verb="delete", statement="DELETE"),
            "CREATE INDEX IF NOT EXISTS idx_workflows_ticket_ref "
            "ON workflows(ticket_ref, created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_workflows_state ON workflows(state)",
        ),
    ),
)

_BUSY_MARKERS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)
_CORRUPTION_MARKERS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)
_BUSY_ERROR_CODES: Final[frozenset[int]] = frozenset(
    getattr(sqlite3, name)
    for name in (
        "SQLITE_BUSY",
        "SQLITE_BUSY_RECOVERY",
        "SQLITE_BUSY_SNAPSHOT",
        "SQLITE_LOCKED",
        "SQLITE_LOCKED_SHAREDCACHE",
    )
    if isinstance(getattr(sqlite3, name, None), int)
)


class StateDBError(RuntimeError):
    """Base class for state database failures."""


class StateDBBusyError(StateDBError):
    """The database stayed locked through every retry."""


class StateDBMigrationError(StateDBError):
    """The on-disk schema disagrees with the migrations shipped in this package."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a damaged database file."""


class StateDB:
    """Handle on the workflow state database at ``path``.

    Every public method opens and closes its own connection unless it is given
    ``conn=`` from an enclosing :meth:`transaction`. Using the object as a
    context manager applies pending migrations on entry.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
        logger: Any | None = None,
    ) -> None:
        for name, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._backoff_seconds = busy_retry_backoff_ms / 1000.0
        self._savepoints = count(1)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def __enter__(self) -> StateDB:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        return None

    # -- connections -------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        mode = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if mode is None or str(mode[0]).lower() != "wal":
            conn.close()
            raise StateDBError(f"could not enable WAL journaling for {self._path}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Atomic block; nests as a savepoint when ``conn`` is already in a transaction."""

        if conn is None:
            with self.connection() as owned, self.transaction(
                conn=owned, immediate=immediate
            ) as active:
                yield active
            return

        if conn.in_transaction:
            name = f"sp_{next(self._savepoints)}"
            begin, commit = f"SAVEPOINT {name}", f"RELEASE SAVEPOINT {name}"
            rollback: tuple[str, ...] = (f"ROLLBACK TO SAVEPOINT {name}", commit)
        else:
            begin = "BEGIN IMMEDIATE" if immediate else "BEGIN"
            commit, rollback = "COMMIT", ("ROLLBACK",)

        self._run(conn, begin, (), operation=begin.lower())
        try:
            yield conn
        except Exception:
            for statement in rollback:
                self._run(conn, statement, (), operation=statement.lower())
            raise
        self._run(conn, commit, (), operation=commit.lower())

    # -- schema --------------------------------------------------------------

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""

        known = {migration.version for migration in _MIGRATIONS}
        missing = [v for v in range(1, STATE_DB_SCHEMA_VERSION + 1) if v not in known]
        if missing:
            raise StateDBMigrationError(f"missing migration for schema version {missing[0]}")

        with self.connection() as conn:
            self._run(conn, _SCHEMA_VERSIONS_DDL, (), operation="create schema_versions")
            applied = {
                int(row["version"]): str(row["checksum"])
                for row in self.query_all(
                    "SELECT version, checksum FROM schema_versions", conn=conn
                )
            }
            on_disk = max(applied, default=0)
            if on_disk > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"database schema version {on_disk} is newer than this release "
                    f"supports ({STATE_DB_SCHEMA_VERSION}); upgrade patchpilot"
                )

            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    break
                recorded = applied.get(migration.version)
                if recorded is not None:
                    if recorded != migration.checksum:
                        raise StateDBMigrationError(
                            f"migration {migration.version} ({migration.name}) was modified "
                            f"after it was applied: db={recorded} code={migration.checksum}"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._run(tx, statement, (), operation=f"migration {migration.version}")
                    self._run(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, _utc_now()),
                        operation=f"record migration {migration.version}",
                    )
                self._logger.info(
                    "state_db_migrated",
                    path=str(self._path),
                    version=migration.version,
                    migration=migration.name,
                )

            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        value = 0 if row is None else row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return value

    # -- statements ----------------------------------------------------------

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Run a write statement and return the affected row count."""

        if conn is not None:
            return self._run(conn, sql, params, operation="execute").rowcount
        with self.transaction() as tx:
            return self._run(tx, sql, params, operation="execute").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        if conn is None:
            with self.connection() as owned:
                return self.query_all(sql, params, conn=owned)
        rows = self._run(conn, sql, params, operation="query").fetchall()
        return [dict(zip(row.keys(), tuple(row), strict=True)) for row in rows]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        rows = self.query_all(sql, params, conn=conn)
        return rows[0] if rows else None

    # -- maintenance ---------------------------------------------------------

    def backup(self, destination: str | Path) -> Path:
        """Write a consistent snapshot of the database to ``destination``."""

        target_path = Path(destination).expanduser()
        target_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as source:
            target = sqlite3.connect(target_path, isolation_level=None)
            try:
                source.backup(target)
            finally:
                target.close()
        self._logger.info("state_db_backup_written", path=str(self._path), target=str(target_path))
        return target_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Problems reported by ``PRAGMA integrity_check``; empty when the file is healthy."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        problems = tuple(
            str(row.get("integrity_check", ""))
            for row in self.query_all(f"PRAGMA integrity_check({max_errors})")
        )
        return () if problems == ("ok",) else problems

    # -- internals -----------------------------------------------------------

    def _run(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        attempt = 0
        while True:
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if not _is_busy(exc):
                    raise self._translate(exc, operation) from exc
                if attempt >= self._busy_retry_limit:
                    raise StateDBBusyError(
                        f"{operation} on {self._path} still locked after "
                        f"{attempt + 1} attempt(s): {exc}"
                    ) from exc
                self._logger.debug(
                    "state_db_busy_retry", operation=operation, attempt=attempt + 1
                )
                time.sleep(self._backoff_seconds * (2**attempt))
                attempt += 1

    def _translate(self, exc: sqlite3.Error, operation: str) -> StateDBError:
        message = str(exc).lower()
        if any(marker in message for marker in _CORRUPTION_MARKERS):
            return StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run integrity_check() and restore from a backup() snapshot."
            )
        return StateDBError(f"{operation} failed for {self._path}: {exc}")


def _is_busy(exc: sqlite3.Error) -> bool:
    if getattr(exc, "sqlite_errorcode", None) in _BUSY_ERROR_CODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


def _utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Key-sorted compact JSON used for every persisted payload."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
