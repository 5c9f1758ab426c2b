"""
patchpilot — persistence

Purpose
- SQLite state DB (migrations, transactions) and the workflow repository built on it.
"""

from patchpilot.persistence.repositories import WorkflowRepo
from patchpilot.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "WorkflowRepo",
]
