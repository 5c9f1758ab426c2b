"""Durable byte storage for archived sandbox logs and stage artifacts."""

from patchpilot.storage.object_store import InMemoryObjectStore, LocalObjectStore

__all__ = ["InMemoryObjectStore", "LocalObjectStore"]
