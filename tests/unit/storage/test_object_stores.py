from __future__ import annotations

from pathlib import Path

import pytest

from patchpilot.storage import InMemoryObjectStore, LocalObjectStore


def test_local_store_roundtrip(tmp_path: Path) -> None:
    store = LocalObjectStore(tmp_path / "artifacts")
    location = store.put("logs/runs/run-1/stdout.log", b"hello")

    assert Path(location) == tmp_path / "artifacts" / "logs" / "runs" / "run-1" / "stdout.log"
    assert store.get("logs/runs/run-1/stdout.log") == b"hello"
    assert store.exists("logs/runs/run-1/stdout.log")
    assert not store.exists("logs/runs/run-2/stdout.log")
    with pytest.raises(FileNotFoundError):
        store.get("logs/runs/run-2/stdout.log")


@pytest.mark.parametrize("key", ["/abs/key", "../escape", "a/../b", "", "dir/"])
def test_local_store_rejects_unsafe_keys(tmp_path: Path, key: str) -> None:
    with pytest.raises(ValueError):
        LocalObjectStore(tmp_path).put(key, b"x")


def test_memory_store_roundtrip() -> None:
    store = InMemoryObjectStore()
    assert store.put("logs/a.log", b"1") == "memory://logs/a.log"
    store.put("logs/b.log", b"2")

    assert store.get("logs/a.log") == b"1"
    assert store.keys() == ["logs/a.log", "logs/b.log"]
    with pytest.raises(FileNotFoundError):
        store.get("missing")
    with pytest.raises(ValueError):
        store.put("../x", b"")
