from __future__ import annotations

from pathlib import Path

import pytest

from patchpilot.utils import atomic_write, command_digest, is_within, resolve_under, sha256_text


def test_atomic_write_creates_parents_and_replaces(tmp_path: Path) -> None:
    target = tmp_path / "deep" / "file.txt"
    atomic_write(target, "first")
    atomic_write(target, b"second")

    assert target.read_text(encoding="utf-8") == "second"
    assert [p.name for p in target.parent.iterdir()] == ["file.txt"]


def test_resolve_under_confines_keys(tmp_path: Path) -> None:
    assert resolve_under(tmp_path, "a/b.txt") == tmp_path / "a" / "b.txt"
    for key in ("/etc/passwd", "a/../../b", "a\\b", "a/"):
        with pytest.raises(ValueError):
            resolve_under(tmp_path, key)


def test_symlink_escape_is_rejected(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    root = tmp_path / "root"
    root.mkdir()
    (root / "link").symlink_to(outside, target_is_directory=True)

    assert not is_within(root / "link" / "x", root)
    with pytest.raises(ValueError, match="escapes root"):
        resolve_under(root, "link/x")


def test_digests() -> None:
    assert sha256_text("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert command_digest("npm test") == command_digest("npm test")
    assert len(command_digest("npm test", length=12)) == 12
    with pytest.raises(ValueError):
        command_digest("x", length=0)
