"""Unit tests for filesystem and hashing helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from converge_engine.utils.fs import atomic_write, confine, is_within
from converge_engine.utils.hashing import is_sha256_hex, sha256_file, sha256_text

if TYPE_CHECKING:
    from pathlib import Path


def test_atomic_write_creates_parents_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "a" / "b" / "state.json"

    atomic_write(target, "{}\n")
    atomic_write(target, b"[]\n")

    assert target.read_bytes() == b"[]\n"
    assert sorted(path.name for path in target.parent.iterdir()) == ["state.json"]


def test_confine_and_is_within(tmp_path: Path) -> None:
    assert confine(tmp_path, "/etc/motd") == tmp_path / "etc" / "motd"
    assert is_within(tmp_path / "x" / "..", tmp_path)
    assert not is_within(tmp_path.parent, tmp_path)
    with pytest.raises(ValueError, match="escapes"):
        confine(tmp_path, "../../etc/passwd")


def test_hash_helpers(tmp_path: Path) -> None:
    path = tmp_path / "data.txt"
    path.write_text("converge", encoding="utf-8")

    digest = sha256_text("converge")
    assert sha256_file(path) == digest
    assert is_sha256_hex(digest)
    assert not is_sha256_hex("xyz")
