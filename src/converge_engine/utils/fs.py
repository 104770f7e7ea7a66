"""
converge-engine: filesystem helpers

File: src/converge_engine/utils/fs.py

Purpose
- Atomic writes for persisted host state and managed files.
- Root confinement for providers that act on a directory tree.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "confine",
    "is_within",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically replace ``path`` with ``data``.

    A temp file is written and fsynced in the destination directory, then
    swapped in with ``os.replace``. Missing parent directories are created.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if ``child`` resolves to a path inside ``parent``."""

    resolved_parent = Path(parent).resolve()
    resolved_child = Path(child).resolve()
    try:
        resolved_child.relative_to(resolved_parent)
    except ValueError:
        return False
    return True


def confine(root: PathLike, relative: str) -> Path:
    """Join ``relative`` onto ``root``, refusing anything that escapes it."""

    candidate = Path(root) / relative.lstrip("/")
    if not is_within(candidate, root):
        raise ValueError(f"path escapes managed root: {relative}")
    return candidate
