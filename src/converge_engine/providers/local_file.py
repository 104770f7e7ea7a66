"""
converge-engine: local filesystem file provider

File: src/converge_engine/providers/local_file.py

Purpose
- Manage files and directories beneath one root directory. A resource title
  is a path relative to that root; paths escaping the root are rejected.

Attributes
- ``ensure``: ``file`` (default), ``directory``, or ``absent``.
- ``content``: UTF-8 text of a file, compared byte for byte (no newline
  translation).
- ``checksum``: SHA-256 hex digest of the content.
- ``mode``: permission bits as octal text (``"0644"``) or an integer.
"""

from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Final

from converge_engine.constants import ENSURE_ATTRIBUTE
from converge_engine.domain.errors import ProviderApplyError, ProviderReadError
from converge_engine.domain.models import (
    Action,
    ActionKind,
    ApplyResult,
    CurrentState,
    JSONValue,
    Resource,
)
from converge_engine.providers.attributes import modes_match, normalize_mode
from converge_engine.providers.base import SyncProvider
from converge_engine.utils.fs import PathLike, atomic_write, confine
from converge_engine.utils.hashing import is_sha256_hex, sha256_file, sha256_text

_ENSURE_FILE: Final[str] = "file"
_ENSURE_DIRECTORY: Final[str] = "directory"


class LocalFileProvider(SyncProvider):
    """Blocking file provider confined to ``root``."""

    kind = "file"
    provider_name = "local-file"

    def __init__(self, root: PathLike) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def read_sync(self, resource: Resource) -> CurrentState:
        path = self._path(resource, error=ProviderReadError)
        try:
            if path.is_symlink() or not path.exists():
                return CurrentState.absent()
            info = path.stat()
            attributes: dict[str, JSONValue] = {"mode": f"{stat.S_IMODE(info.st_mode):04o}"}
            if path.is_dir():
                attributes[ENSURE_ATTRIBUTE] = _ENSURE_DIRECTORY
                return CurrentState(exists=True, attributes=attributes)
            attributes[ENSURE_ATTRIBUTE] = _ENSURE_FILE
            attributes["checksum"] = sha256_file(path)
            if "content" in resource.attributes:
                attributes["content"] = path.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ProviderReadError(
                str(exc), provider=self.provider_name, resource=resource.ref
            ) from exc
        return CurrentState(exists=True, attributes=attributes)

    def apply_sync(self, resource: Resource, action: Action) -> ApplyResult:
        path = self._path(resource, error=ProviderApplyError)
        try:
            if action.kind is ActionKind.DELETE:
                self._remove(path)
                return ApplyResult(detail=f"removed {path}", state=CurrentState.absent())
            if resource.ensure == _ENSURE_DIRECTORY:
                self._make_directory(path, action)
            else:
                self._write_file(resource, path, action)
            mode = normalize_mode(resource.attributes.get("mode"))
            if mode is not None:
                os.chmod(path, int(mode, 8))
        except (OSError, ValueError) as exc:
            raise ProviderApplyError(
                str(exc), provider=self.provider_name, resource=resource.ref
            ) from exc
        return ApplyResult(detail=f"{action.kind.value} {path}")

    def is_in_sync(self, attribute: str, current: JSONValue, desired: JSONValue) -> bool:
        if attribute == "mode":
            return modes_match(current, desired)
        if attribute == "checksum" and isinstance(current, str) and isinstance(desired, str):
            return current.lower() == desired.lower()
        if attribute == ENSURE_ATTRIBUTE and desired == "present":
            return current in (_ENSURE_FILE, _ENSURE_DIRECTORY)
        return current == desired

    def _path(
        self, resource: Resource, *, error: type[ProviderReadError | ProviderApplyError]
    ) -> Path:
        try:
            return confine(self._root, resource.title)
        except ValueError as exc:
            raise error(str(exc), provider=self.provider_name, resource=resource.ref) from exc

    def _make_directory(self, path: Path, action: Action) -> None:
        if path.exists() and not path.is_dir():
            if action.kind is not ActionKind.UPDATE:
                raise FileExistsError(f"{path} exists and is not a directory")
            path.unlink()
        path.mkdir(parents=True, exist_ok=True)

    def _write_file(self, resource: Resource, path: Path, action: Action) -> None:
        content = resource.attributes.get("content")
        checksum = resource.attributes.get("checksum")
        if content is not None and not isinstance(content, str):
            raise ValueError("content must be a string")
        if checksum is not None:
            if not is_sha256_hex(checksum):
                raise ValueError(f"checksum is not a SHA-256 hex digest: {checksum!r}")
            if content is None:
                raise ValueError("checksum declared without content to converge to")
            if sha256_text(content) != str(checksum).lower():
                raise ValueError("declared content does not match declared checksum")
        if path.is_dir():
            raise IsADirectoryError(f"{path} is a directory")
        if content is not None:
            previous_mode = stat.S_IMODE(path.stat().st_mode) if path.exists() else None
            atomic_write(path, content)
            if previous_mode is not None:
                os.chmod(path, previous_mode)
        elif action.kind is ActionKind.CREATE:
            atomic_write(path, "")

    def _remove(self, path: Path) -> None:
        if path.is_dir() and not path.is_symlink():
            path.rmdir()
        else:
            path.unlink(missing_ok=True)


__all__ = ["LocalFileProvider"]
