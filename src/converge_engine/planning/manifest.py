"""
converge-engine: desired-state manifest loader

File: src/converge_engine/planning/manifest.py

Purpose
- Parse a YAML desired-state document (or an already-decoded mapping) into
  named resource declarations ready for the graph builder.

Document shape
- ``resources``: mapping of resource name to declaration.
- ``classes``: named groups of resources, each with optional ``include``.
- ``include``: classes to compose into the manifest, in order.

Composition rules
- A class is expanded at most once no matter how often it is included.
- Included classes expand before the including scope's own resources, which
  fixes declaration order (the graph builder's tie-break).
- Duplicate resource names, unknown classes, and include cycles are errors.
"""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Final, TypeAlias, cast

import yaml

from converge_engine.domain.errors import ManifestError
from converge_engine.domain.models import Resource, manifest_digest
from converge_engine.planning.resource_graph import ResourceGraph, build_resource_graph

PathLike: TypeAlias = str | os.PathLike[str]

_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset({"classes", "include", "resources"})
_CLASS_KEYS: Final[frozenset[str]] = frozenset({"include", "resources"})


@dataclass(frozen=True, slots=True)
class Manifest:
    """Expanded desired state: resources in declaration order."""

    resources: Mapping[str, Resource] = field(default_factory=dict)
    included_classes: tuple[str, ...] = ()
    source: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "resources", MappingProxyType(dict(self.resources)))
        object.__setattr__(self, "included_classes", tuple(self.included_classes))

    @property
    def digest(self) -> str:
        return manifest_digest(self.resources.values())

    def graph(self) -> ResourceGraph:
        return build_resource_graph(self.resources)

    def __len__(self) -> int:
        return len(self.resources)


def load_manifest(path: PathLike) -> Manifest:
    """Load and expand a YAML manifest file."""

    manifest_path = Path(path)
    try:
        with manifest_path.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except FileNotFoundError as exc:
        raise ManifestError(f"manifest file not found: {manifest_path}") from exc
    except yaml.YAMLError as exc:
        raise ManifestError(f"invalid YAML ({exc})", path=str(manifest_path)) from exc
    except OSError as exc:
        raise ManifestError(f"unable to read manifest: {exc}", path=str(manifest_path)) from exc

    return parse_manifest(loaded, source=manifest_path.as_posix())


def loads_manifest(text: str, *, source: str | None = None) -> Manifest:
    """Parse a YAML manifest from a string."""

    try:
        loaded = cast("object", yaml.safe_load(text))
    except yaml.YAMLError as exc:
        raise ManifestError(f"invalid YAML ({exc})", path=source) from exc
    return parse_manifest(loaded, source=source)


def parse_manifest(payload: object, *, source: str | None = None) -> Manifest:
    """Expand a decoded manifest document into ordered resources."""

    if payload is None:
        return Manifest(source=source)
    root = _as_string_key_mapping(payload, "<root>")
    unknown = sorted(set(root) - _TOP_LEVEL_KEYS)
    if unknown:
        raise ManifestError(
            f"unexpected top-level keys {unknown}; allowed keys: {sorted(_TOP_LEVEL_KEYS)}",
            path=source,
        )

    classes_raw = root.get("classes") or {}
    classes = {
        name: _as_string_key_mapping(body, f"classes.{name}")
        for name, body in _as_string_key_mapping(classes_raw, "classes").items()
    }
    for class_name, body in classes.items():
        extra = sorted(set(body) - _CLASS_KEYS)
        if extra:
            raise ManifestError(
                f"unexpected keys {extra}; allowed keys: {sorted(_CLASS_KEYS)}",
                path=f"classes.{class_name}",
            )

    expander = _Expander(classes)
    for class_name in _string_list(root.get("include"), "include"):
        expander.include(class_name, scope="include")
    expander.add_resources(root.get("resources"), scope="resources")

    return Manifest(
        resources=expander.resources,
        included_classes=tuple(expander.expanded),
        source=source,
    )


class _Expander:
    __slots__ = ("_classes", "_stack", "expanded", "resources", "_origin")

    def __init__(self, classes: Mapping[str, Mapping[str, object]]) -> None:
        self._classes = classes
        self._stack: list[str] = []
        self.expanded: list[str] = []
        self.resources: dict[str, Resource] = {}
        self._origin: dict[str, str] = {}

    def include(self, class_name: str, *, scope: str) -> None:
        if class_name in self._stack:
            cycle = " -> ".join([*self._stack[self._stack.index(class_name) :], class_name])
            raise ManifestError(f"include cycle: {cycle}", path=scope)
        if class_name in self.expanded:
            return
        body = self._classes.get(class_name)
        if body is None:
            raise ManifestError(f"unknown class {class_name!r}", path=scope)

        self._stack.append(class_name)
        class_scope = f"classes.{class_name}"
        for nested in _string_list(body.get("include"), f"{class_scope}.include"):
            self.include(nested, scope=f"{class_scope}.include")
        self.add_resources(body.get("resources"), scope=f"{class_scope}.resources")
        self._stack.pop()
        self.expanded.append(class_name)

    def add_resources(self, raw: object, *, scope: str) -> None:
        if raw is None:
            return
        declarations = _as_string_key_mapping(raw, scope)
        for name, declaration in declarations.items():
            path = f"{scope}.{name}"
            if name in self.resources:
                raise ManifestError(
                    f"resource {name!r} is already declared in {self._origin[name]}", path=path
                )
            if not isinstance(declaration, Mapping):
                raise ManifestError("declaration must be a mapping", path=path)
            self.resources[name] = Resource.from_declaration(name, declaration)
            self._origin[name] = scope


def _as_string_key_mapping(value: object, location: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise ManifestError(f"expected mapping, got {type(value).__name__}", path=location)
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key.strip():
            raise ManifestError("keys must be non-empty strings", path=location)
        out[key.strip()] = item
    return out


def _string_list(value: object, location: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value.strip(),)
    if not isinstance(value, Sequence) or isinstance(value, (bytes, bytearray)):
        raise ManifestError("expected a string or list of strings", path=location)
    items: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ManifestError("entries must be non-empty strings", path=f"{location}[{index}]")
        items.append(item.strip())
    return tuple(items)


__all__ = ["Manifest", "load_manifest", "loads_manifest", "parse_manifest"]
