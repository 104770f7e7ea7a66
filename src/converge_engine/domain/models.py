"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Final

from converge_engine.constants import (
    ENSURE_ABSENT,
    ENSURE_ATTRIBUTE,
    REPORT_SCHEMA_VERSION,
    RESERVED_DECLARATION_KEYS,
)
from converge_engine.domain.errors import ManifestError
from converge_engine.utils.hashing import sha256_text

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_JSON_DEPTH: Final[int] = 16


class ActionKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class ResourceStatus(StrEnum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailurePolicy(StrEnum):
    """What happens to the rest of the graph once a resource fails."""

    ISOLATE = "isolate"
    HALT = "halt"


@dataclass(frozen=True, slots=True)
class Resource:
    """One declared unit of desired state, immutable once parsed."""

    name: str
    kind: str
    title: str = ""
    attributes: Mapping[str, JSONValue] = field(default_factory=dict)
    requires: tuple[str, ...] = ()
    before: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        name = _require_identifier(self.name, "name")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "kind", _require_identifier(self.kind, f"{name}.kind").lower())
        title = self.title if self.title else name
        object.__setattr__(self, "title", _require_identifier(title, f"{name}.title"))

        if not isinstance(self.attributes, Mapping):
            raise ManifestError("attributes must be a mapping", path=f"{name}.attributes")
        frozen: dict[str, JSONValue] = {}
        for key in sorted(self.attributes):
            if not isinstance(key, str) or not key.strip():
                raise ManifestError("attribute names must be non-empty strings", path=name)
            if key in RESERVED_DECLARATION_KEYS:
                raise ManifestError(f"{key!r} is not a managed attribute", path=name)
            frozen[key] = _coerce_json_value(
                self.attributes[key], path=f"{name}.attributes.{key}", depth=0
            )
        object.__setattr__(self, "attributes", MappingProxyType(frozen))

        object.__setattr__(self, "requires", _reference_tuple(self.requires, f"{name}.require"))
        object.__setattr__(self, "before", _reference_tuple(self.before, f"{name}.before"))

    @property
    def ref(self) -> str:
        """Typed reference, e.g. ``Service[sensu-backend]``."""

        return f"{self.kind.capitalize()}[{self.title}]"

    @property
    def ensure(self) -> JSONValue:
        return self.attributes.get(ENSURE_ATTRIBUTE)

    @property
    def wants_absent(self) -> bool:
        return self.ensure == ENSURE_ABSENT

    @classmethod
    def from_declaration(cls, name: str, payload: Mapping[str, object]) -> Resource:
        """Parse one manifest declaration (``kind``/``title``/``attributes``/edges)."""

        if not isinstance(payload, Mapping):
            raise ManifestError("declaration must be a mapping", path=name)
        unknown = sorted(str(key) for key in payload if key not in RESERVED_DECLARATION_KEYS)
        if unknown:
            raise ManifestError(
                f"unexpected keys {unknown}; allowed keys: {sorted(RESERVED_DECLARATION_KEYS)}",
                path=name,
            )
        if "kind" not in payload:
            raise ManifestError("missing required key 'kind'", path=name)

        kind = payload["kind"]
        title = payload.get("title")
        if not isinstance(kind, str):
            raise ManifestError("kind must be a string", path=f"{name}.kind")
        if title is not None and not isinstance(title, str):
            raise ManifestError("title must be a string", path=f"{name}.title")
        attributes = payload.get("attributes") or {}
        if not isinstance(attributes, Mapping):
            raise ManifestError("attributes must be a mapping", path=f"{name}.attributes")

        return cls(
            name=name,
            kind=kind,
            title=title or "",
            attributes=dict(attributes),
            requires=_reference_tuple(payload.get("require"), f"{name}.require"),
            before=_reference_tuple(payload.get("before"), f"{name}.before"),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "kind": self.kind,
            "title": self.title,
            "attributes": dict(self.attributes),
            "require": list(self.requires),
            "before": list(self.before),
        }


@dataclass(frozen=True, slots=True)
class CurrentState:
    """State of one resource as observed by its provider."""

    exists: bool
    attributes: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.exists, bool):
            raise TypeError("CurrentState.exists must be a bool")
        frozen = {
            str(key): _coerce_json_value(value, path=f"state.{key}", depth=0)
            for key, value in self.attributes.items()
        }
        object.__setattr__(self, "attributes", MappingProxyType(frozen))

    @classmethod
    def absent(cls) -> CurrentState:
        return cls(exists=False)

    def to_dict(self) -> dict[str, JSONValue]:
        return {"exists": self.exists, "attributes": dict(self.attributes)}


@dataclass(frozen=True, slots=True)
class AttributeChange:
    """One attribute whose current value diverges from the desired value."""

    attribute: str
    current: JSONValue
    desired: JSONValue

    def to_dict(self) -> dict[str, JSONValue]:
        return {"attribute": self.attribute, "current": self.current, "desired": self.desired}


@dataclass(frozen=True, slots=True)
class Action:
    """Operation computed for one resource within a single reconciliation pass."""

    resource: Resource
    kind: ActionKind
    current: CurrentState
    changes: tuple[AttributeChange, ...] = ()

    @property
    def is_noop(self) -> bool:
        return self.kind is ActionKind.NOOP

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "resource": self.resource.name,
            "ref": self.resource.ref,
            "kind": self.kind.value,
            "changes": [change.to_dict() for change in self.changes],
        }


@dataclass(frozen=True, slots=True)
class ApplyResult:
    """Provider acknowledgement for an applied action."""

    detail: str = ""
    state: CurrentState | None = None


@dataclass(frozen=True, slots=True)
class ResourceOutcome:
    """Per-resource line of a convergence report."""

    name: str
    ref: str
    status: ResourceStatus
    action: ActionKind = ActionKind.NOOP
    changes: tuple[AttributeChange, ...] = ()
    error_type: str | None = None
    error: str | None = None
    propagated_from: str | None = None
    duration_seconds: float = field(default=0.0, compare=False)

    def to_dict(self, *, include_timing: bool = True) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "name": self.name,
            "ref": self.ref,
            "status": self.status.value,
            "action": self.action.value,
            "changes": [change.to_dict() for change in self.changes],
        }
        if self.error_type is not None:
            payload["error_type"] = self.error_type
        if self.error is not None:
            payload["error"] = self.error
        if self.propagated_from is not None:
            payload["propagated_from"] = self.propagated_from
        if include_timing:
            payload["duration_ms"] = round(self.duration_seconds * 1000.0, 3)
        return payload


@dataclass(frozen=True, slots=True)
class ConvergenceReport:
    """Aggregate of every outcome in one run, ordered by topological index."""

    run_id: str
    manifest_digest: str
    outcomes: tuple[ResourceOutcome, ...]
    cancelled: bool = False
    noop: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC), compare=False)
    finished_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC), compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "outcomes", tuple(self.outcomes))
        seen: set[str] = set()
        for outcome in self.outcomes:
            if outcome.name in seen:
                raise ValueError(f"duplicate outcome for resource {outcome.name!r}")
            seen.add(outcome.name)

    def _count(self, status: ResourceStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def unchanged(self) -> int:
        return self._count(ResourceStatus.UNCHANGED)

    @property
    def changed(self) -> int:
        return self._count(ResourceStatus.CHANGED)

    @property
    def failed(self) -> int:
        return self._count(ResourceStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(ResourceStatus.SKIPPED)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> bool:
        return self.failed == 0 and not self.cancelled

    def names_with_status(self, status: ResourceStatus) -> tuple[str, ...]:
        return tuple(outcome.name for outcome in self.outcomes if outcome.status is status)

    def outcome(self, name: str) -> ResourceOutcome:
        for item in self.outcomes:
            if item.name == name:
                return item
        raise KeyError(f"no outcome for resource: {name}")

    def counts(self) -> dict[str, int]:
        return {
            "unchanged": self.unchanged,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
        }

    def to_dict(self, *, include_timing: bool = True) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "schema_version": REPORT_SCHEMA_VERSION,
            "run_id": self.run_id,
            "manifest_digest": self.manifest_digest,
            "cancelled": self.cancelled,
            "noop": self.noop,
            "counts": dict(self.counts()),
            "resources": [
                outcome.to_dict(include_timing=include_timing) for outcome in self.outcomes
            ],
        }
        if include_timing:
            payload["started_at"] = _isoformat(self.started_at)
            payload["finished_at"] = _isoformat(self.finished_at)
        return payload

    def to_json(self, *, include_timing: bool = True) -> str:
        return _canonical_json(self.to_dict(include_timing=include_timing))


def manifest_digest(resources: Iterable[Resource]) -> str:
    """Return a stable SHA-256 identity for a declared state."""

    payload: list[JSONValue] = [resource.to_dict() for resource in resources]
    return sha256_text(_canonical_json(payload))


def _reference_tuple(value: object, path: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items: Sequence[object] = (value,)
    elif isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        items = value
    else:
        raise ManifestError("must be a string or a list of strings", path=path)

    refs: list[str] = []
    for index, item in enumerate(items):
        if not isinstance(item, str) or not item.strip():
            raise ManifestError("references must be non-empty strings", path=f"{path}[{index}]")
        normalized = item.strip()
        if normalized not in refs:
            refs.append(normalized)
    return tuple(refs)


def _require_identifier(value: object, path: str) -> str:
    if not isinstance(value, str):
        raise ManifestError(f"expected string, got {type(value).__name__}", path=path)
    normalized = value.strip()
    if not normalized:
        raise ManifestError("must not be empty", path=path)
    return normalized


def _coerce_json_value(value: object, *, path: str, depth: int) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        raise ManifestError("value is nested too deeply", path=path)
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ManifestError("numbers must be finite", path=path)
        return value
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key in sorted(value, key=str):
            if not isinstance(key, str):
                raise ManifestError("mapping keys must be strings", path=path)
            out[key] = _coerce_json_value(value[key], path=f"{path}.{key}", depth=depth + 1)
        return out
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [
            _coerce_json_value(item, path=f"{path}[{index}]", depth=depth + 1)
            for index, item in enumerate(value)
        ]
    raise ManifestError(f"unsupported value type {type(value).__name__}", path=path)


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = [
    "Action",
    "ActionKind",
    "ApplyResult",
    "AttributeChange",
    "ConvergenceReport",
    "CurrentState",
    "FailurePolicy",
    "JSONScalar",
    "JSONValue",
    "Resource",
    "ResourceOutcome",
    "ResourceStatus",
    "manifest_digest",
]
