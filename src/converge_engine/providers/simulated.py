"""
converge-engine: simulated host and its providers

File: src/converge_engine/providers/simulated.py

Purpose
- An in-memory stand-in for a managed system holding packages, services,
  and files, persisted as JSON between CLI invocations.
- Fault injection (failing reads/applies, artificial latency) so failure
  propagation, timeouts, and cancellation can be exercised end to end.

Persisted format
- ``{"schema_version": 1, "resources": {kind: {title: attributes}}}``
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Final

from converge_engine.constants import ENSURE_ABSENT, ENSURE_ATTRIBUTE, HOST_STATE_SCHEMA_VERSION
from converge_engine.domain.errors import ProviderApplyError, ProviderReadError
from converge_engine.domain.models import (
    Action,
    ActionKind,
    ApplyResult,
    CurrentState,
    JSONValue,
    Resource,
)
from converge_engine.providers.attributes import flags_match, modes_match
from converge_engine.providers.base import BaseProvider
from converge_engine.utils.fs import atomic_write

PathLike = str | os.PathLike[str]

_DEFAULT_PACKAGE_VERSION: Final[str] = "1.0.0"
_PACKAGE_PRESENT: Final[frozenset[str]] = frozenset({"present", "installed"})


@dataclass(frozen=True, slots=True)
class HostEvent:
    """One mutation recorded by the simulated host."""

    kind: str
    title: str
    action: ActionKind


class SimulatedHost:
    """Thread-safe in-memory system state keyed by ``(kind, title)``."""

    def __init__(
        self,
        resources: Mapping[str, Mapping[str, Mapping[str, JSONValue]]] | None = None,
        *,
        package_versions: Mapping[str, str] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._resources: dict[str, dict[str, dict[str, JSONValue]]] = {}
        self._package_versions = dict(package_versions or {})
        self._failing_reads: dict[tuple[str, str], str] = {}
        self._failing_applies: dict[tuple[str, str], str] = {}
        self._delays: dict[tuple[str, str], float] = {}
        self._events: list[HostEvent] = []
        for kind, by_title in (resources or {}).items():
            for title, attributes in by_title.items():
                self.put(kind, title, attributes)

    # State

    def get(self, kind: str, title: str) -> dict[str, JSONValue] | None:
        with self._lock:
            attributes = self._resources.get(kind.lower(), {}).get(title)
            return None if attributes is None else dict(attributes)

    def put(self, kind: str, title: str, attributes: Mapping[str, JSONValue]) -> None:
        with self._lock:
            self._resources.setdefault(kind.lower(), {})[title] = dict(attributes)

    def remove(self, kind: str, title: str) -> None:
        with self._lock:
            by_title = self._resources.get(kind.lower())
            if by_title is not None:
                by_title.pop(title, None)
                if not by_title:
                    del self._resources[kind.lower()]

    def snapshot(self) -> dict[str, dict[str, dict[str, JSONValue]]]:
        with self._lock:
            return {
                kind: {title: dict(attrs) for title, attrs in sorted(by_title.items())}
                for kind, by_title in sorted(self._resources.items())
            }

    def package_version(self, name: str) -> str:
        return self._package_versions.get(name, _DEFAULT_PACKAGE_VERSION)

    # Fault injection

    def fail_read(self, kind: str, title: str, message: str = "read failed") -> None:
        self._failing_reads[(kind.lower(), title)] = message

    def fail_apply(self, kind: str, title: str, message: str = "apply failed") -> None:
        self._failing_applies[(kind.lower(), title)] = message

    def delay(self, kind: str, title: str, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        self._delays[(kind.lower(), title)] = seconds

    def clear_faults(self) -> None:
        self._failing_reads.clear()
        self._failing_applies.clear()
        self._delays.clear()

    def read_fault(self, kind: str, title: str) -> str | None:
        return self._failing_reads.get((kind.lower(), title))

    def apply_fault(self, kind: str, title: str) -> str | None:
        return self._failing_applies.get((kind.lower(), title))

    def latency(self, kind: str, title: str) -> float:
        return self._delays.get((kind.lower(), title), 0.0)

    # History

    def record(self, kind: str, title: str, action: ActionKind) -> None:
        with self._lock:
            self._events.append(HostEvent(kind=kind.lower(), title=title, action=action))

    @property
    def events(self) -> tuple[HostEvent, ...]:
        with self._lock:
            return tuple(self._events)

    # Persistence

    @classmethod
    def load(cls, path: PathLike) -> SimulatedHost:
        """Load persisted state; a missing file yields an empty host."""

        state_path = Path(path)
        if not state_path.exists():
            return cls()
        try:
            payload = json.loads(state_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"{state_path}: invalid host state JSON ({exc})") from exc
        if not isinstance(payload, dict):
            raise ValueError(f"{state_path}: host state must be a JSON object")
        version = payload.get("schema_version")
        if version != HOST_STATE_SCHEMA_VERSION:
            raise ValueError(
                f"{state_path}: unsupported host state schema_version {version!r}; "
                f"expected {HOST_STATE_SCHEMA_VERSION}"
            )
        resources = payload.get("resources", {})
        if not isinstance(resources, dict) or not all(
            isinstance(by_title, dict) and all(isinstance(a, dict) for a in by_title.values())
            for by_title in resources.values()
        ):
            raise ValueError(f"{state_path}: 'resources' must map kind -> title -> attributes")
        versions = payload.get("package_versions", {})
        if not isinstance(versions, dict):
            raise ValueError(f"{state_path}: 'package_versions' must be an object")
        return cls(resources, package_versions={str(k): str(v) for k, v in versions.items()})

    def save(self, path: PathLike) -> None:
        payload: dict[str, JSONValue] = {
            "schema_version": HOST_STATE_SCHEMA_VERSION,
            "resources": self.snapshot(),  # type: ignore[dict-item]
        }
        if self._package_versions:
            payload["package_versions"] = dict(sorted(self._package_versions.items()))
        atomic_write(path, json.dumps(payload, indent=2, sort_keys=True) + "\n")


class SimulatedProvider(BaseProvider):
    """Generic provider storing declared attributes on a :class:`SimulatedHost`."""

    provider_name = "simulated"

    def __init__(self, host: SimulatedHost, *, kind: str | None = None) -> None:
        self._host = host
        if kind is not None:
            self.kind = kind.strip().lower()

    @property
    def host(self) -> SimulatedHost:
        return self._host

    async def read(self, resource: Resource) -> CurrentState:
        await self._pause(resource)
        fault = self._host.read_fault(resource.kind, resource.title)
        if fault is not None:
            raise ProviderReadError(fault, provider=self.provider_name, resource=resource.ref)
        attributes = self._host.get(resource.kind, resource.title)
        if attributes is None:
            return CurrentState.absent()
        return CurrentState(exists=True, attributes=attributes)

    async def apply(self, resource: Resource, action: Action) -> ApplyResult:
        await self._pause(resource)
        fault = self._host.apply_fault(resource.kind, resource.title)
        if fault is not None:
            raise ProviderApplyError(fault, provider=self.provider_name, resource=resource.ref)

        if action.kind is ActionKind.DELETE:
            self._host.remove(resource.kind, resource.title)
            self._host.record(resource.kind, resource.title, action.kind)
            return ApplyResult(detail=f"removed {resource.ref}", state=CurrentState.absent())

        merged = dict(action.current.attributes) if action.current.exists else {}
        merged.update(self.materialize(resource))
        self._host.put(resource.kind, resource.title, merged)
        self._host.record(resource.kind, resource.title, action.kind)
        return ApplyResult(
            detail=f"{action.kind.value} {resource.ref}",
            state=CurrentState(exists=True, attributes=merged),
        )

    def materialize(self, resource: Resource) -> dict[str, JSONValue]:
        """Attribute values the host stores once ``resource`` is applied."""

        return dict(resource.attributes)

    async def _pause(self, resource: Resource) -> None:
        seconds = self._host.latency(resource.kind, resource.title)
        if seconds > 0:
            await asyncio.sleep(seconds)


class PackageProvider(SimulatedProvider):
    """Packages: ``ensure`` is ``present``/``installed`` or an exact version."""

    kind = "package"

    def materialize(self, resource: Resource) -> dict[str, JSONValue]:
        attributes = dict(resource.attributes)
        ensure = attributes.get(ENSURE_ATTRIBUTE)
        if ensure is None or ensure in _PACKAGE_PRESENT:
            attributes[ENSURE_ATTRIBUTE] = self._host.package_version(resource.title)
        return attributes

    def is_in_sync(self, attribute: str, current: JSONValue, desired: JSONValue) -> bool:
        if attribute == ENSURE_ATTRIBUTE and desired in _PACKAGE_PRESENT:
            return current is not None and current != ENSURE_ABSENT
        return current == desired


class ServiceProvider(SimulatedProvider):
    """Services: ``ensure`` is ``running``/``stopped``; ``enable`` is a boolean."""

    kind = "service"

    _ENSURE_ALIASES: ClassVar[Mapping[str, str]] = {"true": "running", "false": "stopped"}

    def materialize(self, resource: Resource) -> dict[str, JSONValue]:
        attributes = dict(resource.attributes)
        ensure = attributes.get(ENSURE_ATTRIBUTE)
        if isinstance(ensure, (str, bool)):
            attributes[ENSURE_ATTRIBUTE] = self._normalize_ensure(ensure)
        return attributes

    def is_in_sync(self, attribute: str, current: JSONValue, desired: JSONValue) -> bool:
        if attribute == "enable":
            return flags_match(current, desired)
        if attribute == ENSURE_ATTRIBUTE:
            return self._normalize_ensure(current) == self._normalize_ensure(desired)
        return current == desired

    def _normalize_ensure(self, value: JSONValue) -> JSONValue:
        if isinstance(value, bool):
            return "running" if value else "stopped"
        if isinstance(value, str):
            lowered = value.strip().lower()
            return self._ENSURE_ALIASES.get(lowered, lowered)
        return value


class FileProvider(SimulatedProvider):
    """Files: ``content`` compared verbatim, ``mode`` compared as octal."""

    kind = "file"

    def is_in_sync(self, attribute: str, current: JSONValue, desired: JSONValue) -> bool:
        if attribute == "mode":
            return modes_match(current, desired)
        return current == desired


def simulated_providers(host: SimulatedHost) -> tuple[SimulatedProvider, ...]:
    """Package, service, and file providers sharing one host."""

    return (PackageProvider(host), ServiceProvider(host), FileProvider(host))


__all__ = [
    "FileProvider",
    "HostEvent",
    "PackageProvider",
    "ServiceProvider",
    "SimulatedHost",
    "SimulatedProvider",
    "simulated_providers",
]
