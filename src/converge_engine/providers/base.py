"""
converge-engine: provider interface and registry

File: src/converge_engine/providers/base.py

Purpose
- Abstract provider API through which the reconciler observes and mutates
  one resource kind.
- Kind-keyed registry used to look providers up before a run starts.

Provider contract
- ``read(resource)`` returns the current state and never mutates the system.
- ``apply(resource, action)`` performs one non-noop action.
- ``is_in_sync(attribute, current, desired)`` decides per-attribute equality;
  the default is plain ``==``.
- Exceptions raised from ``read``/``apply`` are recorded per resource by the
  reconciler; they never abort a run.
"""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from converge_engine.domain.errors import ProviderNotFoundError
from converge_engine.domain.models import Action, ApplyResult, CurrentState, JSONValue, Resource


def _normalize_kind(value: str) -> str:
    if not isinstance(value, str):
        raise TypeError("kind must be a string")
    normalized = value.strip().lower()
    if not normalized:
        raise ValueError("kind cannot be empty")
    return normalized


class BaseProvider(abc.ABC):
    """Async provider adapter for one resource kind."""

    kind: str = "resource"
    provider_name: str = "provider"

    @abc.abstractmethod
    async def read(self, resource: Resource) -> CurrentState:
        """Observe the current state of ``resource``."""

    @abc.abstractmethod
    async def apply(self, resource: Resource, action: Action) -> ApplyResult:
        """Apply one create/update/delete action."""

    def is_in_sync(self, attribute: str, current: JSONValue, desired: JSONValue) -> bool:
        return current == desired


class SyncProvider(BaseProvider):
    """Provider with blocking implementations, run on a worker thread.

    Running off the event loop keeps the caller-supplied timeout effective
    for blocking I/O. A timeout abandons the await, not the thread: an
    ``apply_sync`` that overruns keeps running to completion after the
    resource is reported failed. Implementations should make the final
    mutation a single atomic step (see ``utils.fs.atomic_write``) so a late
    finish leaves either the old or the new state, and the next run observes
    whichever it was.
    """

    @abc.abstractmethod
    def read_sync(self, resource: Resource) -> CurrentState:
        """Blocking counterpart of :meth:`read`."""

    @abc.abstractmethod
    def apply_sync(self, resource: Resource, action: Action) -> ApplyResult:
        """Blocking counterpart of :meth:`apply`."""

    async def read(self, resource: Resource) -> CurrentState:
        return await asyncio.to_thread(self.read_sync, resource)

    async def apply(self, resource: Resource, action: Action) -> ApplyResult:
        return await asyncio.to_thread(self.apply_sync, resource, action)


@runtime_checkable
class ProviderProtocol(Protocol):
    """Structural protocol implemented by every provider."""

    kind: str

    async def read(self, resource: Resource) -> CurrentState:
        """Observe the current state of ``resource``."""

    async def apply(self, resource: Resource, action: Action) -> ApplyResult:
        """Apply one create/update/delete action."""

    def is_in_sync(self, attribute: str, current: JSONValue, desired: JSONValue) -> bool:
        """Return whether ``current`` satisfies ``desired`` for ``attribute``."""


class ProviderRegistry:
    """Registry of provider instances keyed by resource kind."""

    def __init__(self, providers: Iterable[ProviderProtocol] = ()) -> None:
        self._providers: dict[str, ProviderProtocol] = {}
        for provider in providers:
            self.register(provider)

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, kind: object) -> bool:
        return isinstance(kind, str) and kind.strip().lower() in self._providers

    def register(
        self,
        provider: ProviderProtocol,
        *,
        kind: str | None = None,
        overwrite: bool = False,
    ) -> None:
        if not isinstance(provider, ProviderProtocol):
            raise TypeError(f"invalid provider object: {type(provider).__name__}")
        normalized = _normalize_kind(kind if kind is not None else provider.kind)
        if normalized in self._providers and not overwrite:
            raise ValueError(f"provider already registered for kind: {normalized}")
        self._providers[normalized] = provider

    def unregister(self, kind: str) -> None:
        self._providers.pop(_normalize_kind(kind), None)

    def is_registered(self, kind: str) -> bool:
        return _normalize_kind(kind) in self._providers

    def kinds(self) -> tuple[str, ...]:
        return tuple(sorted(self._providers))

    def get(self, kind: str) -> ProviderProtocol:
        normalized = _normalize_kind(kind)
        provider = self._providers.get(normalized)
        if provider is None:
            raise ProviderNotFoundError([normalized])
        return provider

    def require(self, kinds: Iterable[str]) -> None:
        """Raise ``ProviderNotFoundError`` naming every kind without a provider."""

        missing = {_normalize_kind(kind) for kind in kinds} - set(self._providers)
        if missing:
            raise ProviderNotFoundError(missing)


__all__ = [
    "BaseProvider",
    "ProviderProtocol",
    "ProviderRegistry",
    "SyncProvider",
]
