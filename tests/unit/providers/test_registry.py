"""Unit tests for the provider registry and sync provider bridge."""

from __future__ import annotations

import threading

import pytest

from converge_engine.domain.errors import ProviderNotFoundError
from converge_engine.domain.models import (
    Action,
    ActionKind,
    ApplyResult,
    CurrentState,
    Resource,
)
from converge_engine.providers.base import ProviderProtocol, ProviderRegistry, SyncProvider
from converge_engine.providers.simulated import PackageProvider, ServiceProvider, SimulatedHost


class _ThreadRecordingProvider(SyncProvider):
    kind = "user"

    def __init__(self) -> None:
        self.threads: list[str] = []

    def read_sync(self, resource: Resource) -> CurrentState:
        self.threads.append(threading.current_thread().name)
        return CurrentState(exists=True, attributes={"shell": "/bin/sh"})

    def apply_sync(self, resource: Resource, action: Action) -> ApplyResult:
        self.threads.append(threading.current_thread().name)
        return ApplyResult(detail="ok")


def test_register_get_and_require() -> None:
    host = SimulatedHost()
    registry = ProviderRegistry([PackageProvider(host)])
    registry.register(ServiceProvider(host))

    assert registry.kinds() == ("package", "service")
    assert "Service" in registry
    assert len(registry) == 2
    assert registry.get("PACKAGE").kind == "package"

    registry.require(["package", "service"])
    with pytest.raises(ProviderNotFoundError) as error:
        registry.require(["package", "user", "group"])
    assert error.value.kinds == ("group", "user")


def test_duplicate_registration_needs_overwrite() -> None:
    host = SimulatedHost()
    registry = ProviderRegistry([PackageProvider(host)])
    replacement = PackageProvider(host)

    with pytest.raises(ValueError, match="already registered"):
        registry.register(replacement)
    registry.register(replacement, overwrite=True)
    assert registry.get("package") is replacement

    registry.unregister("package")
    assert not registry.is_registered("package")
    with pytest.raises(ProviderNotFoundError):
        registry.get("package")


def test_register_rejects_objects_without_the_provider_api() -> None:
    with pytest.raises(TypeError):
        ProviderRegistry().register(object())  # type: ignore[arg-type]


def test_alias_kind_registration() -> None:
    registry = ProviderRegistry()
    registry.register(PackageProvider(SimulatedHost()), kind="apt")

    assert registry.kinds() == ("apt",)


async def test_sync_provider_runs_off_the_event_loop_thread() -> None:
    provider = _ThreadRecordingProvider()
    resource = Resource(name="deploy", kind="user")

    assert isinstance(provider, ProviderProtocol)
    current = await provider.read(resource)
    await provider.apply(resource, Action(resource, ActionKind.UPDATE, current))

    assert current.attributes["shell"] == "/bin/sh"
    assert provider.threads
    assert threading.current_thread().name not in provider.threads
