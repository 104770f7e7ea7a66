"""Unit tests for point-in-time resource state checks."""

from __future__ import annotations

import pytest

from converge_engine.domain.errors import ManifestError, ProviderReadError, StateMismatchError
from converge_engine.providers.base import ProviderRegistry
from converge_engine.providers.simulated import SimulatedHost, simulated_providers
from converge_engine.verification.state_check import StateExpectation, assert_state, check_state


def _registry(host: SimulatedHost) -> ProviderRegistry:
    return ProviderRegistry(simulated_providers(host))


async def test_matching_state_passes_using_provider_equality() -> None:
    host = SimulatedHost({"service": {"backend": {"ensure": "running", "enable": "yes"}}})
    expectation = StateExpectation("Service", " backend ", {"ensure": True, "enable": True})

    result = await check_state(_registry(host), expectation)

    assert expectation.ref == "Service[backend]"
    assert result.passed
    assert result.exists
    assert result.to_dict()["observed"] == {"ensure": "running", "enable": "yes"}


async def test_mismatches_are_listed_per_attribute() -> None:
    host = SimulatedHost({"file": {"/etc/motd": {"content": "hi", "mode": "0600"}}})
    expectation = StateExpectation("file", "/etc/motd", {"content": "hello", "mode": "600"})

    result = await check_state(_registry(host), expectation)

    assert not result.passed
    assert result.mismatches == ("content: expected 'hello', observed 'hi'",)


async def test_absence_expectations() -> None:
    host = SimulatedHost({"package": {"telnet": {"ensure": "1.0.0"}}})
    registry = _registry(host)

    present = await check_state(
        registry, StateExpectation("package", "telnet", {"ensure": "absent"})
    )
    missing = await check_state(registry, StateExpectation("package", "vim", {"ensure": "present"}))
    gone = await check_state(registry, StateExpectation("package", "vim", {"ensure": "absent"}))

    assert present.mismatches == ("expected absent, but resource exists",)
    assert missing.mismatches == ("resource does not exist",)
    assert gone.passed


async def test_slow_read_times_out_as_read_error() -> None:
    host = SimulatedHost()
    host.delay("service", "backend", 5.0)

    with pytest.raises(ProviderReadError, match="read exceeded"):
        await check_state(
            _registry(host), StateExpectation("service", "backend"), timeout_seconds=0.05
        )


def test_assert_state_raises_on_mismatch() -> None:
    host = SimulatedHost({"service": {"backend": {"ensure": "stopped"}}})
    registry = _registry(host)

    with pytest.raises(StateMismatchError) as error:
        assert_state(registry, StateExpectation("service", "backend", {"ensure": "running"}))
    assert error.value.ref == "Service[backend]"

    host.put("service", "backend", {"ensure": "running"})
    assert assert_state(registry, StateExpectation("service", "backend", {"ensure": "running"}))


def test_reserved_keys_are_not_attributes() -> None:
    expectation = StateExpectation("service", "backend", {"require": "x"})

    with pytest.raises(ManifestError):
        _ = expectation.resource
