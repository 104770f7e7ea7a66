"""
converge-engine — convergence facade integration tests

File: tests/integration/test_converge_twice.py

Purpose
- Drive manifest parsing, graph building, reconciliation, and idempotency
  verification together through ``ConvergenceEngine``.
"""

from __future__ import annotations

import pytest

from converge_engine.domain.errors import (
    ConvergenceCancelledError,
    ConvergenceFailedError,
    NotIdempotentError,
)
from converge_engine.domain.models import (
    Action,
    ApplyResult,
    CurrentState,
    FailurePolicy,
    Resource,
    ResourceStatus,
)
from converge_engine.observability.metrics import RUNS_TOTAL, MetricsRegistry
from converge_engine.planning.manifest import loads_manifest, parse_manifest
from converge_engine.providers.base import BaseProvider, ProviderRegistry
from converge_engine.providers.simulated import PackageProvider, SimulatedHost, simulated_providers
from converge_engine.reconcile.engine import ConvergenceEngine
from converge_engine.reconcile.reconciler import ReconcilerSettings
from converge_engine.utils.concurrency import CancellationToken

MONITORING_SITE = """
classes:
  sensu:
    resources:
      sensu-backend:
        kind: package
        attributes: {ensure: present}
      sensu-config:
        kind: file
        title: /etc/sensu/backend.yml
        require: Package[sensu-backend]
        attributes:
          content: "state-dir: /var/lib/sensu\\n"
          mode: "0640"
      sensu-service:
        kind: service
        title: sensu-backend
        require: [sensu-config]
        attributes: {ensure: running, enable: true}
include: [sensu]
resources:
  motd:
    kind: file
    title: /etc/motd
    attributes: {content: "monitored\\n"}
"""


class _RunOnceProvider(BaseProvider):
    """Command-like resource that never records that it ran."""

    kind = "exec"
    provider_name = "exec"

    def __init__(self) -> None:
        self.runs = 0

    async def read(self, resource: Resource) -> CurrentState:
        return CurrentState(exists=True, attributes={"ran": False})

    async def apply(self, resource: Resource, action: Action) -> ApplyResult:
        self.runs += 1
        return ApplyResult(detail="ran")


class _InterruptingPackageProvider(PackageProvider):
    """Cancels the run from inside the first apply, like a Ctrl-C mid-run."""

    def __init__(self, host: SimulatedHost, token: CancellationToken) -> None:
        super().__init__(host)
        self._token = token
        self.applies = 0

    async def apply(self, resource: Resource, action: Action) -> ApplyResult:
        self.applies += 1
        self._token.cancel()
        return await super().apply(resource, action)


def _engine(host: SimulatedHost, **kwargs: object) -> ConvergenceEngine:
    registry = ProviderRegistry(simulated_providers(host))
    return ConvergenceEngine(registry, **kwargs)  # type: ignore[arg-type]


def test_converge_twice_proves_a_site_manifest() -> None:
    host = SimulatedHost()
    metrics = MetricsRegistry()
    manifest = loads_manifest(MONITORING_SITE)

    proof = _engine(host, metrics=metrics).converge_twice(manifest, run_id="site")

    assert proof.first.run_id == "site.1"
    assert proof.second.run_id == "site.2"
    assert proof.first.changed == 4
    assert proof.converged == 4
    assert proof.manifest_digest == manifest.digest
    assert [outcome.name for outcome in proof.first.outcomes] == [
        "sensu-backend",
        "sensu-config",
        "sensu-service",
        "motd",
    ]
    assert host.get("file", "/etc/sensu/backend.yml") == {
        "content": "state-dir: /var/lib/sensu\n",
        "mode": "0640",
    }
    assert metrics.get_counter(RUNS_TOTAL, labels={"result": "succeeded"}) == 2.0


def test_converge_accepts_plain_declarations() -> None:
    host = SimulatedHost()
    engine = _engine(host)
    declarations = {
        "web": {"kind": "service", "require": "nginx", "attributes": {"ensure": "running"}},
        "nginx": {"kind": "package", "attributes": {"ensure": "installed"}},
    }

    graph = engine.plan(declarations)
    report = engine.converge(declarations)

    assert [resource.name for resource in graph.topological_order()] == ["nginx", "web"]
    assert report.succeeded
    assert host.get("service", "web") == {"ensure": "running"}


def test_failed_first_pass_stops_before_second_pass() -> None:
    host = SimulatedHost()
    host.fail_apply("package", "sensu-backend", "mirror unreachable")

    with pytest.raises(ConvergenceFailedError) as error:
        _engine(host).converge_twice(loads_manifest(MONITORING_SITE))

    assert error.value.failed == ("sensu-backend", "sensu-config", "sensu-service")
    assert "mirror unreachable" in error.value.errors[0]
    assert host.get("service", "sensu-backend") is None
    assert host.get("file", "/etc/motd") is not None


def test_halt_policy_skips_remaining_resources() -> None:
    host = SimulatedHost()
    host.fail_apply("package", "sensu-backend")
    settings = ReconcilerSettings(failure_policy=FailurePolicy.HALT)

    report = _engine(host, settings=settings).converge(loads_manifest(MONITORING_SITE))

    assert report.names_with_status(ResourceStatus.FAILED) == (
        "sensu-backend",
        "sensu-config",
        "sensu-service",
    )
    assert report.names_with_status(ResourceStatus.SKIPPED) == ("motd",)
    assert report.outcome("sensu-service").propagated_from == "sensu-backend"
    assert host.get("file", "/etc/motd") is None


def test_resource_that_always_drifts_is_not_idempotent() -> None:
    host = SimulatedHost()
    runner = _RunOnceProvider()
    registry = ProviderRegistry([*simulated_providers(host), runner])
    engine = ConvergenceEngine(registry)
    manifest = {
        "nginx": {"kind": "package"},
        "reload": {"kind": "exec", "require": "nginx", "attributes": {"ran": True}},
    }

    with pytest.raises(NotIdempotentError) as error:
        engine.converge_twice(manifest)

    assert error.value.changed == ("reload",)
    assert runner.runs == 2


def test_noop_engine_never_mutates_the_host() -> None:
    host = SimulatedHost({"file": {"/etc/motd": {"content": "old\n"}}})
    engine = _engine(host, settings=ReconcilerSettings(noop=True))

    report = engine.converge(loads_manifest(MONITORING_SITE))

    assert report.noop
    assert host.events == ()
    assert host.get("file", "/etc/motd") == {"content": "old\n"}
    assert report.outcome("motd").changes[0].current == "old\n"


def test_plain_declarations_may_use_document_key_names() -> None:
    host = SimulatedHost()
    engine = _engine(host)
    declarations = {
        "resources": Resource(name="resources", kind="package", attributes={"ensure": "1.2.0"}),
        "include": {"kind": "service", "require": "resources", "attributes": {"ensure": "running"}},
    }

    report = engine.converge(declarations)

    assert report.succeeded
    assert [outcome.name for outcome in report.outcomes] == ["resources", "include"]
    assert host.get("package", "resources") == {"ensure": "1.2.0"}


def test_parsed_document_may_declare_a_resource_named_kind() -> None:
    host = SimulatedHost()
    document = {
        "resources": {
            "kind": {"kind": "package", "attributes": {"ensure": "present"}},
            "agent": {"kind": "service", "require": "kind", "attributes": {"ensure": "running"}},
        }
    }

    proof = _engine(host).converge_twice(parse_manifest(document))

    assert [outcome.name for outcome in proof.first.outcomes] == ["kind", "agent"]
    assert proof.converged == 2


def test_cancelled_first_pass_is_reported_as_cancellation_not_a_verdict() -> None:
    host = SimulatedHost()
    token = CancellationToken()
    packages = _InterruptingPackageProvider(host, token)
    engine = ConvergenceEngine(ProviderRegistry([packages]))
    manifest = {name: {"kind": "package"} for name in ("a", "b", "c")}

    with pytest.raises(ConvergenceCancelledError) as error:
        engine.converge_twice(manifest, cancel_token=token, run_id="interrupted")

    assert error.value.completed == ("a",)
    assert error.value.skipped == ("b", "c")
    assert packages.applies == 1
    assert host.get("package", "b") is None
