"""
converge-engine: state reconciler

File: src/converge_engine/reconcile/reconciler.py

Purpose
- Walk a resource graph in dependency order, read each resource's current
  state, compute the diff, and apply the single action that converges it.
- The only component that mutates the managed system.

Scheduling
- Resources become ready once every prerequisite has succeeded; ready
  resources start in topological-order position.
- ``max_concurrency`` bounds how many resources are in flight. With the
  default of 1 the visit order equals ``ResourceGraph.topological_order()``.
- Outcomes are always reported in topological order, so reports from
  sequential and concurrent runs over the same state compare equal.

Failure handling
- Provider errors and timeouts are recorded on the failing resource and
  never abort the run.
- ``isolate``: transitive dependents of a failed resource fail with
  ``propagated_from``; independent branches continue.
- ``halt``: as above, and every other unstarted resource is skipped.
- The cancellation token is checked between resources only; in-flight
  resources complete and unstarted ones are skipped.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from heapq import heappop, heappush
from typing import Any, TypeVar

import structlog

from converge_engine.constants import DEFAULT_MAX_CONCURRENCY, DEFAULT_PROVIDER_TIMEOUT_SECONDS
from converge_engine.domain.errors import (
    ProviderApplyError,
    ProviderError,
    ProviderReadError,
    ProviderTimeoutError,
)
from converge_engine.domain.models import (
    Action,
    ActionKind,
    ConvergenceReport,
    CurrentState,
    FailurePolicy,
    Resource,
    ResourceOutcome,
    ResourceStatus,
    manifest_digest,
)
from converge_engine.observability.logging import correlation_scope
from converge_engine.observability.metrics import IN_FLIGHT, PROVIDER_CALL_SECONDS, MetricsRegistry
from converge_engine.planning.resource_graph import ResourceGraph
from converge_engine.providers.base import ProviderProtocol, ProviderRegistry
from converge_engine.reconcile.diff import compute_action
from converge_engine.utils.concurrency import BoundedSemaphore, CancellationToken, run_with_timeout

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ReconcilerSettings:
    """Run-wide knobs for one reconciliation pass."""

    failure_policy: FailurePolicy = FailurePolicy.ISOLATE
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    noop: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "failure_policy", FailurePolicy(self.failure_policy))
        if isinstance(self.max_concurrency, bool) or not isinstance(self.max_concurrency, int):
            raise ValueError("max_concurrency must be an integer")
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        if isinstance(self.provider_timeout_seconds, bool) or not isinstance(
            self.provider_timeout_seconds, (int, float)
        ):
            raise ValueError("provider_timeout_seconds must be a number")
        if self.provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be > 0")


@dataclass(slots=True)
class _RunState:
    order: tuple[Resource, ...]
    index: dict[str, int]
    waiting_on: dict[str, set[str]]
    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    ready: list[tuple[int, str]] = field(default_factory=list)
    halted: bool = False


def new_run_id() -> str:
    """Sortable run identifier: UTC timestamp plus a random suffix."""

    stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


class StateReconciler:
    """Converge a :class:`ResourceGraph` through registered providers."""

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: ReconcilerSettings | None = None,
        *,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._registry = registry
        self._settings = settings if settings is not None else ReconcilerSettings()
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._clock = clock

    @property
    def settings(self) -> ReconcilerSettings:
        return self._settings

    def reconcile_sync(
        self,
        graph: ResourceGraph,
        *,
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        pass_number: int = 1,
    ) -> ConvergenceReport:
        """Blocking wrapper around :meth:`reconcile` for callers without a loop."""

        return asyncio.run(
            self.reconcile(
                graph, run_id=run_id, cancel_token=cancel_token, pass_number=pass_number
            )
        )

    async def reconcile(
        self,
        graph: ResourceGraph,
        *,
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        pass_number: int = 1,
    ) -> ConvergenceReport:
        """Run one reconciliation pass and return its report.

        Raises ``GraphCycleError`` or ``ProviderNotFoundError`` before touching
        any resource; every other failure is recorded in the report.
        """

        order = graph.topological_order()
        self._registry.require(resource.kind for resource in order)

        token = cancel_token if cancel_token is not None else CancellationToken()
        resolved_run_id = run_id if run_id is not None else new_run_id()
        settings = self._settings
        state = _RunState(
            order=order,
            index={resource.name: position for position, resource in enumerate(order)},
            waiting_on={
                resource.name: set(graph.dependencies(resource.name)) for resource in order
            },
        )
        for resource in order:
            if not state.waiting_on[resource.name]:
                heappush(state.ready, (state.index[resource.name], resource.name))

        started_at = datetime.now(tz=UTC)
        with correlation_scope(run_id=resolved_run_id, pass_number=str(pass_number)):
            self._logger.info(
                "reconcile_started",
                resources=len(order),
                failure_policy=settings.failure_policy.value,
                max_concurrency=settings.max_concurrency,
                noop=settings.noop,
            )

            slots = BoundedSemaphore(settings.max_concurrency)
            running: dict[asyncio.Task[ResourceOutcome], str] = {}
            try:
                while True:
                    while state.ready and slots.available > 0 and not state.halted:
                        if token.is_cancelled:
                            break
                        _, name = heappop(state.ready)
                        if name in state.outcomes:
                            continue
                        await slots.acquire()
                        task = asyncio.create_task(self._run_slot(graph.resource(name), slots))
                        running[task] = name

                    if not running:
                        break

                    done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                    for task in sorted(done, key=lambda item: state.index[running[item]]):
                        name = running.pop(task)
                        self._settle(graph, state, name, task.result())
            except asyncio.CancelledError:
                for task in running:
                    task.cancel()
                await asyncio.gather(*running, return_exceptions=True)
                raise

            unstarted = [
                resource.name for resource in order if resource.name not in state.outcomes
            ]
            cancelled = token.is_cancelled and bool(unstarted)
            reason = "cancelled" if cancelled else "halted"
            for name in unstarted:
                state.outcomes[name] = ResourceOutcome(
                    name=name, ref=graph.resource(name).ref, status=ResourceStatus.SKIPPED
                )
                self._logger.info("resource_skipped", resource=name, reason=reason)

            report = ConvergenceReport(
                run_id=resolved_run_id,
                manifest_digest=manifest_digest(graph.resources),
                outcomes=tuple(state.outcomes[resource.name] for resource in order),
                cancelled=cancelled,
                noop=settings.noop,
                started_at=started_at,
                finished_at=datetime.now(tz=UTC),
            )
            if self._metrics is not None:
                self._metrics.record_report(report)
            self._logger.info(
                "reconcile_finished",
                cancelled=report.cancelled,
                halted=state.halted,
                **report.counts(),
            )
        return report

    def _settle(
        self,
        graph: ResourceGraph,
        state: _RunState,
        name: str,
        outcome: ResourceOutcome,
    ) -> None:
        state.outcomes[name] = outcome
        if outcome.status is not ResourceStatus.FAILED:
            for child in graph.dependents(name):
                waiting = state.waiting_on[child]
                waiting.discard(name)
                if not waiting and child not in state.outcomes:
                    heappush(state.ready, (state.index[child], child))
            return

        for dependent in graph.dependents(name, transitive=True):
            if dependent in state.outcomes:
                continue
            state.outcomes[dependent] = ResourceOutcome(
                name=dependent,
                ref=graph.resource(dependent).ref,
                status=ResourceStatus.FAILED,
                error_type="DependencyFailed",
                error=f"prerequisite {name} failed",
                propagated_from=name,
            )
            self._logger.warning(
                "resource_dependency_failed", resource=dependent, propagated_from=name
            )
        if self._settings.failure_policy is FailurePolicy.HALT:
            state.halted = True

    async def _run_slot(self, resource: Resource, slots: BoundedSemaphore) -> ResourceOutcome:
        if self._metrics is not None:
            self._metrics.adjust_gauge(IN_FLIGHT, 1)
        try:
            with correlation_scope(resource=resource.name):
                return await self._reconcile_one(resource)
        finally:
            slots.release()
            if self._metrics is not None:
                self._metrics.adjust_gauge(IN_FLIGHT, -1)

    async def _reconcile_one(self, resource: Resource) -> ResourceOutcome:
        started = self._clock()
        provider = self._registry.get(resource.kind)
        action: Action | None = None
        try:
            current = await self._call(provider, resource, "read", provider.read(resource))
            action = self._diff(provider, resource, current)
            if action.is_noop:
                self._logger.debug("resource_unchanged", resource=resource.name)
                return self._outcome(resource, ResourceStatus.UNCHANGED, started, action)
            if self._settings.noop:
                self._logger.info(
                    "resource_would_change",
                    resource=resource.name,
                    action=action.kind.value,
                    attributes=[change.attribute for change in action.changes],
                )
                return self._outcome(resource, ResourceStatus.CHANGED, started, action)
            await self._call(provider, resource, "apply", provider.apply(resource, action))
        except ProviderError as exc:
            self._logger.warning(
                "resource_failed",
                resource=resource.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._outcome(resource, ResourceStatus.FAILED, started, action, error=exc)

        self._logger.info(
            "resource_changed",
            resource=resource.name,
            action=action.kind.value,
            attributes=[change.attribute for change in action.changes],
        )
        return self._outcome(resource, ResourceStatus.CHANGED, started, action)

    def _diff(
        self, provider: ProviderProtocol, resource: Resource, current: CurrentState
    ) -> Action:
        try:
            return compute_action(resource, current, provider)
        except Exception as exc:
            raise ProviderError(
                provider=str(getattr(provider, "provider_name", resource.kind)),
                code="diff",
                detail=f"{type(exc).__name__}: {exc}",
                resource=resource.ref,
            ) from exc

    async def _call(
        self,
        provider: ProviderProtocol,
        resource: Resource,
        phase: str,
        call: Awaitable[T],
    ) -> T:
        provider_name = str(getattr(provider, "provider_name", resource.kind))
        timeout = float(self._settings.provider_timeout_seconds)
        started = self._clock()
        try:
            return await run_with_timeout(call, timeout)
        except TimeoutError as exc:
            raise ProviderTimeoutError(
                f"{phase} exceeded {timeout:g}s",
                provider=provider_name,
                resource=resource.ref,
                timeout_seconds=timeout,
            ) from exc
        except ProviderError:
            raise
        except Exception as exc:
            error_type = ProviderReadError if phase == "read" else ProviderApplyError
            raise error_type(
                f"{type(exc).__name__}: {exc}", provider=provider_name, resource=resource.ref
            ) from exc
        finally:
            if self._metrics is not None:
                self._metrics.observe(
                    PROVIDER_CALL_SECONDS,
                    max(0.0, self._clock() - started),
                    labels={"kind": resource.kind, "phase": phase},
                )

    def _outcome(
        self,
        resource: Resource,
        status: ResourceStatus,
        started: float,
        action: Action | None,
        *,
        error: ProviderError | None = None,
    ) -> ResourceOutcome:
        return ResourceOutcome(
            name=resource.name,
            ref=resource.ref,
            status=status,
            action=action.kind if action is not None else ActionKind.NOOP,
            changes=action.changes if action is not None else (),
            error_type=type(error).__name__ if error is not None else None,
            error=str(error) if error is not None else None,
            duration_seconds=max(0.0, self._clock() - started),
        )


__all__ = ["ReconcilerSettings", "StateReconciler", "new_run_id"]
