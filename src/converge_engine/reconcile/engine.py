"""Facade wiring manifest, graph builder, reconciler, and verifier together."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog

from converge_engine.domain.errors import ConvergenceCancelledError
from converge_engine.domain.models import ConvergenceReport, ResourceStatus
from converge_engine.observability.metrics import MetricsRegistry
from converge_engine.planning.manifest import Manifest
from converge_engine.planning.resource_graph import Declaration, ResourceGraph, build_resource_graph
from converge_engine.providers.base import ProviderRegistry
from converge_engine.reconcile.reconciler import ReconcilerSettings, StateReconciler, new_run_id
from converge_engine.utils.concurrency import CancellationToken
from converge_engine.verification.idempotency import IdempotencyProof, IdempotencyVerifier

ManifestInput = Manifest | Mapping[str, Declaration]


class ConvergenceEngine:
    """Plan, converge, and prove idempotency for one declared state."""

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: ReconcilerSettings | None = None,
        *,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._reconciler = StateReconciler(registry, settings, metrics=metrics, logger=logger)
        self._verifier = IdempotencyVerifier(logger=logger)

    @property
    def reconciler(self) -> StateReconciler:
        return self._reconciler

    @property
    def verifier(self) -> IdempotencyVerifier:
        return self._verifier

    def plan(self, manifest: ManifestInput) -> ResourceGraph:
        """Build and validate the dependency graph without touching the system.

        A ``Manifest`` is planned from its expanded resources. Any other mapping
        is taken as plain name-to-declaration input, whatever its keys; parse
        YAML documents with ``parse_manifest`` or ``load_manifest`` first.
        """

        if isinstance(manifest, Manifest):
            return manifest.graph()
        return build_resource_graph(manifest)

    async def converge_async(
        self,
        manifest: ManifestInput,
        *,
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ConvergenceReport:
        graph = self.plan(manifest)
        return await self._reconciler.reconcile(graph, run_id=run_id, cancel_token=cancel_token)

    def converge(
        self,
        manifest: ManifestInput,
        *,
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ConvergenceReport:
        return asyncio.run(self.converge_async(manifest, run_id=run_id, cancel_token=cancel_token))

    async def converge_twice_async(
        self,
        manifest: ManifestInput,
        *,
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> IdempotencyProof:
        """Apply with failures caught, apply again, then verify the second pass.

        Raises ``ConvergenceCancelledError`` if the first pass was cancelled,
        ``ConvergenceFailedError`` if it failed, and ``NotIdempotentError`` if
        the second pass was not a no-op.
        """

        graph = self.plan(manifest)
        base_run_id = run_id if run_id is not None else new_run_id()
        first = await self._reconciler.reconcile(
            graph, run_id=f"{base_run_id}.1", cancel_token=cancel_token, pass_number=1
        )
        if first.cancelled:
            self._logger.info(
                "converge_twice_cancelled", run_id=first.run_id, skipped=first.skipped
            )
            raise ConvergenceCancelledError(
                completed=first.names_with_status(ResourceStatus.CHANGED)
                + first.names_with_status(ResourceStatus.UNCHANGED),
                skipped=first.names_with_status(ResourceStatus.SKIPPED),
            )
        self._verifier.catch_failures(first)
        second = await self._reconciler.reconcile(
            graph, run_id=f"{base_run_id}.2", cancel_token=cancel_token, pass_number=2
        )
        return self._verifier.verify(first, second)

    def converge_twice(
        self,
        manifest: ManifestInput,
        *,
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> IdempotencyProof:
        return asyncio.run(
            self.converge_twice_async(manifest, run_id=run_id, cancel_token=cancel_token)
        )


__all__ = ["ConvergenceEngine", "ManifestInput"]
