"""
converge-engine — unit tests for convergence metrics

File: tests/unit/observability/test_metrics.py

Purpose
- Validate counters, gauges, distributions, run accounting, and JSON export.
"""

from __future__ import annotations

import json
import threading
from typing import TYPE_CHECKING

import pytest

from converge_engine.domain.models import (
    ActionKind,
    ConvergenceReport,
    ResourceOutcome,
    ResourceStatus,
)
from converge_engine.observability.metrics import (
    PROVIDER_CALL_SECONDS,
    RESOURCES_TOTAL,
    RUNS_TOTAL,
    MetricsRegistry,
)

if TYPE_CHECKING:
    from pathlib import Path


def _report(*statuses: ResourceStatus, cancelled: bool = False) -> ConvergenceReport:
    outcomes = tuple(
        ResourceOutcome(
            name=f"r{index}",
            ref=f"Package[r{index}]",
            status=status,
            action=ActionKind.CREATE if status is ResourceStatus.CHANGED else ActionKind.NOOP,
        )
        for index, status in enumerate(statuses)
    )
    return ConvergenceReport(
        run_id="run-1", manifest_digest="0" * 64, outcomes=outcomes, cancelled=cancelled
    )


def test_counters_gauges_and_distributions() -> None:
    registry = MetricsRegistry()

    registry.inc("applies", labels={"kind": "package"})
    registry.inc("applies", 2, labels={"kind": "package"})
    registry.set_gauge("in_flight", 3)
    registry.adjust_gauge("in_flight", -1)
    registry.observe(PROVIDER_CALL_SECONDS, 0.5, labels={"operation": "read"})
    registry.observe(PROVIDER_CALL_SECONDS, 1.5, labels={"operation": "read"})

    assert registry.get_counter("applies", labels={"kind": "package"}) == 3.0
    assert registry.get_counter("applies") == 0.0
    assert registry.get_gauge("in_flight") == 2.0
    assert registry.get_distribution(PROVIDER_CALL_SECONDS, labels={"operation": "read"}) == {
        "count": 2,
        "sum": 2.0,
        "min": 0.5,
        "max": 1.5,
        "avg": 1.0,
    }


@pytest.mark.parametrize(
    "call",
    [
        lambda registry: registry.inc("x", -1),
        lambda registry: registry.inc("", 1),
        lambda registry: registry.set_gauge("x", float("nan")),
        lambda registry: registry.observe("x", True),
        lambda registry: registry.inc("x", labels={"kind": ""}),
    ],
)
def test_invalid_metric_inputs_are_rejected(call: object) -> None:
    with pytest.raises(ValueError):
        call(MetricsRegistry())  # type: ignore[operator]


def test_record_report_counts_statuses_and_verdicts() -> None:
    registry = MetricsRegistry()

    registry.record_report(_report(ResourceStatus.CHANGED, ResourceStatus.UNCHANGED))
    registry.record_report(_report(ResourceStatus.FAILED, ResourceStatus.SKIPPED))
    registry.record_report(_report(ResourceStatus.SKIPPED, cancelled=True))

    assert registry.get_counter(RESOURCES_TOTAL, labels={"status": "changed"}) == 1.0
    assert registry.get_counter(RESOURCES_TOTAL, labels={"status": "skipped"}) == 2.0
    assert registry.get_counter(RUNS_TOTAL, labels={"result": "succeeded"}) == 1.0
    assert registry.get_counter(RUNS_TOTAL, labels={"result": "failed"}) == 1.0
    assert registry.get_counter(RUNS_TOTAL, labels={"result": "cancelled"}) == 1.0


def test_snapshot_is_deterministic_and_exportable(tmp_path: Path) -> None:
    registry = MetricsRegistry()
    registry.inc(RESOURCES_TOTAL, labels={"status": "unchanged", "kind": "file"})
    registry.inc("a_first")

    snapshot = registry.snapshot()
    output = registry.export_json(tmp_path / "metrics" / "run.json")

    assert list(snapshot["counters"]) == [  # type: ignore[arg-type]
        "a_first",
        "converge_resources_total{kind=file,status=unchanged}",
    ]
    assert json.loads(output.read_text(encoding="utf-8")) == json.loads(registry.to_json())
    assert registry.to_json() == registry.to_json()


def test_concurrent_increments_are_not_lost() -> None:
    registry = MetricsRegistry()

    def _worker() -> None:
        for _ in range(500):
            registry.inc("ticks")

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.get_counter("ticks") == 4000.0
