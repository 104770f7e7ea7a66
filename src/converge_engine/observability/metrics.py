"""Thread-safe convergence metrics with deterministic JSON export."""

from __future__ import annotations

import json
import math
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final

from converge_engine.domain.models import ConvergenceReport, JSONValue
from converge_engine.utils.fs import atomic_write

if TYPE_CHECKING:
    from collections.abc import Mapping

_MetricLabels = tuple[tuple[str, str], ...]

_METRIC_NAME_MAX_LEN: Final[int] = 128
_LABEL_VALUE_MAX_LEN: Final[int] = 256

RESOURCES_TOTAL: Final[str] = "converge_resources_total"
RUNS_TOTAL: Final[str] = "converge_runs_total"
PROVIDER_CALL_SECONDS: Final[str] = "converge_provider_call_seconds"
IN_FLIGHT: Final[str] = "converge_in_flight_resources"


@dataclass(frozen=True, order=True, slots=True)
class _MetricKey:
    name: str
    labels: _MetricLabels


@dataclass(slots=True)
class _DistributionState:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def as_dict(self) -> dict[str, JSONValue]:
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count if self.count else 0.0,
        }


class MetricsRegistry:
    """In-memory counters, gauges, and distributions for reconciliation runs."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._created_at = datetime.now(tz=UTC)
        self._counters: dict[_MetricKey, float] = {}
        self._gauges: dict[_MetricKey, float] = {}
        self._distributions: dict[_MetricKey, _DistributionState] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        delta = _as_finite_float(amount, path="amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")
        key = _metric_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + delta

    def set_gauge(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key = _metric_key(name, labels)
        gauge_value = _as_finite_float(value, path="value")
        with self._lock:
            self._gauges[key] = gauge_value

    def adjust_gauge(
        self,
        name: str,
        delta: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key = _metric_key(name, labels)
        step = _as_finite_float(delta, path="delta")
        with self._lock:
            self._gauges[key] = self._gauges.get(key, 0.0) + step

    def observe(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key = _metric_key(name, labels)
        sample = _as_finite_float(value, path="value")
        with self._lock:
            state = self._distributions.setdefault(key, _DistributionState())
            state.observe(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        key = _metric_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        key = _metric_key(name, labels)
        with self._lock:
            return self._gauges.get(key)

    def get_distribution(
        self,
        name: str,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> dict[str, JSONValue] | None:
        key = _metric_key(name, labels)
        with self._lock:
            state = self._distributions.get(key)
            return None if state is None else state.as_dict()

    def record_report(self, report: ConvergenceReport) -> None:
        """Count every outcome of ``report`` by status plus the run verdict."""

        for outcome in report.outcomes:
            self.inc(RESOURCES_TOTAL, labels={"status": outcome.status.value})
        if report.cancelled:
            verdict = "cancelled"
        elif report.failed:
            verdict = "failed"
        else:
            verdict = "succeeded"
        self.inc(RUNS_TOTAL, labels={"result": verdict})

    def snapshot(self) -> dict[str, JSONValue]:
        """Return a deterministic snapshot with stable key ordering."""

        with self._lock:
            created_at = self._created_at
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            distributions = [
                (key, state.as_dict()) for key, state in sorted(self._distributions.items())
            ]

        return {
            "metadata": {
                "created_at": created_at.isoformat(timespec="seconds").replace("+00:00", "Z"),
            },
            "counters": {_metric_identifier(key): value for key, value in counters},
            "gauges": {_metric_identifier(key): value for key, value in gauges},
            "distributions": {_metric_identifier(key): value for key, value in distributions},
        }

    def to_json(self, *, indent: int | None = None) -> str:
        payload = self.snapshot()
        if indent is None:
            return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return json.dumps(payload, sort_keys=True, indent=indent, ensure_ascii=False)

    def export_json(self, path: str | Path, *, indent: int = 2) -> Path:
        output_path = Path(path)
        atomic_write(output_path, self.to_json(indent=indent) + "\n")
        return output_path


def _metric_key(name: str, labels: Mapping[str, str] | None) -> _MetricKey:
    return _MetricKey(name=_validate_metric_name(name), labels=_normalize_labels(labels))


def _metric_identifier(key: _MetricKey) -> str:
    if not key.labels:
        return key.name
    labels = ",".join(f"{k}={v}" for k, v in key.labels)
    return f"{key.name}{{{labels}}}"


def _validate_metric_name(name: str) -> str:
    if not isinstance(name, str):
        raise ValueError(f"metric name must be a string, got {type(name).__name__}")
    normalized = name.strip()
    if not normalized:
        raise ValueError("metric name must not be empty")
    if len(normalized) > _METRIC_NAME_MAX_LEN:
        raise ValueError(f"metric name must be <= {_METRIC_NAME_MAX_LEN} characters")
    return normalized


def _normalize_labels(labels: Mapping[str, str] | None) -> _MetricLabels:
    if not labels:
        return ()
    out: list[tuple[str, str]] = []
    for key, value in labels.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError("label keys must be non-empty strings")
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"label value for {key!r} must be a non-empty string")
        if len(value) > _LABEL_VALUE_MAX_LEN:
            raise ValueError(f"label value for {key!r} exceeds {_LABEL_VALUE_MAX_LEN} characters")
        out.append((key.strip(), value.strip()))
    return tuple(sorted(out))


def _as_finite_float(value: float, *, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path} must be numeric, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"{path} must be finite")
    return parsed


__all__ = [
    "IN_FLIGHT",
    "PROVIDER_CALL_SECONDS",
    "RESOURCES_TOTAL",
    "RUNS_TOTAL",
    "MetricsRegistry",
]
