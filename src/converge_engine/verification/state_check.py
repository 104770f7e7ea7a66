"""Point-in-time assertions on the observed state of a single resource."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from converge_engine.constants import DEFAULT_PROVIDER_TIMEOUT_SECONDS, ENSURE_ABSENT
from converge_engine.domain.errors import ProviderReadError, StateMismatchError
from converge_engine.domain.models import CurrentState, JSONValue, Resource
from converge_engine.providers.base import ProviderRegistry
from converge_engine.utils.concurrency import run_with_timeout


@dataclass(frozen=True, slots=True)
class StateExpectation:
    """Expected attribute values for ``Kind[title]``.

    ``{"ensure": "absent"}`` expects the resource not to exist.
    """

    kind: str
    title: str
    expected: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", self.kind.strip().lower())
        object.__setattr__(self, "title", self.title.strip())
        object.__setattr__(self, "expected", MappingProxyType(dict(self.expected)))

    @property
    def resource(self) -> Resource:
        return Resource(
            name=f"{self.kind}:{self.title}",
            kind=self.kind,
            title=self.title,
            attributes=dict(self.expected),
        )

    @property
    def ref(self) -> str:
        return self.resource.ref


@dataclass(frozen=True, slots=True)
class StateCheckResult:
    expectation: StateExpectation
    exists: bool
    mismatches: tuple[str, ...] = ()
    observed: Mapping[str, JSONValue] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return not self.mismatches

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "ref": self.expectation.ref,
            "passed": self.passed,
            "exists": self.exists,
            "mismatches": list(self.mismatches),
            "observed": dict(self.observed),
        }


async def check_state(
    registry: ProviderRegistry,
    expectation: StateExpectation,
    *,
    timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
) -> StateCheckResult:
    """Read the resource through its provider and compare with ``expectation``."""

    provider = registry.get(expectation.kind)
    resource = expectation.resource
    try:
        current: CurrentState = await run_with_timeout(provider.read(resource), timeout_seconds)
    except TimeoutError as exc:
        raise ProviderReadError(
            f"read exceeded {timeout_seconds:g}s",
            provider=str(getattr(provider, "provider_name", expectation.kind)),
            resource=resource.ref,
        ) from exc

    wants_absent = resource.wants_absent
    mismatches: list[str] = []
    if wants_absent:
        if current.exists:
            mismatches.append(f"expected {ENSURE_ABSENT}, but resource exists")
    elif not current.exists:
        mismatches.append("resource does not exist")
    else:
        for attribute, desired in expectation.expected.items():
            observed = current.attributes.get(attribute)
            if not provider.is_in_sync(attribute, observed, desired):
                mismatches.append(f"{attribute}: expected {desired!r}, observed {observed!r}")

    return StateCheckResult(
        expectation=expectation,
        exists=current.exists,
        mismatches=tuple(mismatches),
        observed=dict(current.attributes),
    )


def assert_state(
    registry: ProviderRegistry,
    expectation: StateExpectation,
    *,
    timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
) -> StateCheckResult:
    """Blocking check that raises ``StateMismatchError`` on any mismatch."""

    result = asyncio.run(check_state(registry, expectation, timeout_seconds=timeout_seconds))
    if not result.passed:
        raise StateMismatchError(expectation.ref, result.mismatches)
    return result


__all__ = ["StateCheckResult", "StateExpectation", "assert_state", "check_state"]
