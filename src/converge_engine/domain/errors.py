"""
converge-engine: error taxonomy

File: src/converge_engine/domain/errors.py

Purpose
- One exception hierarchy for every failure class the engine can surface.

Error classes
- Authoring time (abort before any apply): ``ManifestError``, ``GraphCycleError``,
  ``UnknownReferenceError``, ``ProviderNotFoundError``.
- Runtime, per resource (recorded in the report, never raised out of a run):
  ``ProviderReadError``, ``ProviderApplyError``, ``ProviderTimeoutError``.
- Verification (the caller's final verdict): ``NotIdempotentError``,
  ``ConvergenceFailedError``, ``StateMismatchError``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence


class ConvergeError(Exception):
    """Base class for all engine errors."""


class ManifestError(ConvergeError, ValueError):
    """Raised when a desired-state document cannot be parsed into resources."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        self.path = path
        self.detail = message
        rendered = message if path is None else f"{path}: {message}"
        super().__init__(rendered)


class GraphCycleError(ConvergeError, ValueError):
    """Raised when a cycle is detected in the resource dependency graph."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "Resource graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Resource graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class UnknownReferenceError(ConvergeError, LookupError):
    """Raised when a dependency names a resource that was never declared."""

    missing: tuple[tuple[str, str], ...]

    def __init__(self, missing: Iterable[tuple[str, str]]) -> None:
        self.missing = tuple(missing)
        rendered = ", ".join(
            f"{resource} -> {reference}" for resource, reference in self.missing
        )
        super().__init__(f"unknown resource reference(s): {rendered or '<none>'}")


class ProviderNotFoundError(ConvergeError, LookupError):
    """Raised when no provider is registered for one or more resource kinds."""

    def __init__(self, kinds: Iterable[str]) -> None:
        self.kinds = tuple(sorted(set(kinds)))
        super().__init__(f"no provider registered for kind(s): {', '.join(self.kinds)}")


class ProviderError(ConvergeError, RuntimeError):
    """Base normalized provider error with machine-readable fields."""

    def __init__(
        self,
        *,
        provider: str,
        code: str,
        detail: str,
        resource: str | None = None,
    ) -> None:
        self.provider = provider.strip() or "provider"
        self.code = code
        self.detail = _normalize_detail(detail)
        self.resource = resource

        parts = [f"provider={self.provider}", f"code={self.code}"]
        if self.resource is not None:
            parts.append(f"resource={self.resource}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


class ProviderReadError(ProviderError):
    """Raised when a provider cannot observe the current state of a resource."""

    def __init__(
        self, detail: str, *, provider: str = "provider", resource: str | None = None
    ) -> None:
        super().__init__(provider=provider, code="read", detail=detail, resource=resource)


class ProviderApplyError(ProviderError):
    """Raised when a provider fails to apply an action."""

    def __init__(
        self, detail: str, *, provider: str = "provider", resource: str | None = None
    ) -> None:
        super().__init__(provider=provider, code="apply", detail=detail, resource=resource)


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds the caller-supplied timeout."""

    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        resource: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(provider=provider, code="timeout", detail=detail, resource=resource)


class NotIdempotentError(ConvergeError):
    """Raised when a repeated run still changed or failed resources."""

    def __init__(
        self,
        *,
        changed: Sequence[str] = (),
        failed: Sequence[str] = (),
        unverified: Sequence[str] = (),
    ) -> None:
        self.changed = tuple(changed)
        self.failed = tuple(failed)
        self.unverified = tuple(unverified)

        parts: list[str] = []
        if self.changed:
            parts.append(f"changed: {', '.join(self.changed)}")
        if self.failed:
            parts.append(f"failed: {', '.join(self.failed)}")
        if self.unverified:
            parts.append(f"unverified: {', '.join(self.unverified)}")
        super().__init__("run is not idempotent; " + ("; ".join(parts) or "no detail"))

    @property
    def resources(self) -> tuple[str, ...]:
        """Every resource that prevented the convergence proof."""

        return self.changed + self.failed + self.unverified


class ConvergenceFailedError(ConvergeError):
    """Raised when a run that must succeed reported failed resources."""

    def __init__(self, failed: Sequence[str], *, errors: Sequence[str] = ()) -> None:
        self.failed = tuple(failed)
        self.errors = tuple(errors)
        lines = [f"{len(self.failed)} resource(s) failed: {', '.join(self.failed)}"]
        lines.extend(f"- {error}" for error in self.errors)
        super().__init__("\n".join(lines))


class ConvergenceCancelledError(ConvergeError):
    """Raised when a run was cancelled before every resource was attempted."""

    def __init__(self, *, completed: Sequence[str] = (), skipped: Sequence[str] = ()) -> None:
        self.completed = tuple(completed)
        self.skipped = tuple(skipped)
        super().__init__(
            f"run cancelled after {len(self.completed)} resource(s); "
            f"{len(self.skipped)} skipped: {', '.join(self.skipped) or 'none'}"
        )


class StateMismatchError(ConvergeError):
    """Raised when the observed state of a resource differs from expectations."""

    def __init__(self, ref: str, mismatches: Sequence[str]) -> None:
        self.ref = ref
        self.mismatches = tuple(mismatches)
        super().__init__(f"{ref} does not match expectations: {'; '.join(self.mismatches)}")


def _normalize_detail(value: object) -> str:
    text = str(value).strip()
    if not text:
        return "unknown error"
    return " ".join(text.split())


__all__ = [
    "ConvergeError",
    "ConvergenceCancelledError",
    "ConvergenceFailedError",
    "GraphCycleError",
    "ManifestError",
    "NotIdempotentError",
    "ProviderApplyError",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderReadError",
    "ProviderTimeoutError",
    "StateMismatchError",
    "UnknownReferenceError",
]
