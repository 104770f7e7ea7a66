"""Domain models and error taxonomy for the convergence engine."""

from converge_engine.domain.errors import (
    ConvergeError,
    ConvergenceCancelledError,
    ConvergenceFailedError,
    GraphCycleError,
    ManifestError,
    NotIdempotentError,
    ProviderApplyError,
    ProviderError,
    ProviderNotFoundError,
    ProviderReadError,
    ProviderTimeoutError,
    StateMismatchError,
    UnknownReferenceError,
)
from converge_engine.domain.models import (
    Action,
    ActionKind,
    ApplyResult,
    AttributeChange,
    ConvergenceReport,
    CurrentState,
    FailurePolicy,
    JSONValue,
    Resource,
    ResourceOutcome,
    ResourceStatus,
    manifest_digest,
)

__all__ = [
    "Action",
    "ActionKind",
    "ApplyResult",
    "AttributeChange",
    "ConvergeError",
    "ConvergenceCancelledError",
    "ConvergenceFailedError",
    "ConvergenceReport",
    "CurrentState",
    "FailurePolicy",
    "GraphCycleError",
    "JSONValue",
    "ManifestError",
    "NotIdempotentError",
    "ProviderApplyError",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderReadError",
    "ProviderTimeoutError",
    "Resource",
    "ResourceOutcome",
    "ResourceStatus",
    "StateMismatchError",
    "UnknownReferenceError",
    "manifest_digest",
]
