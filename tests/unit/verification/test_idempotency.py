"""
converge-engine — unit tests for the idempotency verifier

File: tests/unit/verification/test_idempotency.py

Purpose
- Validate the three verdicts (catch failures, catch changes, two-pass proof)
  against hand-built reports.
"""

from __future__ import annotations

import json

import pytest

from converge_engine.domain.errors import ConvergenceFailedError, NotIdempotentError
from converge_engine.domain.models import (
    ActionKind,
    ConvergenceReport,
    ResourceOutcome,
    ResourceStatus,
)
from converge_engine.verification.idempotency import IdempotencyVerifier

DIGEST = "a" * 64


def _report(
    run_id: str,
    *statuses: ResourceStatus,
    digest: str = DIGEST,
    cancelled: bool = False,
) -> ConvergenceReport:
    outcomes = tuple(
        ResourceOutcome(
            name=f"r{index}",
            ref=f"Package[r{index}]",
            status=status,
            action=ActionKind.UPDATE if status is ResourceStatus.CHANGED else ActionKind.NOOP,
            error="boom" if status is ResourceStatus.FAILED else None,
            error_type="ProviderApplyError" if status is ResourceStatus.FAILED else None,
        )
        for index, status in enumerate(statuses)
    )
    return ConvergenceReport(
        run_id=run_id, manifest_digest=digest, outcomes=outcomes, cancelled=cancelled
    )


def test_verify_returns_proof_when_second_pass_is_all_unchanged() -> None:
    first = _report("run.1", ResourceStatus.CHANGED, ResourceStatus.UNCHANGED)
    second = _report("run.2", ResourceStatus.UNCHANGED, ResourceStatus.UNCHANGED)

    proof = IdempotencyVerifier().verify(first, second)

    assert proof.converged == 2
    assert proof.manifest_digest == DIGEST
    payload = proof.to_dict()
    assert payload["first_run"]["run_id"] == "run.1"  # type: ignore[index]
    json.dumps(payload)


@pytest.mark.parametrize(
    ("second", "attribute", "expected"),
    [
        (_report("r", ResourceStatus.CHANGED, ResourceStatus.UNCHANGED), "changed", ("r0",)),
        (_report("r", ResourceStatus.UNCHANGED, ResourceStatus.FAILED), "failed", ("r1",)),
        (_report("r", ResourceStatus.SKIPPED), "unverified", ("r0",)),
    ],
)
def test_verify_names_every_offender(
    second: ConvergenceReport, attribute: str, expected: tuple[str, ...]
) -> None:
    first = _report("first", ResourceStatus.CHANGED, ResourceStatus.CHANGED)

    with pytest.raises(NotIdempotentError) as error:
        IdempotencyVerifier().verify(first, second)

    assert getattr(error.value, attribute) == expected
    assert error.value.resources == expected


def test_cancelled_second_pass_is_not_a_proof() -> None:
    first = _report("first", ResourceStatus.CHANGED)
    second = _report("second", ResourceStatus.UNCHANGED, cancelled=True)

    with pytest.raises(NotIdempotentError):
        IdempotencyVerifier().verify(first, second)


def test_verify_rejects_reports_of_different_manifests() -> None:
    first = _report("first", ResourceStatus.UNCHANGED)
    second = _report("second", ResourceStatus.UNCHANGED, digest="b" * 64)

    with pytest.raises(ValueError, match="different declared states"):
        IdempotencyVerifier().verify(first, second)


def test_catch_failures_and_catch_changes() -> None:
    verifier = IdempotencyVerifier()
    changed = _report("run", ResourceStatus.CHANGED, ResourceStatus.UNCHANGED)
    failed = _report("run", ResourceStatus.CHANGED, ResourceStatus.FAILED)

    assert verifier.catch_failures(changed) is changed
    with pytest.raises(ConvergenceFailedError) as failure:
        verifier.catch_failures(failed)
    assert failure.value.failed == ("r1",)
    assert failure.value.errors == ("Package[r1]: boom",)

    with pytest.raises(NotIdempotentError) as not_idempotent:
        verifier.catch_changes(changed)
    assert not_idempotent.value.changed == ("r0",)

    clean = _report("run", ResourceStatus.UNCHANGED)
    assert verifier.catch_changes(clean) is clean
