"""
converge-engine: idempotency verification

File: src/converge_engine/verification/idempotency.py

Purpose
- Prove that re-running a converged manifest is a no-op.
- Gate a single run on "no failures" or "no changes".

Verdicts
- ``catch_failures``: any failed resource raises ``ConvergenceFailedError``.
- ``catch_changes``: any changed or failed resource raises ``NotIdempotentError``.
- ``verify(first, second)``: both reports must describe the same declared
  state, and the second must be complete, with nothing changed or failed.

The verifier only judges reports; it never re-applies anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from converge_engine.domain.errors import ConvergenceFailedError, NotIdempotentError
from converge_engine.domain.models import ConvergenceReport, JSONValue, ResourceStatus


@dataclass(frozen=True, slots=True)
class IdempotencyProof:
    """Evidence that a second pass over the same declared state changed nothing."""

    first: ConvergenceReport
    second: ConvergenceReport

    @property
    def manifest_digest(self) -> str:
        return self.second.manifest_digest

    @property
    def converged(self) -> int:
        return self.second.unchanged

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "manifest_digest": self.manifest_digest,
            "first_run": self.first.to_dict(),
            "second_run": self.second.to_dict(),
        }


class IdempotencyVerifier:
    """Judge convergence reports."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def catch_failures(self, report: ConvergenceReport) -> ConvergenceReport:
        failed = [outcome for outcome in report.outcomes if outcome.status is ResourceStatus.FAILED]
        if failed:
            self._logger.warning(
                "verify_failures_caught",
                run_id=report.run_id,
                failed=[outcome.name for outcome in failed],
            )
            raise ConvergenceFailedError(
                [outcome.name for outcome in failed],
                errors=[f"{outcome.ref}: {outcome.error}" for outcome in failed],
            )
        return report

    def catch_changes(self, report: ConvergenceReport) -> ConvergenceReport:
        changed = report.names_with_status(ResourceStatus.CHANGED)
        failed = report.names_with_status(ResourceStatus.FAILED)
        if changed or failed:
            self._logger.warning(
                "verify_changes_caught",
                run_id=report.run_id,
                changed=list(changed),
                failed=list(failed),
            )
            raise NotIdempotentError(changed=changed, failed=failed)
        return report

    def verify(self, first: ConvergenceReport, second: ConvergenceReport) -> IdempotencyProof:
        """Return a proof or raise ``NotIdempotentError`` naming the offenders.

        Raises ``ValueError`` when the reports describe different declared states.
        """

        if first.manifest_digest != second.manifest_digest:
            raise ValueError(
                "reports describe different declared states: "
                f"{first.manifest_digest[:12]} != {second.manifest_digest[:12]}"
            )

        changed = second.names_with_status(ResourceStatus.CHANGED)
        failed = second.names_with_status(ResourceStatus.FAILED)
        unverified = second.names_with_status(ResourceStatus.SKIPPED)
        if changed or failed or unverified or second.cancelled:
            self._logger.warning(
                "verify_not_idempotent",
                run_id=second.run_id,
                changed=list(changed),
                failed=list(failed),
                unverified=list(unverified),
                cancelled=second.cancelled,
            )
            raise NotIdempotentError(changed=changed, failed=failed, unverified=unverified)

        self._logger.info(
            "verify_idempotent",
            run_id=second.run_id,
            manifest_digest=second.manifest_digest,
            resources=second.total,
        )
        return IdempotencyProof(first=first, second=second)


__all__ = ["IdempotencyProof", "IdempotencyVerifier"]
