"""Idempotency proofs and resource state checks."""

from converge_engine.verification.idempotency import IdempotencyProof, IdempotencyVerifier
from converge_engine.verification.state_check import (
    StateCheckResult,
    StateExpectation,
    assert_state,
    check_state,
)

__all__ = [
    "IdempotencyProof",
    "IdempotencyVerifier",
    "StateCheckResult",
    "StateExpectation",
    "assert_state",
    "check_state",
]
