"""Diff, apply, and the engine facade."""

from converge_engine.reconcile.diff import compute_action
from converge_engine.reconcile.engine import ConvergenceEngine
from converge_engine.reconcile.reconciler import ReconcilerSettings, StateReconciler, new_run_id

__all__ = [
    "ConvergenceEngine",
    "ReconcilerSettings",
    "StateReconciler",
    "compute_action",
    "new_run_id",
]
