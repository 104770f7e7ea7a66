"""
converge-engine: declarative configuration convergence.

File: src/converge_engine/__init__.py

Purpose
- Package root. Turns a declared desired state (resources plus ordering
  edges) into an ordered, idempotent sequence of provider operations.

Layout
- ``planning``: manifest loading and the resource dependency graph.
- ``reconcile``: per-resource diff/apply and the engine facade.
- ``verification``: idempotency proofs and point-in-time state checks.
- ``providers``: provider interface, registry, simulated and local-file providers.
- ``config``, ``observability``, ``ui``: ambient runtime surfaces.

Importing the package has no side effects (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
