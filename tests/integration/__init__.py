"""
converge-engine integration tests.

File: tests/integration/__init__.py

Purpose
- Test package marker for end-to-end engine and CLI runs against the simulated host.
"""
