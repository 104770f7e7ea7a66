"""Shared helpers: hashing, filesystem, and async concurrency primitives."""
