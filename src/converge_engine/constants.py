"""Stable constants shared across engine components."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
REPORT_SCHEMA_VERSION: Final[int] = 1
HOST_STATE_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
DEFAULT_MANIFEST_PATH: Final[PurePosixPath] = PurePosixPath("manifest.yaml")
DEFAULT_HOST_STATE_PATH: Final[PurePosixPath] = PurePosixPath("state/host.json")
LOGS_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Manifest declaration keys that are not managed attributes.
RESERVED_DECLARATION_KEYS: Final[frozenset[str]] = frozenset(
    {"kind", "title", "attributes", "require", "before"}
)

# Special attribute steering create/delete decisions.
ENSURE_ATTRIBUTE: Final[str] = "ensure"
ENSURE_ABSENT: Final[str] = "absent"

DEFAULT_PROVIDER_TIMEOUT_SECONDS: Final[float] = 300.0
DEFAULT_MAX_CONCURRENCY: Final[int] = 1

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_HOST_STATE_PATH",
    "DEFAULT_MANIFEST_PATH",
    "DEFAULT_MAX_CONCURRENCY",
    "DEFAULT_PROVIDER_TIMEOUT_SECONDS",
    "ENSURE_ABSENT",
    "ENSURE_ATTRIBUTE",
    "HOST_STATE_SCHEMA_VERSION",
    "LOGS_DIR",
    "REPORT_SCHEMA_VERSION",
    "RESERVED_DECLARATION_KEYS",
]
