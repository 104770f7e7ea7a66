"""
converge-engine: configuration schema and validation

File: src/converge_engine/config/schema.py

Purpose
- Authoritative defaults and strict validation for ``converge.toml``.

Sections
- ``meta``: schema version.
- ``reconciler``: failure policy, concurrency, provider timeout, noop mode.
- ``paths``: manifest, simulated host state, log directory.
- ``observability``: log level/format/sinks, redaction, metrics export path.
- ``profiles``: named partial overlays (``strict``, ``parallel``, ``audit``).

Validation returns structured ``(path, message)`` issues. Unknown keys are
rejected; secret-looking keys are rejected with a dedicated message.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from converge_engine.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_HOST_STATE_PATH,
    DEFAULT_MANIFEST_PATH,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    LOGS_DIR,
)

BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "parallel", "audit")
FAILURE_POLICIES: Final[tuple[str, ...]] = ("isolate", "halt")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "text")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = ("api_key", "private_key", "client_secret")
_REDACTED: Final[str] = "<redacted>"

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "manifest"),
    ("paths", "host_state"),
    ("paths", "log_dir"),
    ("observability", "metrics_path"),
)


class MetaConfig(TypedDict):
    schema_version: int


class ReconcilerConfig(TypedDict):
    failure_policy: Literal["isolate", "halt"]
    max_concurrency: int
    provider_timeout_seconds: float
    noop: bool


class PathsConfig(TypedDict):
    manifest: str
    host_state: str
    log_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_to_stdout: bool
    redact_secrets: bool
    metrics_path: str | None


class ProfileOverlay(TypedDict, total=False):
    reconciler: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class ConvergeConfig(TypedDict):
    meta: MetaConfig
    reconciler: ReconcilerConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[ConvergeConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "reconciler": {
        "failure_policy": "isolate",
        "max_concurrency": DEFAULT_MAX_CONCURRENCY,
        "provider_timeout_seconds": DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        "noop": False,
    },
    "paths": {
        "manifest": DEFAULT_MANIFEST_PATH.as_posix(),
        "host_state": DEFAULT_HOST_STATE_PATH.as_posix(),
        "log_dir": f"{LOGS_DIR.as_posix()}/",
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_to_stdout": False,
        "redact_secrets": True,
        "metrics_path": None,
    },
    "profiles": {
        "strict": {"reconciler": {"failure_policy": "halt"}},
        "parallel": {"reconciler": {"max_concurrency": 8}},
        "audit": {"reconciler": {"noop": True}},
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_SectionValidator = Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]


def default_config() -> ConvergeConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < CONFIG_SCHEMA_VERSION:
        return (
            f"schema version {found_version} is older than supported {CONFIG_SCHEMA_VERSION}; "
            "upgrade converge.toml to the current schema"
        )
    if found_version > CONFIG_SCHEMA_VERSION:
        return (
            f"schema version {found_version} is newer than supported {CONFIG_SCHEMA_VERSION}; "
            "upgrade converge-engine"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; scalars in ``overlay`` win."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the result."""

    materialized = _deep_copy_mapping(config)
    selected = profile.strip() if profile is not None else ""
    if not selected:
        return materialized

    profiles = materialized.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate ``config`` and return structured issues with dotted paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected and selected not in normalized.get("profiles", {}):
        issues.add("profiles", f"profile {selected!r} is not defined")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate ``config`` and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a redacted copy safe to print or log."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    sections: dict[str, _SectionValidator] = {
        "meta": _validate_meta,
        "reconciler": _validate_reconciler,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, {*sections, "profiles"}, "", issues)

    out: dict[str, Any] = {}
    for key, validator in sections.items():
        if key not in payload:
            issues.add(key, "missing required section")
            continue
        section = _as_object(payload[key], key, issues)
        if section is not None:
            out[key] = validator(section, key, issues, False)

    profiles = _as_object(payload.get("profiles", {}), "profiles", issues)
    if profiles is not None:
        out["profiles"] = _validate_profiles(profiles, "profiles", issues, sections)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        field_path = _join(path, "schema_version")
        parsed = _as_int(payload["schema_version"], field_path, issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != CONFIG_SCHEMA_VERSION:
                issues.add(field_path, migration_guidance(parsed))
    return out


def _validate_reconciler(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"failure_policy", "max_concurrency", "provider_timeout_seconds", "noop"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "failure_policy" in payload:
        policy = _as_enum(
            payload["failure_policy"],
            _join(path, "failure_policy"),
            issues,
            allowed_values=FAILURE_POLICIES,
        )
        if policy is not None:
            out["failure_policy"] = policy
    if "max_concurrency" in payload:
        concurrency = _as_int(
            payload["max_concurrency"], _join(path, "max_concurrency"), issues, minimum=1
        )
        if concurrency is not None:
            out["max_concurrency"] = concurrency
    if "provider_timeout_seconds" in payload:
        field_path = _join(path, "provider_timeout_seconds")
        timeout = _as_float(payload["provider_timeout_seconds"], field_path, issues)
        if timeout is not None:
            if timeout <= 0:
                issues.add(field_path, "must be > 0")
            else:
                out["provider_timeout_seconds"] = timeout
    if "noop" in payload:
        noop = _as_bool(payload["noop"], _join(path, "noop"), issues)
        if noop is not None:
            out["noop"] = noop
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"manifest", "host_state", "log_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed & set(payload)):
        parsed = _as_path_text(payload[key], _join(path, key), issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "log_to_stdout", "redact_secrets", "metrics_path"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed - {"metrics_path"}, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw_level = payload["log_level"]
        level = _as_enum(
            raw_level.upper() if isinstance(raw_level, str) else raw_level,
            _join(path, "log_level"),
            issues,
            allowed_values=LOG_LEVELS,
        )
        if level is not None:
            out["log_level"] = level
    if "log_format" in payload:
        log_format = _as_enum(
            payload["log_format"], _join(path, "log_format"), issues, allowed_values=LOG_FORMATS
        )
        if log_format is not None:
            out["log_format"] = log_format
    for key in ("log_to_stdout", "redact_secrets"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag
    if "metrics_path" in payload:
        raw_metrics = payload["metrics_path"]
        if raw_metrics is None:
            out["metrics_path"] = None
        else:
            metrics_path = _as_path_text(raw_metrics, _join(path, "metrics_path"), issues)
            if metrics_path is not None:
                out["metrics_path"] = metrics_path
    elif not partial:
        out["metrics_path"] = None
    return out


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    sections: Mapping[str, _SectionValidator],
) -> dict[str, Any]:
    overlay_sections = {key: sections[key] for key in ("reconciler", "paths", "observability")}
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(payload[profile_name], profile_path, issues)
        if overlay is None:
            continue
        _reject_unknown_keys(overlay, set(overlay_sections), profile_path, issues)
        validated: dict[str, Any] = {}
        for section_name, validator in overlay_sections.items():
            if section_name not in overlay:
                continue
            section_path = _join(profile_path, section_name)
            section = _as_object(overlay[section_name], section_path, issues)
            if section is not None:
                validated[section_name] = validator(section, section_path, issues, True)
        out[profile_name] = validated
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        if _looks_sensitive_key(key):
            issues.add(_join(path, key), "embedded secret values are forbidden")
        else:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _NON_ALNUM.sub("_", key.strip().lower()).strip("_")
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(token in _SENSITIVE_KEY_TOKENS for token in normalized.split("_") if token)


def _join(path: str, key: str) -> str:
    return key if not path else f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        return {
            key: _REDACTED if _looks_sensitive_key(key) else _redact_value(value[key], key)
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "FAILURE_POLICIES",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "ConvergeConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
