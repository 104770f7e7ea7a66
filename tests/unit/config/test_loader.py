"""
converge-engine — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > profile > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from converge_engine.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    settings_from_config,
)
from converge_engine.config.schema import ConfigValidationError
from converge_engine.domain.models import FailurePolicy


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "converge.toml",
        """
[reconciler]
max_concurrency = 4
provider_timeout_seconds = 12.5
""".strip(),
    )
    env = {"CONVERGE_RECONCILER_MAX_CONCURRENCY": "6"}

    from_file = load_config(config_path, environ={})
    from_env = load_config(config_path, environ=env)
    from_cli = load_config(
        config_path,
        environ=env,
        cli_overrides={"reconciler.max_concurrency": 9, "reconciler.noop": None},
    )

    assert from_file["reconciler"]["max_concurrency"] == 4
    assert from_file["reconciler"]["provider_timeout_seconds"] == 12.5
    assert from_file["reconciler"]["failure_policy"] == "isolate"
    assert from_env["reconciler"]["max_concurrency"] == 6
    assert from_cli["reconciler"]["max_concurrency"] == 9
    assert from_cli["reconciler"]["noop"] is False


def test_default_config_file_is_optional(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(environ={})

    assert config["paths"]["host_state"] == (tmp_path / "state" / "host.json").resolve().as_posix()


def test_explicit_missing_or_malformed_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})

    broken = _write_config(tmp_path / "broken.toml", "[reconciler\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_env_values_are_coerced_by_default_type(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "converge.toml", "")
    env = {
        "CONVERGE_RECONCILER_NOOP": "yes",
        "CONVERGE_RECONCILER_PROVIDER_TIMEOUT_SECONDS": "2",
        "CONVERGE_OBSERVABILITY_LOG_LEVEL": "debug",
        "CONVERGE_OBSERVABILITY_METRICS_PATH": "out/metrics.json",
        "CONVERGE_UNRELATED": "ignored",
    }

    config = load_config(config_path, environ=env)

    assert config["reconciler"]["noop"] is True
    assert config["reconciler"]["provider_timeout_seconds"] == 2.0
    assert config["observability"]["log_level"] == "DEBUG"
    assert config["observability"]["metrics_path"] == (
        (tmp_path / "out" / "metrics.json").resolve().as_posix()
    )


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        (
            "CONVERGE_RECONCILER_MAX_CONCURRENCY",
            "many",
            "CONVERGE_RECONCILER_MAX_CONCURRENCY -> reconciler.max_concurrency must be an integer",
        ),
        ("CONVERGE_RECONCILER_NOOP", "maybe", "must be a boolean"),
        ("CONVERGE_RECONCILER_PROVIDER_TIMEOUT_SECONDS", "soon", "must be a number"),
    ],
)
def test_env_coercion_errors_name_the_variable(
    tmp_path: Path, name: str, value: str, message: str
) -> None:
    config_path = _write_config(tmp_path / "converge.toml", "")

    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ={name: value})


def test_invalid_env_value_fails_schema_validation(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "converge.toml", "")

    with pytest.raises(ConfigValidationError, match="reconciler.max_concurrency: must be >= 1"):
        load_config(config_path, environ={"CONVERGE_RECONCILER_MAX_CONCURRENCY": "0"})


def test_profiles_from_argument_and_env(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "converge.toml",
        """
[profiles.ci.reconciler]
provider_timeout_seconds = 30
failure_policy = "halt"
""".strip(),
    )

    strict = load_config(config_path, profile="strict", environ={})
    audit = load_config(config_path, environ={"CONVERGE_PROFILE": "audit"})
    custom = load_config(
        config_path,
        profile="ci",
        environ={"CONVERGE_PROFILE": "audit"},
        cli_overrides={"reconciler.failure_policy": "isolate"},
    )

    assert strict["reconciler"]["failure_policy"] == "halt"
    assert audit["reconciler"]["noop"] is True
    assert custom["reconciler"]["noop"] is False
    assert custom["reconciler"]["provider_timeout_seconds"] == 30.0
    assert custom["reconciler"]["failure_policy"] == "isolate"

    with pytest.raises(ConfigValidationError, match="profile 'nightly' is not defined"):
        load_config(config_path, profile="nightly", environ={})


def test_paths_are_normalized_relative_to_config_dir(tmp_path: Path) -> None:
    absolute_state = (tmp_path / "elsewhere" / "host.json").resolve().as_posix()
    config_path = _write_config(
        tmp_path / "conf" / "converge.toml",
        f"""
[paths]
manifest = "../site/manifest.yaml"
host_state = "{absolute_state}"
""".strip(),
    )

    config = load_config(config_path, environ={})
    base = (tmp_path / "conf").resolve()

    assert config["paths"]["manifest"] == (tmp_path / "site" / "manifest.yaml").resolve().as_posix()
    assert config["paths"]["host_state"] == absolute_state
    assert config["paths"]["log_dir"] == (base / "logs").as_posix()


def test_secret_fields_in_file_are_rejected(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "converge.toml",
        """
[observability]
api_key = "sk-live"
""".strip(),
    )

    with pytest.raises(ConfigValidationError, match="embedded secret values are forbidden"):
        load_config(config_path, environ={})


def test_dump_is_deterministic_json(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "converge.toml", "")

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    payload = json.loads(first)
    assert list(payload) == sorted(payload)
    assert payload["meta"] == {"schema_version": 1}


def test_settings_from_config(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "converge.toml", "")

    settings = settings_from_config(load_config(config_path, profile="strict", environ={}))

    assert settings.failure_policy is FailurePolicy.HALT
    assert settings.max_concurrency == 1
    assert settings.provider_timeout_seconds == 300.0
    assert settings.noop is False
