"""
converge-engine — CLI smoke contracts

File: tests/integration/test_cli_smoke.py

Purpose
- Enforce CLI behavior for plan/apply/check/config end to end against a
  simulated host persisted between invocations.
- Verify exit codes, command output signals, and persisted state, log, and
  metrics side effects.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from converge_engine.main import ExitCode, cli_entrypoint

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"

SITE_MANIFEST = """
classes:
  base:
    resources:
      motd:
        kind: file
        title: /etc/motd
        attributes:
          content: "managed by converge\\n"
          mode: "0644"
include: [base]
resources:
  sensu-backend:
    kind: package
    attributes:
      ensure: present
  backend:
    kind: service
    title: sensu-backend
    require: ["Package[sensu-backend]", motd]
    attributes:
      ensure: running
      enable: true
"""


def _write(path: Path, contents: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("CONVERGE_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("NO_COLOR", "1")


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    _write(
        tmp_path / "converge.toml",
        """
[paths]
manifest = "site.yaml"
host_state = "state/host.json"
log_dir = "logs/"
""".strip(),
    )
    _write(tmp_path / "site.yaml", SITE_MANIFEST)
    return tmp_path


def _run(workspace: Path, *args: str) -> int:
    return cli_entrypoint([*args, "--config", str(workspace / "converge.toml")])


def _run_json(
    workspace: Path, capsys: pytest.CaptureFixture[str], *args: str
) -> tuple[int, dict[str, object]]:
    capsys.readouterr()
    code = _run(workspace, *args, "--json")
    return code, json.loads(capsys.readouterr().out)


def _host_resources(workspace: Path) -> dict[str, object]:
    payload = json.loads((workspace / "state" / "host.json").read_text(encoding="utf-8"))
    return payload["resources"]


def test_plan_json_reports_apply_order(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code, payload = _run_json(workspace, capsys, "plan")

    assert code == ExitCode.SUCCESS
    assert payload["command"] == "plan"
    graph = payload["graph"]
    assert isinstance(graph, dict)
    assert graph["order"] == ["motd", "sensu-backend", "backend"]
    assert sorted(graph["edges"]) == [["motd", "backend"], ["sensu-backend", "backend"]]
    assert len(str(payload["manifest_digest"])) == 64
    assert not (workspace / "state" / "host.json").exists()


def test_plan_table_output(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(workspace, "plan", "--no-color") == ExitCode.SUCCESS

    output = capsys.readouterr().out
    assert "Resources: 3" in output
    assert "Service[sensu-backend]" in output
    assert "motd, sensu-backend" in output


def test_apply_converges_then_reports_unchanged(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(workspace, "apply", "--no-color") == ExitCode.SUCCESS
    first = capsys.readouterr().out
    assert "changed   Service[sensu-backend] [create]" in first
    assert "Summary: unchanged=0, changed=3, failed=0, skipped=0, total=3" in first

    resources = _host_resources(workspace)
    assert resources["service"] == {"sensu-backend": {"enable": True, "ensure": "running"}}
    assert resources["package"] == {"sensu-backend": {"ensure": "1.0.0"}}

    assert _run(workspace, "apply", "--no-color") == ExitCode.SUCCESS
    second = capsys.readouterr().out
    assert "Summary: unchanged=3, changed=0, failed=0, skipped=0, total=3" in second


def test_apply_writes_run_log(workspace: Path) -> None:
    assert _run(workspace, "apply") == ExitCode.SUCCESS

    [log_path] = sorted((workspace / "logs").glob("*/converge.jsonl"))
    run_id = log_path.parent.name
    for line in log_path.read_text(encoding="utf-8").splitlines():
        assert json.loads(line)["run_id"] == run_id


def test_noop_apply_reports_without_mutating(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(workspace, "apply", "--noop", "--no-color") == ExitCode.SUCCESS

    output = capsys.readouterr().out
    assert "(noop)" in output
    assert "[create]" in output
    assert not (workspace / "state" / "host.json").exists()


def test_apply_twice_proves_idempotency(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code, payload = _run_json(workspace, capsys, "apply", "--twice")

    assert code == ExitCode.SUCCESS
    assert payload["idempotent"] is True
    proof = payload["proof"]
    assert isinstance(proof, dict)
    assert proof["first_run"]["counts"]["changed"] == 3
    assert proof["second_run"]["counts"]["unchanged"] == 3
    assert str(proof["second_run"]["run_id"]).endswith(".2")


def test_twice_with_noop_profile_is_a_usage_error(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(workspace, "apply", "--twice", "--profile", "audit") == ExitCode.CONFIG_ERROR
    assert "cannot be combined with noop" in capsys.readouterr().err


def test_check_passes_and_fails_against_observed_state(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(workspace, "apply") == ExitCode.SUCCESS
    capsys.readouterr()

    passing = _run(
        workspace, "check", "service", "sensu-backend", "--expect", "ensure=running",
        "--expect", "enable=true",
    )
    assert passing == ExitCode.SUCCESS
    assert "OK" in capsys.readouterr().out

    failing = _run(workspace, "check", "service", "sensu-backend", "--expect", "ensure=stopped")
    assert failing == ExitCode.REJECTED
    output = capsys.readouterr().out
    assert "FAIL" in output
    assert "ensure: expected 'stopped', observed 'running'" in output

    code, payload = _run_json(workspace, capsys, "check", "package", "nginx")
    assert code == ExitCode.REJECTED
    assert payload["mismatches"] == ["resource does not exist"]


def test_check_rejects_malformed_expectations(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(workspace, "check", "service", "x", "--expect", "running") == ExitCode.CONFIG_ERROR
    assert "--expect must be KEY=VALUE" in capsys.readouterr().err
    assert _run(workspace, "check", "user", "deploy") == ExitCode.CONFIG_ERROR


def test_config_command_prints_effective_config(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code, payload = _run_json(workspace, capsys, "config", "--profile", "strict")

    assert code == ExitCode.SUCCESS
    assert payload["active_profile"] == "strict"
    config = payload["config"]
    assert isinstance(config, dict)
    assert config["reconciler"]["failure_policy"] == "halt"
    assert config["paths"]["host_state"] == (
        (workspace / "state" / "host.json").resolve().as_posix()
    )


@pytest.mark.parametrize(
    ("manifest", "message"),
    [
        ("resources: [", "invalid YAML"),
        (
            "resources:\n  a: {kind: package, require: b}\n  b: {kind: package, require: a}\n",
            "cycle",
        ),
        ("resources:\n  a: {kind: package, require: ghost}\n", "unknown resource reference"),
        ("resources:\n  deploy: {kind: user}\n", "no provider registered for kind(s): user"),
    ],
)
def test_authoring_errors_exit_with_config_error(
    workspace: Path, capsys: pytest.CaptureFixture[str], manifest: str, message: str
) -> None:
    _write(workspace / "site.yaml", manifest)

    assert _run(workspace, "apply") == ExitCode.CONFIG_ERROR
    stderr = capsys.readouterr().err
    assert stderr.startswith("error:")
    assert message in stderr
    assert not (workspace / "state" / "host.json").exists()


def test_missing_config_file_is_a_config_error(tmp_path: Path) -> None:
    assert cli_entrypoint(["plan", "--config", str(tmp_path / "nope.toml")]) == 2


def test_metrics_are_exported_when_configured(
    workspace: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CONVERGE_OBSERVABILITY_METRICS_PATH", "out/metrics.json")

    assert _run(workspace, "apply") == ExitCode.SUCCESS

    snapshot = json.loads((workspace / "out" / "metrics.json").read_text(encoding="utf-8"))
    assert snapshot["counters"]["converge_runs_total{result=succeeded}"] == 1.0
    assert snapshot["counters"]["converge_resources_total{status=changed}"] == 3.0


def test_local_files_root_manages_real_files(workspace: Path, tmp_path: Path) -> None:
    root = tmp_path / "root"

    assert _run(workspace, "apply", "--local-files", str(root)) == ExitCode.SUCCESS

    assert (root / "etc" / "motd").read_text(encoding="utf-8") == "managed by converge\n"
    assert "file" not in _host_resources(workspace)


def test_module_entrypoint_subprocess(workspace: Path) -> None:
    env = os.environ.copy()
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath if not existing_pythonpath else f"{src_pythonpath}:{existing_pythonpath}"
    )
    completed = subprocess.run(
        [sys.executable, "-m", "converge_engine", "plan", "--json"],
        cwd=workspace,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )

    assert completed.returncode == 0, completed.stderr
    assert json.loads(completed.stdout)["graph"]["order"][-1] == "backend"
