"""Command-line interface router for converge-engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from converge_engine.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    redact_config,
    settings_from_config,
)
from converge_engine.domain.errors import (
    ConvergenceCancelledError,
    ConvergenceFailedError,
    GraphCycleError,
    ManifestError,
    NotIdempotentError,
    ProviderNotFoundError,
    UnknownReferenceError,
)
from converge_engine.domain.models import ConvergenceReport, JSONValue
from converge_engine.observability import (
    LoggingConfig,
    MetricsRegistry,
    correlation_scope,
    setup_structured_logging,
    shutdown_logging,
)
from converge_engine.planning import Manifest, ResourceGraph, load_manifest
from converge_engine.providers import (
    LocalFileProvider,
    ProviderRegistry,
    SimulatedHost,
    simulated_providers,
)
from converge_engine.reconcile import ConvergenceEngine, new_run_id
from converge_engine.ui.render import CLIRenderer, create_renderer
from converge_engine.utils.concurrency import CancellationToken
from converge_engine.verification import StateExpectation, check_state

_AUTHORING_ERRORS = (ManifestError, GraphCycleError, UnknownReferenceError, ProviderNotFoundError)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="converge",
        description=(
            "converge-engine: declarative configuration convergence.\n\n"
            "Common workflows:\n"
            "  converge plan site.yaml            Show the ordered resource graph\n"
            "  converge apply site.yaml --noop    Report what would change\n"
            "  converge apply site.yaml --twice   Apply and prove idempotency\n"
            "  converge check service backend --expect ensure=running\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to converge TOML config (default: ./converge.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--host-state",
        default=None,
        help="Simulated host state JSON (overrides paths.host_state).",
    )
    common.add_argument(
        "--local-files",
        default=None,
        metavar="ROOT",
        help="Manage 'file' resources on disk under ROOT instead of the simulated host.",
    )
    common.add_argument("--verbose", "-v", action="store_true", default=False)
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    plan_parser = subparsers.add_parser(
        "plan", parents=[common], help="Validate a manifest and print its apply order"
    )
    plan_parser.add_argument("manifest", nargs="?", default=None, help="Manifest YAML path")
    plan_parser.set_defaults(handler=_cmd_plan)

    apply_parser = subparsers.add_parser(
        "apply",
        parents=[common],
        help="Converge the system to a manifest",
        description=(
            "Reconcile every declared resource in dependency order.\n\n"
            "Examples:\n"
            "  converge apply site.yaml\n"
            "  converge apply site.yaml --noop\n"
            "  converge apply site.yaml --twice --profile strict\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    apply_parser.add_argument("manifest", nargs="?", default=None, help="Manifest YAML path")
    apply_parser.add_argument(
        "--noop", action="store_true", default=False, help="Diff only; apply nothing"
    )
    apply_parser.add_argument(
        "--twice",
        action="store_true",
        default=False,
        help="Apply, apply again, and fail unless the second pass changed nothing",
    )
    apply_parser.add_argument(
        "--max-concurrency", type=int, default=None, help="Override reconciler.max_concurrency"
    )
    apply_parser.set_defaults(handler=_cmd_apply)

    check_parser = subparsers.add_parser(
        "check", parents=[common], help="Assert the observed state of one resource"
    )
    check_parser.add_argument("kind", help="Resource kind, e.g. service")
    check_parser.add_argument("title", help="Resource title, e.g. backend")
    check_parser.add_argument(
        "--expect",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Expected attribute value (repeatable; values parsed as YAML scalars)",
    )
    check_parser.set_defaults(handler=_cmd_check)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective (redacted) config"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_plan(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    manifest = _load_manifest(args, config)
    registry, _ = _build_registry(args, config)
    graph = _plan(manifest, registry)

    if args.json:
        _emit_json(
            {
                "command": "plan",
                "manifest": manifest.source,
                "manifest_digest": manifest.digest,
                "graph": graph.serialize(),
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Manifest", manifest.source or "<inline>")
    renderer.kv("Digest", manifest.digest)
    renderer.kv("Resources", len(graph))
    rows = [
        [str(position), resource.name, resource.ref, ", ".join(graph.dependencies(resource.name))]
        for position, resource in enumerate(graph.topological_order(), start=1)
    ]
    renderer.table(["#", "NAME", "REF", "REQUIRES"], rows, title="Apply order:")
    return 0


def _cmd_apply(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    settings = settings_from_config(config)
    if args.twice and settings.noop:
        raise CLIError("--twice cannot be combined with noop mode", exit_code=2)

    manifest = _load_manifest(args, config)
    registry, host = _build_registry(args, config)
    _plan(manifest, registry)

    run_id = new_run_id()
    observability = config["observability"]
    logging_handle = setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=config["paths"]["log_dir"],
            level=observability["log_level"],
            log_format=observability["log_format"],
            log_to_stdout=observability["log_to_stdout"],
            redact_secrets=observability["redact_secrets"],
        )
    )
    metrics = MetricsRegistry()
    engine = ConvergenceEngine(registry, settings, metrics=metrics)
    renderer = _get_renderer(args)
    token = CancellationToken()

    try:
        with correlation_scope(run_id=run_id), _cancel_on_interrupt(token):
            if args.twice:
                return _apply_twice(args, engine, manifest, run_id, token, renderer)
            report = engine.converge(manifest, run_id=run_id, cancel_token=token)
            _emit_report(args, renderer, report)
            return 0 if report.succeeded else 1
    finally:
        if not settings.noop:
            host.save(config["paths"]["host_state"])
        metrics_path = observability["metrics_path"]
        if metrics_path is not None:
            metrics.export_json(metrics_path)
        shutdown_logging(logging_handle)


def _apply_twice(
    args: argparse.Namespace,
    engine: ConvergenceEngine,
    manifest: Manifest,
    run_id: str,
    token: CancellationToken,
    renderer: CLIRenderer,
) -> int:
    try:
        proof = engine.converge_twice(manifest, run_id=run_id, cancel_token=token)
    except ConvergenceCancelledError as exc:
        if args.json:
            _emit_json({"command": "apply", "cancelled": True, "error": str(exc)})
        else:
            renderer.fail(str(exc))
        return 1
    except (ConvergenceFailedError, NotIdempotentError) as exc:
        if args.json:
            _emit_json({"command": "apply", "idempotent": False, "error": str(exc)})
        else:
            renderer.fail(str(exc))
        return 1

    if args.json:
        _emit_json({"command": "apply", "idempotent": True, "proof": proof.to_dict()})
        return 0
    renderer.report(proof.first)
    renderer.report(proof.second)
    renderer.ok(f"idempotent: {proof.converged} resource(s) converged, second pass changed none")
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    expected = _parse_expectations(args.expect)
    registry, _ = _build_registry(args, config)
    try:
        expectation = StateExpectation(args.kind, args.title, expected)
        ref = expectation.ref
        registry.require([expectation.kind])
    except _AUTHORING_ERRORS as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    timeout = float(config["reconciler"]["provider_timeout_seconds"])
    result = asyncio.run(check_state(registry, expectation, timeout_seconds=timeout))

    if args.json:
        _emit_json({"command": "check", **result.to_dict()})
        return 0 if result.passed else 1

    renderer = _get_renderer(args)
    if result.passed:
        renderer.ok(ref)
        return 0
    renderer.fail(ref)
    for mismatch in result.mismatches:
        renderer.text(f"    {mismatch}")
    return 1


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if args.json:
        _emit_json(
            {"command": "config", "active_profile": args.profile, "config": redact_config(config)}
        )
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Active profile", args.profile or "(default)")
    renderer.text(dump_effective_config(config))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {
        "paths.host_state": args.host_state,
        "reconciler.noop": True if getattr(args, "noop", False) else None,
        "reconciler.max_concurrency": getattr(args, "max_concurrency", None),
    }
    try:
        return load_config(args.config_path, profile=args.profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_manifest(args: argparse.Namespace, config: Mapping[str, Any]) -> Manifest:
    path = Path(args.manifest) if args.manifest else Path(config["paths"]["manifest"])
    try:
        return load_manifest(path)
    except ManifestError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _build_registry(
    args: argparse.Namespace, config: Mapping[str, Any]
) -> tuple[ProviderRegistry, SimulatedHost]:
    try:
        host = SimulatedHost.load(config["paths"]["host_state"])
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    registry = ProviderRegistry(simulated_providers(host))
    if args.local_files:
        registry.register(LocalFileProvider(args.local_files), overwrite=True)
    return registry, host


def _plan(manifest: Manifest, registry: ProviderRegistry) -> ResourceGraph:
    try:
        graph = manifest.graph()
        graph.topological_order()
        registry.require({resource.kind for resource in graph})
    except _AUTHORING_ERRORS as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    return graph


def _parse_expectations(pairs: Sequence[str]) -> dict[str, JSONValue]:
    expected: dict[str, JSONValue] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise CLIError(f"--expect must be KEY=VALUE, got {pair!r}", exit_code=2)
        try:
            value = yaml.safe_load(raw) if raw.strip() else raw
        except yaml.YAMLError:
            value = raw
        if not (value is None or isinstance(value, (bool, int, float, str))):
            value = raw
        expected[key.strip()] = value
    return expected


@contextmanager
def _cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    """First Ctrl-C stops launching new resources; in-flight applies still finish."""

    def _handler(signum: int, frame: object) -> None:
        token.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _emit_report(
    args: argparse.Namespace, renderer: CLIRenderer, report: ConvergenceReport
) -> None:
    if args.json:
        _emit_json({"command": "apply", "succeeded": report.succeeded, "report": report.to_dict()})
    else:
        renderer.report(report)


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=args.no_color, verbose=args.verbose)


__all__ = ["CLIError", "build_parser", "run_cli"]
