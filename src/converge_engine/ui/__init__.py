"""UI package exports: argparse router and plain-text renderer."""

from converge_engine.ui.cli import CLIError, build_parser, run_cli
from converge_engine.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "create_renderer", "run_cli"]
