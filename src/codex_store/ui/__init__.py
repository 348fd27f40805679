"""UI package exports for the CLI and its plain-text renderer."""

from codex_store.ui.cli import CLIError, build_parser, run_cli
from codex_store.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
