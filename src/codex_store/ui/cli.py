"""Command-line interface over the codex repository."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from codex_store.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from codex_store.domain.ids import generate_session_id
from codex_store.domain.models import Codex, CodexCategory
from codex_store.interchange import SUPPORTED_FORMATS, export_codex, import_codex_entries
from codex_store.observability import (
    LoggingConfig,
    StructuredLoggingHandle,
    correlation_scope,
    setup_structured_logging,
    shutdown_logging,
)
from codex_store.persistence import CodexRuntime, build_runtime
from codex_store.persistence.serializer import codex_to_wire, entry_to_wire
from codex_store.ui.render import CLIRenderer, create_renderer
from codex_store.utils.fs import atomic_write

Action = Callable[[CodexRuntime], Awaitable[int]]

_logger = structlog.get_logger(__name__)


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
        prog="codex-store",
        description=(
            "codex-store: local-first reference data for story codices.\n\n"
            "Common workflows:\n"
            "  codex-store show s1                         Show (or create) a codex\n"
            "  codex-store add-entry s1 Characters --title Aria\n"
            "  codex-store search s1 aria                  Search titles, content, tags\n"
            "  codex-store export s1 --format yaml         Export a codex\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./codex_store.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output, including write and emission metrics.",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    show_parser = subparsers.add_parser(
        "show", parents=[common], help="Show a story's codex, creating it when absent"
    )
    show_parser.add_argument("story_id", help="Story identifier")
    show_parser.set_defaults(handler=_cmd_show)

    category_parser = subparsers.add_parser(
        "add-category", parents=[common], help="Add a category to a story's codex"
    )
    category_parser.add_argument("story_id", help="Story identifier")
    category_parser.add_argument("--title", default=None, help="Category title")
    category_parser.add_argument("--description", default=None, help="Category description")
    category_parser.add_argument("--icon", default=None, help="Category icon")
    category_parser.set_defaults(handler=_cmd_add_category)

    entry_parser = subparsers.add_parser(
        "add-entry",
        parents=[common],
        help="Add an entry to a category (by id or title)",
    )
    entry_parser.add_argument("story_id", help="Story identifier")
    entry_parser.add_argument("category", help="Category id or title")
    entry_parser.add_argument("--title", default=None, help="Entry title")
    entry_parser.add_argument("--content", default=None, help="Entry content")
    entry_parser.add_argument(
        "--tag", action="append", dest="tags", default=None, help="Entry tag (repeatable)"
    )
    entry_parser.add_argument(
        "--always-include",
        action="store_true",
        default=False,
        help="Always include this entry in generated context",
    )
    entry_parser.set_defaults(handler=_cmd_add_entry)

    search_parser = subparsers.add_parser(
        "search", parents=[common], help="Search entries by title, content, or tag"
    )
    search_parser.add_argument("story_id", help="Story identifier")
    search_parser.add_argument("query", help="Case-insensitive search text")
    search_parser.set_defaults(handler=_cmd_search)

    entries_parser = subparsers.add_parser(
        "entries", parents=[common], help="List entries grouped by category"
    )
    entries_parser.add_argument("story_id", help="Story identifier")
    entries_parser.add_argument(
        "--always-include",
        action="store_true",
        default=False,
        help="Only list entries flagged always-include",
    )
    entries_parser.set_defaults(handler=_cmd_entries)

    export_parser = subparsers.add_parser(
        "export", parents=[common], help="Export a codex as JSON or YAML"
    )
    export_parser.add_argument("story_id", help="Story identifier")
    export_parser.add_argument("--format", dest="fmt", choices=SUPPORTED_FORMATS, default="json")
    export_parser.add_argument(
        "--output", default=None, help="Write to this path instead of stdout"
    )
    export_parser.set_defaults(handler=_cmd_export)

    import_parser = subparsers.add_parser(
        "import", parents=[common], help="Import entries from an exported codex"
    )
    import_parser.add_argument("story_id", help="Story identifier")
    import_parser.add_argument("path", help="Path to a JSON or YAML codex document")
    import_parser.add_argument(
        "--format",
        dest="fmt",
        choices=SUPPORTED_FORMATS,
        default=None,
        help="Document format (default: from the file suffix)",
    )
    import_parser.set_defaults(handler=_cmd_import)

    delete_parser = subparsers.add_parser(
        "delete-codex", parents=[common], help="Delete a story's codex"
    )
    delete_parser.add_argument("story_id", help="Story identifier")
    delete_parser.set_defaults(handler=_cmd_delete_codex)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


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


def _cmd_show(args: argparse.Namespace) -> int:
    story_id = _require_str(args.story_id, "story_id")

    async def action(runtime: CodexRuntime) -> int:
        codex = await runtime.repository.get_or_create_codex(story_id)
        if _flag(args, "json"):
            _emit_json(codex_to_wire(codex))
            return 0
        _get_renderer(args).codex(codex)
        return 0

    return _run(args, action, story_id=story_id)


def _cmd_add_category(args: argparse.Namespace) -> int:
    story_id = _require_str(args.story_id, "story_id")
    partial = _compact(
        {"title": args.title, "description": args.description, "icon": args.icon}
    )

    async def action(runtime: CodexRuntime) -> int:
        category = await runtime.repository.add_category(story_id, partial)
        if _flag(args, "json"):
            _emit_json({"command": "add-category", "category": _category_summary(category)})
            return 0
        renderer = _get_renderer(args)
        renderer.kv("Added category", category.title)
        renderer.kv("ID", category.id)
        renderer.kv("Order", category.order)
        return 0

    return _run(args, action, story_id=story_id)


def _cmd_add_entry(args: argparse.Namespace) -> int:
    story_id = _require_str(args.story_id, "story_id")
    category_ref = _require_str(args.category, "category")
    partial: dict[str, object] = _compact({"title": args.title, "content": args.content})
    if args.tags:
        partial["tags"] = list(args.tags)
    if _flag(args, "always_include"):
        partial["alwaysInclude"] = True

    async def action(runtime: CodexRuntime) -> int:
        codex = await runtime.repository.get_or_create_codex(story_id)
        category = _resolve_category(codex, category_ref)
        entry = await runtime.repository.add_entry(story_id, category.id, partial)
        if _flag(args, "json"):
            _emit_json({"command": "add-entry", "entry": entry_to_wire(entry)})
            return 0
        renderer = _get_renderer(args)
        renderer.kv("Added entry", entry.title)
        renderer.kv("ID", entry.id)
        renderer.kv("Category", category.title)
        renderer.kv("Order", entry.order)
        return 0

    return _run(args, action, story_id=story_id)


def _cmd_search(args: argparse.Namespace) -> int:
    story_id = _require_str(args.story_id, "story_id")
    query = args.query if isinstance(args.query, str) else ""

    async def action(runtime: CodexRuntime) -> int:
        matches = await runtime.repository.search_entries(story_id, query)
        if _flag(args, "json"):
            _emit_json(
                {
                    "command": "search",
                    "query": query,
                    "entries": [entry_to_wire(entry) for entry in matches],
                }
            )
            return 0
        _get_renderer(args).entries(matches, title=f"Matches for {query!r}:")
        return 0

    return _run(args, action, story_id=story_id)


def _cmd_entries(args: argparse.Namespace) -> int:
    story_id = _require_str(args.story_id, "story_id")
    only_always = _flag(args, "always_include")

    async def action(runtime: CodexRuntime) -> int:
        repository = runtime.repository
        if only_always:
            flagged = await repository.get_always_include_entries(story_id)
            if _flag(args, "json"):
                _emit_json({"command": "entries", "entries": [entry_to_wire(e) for e in flagged]})
                return 0
            _get_renderer(args).entries(flagged, title="Always included:")
            return 0

        groups = await repository.get_all_codex_entries(story_id)
        if _flag(args, "json"):
            _emit_json(
                {
                    "command": "entries",
                    "groups": [
                        {
                            "category": group.category,
                            "categoryId": group.category_id,
                            "icon": group.icon,
                            "entries": [entry_to_wire(entry) for entry in group.entries],
                        }
                        for group in groups
                    ],
                }
            )
            return 0
        _get_renderer(args).groups(groups)
        return 0

    return _run(args, action, story_id=story_id)


def _cmd_export(args: argparse.Namespace) -> int:
    story_id = _require_str(args.story_id, "story_id")
    output = _optional_str(args.output)

    async def action(runtime: CodexRuntime) -> int:
        codex = await runtime.repository.get_codex(story_id)
        if codex is None:
            raise CLIError(f"no codex for story {story_id!r}", exit_code=1)
        rendered = export_codex(codex, args.fmt)
        if output is None:
            sys.stdout.write(rendered)
            return 0
        target = atomic_write(output, rendered, create_parents=True)
        if _flag(args, "json"):
            _emit_json({"command": "export", "path": target.as_posix(), "format": args.fmt})
        else:
            _get_renderer(args).kv("Exported", target.as_posix())
        return 0

    return _run(args, action, story_id=story_id)


def _cmd_import(args: argparse.Namespace) -> int:
    story_id = _require_str(args.story_id, "story_id")
    source = Path(_require_str(args.path, "path")).expanduser()
    fmt = args.fmt or _format_from_suffix(source)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"unable to read {source}: {exc}", exit_code=2) from exc

    async def action(runtime: CodexRuntime) -> int:
        report = await import_codex_entries(runtime.repository, story_id, text, fmt)
        if _flag(args, "json"):
            _emit_json({"command": "import", "report": report.to_dict()})
            return 0
        renderer = _get_renderer(args)
        renderer.kv("Entries added", len(report.entries_added))
        renderer.kv("Entries skipped", len(report.entries_skipped))
        if report.categories_created:
            renderer.section("Categories created:")
            renderer.items(list(report.categories_created))
        return 0

    return _run(args, action, story_id=story_id)


def _cmd_delete_codex(args: argparse.Namespace) -> int:
    story_id = _require_str(args.story_id, "story_id")

    async def action(runtime: CodexRuntime) -> int:
        await runtime.repository.delete_codex(story_id)
        if _flag(args, "json"):
            _emit_json({"command": "delete-codex", "storyId": story_id})
        else:
            _get_renderer(args).kv("Deleted codex", story_id)
        return 0

    return _run(args, action, story_id=story_id)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    if _flag(args, "json"):
        print(dump_effective_config({"active_profile": profile, "config": config}))
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(config, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


def _run(args: argparse.Namespace, action: Action, *, story_id: str) -> int:
    config = _load_effective_config(args)
    handle = _start_logging(config)
    try:
        with correlation_scope(story_id=story_id, operation=str(args.command)):
            return asyncio.run(_execute(config, action, args))
    finally:
        shutdown_logging(handle)


async def _execute(config: Mapping[str, Any], action: Action, args: argparse.Namespace) -> int:
    runtime = await build_runtime(config)
    try:
        exit_code = await action(runtime)
    finally:
        runtime.close()
        metrics = runtime.metrics.snapshot()
        _logger.info("codex_cli_metrics", command=str(args.command), metrics=metrics)
    if _flag(args, "verbose"):
        _report_metrics(args, metrics)
    return exit_code


def _report_metrics(args: argparse.Namespace, metrics: Mapping[str, Any]) -> None:
    """Write counters and latency summaries to stderr so stdout stays the command result."""

    if _flag(args, "json"):
        print(json.dumps({"metrics": metrics}, sort_keys=True, ensure_ascii=False), file=sys.stderr)
        return
    renderer = create_renderer(verbose=True, stream=sys.stderr)
    renderer.section("Metrics:")
    for name, value in metrics["counters"].items():
        renderer.kv(name, value)
    for name, summary in metrics["distributions"].items():
        renderer.kv(name, f"n={summary['count']} avg={summary['avg']:.3f}ms")


def _start_logging(config: Mapping[str, Any]) -> StructuredLoggingHandle:
    observability = config.get("observability", {})
    return setup_structured_logging(
        LoggingConfig.from_observability(observability, session_id=generate_session_id())
    )


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    try:
        return load_config(config_path, profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_category(codex: Codex, reference: str) -> CodexCategory:
    category = codex.find_category(reference) or codex.find_category_by_title(reference)
    if category is None:
        raise CLIError(f"category {reference!r} not found in story {codex.story_id!r}")
    return category


def _category_summary(category: CodexCategory) -> dict[str, object]:
    return {
        "id": category.id,
        "title": category.title,
        "description": category.description,
        "icon": category.icon,
        "order": category.order,
    }


def _format_from_suffix(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        return "yaml"
    if suffix == ".json":
        return "json"
    raise CLIError(f"cannot infer format from {path.name!r}; pass --format", exit_code=2)


def _compact(payload: Mapping[str, object]) -> dict[str, object]:
    return {key: value for key, value in payload.items() if value is not None}


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=_flag(args, "verbose"))


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=2)
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=2)
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    return value.strip() or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
