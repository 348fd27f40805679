"""Plain-text rendering for CLI output."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

    from codex_store.domain.models import Codex, CodexEntry, CodexEntryGroup


class CLIRenderer:
    """Deterministic plain-text renderer writing to ``stream`` (stdout by default)."""

    def __init__(self, *, verbose: bool = False, stream: TextIO | None = None) -> None:
        self.verbose = verbose
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._write(line)

    def section(self, title: str) -> None:
        self._write(f"\n{title}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a column-aligned table; nothing is printed for zero rows."""

        if not rows:
            return

        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], len(cell))

        def _pad(cells: Sequence[str]) -> str:
            return "  ".join(
                (cells[index] if index < len(cells) else "").ljust(width)
                for index, width in enumerate(widths)
            ).rstrip()

        if title:
            self.section(title)
        self._write(f"  {_pad(headers)}")
        self._write(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            self._write(f"  {_pad(row)}")

    # ------------------------------------------------------------------
    # Codex views
    # ------------------------------------------------------------------

    def codex(self, codex: Codex) -> None:
        self.kv("Codex", codex.title)
        self.kv("Story", codex.story_id)
        self.kv("ID", codex.id)
        rows = [
            [category.id, _label(category.icon, category.title), str(len(category.entries))]
            for category in codex.sorted_categories()
        ]
        self.table(["ID", "CATEGORY", "ENTRIES"], rows, title="Categories:")

    def entries(self, entries: Sequence[CodexEntry], *, title: str | None = None) -> None:
        if not entries:
            self.text("No matching entries.")
            return
        rows = [
            [entry.id, truncate(entry.title, 40), ", ".join(entry.tags)] for entry in entries
        ]
        self.table(["ID", "TITLE", "TAGS"], rows, title=title)
        if self.verbose:
            for entry in entries:
                self.section(entry.title)
                self.text(entry.content or "(no content)")

    def groups(self, groups: Sequence[CodexEntryGroup]) -> None:
        if not groups:
            self.text("Codex has no entries.")
            return
        for group in groups:
            self.entries(group.entries, title=f"{_label(group.icon, group.category)}:")

    def _write(self, line: str) -> None:
        print(line, file=self.stream)


def create_renderer(*, verbose: bool = False, stream: TextIO | None = None) -> CLIRenderer:
    return CLIRenderer(verbose=verbose, stream=stream)


def truncate(text: str, max_len: int) -> str:
    """Truncate text to ``max_len``, appending an ellipsis if needed."""

    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _label(icon: str | None, title: str) -> str:
    return f"{icon} {title}" if icon else title


__all__ = ["CLIRenderer", "create_renderer", "truncate"]
