"""Export a codex to JSON/YAML and import entries from such documents.

Exports use the wire shape without store fields. Imports go through the
repository so every write takes part in the usual conflict protocol:
categories are matched by title (missing ones are created) and entries whose
ids the codex already holds are skipped.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, Literal

import structlog
import yaml

from codex_store.domain import ids
from codex_store.domain.models import Codex, CodexEntry, utc_now
from codex_store.errors import SerializationError
from codex_store.persistence.serializer import (
    codex_to_wire,
    datetime_to_wire,
    entry_from_wire,
)

if TYPE_CHECKING:
    from codex_store.persistence.repository import CodexRepository

InterchangeFormat = Literal["json", "yaml"]
SUPPORTED_FORMATS: Final[tuple[str, ...]] = ("json", "yaml")

_logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ImportReport:
    story_id: str
    categories_created: tuple[str, ...] = ()
    entries_added: tuple[str, ...] = ()
    entries_skipped: tuple[str, ...] = ()
    categories: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "storyId": self.story_id,
            "categoriesCreated": list(self.categories_created),
            "entriesAdded": list(self.entries_added),
            "entriesSkipped": list(self.entries_skipped),
            "categories": dict(sorted(self.categories.items())),
        }


def export_codex(codex: Codex, fmt: InterchangeFormat = "json") -> str:
    """Render ``codex`` as a JSON or YAML document without store fields."""

    payload = codex_to_wire(codex)
    if fmt == "json":
        return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    if fmt == "yaml":
        return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)
    raise ValueError(f"unsupported format {fmt!r}; expected one of: {', '.join(SUPPORTED_FORMATS)}")


def load_document(text: str, fmt: InterchangeFormat = "json") -> dict[str, Any]:
    """Parse an interchange document; raises ``SerializationError`` on bad input."""

    if fmt == "json":
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise SerializationError(f"invalid JSON document: {exc}") from exc
    elif fmt == "yaml":
        try:
            parsed = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise SerializationError(f"invalid YAML document: {exc}") from exc
    else:
        raise ValueError(
            f"unsupported format {fmt!r}; expected one of: {', '.join(SUPPORTED_FORMATS)}"
        )

    if not isinstance(parsed, dict):
        raise SerializationError(
            f"codex document must be an object, got {type(parsed).__name__}"
        )
    categories = parsed.get("categories", [])
    if not isinstance(categories, list):
        raise SerializationError("codex.categories: expected array")
    return parsed


async def import_codex_entries(
    repository: CodexRepository,
    story_id: str,
    text: str,
    fmt: InterchangeFormat = "json",
) -> ImportReport:
    """Merge the categories and entries of an exported codex into ``story_id``."""

    document = load_document(text, fmt)
    codex = await repository.get_or_create_codex(story_id)

    created: list[str] = []
    added: list[str] = []
    skipped: list[str] = []
    per_category: dict[str, int] = {}

    for index, raw_category in enumerate(document.get("categories", [])):
        path = f"codex.categories[{index}]"
        if not isinstance(raw_category, Mapping):
            raise SerializationError(f"{path}: expected object, got {type(raw_category).__name__}")
        title = raw_category.get("title")
        if not isinstance(title, str) or not title.strip():
            raise SerializationError(f"{path}.title: expected non-empty string")

        category = codex.find_category_by_title(title)
        if category is None:
            category = await repository.add_category(
                story_id,
                {
                    "title": title,
                    "description": raw_category.get("description"),
                    "icon": raw_category.get("icon"),
                },
            )
            created.append(category.title)
            codex = await _refreshed(repository, story_id, codex)

        raw_entries = raw_category.get("entries", [])
        if not isinstance(raw_entries, list):
            raise SerializationError(f"{path}.entries: expected array")
        entries = [
            _entry_for_import(raw, f"{path}.entries[{position}]", story_id, category.id)
            for position, raw in enumerate(raw_entries)
        ]
        if not entries:
            continue

        inserted = await repository.insert_entries(story_id, category.id, entries)
        inserted_ids = {entry.id for entry in inserted}
        added.extend(entry.id for entry in inserted)
        skipped.extend(entry.id for entry in entries if entry.id not in inserted_ids)
        per_category[category.title] = per_category.get(category.title, 0) + len(inserted)

        codex = await _refreshed(repository, story_id, codex)

    report = ImportReport(
        story_id=story_id,
        categories_created=tuple(created),
        entries_added=tuple(added),
        entries_skipped=tuple(skipped),
        categories=per_category,
    )
    _logger.info(
        "codex_import_completed",
        story_id=story_id,
        categories_created=len(created),
        entries_added=len(added),
        entries_skipped=len(skipped),
    )
    return report


async def _refreshed(repository: CodexRepository, story_id: str, current: Codex) -> Codex:
    refreshed = await repository.get_codex(story_id)
    return current if refreshed is None else refreshed


def _entry_for_import(raw: object, path: str, story_id: str, category_id: str) -> CodexEntry:
    if not isinstance(raw, Mapping):
        raise SerializationError(f"{path}: expected object, got {type(raw).__name__}")
    stamp = datetime_to_wire(utc_now())
    normalized: dict[str, object] = {
        "id": ids.generate_entry_id(),
        "createdAt": stamp,
        "updatedAt": stamp,
        **raw,
        # Placement is decided by the target codex.
        "order": 0,
        "categoryId": category_id,
        "storyId": story_id,
    }
    try:
        return entry_from_wire(normalized, path, story_id=story_id, category_id=category_id)
    except SerializationError:
        raise
    except ValueError as exc:
        raise SerializationError(str(exc)) from exc


__all__ = [
    "SUPPORTED_FORMATS",
    "ImportReport",
    "InterchangeFormat",
    "export_codex",
    "import_codex_entries",
    "load_document",
]
