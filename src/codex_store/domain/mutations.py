"""Pure transforms over the codex aggregate.

Every function takes a ``Codex`` value and returns a new one; nothing here
touches storage. Missing categories or entries raise ``NotFoundError`` and the
caller decides whether that is fatal. Partial and update payloads use the wire
field names (``imageUrl``, ``alwaysInclude``, ...) so UI and import producers
can pass documents through unchanged.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Final

from codex_store.constants import (
    CODEX_TITLE_TEMPLATE,
    DEFAULT_CATEGORIES,
    DEFAULT_CATEGORY_TITLE,
    DEFAULT_ENTRY_TITLE,
)
from codex_store.domain import ids
from codex_store.domain.models import (
    Codex,
    CodexCategory,
    CodexEntry,
    CustomField,
    as_metadata,
)
from codex_store.errors import NotFoundError

if TYPE_CHECKING:
    from datetime import datetime

Payload = Mapping[str, object]

CATEGORY_FIELDS: Final[frozenset[str]] = frozenset({"title", "description", "icon"})
ENTRY_FIELDS: Final[frozenset[str]] = frozenset(
    {"title", "content", "tags", "imageUrl", "metadata", "customFields", "alwaysInclude"}
)
# Identity and ownership are assigned by the store, never taken from payloads.
IGNORED_FIELDS: Final[frozenset[str]] = frozenset(
    {"id", "storyId", "categoryId", "order", "createdAt", "updatedAt", "entries", "type"}
)


def seed_codex(
    story_id: str,
    *,
    now: datetime,
    categories: Sequence[tuple[str, str, str]] = DEFAULT_CATEGORIES,
) -> Codex:
    """Build a fresh codex for ``story_id`` with the default categories."""

    seeded = tuple(
        CodexCategory(
            id=ids.generate_category_id(),
            story_id=story_id,
            title=title,
            description=description,
            icon=icon,
            order=index,
            created_at=now,
            updated_at=now,
        )
        for index, (title, description, icon) in enumerate(categories)
    )
    return Codex(
        id=ids.generate_codex_id(),
        story_id=story_id,
        title=CODEX_TITLE_TEMPLATE.format(story_id=story_id),
        categories=seeded,
        created_at=now,
        updated_at=now,
    )


def add_category(
    codex: Codex,
    partial: Payload,
    *,
    now: datetime,
    default_title: str = DEFAULT_CATEGORY_TITLE,
) -> tuple[Codex, CodexCategory]:
    fields = _category_fields(partial, default_title=default_title, require_title=True)
    category = CodexCategory(
        id=ids.generate_category_id(),
        story_id=codex.story_id,
        order=len(codex.categories),
        created_at=now,
        updated_at=now,
        **fields,
    )
    return replace(codex, categories=(*codex.categories, category), updated_at=now), category


def update_category(
    codex: Codex,
    category_id: str,
    updates: Payload,
    *,
    now: datetime,
    default_title: str = DEFAULT_CATEGORY_TITLE,
) -> Codex:
    category = _require_category(codex, category_id)
    fields = _category_fields(updates, default_title=default_title, require_title=False)
    updated = replace(category, updated_at=now, **fields)
    return _replace_category(codex, updated, now=now)


def delete_category(codex: Codex, category_id: str, *, now: datetime) -> Codex:
    """Remove a category together with every entry it owns."""

    _require_category(codex, category_id)
    remaining = tuple(item for item in codex.categories if item.id != category_id)
    return replace(codex, categories=remaining, updated_at=now)


def add_entry(
    codex: Codex,
    category_id: str,
    partial: Payload,
    *,
    now: datetime,
    default_title: str = DEFAULT_ENTRY_TITLE,
) -> tuple[Codex, CodexEntry]:
    category = _require_category(codex, category_id)
    fields = _entry_fields(partial, default_title=default_title, require_title=True)
    entry = CodexEntry(
        id=ids.generate_entry_id(),
        category_id=category.id,
        story_id=codex.story_id,
        order=len(category.entries),
        created_at=now,
        updated_at=now,
        **fields,
    )
    updated = replace(category, entries=(*category.entries, entry), updated_at=now)
    return _replace_category(codex, updated, now=now), entry


def insert_entry(codex: Codex, category_id: str, entry: CodexEntry, *, now: datetime) -> Codex:
    """Append an already-built entry (imports) re-homed into ``category_id``."""

    category = _require_category(codex, category_id)
    placed = replace(
        entry,
        category_id=category.id,
        story_id=codex.story_id,
        order=len(category.entries),
    )
    updated = replace(category, entries=(*category.entries, placed), updated_at=now)
    return _replace_category(codex, updated, now=now)


def update_entry(
    codex: Codex,
    category_id: str,
    entry_id: str,
    updates: Payload,
    *,
    now: datetime,
    default_title: str = DEFAULT_ENTRY_TITLE,
) -> Codex:
    category = _require_category(codex, category_id)
    entry = _require_entry(codex, category, entry_id)
    fields = _entry_fields(updates, default_title=default_title, require_title=False)
    changed = replace(entry, updated_at=now, **fields)
    entries = tuple(changed if item.id == entry_id else item for item in category.entries)
    return _replace_category(codex, replace(category, entries=entries, updated_at=now), now=now)


def delete_entry(codex: Codex, category_id: str, entry_id: str, *, now: datetime) -> Codex:
    category = _require_category(codex, category_id)
    _require_entry(codex, category, entry_id)
    entries = tuple(item for item in category.entries if item.id != entry_id)
    return _replace_category(codex, replace(category, entries=entries, updated_at=now), now=now)


def reorder_categories(
    codex: Codex,
    ordered_ids: Sequence[str],
    *,
    now: datetime,
) -> tuple[Codex, tuple[str, ...]]:
    """Rank categories by position in ``ordered_ids``.

    Returns the new codex and the ids that matched no category. Categories
    left out of ``ordered_ids`` keep their previous ``order``.
    """

    reordered, unknown = _reorder(codex.categories, ordered_ids)
    return replace(codex, categories=reordered, updated_at=now), unknown


def reorder_entries(
    codex: Codex,
    category_id: str,
    ordered_ids: Sequence[str],
    *,
    now: datetime,
) -> tuple[Codex, tuple[str, ...]]:
    category = _require_category(codex, category_id)
    reordered, unknown = _reorder(category.entries, ordered_ids)
    updated = replace(category, entries=reordered, updated_at=now)
    return _replace_category(codex, updated, now=now), unknown


def _reorder(
    items: tuple[CodexCategory, ...] | tuple[CodexEntry, ...],
    ordered_ids: Sequence[str],
) -> tuple[tuple[CodexCategory, ...] | tuple[CodexEntry, ...], tuple[str, ...]]:
    if isinstance(ordered_ids, str):
        raise ValueError("ordered_ids must be a sequence of ids, not a string")
    known = {item.id for item in items}
    rank: dict[str, int] = {}
    unknown: list[str] = []
    for index, item_id in enumerate(ordered_ids):
        if item_id in known:
            rank[item_id] = index
        else:
            unknown.append(item_id)
    ranked = [replace(item, order=rank.get(item.id, item.order)) for item in items]
    ranked.sort(key=lambda item: item.order)
    return tuple(ranked), tuple(unknown)


def _require_category(codex: Codex, category_id: str) -> CodexCategory:
    category = codex.find_category(category_id)
    if category is None:
        raise NotFoundError("category", category_id, story_id=codex.story_id)
    return category


def _require_entry(codex: Codex, category: CodexCategory, entry_id: str) -> CodexEntry:
    entry = category.find_entry(entry_id)
    if entry is None:
        raise NotFoundError("entry", entry_id, story_id=codex.story_id)
    return entry


def _replace_category(codex: Codex, category: CodexCategory, *, now: datetime) -> Codex:
    categories = tuple(category if item.id == category.id else item for item in codex.categories)
    return replace(codex, categories=categories, updated_at=now)


def _category_fields(
    payload: Payload,
    *,
    default_title: str,
    require_title: bool,
) -> dict[str, object]:
    parsed = _screen(payload, CATEGORY_FIELDS, "category")
    out: dict[str, object] = {}
    if require_title or "title" in parsed:
        out["title"] = _soft_title(parsed.get("title"), default_title, "category.title")
    if "description" in parsed:
        out["description"] = _optional_text(parsed["description"], "category.description")
    if "icon" in parsed:
        out["icon"] = _optional_text(parsed["icon"], "category.icon")
    return out


def _entry_fields(
    payload: Payload,
    *,
    default_title: str,
    require_title: bool,
) -> dict[str, object]:
    parsed = _screen(payload, ENTRY_FIELDS, "entry")
    out: dict[str, object] = {}
    if require_title or "title" in parsed:
        out["title"] = _soft_title(parsed.get("title"), default_title, "entry.title")
    if "content" in parsed:
        out["content"] = _text_or_empty(parsed["content"], "entry.content")
    if "tags" in parsed:
        out["tags"] = normalize_tags(parsed["tags"], "entry.tags")
    if "imageUrl" in parsed:
        out["image_url"] = _optional_text(parsed["imageUrl"], "entry.imageUrl")
    if "metadata" in parsed:
        raw_metadata = parsed["metadata"]
        if raw_metadata is not None and not isinstance(raw_metadata, Mapping):
            raise ValueError(f"entry.metadata: expected object, got {type(raw_metadata).__name__}")
        out["metadata"] = as_metadata(raw_metadata, "entry.metadata")
    if "customFields" in parsed:
        out["custom_fields"] = parse_custom_fields(parsed["customFields"], "entry.customFields")
    if "alwaysInclude" in parsed:
        flag = parsed["alwaysInclude"]
        if flag is None:
            flag = False
        if not isinstance(flag, bool):
            raise ValueError(f"entry.alwaysInclude: expected boolean, got {type(flag).__name__}")
        out["always_include"] = flag
    return out


def _screen(payload: Payload, allowed: frozenset[str], path: str) -> dict[str, object]:
    if not isinstance(payload, Mapping):
        raise ValueError(f"{path}: expected object, got {type(payload).__name__}")
    parsed: dict[str, object] = {}
    for key, value in payload.items():
        if key in IGNORED_FIELDS:
            continue
        if key not in allowed:
            raise ValueError(f"{path}.{key}: unknown field")
        parsed[key] = value
    return parsed


def _soft_title(value: object, default_title: str, path: str) -> str:
    if value is None:
        return default_title
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    stripped = value.strip()
    return stripped or default_title


def _text_or_empty(value: object, path: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    return value


def _optional_text(value: object, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    stripped = value.strip()
    return stripped or None


def normalize_tags(value: object, path: str) -> tuple[str, ...]:
    """Return trimmed, de-duplicated tags in first-seen order."""

    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValueError(f"{path}: expected array of strings, got {type(value).__name__}")
    seen: set[str] = set()
    out: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str):
            raise ValueError(f"{path}[{index}]: expected string, got {type(item).__name__}")
        tag = item.strip()
        if tag and tag not in seen:
            seen.add(tag)
            out.append(tag)
    return tuple(out)


def parse_custom_fields(value: object, path: str) -> tuple[CustomField, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"{path}: expected array, got {type(value).__name__}")
    out: list[CustomField] = []
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        if not isinstance(item, Mapping):
            raise ValueError(f"{item_path}: expected object, got {type(item).__name__}")
        raw_id = item.get("id")
        field_id = raw_id if isinstance(raw_id, str) and raw_id.strip() else None
        name = item.get("name", "")
        raw_value = item.get("value", "")
        if not isinstance(name, str):
            raise ValueError(f"{item_path}.name: expected string")
        if raw_value is None:
            raw_value = ""
        if not isinstance(raw_value, str):
            raise ValueError(f"{item_path}.value: expected string")
        out.append(
            CustomField(
                id=field_id or ids.generate_custom_field_id(),
                name=name.strip(),
                value=raw_value,
            )
        )
    return tuple(out)


__all__ = [
    "CATEGORY_FIELDS",
    "ENTRY_FIELDS",
    "IGNORED_FIELDS",
    "Payload",
    "add_category",
    "add_entry",
    "delete_category",
    "delete_entry",
    "insert_entry",
    "normalize_tags",
    "parse_custom_fields",
    "reorder_categories",
    "reorder_entries",
    "seed_codex",
    "update_category",
    "update_entry",
]
