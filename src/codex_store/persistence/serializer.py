"""Wire-format mapping for codex documents.

The store holds plain JSON: camelCase keys, ISO-8601 timestamps, a literal
``type`` discriminator, and the backend's ``_id``/``_rev`` fields. In memory
every timestamp is a timezone-aware ``datetime`` at codex, category, and entry
level; ``deserialize_codex`` converts all three levels on every read.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Final, NoReturn, cast

from codex_store.constants import CODEX_DOCUMENT_TYPE, CODEX_KEY_PREFIX, CODEX_KEY_RANGE_END
from codex_store.domain.models import (
    UTC,
    Codex,
    CodexCategory,
    CodexEntry,
    CustomField,
    JSONValue,
    as_metadata,
)
from codex_store.errors import SerializationError

ID_FIELD: Final[str] = "_id"
REV_FIELD: Final[str] = "_rev"
TYPE_FIELD: Final[str] = "type"

_STORE_FIELDS: Final[frozenset[str]] = frozenset({ID_FIELD, REV_FIELD})


def codex_key(story_id: str) -> str:
    """Stable document key for the codex of ``story_id``."""

    if not isinstance(story_id, str) or not story_id.strip():
        raise ValueError("story_id must be a non-empty string")
    return f"{CODEX_KEY_PREFIX}{story_id}"


def codex_key_range() -> tuple[str, str]:
    """Half-open key interval covering every codex document."""

    return CODEX_KEY_PREFIX, CODEX_KEY_RANGE_END


def is_codex_document(document: Mapping[str, object]) -> bool:
    return document.get(TYPE_FIELD) == CODEX_DOCUMENT_TYPE


def datetime_to_wire(value: datetime) -> str:
    if value.tzinfo is None or value.utcoffset() is None:
        raise SerializationError("timestamps must be timezone-aware")
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def datetime_from_wire(value: object, path: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime {value!r} ({exc})")
    else:
        _fail(path, f"expected ISO-8601 string, got {type(value).__name__}")
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        # Documents written by older clients may lack an offset; they were UTC.
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def serialize_codex(codex: Codex, *, rev: str | None = None) -> dict[str, Any]:
    """Return the wire document for ``codex``; ``rev`` is attached when given."""

    document: dict[str, Any] = {
        ID_FIELD: codex_key(codex.story_id),
        TYPE_FIELD: CODEX_DOCUMENT_TYPE,
        **codex_to_wire(codex),
    }
    if rev is not None:
        document[REV_FIELD] = rev
    return document


def codex_to_wire(codex: Codex) -> dict[str, Any]:
    """Wire shape without store fields, as used by exports."""

    return {
        "id": codex.id,
        "storyId": codex.story_id,
        "title": codex.title,
        "categories": [category_to_wire(category) for category in codex.categories],
        "createdAt": datetime_to_wire(codex.created_at),
        "updatedAt": datetime_to_wire(codex.updated_at),
    }


def category_to_wire(category: CodexCategory) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": category.id,
        "storyId": category.story_id,
        "title": category.title,
        "order": category.order,
        "entries": [entry_to_wire(entry) for entry in category.entries],
        "createdAt": datetime_to_wire(category.created_at),
        "updatedAt": datetime_to_wire(category.updated_at),
    }
    if category.description is not None:
        out["description"] = category.description
    if category.icon is not None:
        out["icon"] = category.icon
    return out


def entry_to_wire(entry: CodexEntry) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": entry.id,
        "categoryId": entry.category_id,
        "storyId": entry.story_id,
        "title": entry.title,
        "content": entry.content,
        "tags": list(entry.tags),
        "metadata": json.loads(json.dumps(entry.metadata)),
        "customFields": [
            {"id": item.id, "name": item.name, "value": item.value}
            for item in entry.custom_fields
        ],
        "alwaysInclude": entry.always_include,
        "order": entry.order,
        "createdAt": datetime_to_wire(entry.created_at),
        "updatedAt": datetime_to_wire(entry.updated_at),
    }
    if entry.image_url is not None:
        out["imageUrl"] = entry.image_url
    return out


def deserialize_codex(document: Mapping[str, object]) -> Codex:
    """Map a stored or exported codex document back onto the aggregate.

    Raises ``SerializationError`` when the document is not a codex or a
    required field is missing or malformed.
    """

    if not isinstance(document, Mapping):
        _fail("codex", f"expected object, got {type(document).__name__}")
    kind = document.get(TYPE_FIELD)
    if kind is not None and kind != CODEX_DOCUMENT_TYPE:
        _fail("codex.type", f"expected {CODEX_DOCUMENT_TYPE!r}, got {kind!r}")

    story_id = _req_str(document, "storyId", "codex")
    raw_categories = document.get("categories", [])
    if not isinstance(raw_categories, list):
        _fail("codex.categories", "expected array")
    try:
        return Codex(
            id=_req_str(document, "id", "codex"),
            story_id=story_id,
            title=_opt_str(document, "title", "codex") or "",
            categories=tuple(
                category_from_wire(item, f"codex.categories[{index}]", story_id=story_id)
                for index, item in enumerate(raw_categories)
            ),
            created_at=datetime_from_wire(document.get("createdAt"), "codex.createdAt"),
            updated_at=datetime_from_wire(document.get("updatedAt"), "codex.updatedAt"),
        )
    except SerializationError:
        raise
    except ValueError as exc:
        raise SerializationError(str(exc)) from exc


def category_from_wire(raw: object, path: str, *, story_id: str) -> CodexCategory:
    if not isinstance(raw, Mapping):
        _fail(path, f"expected object, got {type(raw).__name__}")
    category_id = _req_str(raw, "id", path)
    raw_entries = raw.get("entries", [])
    if not isinstance(raw_entries, list):
        _fail(f"{path}.entries", "expected array")
    return CodexCategory(
        id=category_id,
        story_id=_opt_str(raw, "storyId", path) or story_id,
        title=_opt_str(raw, "title", path) or "",
        description=_opt_str(raw, "description", path),
        icon=_opt_str(raw, "icon", path),
        order=_req_order(raw, path),
        entries=tuple(
            entry_from_wire(
                item,
                f"{path}.entries[{index}]",
                story_id=story_id,
                category_id=category_id,
            )
            for index, item in enumerate(raw_entries)
        ),
        created_at=datetime_from_wire(raw.get("createdAt"), f"{path}.createdAt"),
        updated_at=datetime_from_wire(raw.get("updatedAt"), f"{path}.updatedAt"),
    )


def entry_from_wire(raw: object, path: str, *, story_id: str, category_id: str) -> CodexEntry:
    if not isinstance(raw, Mapping):
        _fail(path, f"expected object, got {type(raw).__name__}")
    tags = raw.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        _fail(f"{path}.tags", "expected array of strings")
    metadata = raw.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        _fail(f"{path}.metadata", "expected object")
    always_include = raw.get("alwaysInclude", False)
    if not isinstance(always_include, bool):
        _fail(f"{path}.alwaysInclude", "expected boolean")
    return CodexEntry(
        id=_req_str(raw, "id", path),
        category_id=_opt_str(raw, "categoryId", path) or category_id,
        story_id=_opt_str(raw, "storyId", path) or story_id,
        title=_opt_str(raw, "title", path) or "",
        content=_opt_str(raw, "content", path) or "",
        tags=tuple(tags),
        image_url=_opt_str(raw, "imageUrl", path),
        metadata=as_metadata(metadata, f"{path}.metadata"),
        custom_fields=_custom_fields_from_wire(raw.get("customFields"), f"{path}.customFields"),
        always_include=always_include,
        order=_req_order(raw, path),
        created_at=datetime_from_wire(raw.get("createdAt"), f"{path}.createdAt"),
        updated_at=datetime_from_wire(raw.get("updatedAt"), f"{path}.updatedAt"),
    )


def strip_store_fields(document: Mapping[str, object]) -> dict[str, JSONValue]:
    stripped = {key: value for key, value in document.items() if key not in _STORE_FIELDS}
    return cast("dict[str, JSONValue]", stripped)


def _custom_fields_from_wire(raw: object, path: str) -> tuple[CustomField, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        _fail(path, "expected array")
    out: list[CustomField] = []
    for index, item in enumerate(raw):
        item_path = f"{path}[{index}]"
        if not isinstance(item, Mapping):
            _fail(item_path, "expected object")
        value = item.get("value", "")
        out.append(
            CustomField(
                id=_req_str(item, "id", item_path),
                name=_opt_str(item, "name", item_path) or "",
                value=value if isinstance(value, str) else json.dumps(value),
            )
        )
    return tuple(out)


def _req_str(payload: Mapping[str, object], key: str, path: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        _fail(f"{path}.{key}", "expected non-empty string")
    return value


def _opt_str(payload: Mapping[str, object], key: str, path: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        _fail(f"{path}.{key}", f"expected string, got {type(value).__name__}")
    return value


def _req_order(payload: Mapping[str, object], path: str) -> int:
    value = payload.get("order", 0)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        _fail(f"{path}.order", "expected non-negative integer")
    return value


def _fail(path: str, message: str) -> NoReturn:
    raise SerializationError(f"{path}: {message}")


__all__ = [
    "ID_FIELD",
    "REV_FIELD",
    "TYPE_FIELD",
    "category_to_wire",
    "codex_key",
    "codex_key_range",
    "codex_to_wire",
    "datetime_from_wire",
    "datetime_to_wire",
    "deserialize_codex",
    "entry_to_wire",
    "is_codex_document",
    "serialize_codex",
    "strip_store_fields",
]
