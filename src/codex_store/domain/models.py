"""Frozen value types for the codex aggregate.

A ``Codex`` owns its categories and each ``CodexCategory`` owns its entries, so
the "entry references an existing category" rule is structural: an entry can
only live inside the category whose id it carries. Values are immutable;
updates go through ``dataclasses.replace`` at the touched path.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, NoReturn

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

if TYPE_CHECKING:
    from enum import StrEnum
else:
    try:
        from enum import StrEnum
    except ImportError:

        class StrEnum(str, Enum):
            """Compatibility fallback for Python < 3.11."""


JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

STORY_ROLE_METADATA_KEY = "storyRole"
ALIASES_METADATA_KEY = "aliases"


class StoryRole(StrEnum):
    """Narrative role of a character entry, stored under ``metadata.storyRole``."""

    PROTAGONIST = "Protagonist"
    SUPPORTING = "Nebencharakter"
    ANTAGONIST = "Antagonist"
    LOVE_INTEREST = "Love-Interest"
    BACKGROUND = "Hintergrundcharakter"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _check_id(value: object, path: str) -> None:
    if not isinstance(value, str) or not value.strip():
        _fail(path, "expected non-empty string id")


def _check_str(value: object, path: str) -> None:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")


def _check_optional_str(value: object, path: str) -> None:
    if value is not None:
        _check_str(value, path)


def _check_order(value: object, path: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if value < 0:
        _fail(path, "must be >= 0")


def _check_datetime(value: object, path: str) -> None:
    if not isinstance(value, datetime):
        _fail(path, f"expected datetime, got {type(value).__name__}")
    if value.tzinfo is None or value.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware")


def _check_tuple_of(value: object, item_type: type, path: str) -> None:
    if not isinstance(value, tuple):
        _fail(path, f"expected tuple, got {type(value).__name__}")
    for index, item in enumerate(value):
        if not isinstance(item, item_type):
            _fail(f"{path}[{index}]", f"expected {item_type.__name__}, got {type(item).__name__}")


def _check_unique_ids(
    items: tuple[CustomField, ...] | tuple[CodexEntry, ...] | tuple[CodexCategory, ...],
    path: str,
) -> None:
    seen: set[str] = set()
    for item in items:
        if item.id in seen:
            _fail(path, f"duplicate id {item.id!r}")
        seen.add(item.id)


@dataclass(frozen=True, slots=True)
class CustomField:
    """User-defined key/value pair shown on an entry."""

    id: str
    name: str
    value: str = ""

    def __post_init__(self) -> None:
        _check_id(self.id, "CustomField.id")
        _check_str(self.name, "CustomField.name")
        _check_str(self.value, "CustomField.value")


@dataclass(frozen=True, slots=True)
class CodexEntry:
    id: str
    category_id: str
    story_id: str
    title: str
    order: int
    created_at: datetime
    updated_at: datetime
    content: str = ""
    tags: tuple[str, ...] = ()
    image_url: str | None = None
    metadata: dict[str, JSONValue] = field(default_factory=dict)
    custom_fields: tuple[CustomField, ...] = ()
    always_include: bool = False

    def __post_init__(self) -> None:
        _check_id(self.id, "CodexEntry.id")
        _check_id(self.category_id, "CodexEntry.category_id")
        _check_id(self.story_id, "CodexEntry.story_id")
        _check_str(self.title, "CodexEntry.title")
        _check_order(self.order, "CodexEntry.order")
        _check_datetime(self.created_at, "CodexEntry.created_at")
        _check_datetime(self.updated_at, "CodexEntry.updated_at")
        _check_str(self.content, "CodexEntry.content")
        _check_tuple_of(self.tags, str, "CodexEntry.tags")
        _check_optional_str(self.image_url, "CodexEntry.image_url")
        if not isinstance(self.metadata, dict):
            _fail("CodexEntry.metadata", f"expected dict, got {type(self.metadata).__name__}")
        _check_tuple_of(self.custom_fields, CustomField, "CodexEntry.custom_fields")
        _check_unique_ids(self.custom_fields, "CodexEntry.custom_fields")
        if not isinstance(self.always_include, bool):
            _fail("CodexEntry.always_include", "expected boolean")

    @property
    def tag_set(self) -> frozenset[str]:
        return frozenset(self.tags)

    @property
    def story_role(self) -> StoryRole | None:
        raw = self.metadata.get(STORY_ROLE_METADATA_KEY)
        if not isinstance(raw, str):
            return None
        try:
            return StoryRole(raw)
        except ValueError:
            return None

    @property
    def aliases(self) -> tuple[str, ...]:
        raw = self.metadata.get(ALIASES_METADATA_KEY)
        if isinstance(raw, str):
            return tuple(part.strip() for part in raw.split(",") if part.strip())
        if isinstance(raw, list):
            return tuple(item for item in raw if isinstance(item, str) and item.strip())
        return ()

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on title, content, or any tag."""

        needle = query.casefold()
        if needle in self.title.casefold() or needle in self.content.casefold():
            return True
        return any(needle in tag.casefold() for tag in self.tags)


@dataclass(frozen=True, slots=True)
class CodexCategory:
    id: str
    story_id: str
    title: str
    order: int
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    icon: str | None = None
    entries: tuple[CodexEntry, ...] = ()

    def __post_init__(self) -> None:
        _check_id(self.id, "CodexCategory.id")
        _check_id(self.story_id, "CodexCategory.story_id")
        _check_str(self.title, "CodexCategory.title")
        _check_order(self.order, "CodexCategory.order")
        _check_datetime(self.created_at, "CodexCategory.created_at")
        _check_datetime(self.updated_at, "CodexCategory.updated_at")
        _check_optional_str(self.description, "CodexCategory.description")
        _check_optional_str(self.icon, "CodexCategory.icon")
        _check_tuple_of(self.entries, CodexEntry, "CodexCategory.entries")
        _check_unique_ids(self.entries, "CodexCategory.entries")
        for index, entry in enumerate(self.entries):
            if entry.category_id != self.id:
                _fail(
                    f"CodexCategory.entries[{index}].category_id",
                    f"references {entry.category_id!r}, expected owning category {self.id!r}",
                )
            if entry.story_id != self.story_id:
                _fail(f"CodexCategory.entries[{index}].story_id", "does not match category")

    def find_entry(self, entry_id: str) -> CodexEntry | None:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    def sorted_entries(self) -> tuple[CodexEntry, ...]:
        return tuple(sorted(self.entries, key=lambda entry: entry.order))


@dataclass(frozen=True, slots=True)
class Codex:
    """Root aggregate: one per story, persisted as a single document."""

    id: str
    story_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    categories: tuple[CodexCategory, ...] = ()

    def __post_init__(self) -> None:
        _check_id(self.id, "Codex.id")
        _check_id(self.story_id, "Codex.story_id")
        _check_str(self.title, "Codex.title")
        _check_datetime(self.created_at, "Codex.created_at")
        _check_datetime(self.updated_at, "Codex.updated_at")
        _check_tuple_of(self.categories, CodexCategory, "Codex.categories")
        _check_unique_ids(self.categories, "Codex.categories")
        for index, category in enumerate(self.categories):
            if category.story_id != self.story_id:
                _fail(f"Codex.categories[{index}].story_id", "does not match codex")

    def find_category(self, category_id: str) -> CodexCategory | None:
        for category in self.categories:
            if category.id == category_id:
                return category
        return None

    def find_category_by_title(self, title: str) -> CodexCategory | None:
        wanted = title.strip().casefold()
        for category in self.categories:
            if category.title.strip().casefold() == wanted:
                return category
        return None

    def sorted_categories(self) -> tuple[CodexCategory, ...]:
        return tuple(sorted(self.categories, key=lambda category: category.order))

    def iter_entries(self) -> Iterator[CodexEntry]:
        for category in self.categories:
            yield from category.entries

    def entry_ids(self) -> frozenset[str]:
        return frozenset(entry.id for entry in self.iter_entries())


@dataclass(frozen=True, slots=True)
class CodexEntryGroup:
    """Read-only grouping of a category with its entries in display order."""

    category: str
    category_id: str
    icon: str | None
    entries: tuple[CodexEntry, ...]


def as_metadata(value: Mapping[str, object] | None, path: str) -> dict[str, JSONValue]:
    """Validate an open extension map and return a detached plain-dict copy."""

    if value is None:
        return {}
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    out: dict[str, JSONValue] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        out[key] = _as_json_value(item, f"{path}.{key}")
    return out


def _as_json_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item, f"{path}[{index}]") for index, item in enumerate(value)]
    if isinstance(value, Mapping):
        return as_metadata(value, path)
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


__all__ = [
    "ALIASES_METADATA_KEY",
    "Codex",
    "CodexCategory",
    "CodexEntry",
    "CodexEntryGroup",
    "CustomField",
    "JSONScalar",
    "JSONValue",
    "STORY_ROLE_METADATA_KEY",
    "StoryRole",
    "UTC",
    "as_metadata",
    "utc_now",
]
