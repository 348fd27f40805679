"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Final

from codex_store.channel import ChangeChannel
from codex_store.domain.models import Codex, CodexCategory, CodexEntry, CustomField
from codex_store.observability.metrics import MetricsRegistry
from codex_store.persistence.document_store import InMemoryDocumentStore
from codex_store.persistence.repository import CodexRepository, RepositorySettings

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


class StepClock:
    """Clock advancing one millisecond per call so timestamps stay distinct."""

    def __init__(self, start: datetime = _BASE_TS) -> None:
        self._current = start

    def __call__(self) -> datetime:
        self._current = self._current + timedelta(milliseconds=1)
        return self._current


class RecordingSleep:
    """Injectable backoff sleep that records delays and yields once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_entry(
    seed: int,
    *,
    story_id: str = "s1",
    category_id: str = "cat-1",
    title: str | None = None,
    order: int = 0,
    **overrides: Any,
) -> CodexEntry:
    fields: dict[str, Any] = {
        "id": f"ent-{seed}",
        "category_id": category_id,
        "story_id": story_id,
        "title": title if title is not None else f"Entry {seed}",
        "order": order,
        "created_at": fixed_now(seed),
        "updated_at": fixed_now(seed + 1),
        "content": f"content {seed}",
        "tags": (f"tag{seed}",),
    }
    fields.update(overrides)
    return CodexEntry(**fields)


def make_category(
    seed: int,
    *,
    story_id: str = "s1",
    entries: tuple[CodexEntry, ...] = (),
    order: int = 0,
    title: str | None = None,
    icon: str | None = None,
) -> CodexCategory:
    return CodexCategory(
        id=f"cat-{seed}",
        story_id=story_id,
        title=title if title is not None else f"Category {seed}",
        order=order,
        created_at=fixed_now(seed),
        updated_at=fixed_now(seed),
        description=f"description {seed}",
        icon=icon,
        entries=entries,
    )


def make_codex(story_id: str = "s1", *, with_entries: bool = True) -> Codex:
    """Two categories; the first holds two entries with metadata and custom fields."""

    entries: tuple[CodexEntry, ...] = ()
    if with_entries:
        entries = (
            make_entry(
                1,
                story_id=story_id,
                title="Aria",
                metadata={"storyRole": "Protagonist", "aliases": ["Ari"]},
                custom_fields=(CustomField(id="fld-1", name="Age", value="31"),),
                always_include=True,
            ),
            make_entry(2, story_id=story_id, title="Bram", order=1),
        )
    return Codex(
        id=f"cdx-{story_id}",
        story_id=story_id,
        title=f"Codex for Story {story_id}",
        categories=(
            make_category(1, story_id=story_id, entries=entries, title="Characters"),
            make_category(2, story_id=story_id, order=1, title="Locations"),
        ),
        created_at=fixed_now(0),
        updated_at=fixed_now(10),
    )


def make_repository(
    store: InMemoryDocumentStore | None = None,
    *,
    settings: RepositorySettings | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    metrics: MetricsRegistry | None = None,
) -> tuple[CodexRepository, InMemoryDocumentStore, ChangeChannel, MetricsRegistry]:
    backing = store if store is not None else InMemoryDocumentStore()
    registry = metrics if metrics is not None else MetricsRegistry()
    channel = ChangeChannel(metrics=registry)
    repository = CodexRepository(
        backing,
        channel,
        settings if settings is not None else RepositorySettings(base_delay_ms=1, max_delay_ms=4),
        metrics=registry,
        clock=StepClock(),
        sleep=sleep if sleep is not None else RecordingSleep(),
    )
    return repository, backing, channel, registry


__all__ = [
    "UTC",
    "RecordingSleep",
    "StepClock",
    "fixed_now",
    "make_category",
    "make_codex",
    "make_entry",
    "make_repository",
]
