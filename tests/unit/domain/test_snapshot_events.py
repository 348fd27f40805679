"""Unit tests for change snapshots."""

from __future__ import annotations

from datetime import datetime
from types import MappingProxyType

import pytest

from codex_store.domain import mutations
from codex_store.domain.events import ChangeKind, CodexSnapshot
from codex_store.domain.models import UTC

_NOW = datetime(2026, 4, 1, tzinfo=UTC)


def test_change_kinds_are_stable_strings() -> None:
    assert {kind.value for kind in ChangeKind} == {"loaded", "committed", "evicted"}
    assert ChangeKind("committed") is ChangeKind.COMMITTED


def test_snapshot_exposes_sorted_story_ids_and_lookup() -> None:
    first = mutations.seed_codex("b-story", now=_NOW)
    second = mutations.seed_codex("a-story", now=_NOW)
    snapshot = CodexSnapshot(
        version=3,
        change=ChangeKind.COMMITTED,
        story_id="b-story",
        codices=MappingProxyType({"b-story": first, "a-story": second}),
        emitted_at=_NOW,
    )

    assert snapshot.story_ids == ("a-story", "b-story")
    assert snapshot.get("b-story") is first
    assert snapshot.get("c-story") is None
    with pytest.raises(TypeError):
        snapshot.codices["c-story"] = first  # type: ignore[index]


@pytest.mark.parametrize(
    ("version", "change", "message"),
    [
        (0, ChangeKind.LOADED, "must be >= 1"),
        (True, ChangeKind.LOADED, "expected integer"),
        (1, "loaded", "expected ChangeKind"),
    ],
)
def test_snapshot_validates_version_and_kind(version: object, change: object, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        CodexSnapshot(
            version=version,  # type: ignore[arg-type]
            change=change,  # type: ignore[arg-type]
            story_id=None,
            codices={},
            emitted_at=_NOW,
        )
