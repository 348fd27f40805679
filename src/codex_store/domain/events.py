"""Snapshot events emitted by the change channel."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime

from codex_store.domain.models import Codex, StrEnum


class ChangeKind(StrEnum):
    LOADED = "loaded"
    COMMITTED = "committed"
    EVICTED = "evicted"


@dataclass(frozen=True, slots=True)
class CodexSnapshot:
    """Full story -> codex mapping as of one committed change.

    ``codices`` is a read-only view; subscribers re-derive whatever they need
    from it on every emission rather than applying diffs.
    """

    version: int
    change: ChangeKind
    story_id: str | None
    codices: Mapping[str, Codex]
    emitted_at: datetime

    def __post_init__(self) -> None:
        if isinstance(self.version, bool) or not isinstance(self.version, int):
            raise ValueError("CodexSnapshot.version: expected integer")
        if self.version < 1:
            raise ValueError("CodexSnapshot.version: must be >= 1")
        if not isinstance(self.change, ChangeKind):
            raise ValueError("CodexSnapshot.change: expected ChangeKind")

    def get(self, story_id: str) -> Codex | None:
        return self.codices.get(story_id)

    @property
    def story_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self.codices))


__all__ = ["ChangeKind", "CodexSnapshot"]
