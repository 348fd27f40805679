"""
codex-store — unit tests for the change channel

Purpose
- Validate snapshot fan-out, stale-generation protection, and subscriber isolation.

What this test file should cover
- Every commit/evict/load publishes exactly one full snapshot with a rising version.
- Stale generations are dropped without publishing.
- Failing subscribers are recorded and never interrupt the publisher.
- Sync and async subscribers, replay, and history buffering.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from codex_store.channel import ChangeChannel
from codex_store.domain import mutations
from codex_store.domain.events import ChangeKind, CodexSnapshot
from codex_store.domain.models import UTC, Codex
from codex_store.observability.metrics import (
    CACHED_CODICES,
    SNAPSHOTS_EMITTED,
    SUBSCRIBER_FAILURES,
    MetricsRegistry,
)

_NOW = datetime(2026, 5, 1, tzinfo=UTC)


def _codex(story_id: str) -> Codex:
    return mutations.seed_codex(story_id, now=_NOW)


def test_commit_publishes_full_mapping_once_per_change() -> None:
    channel = ChangeChannel(clock=lambda: _NOW)
    seen: list[CodexSnapshot] = []
    channel.subscribe(seen.append)

    first = _codex("s1")
    second = _codex("s2")
    channel.commit("s1", first)
    channel.commit("s2", second)
    channel.evict("s1")

    assert [(s.version, s.change, s.story_id) for s in seen] == [
        (1, ChangeKind.COMMITTED, "s1"),
        (2, ChangeKind.COMMITTED, "s2"),
        (3, ChangeKind.EVICTED, "s1"),
    ]
    assert seen[1].story_ids == ("s1", "s2")
    assert seen[2].story_ids == ("s2",)
    assert seen[0].emitted_at == _NOW
    assert channel.version == 3
    assert channel.get("s2") == second
    assert "s1" not in channel
    assert len(channel) == 1


def test_evicting_unknown_story_publishes_nothing() -> None:
    channel = ChangeChannel()
    seen: list[CodexSnapshot] = []
    channel.subscribe(seen.append)

    assert channel.evict("ghost") is None
    assert seen == []
    assert channel.version == 0


def test_stale_generation_is_dropped() -> None:
    channel = ChangeChannel()
    newer = _codex("s1")
    older = _codex("s1")

    assert channel.commit("s1", newer, generation=3) is not None
    assert channel.commit("s1", older, generation=2) is None
    assert channel.get("s1") == newer
    assert channel.commit("s1", older, generation=3) is not None
    assert channel.get("s1") == older
    assert channel.version == 2


def test_commit_rejects_mismatched_story() -> None:
    channel = ChangeChannel()

    with pytest.raises(ValueError, match="cannot commit under"):
        channel.commit("s2", _codex("s1"))
    with pytest.raises(ValueError, match="listed under"):
        channel.load({"s2": _codex("s1")})


def test_load_replaces_mapping_and_generations() -> None:
    channel = ChangeChannel()
    channel.commit("old", _codex("old"), generation=9)

    snapshot = channel.load({"s1": _codex("s1")}, generations={"s1": 4})

    assert snapshot.change is ChangeKind.LOADED
    assert snapshot.story_id is None
    assert snapshot.story_ids == ("s1",)
    assert channel.commit("s1", _codex("s1"), generation=3) is None
    assert channel.commit("old", _codex("old"), generation=1) is not None


def test_snapshots_are_read_only_and_isolated_from_later_changes() -> None:
    channel = ChangeChannel()
    first = channel.commit("s1", _codex("s1"))
    channel.commit("s2", _codex("s2"))

    assert first is not None
    assert first.story_ids == ("s1",)
    with pytest.raises(TypeError):
        channel.codices()["s3"] = _codex("s3")  # type: ignore[index]


def test_failing_subscriber_does_not_block_others() -> None:
    metrics = MetricsRegistry()
    channel = ChangeChannel(metrics=metrics)
    seen: list[int] = []

    def broken(snapshot: CodexSnapshot) -> None:
        raise RuntimeError(f"cannot handle v{snapshot.version}")

    channel.subscribe(broken)
    channel.subscribe(lambda snapshot: seen.append(snapshot.version))
    channel.commit("s1", _codex("s1"))

    assert seen == [1]
    [error] = channel.dispatch_errors()
    assert error.version == 1
    assert error.error_type == "RuntimeError"
    assert error.message == "cannot handle v1"
    assert "broken" in error.target
    assert metrics.get_counter(SUBSCRIBER_FAILURES) == 1.0
    assert metrics.get_counter(SNAPSHOTS_EMITTED, labels={"change": "committed"}) == 1.0
    assert metrics.get_gauge(CACHED_CODICES) == 1.0


def test_unsubscribe_and_replay_latest() -> None:
    channel = ChangeChannel()
    channel.commit("s1", _codex("s1"))
    late: list[int] = []

    token = channel.subscribe(lambda snapshot: late.append(snapshot.version), replay_latest=True)
    channel.commit("s2", _codex("s2"))

    assert channel.unsubscribe(token) is True
    assert channel.unsubscribe(token) is False
    channel.evict("s1")
    assert late == [1, 2]
    with pytest.raises(ValueError, match="callable"):
        channel.subscribe("nope")  # type: ignore[arg-type]


def test_history_is_bounded_and_replayable() -> None:
    channel = ChangeChannel(history_size=2)
    for story in ("a", "b", "c"):
        channel.commit(story, _codex(story))

    assert [s.version for s in channel.replay()] == [2, 3]
    assert [s.version for s in channel.replay(limit=1)] == [3]
    assert channel.replay(limit=0) == ()
    assert channel.latest is not None
    assert channel.latest.version == 3
    with pytest.raises(ValueError, match="history_size must be > 0"):
        ChangeChannel(history_size=0)


async def test_async_commit_awaits_async_subscribers() -> None:
    channel = ChangeChannel()
    seen: list[tuple[int, str | None]] = []

    async def on_change(snapshot: CodexSnapshot) -> None:
        await asyncio.sleep(0)
        seen.append((snapshot.version, snapshot.story_id))

    channel.subscribe(on_change)
    await channel.commit_async("s1", _codex("s1"))
    await channel.evict_async("s1")
    await channel.load_async({})

    assert seen == [(1, "s1"), (2, "s1"), (3, None)]


async def test_sync_publish_inside_loop_schedules_async_subscribers() -> None:
    channel = ChangeChannel()
    seen: list[int] = []

    async def on_change(snapshot: CodexSnapshot) -> None:
        seen.append(snapshot.version)
        if snapshot.version == 2:
            raise ValueError("second snapshot rejected")

    channel.subscribe(on_change)
    channel.commit("s1", _codex("s1"))
    channel.commit("s2", _codex("s2"))
    errors = await channel.drain_async()

    assert seen == [1, 2]
    assert [(error.version, error.error_type) for error in errors] == [(2, "ValueError")]


def _relic_metadata(codex: Codex | None) -> dict[str, object]:
    assert codex is not None
    category = codex.find_category_by_title("Lore")
    assert category is not None
    return category.entries[0].metadata


def test_nested_values_handed_out_never_reach_the_cache() -> None:
    channel = ChangeChannel()
    codex, lore = mutations.add_category(_codex("s1"), {"title": "Lore"}, now=_NOW)
    codex, _ = mutations.add_entry(
        codex, lore.id, {"title": "Relic", "metadata": {"k": 1}}, now=_NOW
    )
    snapshot = channel.commit("s1", codex)
    assert snapshot is not None

    _relic_metadata(snapshot.codices["s1"])["k"] = 999
    _relic_metadata(codex)["k"] = 998
    _relic_metadata(channel.get("s1"))["k"] = 997
    _relic_metadata(channel.codices()["s1"])["k"] = 996

    assert _relic_metadata(channel.get("s1")) == {"k": 1}
    later = channel.commit("s2", _codex("s2"))
    assert later is not None
    assert _relic_metadata(later.get("s1")) == {"k": 1}


async def test_interleaved_async_publishes_deliver_versions_in_order() -> None:
    channel = ChangeChannel()
    gate = asyncio.Event()
    parked: list[int] = []
    seen: list[CodexSnapshot] = []

    async def slow(snapshot: CodexSnapshot) -> None:
        if not parked:
            parked.append(snapshot.version)
            await gate.wait()

    async def record(snapshot: CodexSnapshot) -> None:
        seen.append(snapshot)

    channel.subscribe(slow)
    channel.subscribe(record)
    first = asyncio.create_task(channel.commit_async("s1", _codex("s1")))
    await asyncio.sleep(0)
    await channel.commit_async("s2", _codex("s2"))
    gate.set()
    await first

    assert parked == [1]
    assert [snapshot.version for snapshot in seen] == [2]
    assert seen[-1].story_ids == ("s1", "s2")
    assert channel.version == 2
