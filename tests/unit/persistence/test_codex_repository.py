"""Repository behavior: lifecycle, mutations, queries, and missing-target policy."""

from __future__ import annotations

import asyncio

import pytest

from codex_store.channel import ChangeChannel
from codex_store.config import default_config
from codex_store.constants import DEFAULT_CATEGORIES
from codex_store.domain.events import ChangeKind, CodexSnapshot
from codex_store.domain.models import Codex
from codex_store.errors import CodexStoreError, NotFoundError, StoreUnavailableError
from codex_store.observability.metrics import MISSING_TARGETS, WRITE_COMMITS, WRITE_NOOPS
from codex_store.persistence.document_store import InMemoryDocumentStore
from codex_store.persistence.repository import CodexRepository, RepositorySettings
from codex_store.persistence.serializer import codex_key, serialize_codex

from . import make_codex, make_repository


def _category_id(codex: Codex, title: str) -> str:
    category = codex.find_category_by_title(title)
    assert category is not None
    return category.id


def _raise_settings() -> RepositorySettings:
    return RepositorySettings(base_delay_ms=1, max_delay_ms=4, missing_target_policy="raise")


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------


async def test_start_loads_persisted_codices_and_emits_loaded() -> None:
    store = InMemoryDocumentStore()
    persisted = make_codex("s1")
    await store.put(codex_key("s1"), serialize_codex(persisted), rev=None)
    await store.put("settings", {"type": "settings"}, rev=None)
    repository, _, channel, _ = make_repository(store)

    await repository.start()
    await repository.start()

    assert repository.started
    assert channel.version == 1
    assert channel.latest is not None
    assert channel.latest.change is ChangeKind.LOADED
    assert await repository.get_codex("s1") == persisted
    assert await repository.get_codex("missing") is None


async def test_get_or_create_seeds_default_categories_once() -> None:
    repository, store, _, _ = make_repository()

    first = await repository.get_or_create_codex("s1")
    second = await repository.get_or_create_codex("s1")

    assert first == second
    assert first.title == "Codex for Story s1"
    assert [category.title for category in first.sorted_categories()] == [
        title for title, _, _ in DEFAULT_CATEGORIES
    ]
    assert [category.order for category in first.sorted_categories()] == [0, 1, 2, 3]
    assert all(not category.entries for category in first.categories)
    assert store.put_calls == 1
    assert await repository.get_all_codex_entries("s1") == []


async def test_concurrent_creates_across_repositories_agree_on_ids() -> None:
    store = InMemoryDocumentStore(latency_seconds=0.001)
    first_repo, _, _, _ = make_repository(store)
    second_repo, _, _, _ = make_repository(store)

    first, second = await asyncio.gather(
        first_repo.get_or_create_codex("s1"),
        second_repo.get_or_create_codex("s1"),
    )

    assert first.id == second.id
    assert [category.id for category in first.categories] == [
        category.id for category in second.categories
    ]
    assert len(store) == 1


async def test_store_never_ready_fails_every_operation() -> None:
    store = InMemoryDocumentStore(ready=False)
    settings = RepositorySettings(ready_timeout_seconds=0.05, ready_poll_interval_seconds=0.01)
    repository, _, channel, _ = make_repository(store, settings=settings)

    with pytest.raises(StoreUnavailableError):
        await repository.get_or_create_codex("s1")
    with pytest.raises(StoreUnavailableError):
        await repository.add_entry("s1", "cat-1", {"title": "Aria"})
    with pytest.raises(StoreUnavailableError):
        await repository.search_entries("s1", "aria")

    assert not repository.started
    assert channel.version == 0
    assert store.put_calls == 0


async def test_start_waits_for_delayed_readiness() -> None:
    store = InMemoryDocumentStore(ready_after_seconds=0.02)
    settings = RepositorySettings(ready_timeout_seconds=2.0, ready_poll_interval_seconds=0.001)
    repository, _, _, _ = make_repository(store, settings=settings)

    codex = await repository.get_or_create_codex("s1")

    assert repository.started
    assert codex.story_id == "s1"


# ----------------------------------------------------------------------
# Categories
# ----------------------------------------------------------------------


async def test_add_category_appends_with_next_order_and_soft_title() -> None:
    repository, _, _, _ = make_repository()
    await repository.get_or_create_codex("s1")

    named = await repository.add_category("s1", {"title": " Factions ", "icon": "flag"})
    blank = await repository.add_category("s1", {"title": "   "})

    assert named.title == "Factions"
    assert named.order == 4
    assert named.icon == "flag"
    assert blank.title == "New Category"
    assert blank.order == 5
    codex = await repository.get_codex("s1")
    assert codex is not None
    assert [category.id for category in codex.sorted_categories()][-2:] == [named.id, blank.id]


async def test_add_category_creates_missing_codex() -> None:
    repository, _, _, _ = make_repository()

    category = await repository.add_category("fresh", {"title": "Magic"})

    codex = await repository.get_codex("fresh")
    assert codex is not None
    assert len(codex.categories) == len(DEFAULT_CATEGORIES) + 1
    assert codex.find_category(category.id) is not None


async def test_update_category_changes_only_given_fields() -> None:
    repository, _, _, _ = make_repository()
    codex = await repository.get_or_create_codex("s1")
    category_id = _category_id(codex, "Locations")
    before = codex.find_category(category_id)
    assert before is not None

    await repository.update_category("s1", category_id, {"description": "Where things happen"})

    updated = await repository.get_codex("s1")
    assert updated is not None
    after = updated.find_category(category_id)
    assert after is not None
    assert after.description == "Where things happen"
    assert after.title == before.title
    assert after.icon == before.icon
    assert after.updated_at > before.updated_at


async def test_delete_category_drops_its_entries_from_every_view() -> None:
    repository, _, _, _ = make_repository()
    codex = await repository.get_or_create_codex("s1")
    characters = _category_id(codex, "Characters")
    await repository.add_entry("s1", characters, {"title": "Aria", "alwaysInclude": True})

    await repository.delete_category("s1", characters)

    assert await repository.get_all_codex_entries("s1") == []
    assert await repository.search_entries("s1", "aria") == []
    assert await repository.get_always_include_entries("s1") == []


async def test_reorder_categories_full_permutation_is_dense() -> None:
    repository, _, _, _ = make_repository()
    codex = await repository.get_or_create_codex("s1")
    reversed_ids = [category.id for category in reversed(codex.sorted_categories())]

    await repository.reorder_categories("s1", reversed_ids)

    updated = await repository.get_codex("s1")
    assert updated is not None
    assert [category.id for category in updated.sorted_categories()] == reversed_ids
    assert [category.order for category in updated.sorted_categories()] == [0, 1, 2, 3]


# ----------------------------------------------------------------------
# Entries
# ----------------------------------------------------------------------


async def test_add_entry_appends_in_order_with_server_fields() -> None:
    repository, _, _, _ = make_repository()
    codex = await repository.get_or_create_codex("s1")
    characters = _category_id(codex, "Characters")

    aria = await repository.add_entry(
        "s1",
        characters,
        {
            "title": "Aria",
            "content": "A wandering cartographer.",
            "tags": ["hero", " hero ", "map"],
            "id": "client-supplied",
            "order": 42,
        },
    )
    bram = await repository.add_entry("s1", characters, {})

    assert aria.order == 0
    assert aria.id != "client-supplied"
    assert aria.category_id == characters
    assert aria.story_id == "s1"
    assert aria.tags == ("hero", "map")
    assert aria.created_at == aria.updated_at
    assert bram.order == 1
    assert bram.title == "New Entry"
    assert bram.content == ""


async def test_add_entry_into_missing_category_raises_under_ignore_policy() -> None:
    repository, store, _, _ = make_repository()
    await repository.get_or_create_codex("s1")
    puts_before = store.put_calls

    with pytest.raises(NotFoundError) as excinfo:
        await repository.add_entry("s1", "cat-missing", {"title": "Ghost"})

    assert excinfo.value.kind == "category"
    assert store.put_calls == puts_before


async def test_update_entry_applies_partial_payload() -> None:
    repository, _, _, _ = make_repository()
    codex = await repository.get_or_create_codex("s1")
    characters = _category_id(codex, "Characters")
    entry = await repository.add_entry("s1", characters, {"title": "Aria", "content": "old"})

    await repository.update_entry(
        "s1",
        characters,
        entry.id,
        {
            "content": "new",
            "metadata": {"storyRole": "Protagonist"},
            "customFields": [{"name": "Age", "value": "31"}],
        },
    )

    [group] = await repository.get_all_codex_entries("s1")
    [updated] = group.entries
    assert updated.title == "Aria"
    assert updated.content == "new"
    assert updated.story_role is not None
    assert updated.story_role.value == "Protagonist"
    assert [(field.name, field.value) for field in updated.custom_fields] == [("Age", "31")]
    assert updated.custom_fields[0].id.startswith("fld-")
    assert updated.updated_at > entry.updated_at


async def test_unknown_payload_key_rejects_write_and_keeps_cache() -> None:
    repository, store, channel, _ = make_repository()
    codex = await repository.get_or_create_codex("s1")
    characters = _category_id(codex, "Characters")
    entry = await repository.add_entry("s1", characters, {"title": "Aria"})
    version_before = channel.version
    puts_before = store.put_calls

    with pytest.raises(ValueError, match="colour"):
        await repository.update_entry("s1", characters, entry.id, {"colour": "red"})

    assert channel.version == version_before
    assert store.put_calls == puts_before


async def test_delete_and_reorder_entries() -> None:
    repository, _, _, _ = make_repository()
    codex = await repository.get_or_create_codex("s1")
    characters = _category_id(codex, "Characters")
    first = await repository.add_entry("s1", characters, {"title": "One"})
    second = await repository.add_entry("s1", characters, {"title": "Two"})
    third = await repository.add_entry("s1", characters, {"title": "Three"})

    await repository.delete_entry("s1", characters, second.id)
    await repository.reorder_entries("s1", characters, [third.id, first.id])

    [group] = await repository.get_all_codex_entries("s1")
    assert [(entry.title, entry.order) for entry in group.entries] == [("Three", 0), ("One", 1)]


async def test_insert_entries_skips_ids_already_present() -> None:
    repository, _, _, metrics = make_repository()
    codex = await repository.get_or_create_codex("s1")
    characters = _category_id(codex, "Characters")
    template = make_codex().categories[0].entries

    inserted = await repository.insert_entries("s1", characters, template)
    again = await repository.insert_entries("s1", characters, template)

    assert [entry.title for entry in inserted] == ["Aria", "Bram"]
    assert [entry.category_id for entry in inserted] == [characters, characters]
    assert again == ()
    assert metrics.get_counter(WRITE_NOOPS, labels={"operation": "insert_entries"}) == 1.0


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------


async def test_search_is_case_insensitive_over_title_content_and_tags() -> None:
    repository, _, _, _ = make_repository()
    codex = await repository.get_or_create_codex("s1")
    characters = _category_id(codex, "Characters")
    locations = _category_id(codex, "Locations")
    await repository.add_entry("s1", locations, {"title": "Harbor", "content": "Aria's home"})
    await repository.add_entry("s1", characters, {"title": "ARIA"})
    await repository.add_entry("s1", characters, {"title": "Bram", "tags": ["friend-of-aria"]})
    await repository.add_entry("s1", characters, {"title": "Cole"})

    hits = await repository.search_entries("s1", "aRiA")

    assert [entry.title for entry in hits] == ["ARIA", "Bram", "Harbor"]
    assert await repository.search_entries("unknown-story", "aria") == []


async def test_grouped_entries_and_always_include_follow_display_order() -> None:
    repository, _, _, _ = make_repository()
    codex = await repository.get_or_create_codex("s1")
    characters = _category_id(codex, "Characters")
    notes = _category_id(codex, "Notes")
    await repository.add_entry("s1", notes, {"title": "Tone", "alwaysInclude": True})
    await repository.add_entry("s1", characters, {"title": "Aria", "alwaysInclude": True})
    await repository.add_entry("s1", characters, {"title": "Bram"})

    groups = await repository.get_all_codex_entries("s1")
    pinned = await repository.get_always_include_entries("s1")

    assert [(group.category, [entry.title for entry in group.entries]) for group in groups] == [
        ("Characters", ["Aria", "Bram"]),
        ("Notes", ["Tone"]),
    ]
    assert groups[0].category_id == characters
    assert [entry.title for entry in pinned] == ["Aria", "Tone"]


async def test_query_results_are_detached_from_cache() -> None:
    store = InMemoryDocumentStore()
    await store.put(codex_key("s1"), serialize_codex(make_codex()), rev=None)
    repository, _, channel, _ = make_repository(store)

    [aria] = await repository.search_entries("s1", "aria")
    aria.metadata["storyRole"] = "Villain"
    codex = await repository.get_or_create_codex("s1")
    codex.categories[0].entries[0].metadata.clear()
    latest = channel.latest
    assert latest is not None
    shared = latest.get("s1")
    assert shared is not None
    shared.categories[0].entries[0].metadata["storyRole"] = "Narrator"

    [again] = await repository.search_entries("s1", "aria")
    assert again.metadata["storyRole"] == "Protagonist"
    [group, *_] = await repository.get_all_codex_entries("s1")
    assert group.entries[0].metadata["storyRole"] == "Protagonist"


# ----------------------------------------------------------------------
# Missing-target policy
# ----------------------------------------------------------------------


async def test_ignore_policy_skips_missing_targets_without_emission() -> None:
    repository, store, channel, metrics = make_repository()
    codex = await repository.get_or_create_codex("s1")
    characters = _category_id(codex, "Characters")
    version_before = channel.version
    puts_before = store.put_calls

    await repository.update_entry("s1", characters, "ent-missing", {"title": "x"})
    await repository.delete_category("s1", "cat-missing")
    await repository.update_category("no-codex", "cat-1", {"title": "x"})

    assert channel.version == version_before
    assert store.put_calls == puts_before
    assert await repository.get_codex("no-codex") is None
    assert metrics.get_counter(MISSING_TARGETS, labels={"operation": "update_entry"}) == 1.0


async def test_reorder_with_unknown_ids_under_ignore_policy_applies_known_ids() -> None:
    repository, _, _, _ = make_repository()
    codex = await repository.get_or_create_codex("s1")
    ordered = codex.sorted_categories()
    last = ordered[-1].id

    await repository.reorder_categories("s1", [last, "cat-ghost"])

    updated = await repository.get_codex("s1")
    assert updated is not None
    assert {category.id: category.order for category in updated.categories} == {
        ordered[0].id: 0,
        ordered[1].id: 1,
        ordered[2].id: 2,
        last: 0,
    }


async def test_raise_policy_surfaces_not_found() -> None:
    repository, _, channel, _ = make_repository(settings=_raise_settings())
    codex = await repository.get_or_create_codex("s1")
    characters = _category_id(codex, "Characters")
    version_before = channel.version

    with pytest.raises(NotFoundError) as entry_exc:
        await repository.delete_entry("s1", characters, "ent-missing")
    with pytest.raises(NotFoundError):
        await repository.reorder_categories("s1", ["cat-ghost"])
    with pytest.raises(NotFoundError) as codex_exc:
        await repository.delete_entry("no-codex", characters, "ent-1")

    assert entry_exc.value.kind == "entry"
    assert codex_exc.value.kind == "codex"
    assert channel.version == version_before


async def test_mutation_that_yields_no_outcome_raises_store_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    repository, _, _, _ = make_repository()

    async def no_outcome(*args: object, **kwargs: object) -> None:
        return None

    monkeypatch.setattr(repository, "_read_apply_write", no_outcome)

    with pytest.raises(CodexStoreError, match="finished without a result"):
        await repository.add_category("s1", {"title": "Lore"})


# ----------------------------------------------------------------------
# Codex deletion and change fan-out
# ----------------------------------------------------------------------


async def test_delete_codex_evicts_and_removes_document() -> None:
    repository, store, channel, metrics = make_repository()
    await repository.get_or_create_codex("s1")

    await repository.delete_codex("s1")
    await repository.delete_codex("s1")

    assert codex_key("s1") not in store
    assert await repository.get_codex("s1") is None
    assert channel.latest is not None
    assert channel.latest.change is ChangeKind.EVICTED
    assert metrics.get_counter(WRITE_COMMITS, labels={"operation": "delete_codex"}) == 1.0


async def test_delete_missing_codex_under_raise_policy() -> None:
    repository, _, _, _ = make_repository(settings=_raise_settings())

    with pytest.raises(NotFoundError):
        await repository.delete_codex("nothing-here")


async def test_subscribers_receive_full_mapping_per_commit() -> None:
    repository, _, channel, _ = make_repository()
    seen: list[CodexSnapshot] = []
    channel.subscribe(seen.append)

    await repository.get_or_create_codex("s1")
    await repository.get_or_create_codex("s2")
    codex = await repository.get_or_create_codex("s1")
    await repository.add_entry("s1", _category_id(codex, "Objects"), {"title": "Compass"})

    assert [snapshot.change for snapshot in seen] == [
        ChangeKind.LOADED,
        ChangeKind.COMMITTED,
        ChangeKind.COMMITTED,
        ChangeKind.COMMITTED,
    ]
    assert seen[-1].story_ids == ("s1", "s2")
    assert [snapshot.version for snapshot in seen] == [1, 2, 3, 4]


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------


def test_settings_from_config_and_validation() -> None:
    config = default_config()
    config["retry"]["max_attempts"] = 7
    config["codex"]["missing_target_policy"] = "raise"

    settings = RepositorySettings.from_config(config)

    assert settings.max_attempts == 7
    assert settings.missing_target_policy == "raise"
    with pytest.raises(ValueError, match="max_attempts"):
        RepositorySettings(max_attempts=0)
    with pytest.raises(ValueError, match="missing_target_policy"):
        RepositorySettings(missing_target_policy="explode")  # type: ignore[arg-type]


def test_repository_exposes_channel_and_settings() -> None:
    channel = ChangeChannel()
    repository = CodexRepository(InMemoryDocumentStore(), channel)

    assert repository.channel is channel
    assert repository.settings == RepositorySettings()
    assert not repository.started
