"""Codex repository: optimistic read-modify-write over a revisioned document store.

Every mutation goes through :meth:`CodexRepository._read_apply_write`:

1. fetch the persisted codex and its revision token,
2. apply a pure transform from :mod:`codex_store.domain.mutations`,
3. write back with the revision read in step 1,
4. on a revision conflict back off and retry from step 1,
5. after a confirmed write commit the new aggregate into the change channel.

The cache held by the channel is only ever updated from a successful write or
from a read of the store, so a failed mutation leaves it untouched. Queries
(``search_entries`` and friends) read the cache only.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

import structlog

from codex_store.channel import ChangeChannel
from codex_store.constants import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_CATEGORY_TITLE,
    DEFAULT_ENTRY_TITLE,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_READY_POLL_INTERVAL_SECONDS,
    DEFAULT_READY_TIMEOUT_SECONDS,
    MISSING_TARGET_POLICIES,
)
from codex_store.domain import mutations
from codex_store.domain.models import (
    Codex,
    CodexCategory,
    CodexEntry,
    CodexEntryGroup,
    utc_now,
)
from codex_store.errors import (
    CodexStoreError,
    ConflictExhaustedError,
    DocumentConflictError,
    DocumentNotFoundError,
    NotFoundError,
    SerializationError,
    StoreUnavailableError,
)
from codex_store.observability.logging import correlation_scope
from codex_store.observability.metrics import (
    CACHED_CODICES,
    COMMIT_LATENCY_MS,
    MISSING_TARGETS,
    WRITE_ATTEMPTS,
    WRITE_COMMITS,
    WRITE_CONFLICTS,
    WRITE_EXHAUSTED,
    WRITE_NOOPS,
    MetricsRegistry,
)
from codex_store.persistence.document_store import (
    DocumentStore,
    StoredDocument,
    revision_generation,
)
from codex_store.persistence.serializer import (
    codex_key,
    codex_key_range,
    deserialize_codex,
    is_codex_document,
    serialize_codex,
)
from codex_store.utils.concurrency import capped_backoff_seconds, run_with_timeout, wait_until

R = TypeVar("R")

Clock = Callable[[], Any]
Sleep = Callable[[float], Awaitable[None]]
MissingTargetPolicy = Literal["ignore", "raise"]


@dataclass(frozen=True, slots=True)
class RepositorySettings:
    """Retry, readiness, and soft-validation policy for :class:`CodexRepository`."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    ready_timeout_seconds: float = DEFAULT_READY_TIMEOUT_SECONDS
    ready_poll_interval_seconds: float = DEFAULT_READY_POLL_INTERVAL_SECONDS
    missing_target_policy: MissingTargetPolicy = "ignore"
    default_entry_title: str = DEFAULT_ENTRY_TITLE
    default_category_title: str = DEFAULT_CATEGORY_TITLE

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be >= 0")
        if self.ready_timeout_seconds <= 0:
            raise ValueError("ready_timeout_seconds must be > 0")
        if self.ready_poll_interval_seconds <= 0:
            raise ValueError("ready_poll_interval_seconds must be > 0")
        if self.missing_target_policy not in MISSING_TARGET_POLICIES:
            raise ValueError(
                f"missing_target_policy must be one of {', '.join(MISSING_TARGET_POLICIES)}"
            )

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> RepositorySettings:
        store = config.get("store", {})
        retry = config.get("retry", {})
        codex = config.get("codex", {})
        return cls(
            max_attempts=retry.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
            base_delay_ms=retry.get("base_delay_ms", DEFAULT_BASE_DELAY_MS),
            max_delay_ms=retry.get("max_delay_ms", DEFAULT_MAX_DELAY_MS),
            ready_timeout_seconds=store.get("ready_timeout_seconds", DEFAULT_READY_TIMEOUT_SECONDS),
            ready_poll_interval_seconds=store.get(
                "ready_poll_interval_seconds", DEFAULT_READY_POLL_INTERVAL_SECONDS
            ),
            missing_target_policy=codex.get("missing_target_policy", "ignore"),
            default_entry_title=codex.get("default_entry_title", DEFAULT_ENTRY_TITLE),
            default_category_title=codex.get("default_category_title", DEFAULT_CATEGORY_TITLE),
        )


@dataclass(frozen=True, slots=True)
class MutationOutcome(Generic[R]):
    """Result of a pure transform: the new codex (``None`` for no change) and a value."""

    codex: Codex | None
    result: R


Transform = Callable[[Codex], MutationOutcome[R]]


class CodexRepository:
    """Mutation and query API for per-story codices."""

    def __init__(
        self,
        store: DocumentStore,
        channel: ChangeChannel,
        settings: RepositorySettings | None = None,
        *,
        metrics: MetricsRegistry | None = None,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._channel = channel
        self._settings = settings if settings is not None else RepositorySettings()
        self._metrics = metrics if metrics is not None else MetricsRegistry(enabled=False)
        self._clock = clock
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._start_lock = asyncio.Lock()
        self._started = False

    @property
    def settings(self) -> RepositorySettings:
        return self._settings

    @property
    def channel(self) -> ChangeChannel:
        return self._channel

    @property
    def started(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Wait for the store, then load every persisted codex into the channel.

        Raises ``StoreUnavailableError`` when the store is not ready within
        ``ready_timeout_seconds``. A failed start is retried by the next call.
        """

        if self._started:
            return
        async with self._start_lock:
            if self._started:
                return
            settings = self._settings
            try:
                await run_with_timeout(
                    wait_until(
                        lambda: self._store.is_ready,
                        poll_interval_seconds=settings.ready_poll_interval_seconds,
                    ),
                    settings.ready_timeout_seconds,
                )
            except TimeoutError as exc:
                self._logger.warning(
                    "codex_store_unavailable",
                    timeout_seconds=settings.ready_timeout_seconds,
                )
                raise StoreUnavailableError(
                    f"document store not ready after {settings.ready_timeout_seconds} seconds"
                ) from exc

            start_key, end_key = codex_key_range()
            documents = await self._store.range_query(start_key, end_key)
            codices: dict[str, Codex] = {}
            generations: dict[str, int] = {}
            for document in documents:
                if document.body is None or not is_codex_document(document.body):
                    continue
                codex = _decode(document)
                codices[codex.story_id] = codex
                generations[codex.story_id] = revision_generation(document.rev)

            snapshot = await self._channel.load_async(codices, generations=generations)
            self._started = True
            self._metrics.set_gauge(CACHED_CODICES, len(codices))
            self._logger.info(
                "codex_store_ready",
                codices=len(codices),
                version=snapshot.version,
            )

    # ------------------------------------------------------------------
    # Codex lifecycle
    # ------------------------------------------------------------------

    async def get_or_create_codex(self, story_id: str) -> Codex:
        """Return the story's codex, creating it with the default categories when absent.

        A create that loses the race against another writer re-reads and adopts
        the winner's document, so concurrent callers agree on every id.
        """

        await self.start()
        cached = self._channel.get(story_id)
        if cached is not None:
            return cached

        key = codex_key(story_id)
        attempts = self._settings.max_attempts
        with correlation_scope(story_id=story_id, operation="get_or_create_codex"):
            for attempt in range(attempts):
                try:
                    stored = await self._store.get(key)
                except DocumentNotFoundError:
                    stored = None

                if stored is not None:
                    codex = _decode(stored)
                    await self._channel.commit_async(
                        story_id, codex, generation=revision_generation(stored.rev)
                    )
                    return codex

                codex = mutations.seed_codex(story_id, now=self._clock())
                self._metrics.inc(WRITE_ATTEMPTS, labels={"operation": "create_codex"})
                try:
                    new_rev = await self._store.put(key, serialize_codex(codex), rev=None)
                except DocumentConflictError:
                    self._record_conflict(story_id, "create_codex", attempt)
                    continue

                await self._channel.commit_async(
                    story_id, codex, generation=revision_generation(new_rev)
                )
                self._metrics.inc(WRITE_COMMITS, labels={"operation": "create_codex"})
                self._logger.info(
                    "codex_created",
                    story_id=story_id,
                    codex_id=codex.id,
                    rev=new_rev,
                )
                return codex

        self._record_exhausted(story_id, "get_or_create_codex", attempts)
        raise ConflictExhaustedError(story_id, attempts)

    async def get_codex(self, story_id: str) -> Codex | None:
        """Cached codex for ``story_id`` without creating one."""

        await self.start()
        return self._channel.get(story_id)

    async def delete_codex(self, story_id: str) -> None:
        """Remove the persisted codex document and evict it from the cache."""

        await self.start()
        key = codex_key(story_id)
        attempts = self._settings.max_attempts
        with correlation_scope(story_id=story_id, operation="delete_codex"):
            for attempt in range(attempts):
                self._metrics.inc(WRITE_ATTEMPTS, labels={"operation": "delete_codex"})
                try:
                    stored = await self._store.get(key)
                except DocumentNotFoundError:
                    self._on_missing_target(
                        NotFoundError("codex", story_id, story_id=story_id),
                        operation="delete_codex",
                    )
                    if self._channel.get(story_id) is not None:
                        await self._channel.evict_async(story_id)
                    return
                try:
                    await self._store.remove(key, rev=stored.rev)
                except DocumentNotFoundError:
                    continue
                except DocumentConflictError:
                    await self._backoff_after_conflict(story_id, "delete_codex", attempt)
                    continue

                await self._channel.evict_async(story_id)
                self._metrics.inc(WRITE_COMMITS, labels={"operation": "delete_codex"})
                self._metrics.set_gauge(CACHED_CODICES, len(self._channel))
                self._logger.info("codex_deleted", story_id=story_id, rev=stored.rev)
                return

        self._record_exhausted(story_id, "delete_codex", attempts)
        raise ConflictExhaustedError(story_id, attempts)

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    async def add_category(self, story_id: str, partial: Mapping[str, object]) -> CodexCategory:
        def transform(codex: Codex) -> MutationOutcome[CodexCategory]:
            updated, category = mutations.add_category(
                codex,
                partial,
                now=self._clock(),
                default_title=self._settings.default_category_title,
            )
            return MutationOutcome(updated, category)

        outcome = await self._read_apply_write(
            story_id, transform, operation="add_category", create_missing=True
        )
        return _require_outcome(outcome, story_id).result

    async def update_category(
        self, story_id: str, category_id: str, updates: Mapping[str, object]
    ) -> None:
        def transform(codex: Codex) -> MutationOutcome[None]:
            updated = mutations.update_category(
                codex,
                category_id,
                updates,
                now=self._clock(),
                default_title=self._settings.default_category_title,
            )
            return MutationOutcome(updated, None)

        with correlation_scope(category_id=category_id):
            await self._read_apply_write(story_id, transform, operation="update_category")

    async def delete_category(self, story_id: str, category_id: str) -> None:
        """Remove a category and every entry it owns."""

        def transform(codex: Codex) -> MutationOutcome[None]:
            return MutationOutcome(
                mutations.delete_category(codex, category_id, now=self._clock()), None
            )

        with correlation_scope(category_id=category_id):
            await self._read_apply_write(story_id, transform, operation="delete_category")

    async def reorder_categories(self, story_id: str, ordered_ids: Sequence[str]) -> None:
        """Assign ``order`` 0..n-1 to the listed categories; unlisted ones keep theirs."""

        def transform(codex: Codex) -> MutationOutcome[None]:
            updated, unknown = mutations.reorder_categories(codex, ordered_ids, now=self._clock())
            self._check_unknown_ids("category", unknown, story_id, operation="reorder_categories")
            return MutationOutcome(updated, None)

        await self._read_apply_write(story_id, transform, operation="reorder_categories")

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def add_entry(
        self, story_id: str, category_id: str, partial: Mapping[str, object]
    ) -> CodexEntry:
        """Append an entry built on the latest persisted codex.

        Raises ``NotFoundError`` when the category does not exist, whatever the
        missing-target policy says.
        """

        def transform(codex: Codex) -> MutationOutcome[CodexEntry]:
            updated, entry = mutations.add_entry(
                codex,
                category_id,
                partial,
                now=self._clock(),
                default_title=self._settings.default_entry_title,
            )
            return MutationOutcome(updated, entry)

        with correlation_scope(category_id=category_id):
            outcome = await self._read_apply_write(
                story_id,
                transform,
                operation="add_entry",
                create_missing=True,
                missing_targets_raise=True,
            )
        return _require_outcome(outcome, story_id).result

    async def insert_entries(
        self, story_id: str, category_id: str, entries: Sequence[CodexEntry]
    ) -> tuple[CodexEntry, ...]:
        """Append prebuilt entries in one write, skipping ids the codex already holds.

        Returns the entries actually inserted. Used by imports.
        """

        def transform(codex: Codex) -> MutationOutcome[tuple[CodexEntry, ...]]:
            existing = set(codex.entry_ids())
            now = self._clock()
            updated = codex
            inserted: list[CodexEntry] = []
            for entry in entries:
                if entry.id in existing:
                    continue
                updated = mutations.insert_entry(updated, category_id, entry, now=now)
                existing.add(entry.id)
                placed = updated.find_category(category_id)
                if placed is None:
                    raise NotFoundError("category", category_id, story_id=story_id)
                inserted.append(placed.entries[-1])
            if not inserted:
                return MutationOutcome(None, ())
            return MutationOutcome(updated, tuple(inserted))

        with correlation_scope(category_id=category_id):
            outcome = await self._read_apply_write(
                story_id,
                transform,
                operation="insert_entries",
                create_missing=True,
                missing_targets_raise=True,
            )
        return _require_outcome(outcome, story_id).result

    async def update_entry(
        self,
        story_id: str,
        category_id: str,
        entry_id: str,
        updates: Mapping[str, object],
    ) -> None:
        def transform(codex: Codex) -> MutationOutcome[None]:
            updated = mutations.update_entry(
                codex,
                category_id,
                entry_id,
                updates,
                now=self._clock(),
                default_title=self._settings.default_entry_title,
            )
            return MutationOutcome(updated, None)

        with correlation_scope(category_id=category_id, entry_id=entry_id):
            await self._read_apply_write(story_id, transform, operation="update_entry")

    async def delete_entry(self, story_id: str, category_id: str, entry_id: str) -> None:
        def transform(codex: Codex) -> MutationOutcome[None]:
            return MutationOutcome(
                mutations.delete_entry(codex, category_id, entry_id, now=self._clock()), None
            )

        with correlation_scope(category_id=category_id, entry_id=entry_id):
            await self._read_apply_write(story_id, transform, operation="delete_entry")

    async def reorder_entries(
        self, story_id: str, category_id: str, ordered_ids: Sequence[str]
    ) -> None:
        def transform(codex: Codex) -> MutationOutcome[None]:
            updated, unknown = mutations.reorder_entries(
                codex, category_id, ordered_ids, now=self._clock()
            )
            self._check_unknown_ids("entry", unknown, story_id, operation="reorder_entries")
            return MutationOutcome(updated, None)

        with correlation_scope(category_id=category_id):
            await self._read_apply_write(story_id, transform, operation="reorder_entries")

    # ------------------------------------------------------------------
    # Queries (cache only)
    # ------------------------------------------------------------------

    async def search_entries(self, story_id: str, query: str) -> list[CodexEntry]:
        """Case-insensitive substring match on title, content, or any tag."""

        codex = await self._cached(story_id)
        if codex is None:
            return []
        return [
            entry
            for category in codex.sorted_categories()
            for entry in category.sorted_entries()
            if entry.matches(query)
        ]

    async def get_all_codex_entries(self, story_id: str) -> list[CodexEntryGroup]:
        """Non-empty categories in display order, each with its entries sorted by ``order``."""

        codex = await self._cached(story_id)
        if codex is None:
            return []
        return [
            CodexEntryGroup(
                category=category.title,
                category_id=category.id,
                icon=category.icon,
                entries=category.sorted_entries(),
            )
            for category in codex.sorted_categories()
            if category.entries
        ]

    async def get_always_include_entries(self, story_id: str) -> list[CodexEntry]:
        codex = await self._cached(story_id)
        if codex is None:
            return []
        return [
            entry
            for category in codex.sorted_categories()
            for entry in category.sorted_entries()
            if entry.always_include
        ]

    # ------------------------------------------------------------------
    # Read-apply-write
    # ------------------------------------------------------------------

    async def _read_apply_write(
        self,
        story_id: str,
        transform: Transform[R],
        *,
        operation: str,
        create_missing: bool = False,
        missing_targets_raise: bool = False,
    ) -> MutationOutcome[R] | None:
        """Run ``transform`` against the latest persisted codex and write it back.

        Returns ``None`` when a missing target was ignored. An outcome whose
        ``codex`` is ``None`` means the transform found nothing to change; no
        write and no emission happen in either case.
        """

        await self.start()
        key = codex_key(story_id)
        settings = self._settings
        labels = {"operation": operation}

        with correlation_scope(story_id=story_id, operation=operation):
            for attempt in range(settings.max_attempts):
                self._metrics.inc(WRITE_ATTEMPTS, labels=labels)
                started = time.perf_counter()

                try:
                    stored = await self._store.get(key)
                except DocumentNotFoundError:
                    stored = None

                rev: str | None
                if stored is None:
                    if not create_missing:
                        self._on_missing_target(
                            NotFoundError("codex", story_id, story_id=story_id),
                            operation=operation,
                        )
                        return None
                    current = mutations.seed_codex(story_id, now=self._clock())
                    rev = None
                else:
                    current = _decode(stored)
                    rev = stored.rev

                try:
                    outcome = transform(current)
                except NotFoundError as exc:
                    if missing_targets_raise:
                        raise
                    self._on_missing_target(exc, operation=operation)
                    return None

                if outcome.codex is None:
                    self._metrics.inc(WRITE_NOOPS, labels=labels)
                    self._logger.debug(
                        "codex_write_skipped", story_id=story_id, operation=operation
                    )
                    return outcome

                try:
                    new_rev = await self._store.put(key, serialize_codex(outcome.codex), rev=rev)
                except DocumentConflictError:
                    await self._backoff_after_conflict(story_id, operation, attempt)
                    continue

                snapshot = await self._channel.commit_async(
                    story_id, outcome.codex, generation=revision_generation(new_rev)
                )
                elapsed_ms = (time.perf_counter() - started) * 1000.0
                self._metrics.inc(WRITE_COMMITS, labels=labels)
                self._metrics.observe(COMMIT_LATENCY_MS, elapsed_ms, labels=labels)
                self._metrics.set_gauge(CACHED_CODICES, len(self._channel))
                self._logger.info(
                    "codex_write_committed",
                    story_id=story_id,
                    operation=operation,
                    attempt=attempt + 1,
                    rev=new_rev,
                    version=None if snapshot is None else snapshot.version,
                    latency_ms=round(elapsed_ms, 3),
                )
                return outcome

        self._record_exhausted(story_id, operation, settings.max_attempts)
        raise ConflictExhaustedError(story_id, settings.max_attempts)

    async def _backoff_after_conflict(self, story_id: str, operation: str, attempt: int) -> None:
        self._record_conflict(story_id, operation, attempt)
        if attempt + 1 >= self._settings.max_attempts:
            return
        await self._sleep(
            capped_backoff_seconds(
                attempt,
                base_delay_ms=self._settings.base_delay_ms,
                max_delay_ms=self._settings.max_delay_ms,
            )
        )

    def _record_conflict(self, story_id: str, operation: str, attempt: int) -> None:
        self._metrics.inc(WRITE_CONFLICTS, labels={"operation": operation})
        self._logger.info(
            "codex_write_conflict",
            story_id=story_id,
            operation=operation,
            attempt=attempt + 1,
            max_attempts=self._settings.max_attempts,
        )

    def _record_exhausted(self, story_id: str, operation: str, attempts: int) -> None:
        self._metrics.inc(WRITE_EXHAUSTED, labels={"operation": operation})
        self._logger.warning(
            "codex_write_exhausted",
            story_id=story_id,
            operation=operation,
            attempts=attempts,
        )

    def _on_missing_target(self, exc: NotFoundError, *, operation: str) -> None:
        self._metrics.inc(MISSING_TARGETS, labels={"operation": operation})
        if self._settings.missing_target_policy == "raise":
            raise exc
        self._logger.warning(
            "codex_missing_target",
            story_id=exc.story_id,
            operation=operation,
            kind=exc.kind,
            identifier=exc.identifier,
        )

    def _check_unknown_ids(
        self, kind: str, unknown: tuple[str, ...], story_id: str, *, operation: str
    ) -> None:
        if not unknown:
            return
        if self._settings.missing_target_policy == "raise":
            raise NotFoundError(kind, unknown[0], story_id=story_id)
        self._metrics.inc(MISSING_TARGETS, labels={"operation": operation})
        self._logger.warning(
            "codex_missing_target",
            story_id=story_id,
            operation=operation,
            kind=kind,
            identifiers=list(unknown),
        )

    async def _cached(self, story_id: str) -> Codex | None:
        await self.start()
        return self._channel.get(story_id)


def _require_outcome(outcome: MutationOutcome[R] | None, story_id: str) -> MutationOutcome[R]:
    if outcome is None:
        raise CodexStoreError(f"write for story {story_id!r} finished without a result")
    return outcome


def _decode(stored: StoredDocument) -> Codex:
    if stored.body is None:
        raise SerializationError(f"document {stored.key!r} was read without a body")
    return deserialize_codex(stored.body)


__all__ = [
    "CodexRepository",
    "MutationOutcome",
    "RepositorySettings",
]
