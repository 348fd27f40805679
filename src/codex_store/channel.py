"""Change channel: the story -> codex cache and its snapshot fan-out.

The channel is the only place the in-memory mapping lives. Each ``commit``,
``evict`` or ``load`` replaces the mapping and publishes exactly one
``CodexSnapshot`` carrying the whole of it; subscribers never see partial
state and never receive diffs.

The cache keeps private copies. Every read and every snapshot gets detached
copies, so nothing handed out can reach back into the cache. Each subscriber
sees versions in increasing order: a snapshot older than one already
delivered to it is skipped.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import threading
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final, cast

from codex_store.domain.events import ChangeKind, CodexSnapshot
from codex_store.domain.models import utc_now
from codex_store.observability.metrics import (
    CACHED_CODICES,
    SNAPSHOTS_EMITTED,
    SUBSCRIBER_FAILURES,
    MetricsRegistry,
)

if TYPE_CHECKING:
    from datetime import datetime

    from codex_store.domain.models import Codex

Subscriber = Callable[[CodexSnapshot], object]
Clock = Callable[[], "datetime"]

DEFAULT_HISTORY_SIZE: Final[int] = 64
_DEFAULT_ERROR_BUFFER: Final[int] = 256


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting the publisher."""

    version: int
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    callback: Subscriber
    is_async: bool


class ChangeChannel:
    """Owns the cached mapping and republishes it on every committed change."""

    def __init__(
        self,
        *,
        history_size: int = DEFAULT_HISTORY_SIZE,
        metrics: MetricsRegistry | None = None,
        clock: Clock = utc_now,
    ) -> None:
        if isinstance(history_size, bool) or not isinstance(history_size, int):
            raise ValueError(f"history_size must be an integer, got {type(history_size).__name__}")
        if history_size <= 0:
            raise ValueError("history_size must be > 0")

        self._codices: dict[str, Codex] = {}
        # Highest revision generation committed per story; older commits are dropped.
        self._generations: dict[str, int] = {}
        self._version = 0
        self._history = deque[CodexSnapshot](maxlen=history_size)
        self._subscriptions: dict[int, _Subscription] = {}
        # Last snapshot version handed to each subscriber token.
        self._delivered: dict[int, int] = {}
        self._pending_async_tasks: set[asyncio.Task[None]] = set()
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()
        self._metrics = metrics if metrics is not None else MetricsRegistry(enabled=False)
        self._clock = clock

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    @property
    def latest(self) -> CodexSnapshot | None:
        with self._lock:
            return self._history[-1] if self._history else None

    def get(self, story_id: str) -> Codex | None:
        """Detached copy of the cached codex for ``story_id``."""

        with self._lock:
            cached = self._codices.get(story_id)
            return None if cached is None else copy.deepcopy(cached)

    def codices(self) -> Mapping[str, Codex]:
        """Read-only view over detached copies of the current mapping."""

        with self._lock:
            return MappingProxyType(copy.deepcopy(self._codices))

    def __contains__(self, story_id: object) -> bool:
        with self._lock:
            return story_id in self._codices

    def __len__(self) -> int:
        with self._lock:
            return len(self._codices)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: Subscriber, *, replay_latest: bool = False) -> int:
        """Register ``callback`` for every future snapshot; returns an unsubscribe token.

        With ``replay_latest`` the most recent snapshot is delivered synchronously
        before the call returns, so late subscribers start from current state.
        """

        if not callable(callback):
            raise ValueError("callback must be callable")
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(
                token=token,
                callback=callback,
                is_async=inspect.iscoroutinefunction(callback),
            )
            latest = self._history[-1] if self._history else None
        if replay_latest and latest is not None and self._claim_delivery(token, latest):
            error = self._invoke_callback(_Subscription(token, callback, False), latest)
            if error is not None:
                self._record_errors([error])
        return token

    def unsubscribe(self, token: int) -> bool:
        if isinstance(token, bool) or not isinstance(token, int):
            raise ValueError(f"token must be an integer, got {type(token).__name__}")
        with self._lock:
            self._delivered.pop(token, None)
            return self._subscriptions.pop(token, None) is not None

    # ------------------------------------------------------------------
    # Write side (repository only)
    # ------------------------------------------------------------------

    def commit(
        self, story_id: str, codex: Codex, *, generation: int | None = None
    ) -> CodexSnapshot | None:
        """Store ``codex`` and publish; returns ``None`` when ``generation`` is stale."""

        snapshot = self._apply_commit(story_id, codex, generation)
        if snapshot is not None:
            self._publish(snapshot)
        return snapshot

    async def commit_async(
        self, story_id: str, codex: Codex, *, generation: int | None = None
    ) -> CodexSnapshot | None:
        snapshot = self._apply_commit(story_id, codex, generation)
        if snapshot is not None:
            await self._publish_async(snapshot)
        return snapshot

    def evict(self, story_id: str) -> CodexSnapshot | None:
        """Drop ``story_id`` and publish; returns ``None`` when it was not cached."""

        snapshot = self._apply_evict(story_id)
        if snapshot is not None:
            self._publish(snapshot)
        return snapshot

    async def evict_async(self, story_id: str) -> CodexSnapshot | None:
        snapshot = self._apply_evict(story_id)
        if snapshot is not None:
            await self._publish_async(snapshot)
        return snapshot

    def load(
        self,
        codices: Mapping[str, Codex],
        *,
        generations: Mapping[str, int] | None = None,
    ) -> CodexSnapshot:
        """Replace the whole mapping (startup) and publish once."""

        snapshot = self._apply_load(codices, generations)
        self._publish(snapshot)
        return snapshot

    async def load_async(
        self,
        codices: Mapping[str, Codex],
        *,
        generations: Mapping[str, int] | None = None,
    ) -> CodexSnapshot:
        snapshot = self._apply_load(codices, generations)
        await self._publish_async(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # History and diagnostics
    # ------------------------------------------------------------------

    def replay(self, *, limit: int | None = None) -> tuple[CodexSnapshot, ...]:
        """Buffered snapshots in publish order, oldest first."""

        with self._lock:
            snapshots = tuple(self._history)
        if limit is None:
            return snapshots
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValueError(f"limit must be an integer, got {type(limit).__name__}")
        if limit <= 0:
            return ()
        return snapshots[-limit:]

    def dispatch_errors(self, *, limit: int | None = None) -> tuple[DispatchError, ...]:
        with self._lock:
            errors = tuple(self._dispatch_errors)
        if limit is None:
            return errors
        if limit <= 0:
            return ()
        return errors[-limit:]

    async def drain_async(self) -> tuple[DispatchError, ...]:
        """Await async subscriber tasks scheduled by synchronous publishes."""

        with self._lock:
            pending = tuple(self._pending_async_tasks)
            self._pending_async_tasks.clear()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return self.dispatch_errors()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_commit(
        self, story_id: str, codex: Codex, generation: int | None
    ) -> CodexSnapshot | None:
        if codex.story_id != story_id:
            raise ValueError(
                f"codex belongs to story {codex.story_id!r}, cannot commit under {story_id!r}"
            )
        with self._lock:
            if generation is not None:
                if generation < self._generations.get(story_id, 0):
                    return None
                self._generations[story_id] = generation
            self._codices[story_id] = copy.deepcopy(codex)
            return self._next_snapshot(ChangeKind.COMMITTED, story_id)

    def _apply_evict(self, story_id: str) -> CodexSnapshot | None:
        with self._lock:
            if story_id not in self._codices:
                return None
            del self._codices[story_id]
            self._generations.pop(story_id, None)
            return self._next_snapshot(ChangeKind.EVICTED, story_id)

    def _apply_load(
        self,
        codices: Mapping[str, Codex],
        generations: Mapping[str, int] | None,
    ) -> CodexSnapshot:
        for story_id, codex in codices.items():
            if codex.story_id != story_id:
                raise ValueError(f"codex for {codex.story_id!r} listed under {story_id!r}")
        with self._lock:
            self._codices = copy.deepcopy(dict(codices))
            self._generations = dict(generations or {})
            return self._next_snapshot(ChangeKind.LOADED, None)

    def _next_snapshot(self, change: ChangeKind, story_id: str | None) -> CodexSnapshot:
        self._version += 1
        snapshot = CodexSnapshot(
            version=self._version,
            change=change,
            story_id=story_id,
            codices=MappingProxyType(copy.deepcopy(self._codices)),
            emitted_at=self._clock(),
        )
        self._history.append(snapshot)
        self._metrics.inc(SNAPSHOTS_EMITTED, labels={"change": change.value})
        self._metrics.set_gauge(CACHED_CODICES, float(len(self._codices)))
        return snapshot

    def _publish(self, snapshot: CodexSnapshot) -> None:
        with self._lock:
            subscriptions = tuple(self._subscriptions.values())
        errors = [
            error
            for subscription in subscriptions
            if self._claim_delivery(subscription.token, snapshot)
            and (error := self._invoke_callback(subscription, snapshot)) is not None
        ]
        self._record_errors(errors)

    async def _publish_async(self, snapshot: CodexSnapshot) -> None:
        with self._lock:
            subscriptions = tuple(self._subscriptions.values())
        errors: list[DispatchError] = []
        for subscription in subscriptions:
            # Re-checked per subscriber: an earlier await may have let a newer
            # snapshot through.
            if not self._claim_delivery(subscription.token, snapshot):
                continue
            try:
                result = subscription.callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                errors.append(_dispatch_error(snapshot, subscription.callback, exc))
        self._record_errors(errors)

    def _claim_delivery(self, token: int, snapshot: CodexSnapshot) -> bool:
        with self._lock:
            if self._delivered.get(token, 0) >= snapshot.version:
                return False
            self._delivered[token] = snapshot.version
            return True

    def _invoke_callback(
        self, subscription: _Subscription, snapshot: CodexSnapshot
    ) -> DispatchError | None:
        try:
            result = subscription.callback(snapshot)
            if inspect.isawaitable(result):
                coroutine = _as_coroutine(result)
                loop = _current_running_loop()
                if loop is None:
                    asyncio.run(coroutine)
                    return None
                task = loop.create_task(coroutine)
                with self._lock:
                    self._pending_async_tasks.add(task)
                task.add_done_callback(
                    lambda done: self._on_async_callback_done(
                        done, snapshot=snapshot, callback=subscription.callback
                    )
                )
            return None
        except Exception as exc:  # noqa: BLE001
            return _dispatch_error(snapshot, subscription.callback, exc)

    def _on_async_callback_done(
        self,
        task: asyncio.Task[None],
        *,
        snapshot: CodexSnapshot,
        callback: Subscriber,
    ) -> None:
        with self._lock:
            self._pending_async_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, Exception):
            self._record_errors([_dispatch_error(snapshot, callback, exc)])

    def _record_errors(self, errors: list[DispatchError]) -> None:
        if not errors:
            return
        with self._lock:
            self._dispatch_errors.extend(errors)
        self._metrics.inc(SUBSCRIBER_FAILURES, float(len(errors)))


def _callback_name(callback: object) -> str:
    name = getattr(callback, "__qualname__", None) or getattr(callback, "__name__", None)
    if isinstance(name, str) and name:
        return name
    return callback.__class__.__name__


def _current_running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _as_coroutine(value: object) -> Coroutine[Any, Any, None]:
    if inspect.iscoroutine(value):
        return cast("Coroutine[Any, Any, None]", value)
    return _await_awaitable(cast("Awaitable[None]", value))


async def _await_awaitable(awaitable: Awaitable[None]) -> None:
    await awaitable


def _dispatch_error(snapshot: CodexSnapshot, callback: object, exc: Exception) -> DispatchError:
    return DispatchError(
        version=snapshot.version,
        target=_callback_name(callback),
        error_type=exc.__class__.__name__,
        message=str(exc),
    )


__all__ = ["DEFAULT_HISTORY_SIZE", "ChangeChannel", "DispatchError", "Subscriber"]
