"""Revisioned document store contract and the in-memory backend.

Every stored document carries an opaque revision token of the form
``"<generation>-<sha256 prefix>"``. Writers hand back the token they read; a
stale token is rejected with ``DocumentConflictError`` instead of overwriting.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Final, Protocol, runtime_checkable

from codex_store.errors import DocumentConflictError, DocumentNotFoundError

REVISION_DIGEST_LENGTH: Final[int] = 12


@dataclass(frozen=True, slots=True)
class StoredDocument:
    """One document as returned by a backend; ``body`` is ``None`` for key-only scans."""

    key: str
    rev: str
    body: dict[str, Any] | None = field(default=None)


@runtime_checkable
class DocumentStore(Protocol):
    """Capability contract every backend satisfies."""

    @property
    def is_ready(self) -> bool: ...

    async def get(self, key: str) -> StoredDocument: ...

    async def put(self, key: str, body: Mapping[str, Any], *, rev: str | None) -> str: ...

    async def remove(self, key: str, *, rev: str) -> None: ...

    async def range_query(
        self,
        start_key: str,
        end_key: str,
        *,
        include_body: bool = True,
    ) -> list[StoredDocument]: ...


def canonical_json(value: object) -> str:
    """Deterministic JSON used for revision digests and persisted bodies."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def next_revision(previous: str | None, body: Mapping[str, Any]) -> str:
    generation = 1 if previous is None else revision_generation(previous) + 1
    digest = hashlib.sha256(canonical_json(dict(body)).encode("utf-8")).hexdigest()
    return f"{generation}-{digest[:REVISION_DIGEST_LENGTH]}"


def revision_generation(rev: str) -> int:
    """Return the monotonically increasing generation encoded in ``rev``."""

    head, sep, _ = rev.partition("-")
    if not sep or not head.isdigit():
        raise ValueError(f"malformed revision token {rev!r}")
    return int(head)


def strip_revision_fields(body: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in body.items() if key not in ("_id", "_rev")}


class InMemoryDocumentStore:
    """Process-local backend.

    Every call yields to the event loop once (plus ``latency_seconds``) before
    it inspects state, so concurrent writers interleave the way they would
    against a real store; the compare-and-swap itself runs without suspension.
    """

    def __init__(
        self,
        *,
        latency_seconds: float = 0.0,
        ready: bool = True,
        ready_after_seconds: float = 0.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if latency_seconds < 0:
            raise ValueError("latency_seconds must be >= 0")
        if ready_after_seconds < 0:
            raise ValueError("ready_after_seconds must be >= 0")
        self._latency_seconds = latency_seconds
        self._ready = ready
        self._monotonic = monotonic
        self._ready_at = monotonic() + ready_after_seconds
        self._documents: dict[str, tuple[str, dict[str, Any]]] = {}
        self.put_calls = 0
        self.conflicts = 0

    @property
    def is_ready(self) -> bool:
        return self._ready and self._monotonic() >= self._ready_at

    def set_ready(self, ready: bool) -> None:
        self._ready = ready

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, key: object) -> bool:
        return key in self._documents

    def current_revision(self, key: str) -> str | None:
        entry = self._documents.get(key)
        return None if entry is None else entry[0]

    async def get(self, key: str) -> StoredDocument:
        await self._suspend()
        entry = self._documents.get(key)
        if entry is None:
            raise DocumentNotFoundError(key)
        rev, body = entry
        return StoredDocument(key=key, rev=rev, body=_with_store_fields(key, rev, body))

    async def put(self, key: str, body: Mapping[str, Any], *, rev: str | None) -> str:
        await self._suspend()
        self.put_calls += 1
        current = self.current_revision(key)
        if current != rev:
            self.conflicts += 1
            raise DocumentConflictError(key, expected=rev, actual=current)
        stored = copy.deepcopy(strip_revision_fields(body))
        new_rev = next_revision(current, stored)
        self._documents[key] = (new_rev, stored)
        return new_rev

    async def remove(self, key: str, *, rev: str) -> None:
        await self._suspend()
        current = self.current_revision(key)
        if current is None:
            raise DocumentNotFoundError(key)
        if current != rev:
            self.conflicts += 1
            raise DocumentConflictError(key, expected=rev, actual=current)
        del self._documents[key]

    async def range_query(
        self,
        start_key: str,
        end_key: str,
        *,
        include_body: bool = True,
    ) -> list[StoredDocument]:
        await self._suspend()
        out: list[StoredDocument] = []
        for key in sorted(self._documents):
            if not start_key <= key < end_key:
                continue
            rev, body = self._documents[key]
            out.append(
                StoredDocument(
                    key=key,
                    rev=rev,
                    body=_with_store_fields(key, rev, body) if include_body else None,
                )
            )
        return out

    async def _suspend(self) -> None:
        await asyncio.sleep(self._latency_seconds)


def _with_store_fields(key: str, rev: str, body: Mapping[str, Any]) -> dict[str, Any]:
    document = copy.deepcopy(dict(body))
    document["_id"] = key
    document["_rev"] = rev
    return document


__all__ = [
    "REVISION_DIGEST_LENGTH",
    "DocumentStore",
    "InMemoryDocumentStore",
    "StoredDocument",
    "canonical_json",
    "next_revision",
    "revision_generation",
    "strip_revision_fields",
]
