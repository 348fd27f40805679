"""Wire a document store, change channel, and repository from effective config."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from codex_store.channel import ChangeChannel
from codex_store.observability.metrics import MetricsRegistry
from codex_store.persistence.document_store import DocumentStore, InMemoryDocumentStore
from codex_store.persistence.repository import CodexRepository, RepositorySettings
from codex_store.persistence.sqlite_store import SQLiteDocumentStore

_logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class CodexRuntime:
    store: DocumentStore
    channel: ChangeChannel
    repository: CodexRepository
    metrics: MetricsRegistry

    def close(self) -> None:
        if isinstance(self.store, SQLiteDocumentStore):
            self.store.close()


def create_document_store(config: Mapping[str, Any]) -> DocumentStore:
    """Instantiate the configured backend without opening it."""

    store_config = config.get("store", {})
    backend = store_config.get("backend", "sqlite")
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "sqlite":
        return SQLiteDocumentStore(
            Path(store_config["path"]),
            busy_timeout_ms=store_config.get("busy_timeout_ms", 5_000),
            busy_retry_limit=store_config.get("busy_retry_limit", 4),
            busy_retry_backoff_ms=store_config.get("busy_retry_backoff_ms", 25),
        )
    raise ValueError(f"unsupported store backend: {backend!r}")


async def open_document_store(config: Mapping[str, Any]) -> DocumentStore:
    """Create the configured backend and apply its migrations when it has any."""

    store = create_document_store(config)
    if isinstance(store, SQLiteDocumentStore):
        schema_version = await store.open_async()
        _logger.info(
            "codex_store_opened",
            backend="sqlite",
            path=store.path.as_posix(),
            schema_version=schema_version,
        )
    return store


async def build_runtime(
    config: Mapping[str, Any],
    *,
    metrics: MetricsRegistry | None = None,
) -> CodexRuntime:
    """Open the store and assemble a started repository over it."""

    registry = metrics
    if registry is None:
        registry = MetricsRegistry(
            enabled=bool(config.get("observability", {}).get("metrics_enabled", True))
        )
    store = await open_document_store(config)
    channel = ChangeChannel(
        history_size=config.get("codex", {}).get("history_size", 64),
        metrics=registry,
    )
    repository = CodexRepository(
        store,
        channel,
        RepositorySettings.from_config(config),
        metrics=registry,
    )
    await repository.start()
    return CodexRuntime(store=store, channel=channel, repository=repository, metrics=registry)


__all__ = [
    "CodexRuntime",
    "build_runtime",
    "create_document_store",
    "open_document_store",
]
