"""Document stores, wire serialization, and the codex repository."""

from codex_store.persistence.document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    StoredDocument,
)
from codex_store.persistence.factory import (
    CodexRuntime,
    build_runtime,
    create_document_store,
    open_document_store,
)
from codex_store.persistence.repository import (
    CodexRepository,
    MutationOutcome,
    RepositorySettings,
)
from codex_store.persistence.serializer import (
    codex_key,
    deserialize_codex,
    is_codex_document,
    serialize_codex,
)
from codex_store.persistence.sqlite_store import SQLiteDocumentStore

__all__ = [
    "CodexRepository",
    "CodexRuntime",
    "DocumentStore",
    "InMemoryDocumentStore",
    "MutationOutcome",
    "RepositorySettings",
    "SQLiteDocumentStore",
    "StoredDocument",
    "build_runtime",
    "codex_key",
    "create_document_store",
    "deserialize_codex",
    "is_codex_document",
    "open_document_store",
    "serialize_codex",
]
