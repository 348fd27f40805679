"""Exception taxonomy for the codex store."""

from __future__ import annotations


class CodexStoreError(RuntimeError):
    """Base class for codex store failures."""


class NotFoundError(CodexStoreError, LookupError):
    """Raised when a codex, category, or entry targeted by an operation is absent."""

    def __init__(self, kind: str, identifier: str, *, story_id: str | None = None) -> None:
        self.kind = kind
        self.identifier = identifier
        self.story_id = story_id
        scope = f" in story {story_id!r}" if story_id is not None else ""
        super().__init__(f"{kind} {identifier!r} not found{scope}")


class ConflictExhaustedError(CodexStoreError):
    """Raised when optimistic-concurrency retries run out for one story."""

    def __init__(self, story_id: str, attempts: int) -> None:
        self.story_id = story_id
        self.attempts = attempts
        super().__init__(
            f"codex for story {story_id!r} kept changing underneath the write; "
            f"gave up after {attempts} attempt(s)"
        )


class StoreUnavailableError(CodexStoreError):
    """Raised when the document store does not become ready in time."""


class DocumentStoreError(CodexStoreError):
    """Base class for document store backend failures."""


class DocumentNotFoundError(DocumentStoreError, LookupError):
    """Raised by a backend when no document exists under a key."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"document {key!r} not found")


class DocumentConflictError(DocumentStoreError):
    """Raised by a backend when a write carries a stale revision token."""

    def __init__(self, key: str, *, expected: str | None, actual: str | None) -> None:
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"revision conflict for {key!r}: write expected {expected!r}, store has {actual!r}"
        )


class DocumentStoreBusyError(DocumentStoreError):
    """Raised when bounded busy retries against the backend are exhausted."""


class DocumentStoreMigrationError(DocumentStoreError):
    """Raised when backend schema migrations cannot be applied safely."""


class DocumentStoreCorruptionError(DocumentStoreError):
    """Raised when the backend reports possible corruption."""


class SerializationError(ValueError):
    """Raised when a wire document cannot be mapped onto the codex aggregate."""


__all__ = [
    "CodexStoreError",
    "ConflictExhaustedError",
    "DocumentConflictError",
    "DocumentNotFoundError",
    "DocumentStoreBusyError",
    "DocumentStoreCorruptionError",
    "DocumentStoreError",
    "DocumentStoreMigrationError",
    "NotFoundError",
    "SerializationError",
    "StoreUnavailableError",
]
