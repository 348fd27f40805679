"""SQLite document backend: schema migrations, busy handling, and CAS writes.

Connections are short-lived and opened per operation. Blocking work runs in a
worker thread through ``asyncio.to_thread`` so the event loop never waits on
disk I/O or SQLite's busy handler.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import sqlite3
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Final, NoReturn

from codex_store.constants import DOCUMENT_STORE_SCHEMA_VERSION
from codex_store.domain.models import UTC
from codex_store.errors import (
    DocumentConflictError,
    DocumentNotFoundError,
    DocumentStoreBusyError,
    DocumentStoreCorruptionError,
    DocumentStoreError,
    DocumentStoreMigrationError,
)
from codex_store.persistence.document_store import (
    StoredDocument,
    canonical_json,
    next_revision,
    revision_generation,
    strip_revision_fields,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    """
    CREATE TABLE IF NOT EXISTS documents (
        key TEXT PRIMARY KEY,
        rev TEXT NOT NULL,
        generation INTEGER NOT NULL CHECK (generation > 0),
        doc_type TEXT,
        body_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_type_key ON documents(doc_type, key)",
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="document_table",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "document_table", _MIGRATION_0001_STATEMENTS),
    ),
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class SQLiteDocumentStore:
    """Document store backed by a single ``documents`` table.

    ``open()`` (or ``open_async()``) applies migrations; until it succeeds
    ``is_ready`` is false and the repository refuses to serve.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._schema_version: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_ready(self) -> bool:
        return self._schema_version is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> int:
        """Apply migrations idempotently and mark the store ready."""

        self._schema_version = self.migrate()
        return self._schema_version

    async def open_async(self) -> int:
        return await asyncio.to_thread(self.open)

    def migrate(self) -> int:
        self._validate_migration_chain(DOCUMENT_STORE_SCHEMA_VERSION)
        with self.connection() as conn:
            self._execute_with_retry(
                conn,
                _SCHEMA_VERSIONS_TABLE_SQL,
                (),
                operation="create schema_versions table",
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > DOCUMENT_STORE_SCHEMA_VERSION:
                raise DocumentStoreMigrationError(
                    "document store schema is newer than supported by this release "
                    f"(db={current_version}, code={DOCUMENT_STORE_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > DOCUMENT_STORE_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise DocumentStoreMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue

                with self.transaction(conn) as tx:
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx,
                            statement,
                            (),
                            operation=f"apply migration {migration.version}",
                        )
                    self._execute_with_retry(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                        operation=f"record migration {migration.version}",
                    )

            row = self._execute_with_retry(
                conn,
                "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
                (),
                operation="read schema version",
            ).fetchone()
            version = 0 if row is None else row["version"]
            if not isinstance(version, int):
                raise DocumentStoreMigrationError("schema_versions.version must be an integer")
            return version

    def close(self) -> None:
        """Mark the store unavailable; connections are already short-lived."""

        self._schema_version = None

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Run statements inside ``BEGIN IMMEDIATE`` so the CAS read holds the write lock."""

        self._execute_with_retry(conn, "BEGIN IMMEDIATE", (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    # ------------------------------------------------------------------
    # Document operations (sync)
    # ------------------------------------------------------------------

    def get_sync(self, key: str) -> StoredDocument:
        with self.connection() as conn:
            row = self._execute_with_retry(
                conn,
                "SELECT key, rev, body_json FROM documents WHERE key = ?",
                (key,),
                operation="get document",
            ).fetchone()
        if row is None:
            raise DocumentNotFoundError(key)
        return _row_to_document(row, include_body=True)

    def put_sync(self, key: str, body: Mapping[str, Any], *, rev: str | None) -> str:
        stored = strip_revision_fields(body)
        body_json = canonical_json(stored)
        doc_type = stored.get("type")
        with self.connection() as conn, self.transaction(conn) as tx:
            row = self._execute_with_retry(
                tx,
                "SELECT rev FROM documents WHERE key = ?",
                (key,),
                operation="read revision",
            ).fetchone()
            current = None if row is None else str(row["rev"])
            if current != rev:
                raise DocumentConflictError(key, expected=rev, actual=current)
            new_rev = next_revision(current, stored)
            params: tuple[SQLValue, ...] = (
                new_rev,
                revision_generation(new_rev),
                doc_type if isinstance(doc_type, str) else None,
                body_json,
                _utc_now_iso(),
            )
            if current is None:
                self._execute_with_retry(
                    tx,
                    """
                    INSERT INTO documents (rev, generation, doc_type, body_json, updated_at, key)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (*params, key),
                    operation="insert document",
                )
            else:
                cursor = self._execute_with_retry(
                    tx,
                    """
                    UPDATE documents
                    SET rev = ?, generation = ?, doc_type = ?, body_json = ?, updated_at = ?
                    WHERE key = ? AND rev = ?
                    """,
                    (*params, key, current),
                    operation="update document",
                )
                if cursor.rowcount != 1:
                    raise DocumentConflictError(key, expected=rev, actual=None)
        return new_rev

    def remove_sync(self, key: str, *, rev: str) -> None:
        with self.connection() as conn, self.transaction(conn) as tx:
            row = self._execute_with_retry(
                tx,
                "SELECT rev FROM documents WHERE key = ?",
                (key,),
                operation="read revision",
            ).fetchone()
            if row is None:
                raise DocumentNotFoundError(key)
            current = str(row["rev"])
            if current != rev:
                raise DocumentConflictError(key, expected=rev, actual=current)
            self._execute_with_retry(
                tx,
                "DELETE FROM documents WHERE key = ? AND rev = ?",
                (key, rev),
                operation="delete document",
            )

    def range_query_sync(
        self,
        start_key: str,
        end_key: str,
        *,
        include_body: bool = True,
    ) -> list[StoredDocument]:
        columns = "key, rev, body_json" if include_body else "key, rev"
        with self.connection() as conn:
            rows = self._execute_with_retry(
                conn,
                f"SELECT {columns} FROM documents WHERE key >= ? AND key < ? ORDER BY key ASC",
                (start_key, end_key),
                operation="range query",
            ).fetchall()
        return [_row_to_document(row, include_body=include_body) for row in rows]

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        with self.connection() as conn:
            rows = self._execute_with_retry(
                conn,
                f"PRAGMA integrity_check({max_errors})",
                (),
                operation="integrity check",
            ).fetchall()
        messages = tuple(str(row[0]) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    # ------------------------------------------------------------------
    # DocumentStore protocol (async)
    # ------------------------------------------------------------------

    async def get(self, key: str) -> StoredDocument:
        return await asyncio.to_thread(self.get_sync, key)

    async def put(self, key: str, body: Mapping[str, Any], *, rev: str | None) -> str:
        return await asyncio.to_thread(self.put_sync, key, dict(body), rev=rev)

    async def remove(self, key: str, *, rev: str) -> None:
        await asyncio.to_thread(self.remove_sync, key, rev=rev)

    async def range_query(
        self,
        start_key: str,
        end_key: str,
        *,
        include_body: bool = True,
    ) -> list[StoredDocument]:
        return await asyncio.to_thread(
            self.range_query_sync, start_key, end_key, include_body=include_body
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="connect")
        conn.row_factory = sqlite3.Row
        try:
            self._configure_connection(conn)
        except BaseException:
            conn.close()
            raise
        return conn

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        self._execute_with_retry(
            conn, f"PRAGMA busy_timeout={self._busy_timeout_ms}", (), operation="configure"
        )
        journal_row = self._execute_with_retry(
            conn, "PRAGMA journal_mode=WAL", (), operation="configure journal"
        ).fetchone()
        if journal_row is None:
            raise DocumentStoreError("failed to configure journal_mode")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise DocumentStoreError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            """
            SELECT version, name, checksum, applied_at
            FROM schema_versions
            ORDER BY version ASC
            """,
            (),
            operation="load schema_versions",
        )
        out: dict[int, MigrationRecord] = {}
        for row in cursor.fetchall():
            if not isinstance(row["version"], int):
                raise DocumentStoreMigrationError("schema_versions.version must be integer")
            if not isinstance(row["checksum"], str):
                raise DocumentStoreMigrationError("schema_versions.checksum must be text")
            out[row["version"]] = MigrationRecord(
                version=row["version"],
                name=str(row["name"]),
                checksum=row["checksum"],
                applied_at=str(row["applied_at"]),
            )
        return out

    def _validate_migration_chain(self, target_version: int) -> None:
        migration_versions = {migration.version for migration in _MIGRATIONS}
        if target_version > max(migration_versions, default=0):
            raise DocumentStoreMigrationError(
                "schema target exceeds known migrations "
                f"(target={target_version}, known={max(migration_versions, default=0)})"
            )
        for version in range(1, target_version + 1):
            if version not in migration_versions:
                raise DocumentStoreMigrationError(f"missing migration for schema version {version}")

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise DocumentStoreBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> NoReturn:
        if self._is_corruption_error(exc):
            raise DocumentStoreCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `integrity_check()` and restore the file from a copy if needed."
            ) from exc
        if self._is_busy_error(exc):
            raise DocumentStoreBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise DocumentStoreError(f"{operation} failed for {self._path}: {exc}") from exc


def _row_to_document(row: sqlite3.Row, *, include_body: bool) -> StoredDocument:
    key = str(row["key"])
    rev = str(row["rev"])
    if not include_body:
        return StoredDocument(key=key, rev=rev)
    try:
        body = json.loads(row["body_json"])
    except json.JSONDecodeError as exc:
        raise DocumentStoreCorruptionError(f"document {key!r} holds invalid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise DocumentStoreCorruptionError(f"document {key!r} body is not a JSON object")
    body["_id"] = key
    body["_rev"] = rev
    return StoredDocument(key=key, rev=rev, body=body)


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MigrationRecord",
    "SQLiteDocumentStore",
]
