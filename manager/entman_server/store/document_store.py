"""
SQLite document store for EntMan.

This module manages the SQLite database that stores every entity document.
Each entity type is a logical collection inside a single documents table:
- Documents keyed by (collection, doc_id)
- A UNIQUE index on (collection, composite_key) that enforces composite-key
  uniqueness atomically at insert/replace time
- Expression indexes on foreign-key fields used for reference counting

Invariants:
    - At most one row per (collection, composite_key)
    - Uniqueness is enforced by the index, never by read-then-write
    - All writes run in a single BEGIN IMMEDIATE transaction
    - replace() never writes an updated_at older than the stored one
    - Guarded deletes count dependents and delete in the same transaction

How to change safely:
    - Schema migrations must be backward compatible
    - Field names used in JSON paths must pass _check_identifier()
    - Keep count_where() and the reference index expressions identical,
      otherwise SQLite stops using the index

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT (UUID)
        - composite_key TEXT
        - body_json TEXT (entity fields, sorted-key JSON)
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_id)
        - UNIQUE (collection, composite_key)
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IDENTIFIER_RE = re.compile(r"^[a-z][a-z0-9_]*$")


class DocumentStoreError(Exception):
    """Base exception for document store operations."""

    pass


class StoreNotInitializedError(DocumentStoreError):
    """Database file does not exist; call initialize() first."""

    pass


class StoreUnavailableError(DocumentStoreError):
    """SQLite failed for a reason other than a constraint violation."""

    pass


class DuplicateKeyError(DocumentStoreError):
    """Another live document in the collection already has this composite key."""

    def __init__(self, collection: str, composite_key: str) -> None:
        super().__init__(
            f"Duplicate composite key '{composite_key}' in collection '{collection}'"
        )
        self.collection = collection
        self.composite_key = composite_key


class ReferencedDocumentError(DocumentStoreError):
    """Guarded delete refused because dependents still reference the document.

    Attributes:
        doc_id: Document that was not deleted
        counts: Dependent counts keyed by (collection, field), non-zero only
    """

    def __init__(self, doc_id: str, counts: dict[tuple[str, str], int]) -> None:
        super().__init__(f"Document {doc_id} is still referenced: {counts}")
        self.doc_id = doc_id
        self.counts = counts


@dataclass
class StoredDocument:
    """A document as persisted in the store.

    Attributes:
        collection: Collection name
        doc_id: Document identifier
        composite_key: Composite key projection at write time
        body: Entity fields
        created_at: Row creation timestamp (Unix ms)
        updated_at: Last write timestamp (Unix ms)
    """

    collection: str
    doc_id: str
    composite_key: str
    body: dict[str, Any]
    created_at: int
    updated_at: int


def _check_identifier(value: str) -> str:
    """Reject names that cannot be embedded safely in SQL/JSON paths."""
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"Invalid identifier '{value}'")
    return value


def _encode(body: dict[str, Any]) -> str:
    return json.dumps(body, sort_keys=True, separators=(",", ":"))


def _reference_predicate(field: str) -> str:
    """WHERE fragment matching a scalar field equal to ? or a list containing ?.

    Consumes two positional parameters (the same value twice).
    """
    path = f"$.{_check_identifier(field)}"
    return (
        f"(json_extract(body_json, '{path}') = ? "
        f"OR (json_type(body_json, '{path}') = 'array' "
        f"AND EXISTS (SELECT 1 FROM json_each(body_json, '{path}') WHERE value = ?)))"
    )


class DocumentStore:
    """SQLite store for entity documents.

    This class provides the primitives the repositories and the integrity
    service are built on:
    - Atomic insert guarded by the composite-key unique index
    - Full-document replace guarded by the same index
    - Point lookup by id and by composite key
    - Count and find by field value (scalar or list membership)
    - Delete, optionally guarded by dependent counts

    Thread safety:
        Each operation opens its own connection and runs in the default
        executor, so concurrent tasks genuinely race at the database.
        SQLite serializes writers; the unique index decides races.

    Example:
        >>> store = DocumentStore("/var/lib/entman")
        >>> await store.initialize()
        >>> doc = await store.insert("sources", "id-1", "a_1.0", {"address": "a"})
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_filename: str = "entities.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the document store.

        Args:
            data_dir: Directory for the SQLite database file
            db_filename: Database file name inside data_dir
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.db_filename = db_filename
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        """Path of the SQLite database file."""
        return self.data_dir / self.db_filename

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Raises:
            StoreNotInitializedError: If the database doesn't exist and create=False
        """
        if not create and not self.db_path.exists():
            raise StoreNotInitializedError(f"Document store not initialized: {self.db_path}")

        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking store call in the default executor.

        sqlite3.Error other than IntegrityError is wrapped as
        StoreUnavailableError; store errors pass through unchanged.
        """
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args))
        except DocumentStoreError:
            raise
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Document store failure: {e}") from e

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                composite_key TEXT NOT NULL,
                body_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_documents_composite_key
                ON documents(collection, composite_key);

            CREATE INDEX IF NOT EXISTS idx_documents_updated
                ON documents(collection, updated_at DESC);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._get_connection(create=True) as conn:
                self._create_schema(conn)
        logger.info(f"Initialized document store: {self.db_path}")

    async def is_initialized(self) -> bool:
        """Check if the database file exists."""
        return self.db_path.exists()

    async def ensure_field_index(self, collection: str, field: str) -> None:
        """Create an expression index on a scalar JSON field of a collection.

        Used for foreign-key fields so reference counts stay index-backed.
        """
        collection = _check_identifier(collection)
        field = _check_identifier(field)
        index_name = f"idx_ref_{collection}_{field}"

        def _create() -> None:
            with self._get_connection() as conn:
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {index_name} "
                    f"ON documents(collection, json_extract(body_json, '$.{field}'))"
                )

        await self._run(_create)
        logger.debug(f"Ensured reference index {index_name}")

    async def insert(
        self,
        collection: str,
        doc_id: str,
        composite_key: str,
        body: dict[str, Any],
        created_at: int | None = None,
    ) -> StoredDocument:
        """Insert a new document.

        Atomic compare-and-insert: the unique index rejects a second live
        document with the same composite key.

        Raises:
            DuplicateKeyError: If the composite key (or doc_id) is taken
        """
        now = created_at if created_at is not None else int(time.time() * 1000)
        body_json = _encode(body)

        def _insert() -> None:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.execute(
                        """
                        INSERT INTO documents (collection, doc_id, composite_key,
                                               body_json, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (collection, doc_id, composite_key, body_json, now, now),
                    )
                    conn.execute("COMMIT")
                except sqlite3.IntegrityError as e:
                    conn.execute("ROLLBACK")
                    raise DuplicateKeyError(collection, composite_key) from e
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        await self._run(_insert)

        logger.debug(
            "Inserted document",
            extra={"collection": collection, "doc_id": doc_id, "composite_key": composite_key},
        )

        return StoredDocument(
            collection=collection,
            doc_id=doc_id,
            composite_key=composite_key,
            body=body,
            created_at=now,
            updated_at=now,
        )

    async def replace(
        self,
        collection: str,
        doc_id: str,
        composite_key: str,
        body: dict[str, Any],
        updated_at: int | None = None,
        stamp_field: str | None = None,
    ) -> StoredDocument | None:
        """Replace a document's body and composite key.

        The stamp is taken inside the write transaction as the maximum of
        updated_at (or the current time) and the row's stored stamp, so
        concurrent replaces never commit a stamp older than one already
        written. When stamp_field is given the stamp is also written into
        the body under that key.

        Returns:
            Updated document, or None if doc_id does not exist

        Raises:
            DuplicateKeyError: If a different document already has composite_key
        """
        requested = updated_at if updated_at is not None else int(time.time() * 1000)

        def _replace() -> tuple[int, int, dict[str, Any]] | None:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        """
                        SELECT created_at, updated_at FROM documents
                        WHERE collection = ? AND doc_id = ?
                        """,
                        (collection, doc_id),
                    ).fetchone()
                    if row is None:
                        conn.execute("ROLLBACK")
                        return None

                    now = max(requested, row["updated_at"], row["created_at"])
                    stamped = dict(body)
                    if stamp_field is not None:
                        stamped[stamp_field] = now

                    conn.execute(
                        """
                        UPDATE documents
                        SET composite_key = ?, body_json = ?, updated_at = ?
                        WHERE collection = ? AND doc_id = ?
                        """,
                        (composite_key, _encode(stamped), now, collection, doc_id),
                    )
                    conn.execute("COMMIT")
                    return row["created_at"], now, stamped
                except sqlite3.IntegrityError as e:
                    conn.execute("ROLLBACK")
                    raise DuplicateKeyError(collection, composite_key) from e
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        result = await self._run(_replace)
        if result is None:
            return None
        created_at, now, stamped = result

        logger.debug(
            "Replaced document",
            extra={"collection": collection, "doc_id": doc_id, "composite_key": composite_key},
        )

        return StoredDocument(
            collection=collection,
            doc_id=doc_id,
            composite_key=composite_key,
            body=stamped,
            created_at=created_at,
            updated_at=now,
        )

    async def get(self, collection: str, doc_id: str) -> StoredDocument | None:
        """Get a document by id."""

        def _get() -> StoredDocument | None:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                ).fetchone()
                return self._row_to_document(row) if row else None

        return await self._run(_get)

    async def get_by_key(self, collection: str, composite_key: str) -> StoredDocument | None:
        """Get a document by composite key."""

        def _get() -> StoredDocument | None:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM documents WHERE collection = ? AND composite_key = ?",
                    (collection, composite_key),
                ).fetchone()
                return self._row_to_document(row) if row else None

        return await self._run(_get)

    async def delete(
        self,
        collection: str,
        doc_id: str,
        guards: Sequence[tuple[str, str]] = (),
    ) -> bool:
        """Delete a document.

        When guards are given, every (dependent collection, field) pair is
        counted inside the same write transaction as the delete. Any non-zero
        count aborts the delete.

        Args:
            collection: Collection name
            doc_id: Document identifier
            guards: (collection, field) pairs that may reference doc_id

        Returns:
            True if deleted, False if not found

        Raises:
            ReferencedDocumentError: If a guard found live references
        """

        def _delete() -> bool:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    counts: dict[tuple[str, str], int] = {}
                    for dep_collection, field in guards:
                        count = self._count_where(conn, dep_collection, field, doc_id)
                        if count:
                            counts[(dep_collection, field)] = count
                    if counts:
                        conn.execute("ROLLBACK")
                        raise ReferencedDocumentError(doc_id, counts)

                    cursor = conn.execute(
                        "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                        (collection, doc_id),
                    )
                    conn.execute("COMMIT")
                    return cursor.rowcount > 0
                except ReferencedDocumentError:
                    raise
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        deleted = await self._run(_delete)
        if deleted:
            logger.debug("Deleted document", extra={"collection": collection, "doc_id": doc_id})
        return deleted

    def _count_where(
        self, conn: sqlite3.Connection, collection: str, field: str, value: str
    ) -> int:
        row = conn.execute(
            f"SELECT COUNT(*) FROM documents WHERE collection = ? AND {_reference_predicate(field)}",
            (collection, value, value),
        ).fetchone()
        return int(row[0])

    async def count_where(self, collection: str, field: str, value: str) -> int:
        """Count documents whose field equals value (or, for lists, contains it)."""

        def _count() -> int:
            with self._get_connection() as conn:
                return self._count_where(conn, collection, field, value)

        return await self._run(_count)

    async def find_where(self, collection: str, field: str, value: Any) -> list[StoredDocument]:
        """Find documents whose field equals value (or, for lists, contains it)."""

        def _find() -> list[StoredDocument]:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"""
                    SELECT * FROM documents
                    WHERE collection = ? AND {_reference_predicate(field)}
                    ORDER BY created_at, doc_id
                    """,
                    (collection, value, value),
                )
                return [self._row_to_document(row) for row in cursor.fetchall()]

        return await self._run(_find)

    async def list(
        self,
        collection: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[StoredDocument]:
        """List documents of a collection in creation order.

        Args:
            collection: Collection name
            limit: Maximum documents to return (None for all)
            offset: Pagination offset
        """

        def _list() -> list[StoredDocument]:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    SELECT * FROM documents WHERE collection = ?
                    ORDER BY created_at, doc_id
                    LIMIT ? OFFSET ?
                    """,
                    (collection, -1 if limit is None else limit, offset),
                )
                return [self._row_to_document(row) for row in cursor.fetchall()]

        return await self._run(_list)

    async def count(self, collection: str) -> int:
        """Count documents in a collection."""

        def _count() -> int:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)
                ).fetchone()
                return int(row[0])

        return await self._run(_count)

    async def get_stats(self) -> dict[str, int]:
        """Document counts per collection."""

        def _stats() -> dict[str, int]:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT collection, COUNT(*) AS n FROM documents GROUP BY collection"
                )
                return {row["collection"]: row["n"] for row in cursor.fetchall()}

        return await self._run(_stats)

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> StoredDocument:
        return StoredDocument(
            collection=row["collection"],
            doc_id=row["doc_id"],
            composite_key=row["composite_key"],
            body=json.loads(row["body_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
