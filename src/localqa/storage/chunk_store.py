"""
Chunk Store - Durable persistence of chunks and the document index.

One SQLite file holds three tables:
- meta: schema version tag
- documents: document metadata plus its ordered chunk IDs
- chunks: chunk text, offsets, vector and lexical tokens

Both mappings (chunk_id -> chunk, document_id -> chunk_ids) are written in
the same transaction so they never diverge.

Every operation opens its own short-lived connection in a worker thread.
Connections use timeout=0, so a lock held by another handle surfaces
immediately and is retried here with bounded exponential backoff. The store
never deletes or recreates its file to get past a lock.
"""

import asyncio
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from ..core.config import StoreConfig
from ..core.exceptions import (
    StoreBusy,
    StoreCorruption,
    StoreError,
    TransientStoreContention,
)
from ..core.types import Chunk, Document, DocumentRecord
from ..utils.retry import RetryConfig, async_retry_with_backoff


logger = logging.getLogger(__name__)

SCHEMA_VERSION = "localqa-store/1"


@dataclass
class IntegrityReport:
    """
    Result of an index consistency check.

    Attributes:
        orphaned_chunk_ids: Chunks no document references
        dangling_chunk_ids: Chunk IDs referenced by a document but missing
        documents_checked: Number of document rows inspected
        chunks_checked: Number of chunk rows inspected
    """
    orphaned_chunk_ids: List[str] = field(default_factory=list)
    dangling_chunk_ids: List[str] = field(default_factory=list)
    documents_checked: int = 0
    chunks_checked: int = 0

    @property
    def ok(self) -> bool:
        return not self.orphaned_chunk_ids and not self.dangling_chunk_ids


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    """Convert a database row to a Chunk object."""
    tokens = json.loads(row["tokens"]) if row["tokens"] else None
    return Chunk(
        chunk_id=row["chunk_id"],
        document_id=row["document_id"],
        ordinal=row["ordinal"],
        text=row["text"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        content_sha256=row["content_sha256"],
        vector=json.loads(row["vector"]) if row["vector"] else [],
        tokens=tokens,
        degraded=bool(row["degraded"]),
    )


def _row_to_document(row: sqlite3.Row) -> DocumentRecord:
    """Convert a database row to a DocumentRecord."""
    return DocumentRecord(
        document_id=row["document_id"],
        title=row["title"],
        version=row["version"],
        updated_at=datetime.fromisoformat(row["updated_at"]),
        chunk_ids=json.loads(row["chunk_ids"]) if row["chunk_ids"] else [],
    )


class ChunkStore:
    """
    SQLite-backed chunk store, safe for concurrent asyncio tasks.

    Example:
        >>> store = ChunkStore(StoreConfig(path=Path("data/localqa.db")), dimension=768)
        >>> await store.open()
        >>> await store.put_document(document, chunks)
        >>> chunk = await store.get(chunk_id)
    """

    def __init__(self, config: Optional[StoreConfig] = None, dimension: Optional[int] = None):
        """
        Initialize the chunk store.

        Args:
            config: Store configuration (path, retry settings)
            dimension: Expected embedding dimensionality; enforced on write
        """
        self.config = config or StoreConfig()
        self.config.validate()
        self.path = Path(self.config.path)
        self.dimension = dimension
        self.retry_config = RetryConfig(
            max_attempts=self.config.retry_attempts,
            initial_delay_ms=self.config.retry_base_delay_ms,
            max_delay_ms=self.config.retry_max_delay_ms,
            backoff_multiplier=2.0,
            jitter=False,
        )
        self._opened = False

    # ------------------------------------------------------------------
    # Connection and retry plumbing
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, fn: Callable[[sqlite3.Connection], Any], write: bool) -> Any:
        """Run fn on a fresh connection; runs in a worker thread."""
        try:
            conn = self._connect()
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise TransientStoreContention(str(e))
            raise StoreError(f"Failed to open chunk store {self.path}: {e}")

        try:
            if write:
                conn.execute("BEGIN IMMEDIATE")
            try:
                result = fn(conn)
            except BaseException:
                if conn.in_transaction:
                    conn.rollback()
                raise
            if conn.in_transaction:
                conn.commit()
            return result
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise TransientStoreContention(str(e))
            raise StoreError(f"Chunk store operation failed: {e}")
        except sqlite3.DatabaseError as e:
            raise StoreError(f"Chunk store database error: {e}")
        finally:
            conn.close()

    async def _run(
        self,
        operation_name: str,
        fn: Callable[[sqlite3.Connection], Any],
        write: bool = False,
    ) -> Any:
        """
        Run a store operation in a worker thread with contention retry.

        Raises:
            StoreBusy: If the store stayed locked through every attempt
            StoreError: For any other storage failure
        """
        result = await async_retry_with_backoff(
            lambda: asyncio.to_thread(self._execute, fn, write),
            self.retry_config,
            retry_on=(TransientStoreContention,),
            operation_name=f"chunk_store.{operation_name}",
        )
        if result.success:
            return result.result
        if result.exhausted:
            raise StoreBusy(
                f"Chunk store is busy: {operation_name} gave up after "
                f"{result.attempts} attempts ({result.error})",
                operation=operation_name,
                attempts=result.attempts,
            )
        raise result.error

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """
        Create the store file and schema if needed and verify the schema tag.

        Raises:
            StoreCorruption: If the file carries a different schema version
            StoreBusy: If the store stayed locked while initialising
        """
        if self._opened:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        await self._run("init_schema", self._init_schema, write=True)
        # WAL lets readers proceed while a writer holds the lock; it cannot be
        # switched inside a transaction.
        await self._run("journal_mode", lambda conn: conn.execute("PRAGMA journal_mode=WAL").fetchone())
        self._opened = True
        logger.debug(f"Opened chunk store: {self.path}")

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        """Initialize database schema."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                document_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                version TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                chunk_ids TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                chunk_id TEXT PRIMARY KEY,
                document_id TEXT NOT NULL,
                ordinal INTEGER NOT NULL,
                text TEXT NOT NULL,
                start_offset INTEGER NOT NULL,
                end_offset INTEGER NOT NULL,
                content_sha256 TEXT NOT NULL,
                vector TEXT NOT NULL,
                tokens TEXT,
                degraded INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS ix_chunks_document
            ON chunks (document_id, ordinal)
        """)

        row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO meta (key, value) VALUES ('schema_version', ?)",
                (SCHEMA_VERSION,),
            )
        elif row["value"] != SCHEMA_VERSION:
            raise StoreCorruption(
                f"Chunk store {self.path} has schema {row['value']!r}, "
                f"expected {SCHEMA_VERSION!r}"
            )

    async def _ensure_open(self) -> None:
        if not self._opened:
            await self.open()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _check_chunk(self, chunk: Chunk) -> None:
        if not chunk.chunk_id:
            raise StoreError("Chunk has no chunk_id")
        if self.dimension is not None and len(chunk.vector) != self.dimension:
            raise StoreError(
                f"Chunk {chunk.chunk_id} has a {len(chunk.vector)}-dimensional vector, "
                f"store expects {self.dimension}"
            )

    @staticmethod
    def _upsert_chunk(conn: sqlite3.Connection, chunk: Chunk) -> None:
        conn.execute(
            """
            INSERT INTO chunks (
                chunk_id, document_id, ordinal, text, start_offset, end_offset,
                content_sha256, vector, tokens, degraded
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(chunk_id) DO UPDATE SET
                document_id = excluded.document_id,
                ordinal = excluded.ordinal,
                text = excluded.text,
                start_offset = excluded.start_offset,
                end_offset = excluded.end_offset,
                content_sha256 = excluded.content_sha256,
                vector = excluded.vector,
                tokens = excluded.tokens,
                degraded = excluded.degraded
            """,
            (
                chunk.chunk_id,
                chunk.document_id,
                chunk.ordinal,
                chunk.text,
                chunk.start_offset,
                chunk.end_offset,
                chunk.content_sha256,
                json.dumps(chunk.vector),
                json.dumps(chunk.tokens) if chunk.tokens is not None else None,
                1 if chunk.degraded else 0,
            ),
        )

    async def put(self, chunk: Chunk) -> None:
        """
        Insert or replace a single chunk and link it into its document's index.

        A document row is created for unknown documents so the chunk is never
        orphaned.

        Args:
            chunk: Chunk with its vector filled in
        """
        self._check_chunk(chunk)
        await self._ensure_open()

        def op(conn: sqlite3.Connection) -> None:
            self._upsert_chunk(conn, chunk)
            row = conn.execute(
                "SELECT chunk_ids FROM documents WHERE document_id = ?",
                (chunk.document_id,),
            ).fetchone()
            if row is None:
                conn.execute(
                    """
                    INSERT INTO documents (document_id, title, version, updated_at, chunk_ids)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.document_id,
                        chunk.document_id,
                        "",
                        datetime.now(timezone.utc).isoformat(),
                        json.dumps([chunk.chunk_id]),
                    ),
                )
                return
            chunk_ids = json.loads(row["chunk_ids"])
            if chunk.chunk_id not in chunk_ids:
                chunk_ids.append(chunk.chunk_id)
                ordinals = self._ordinals(conn, chunk_ids)
                chunk_ids.sort(key=lambda cid: (ordinals.get(cid, 0), cid))
                conn.execute(
                    "UPDATE documents SET chunk_ids = ? WHERE document_id = ?",
                    (json.dumps(chunk_ids), chunk.document_id),
                )

        await self._run("put", op, write=True)

    @staticmethod
    def _ordinals(conn: sqlite3.Connection, chunk_ids: Sequence[str]) -> Dict[str, int]:
        placeholders = ", ".join("?" * len(chunk_ids))
        rows = conn.execute(
            f"SELECT chunk_id, ordinal FROM chunks WHERE chunk_id IN ({placeholders})",
            list(chunk_ids),
        ).fetchall()
        return {row["chunk_id"]: row["ordinal"] for row in rows}

    async def put_document(self, document: Document, chunks: Sequence[Chunk]) -> Tuple[int, List[str]]:
        """
        Atomically replace a document's chunks and index entry.

        Chunks that belonged to the previous version and are not part of the
        new set are deleted in the same transaction.

        Args:
            document: Document metadata (title, version, updated_at)
            chunks: Complete, ordered chunk set for the document

        Returns:
            Tuple of (chunks written, IDs of chunks removed)
        """
        for chunk in chunks:
            self._check_chunk(chunk)
            if chunk.document_id != document.document_id:
                raise StoreError(
                    f"Chunk {chunk.chunk_id} belongs to {chunk.document_id}, "
                    f"not {document.document_id}"
                )
        await self._ensure_open()

        ordered = sorted(chunks, key=lambda c: c.ordinal)
        new_ids = [c.chunk_id for c in ordered]

        def op(conn: sqlite3.Connection) -> List[str]:
            old_ids = {
                row["chunk_id"]
                for row in conn.execute(
                    "SELECT chunk_id FROM chunks WHERE document_id = ?",
                    (document.document_id,),
                )
            }
            removed = sorted(old_ids - set(new_ids))
            for chunk_id in removed:
                conn.execute("DELETE FROM chunks WHERE chunk_id = ?", (chunk_id,))
            for chunk in ordered:
                self._upsert_chunk(conn, chunk)
            conn.execute(
                """
                INSERT INTO documents (document_id, title, version, updated_at, chunk_ids)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(document_id) DO UPDATE SET
                    title = excluded.title,
                    version = excluded.version,
                    updated_at = excluded.updated_at,
                    chunk_ids = excluded.chunk_ids
                """,
                (
                    document.document_id,
                    document.title,
                    document.version,
                    document.updated_at.isoformat(),
                    json.dumps(new_ids),
                ),
            )
            return removed

        removed = await self._run("put_document", op, write=True)
        logger.debug(
            f"Stored {len(new_ids)} chunks for {document.document_id} "
            f"(removed {len(removed)} stale)"
        )
        return len(new_ids), removed

    async def delete_by_document(self, document_id: str) -> List[str]:
        """
        Delete a document's index entry and all of its chunks.

        Args:
            document_id: Document to remove

        Returns:
            IDs of the deleted chunks
        """
        await self._ensure_open()

        def op(conn: sqlite3.Connection) -> List[str]:
            removed = [
                row["chunk_id"]
                for row in conn.execute(
                    "SELECT chunk_id FROM chunks WHERE document_id = ? ORDER BY ordinal",
                    (document_id,),
                )
            ]
            conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM documents WHERE document_id = ?", (document_id,))
            return removed

        removed = await self._run("delete_by_document", op, write=True)
        if removed:
            logger.info(f"Deleted {len(removed)} chunks for document {document_id}")
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, chunk_id: str) -> Optional[Chunk]:
        """
        Get a chunk by ID.

        Returns:
            Chunk if found, None otherwise
        """
        await self._ensure_open()

        def op(conn: sqlite3.Connection) -> Optional[Chunk]:
            row = conn.execute("SELECT * FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
            return _row_to_chunk(row) if row else None

        return await self._run("get", op)

    async def get_many(self, chunk_ids: Sequence[str]) -> Dict[str, Chunk]:
        """Get several chunks at once, keyed by ID; missing IDs are omitted."""
        if not chunk_ids:
            return {}
        await self._ensure_open()
        ids = list(dict.fromkeys(chunk_ids))

        def op(conn: sqlite3.Connection) -> Dict[str, Chunk]:
            placeholders = ", ".join("?" * len(ids))
            rows = conn.execute(
                f"SELECT * FROM chunks WHERE chunk_id IN ({placeholders})", ids
            ).fetchall()
            return {row["chunk_id"]: _row_to_chunk(row) for row in rows}

        return await self._run("get_many", op)

    async def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        """Get a document's index entry, or None if it was never indexed."""
        await self._ensure_open()

        def op(conn: sqlite3.Connection) -> Optional[DocumentRecord]:
            row = conn.execute(
                "SELECT * FROM documents WHERE document_id = ?", (document_id,)
            ).fetchone()
            return _row_to_document(row) if row else None

        return await self._run("get_document", op)

    async def get_documents(self, document_ids: Sequence[str]) -> Dict[str, DocumentRecord]:
        """Get several document entries at once, keyed by ID."""
        if not document_ids:
            return {}
        await self._ensure_open()
        ids = list(dict.fromkeys(document_ids))

        def op(conn: sqlite3.Connection) -> Dict[str, DocumentRecord]:
            placeholders = ", ".join("?" * len(ids))
            rows = conn.execute(
                f"SELECT * FROM documents WHERE document_id IN ({placeholders})", ids
            ).fetchall()
            return {row["document_id"]: _row_to_document(row) for row in rows}

        return await self._run("get_documents", op)

    async def get_document_chunks(self, document_id: str) -> List[Chunk]:
        """Get a document's chunks in ordinal order."""
        await self._ensure_open()

        def op(conn: sqlite3.Connection) -> List[Chunk]:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE document_id = ? ORDER BY ordinal",
                (document_id,),
            ).fetchall()
            return [_row_to_chunk(row) for row in rows]

        return await self._run("get_document_chunks", op)

    async def scan_all(self, after: Optional[str] = None) -> AsyncIterator[Chunk]:
        """
        Lazily iterate every chunk in chunk_id order.

        Rows are fetched a page at a time, each page in its own short read,
        so a long scan never holds the store. Pass the last seen chunk_id as
        `after` to resume an interrupted scan.

        Args:
            after: Resume after this chunk_id (exclusive)

        Yields:
            Chunk objects
        """
        await self._ensure_open()
        cursor_id = after or ""
        page_size = self.config.scan_page_size

        while True:
            def op(conn: sqlite3.Connection, start: str = cursor_id) -> List[Chunk]:
                rows = conn.execute(
                    "SELECT * FROM chunks WHERE chunk_id > ? ORDER BY chunk_id LIMIT ?",
                    (start, page_size),
                ).fetchall()
                return [_row_to_chunk(row) for row in rows]

            page = await self._run("scan_all", op)
            for chunk in page:
                yield chunk
            if len(page) < page_size:
                return
            cursor_id = page[-1].chunk_id

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def verify_integrity(self) -> IntegrityReport:
        """
        Check that both index mappings agree.

        Orphaned chunks (stored but unreachable from any document) and
        dangling references are a corruption signal and are logged as errors.

        Returns:
            IntegrityReport
        """
        await self._ensure_open()

        def op(conn: sqlite3.Connection) -> IntegrityReport:
            referenced = set()
            documents = 0
            for row in conn.execute("SELECT chunk_ids FROM documents"):
                documents += 1
                referenced.update(json.loads(row["chunk_ids"]))
            stored = {row["chunk_id"] for row in conn.execute("SELECT chunk_id FROM chunks")}
            return IntegrityReport(
                orphaned_chunk_ids=sorted(stored - referenced),
                dangling_chunk_ids=sorted(referenced - stored),
                documents_checked=documents,
                chunks_checked=len(stored),
            )

        report = await self._run("verify_integrity", op)
        if not report.ok:
            logger.error(
                f"Chunk store integrity check failed: {len(report.orphaned_chunk_ids)} orphaned, "
                f"{len(report.dangling_chunk_ids)} dangling chunk references"
            )
        return report

    async def stats(self) -> Dict[str, Any]:
        """
        Get store statistics.

        Returns:
            Dictionary with document/chunk counts and schema version
        """
        await self._ensure_open()
        start = time.time()

        def op(conn: sqlite3.Connection) -> Dict[str, Any]:
            documents = conn.execute("SELECT COUNT(*) AS n FROM documents").fetchone()["n"]
            chunks = conn.execute("SELECT COUNT(*) AS n FROM chunks").fetchone()["n"]
            degraded = conn.execute(
                "SELECT COUNT(*) AS n FROM chunks WHERE degraded = 1"
            ).fetchone()["n"]
            return {
                "documents": documents,
                "chunks": chunks,
                "degraded_chunks": degraded,
                "schema_version": SCHEMA_VERSION,
                "path": str(self.path),
            }

        result = await self._run("stats", op)
        result["elapsed_ms"] = int((time.time() - start) * 1000)
        return result
