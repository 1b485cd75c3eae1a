"""
Unit tests for the SQLite chunk store.

Tests for:
- put / get / put_document / delete_by_document
- scan_all paging and resume
- Integrity checks
- Lock contention retry and StoreBusy
- Schema version mismatch
"""

import asyncio
import sqlite3

import pytest

from localqa.core.config import StoreConfig
from localqa.core.exceptions import StoreBusy, StoreCorruption, StoreError
from localqa.core.types import Chunk
from localqa.core.utils import compute_content_hash, generate_chunk_id
from localqa.storage.chunk_store import ChunkStore

# Matches the dimension of the conftest store fixtures
TEST_DIMENSION = 64


def _chunk(document_id: str, ordinal: int, text: str = None, dimension: int = TEST_DIMENSION) -> Chunk:
    text = text or f"{document_id} chunk {ordinal}"
    content_hash = compute_content_hash(text)
    vector = [0.0] * dimension
    vector[ordinal % dimension] = 1.0
    return Chunk(
        chunk_id=generate_chunk_id(document_id, ordinal, content_hash, "1.0"),
        document_id=document_id,
        ordinal=ordinal,
        text=text,
        end_offset=len(text),
        content_sha256=content_hash,
        vector=vector,
        tokens=text.lower().split(),
    )


class TestReadWrite:
    """Tests for basic reads and writes."""

    async def test_put_and_get(self, chunk_store):
        chunk = _chunk("doc-1", 0)

        await chunk_store.put(chunk)
        stored = await chunk_store.get(chunk.chunk_id)

        assert stored == chunk
        record = await chunk_store.get_document("doc-1")
        assert record.chunk_ids == [chunk.chunk_id]

    async def test_get_missing(self, chunk_store):
        assert await chunk_store.get("nope") is None

    async def test_wrong_dimension_rejected(self, chunk_store):
        chunk = _chunk("doc-1", 0, dimension=TEST_DIMENSION + 1)

        with pytest.raises(StoreError, match="dimensional"):
            await chunk_store.put(chunk)

    async def test_put_document_replaces_previous_version(self, chunk_store, make_document):
        doc = make_document("doc-1", "v1 text", version="1")
        old_chunks = [_chunk("doc-1", 0, "old zero"), _chunk("doc-1", 1, "old one")]
        await chunk_store.put_document(doc, old_chunks)

        doc_v2 = make_document("doc-1", "v2 text", version="2")
        new_chunks = [_chunk("doc-1", 0, "new zero")]
        written, removed = await chunk_store.put_document(doc_v2, new_chunks)

        assert written == 1
        assert sorted(removed) == sorted(c.chunk_id for c in old_chunks)
        record = await chunk_store.get_document("doc-1")
        assert record.version == "2"
        assert record.chunk_ids == [new_chunks[0].chunk_id]
        assert await chunk_store.get(old_chunks[0].chunk_id) is None
        assert (await chunk_store.verify_integrity()).ok

    async def test_put_document_keeps_ordinal_order(self, chunk_store, make_document):
        doc = make_document("doc-1", "text")
        chunks = [_chunk("doc-1", 2), _chunk("doc-1", 0), _chunk("doc-1", 1)]

        await chunk_store.put_document(doc, chunks)

        stored = await chunk_store.get_document_chunks("doc-1")
        assert [c.ordinal for c in stored] == [0, 1, 2]
        record = await chunk_store.get_document("doc-1")
        assert record.chunk_ids == [c.chunk_id for c in stored]

    async def test_put_document_rejects_foreign_chunk(self, chunk_store, make_document):
        with pytest.raises(StoreError, match="belongs to"):
            await chunk_store.put_document(make_document("doc-1", "text"), [_chunk("doc-2", 0)])

    async def test_delete_by_document(self, chunk_store, make_document):
        chunks = [_chunk("doc-1", 0), _chunk("doc-1", 1)]
        await chunk_store.put_document(make_document("doc-1", "text"), chunks)
        await chunk_store.put_document(make_document("doc-2", "text"), [_chunk("doc-2", 0)])

        removed = await chunk_store.delete_by_document("doc-1")

        assert removed == [c.chunk_id for c in chunks]
        assert await chunk_store.get_document("doc-1") is None
        assert (await chunk_store.stats())["chunks"] == 1

    async def test_get_many_omits_missing(self, chunk_store):
        chunk = _chunk("doc-1", 0)
        await chunk_store.put(chunk)

        found = await chunk_store.get_many([chunk.chunk_id, "missing"])

        assert list(found) == [chunk.chunk_id]

    async def test_survives_reopen(self, store_config, make_document):
        first = ChunkStore(store_config, dimension=TEST_DIMENSION)
        chunk = _chunk("doc-1", 0)
        await first.put_document(make_document("doc-1", "text"), [chunk])

        second = ChunkStore(store_config, dimension=TEST_DIMENSION)
        await second.open()

        assert await second.get(chunk.chunk_id) == chunk


class TestScanAll:
    """Tests for lazy scanning."""

    async def test_scan_pages_in_id_order(self, tmp_path, make_document):
        store = ChunkStore(StoreConfig(path=tmp_path / "scan.db", scan_page_size=2), dimension=TEST_DIMENSION)
        chunks = [_chunk("doc-1", i) for i in range(5)]
        await store.put_document(make_document("doc-1", "text"), chunks)

        scanned = [chunk.chunk_id async for chunk in store.scan_all()]

        assert scanned == sorted(c.chunk_id for c in chunks)

    async def test_scan_resumes_after_cursor(self, chunk_store, make_document):
        chunks = [_chunk("doc-1", i) for i in range(4)]
        await chunk_store.put_document(make_document("doc-1", "text"), chunks)
        ordered = sorted(c.chunk_id for c in chunks)

        resumed = [chunk.chunk_id async for chunk in chunk_store.scan_all(after=ordered[1])]

        assert resumed == ordered[2:]

    async def test_scan_empty_store(self, chunk_store):
        assert [c async for c in chunk_store.scan_all()] == []


class TestIntegrity:
    """Tests for verify_integrity."""

    async def test_detects_orphan(self, chunk_store, store_config, make_document):
        chunk = _chunk("doc-1", 0)
        await chunk_store.put_document(make_document("doc-1", "text"), [chunk])

        conn = sqlite3.connect(str(store_config.path))
        conn.execute("UPDATE documents SET chunk_ids = '[]'")
        conn.commit()
        conn.close()

        report = await chunk_store.verify_integrity()

        assert not report.ok
        assert report.orphaned_chunk_ids == [chunk.chunk_id]

    async def test_detects_dangling_reference(self, chunk_store, store_config, make_document):
        chunk = _chunk("doc-1", 0)
        await chunk_store.put_document(make_document("doc-1", "text"), [chunk])

        conn = sqlite3.connect(str(store_config.path))
        conn.execute("DELETE FROM chunks")
        conn.commit()
        conn.close()

        report = await chunk_store.verify_integrity()

        assert report.dangling_chunk_ids == [chunk.chunk_id]

    async def test_schema_mismatch(self, store_config):
        store = ChunkStore(store_config, dimension=TEST_DIMENSION)
        await store.open()
        conn = sqlite3.connect(str(store_config.path))
        conn.execute("UPDATE meta SET value = 'other-store/9' WHERE key = 'schema_version'")
        conn.commit()
        conn.close()

        with pytest.raises(StoreCorruption, match="schema"):
            await ChunkStore(store_config, dimension=TEST_DIMENSION).open()


class TestContention:
    """Tests for concurrent access."""

    async def test_concurrent_writers_both_succeed(self, store_config, make_document):
        """Two handles writing at once: the loser retries instead of failing."""
        store_a = ChunkStore(store_config, dimension=TEST_DIMENSION)
        store_b = ChunkStore(store_config, dimension=TEST_DIMENSION)
        await store_a.open()
        await store_b.open()

        chunks_a = [_chunk("doc-a", i) for i in range(20)]
        chunks_b = [_chunk("doc-b", i) for i in range(20)]
        await asyncio.gather(
            store_a.put_document(make_document("doc-a", "text"), chunks_a),
            store_b.put_document(make_document("doc-b", "text"), chunks_b),
        )

        stats = await store_a.stats()
        assert stats["documents"] == 2
        assert stats["chunks"] == 40
        assert (await store_b.verify_integrity()).ok

    async def test_store_busy_when_lock_held(self, tmp_path, make_document):
        """An external exclusive lock that never clears surfaces as StoreBusy."""
        config = StoreConfig(
            path=tmp_path / "busy.db",
            retry_attempts=3,
            retry_base_delay_ms=5.0,
            retry_max_delay_ms=10.0,
        )
        store = ChunkStore(config, dimension=TEST_DIMENSION)
        await store.open()

        blocker = sqlite3.connect(str(config.path), isolation_level=None)
        blocker.execute("BEGIN EXCLUSIVE")
        try:
            with pytest.raises(StoreBusy) as excinfo:
                await store.put_document(make_document("doc-1", "text"), [_chunk("doc-1", 0)])
        finally:
            blocker.rollback()
            blocker.close()

        assert excinfo.value.attempts == 3
        assert excinfo.value.operation == "put_document"
        assert config.path.exists()

    async def test_write_succeeds_once_lock_released(self, tmp_path, make_document):
        config = StoreConfig(
            path=tmp_path / "release.db",
            retry_attempts=10,
            retry_base_delay_ms=20.0,
            retry_max_delay_ms=50.0,
        )
        store = ChunkStore(config, dimension=TEST_DIMENSION)
        await store.open()

        blocker = sqlite3.connect(str(config.path), isolation_level=None, check_same_thread=False)
        blocker.execute("BEGIN EXCLUSIVE")

        async def release_later():
            await asyncio.sleep(0.05)
            blocker.rollback()
            blocker.close()

        chunk = _chunk("doc-1", 0)
        await asyncio.gather(
            store.put_document(make_document("doc-1", "text"), [chunk]),
            release_later(),
        )

        assert await store.get(chunk.chunk_id) == chunk
