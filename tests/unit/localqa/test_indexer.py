"""
Unit tests for document indexing.

Tests for:
- DocumentManifest parsing
- Version-based skipping and forced re-indexing
- Re-embedding unchanged documents that hold fallback vectors
- Chunk replacement on content change
- Error handling per document
"""

import json

import pytest

from localqa.core.config import ChunkingConfig, EmbeddingConfig
from localqa.core.exceptions import RuntimeUnhealthy, StoreBusy
from localqa.retrieval.embedder import Embedder
from localqa.retrieval.hybrid import HybridRetriever
from localqa.retrieval.indexer import DocumentManifest, Indexer, load_manifest


class SwitchableRuntime:
    """Runtime whose embed endpoint can be turned off and on."""

    def __init__(self, dimension, available=False):
        self.dimension = dimension
        self.available = available
        self.calls = 0

    async def embed(self, texts, model=None, timeout=None):
        self.calls += 1
        if not self.available:
            raise RuntimeUnhealthy("runtime is down")
        return [[1.0] + [0.0] * (self.dimension - 1) for _ in texts]


@pytest.fixture
def embedder(embedding_config):
    return Embedder(embedding_config, runtime=None)


@pytest.fixture
def indexer(chunk_store, embedder):
    retriever = HybridRetriever(chunk_store, embedder)
    return Indexer(chunk_store, embedder, ChunkingConfig(chunk_size=100, overlap=20), retriever=retriever)


class TestDocumentManifest:
    """Tests for manifest parsing."""

    def test_from_dict(self):
        manifest = DocumentManifest.from_dict({
            "version": "2.0",
            "documents": [{
                "document_id": "https://wiki.example/Copper_Ore",
                "title": "Copper Ore",
                "text": "Copper ore smelts into ingots.",
                "version": 42,
                "updated_at": "2024-05-01T12:00:00",
            }],
        })

        assert manifest.version == "2.0"
        doc = manifest.documents[0]
        assert doc.title == "Copper Ore"
        assert doc.version == "42"
        assert doc.updated_at.tzinfo is not None

    def test_missing_document_id(self):
        with pytest.raises(ValueError, match="document_id"):
            DocumentManifest.from_dict({"documents": [{"title": "No id"}]})

    def test_documents_must_be_list(self):
        with pytest.raises(ValueError, match="must be a list"):
            DocumentManifest.from_dict({"documents": {"a": 1}})

    def test_load_manifest_file(self, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text(json.dumps({"documents": [{"document_id": "a", "text": "alpha"}]}), encoding="utf-8")

        manifest = load_manifest(path)

        assert [d.document_id for d in manifest.documents] == ["a"]
        assert manifest.documents[0].title == "a"

    def test_load_manifest_invalid_json(self, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ValueError, match="Invalid JSON"):
            load_manifest(path)


class TestIndexer:
    """Tests for Indexer."""

    async def test_index_new_document(self, indexer, chunk_store, make_document, copper_text):
        report = await indexer.index_documents([make_document("copper", copper_text)])

        assert report.documents_processed == 1
        assert report.chunks_written == 3
        assert report.degraded_embeddings == 3
        assert report.errors == []
        chunks = await chunk_store.get_document_chunks("copper")
        assert all(c.tokens and c.degraded for c in chunks)
        assert len(indexer.retriever.lexical_index) == 3
        assert len(indexer.retriever.vector_index) == 3

    async def test_unchanged_version_is_skipped(self, indexer, make_document, copper_text):
        doc = make_document("copper", copper_text, version="7")
        await indexer.index_documents([doc])

        report = await indexer.index_documents([doc])

        assert report.documents_skipped == 1
        assert report.documents_processed == 0

    async def test_fallback_vectors_are_replaced_once_runtime_recovers(
        self, chunk_store, embedding_config, make_document, copper_text
    ):
        runtime = SwitchableRuntime(embedding_config.dimension)
        indexer = Indexer(chunk_store, Embedder(embedding_config, runtime=runtime), ChunkingConfig(chunk_size=100, overlap=20))
        doc = make_document("copper", copper_text, version="7")

        first = await indexer.index_documents([doc])
        assert first.degraded_embeddings == 3

        still_down = await indexer.index_documents([doc])
        assert still_down.documents_skipped == 1
        assert all(c.degraded for c in await chunk_store.get_document_chunks("copper"))

        runtime.available = True
        recovered = await indexer.index_documents([doc])

        assert recovered.documents_processed == 1
        assert recovered.degraded_embeddings == 0
        chunks = await chunk_store.get_document_chunks("copper")
        assert len(chunks) == 3
        assert not any(c.degraded for c in chunks)

        assert (await indexer.index_documents([doc])).documents_skipped == 1

    async def test_force_reindexes(self, indexer, make_document, copper_text):
        doc = make_document("copper", copper_text)
        await indexer.index_documents([doc])

        report = await indexer.index_documents([doc], force=True)

        assert report.documents_processed == 1
        assert report.chunks_removed == 0

    async def test_new_version_same_text_keeps_chunk_ids(self, indexer, chunk_store, make_document, copper_text):
        await indexer.index_documents([make_document("copper", copper_text, version="1")])
        before = (await chunk_store.get_document("copper")).chunk_ids

        report = await indexer.index_documents([make_document("copper", copper_text, version="2")])

        after = await chunk_store.get_document("copper")
        assert after.chunk_ids == before
        assert after.version == "2"
        assert report.chunks_removed == 0

    async def test_changed_text_replaces_chunks(self, indexer, chunk_store, make_document, copper_text, hoe_text):
        await indexer.index_documents([make_document("page", copper_text, version="1")])

        report = await indexer.index_documents([make_document("page", hoe_text, version="2")])

        assert report.chunks_written == 1
        assert report.chunks_removed == 3
        assert (await chunk_store.verify_integrity()).ok
        assert [hit for hit, _ in indexer.retriever.lexical_index.search("copper", 10)] == []

    async def test_per_document_error_is_recorded(self, chunk_store, make_document):
        # 32-dimensional vectors do not fit the 64-dimensional store
        embedder = Embedder(EmbeddingConfig(dimension=32), runtime=None)
        indexer = Indexer(chunk_store, embedder)

        report = await indexer.index_documents([
            make_document("a", "alpha text"),
            make_document("b", "beta text"),
        ])

        assert [e["document_id"] for e in report.errors] == ["a", "b"]
        assert report.documents_processed == 0

    async def test_store_busy_stops_the_run(self, indexer, chunk_store, make_document, monkeypatch):
        async def busy(document, chunks):
            raise StoreBusy("locked", operation="put_document", attempts=5)

        monkeypatch.setattr(chunk_store, "put_document", busy)

        with pytest.raises(StoreBusy):
            await indexer.index_documents([make_document("a", "alpha")])

    async def test_remove_document(self, indexer, chunk_store, make_document, copper_text):
        await indexer.index_documents([make_document("copper", copper_text)])

        removed = await indexer.remove_document("copper")

        assert len(removed) == 3
        assert await chunk_store.get_document("copper") is None
        assert len(indexer.retriever.lexical_index) == 0

    async def test_report_to_dict(self, indexer, make_document):
        report = await indexer.index_manifest(
            DocumentManifest(version="1.0", documents=[make_document("a", "alpha")])
        )

        data = report.to_dict()
        assert data["run_id"] == report.run_id
        assert data["documents_processed"] == 1
