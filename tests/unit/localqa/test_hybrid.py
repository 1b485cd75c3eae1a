"""
Unit tests for hybrid retrieval.

Tests for:
- Score normalisation and weighted fusion
- Ranking tie-breaks and per-document diversification
- HybridRetriever end to end over a real store
- Degradation when one or both search methods fail
- Loading the in-memory indexes once under concurrent first queries
"""

import asyncio
from datetime import datetime, timezone

import pytest

from localqa.core.config import ChunkingConfig, EmbeddingConfig, RetrievalConfig, StoreConfig
from localqa.core.exceptions import EmbeddingUnavailable, RetrievalUnavailable
from localqa.core.types import RetrievalResult, SearchSource
from localqa.retrieval.embedder import Embedder
from localqa.retrieval.hybrid import (
    HybridRetriever,
    diversify,
    normalize_scores,
    ranking_key,
    weighted_fuse,
)
from localqa.retrieval.indexer import Indexer
from localqa.storage.chunk_store import ChunkStore


def _result(chunk_id, document_id, score, ordinal=0, updated_at=None):
    return RetrievalResult(
        chunk_id=chunk_id,
        score=score,
        source=SearchSource.BOTH,
        document_id=document_id,
        ordinal=ordinal,
        updated_at=updated_at,
    )


class TestNormalizeScores:
    """Tests for normalize_scores."""

    def test_min_max(self):
        assert normalize_scores({"a": 1.0, "b": 3.0, "c": 2.0}) == {"a": 0.0, "b": 1.0, "c": 0.5}

    def test_identical_scores_become_one(self):
        assert normalize_scores({"a": 0.3, "b": 0.3}) == {"a": 1.0, "b": 1.0}

    def test_empty(self):
        assert normalize_scores({}) == {}


class TestWeightedFuse:
    """Tests for weighted_fuse."""

    def test_sources(self):
        fused = weighted_fuse(
            semantic_hits=[("both", 0.9), ("sem", 0.1)],
            lexical_hits=[("both", 5.0), ("lex", 1.0)],
        )

        assert fused["both"].source == SearchSource.BOTH
        assert fused["sem"].source == SearchSource.SEMANTIC
        assert fused["lex"].source == SearchSource.LEXICAL

    def test_top_in_both_lists_scores_one(self):
        fused = weighted_fuse([("a", 0.9), ("b", 0.2)], [("a", 7.0), ("b", 1.0)])

        assert fused["a"].score == pytest.approx(1.0)
        assert fused["b"].score == pytest.approx(0.0)

    def test_weights_apply(self):
        fused = weighted_fuse(
            [("sem", 0.8), ("other", 0.1)],
            [("lex", 3.0), ("other", 1.0)],
            semantic_weight=0.7,
            lexical_weight=0.3,
        )

        assert fused["sem"].score == pytest.approx(0.7)
        assert fused["lex"].score == pytest.approx(0.3)
        assert fused["other"].semantic_score == 0.0
        assert fused["other"].lexical_score == 0.0

    def test_scores_stay_in_unit_interval(self):
        fused = weighted_fuse(
            [(f"c{i}", i * 0.1) for i in range(8)],
            [(f"c{i}", 10 - i) for i in range(3, 11)],
        )

        for candidate in fused.values():
            assert 0.0 <= candidate.score <= 1.0


class TestRanking:
    """Tests for ranking_key and diversify."""

    def test_recency_breaks_score_ties(self):
        older = _result("x", "doc-old", 0.5, updated_at=datetime(2023, 1, 1, tzinfo=timezone.utc))
        newer = _result("y", "doc-new", 0.5, updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc))

        assert sorted([older, newer], key=ranking_key) == [newer, older]

    def test_ordinal_breaks_remaining_ties(self):
        first = _result("z", "doc", 0.5, ordinal=0)
        second = _result("a", "doc", 0.5, ordinal=1)

        assert sorted([second, first], key=ranking_key) == [first, second]

    def test_cap_per_document(self):
        ranked = [
            _result("a1", "A", 0.9),
            _result("a2", "A", 0.8),
            _result("a3", "A", 0.7),
            _result("b1", "B", 0.6),
        ]

        selected = diversify(ranked, limit=3, cap=2)

        assert [r.chunk_id for r in selected] == ["a1", "a2", "b1"]

    def test_no_backfill_when_other_documents_exist(self):
        ranked = [
            _result("a1", "A", 0.9),
            _result("a2", "A", 0.8),
            _result("a3", "A", 0.7),
            _result("b1", "B", 0.6),
            _result("c1", "C", 0.5),
        ]

        selected = diversify(ranked, limit=5, cap=2)

        assert [r.chunk_id for r in selected] == ["a1", "a2", "b1", "c1"]

    def test_backfill_when_pool_has_too_few_documents(self):
        ranked = [_result(f"a{i}", "A", 1.0 - i * 0.1, ordinal=i) for i in range(4)]

        selected = diversify(ranked, limit=3, cap=2)

        assert [r.chunk_id for r in selected] == ["a0", "a1", "a2"]


@pytest.fixture
async def wiki(tmp_path, make_document, copper_text, hoe_text):
    """Store, retriever and indexer over the Copper Ore and Crafting a Hoe pages."""
    store = ChunkStore(StoreConfig(path=tmp_path / "wiki.db"), dimension=768)
    embedder = Embedder(EmbeddingConfig(dimension=768), runtime=None)
    retriever = HybridRetriever(store, embedder, RetrievalConfig())
    indexer = Indexer(store, embedder, ChunkingConfig(chunk_size=100, overlap=20), retriever=retriever)
    await indexer.index_documents([
        make_document("copper-ore", copper_text, title="Copper Ore"),
        make_document("crafting-a-hoe", hoe_text, title="Crafting a Hoe"),
    ])
    return retriever


class TestHybridRetriever:
    """Tests for HybridRetriever over an indexed store."""

    async def test_copper_question_prefers_copper_page(self, wiki):
        results = await wiki.retrieve("how to smelt copper", limit=5)

        titles = [r.document_title for r in results]
        assert titles[0] == "Copper Ore"
        assert titles.count("Copper Ore") == 3
        if "Crafting a Hoe" in titles:
            assert titles.index("Crafting a Hoe") == 3
        assert results[0].source == SearchSource.BOTH
        assert results[0].chunk_text

    async def test_results_sorted_and_limited(self, wiki):
        results = await wiki.retrieve("copper ingots", limit=2)

        assert len(results) == 2
        assert results[0].score >= results[1].score

    async def test_degraded_embedding_flag(self, wiki):
        response = await wiki.retrieve_detailed("copper")

        assert response.degraded_embedding is True
        assert response.semantic_failed is False
        assert response.lexical_failed is False

    async def test_empty_query(self, wiki):
        assert await wiki.retrieve("   ") == []

    async def test_lexical_failure_degrades_to_semantic(self, wiki):
        def broken(query, limit):
            raise RuntimeError("index corrupted")

        wiki.lexical_index.search = broken

        response = await wiki.retrieve_detailed("how to smelt copper")

        assert response.lexical_failed is True
        assert response.results
        assert all(r.source == SearchSource.SEMANTIC for r in response.results)

    async def test_semantic_failure_degrades_to_lexical(self, wiki):
        async def broken(text):
            raise EmbeddingUnavailable("no embeddings")

        wiki.embedder.embed_one = broken

        response = await wiki.retrieve_detailed("copper")

        assert response.semantic_failed is True
        assert response.results[0].document_title == "Copper Ore"
        assert all(r.source == SearchSource.LEXICAL for r in response.results)

    async def test_both_failing_raises(self, wiki):
        async def broken_embed(text):
            raise EmbeddingUnavailable("no embeddings")

        def broken_search(query, limit):
            raise RuntimeError("index corrupted")

        wiki.embedder.embed_one = broken_embed
        wiki.lexical_index.search = broken_search

        with pytest.raises(RetrievalUnavailable) as excinfo:
            await wiki.retrieve("copper")

        assert isinstance(excinfo.value.semantic_error, EmbeddingUnavailable)
        assert isinstance(excinfo.value.lexical_error, RuntimeError)

    async def test_removed_document_disappears(self, wiki):
        indexer = Indexer(wiki.store, wiki.embedder, retriever=wiki)

        await indexer.remove_document("copper-ore")
        results = await wiki.retrieve("copper")

        assert all(r.document_id != "copper-ore" for r in results)

    async def test_concurrent_first_queries_load_once(self, wiki):
        retriever = HybridRetriever(wiki.store, wiki.embedder, RetrievalConfig())
        scans = []
        scan_all = wiki.store.scan_all

        async def slow_scan():
            scans.append(1)
            async for chunk in scan_all():
                await asyncio.sleep(0)
                yield chunk

        wiki.store.scan_all = slow_scan

        first, second = await asyncio.gather(
            retriever.retrieve("how to smelt copper", limit=5),
            retriever.retrieve("how to smelt copper", limit=5),
        )

        assert len(scans) == 1
        assert first
        assert [r.chunk_id for r in first] == [r.chunk_id for r in second]
