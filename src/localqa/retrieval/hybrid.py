"""
Hybrid Retriever - fuse semantic and lexical search into one ranking.

Query path:
1. Semantic search (embed the query, cosine over stored vectors) and lexical
   search (BM25) run concurrently, each returning limit * multiplier
   candidates.
2. Each method's scores are min-max normalised to [0, 1].
3. Normalised scores are fused with a weighted sum; a chunk found by both
   methods gets both contributions.
4. Results are sorted by fused score, then document recency, then chunk
   ordinal, and diversified so no document dominates.

If one method fails the other carries the query alone; only when both fail
is RetrievalUnavailable raised.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.config import RetrievalConfig
from ..core.exceptions import RetrievalUnavailable
from ..core.types import Chunk, RetrievalResponse, RetrievalResult, SearchSource
from .embedder import Embedder
from .lexical import LexicalIndex
from .search import VectorIndex

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def normalize_scores(scores: Dict[str, float]) -> Dict[str, float]:
    """
    Min-max normalise scores into [0, 1].

    When all scores are identical every candidate gets 1.0, so a method with
    a single hit still contributes fully.
    """
    if not scores:
        return {}
    values = list(scores.values())
    minimum = min(values)
    maximum = max(values)
    if math.isclose(maximum, minimum):
        return {key: 1.0 for key in scores}
    scale = maximum - minimum
    return {key: (value - minimum) / scale for key, value in scores.items()}


@dataclass
class FusedCandidate:
    """A candidate after fusion, before chunk text is attached."""
    chunk_id: str
    score: float
    source: SearchSource
    semantic_score: Optional[float] = None
    lexical_score: Optional[float] = None


def weighted_fuse(
    semantic_hits: Sequence[Tuple[str, float]],
    lexical_hits: Sequence[Tuple[str, float]],
    semantic_weight: float = 0.5,
    lexical_weight: float = 0.5,
) -> Dict[str, FusedCandidate]:
    """
    Fuse two hit lists by weighted sum of min-max normalised scores.

    Args:
        semantic_hits: (chunk_id, raw score) from semantic search
        lexical_hits: (chunk_id, raw score) from lexical search
        semantic_weight: Weight of the semantic component
        lexical_weight: Weight of the lexical component

    Returns:
        Fused candidates keyed by chunk_id
    """
    semantic_norm = normalize_scores(dict(semantic_hits))
    lexical_norm = normalize_scores(dict(lexical_hits))

    fused: Dict[str, FusedCandidate] = {}
    for chunk_id in set(semantic_norm) | set(lexical_norm):
        in_semantic = chunk_id in semantic_norm
        in_lexical = chunk_id in lexical_norm
        if in_semantic and in_lexical:
            source = SearchSource.BOTH
        elif in_semantic:
            source = SearchSource.SEMANTIC
        else:
            source = SearchSource.LEXICAL
        fused[chunk_id] = FusedCandidate(
            chunk_id=chunk_id,
            score=semantic_weight * semantic_norm.get(chunk_id, 0.0)
            + lexical_weight * lexical_norm.get(chunk_id, 0.0),
            source=source,
            semantic_score=semantic_norm.get(chunk_id),
            lexical_score=lexical_norm.get(chunk_id),
        )
    return fused


def ranking_key(result: RetrievalResult) -> tuple:
    """Fused score descending, then newer documents, then chunk ordinal."""
    updated = result.updated_at or _EPOCH
    return (-result.score, -updated.timestamp(), result.ordinal, result.chunk_id)


def diversify(ranked: Sequence[RetrievalResult], limit: int, cap: int) -> List[RetrievalResult]:
    """
    Greedily select results, at most `cap` per source document.

    Candidates skipped by the cap only backfill remaining slots when the
    whole pool spans no more than `cap` documents, i.e. when there is no
    other document left to diversify with.

    Args:
        ranked: Candidates already sorted by ranking_key
        limit: Result set size
        cap: Most results one document may contribute

    Returns:
        Selected results, sorted by ranking_key
    """
    selected: List[RetrievalResult] = []
    skipped: List[RetrievalResult] = []
    per_document: Dict[str, int] = {}

    for result in ranked:
        if len(selected) >= limit:
            break
        count = per_document.get(result.document_id, 0)
        if count >= cap:
            skipped.append(result)
            continue
        per_document[result.document_id] = count + 1
        selected.append(result)

    distinct_documents = len({r.document_id for r in ranked})
    if len(selected) < limit and skipped and distinct_documents <= cap:
        selected.extend(skipped[:limit - len(selected)])
        selected.sort(key=ranking_key)

    return selected


class HybridRetriever:
    """
    Concurrent semantic + lexical retrieval with fusion and diversification.

    Example:
        >>> retriever = HybridRetriever(store, embedder)
        >>> await retriever.refresh()
        >>> results = await retriever.retrieve("how to smelt copper", limit=5)
    """

    def __init__(
        self,
        store,
        embedder: Embedder,
        config: Optional[RetrievalConfig] = None,
        lexical_index: Optional[LexicalIndex] = None,
        vector_index: Optional[VectorIndex] = None,
    ):
        """
        Initialize the retriever.

        Args:
            store: ChunkStore holding chunk text and document metadata
            embedder: Embedder for query vectors
            config: Fusion weights, per-document cap, candidate multiplier
            lexical_index: Shared lexical index (created if omitted)
            vector_index: Shared vector index (created if omitted)
        """
        self.store = store
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.config.validate()
        self.lexical_index = lexical_index if lexical_index is not None else LexicalIndex()
        self.vector_index = vector_index if vector_index is not None else VectorIndex()
        self._loaded = False
        self._load_lock = asyncio.Lock()

    async def refresh(self) -> int:
        """
        Rebuild both in-memory indexes from one scan of the store.

        Returns:
            Number of chunks loaded
        """
        async with self._load_lock:
            return await self._rebuild()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            # a concurrent first query may have loaded while we waited
            if not self._loaded:
                await self._rebuild()

    async def _rebuild(self) -> int:
        self.lexical_index.clear()
        self.vector_index.clear()
        count = 0
        async for chunk in self.store.scan_all():
            self.lexical_index.add(chunk)
            self.vector_index.add(chunk)
            count += 1
        self._loaded = True
        logger.info(f"Loaded {count} chunks into the retrieval indexes")
        return count

    def apply_update(self, added: Sequence[Chunk], removed_ids: Sequence[str]) -> None:
        """Keep the in-memory indexes in step with a store write."""
        self.lexical_index.remove(removed_ids)
        self.vector_index.remove(removed_ids)
        self.lexical_index.add_many(added)
        self.vector_index.add_many(added)

    async def retrieve(self, query: str, limit: Optional[int] = None) -> List[RetrievalResult]:
        """
        Retrieve ranked context chunks for a query.

        Returns:
            At most `limit` results, best first

        Raises:
            RetrievalUnavailable: If both search methods failed
        """
        response = await self.retrieve_detailed(query, limit)
        return response.results

    async def retrieve_detailed(self, query: str, limit: Optional[int] = None) -> RetrievalResponse:
        """
        Retrieve ranked results along with degradation flags.

        Raises:
            RetrievalUnavailable: If both search methods failed
        """
        start_time = time.time()
        limit = self.config.default_limit if limit is None else limit
        if limit <= 0 or not query.strip():
            return RetrievalResponse()

        try:
            await self._ensure_loaded()
        except Exception as e:
            raise RetrievalUnavailable(
                f"Retrieval indexes could not be loaded: {e}",
                semantic_error=e,
                lexical_error=e,
            )

        candidate_count = limit * self.config.candidate_multiplier
        semantic_outcome, lexical_outcome = await asyncio.gather(
            self._semantic_search(query, candidate_count),
            self._lexical_search(query, candidate_count),
            return_exceptions=True,
        )
        for outcome in (semantic_outcome, lexical_outcome):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome

        semantic_failed = isinstance(semantic_outcome, BaseException)
        lexical_failed = isinstance(lexical_outcome, BaseException)

        if semantic_failed and lexical_failed:
            logger.error(
                f"Both retrieval methods failed: semantic={semantic_outcome!r}, "
                f"lexical={lexical_outcome!r}"
            )
            raise RetrievalUnavailable(
                "Semantic and lexical search both failed",
                semantic_error=semantic_outcome,
                lexical_error=lexical_outcome,
            )

        degraded_embedding = False
        semantic_hits: List[Tuple[str, float]] = []
        lexical_hits: List[Tuple[str, float]] = []
        if semantic_failed:
            logger.warning(f"Semantic search failed, using lexical results only: {semantic_outcome}")
        else:
            semantic_hits, degraded_embedding = semantic_outcome
        if lexical_failed:
            logger.warning(f"Lexical search failed, using semantic results only: {lexical_outcome}")
        else:
            lexical_hits = lexical_outcome

        fused = weighted_fuse(
            semantic_hits,
            lexical_hits,
            semantic_weight=self.config.semantic_weight,
            lexical_weight=self.config.lexical_weight,
        )
        ranked = await self._materialize(fused)
        results = diversify(ranked, limit, self.config.per_document_cap)

        execution_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Retrieved {len(results)} chunks from {len(fused)} candidates "
            f"in {execution_ms}ms (query: {query[:50]}...)"
        )
        return RetrievalResponse(
            results=results,
            degraded_embedding=degraded_embedding,
            semantic_failed=semantic_failed,
            lexical_failed=lexical_failed,
            total_candidates=len(fused),
            execution_ms=execution_ms,
        )

    async def _semantic_search(self, query: str, limit: int) -> Tuple[List[Tuple[str, float]], bool]:
        batch = await self.embedder.embed_one(query)
        hits = self.vector_index.search(batch.vectors[0], limit, degraded=batch.degraded)
        return hits, batch.degraded

    async def _lexical_search(self, query: str, limit: int) -> List[Tuple[str, float]]:
        return self.lexical_index.search(query, limit)

    async def _materialize(self, fused: Dict[str, FusedCandidate]) -> List[RetrievalResult]:
        """Attach chunk text and document metadata, then sort."""
        if not fused:
            return []
        chunks = await self.store.get_many(list(fused))
        documents = await self.store.get_documents(sorted({c.document_id for c in chunks.values()}))

        results = []
        for chunk_id, candidate in fused.items():
            chunk = chunks.get(chunk_id)
            if chunk is None:
                logger.debug(f"Chunk {chunk_id} vanished from the store; dropping candidate")
                continue
            document = documents.get(chunk.document_id)
            results.append(RetrievalResult(
                chunk_id=chunk_id,
                score=candidate.score,
                source=candidate.source,
                chunk_text=chunk.text,
                document_id=chunk.document_id,
                document_title=document.title if document else chunk.document_id,
                ordinal=chunk.ordinal,
                updated_at=document.updated_at if document else None,
            ))
        results.sort(key=ranking_key)
        return results
