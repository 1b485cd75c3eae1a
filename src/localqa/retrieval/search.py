"""
Semantic Search - cosine similarity over stored chunk vectors.

Implements:
- Cosine similarity scoring
- Top-K retrieval by linear scan
- Deterministic ordering with tie-breaks

Model vectors and pseudo-embedding vectors live in different spaces, so a
query is only compared against chunks embedded the same way.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from ..core.types import Chunk

logger = logging.getLogger(__name__)


def cosine_similarity(vec_a: List[float], vec_b: List[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Args:
        vec_a: First vector
        vec_b: Second vector

    Returns:
        Cosine similarity score between -1 and 1

    Raises:
        ValueError: If vectors have different dimensions or are empty
    """
    if not vec_a or not vec_b:
        raise ValueError("Vectors cannot be empty")

    if len(vec_a) != len(vec_b):
        raise ValueError(f"Vector dimensions must match: {len(vec_a)} != {len(vec_b)}")

    dot_product = sum(a * b for a, b in zip(vec_a, vec_b))
    magnitude_a = math.sqrt(sum(a * a for a in vec_a))
    magnitude_b = math.sqrt(sum(b * b for b in vec_b))

    # Zero vectors (e.g. pseudo-embedding of punctuation-only text)
    if magnitude_a == 0 or magnitude_b == 0:
        return 0.0

    return dot_product / (magnitude_a * magnitude_b)


@dataclass
class _Entry:
    vector: List[float]
    degraded: bool


class VectorIndex:
    """
    In-memory copy of chunk vectors for linear-scan semantic search.

    Example:
        >>> index = VectorIndex()
        >>> await index.rebuild(store)
        >>> hits = index.search(query_vector, limit=10, degraded=False)
    """

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._entries

    def add(self, chunk: Chunk) -> None:
        if not chunk.vector:
            logger.warning(f"Chunk {chunk.chunk_id} has no vector; not searchable semantically")
            return
        self._entries[chunk.chunk_id] = _Entry(vector=list(chunk.vector), degraded=chunk.degraded)

    def add_many(self, chunks: Iterable[Chunk]) -> None:
        for chunk in chunks:
            self.add(chunk)

    def remove(self, chunk_ids: Iterable[str]) -> None:
        for chunk_id in chunk_ids:
            self._entries.pop(chunk_id, None)

    def clear(self) -> None:
        self._entries.clear()

    async def rebuild(self, store) -> int:
        """Reload every vector from the store."""
        self.clear()
        async for chunk in store.scan_all():
            self.add(chunk)
        logger.info(f"Rebuilt vector index with {len(self._entries)} chunks")
        return len(self._entries)

    def search(
        self,
        query_vector: List[float],
        limit: int,
        degraded: bool = False,
    ) -> List[Tuple[str, float]]:
        """
        Retrieve the top-K chunks most similar to a query vector.

        Args:
            query_vector: Embedding of the query
            limit: Number of results to return
            degraded: Whether query_vector is a pseudo-embedding; only chunks
                embedded the same way are compared

        Returns:
            (chunk_id, score) pairs sorted by score descending, then chunk_id
        """
        if limit <= 0:
            return []

        scored = []
        skipped = 0
        for chunk_id, entry in self._entries.items():
            if entry.degraded != degraded:
                skipped += 1
                continue
            try:
                score = cosine_similarity(query_vector, entry.vector)
            except ValueError as e:
                logger.warning(f"Skipping chunk {chunk_id}: {e}")
                continue
            scored.append((chunk_id, score))

        if skipped:
            logger.debug(f"Skipped {skipped} chunks embedded in a different vector space")

        scored.sort(key=lambda item: (-item[1], item[0]))
        return scored[:limit]
