"""
Lexical Index - keyword search over chunk text.

An in-memory inverted index (token -> chunk IDs) decides which chunks a
query can match; BM25 scores them. A query token with no exact posting
falls back to indexed tokens sharing a prefix of at least
MIN_PREFIX_LENGTH characters, at half weight ("smelt" finds "smelted").
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Set, Tuple

from rank_bm25 import BM25Plus

from ..core.types import Chunk


logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"\b[\w-]+\b", flags=re.UNICODE)

MIN_PREFIX_LENGTH = 4
PREFIX_MATCH_WEIGHT = 0.5


def tokenize(text: str) -> List[str]:
    """Lowercase and split on word boundaries, keeping hyphenated tokens."""
    if not text:
        return []
    return _TOKEN_PATTERN.findall(text.lower())


class LexicalIndex:
    """
    BM25 keyword index over chunks.

    Mutations mark the index dirty; the BM25 model is rebuilt lazily on the
    next search.

    Example:
        >>> index = LexicalIndex()
        >>> await index.rebuild(store)
        >>> hits = index.search("smelt copper", limit=10)
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75, delta: float = 1.0):
        self.k1 = k1
        self.b = b
        self.delta = delta
        self._tokens: Dict[str, List[str]] = {}
        self._postings: Dict[str, Set[str]] = {}
        self._bm25: Optional[BM25Plus] = None
        self._order: List[str] = []
        self._dirty = True

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._tokens

    def add(self, chunk: Chunk) -> None:
        """Index (or re-index) a chunk, using its stored tokens when present."""
        if chunk.chunk_id in self._tokens:
            self._unlink(chunk.chunk_id)
        tokens = chunk.tokens if chunk.tokens is not None else tokenize(chunk.text)
        self._tokens[chunk.chunk_id] = list(tokens)
        for token in set(tokens):
            self._postings.setdefault(token, set()).add(chunk.chunk_id)
        self._dirty = True

    def add_many(self, chunks: Iterable[Chunk]) -> None:
        for chunk in chunks:
            self.add(chunk)

    def remove(self, chunk_ids: Iterable[str]) -> None:
        """Drop chunks from the index; unknown IDs are ignored."""
        for chunk_id in chunk_ids:
            if chunk_id in self._tokens:
                self._unlink(chunk_id)
                del self._tokens[chunk_id]
                self._dirty = True

    def _unlink(self, chunk_id: str) -> None:
        for token in set(self._tokens[chunk_id]):
            posting = self._postings.get(token)
            if posting is None:
                continue
            posting.discard(chunk_id)
            if not posting:
                del self._postings[token]

    def clear(self) -> None:
        self._tokens.clear()
        self._postings.clear()
        self._bm25 = None
        self._order = []
        self._dirty = True

    async def rebuild(self, store) -> int:
        """
        Rebuild the index from every chunk in the store.

        Args:
            store: ChunkStore to scan

        Returns:
            Number of chunks indexed
        """
        self.clear()
        async for chunk in store.scan_all():
            self.add(chunk)
        logger.info(f"Rebuilt lexical index with {len(self._tokens)} chunks")
        return len(self._tokens)

    def _model(self) -> Optional[BM25Plus]:
        if self._dirty:
            self._order = sorted(self._tokens)
            corpus = [self._tokens[chunk_id] for chunk_id in self._order]
            # BM25Plus divides by the corpus size and average length
            if corpus and any(corpus):
                self._bm25 = BM25Plus(corpus, k1=self.k1, b=self.b, delta=self.delta)
            else:
                self._bm25 = None
            self._dirty = False
        return self._bm25

    def expand_query(self, query: str) -> List[Tuple[str, float]]:
        """
        Map query tokens to (indexed token, weight) pairs.

        Exact matches weigh 1.0. A token with no posting matches every
        indexed token that shares its first MIN_PREFIX_LENGTH+ characters
        (either one being a prefix of the other) at PREFIX_MATCH_WEIGHT.
        """
        terms: Dict[str, float] = {}
        for token in tokenize(query):
            if token in self._postings:
                terms[token] = max(terms.get(token, 0.0), 1.0)
                continue
            if len(token) < MIN_PREFIX_LENGTH:
                continue
            for candidate in self._postings:
                if len(candidate) < MIN_PREFIX_LENGTH:
                    continue
                if candidate.startswith(token) or token.startswith(candidate):
                    terms[candidate] = max(terms.get(candidate, 0.0), PREFIX_MATCH_WEIGHT)
        return sorted(terms.items())

    def search(self, query: str, limit: int) -> List[Tuple[str, float]]:
        """
        Score chunks against a query.

        Args:
            query: Free text query
            limit: Maximum number of hits

        Returns:
            (chunk_id, score) pairs with positive scores, best first, ties
            broken by chunk_id
        """
        if limit <= 0 or not query.strip():
            return []
        terms = self.expand_query(query)
        if not terms:
            return []
        model = self._model()
        if model is None:
            return []

        candidates: Set[str] = set()
        for term, _ in terms:
            candidates.update(self._postings.get(term, ()))

        positions = {chunk_id: i for i, chunk_id in enumerate(self._order)}
        scores: Dict[str, float] = {chunk_id: 0.0 for chunk_id in candidates}
        for term, weight in terms:
            term_scores = model.get_scores([term])
            for chunk_id in self._postings.get(term, ()):
                scores[chunk_id] += weight * float(term_scores[positions[chunk_id]])

        ranked = sorted(
            ((chunk_id, score) for chunk_id, score in scores.items() if score > 0),
            key=lambda item: (-item[1], item[0]),
        )
        return ranked[:limit]
