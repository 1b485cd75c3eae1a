"""
Embedder - map text segments to fixed-length vectors.

Embeddings come from the supervised runtime in bounded batches. When the
runtime is unavailable, times out or returns vectors of the wrong size, a
deterministic pseudo-embedding is used instead and the batch is flagged
degraded so callers can warn that semantic quality is reduced.
"""

import asyncio
import logging
import math
from typing import List, Optional, Sequence

from ..core.config import EmbeddingConfig
from ..core.exceptions import EmbeddingUnavailable, LocalQAError
from ..core.types import EmbeddingBatch
from ..core.utils import stable_token_hash
from .lexical import tokenize

logger = logging.getLogger(__name__)


def pseudo_embedding(text: str, dimension: int = 768) -> List[float]:
    """
    Deterministic hash-derived embedding (signed feature hashing).

    Each lowercase token adds +1 or -1 to one of `dimension` buckets, both
    picked from the token's SHA-256, and the result is L2-normalised. Texts
    sharing words get positive cosine similarity, and the vector is the same
    in every process.

    Args:
        text: Text to embed
        dimension: Output size

    Returns:
        Unit-length vector, or all zeros if the text has no tokens
    """
    vector = [0.0] * dimension
    for token in tokenize(text):
        hashed = stable_token_hash(token)
        index = hashed % dimension
        sign = 1.0 if (hashed >> 63) & 1 else -1.0
        vector[index] += sign

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


class Embedder:
    """
    Batching embedder with a degraded-mode fallback.

    Example:
        >>> embedder = Embedder(EmbeddingConfig(), runtime=supervisor)
        >>> batch = await embedder.embed(["first chunk", "second chunk"])
        >>> if batch.degraded:
        ...     logger.warning("Using pseudo embeddings")
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        runtime=None,
        model: Optional[str] = None,
    ):
        """
        Initialize the embedder.

        Args:
            config: Embedding configuration (dimension, batch size, timeout)
            runtime: Object with `async embed(texts, model=None, timeout=None)`,
                normally the RuntimeSupervisor; None means always fall back
            model: Embedding model override
        """
        self.config = config or EmbeddingConfig()
        self.config.validate()
        self.runtime = runtime
        self.model = model

    @property
    def dimension(self) -> int:
        return self.config.dimension

    async def embed(self, texts: Sequence[str]) -> EmbeddingBatch:
        """
        Embed a batch of texts.

        Args:
            texts: Text segments, split into batches of config.batch_size

        Returns:
            EmbeddingBatch with one vector per text, degraded=True if any
            vector came from the fallback

        Raises:
            EmbeddingUnavailable: If the input is not a sequence of strings
        """
        if isinstance(texts, str) or not isinstance(texts, (list, tuple)):
            raise EmbeddingUnavailable(
                f"Expected a list of strings, got {type(texts).__name__}"
            )
        for i, text in enumerate(texts):
            if not isinstance(text, str):
                raise EmbeddingUnavailable(
                    f"Cannot embed item {i}: expected str, got {type(text).__name__}"
                )

        if not texts:
            return EmbeddingBatch(vectors=[], degraded=False, model=self.model)

        if self.runtime is not None:
            vectors: List[List[float]] = []
            batch_size = self.config.batch_size
            for start in range(0, len(texts), batch_size):
                result = await self._embed_remote(list(texts[start:start + batch_size]))
                if result is None:
                    break
                vectors.extend(result)
            else:
                return EmbeddingBatch(vectors=vectors, degraded=False, model=self.model)

        # All vectors of a batch must share one vector space, so a failure
        # part way through re-embeds everything with the fallback.
        logger.warning(
            f"Degraded embeddings: {len(texts)} texts embedded with the pseudo-embedding "
            f"fallback; semantic search quality is reduced"
        )
        return EmbeddingBatch(
            vectors=[pseudo_embedding(text, self.dimension) for text in texts],
            degraded=True,
            model=None,
        )

    async def embed_one(self, text: str) -> EmbeddingBatch:
        """Embed a single text; the batch holds exactly one vector."""
        return await self.embed([text])

    async def _embed_remote(self, batch: List[str]) -> Optional[List[List[float]]]:
        timeout = self.config.timeout_seconds
        try:
            vectors = await asyncio.wait_for(
                self.runtime.embed(batch, model=self.model, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Embedding request timed out after {timeout}s; using fallback")
            return None
        except LocalQAError as e:
            logger.warning(f"Runtime embedding unavailable ({e}); using fallback")
            return None

        if len(vectors) != len(batch):
            logger.warning(
                f"Runtime returned {len(vectors)} vectors for {len(batch)} texts; using fallback"
            )
            return None
        for vector in vectors:
            if len(vector) != self.dimension:
                logger.warning(
                    f"Runtime returned {len(vector)}-dimensional vectors, expected "
                    f"{self.dimension}; using fallback"
                )
                return None
        return [list(vector) for vector in vectors]
