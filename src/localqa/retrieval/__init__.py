"""
Retrieval engine: chunking, embedding, lexical and semantic search, fusion.
"""

from .chunker import Chunker, chunk_text
from .embedder import Embedder, pseudo_embedding
from .hybrid import HybridRetriever, diversify, normalize_scores, weighted_fuse
from .indexer import DocumentManifest, Indexer, IndexingReport, load_manifest
from .lexical import LexicalIndex, tokenize
from .search import VectorIndex, cosine_similarity

__all__ = [
    "Chunker",
    "chunk_text",
    "Embedder",
    "pseudo_embedding",
    "HybridRetriever",
    "diversify",
    "normalize_scores",
    "weighted_fuse",
    "DocumentManifest",
    "Indexer",
    "IndexingReport",
    "load_manifest",
    "LexicalIndex",
    "tokenize",
    "VectorIndex",
    "cosine_similarity",
]
