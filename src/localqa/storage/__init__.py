"""Durable storage for chunks and the document index."""

from .chunk_store import SCHEMA_VERSION, ChunkStore, IntegrityReport

__all__ = ["SCHEMA_VERSION", "ChunkStore", "IntegrityReport"]
