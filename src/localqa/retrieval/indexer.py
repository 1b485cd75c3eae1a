"""
Indexer - chunk, embed and store documents pushed by the crawler.

Implements:
- Document manifest parsing
- Version-based skipping: only documents whose version changed are
  re-chunked and re-embedded, plus unchanged documents still holding
  fallback embeddings once a runtime can embed them
- Atomic per-document replacement in the chunk store
- Keeping the retriever's in-memory indexes in step with the store
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..core.config import ChunkingConfig
from ..core.exceptions import LocalQAError, StoreBusy
from ..core.logging import CorrelationContext
from ..core.types import Document
from .chunker import Chunker
from .embedder import Embedder
from .lexical import tokenize


logger = logging.getLogger(__name__)


@dataclass
class DocumentManifest:
    """
    Manifest of documents to index.

    Format:
    {
        "version": "1.0",
        "documents": [
            {
                "document_id": "https://wiki.example/Copper_Ore",
                "title": "Copper Ore",
                "text": "...",
                "version": "rev-42",
                "updated_at": "2024-05-01T12:00:00+00:00"
            }
        ]
    }
    """
    version: str
    documents: List[Document]

    @classmethod
    def from_file(cls, path: str) -> "DocumentManifest":
        """Load manifest from file."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentManifest":
        """
        Create from dictionary.

        Raises:
            ValueError: If the manifest shape is invalid
        """
        if not isinstance(data, dict):
            raise ValueError("Manifest must be a JSON object")
        entries = data.get("documents", [])
        if not isinstance(entries, list):
            raise ValueError("Manifest 'documents' must be a list")

        documents = []
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict) or not entry.get("document_id"):
                raise ValueError(f"Manifest document {i} has no document_id")
            documents.append(Document.from_dict(entry))

        return cls(version=str(data.get("version", "1.0")), documents=documents)


@dataclass
class IndexingReport:
    """Counts from one indexing run."""
    run_id: str
    documents_processed: int = 0
    documents_skipped: int = 0
    chunks_written: int = 0
    chunks_removed: int = 0
    degraded_embeddings: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "documents_processed": self.documents_processed,
            "documents_skipped": self.documents_skipped,
            "chunks_written": self.chunks_written,
            "chunks_removed": self.chunks_removed,
            "degraded_embeddings": self.degraded_embeddings,
            "errors": list(self.errors),
            "duration_seconds": self.duration_seconds,
        }


class Indexer:
    """
    Indexes documents into chunks with embeddings.

    Workflow per document:
    1. Skip it if the stored version matches and its vectors are model-made
    2. Chunk into retrieval units
    3. Embed the chunk texts
    4. Replace the document's chunks in the store in one transaction
    5. Update the retriever's in-memory indexes
    """

    def __init__(
        self,
        store,
        embedder: Embedder,
        chunking: Optional[ChunkingConfig] = None,
        retriever=None,
    ):
        """
        Initialize the indexer.

        Args:
            store: ChunkStore to write to
            embedder: Embedder for chunk vectors
            chunking: Chunking policy
            retriever: HybridRetriever whose indexes should follow writes
        """
        self.store = store
        self.embedder = embedder
        self.chunker = Chunker(chunking or ChunkingConfig())
        self.retriever = retriever

    async def index_document(self, document: Document, force: bool = False) -> Dict[str, Any]:
        """
        Index a single document.

        Args:
            document: Document to index
            force: Re-index even when the stored version matches

        Returns:
            Per-document result with skipped flag and counts
        """
        with CorrelationContext(document_id=document.document_id):
            existing = await self.store.get_document(document.document_id)
            reembedding = False
            if not force and existing is not None and existing.version == document.version:
                if not await self._needs_reembedding(document.document_id):
                    logger.debug(f"Document {document.document_id} unchanged at version {document.version}")
                    return {"skipped": True, "chunks_written": 0, "chunks_removed": 0, "degraded": False}
                reembedding = True

            chunks = self.chunker.chunk(document)
            batch = await self.embedder.embed([chunk.text for chunk in chunks])
            if reembedding and batch.degraded:
                logger.debug(f"Document {document.document_id} still has only fallback embeddings")
                return {"skipped": True, "chunks_written": 0, "chunks_removed": 0, "degraded": False}
            for chunk, vector in zip(chunks, batch.vectors):
                chunk.vector = vector
                chunk.tokens = tokenize(chunk.text)
                chunk.degraded = batch.degraded

            written, removed = await self.store.put_document(document, chunks)
            if self.retriever is not None:
                self.retriever.apply_update(chunks, removed)

            logger.info(
                f"Indexed {document.document_id} v{document.version}: "
                f"{written} chunks, {len(removed)} removed"
                + (" (degraded embeddings)" if batch.degraded else "")
            )
            return {
                "skipped": False,
                "chunks_written": written,
                "chunks_removed": len(removed),
                "degraded": batch.degraded,
            }

    async def _needs_reembedding(self, document_id: str) -> bool:
        """An unchanged document is redone when it holds fallback vectors and a runtime may now embed it."""
        if self.embedder.runtime is None:
            return False
        stored = await self.store.get_document_chunks(document_id)
        return any(chunk.degraded for chunk in stored)

    async def index_documents(
        self,
        documents: Iterable[Document],
        force: bool = False,
    ) -> IndexingReport:
        """
        Index a sequence of documents, continuing past per-document failures.

        Raises:
            StoreBusy: If the store stays locked; the run stops so the caller
                can retry it as a whole
        """
        report = IndexingReport(run_id=str(uuid.uuid4()))
        start_time = time.time()

        with CorrelationContext(run_id=report.run_id):
            logger.info(f"Starting indexing run {report.run_id}")
            for document in documents:
                try:
                    result = await self.index_document(document, force=force)
                except StoreBusy:
                    raise
                except LocalQAError as e:
                    logger.error(f"Error indexing document {document.document_id}: {e}")
                    report.errors.append({"document_id": document.document_id, "error": str(e)})
                    continue

                if result["skipped"]:
                    report.documents_skipped += 1
                    continue
                report.documents_processed += 1
                report.chunks_written += result["chunks_written"]
                report.chunks_removed += result["chunks_removed"]
                if result["degraded"]:
                    report.degraded_embeddings += result["chunks_written"]

            report.duration_seconds = round(time.time() - start_time, 2)
            logger.info(
                f"Indexing run {report.run_id} complete: "
                f"{report.documents_processed} processed, "
                f"{report.documents_skipped} skipped, "
                f"{report.chunks_written} chunks, "
                f"{len(report.errors)} errors"
            )
        return report

    async def index_manifest(self, manifest: DocumentManifest, force: bool = False) -> IndexingReport:
        """Index every document in a manifest."""
        logger.info(f"Processing manifest v{manifest.version} with {len(manifest.documents)} documents")
        return await self.index_documents(manifest.documents, force=force)

    async def remove_document(self, document_id: str) -> List[str]:
        """Delete a document from the store and the in-memory indexes."""
        removed = await self.store.delete_by_document(document_id)
        if self.retriever is not None:
            self.retriever.apply_update([], removed)
        return removed


def load_manifest(path: Path) -> DocumentManifest:
    """Read a manifest file, raising ValueError for unreadable or invalid JSON."""
    try:
        return DocumentManifest.from_file(str(path))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in manifest {path}: {e}")
