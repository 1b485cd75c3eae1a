"""
QA engine - the request path from question to streamed answer.

Wires the chunk store, embedder, hybrid retriever, indexer and runtime
supervisor together and exposes the operations the response-assembly layer
calls: retrieve, ensure_runtime_ready, generate, embed and answer.
"""

import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from .core.config import AppConfig
from .core.exceptions import RetrievalUnavailable
from .core.logging import CorrelationContext
from .core.types import (
    Document,
    EmbeddingBatch,
    GenerationChunk,
    GenerationOptions,
    RetrievalResponse,
    RuntimeStatus,
)
from .prompts import SYSTEM_PROMPT, ConversationMessage, build_prompt
from .retrieval.embedder import Embedder
from .retrieval.hybrid import HybridRetriever
from .retrieval.indexer import DocumentManifest, Indexer, IndexingReport
from .runtime.supervisor import RuntimeSupervisor
from .storage.chunk_store import ChunkStore


logger = logging.getLogger(__name__)


@dataclass
class PreparedAnswer:
    """Everything needed to generate an answer, plus what the caller should surface."""
    query_id: str
    prompt: str
    retrieval: RetrievalResponse
    retrieval_failed: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def sources(self) -> List[Dict[str, Any]]:
        return [result.to_dict() for result in self.retrieval.results]


class QAEngine:
    """
    Facade over retrieval and the inference runtime.

    Example:
        >>> engine = QAEngine(AppConfig.load())
        >>> await engine.open()
        >>> async for chunk in engine.answer("how to smelt copper"):
        ...     print(chunk.partial_text, end="")
        >>> await engine.close()
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        supervisor: Optional[RuntimeSupervisor] = None,
        store: Optional[ChunkStore] = None,
        use_runtime_embeddings: bool = True,
    ):
        """
        Initialize the engine.

        Args:
            config: Application configuration
            supervisor: Runtime supervisor (created from config if omitted)
            store: Chunk store (created from config if omitted)
            use_runtime_embeddings: Embed through the runtime; False always
                uses the pseudo-embedding fallback
        """
        self.config = config or AppConfig()
        self.config.validate()
        self.supervisor = supervisor or RuntimeSupervisor(self.config.runtime)
        self.store = store or ChunkStore(self.config.store, dimension=self.config.embedding.dimension)
        self.embedder = Embedder(
            self.config.embedding,
            runtime=self.supervisor if use_runtime_embeddings else None,
            model=self.config.runtime.embed_model,
        )
        self.retriever = HybridRetriever(self.store, self.embedder, self.config.retrieval)
        self.indexer = Indexer(
            self.store,
            self.embedder,
            chunking=self.config.chunking,
            retriever=self.retriever,
        )

    async def open(self) -> None:
        """Open the store and load the retrieval indexes."""
        await self.store.open()
        await self.retriever.refresh()

    async def close(self) -> None:
        """Shut the runtime down; no child process outlives the engine."""
        await self.supervisor.shutdown()

    async def __aenter__(self) -> "QAEngine":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Indexing path
    # ------------------------------------------------------------------

    async def index(self, documents: Iterable[Document], force: bool = False) -> IndexingReport:
        """Index documents; unchanged versions are skipped."""
        return await self.indexer.index_documents(documents, force=force)

    async def index_manifest(self, manifest: DocumentManifest, force: bool = False) -> IndexingReport:
        return await self.indexer.index_manifest(manifest, force=force)

    # ------------------------------------------------------------------
    # Operations exposed to response assembly
    # ------------------------------------------------------------------

    async def retrieve(self, query: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Ranked context for a query as {chunk_text, source_document, score, ...}.

        Raises:
            RetrievalUnavailable: If both search methods failed
        """
        results = await self.retriever.retrieve(query, limit)
        return [result.to_dict() for result in results]

    async def ensure_runtime_ready(self) -> RuntimeStatus:
        """Start the runtime if needed and report installed/running/healthy/models."""
        return await self.supervisor.ensure_runtime_ready()

    def runtime_status(self) -> RuntimeStatus:
        return self.supervisor.status()

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
    ) -> AsyncIterator[GenerationChunk]:
        """Stream a generation from the runtime."""
        async with aclosing(self.supervisor.generate(prompt, model=model, options=options)) as stream:
            async for chunk in stream:
                yield chunk

    async def embed(self, texts: Sequence[str]) -> EmbeddingBatch:
        """Embed texts; the batch's degraded flag marks fallback vectors."""
        return await self.embedder.embed(list(texts))

    # ------------------------------------------------------------------
    # Full request path
    # ------------------------------------------------------------------

    async def prepare_answer(
        self,
        query: str,
        history: Optional[Sequence[ConversationMessage]] = None,
        limit: Optional[int] = None,
    ) -> PreparedAnswer:
        """
        Retrieve context and build the prompt for a question.

        When both retrieval methods fail the prompt is built without context
        and the failure is reported in warnings.
        """
        query_id = str(uuid.uuid4())
        with CorrelationContext(query_id=query_id):
            retrieval_failed = False
            warnings: List[str] = []
            try:
                retrieval = await self.retriever.retrieve_detailed(query, limit)
            except RetrievalUnavailable as e:
                logger.error(f"Retrieval unavailable, answering without context: {e}")
                retrieval = RetrievalResponse()
                retrieval_failed = True
                warnings.append("Knowledge base search is unavailable; answering without context.")

            if retrieval.degraded_embedding:
                warnings.append("Semantic search is running on fallback embeddings; results may be less relevant.")
            if retrieval.semantic_failed:
                warnings.append("Semantic search failed; results come from keyword search only.")
            if retrieval.lexical_failed:
                warnings.append("Keyword search failed; results come from semantic search only.")

            prompt = build_prompt(query, retrieval.results, history)
            return PreparedAnswer(
                query_id=query_id,
                prompt=prompt,
                retrieval=retrieval,
                retrieval_failed=retrieval_failed,
                warnings=warnings,
            )

    async def answer(
        self,
        query: str,
        history: Optional[Sequence[ConversationMessage]] = None,
        limit: Optional[int] = None,
        options: Optional[GenerationOptions] = None,
    ) -> AsyncIterator[GenerationChunk]:
        """
        Answer a question: retrieve, build the prompt, stream the generation.

        The runtime is started before retrieval so the query is embedded in
        the same vector space as the indexed chunks.

        Raises:
            InstallationError: If the runtime had to be installed and that failed
            RuntimeUnhealthy: If the runtime cannot be brought up
        """
        await self.supervisor.start()
        prepared = await self.prepare_answer(query, history, limit)
        async with aclosing(self.stream_prepared(prepared, options=options)) as stream:
            async for chunk in stream:
                yield chunk

    async def stream_prepared(
        self,
        prepared: PreparedAnswer,
        options: Optional[GenerationOptions] = None,
    ) -> AsyncIterator[GenerationChunk]:
        """Stream the generation for an already prepared answer."""
        if options is None:
            options = GenerationOptions()
        await self.supervisor.start()
        logger.debug(f"Generating answer for query {prepared.query_id}")
        stream = self.supervisor.generate(prepared.prompt, options=options, system_prompt=SYSTEM_PROMPT)
        async with aclosing(stream):
            async for chunk in stream:
                yield chunk
