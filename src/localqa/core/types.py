"""
Core data types for the localqa engine.

Plain dataclasses and str-valued enums, serialisable through to_dict().
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SearchSource(str, Enum):
    """Which retrieval method(s) produced a result."""
    SEMANTIC = "semantic"
    LEXICAL = "lexical"
    BOTH = "both"


class RuntimeState(str, Enum):
    """Lifecycle of the supervised inference process."""
    ABSENT = "absent"
    INSTALLING = "installing"
    STARTING = "starting"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    TERMINATED = "terminated"


@dataclass
class Document:
    """
    A cleaned source document pushed by the crawler.

    Attributes:
        document_id: Stable source identifier (e.g. page URL)
        title: Human readable title
        text: Cleaned document text
        version: Opaque version tag; a change triggers re-indexing
        updated_at: Update timestamp, used as the recency tie-break
    """
    document_id: str
    title: str
    text: str
    version: str
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "document_id": self.document_id,
            "title": self.title,
            "text": self.text,
            "version": self.version,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        """Create from dictionary."""
        updated = data.get("updated_at")
        if isinstance(updated, str):
            updated = datetime.fromisoformat(updated)
        elif updated is None:
            updated = _utcnow()
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)

        return cls(
            document_id=data["document_id"],
            title=data.get("title", data["document_id"]),
            text=data.get("text", ""),
            version=str(data.get("version", "1")),
            updated_at=updated,
        )


@dataclass
class DocumentRecord:
    """Stored index entry for a document: its metadata and ordered chunk IDs."""
    document_id: str
    title: str
    version: str
    updated_at: datetime
    chunk_ids: List[str] = field(default_factory=list)


@dataclass
class Chunk:
    """
    A bounded text segment of a document, the unit of retrieval.

    Attributes:
        chunk_id: Deterministic ID (see core.utils.generate_chunk_id)
        document_id: Parent document ID
        ordinal: Position within the parent document
        text: Chunk text
        start_offset: Character offset of the chunk in the document
        end_offset: End character offset (exclusive)
        content_sha256: Hash of text
        vector: Embedding vector (filled in by the embedder)
        tokens: Optional lexical token set
        degraded: True when vector came from the pseudo-embedding fallback
    """
    chunk_id: str
    document_id: str
    ordinal: int
    text: str
    start_offset: int = 0
    end_offset: int = 0
    content_sha256: str = ""
    vector: List[float] = field(default_factory=list)
    tokens: Optional[List[str]] = None
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "ordinal": self.ordinal,
            "text": self.text,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "content_sha256": self.content_sha256,
            "vector": self.vector,
            "tokens": self.tokens,
            "degraded": self.degraded,
        }


@dataclass
class EmbeddingBatch:
    """
    Vectors for a batch of texts.

    degraded is set when any vector came from the pseudo-embedding fallback,
    so callers can warn that semantic quality is reduced.
    """
    vectors: List[List[float]]
    degraded: bool = False
    model: Optional[str] = None


@dataclass
class RetrievalResult:
    """
    One ranked context chunk for a query. Never persisted.

    Attributes:
        chunk_id: Matched chunk
        score: Fused relevance score (higher is more relevant)
        source: Which method(s) matched the chunk
        chunk_text: Chunk text for prompt assembly
        document_id: Source document
        document_title: Source document title
        ordinal: Chunk position in its document
        updated_at: Source document update time
    """
    chunk_id: str
    score: float
    source: SearchSource
    chunk_text: str = ""
    document_id: str = ""
    document_title: str = ""
    ordinal: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the response-assembly shape."""
        return {
            "chunk_id": self.chunk_id,
            "chunk_text": self.chunk_text,
            "source_document": self.document_title or self.document_id,
            "document_id": self.document_id,
            "score": self.score,
            "source": self.source.value,
        }


@dataclass
class RetrievalResponse:
    """Ranked results plus the degradation flags the caller should surface."""
    results: List[RetrievalResult] = field(default_factory=list)
    degraded_embedding: bool = False
    semantic_failed: bool = False
    lexical_failed: bool = False
    total_candidates: int = 0
    execution_ms: int = 0


@dataclass
class ModelInfo:
    """A model the inference daemon has available locally."""
    name: str
    size: int = 0
    digest: str = ""
    family: str = ""
    parameter_size: str = ""
    quantization_level: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelInfo":
        """Create from a daemon /api/tags model entry."""
        details = data.get("details") or {}
        return cls(
            name=data.get("name", ""),
            size=int(data.get("size") or 0),
            digest=data.get("digest", ""),
            family=details.get("family", ""),
            parameter_size=details.get("parameter_size", ""),
            quantization_level=details.get("quantization_level", ""),
        )


@dataclass
class RuntimeStatus:
    """Snapshot of the supervised runtime, as exposed to response assembly."""
    installed: bool
    running: bool
    healthy: bool
    state: RuntimeState
    version: Optional[str] = None
    available_models: List[str] = field(default_factory=list)
    models_cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "installed": self.installed,
            "running": self.running,
            "healthy": self.healthy,
            "state": self.state.value,
            "version": self.version,
            "available_models": list(self.available_models),
            "models_cached": self.models_cached,
        }


@dataclass
class GenerationOptions:
    """Sampling options forwarded to the daemon."""
    temperature: Optional[float] = 0.7
    max_tokens: Optional[int] = 1024
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """Render as the daemon's "options" object."""
        options: Dict[str, Any] = {}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.max_tokens is not None:
            options["num_predict"] = self.max_tokens
        options.update(self.extra)
        return options


@dataclass
class GenerationChunk:
    """One increment of a streamed generation."""
    partial_text: str
    done: bool = False
    model: Optional[str] = None
    eval_count: Optional[int] = None
