"""
Core subpackage for the localqa engine.

Contains types, exceptions, configuration and logging utilities.
"""

from .types import (
    Chunk,
    Document,
    DocumentRecord,
    EmbeddingBatch,
    GenerationChunk,
    GenerationOptions,
    ModelInfo,
    RetrievalResponse,
    RetrievalResult,
    RuntimeState,
    RuntimeStatus,
    SearchSource,
)
from .exceptions import (
    ConfigError,
    CorruptedDownload,
    EmbeddingUnavailable,
    InstallationError,
    LocalQAError,
    MalformedStreamChunk,
    ProviderError,
    RetrievalUnavailable,
    RuntimeUnhealthy,
    StoreBusy,
    StoreCorruption,
    StoreError,
    TransientStoreContention,
)

__all__ = [
    # Types
    "Chunk",
    "Document",
    "DocumentRecord",
    "EmbeddingBatch",
    "GenerationChunk",
    "GenerationOptions",
    "ModelInfo",
    "RetrievalResponse",
    "RetrievalResult",
    "RuntimeState",
    "RuntimeStatus",
    "SearchSource",
    # Exceptions
    "ConfigError",
    "CorruptedDownload",
    "EmbeddingUnavailable",
    "InstallationError",
    "LocalQAError",
    "MalformedStreamChunk",
    "ProviderError",
    "RetrievalUnavailable",
    "RuntimeUnhealthy",
    "StoreBusy",
    "StoreCorruption",
    "StoreError",
    "TransientStoreContention",
]
