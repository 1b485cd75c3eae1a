"""
Custom exceptions for the localqa engine.

Propagation policy:
- Transient conditions (store contention) are retried locally and only
  escape once the retry budget is spent.
- Conditions that change result quality or runtime availability are raised
  with enough detail for the caller to act on.
"""

from typing import Optional


class LocalQAError(Exception):
    """Base exception for all localqa errors."""
    pass


class ConfigError(LocalQAError):
    """
    Error in engine configuration.

    Raised when:
    - A configuration file is missing or not valid YAML
    - A configuration value is out of its valid range
    """
    pass


class StoreError(LocalQAError):
    """Error persisting or reading chunks and the document index."""
    pass


class TransientStoreContention(StoreError):
    """
    The chunk store is locked by another live handle.

    Retried inside the store with bounded backoff; callers only ever see the
    StoreBusy subclass once retries are exhausted.
    """

    transient = True


class StoreBusy(TransientStoreContention):
    """
    Store contention persisted through every retry attempt.

    Callers should surface this as a transient "try again" condition,
    never as a fatal error.
    """

    def __init__(self, message: str, operation: str = None, attempts: int = 0):
        super().__init__(message)
        self.operation = operation
        self.attempts = attempts


class StoreCorruption(StoreError):
    """
    The store's contents violate an index invariant.

    Raised when:
    - Chunks exist that no document references (orphans)
    - A document references chunks that do not exist
    - The on-disk schema tag does not match this version
    """

    def __init__(self, message: str, chunk_ids: list = None):
        super().__init__(message)
        self.chunk_ids = chunk_ids or []


class EmbeddingUnavailable(LocalQAError):
    """
    Neither the runtime nor the pseudo-embedding fallback can embed the input.

    Only raised for input the fallback cannot handle either (non-text input).
    """
    pass


class RetrievalUnavailable(LocalQAError):
    """
    Both semantic and lexical search failed for a query.

    Callers may choose to proceed with generation without context.
    """

    def __init__(
        self,
        message: str,
        semantic_error: Optional[BaseException] = None,
        lexical_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.semantic_error = semantic_error
        self.lexical_error = lexical_error


class ProviderError(LocalQAError):
    """
    Error communicating with the inference daemon.

    Raised when:
    - The daemon is unreachable
    - A request times out
    - The daemon returns an error response or an error stream line
    """

    def __init__(self, message: str, provider: str = "ollama", status_code: int = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class RuntimeUnhealthy(LocalQAError):
    """
    The inference daemon is down and the automatic restart did not help.
    """

    def __init__(self, message: str, remedy: str = "reinstall or restart the runtime"):
        super().__init__(f"{message} ({remedy} required)")
        self.remedy = remedy


class InstallationError(LocalQAError):
    """Error detecting, downloading or running the runtime installer."""
    pass


class CorruptedDownload(InstallationError):
    """
    A downloaded installer artifact failed integrity checks.

    The artifact is rejected before anything attempts to execute it.
    """

    def __init__(
        self,
        message: str,
        size: Optional[int] = None,
        expected_size: Optional[int] = None,
    ):
        super().__init__(f"{message}; retry the download or install the runtime manually")
        self.size = size
        self.expected_size = expected_size


class MalformedStreamChunk(LocalQAError):
    """
    A streamed response line could not be decoded.

    Never propagated out of the stream decoder: the line is logged and
    skipped so the rest of the stream survives.
    """

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line
