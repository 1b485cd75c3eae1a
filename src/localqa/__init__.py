"""
localqa - local-first question answering

Retrieves relevant passages from a locally indexed knowledge corpus and
delegates generation to a supervised local inference daemon.

Key components:
- core/: Types, exceptions, configuration and logging utilities
- storage/: Durable SQLite chunk store with contention retry
- retrieval/: Chunker, embedder, lexical and semantic search, hybrid fusion, indexer
- runtime/: Inference daemon supervisor, installer and stream decoding
- providers/: HTTP client for the daemon's REST API
- prompts/: Prompt assembly for grounded answers
- cli/: The `localqa` command
"""

__version__ = "0.1.0"
