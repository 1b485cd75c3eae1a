"""
Core Utilities - Shared hashing helpers.

Used for chunk identity, content integrity and the pseudo-embedding fallback.
"""

import hashlib


def compute_content_hash(content: str) -> str:
    """
    Compute SHA256 hash of text content.

    Args:
        content: Text content to hash

    Returns:
        Hex-encoded SHA256 hash (64 characters)

    Example:
        >>> compute_content_hash("Hello, World!")
        'dffd6021bb2bd5b0af676290809ec3a53191dd81c7f70a4b28688a362182986f'
    """
    return hashlib.sha256(content.encode()).hexdigest()


def generate_chunk_id(
    document_id: str,
    ordinal: int,
    content_sha256: str,
    policy_version: str,
) -> str:
    """
    Generate a deterministic chunk ID.

    The ID only changes when the chunk's text, position or chunking policy
    changes, so re-indexing unchanged text reproduces the same IDs.

    Args:
        document_id: Parent document identifier
        ordinal: Position of the chunk within the document
        content_sha256: Hash of the chunk text
        policy_version: Chunking policy version

    Returns:
        Hex-encoded SHA256 chunk ID
    """
    key = f"{document_id}|{ordinal}|{content_sha256}|{policy_version}"
    return hashlib.sha256(key.encode()).hexdigest()


def stable_token_hash(token: str) -> int:
    """Interpreter-independent integer hash of a token (Python's hash() is salted)."""
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")
