"""Clients for the supervised inference daemon."""

from .ollama_client import EmbeddingResponse, OllamaClient

__all__ = ["EmbeddingResponse", "OllamaClient"]
