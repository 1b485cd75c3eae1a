"""
Shared test fixtures and configuration for pytest.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx
import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from localqa.core.config import EmbeddingConfig, RuntimeConfig, StoreConfig  # noqa: E402
from localqa.core.types import Document  # noqa: E402
from localqa.storage.chunk_store import ChunkStore  # noqa: E402


logger = logging.getLogger(__name__)

TEST_DIMENSION = 64


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (spawn real processes)")
    config.addinivalue_line("markers", "slow: Tests that take a long time to run")


# ============================================================================
# Fake inference daemon
# ============================================================================

class LineStream(httpx.AsyncByteStream):
    """NDJSON body sent one line per chunk; counts what was sent and whether it was closed."""

    def __init__(self, daemon: "FakeDaemon", lines: List[str]):
        self.daemon = daemon
        self.lines = list(lines)

    async def __aiter__(self):
        for line in self.lines:
            self.daemon.sent_lines += 1
            yield (line + "\n").encode("utf-8")

    async def aclose(self) -> None:
        self.daemon.closed_streams += 1


class FakeDaemon:
    """
    In-process stand-in for the daemon's REST API, served through
    httpx.MockTransport.

    Attributes are mutable so tests can flip health, queue stream lines or
    make embeddings fail mid-test. Generate responses stream one line per
    chunk and count closures in closed_streams. health_check_hook, when set,
    decides health on every request instead of the healthy flag.
    """

    def __init__(self, dimension: int = TEST_DIMENSION):
        self.healthy = True
        self.health_check_hook: Optional[Callable[[], bool]] = None
        self.dimension = dimension
        self.models: List[Dict] = [
            {"name": "phi3:mini", "size": 2_200_000_000, "digest": "abc123",
             "details": {"family": "phi3", "parameter_size": "3.8B", "quantization_level": "Q4_0"}},
        ]
        self.version = "0.5.7"
        self.embed_status = 200
        self.generate_lines: List[str] = []
        self.pull_lines: List[str] = []
        self.requests: List[httpx.Request] = []
        self.sent_lines = 0
        self.closed_streams = 0

    def embedding_for(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        vector[len(text) % self.dimension] = 1.0
        return vector

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        healthy = self.health_check_hook() if self.health_check_hook is not None else self.healthy

        if path == "/api/tags":
            if not healthy:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json={"models": self.models})

        if not healthy:
            raise httpx.ConnectError("connection refused", request=request)

        if path == "/api/version":
            return httpx.Response(200, json={"version": self.version})

        if path == "/api/embed":
            if self.embed_status != 200:
                return httpx.Response(self.embed_status, text="embedding failed")
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "model": body["model"],
                "embeddings": [self.embedding_for(text) for text in body["input"]],
            })

        if path == "/api/generate":
            return httpx.Response(200, stream=LineStream(self, self.generate_lines))

        if path == "/api/pull":
            content = "\n".join(self.pull_lines) + "\n"
            return httpx.Response(200, content=content.encode("utf-8"))

        return httpx.Response(404, text="not found")


@pytest.fixture
def fake_daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def runtime_config() -> RuntimeConfig:
    """Runtime config with fast timings for tests."""
    return RuntimeConfig(
        health_timeout_seconds=0.5,
        startup_poll_attempts=3,
        startup_poll_interval_seconds=0.01,
        health_check_interval_seconds=0.05,
        request_timeout_seconds=5.0,
        termination_grace_seconds=2.0,
    )


@pytest.fixture
def ollama_client(runtime_config, fake_daemon):
    """OllamaClient wired to the fake daemon."""
    from localqa.providers.ollama_client import OllamaClient

    return OllamaClient(runtime_config, transport=httpx.MockTransport(fake_daemon.handler))


# ============================================================================
# Store and documents
# ============================================================================

@pytest.fixture
def store_config(tmp_path) -> StoreConfig:
    return StoreConfig(path=tmp_path / "localqa.db", retry_base_delay_ms=10.0, retry_max_delay_ms=50.0)


@pytest.fixture
async def chunk_store(store_config) -> ChunkStore:
    store = ChunkStore(store_config, dimension=TEST_DIMENSION)
    await store.open()
    return store


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(dimension=TEST_DIMENSION, batch_size=4, timeout_seconds=2.0)


@pytest.fixture
def make_document() -> Callable[..., Document]:
    """Factory for documents with sensible defaults."""

    def _make(
        document_id: str,
        text: str,
        title: Optional[str] = None,
        version: str = "1",
        updated_at: Optional[datetime] = None,
    ) -> Document:
        return Document(
            document_id=document_id,
            title=title or document_id,
            text=text,
            version=version,
            updated_at=updated_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

    return _make


COPPER_SENTENCE = "Copper ore can be smelted into copper ingots inside a bloomery or firepit."
HOE_TEXT = (
    "A hoe is crafted from a stick and a flint or metal head on the crafting grid. "
    "Farmers use the hoe for tilling soil before planting seeds. "
    "Each hoe has limited durability and eventually breaks."
)


@pytest.fixture
def copper_text() -> str:
    """A 200-word document about copper: a 13-word sentence repeated, trimmed to 200 words."""
    words = (COPPER_SENTENCE + " ") * 16
    return " ".join(words.split()[:200])


@pytest.fixture
def hoe_text() -> str:
    return HOE_TEXT
