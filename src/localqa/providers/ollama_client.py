"""
Ollama provider client.

Thin async HTTP client for the inference daemon's REST API on the local
loopback interface. Streaming endpoints are exposed as raw NDJSON line
iterators; decoding them into events is runtime.stream's job.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..core.config import RuntimeConfig
from ..core.exceptions import ProviderError
from ..core.types import GenerationOptions, ModelInfo


logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResponse:
    """
    Response from the embeddings API.

    Attributes:
        success: Whether the request succeeded
        embeddings: List of embedding vectors (each is list of floats)
        model: Model that generated the embeddings
        raw_response: Full response JSON
        total_duration: Total time in nanoseconds
        load_duration: Model load time in nanoseconds
    """
    success: bool
    embeddings: List[List[float]] = field(default_factory=list)
    model: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None
    total_duration: Optional[int] = None
    load_duration: Optional[int] = None


class OllamaClient:
    """
    Async HTTP client for the Ollama daemon.

    Example:
        >>> client = OllamaClient(RuntimeConfig())
        >>> if await client.health_check():
        ...     response = await client.embed(["Hello world"])
        >>> await client.aclose()
    """

    def __init__(
        self,
        config: RuntimeConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the Ollama client.

        Args:
            config: Runtime configuration (endpoint, timeouts, models)
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.model = config.model
        self.embed_model = config.embed_model
        self.timeout = config.request_timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            transport=transport,
        )

        logger.debug(
            f"Initialized OllamaClient: base_url={self.base_url}, "
            f"model={self.model}, embed_model={self.embed_model}"
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def health_check(self, timeout: Optional[float] = None) -> bool:
        """
        Liveness check: the daemon answers /api/tags with 200.

        Args:
            timeout: Check timeout in seconds (defaults to the health timeout)

        Returns:
            True if the daemon responded, False otherwise
        """
        check_timeout = timeout if timeout is not None else self.config.health_timeout_seconds
        try:
            response = await self._client.get("/api/tags", timeout=check_timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        if response.status_code != 200:
            logger.debug(f"Health check failed with status {response.status_code}")
            return False
        return True

    async def get_version(self) -> str:
        """Get the daemon version string."""
        data = await self._get_json("/api/version")
        return str(data.get("version", "unknown"))

    async def list_models(self) -> List[ModelInfo]:
        """
        List locally available models.

        Returns:
            ModelInfo entries; malformed entries are skipped

        Raises:
            ProviderError: If the daemon is unreachable or the payload is invalid
        """
        data = await self._get_json("/api/tags")
        models = data.get("models")
        if not isinstance(models, list):
            raise ProviderError("Invalid models response from Ollama")

        model_list = []
        for entry in models:
            if not isinstance(entry, dict) or not entry.get("name"):
                logger.debug(f"Skipping malformed model entry: {entry!r}")
                continue
            model_list.append(ModelInfo.from_dict(entry))
        return model_list

    async def embed(
        self,
        texts: List[str],
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> EmbeddingResponse:
        """
        Generate embeddings for a list of texts using /api/embed.

        Args:
            texts: List of texts to embed
            model: Embedding model to use (defaults to the configured one)
            timeout: Request timeout in seconds

        Returns:
            EmbeddingResponse with one vector per input text

        Raises:
            ProviderError: If the request fails or the response is malformed
        """
        embed_model = model or self.embed_model
        payload = {"model": embed_model, "input": texts}

        logger.debug(f"Making embedding request with model {embed_model} for {len(texts)} texts")
        result = await self._post_json("/api/embed", payload, timeout=timeout)

        embeddings = result.get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise ProviderError(
                f"Ollama embed returned {len(embeddings) if isinstance(embeddings, list) else 'no'} "
                f"vectors for {len(texts)} inputs"
            )

        return EmbeddingResponse(
            success=True,
            embeddings=[_parse_vector(vector, i) for i, vector in enumerate(embeddings)],
            model=result.get("model", embed_model),
            raw_response=result,
            total_duration=result.get("total_duration"),
            load_duration=result.get("load_duration"),
        )

    def build_generate_payload(
        self,
        prompt: str,
        model: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        system_prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the /api/generate request body."""
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "prompt": prompt,
            "stream": True,
        }
        if system_prompt:
            payload["system"] = system_prompt
        rendered = (options or GenerationOptions()).to_payload()
        if rendered:
            payload["options"] = rendered
        return payload

    async def stream_lines(
        self,
        path: str,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """
        POST a streaming request and yield raw response lines.

        Closing the iterator (aclose(), or breaking out of `async for`) closes
        the underlying response, so an abandoned stream leaves nothing
        running.

        Raises:
            ProviderError: If the connection fails or the status is not 2xx
        """
        request_timeout = timeout if timeout is not None else self.timeout
        try:
            async with self._client.stream(
                "POST", path, json=payload, timeout=request_timeout
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise ProviderError(
                        f"Ollama API error: {response.status_code} - {body}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    yield line
        except httpx.HTTPError as e:
            logger.error(f"Stream from {path} failed: {e}")
            raise ProviderError(f"Failed to stream from Ollama at {self.base_url}: {e}")

    async def _get_json(self, path: str) -> Dict[str, Any]:
        try:
            response = await self._client.get(path)
        except httpx.HTTPError as e:
            logger.error(f"Failed to connect to Ollama: {e}")
            raise ProviderError(f"Failed to connect to Ollama at {self.base_url}: {e}")
        return self._decode(response)

    async def _post_json(
        self,
        path: str,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        try:
            if timeout is not None:
                response = await self._client.post(path, json=payload, timeout=timeout)
            else:
                response = await self._client.post(path, json=payload)
        except httpx.TimeoutException as e:
            logger.warning(f"Request to {path} timed out: {e}")
            raise ProviderError(f"Request to Ollama {path} timed out: {e}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to connect to Ollama: {e}")
            raise ProviderError(f"Failed to connect to Ollama at {self.base_url}: {e}")
        return self._decode(response)

    def _decode(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code >= 400:
            logger.error(f"HTTP error from Ollama: {response.status_code} - {response.text}")
            raise ProviderError(
                f"Ollama API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        try:
            result = response.json()
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON response from Ollama: {e}")
            raise ProviderError(f"Invalid JSON response from Ollama: {e}")
        if not isinstance(result, dict):
            raise ProviderError("Unexpected JSON payload from Ollama")
        return result


def _parse_vector(vector: Any, index: int) -> List[float]:
    """Coerce one embedding from the daemon into a list of floats."""
    if not isinstance(vector, list) or not vector:
        raise ProviderError(f"Ollama embed returned an invalid vector at position {index}")
    try:
        return [float(v) for v in vector]
    except (TypeError, ValueError) as e:
        raise ProviderError(f"Ollama embed returned a non-numeric vector at position {index}: {e}")
