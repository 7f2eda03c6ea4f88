"""Embedding service access with caching and request coalescing.

Usage:
    async with OpenAIEmbeddingClient(api_key="...") as client:
        gateway = EmbeddingGateway(client)
        vector = await gateway.embed("How have I been sleeping?")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from .caching import CacheStore
from .config import EmbeddingConfig, get_embedding_config
from .errors import EmbeddingServiceError, InvalidInputError

logger = logging.getLogger(__name__)

EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIM = 1536
MAX_INPUT_CHARS = 8000


class OpenAIEmbeddingClient:
    """Async client for an OpenAI-compatible ``POST /embeddings`` endpoint.

    Attributes:
        model: Model name (default: text-embedding-3-small)
        dimension: Expected embedding dimension (default: 1536)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        dimension: Optional[int] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        config: Optional[EmbeddingConfig] = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: API key (falls back to configuration / OPENAI_API_KEY)
            base_url: Service base URL
            model: Model name
            dimension: Expected output dimension
            timeout: Request timeout in seconds
            http_client: Pre-built AsyncClient (tests pass one with a MockTransport)
            config: Embedding configuration (default: global config)
        """
        cfg = config or get_embedding_config()
        self.api_key = api_key if api_key is not None else cfg.api_key
        self.model = model or cfg.model
        self.dimension = dimension or cfg.dimension
        self.timeout = timeout or cfg.timeout
        self.embed_url = f"{(base_url or cfg.url).rstrip('/')}/embeddings"
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "OpenAIEmbeddingClient":
        self._ensure_client()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def embed(self, text: str) -> List[float]:
        """Embed one text. Raises EmbeddingServiceError on any failure."""
        client = self._ensure_client()
        payload = {"model": self.model, "input": text, "encoding_format": "float"}
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await client.post(self.embed_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise EmbeddingServiceError(f"Embedding request failed: {e}") from e

        if response.status_code != 200:
            raise EmbeddingServiceError(
                "Embedding service returned an error",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            embedding = response.json()["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise EmbeddingServiceError(
                "Malformed embedding response", status_code=response.status_code, body=response.text
            ) from e

        if len(embedding) != self.dimension:
            logger.warning(f"Unexpected embedding dim: {len(embedding)} vs {self.dimension}")
        return [float(x) for x in embedding]


class EmbeddingGateway:
    """Front door to the embedding service.

    Lookups go embedding cache -> in-flight table -> network. Identical
    normalized texts requested concurrently share one network call. Failures
    are not retried here; every coalesced waiter sees the same error.
    """

    def __init__(
        self,
        client: Any,
        cache: Optional[CacheStore] = None,
        max_input_length: int = MAX_INPUT_CHARS,
    ) -> None:
        cfg = get_embedding_config()
        self._client = client
        self._cache = cache or CacheStore(
            max_size=cfg.cache_size, default_ttl_seconds=cfg.cache_ttl_seconds
        )
        self._max_input_length = max_input_length
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

        self._network_calls = 0
        self._coalesced = 0

    @staticmethod
    def normalize(text: str) -> str:
        return text.strip().lower()

    async def embed(self, text: str) -> List[float]:
        if text is None or not text.strip():
            raise InvalidInputError("Cannot embed empty text")

        key = self.normalize(text)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async with self._lock:
            future = self._in_flight.get(key)
            is_owner = future is None
            if is_owner:
                # Another request may have finished between the cache check and the lock
                cached = self._cache.get(key)
                if cached is not None:
                    return cached
                future = asyncio.get_running_loop().create_future()
                future.add_done_callback(_consume_exception)
                self._in_flight[key] = future

        if not is_owner:
            self._coalesced += 1
            logger.debug(f"Coalescing embedding request for '{key[:40]}'")
            return list(await asyncio.shield(future))

        try:
            self._network_calls += 1
            vector = await self._client.embed(text.strip()[: self._max_input_length])
        except asyncio.CancelledError:
            self._settle(key, future, error=EmbeddingServiceError("Embedding request was cancelled"))
            raise
        except Exception as e:
            logger.error(f"Embedding failed for '{key[:40]}': {e}")
            self._settle(key, future, error=e)
            raise

        self._cache.set(key, vector)
        self._settle(key, future, vector=vector)
        return list(vector)

    def _settle(
        self,
        key: str,
        future: asyncio.Future,
        vector: Optional[List[float]] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        # No await between removing the entry and resolving the future,
        # so a cancelled owner can never leave waiters on an unresolved future.
        self._in_flight.pop(key, None)
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(vector)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_metrics(self) -> Dict[str, Any]:
        metrics = dict(self._cache.get_metrics())
        metrics.update({"network_calls": self._network_calls, "coalesced": self._coalesced})
        return metrics


def _consume_exception(future: asyncio.Future) -> None:
    # Marks the exception retrieved when no coalesced waiter was attached
    if not future.cancelled():
        future.exception()
