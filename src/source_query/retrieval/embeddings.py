"""Embedding providers and the batching/retrying embedding client."""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

import httpx
import numpy as np
import structlog

from source_query.config import Settings, get_settings
from source_query.errors import EmbeddingError, EmbeddingRateLimited
from source_query.observability import EMBEDDING_RETRIES

logger = structlog.get_logger()


class Embedder(ABC):
    """Provider interface: turn texts into fixed-length vectors."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Identifier of the embedding model."""
        pass

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed texts in one provider call.

        Raises EmbeddingRateLimited when the provider asks to slow down.
        """
        pass


class SentenceTransformerEmbedder(Embedder):
    """
    Local embeddings using sentence-transformers.

    Vectors are normalized so inner product equals cosine similarity.
    """

    def __init__(self, model_name: str | None = None, batch_size: int = 32):
        settings = get_settings()
        self._model_name = model_name or settings.embedding_model
        self.batch_size = batch_size
        self._model = None

    @property
    def model_name(self) -> str:
        return self._model_name

    def _get_model(self):
        """Lazy load the embedding model."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(self._model_name)
        return self._model

    def _encode(self, texts: list[str]) -> list[list[float]]:
        embeddings = self._get_model().encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(embeddings, dtype="float32").tolist()

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        # encode() is CPU bound; keep the event loop free
        return await asyncio.to_thread(self._encode, texts)


class HttpEmbedder(Embedder):
    """Embeddings from an OpenAI-compatible `/embeddings` endpoint."""

    def __init__(
        self,
        model_name: str | None = None,
        api_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self._model_name = model_name or settings.embedding_model
        self.api_url = (api_url or settings.embedding_api_url).rstrip("/")
        self.api_key = api_key or settings.embedding_api_key
        self.timeout = timeout
        self._transport = transport

    @property
    def model_name(self) -> str:
        return self._model_name

    def _get_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.api_url}/embeddings",
                    headers=self._get_headers(),
                    json={"model": self._model_name, "input": texts},
                )
            except httpx.HTTPError as e:
                raise EmbeddingError(f"Failed to fetch embedding: {e}") from e

        if response.status_code == 429:
            raise EmbeddingRateLimited("Embedding provider rate limit exceeded")
        if response.status_code >= 400:
            raise EmbeddingError(
                f"Failed to fetch embedding: provider returned HTTP {response.status_code}"
            )

        data = response.json().get("data") or []
        data = sorted(data, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in data]


class EmbeddingClient:
    """
    Batch texts through an Embedder.

    Rate-limit responses are retried with doubling backoff; any other
    failure is raised immediately. Every vector must have the same length.
    """

    def __init__(
        self,
        embedder: Embedder,
        batch_size: int | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.embedder = embedder
        self.batch_size = batch_size or settings.embedding_batch_size
        self.max_retries = max_retries or settings.embedding_max_retries
        self.retry_delay = (
            settings.embedding_retry_delay_seconds if retry_delay is None else retry_delay
        )
        self._sleep = sleep
        self.dimension: int | None = None

    @property
    def model_name(self) -> str:
        return self.embedder.model_name

    async def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, `batch_size` per provider call."""
        vectors: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            vectors.extend(await self._embed_with_retry(texts[i : i + self.batch_size]))
        return vectors

    async def _embed_with_retry(self, texts: list[str]) -> list[list[float]]:
        for attempt in range(1, self.max_retries + 1):
            try:
                vectors = await self.embedder.embed_batch(texts)
            except EmbeddingRateLimited as e:
                if attempt >= self.max_retries:
                    raise EmbeddingError(
                        f"Failed to fetch embedding: rate limited after {attempt} attempts"
                    ) from e
                wait = self.retry_delay * (2 ** (attempt - 1))
                EMBEDDING_RETRIES.inc()
                logger.warning(
                    "embedding_rate_limited",
                    attempt=attempt,
                    max_attempts=self.max_retries,
                    wait_seconds=wait,
                )
                await self._sleep(wait)
                continue
            except EmbeddingError:
                raise
            except Exception as e:
                raise EmbeddingError(f"Failed to fetch embedding: {e}") from e

            self._check_vectors(vectors, len(texts))
            return vectors

        raise EmbeddingError("Failed to fetch embedding")

    def _check_vectors(self, vectors: list[list[float]], expected: int):
        if len(vectors) != expected:
            raise EmbeddingError(
                f"Embedding provider returned {len(vectors)} vectors for {expected} texts"
            )
        for vector in vectors:
            if not vector:
                raise EmbeddingError("Embedding provider returned an empty vector")
            if self.dimension is None:
                self.dimension = len(vector)
            elif len(vector) != self.dimension:
                raise EmbeddingError(
                    f"Embedding dimension changed from {self.dimension} to {len(vector)}"
                )


def create_embedder(settings: Settings | None = None) -> Embedder:
    """Build the configured embedding provider."""
    settings = settings or get_settings()
    if settings.embedding_provider == "http":
        return HttpEmbedder(
            model_name=settings.embedding_model,
            api_url=settings.embedding_api_url,
            api_key=settings.embedding_api_key,
        )
    if settings.embedding_provider == "sentence-transformers":
        return SentenceTransformerEmbedder(model_name=settings.embedding_model)
    raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")
