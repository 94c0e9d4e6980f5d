"""Embedding service for the prompt cache, backed by the OpenAI embeddings API."""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

import structlog
from openai import AsyncOpenAI

from aide.config import EmbeddingConfig
from aide.harness.retry import RetryConfig, with_retries

logger = structlog.get_logger(__name__)


class EmbeddingProvider(Protocol):
    """Anything that can turn text into a fixed-size vector."""

    dimensions: int

    async def embed(self, text: str) -> list[float]:
        ...


class EmbeddingService:
    """Wraps :class:`openai.AsyncOpenAI` embeddings with retries."""

    def __init__(
        self,
        config: EmbeddingConfig,
        client: Optional[AsyncOpenAI] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self._client = client or AsyncOpenAI(api_key=config.api_key, base_url=config.base_url)
        self._model = config.model
        self.dimensions = config.dimensions
        self._retry_config = retry_config or RetryConfig()
        logger.info("embedding_service.initialized", model=self._model, dimensions=self.dimensions)

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        async def _call():
            return await self._client.embeddings.create(
                model=self._model,
                input=list(texts),
                dimensions=self.dimensions,
            )

        response = await with_retries(_call, config=self._retry_config, operation="embedding")
        data = sorted(response.data, key=lambda item: getattr(item, "index", 0))
        return [list(item.embedding) for item in data]

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        return vectors[0]
