"""
Embedding provider decorator that memoizes vectors in the CacheService.
"""

import logging
from typing import List

from docrag.services.providers.base import EmbeddingProvider
from docrag.services.rag.cache import CacheService

logger = logging.getLogger(__name__)


class CachedEmbeddingProvider(EmbeddingProvider):
    """Wraps another provider; identical texts are embedded once per TTL."""

    def __init__(self, inner: EmbeddingProvider, cache: CacheService):
        self.inner = inner
        self.cache = cache
        self.name = f"cached:{inner.name}"

    async def initialize(self) -> None:
        await self.inner.initialize()

    @property
    def dimension(self) -> int:
        return self.inner.dimension

    async def embed(self, text: str) -> List[float]:
        cached = await self.cache.get_cached_embedding(text)
        if cached is not None:
            return cached

        embedding = await self.inner.embed(text)
        await self.cache.set_cached_embedding(text, embedding)
        return embedding

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        results: List[List[float]] = [None] * len(texts)
        missing_idx = []

        for i, text in enumerate(texts):
            cached = await self.cache.get_cached_embedding(text)
            if cached is not None:
                results[i] = cached
            else:
                missing_idx.append(i)

        if missing_idx:
            fresh = await self.inner.embed_batch([texts[i] for i in missing_idx])
            for i, embedding in zip(missing_idx, fresh):
                results[i] = embedding
                await self.cache.set_cached_embedding(texts[i], embedding)

        logger.debug(f"Embedded batch of {len(texts)} ({len(texts) - len(missing_idx)} cached)")
        return results

    async def shutdown(self) -> None:
        await self.inner.shutdown()
