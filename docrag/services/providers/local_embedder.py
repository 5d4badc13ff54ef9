"""
Local embedding provider backed by sentence-transformers.

Features:
---------
- Model loaded once in a worker thread
- CPU/CUDA/MPS device support with fallback to CPU
- Batch encoding
- Normalized embeddings (cosine similarity == dot product)
"""

import asyncio
import logging
from typing import List, Optional

import numpy as np
import torch
from sentence_transformers import SentenceTransformer

from docrag.core.config import settings
from docrag.core.exceptions import InvalidInput, ProviderUnavailable
from docrag.services.providers.base import EmbeddingProvider

logger = logging.getLogger(__name__)


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """
    Embedding provider running a sentence-transformers model in-process.

    Usage:
    ------
    provider = SentenceTransformerEmbeddingProvider()
    await provider.initialize()

    vector = await provider.embed("What does clause 4 say about penalties?")
    vectors = await provider.embed_batch(["text 1", "text 2"])
    """

    name = "sentence_transformers"

    def __init__(
        self,
        model_name: Optional[str] = None,
        batch_size: Optional[int] = None,
        device: Optional[str] = None,
        normalize: bool = True
    ):
        """
        Initialize the provider.

        Args:
            model_name: Model name/path (default from settings)
            batch_size: Batch size for encoding (default from settings)
            device: cpu, cuda or mps (default from settings)
            normalize: Whether to L2-normalize embeddings (default True)
        """
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        self.device = device or settings.EMBEDDING_DEVICE
        self.normalize = normalize

        self.model: Optional[SentenceTransformer] = None
        self._initialized = False

        self._validate_device()

    def _validate_device(self) -> None:
        """Validate and adjust device setting based on availability."""
        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("CUDA not available, falling back to CPU")
            self.device = "cpu"
        elif self.device == "mps" and not torch.backends.mps.is_available():
            logger.warning("MPS not available, falling back to CPU")
            self.device = "cpu"

    async def initialize(self) -> None:
        """Load the model (downloads it on first use)."""
        if self._initialized:
            return

        try:
            logger.info(f"Loading embedding model: {self.model_name} on {self.device}")
            self.model = await asyncio.to_thread(
                SentenceTransformer,
                self.model_name,
                device=self.device
            )
            self._initialized = True
            logger.info(f"Embedding model loaded. Dimension: {self.dimension}, Device: {self.device}")
        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            raise ProviderUnavailable(f"Could not load {self.model_name}: {e}", provider=self.name) from e

    @property
    def dimension(self) -> int:
        if not self._initialized or self.model is None:
            return settings.EMBEDDING_DIMENSION
        return self.model.get_sentence_embedding_dimension()

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise InvalidInput("Cannot embed empty text", provider=self.name)

        if not self._initialized:
            await self.initialize()

        try:
            embedding = await asyncio.to_thread(self._encode, text)
        except Exception as e:
            logger.error(f"Error generating embedding: {e}")
            raise ProviderUnavailable(str(e), provider=self.name) from e

        return embedding.tolist()

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise InvalidInput("Cannot embed empty text", provider=self.name)

        if not self._initialized:
            await self.initialize()

        try:
            embeddings = await asyncio.to_thread(self._encode, texts)
        except Exception as e:
            logger.error(f"Error in batch embedding generation: {e}")
            raise ProviderUnavailable(str(e), provider=self.name) from e

        return [row.tolist() for row in embeddings]

    def _encode(self, text_or_texts) -> np.ndarray:
        """Encode (sync, runs in a worker thread)."""
        return self.model.encode(
            text_or_texts,
            batch_size=self.batch_size,
            normalize_embeddings=self.normalize,
            show_progress_bar=False,
            convert_to_numpy=True
        )

    async def shutdown(self) -> None:
        if self.model is not None:
            if self.device == "cuda":
                torch.cuda.empty_cache()
            self.model = None
        self._initialized = False
        logger.info("Embedding provider shut down")
