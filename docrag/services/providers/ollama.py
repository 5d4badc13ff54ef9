"""
Ollama providers (embeddings and chat) over the local HTTP API.
"""

import json
import logging
from typing import AsyncIterator, Dict, List, Optional

import httpx

from docrag.core.config import settings
from docrag.core.exceptions import InvalidInput, ProviderUnavailable, RateLimited
from docrag.services.providers.base import EmbeddingProvider, LanguageModelProvider

logger = logging.getLogger(__name__)


def _translate_http_error(e: Exception, provider: str) -> Exception:
    """Map httpx failures onto the provider error taxonomy."""
    if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 429:
        return RateLimited(str(e), provider=provider)
    return ProviderUnavailable(str(e), provider=provider)


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings from an Ollama server (`/api/embeddings`)."""

    name = "ollama_embeddings"

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or settings.OLLAMA_URL).rstrip("/")
        self.model = model or settings.OLLAMA_EMBEDDING_MODEL
        self.client = client or httpx.AsyncClient(timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS)
        self._dimension: Optional[int] = None

    @property
    def dimension(self) -> int:
        return self._dimension or settings.EMBEDDING_DIMENSION

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise InvalidInput("Cannot embed empty text", provider=self.name)

        try:
            response = await self.client.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Ollama embedding error: {e}")
            raise _translate_http_error(e, self.name) from e

        embedding = response.json().get("embedding")
        if not embedding:
            raise ProviderUnavailable("Ollama returned no embedding", provider=self.name)

        self._dimension = len(embedding)
        return [float(x) for x in embedding]

    async def shutdown(self) -> None:
        await self.client.aclose()


class OllamaLanguageModelProvider(LanguageModelProvider):
    """Chat completions from an Ollama server (`/api/chat`)."""

    name = "ollama"

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or settings.OLLAMA_URL).rstrip("/")
        self.model = model or settings.OLLAMA_MODEL
        self.client = client or httpx.AsyncClient(timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS)

    def _payload(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str],
        temperature: float,
        max_tokens: Optional[int],
        stream: bool,
    ) -> dict:
        chat = list(messages)
        if system:
            chat.insert(0, {"role": "system", "content": system})
        options = {"temperature": temperature}
        if max_tokens:
            options["num_predict"] = max_tokens
        return {"model": self.model, "messages": chat, "stream": stream, "options": options}

    async def complete(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        try:
            response = await self.client.post(
                f"{self.base_url}/api/chat",
                json=self._payload(messages, system, temperature, max_tokens, stream=False),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Ollama chat error: {e}")
            raise _translate_http_error(e, self.name) from e

        return response.json().get("message", {}).get("content", "")

    async def stream(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        try:
            async with self.client.stream(
                "POST",
                f"{self.base_url}/api/chat",
                json=self._payload(messages, system, temperature, max_tokens, stream=True),
            ) as response:
                response.raise_for_status()
                # NDJSON: one object per line, last one has done=true
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    event = json.loads(line)
                    content = event.get("message", {}).get("content")
                    if content:
                        yield content
                    if event.get("done"):
                        break
        except httpx.HTTPError as e:
            logger.error(f"Ollama streaming error: {e}")
            raise _translate_http_error(e, self.name) from e

    async def shutdown(self) -> None:
        await self.client.aclose()
