"""
Provider capability interfaces.

The pipeline only ever talks to these two contracts. Concrete variants
(sentence-transformers, Anthropic, Ollama) are chosen at process start
by the factory in docrag.services.providers.factory.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Dict, Iterable, List, Optional, TypeVar

from docrag.core.exceptions import MalformedResponse, ProviderTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CODE_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


class EmbeddingProvider(ABC):
    """Turns text into a fixed-length vector."""

    name: str = "embedding"

    async def initialize(self) -> None:
        """Load models / open clients. Default is a no-op."""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """
        Embed a single text.

        Raises:
            InvalidInput: text is empty or whitespace
            ProviderUnavailable: the backing model/service failed
        """

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts. Variants override this when they can batch."""
        return [await self.embed(text) for text in texts]

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of the vectors this provider returns."""

    async def shutdown(self) -> None:
        """Release resources. Default is a no-op."""


class LanguageModelProvider(ABC):
    """Chat-style text generation, blocking or streamed."""

    name: str = "language_model"

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Generate a full response for a list of {"role", "content"} messages.

        Raises:
            ProviderUnavailable, RateLimited
        """

    @abstractmethod
    def stream(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Yield successive text fragments of the response."""

    async def complete_json(
        self,
        messages: List[Dict[str, str]],
        required_keys: Iterable[str] = (),
        system: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Ask for a JSON object and parse it.

        Raises:
            MalformedResponse: output is not a JSON object or lacks required keys
        """
        text = await self.complete(messages, system=system, temperature=temperature, max_tokens=max_tokens)
        return parse_json_response(text, required_keys, provider=self.name)

    async def shutdown(self) -> None:
        """Release resources. Default is a no-op."""


# ========================================
# Helpers
# ========================================

def strip_code_fences(text: str) -> str:
    """Remove a surrounding ``` / ```json fence from a model response, if present."""
    if text is None:
        return ""
    match = _CODE_FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def parse_json_response(
    text: str,
    required_keys: Iterable[str] = (),
    provider: str = "unknown",
) -> Dict[str, Any]:
    """
    Parse a JSON object from model output.

    Tolerates code-fence markup and leading/trailing prose around the object.

    Raises:
        MalformedResponse: not parseable, not an object, or missing required keys
    """
    cleaned = strip_code_fences(text)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # Fall back to the outermost {...} span
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            raise MalformedResponse(f"Response is not JSON: {cleaned[:100]!r}", provider=provider)
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"Response is not JSON: {e}", provider=provider) from e

    if not isinstance(data, dict):
        raise MalformedResponse("Expected a JSON object", provider=provider)

    missing = [key for key in required_keys if key not in data]
    if missing:
        raise MalformedResponse(f"JSON response missing required fields: {missing}", provider=provider)

    return data


async def with_timeout(awaitable: Awaitable[T], seconds: Optional[float], provider: str = "unknown") -> T:
    """
    Await a provider call with a timeout.

    A timeout surfaces as ProviderTimeout so stage boundaries can treat it
    like any other recoverable provider failure.
    """
    if not seconds:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        logger.warning(f"Provider call to {provider} timed out after {seconds}s")
        raise ProviderTimeout(f"{provider} call timed out after {seconds}s", provider=provider) from e
