"""
Language-model provider backed by the Anthropic Messages API.
"""

import logging
from typing import AsyncIterator, Dict, List, Optional

import anthropic
from anthropic import AsyncAnthropic

from docrag.core.config import settings
from docrag.core.exceptions import ConfigurationError, ProviderUnavailable, RateLimited
from docrag.services.providers.base import LanguageModelProvider

logger = logging.getLogger(__name__)


class AnthropicLanguageModelProvider(LanguageModelProvider):
    """
    Claude via AsyncAnthropic.

    Usage:
    ------
    llm = AnthropicLanguageModelProvider()
    answer = await llm.complete([{"role": "user", "content": "Hi"}])

    async for fragment in llm.stream(messages, system="Be brief"):
        print(fragment, end="", flush=True)
    """

    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None
    ):
        """
        Args:
            api_key: Anthropic API key (defaults to settings.ANTHROPIC_API_KEY)
            model: Claude model to use (defaults to settings.ANTHROPIC_MODEL)
            max_tokens: Default response cap (defaults to settings.ANTHROPIC_MAX_TOKENS)
            timeout: Per-request HTTP timeout in seconds (defaults to settings.PROVIDER_TIMEOUT_SECONDS)

        Raises:
            ConfigurationError: no API key configured
        """
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.model = model or settings.ANTHROPIC_MODEL
        self.max_tokens = max_tokens or settings.ANTHROPIC_MAX_TOKENS
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

        if not self.api_key:
            raise ConfigurationError("Anthropic API key is required. Set ANTHROPIC_API_KEY in environment.")

        self.client = AsyncAnthropic(api_key=self.api_key, timeout=self.timeout)

        logger.info(f"AnthropicLanguageModelProvider initialized with model={self.model}")

    async def complete(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        try:
            response = await self.client.messages.create(**self._request(messages, system, temperature, max_tokens))
        except anthropic.RateLimitError as e:
            logger.warning(f"Anthropic rate limit hit: {e}")
            raise RateLimited(str(e), provider=self.name) from e
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise ProviderUnavailable(str(e), provider=self.name) from e

        return "".join(block.text for block in response.content if getattr(block, "type", "text") == "text")

    async def stream(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        try:
            async with self.client.messages.stream(**self._request(messages, system, temperature, max_tokens)) as stream:
                async for text in stream.text_stream:
                    yield text
        except anthropic.RateLimitError as e:
            logger.warning(f"Anthropic rate limit hit while streaming: {e}")
            raise RateLimited(str(e), provider=self.name) from e
        except anthropic.APIError as e:
            logger.error(f"Error streaming response: {e}")
            raise ProviderUnavailable(str(e), provider=self.name) from e

    def _request(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str],
        temperature: float,
        max_tokens: Optional[int],
    ) -> dict:
        request = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if system:
            request["system"] = system
        return request

    async def shutdown(self) -> None:
        await self.client.close()
