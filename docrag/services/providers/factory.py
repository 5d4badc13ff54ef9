"""
Provider selection.

Variants are picked from configuration once at process start; the rest of
the application only holds EmbeddingProvider / LanguageModelProvider
references.
"""

import logging
from typing import Optional

from docrag.core.config import settings
from docrag.core.exceptions import ConfigurationError
from docrag.services.providers.base import EmbeddingProvider, LanguageModelProvider

logger = logging.getLogger(__name__)


def create_embedding_provider(name: Optional[str] = None) -> EmbeddingProvider:
    """
    Build the configured embedding provider variant.

    Raises:
        ConfigurationError: unknown provider name
    """
    name = name or settings.EMBEDDING_PROVIDER

    if name == "sentence_transformers":
        from docrag.services.providers.local_embedder import SentenceTransformerEmbeddingProvider
        return SentenceTransformerEmbeddingProvider()
    if name == "ollama":
        from docrag.services.providers.ollama import OllamaEmbeddingProvider
        return OllamaEmbeddingProvider()

    raise ConfigurationError(f"Unknown embedding provider: {name}")


def create_language_model_provider(name: Optional[str] = None) -> LanguageModelProvider:
    """
    Build the configured language-model provider variant.

    Raises:
        ConfigurationError: unknown provider name or missing credentials
    """
    name = name or settings.LLM_PROVIDER

    if name == "anthropic":
        from docrag.services.providers.anthropic_llm import AnthropicLanguageModelProvider
        return AnthropicLanguageModelProvider()
    if name == "ollama":
        from docrag.services.providers.ollama import OllamaLanguageModelProvider
        return OllamaLanguageModelProvider()

    raise ConfigurationError(f"Unknown language model provider: {name}")


# ========================================
# Global Instance Management
# ========================================

_embedding_provider: Optional[EmbeddingProvider] = None
_language_model_provider: Optional[LanguageModelProvider] = None


async def get_embedding_provider() -> EmbeddingProvider:
    """Get or create the global embedding provider (initialized)."""
    global _embedding_provider

    if _embedding_provider is None:
        provider = create_embedding_provider()
        await provider.initialize()
        if settings.RAG_ENABLE_CACHING:
            from docrag.services.providers.cached import CachedEmbeddingProvider
            from docrag.services.rag.cache import get_cache_service
            provider = CachedEmbeddingProvider(provider, await get_cache_service())
        _embedding_provider = provider
        logger.info(f"Created global embedding provider: {provider.name}")

    return _embedding_provider


def get_language_model_provider() -> LanguageModelProvider:
    """Get or create the global language-model provider."""
    global _language_model_provider

    if _language_model_provider is None:
        _language_model_provider = create_language_model_provider()
        logger.info(f"Created global language model provider: {_language_model_provider.name}")

    return _language_model_provider


def validate_provider_configuration() -> list[str]:
    """
    Check that every configured provider can be constructed.

    Called at startup and from the health check so credential problems show
    up once instead of on every request.

    Returns:
        List of human-readable problems (empty when all is well)
    """
    problems = []

    if settings.EMBEDDING_PROVIDER not in ("sentence_transformers", "ollama"):
        problems.append(f"Unknown embedding provider: {settings.EMBEDDING_PROVIDER}")

    if settings.LLM_PROVIDER == "anthropic" and not settings.ANTHROPIC_API_KEY:
        problems.append("ANTHROPIC_API_KEY is not set")
    elif settings.LLM_PROVIDER not in ("anthropic", "ollama"):
        problems.append(f"Unknown language model provider: {settings.LLM_PROVIDER}")

    for problem in problems:
        logger.error(f"Provider configuration problem: {problem}")

    return problems


async def shutdown_providers() -> None:
    """Shut down global providers. Called at application shutdown."""
    global _embedding_provider, _language_model_provider

    if _embedding_provider is not None:
        await _embedding_provider.shutdown()
        _embedding_provider = None

    if _language_model_provider is not None:
        await _language_model_provider.shutdown()
        _language_model_provider = None

    logger.info("Providers shut down")
