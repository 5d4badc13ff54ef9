"""
External capability providers.

- EmbeddingProvider: text -> vector (sentence-transformers, Ollama)
- LanguageModelProvider: messages -> text or text stream (Anthropic, Ollama)
"""

from docrag.services.providers.base import (
    EmbeddingProvider,
    LanguageModelProvider,
    parse_json_response,
    strip_code_fences,
    with_timeout,
)
from docrag.services.providers.factory import (
    create_embedding_provider,
    create_language_model_provider,
    get_embedding_provider,
    get_language_model_provider,
    shutdown_providers,
    validate_provider_configuration,
)

__all__ = [
    "EmbeddingProvider",
    "LanguageModelProvider",
    "parse_json_response",
    "strip_code_fences",
    "with_timeout",
    "create_embedding_provider",
    "create_language_model_provider",
    "get_embedding_provider",
    "get_language_model_provider",
    "shutdown_providers",
    "validate_provider_configuration",
]
