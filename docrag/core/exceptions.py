"""
Error taxonomy for the retrieval pipeline.

- QueryValidationError: bad caller input, rejected before any provider call
- ProviderError and subclasses: failures of an external embedding or
  language-model call; always recoverable at the stage boundary
- ConfigurationError: missing credentials or an unknown provider, surfaced
  once at startup / health-check time
"""


class DocRAGError(Exception):
    """Base class for all application errors."""


class QueryValidationError(DocRAGError):
    """Empty query, malformed filter value or other invalid caller input."""


class ConfigurationError(DocRAGError):
    """A configured provider cannot be constructed."""


class ProviderError(DocRAGError):
    """An external provider call failed."""

    def __init__(self, message: str, provider: str = "unknown"):
        super().__init__(message)
        self.provider = provider


class ProviderUnavailable(ProviderError):
    """Provider could not be reached or returned a server error."""


class InvalidInput(ProviderError):
    """Provider refused the input (e.g. empty text for embedding)."""


class RateLimited(ProviderError):
    """Provider rejected the call because of rate limiting."""


class MalformedResponse(ProviderError):
    """Structured (JSON) output was not parseable or lacked required fields."""


class ProviderTimeout(ProviderError):
    """Provider call exceeded its timeout."""
