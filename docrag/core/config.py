"""
Configuration management using Pydantic Settings.
All environment variables are loaded and validated here.

Two layers:
- Settings: process-wide values read once from the environment
- RAGPipelineConfig: the per-request view of the pipeline knobs, resolved
  from Settings and passed explicitly through the orchestrator
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ================================
    # Application Configuration
    # ================================
    APP_NAME: str = "DocRAG"
    APP_ENV: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = True

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8000"

    @field_validator("ALLOWED_ORIGINS")
    @classmethod
    def parse_origins(cls, v: str) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in v.split(",")]

    # ================================
    # Database Configuration
    # ================================
    # Unset means the in-process document store is used
    DATABASE_URL: Optional[str] = Field(default=None, description="PostgreSQL connection string")
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # ================================
    # Redis / Cache Configuration
    # ================================
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    REDIS_CONNECT_TIMEOUT_SECONDS: float = 5.0
    CACHE_BACKEND: Literal["memory", "redis"] = "memory"
    CACHE_TTL_SECONDS: int = 3600  # 1 hour for query analysis / retrieval
    SEARCH_CACHE_TTL_SECONDS: int = 900  # 15 minutes for raw search results
    EMBEDDING_CACHE_TTL_SECONDS: int = 30 * 24 * 3600  # 30 days

    # ================================
    # Provider Selection
    # ================================
    EMBEDDING_PROVIDER: Literal["sentence_transformers", "ollama"] = "sentence_transformers"
    LLM_PROVIDER: Literal["anthropic", "ollama"] = "anthropic"
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # Anthropic Claude
    ANTHROPIC_API_KEY: Optional[str] = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-20241022"
    ANTHROPIC_MAX_TOKENS: int = 2048

    # Ollama (local HTTP server)
    OLLAMA_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "llama3.1"
    OLLAMA_EMBEDDING_MODEL: str = "nomic-embed-text"

    # ================================
    # Embedding Configuration
    # ================================
    EMBEDDING_MODEL: str = "sentence-transformers/all-MiniLM-L6-v2"
    EMBEDDING_DIMENSION: int = 384
    EMBEDDING_BATCH_SIZE: int = 32
    EMBEDDING_DEVICE: Literal["cpu", "cuda", "mps"] = "cpu"

    # ================================
    # Reranker Configuration
    # ================================
    RERANK_MODEL: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    RERANK_STRATEGY: Literal["cross_encoder", "hybrid"] = "cross_encoder"
    RERANK_BATCH_SIZE: int = 8

    # ================================
    # RAG Configuration
    # ================================
    RAG_ENABLE_HYDE: bool = True
    RAG_ENABLE_QUERY_REWRITING: bool = True
    RAG_ENABLE_RERANKING: bool = True
    RAG_ENABLE_MMR: bool = True
    RAG_ENABLE_CONTEXTUAL_COMPRESSION: bool = False
    RAG_ENABLE_CACHING: bool = True
    RAG_ENABLE_QUALITY_CHECK: bool = False

    RAG_TOP_K: int = 10
    RAG_MIN_SIMILARITY: float = 0.5
    RAG_CANDIDATE_MULTIPLIER: int = 2
    RAG_FUSION_METHOD: Literal["weighted", "rrf"] = "weighted"
    RAG_VECTOR_WEIGHT: float = 0.6
    RAG_LEXICAL_WEIGHT: float = 0.4

    RAG_MAX_CANDIDATES: int = 30
    RAG_CROSS_ENCODER_WEIGHT: float = 0.6
    RAG_LANGUAGE_MODEL_WEIGHT: float = 0.4
    RAG_MIN_RELEVANCE_SCORE: float = 0.3

    RAG_MMR_LAMBDA: float = 0.7

    RAG_HYDE_WEIGHT: float = 0.6
    RAG_HYDE_NUM_DOCUMENTS: int = 1

    RAG_MAX_CONTEXT_TOKENS: int = 4000
    RAG_COMPRESSION_RATIO: float = 0.6
    RAG_DEDUP_THRESHOLD: float = 0.85
    RAG_MAX_REFINEMENT_ITERATIONS: int = 0

    # ================================
    # Celery Configuration
    # ================================
    CELERY_ENABLED: bool = False
    CELERY_BROKER_URL: str = "redis://redis:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://redis:6379/0"
    CELERY_TASK_SERIALIZER: str = "json"
    CELERY_RESULT_SERIALIZER: str = "json"
    CELERY_ACCEPT_CONTENT: str = "json"
    CELERY_TIMEZONE: str = "UTC"
    CELERY_ENABLE_UTC: bool = True

    @property
    def celery_accept_content_list(self) -> List[str]:
        """Parse CELERY_ACCEPT_CONTENT into a list."""
        return [item.strip() for item in self.CELERY_ACCEPT_CONTENT.split(",")]

    # ================================
    # Logging Configuration
    # ================================
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    LOG_FORMAT: Literal["json", "text"] = "json"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.APP_ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"


# Global settings instance
settings = Settings()


class RAGPipelineConfig(BaseModel):
    """
    Per-request pipeline configuration.

    Built once per request from Settings (optionally with caller overrides)
    and handed to every stage, so concurrent requests never observe each
    other's changes.
    """

    enable_hyde: bool = True
    enable_query_rewriting: bool = True
    enable_reranking: bool = True
    enable_mmr: bool = True
    enable_contextual_compression: bool = False
    enable_caching: bool = True
    enable_quality_check: bool = False

    top_k: int = Field(default=10, ge=1)
    min_similarity: float = Field(default=0.5, ge=0.0, le=1.0)
    candidate_multiplier: int = Field(default=2, ge=1)
    fusion_method: Literal["weighted", "rrf"] = "weighted"
    vector_weight: float = 0.6
    lexical_weight: float = 0.4

    rerank_strategy: Literal["cross_encoder", "hybrid"] = "cross_encoder"
    max_candidates: int = Field(default=30, ge=1)
    cross_encoder_weight: float = 0.6
    language_model_weight: float = 0.4
    min_relevance_score: float = 0.3

    mmr_lambda: float = Field(default=0.7, ge=0.0, le=1.0)

    hyde_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    hyde_num_documents: int = Field(default=1, ge=1)

    max_context_tokens: int = 4000
    compression_ratio: float = 0.6
    dedup_threshold: float = 0.85
    max_refinement_iterations: int = 0

    cache_ttl_seconds: int = 3600
    provider_timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None, **overrides) -> "RAGPipelineConfig":
        """Resolve the pipeline view of the given settings, applying overrides on top."""
        s = source or settings
        values = {
            "enable_hyde": s.RAG_ENABLE_HYDE,
            "enable_query_rewriting": s.RAG_ENABLE_QUERY_REWRITING,
            "enable_reranking": s.RAG_ENABLE_RERANKING,
            "enable_mmr": s.RAG_ENABLE_MMR,
            "enable_contextual_compression": s.RAG_ENABLE_CONTEXTUAL_COMPRESSION,
            "enable_caching": s.RAG_ENABLE_CACHING,
            "enable_quality_check": s.RAG_ENABLE_QUALITY_CHECK,
            "top_k": s.RAG_TOP_K,
            "min_similarity": s.RAG_MIN_SIMILARITY,
            "candidate_multiplier": s.RAG_CANDIDATE_MULTIPLIER,
            "fusion_method": s.RAG_FUSION_METHOD,
            "vector_weight": s.RAG_VECTOR_WEIGHT,
            "lexical_weight": s.RAG_LEXICAL_WEIGHT,
            "rerank_strategy": s.RERANK_STRATEGY,
            "max_candidates": s.RAG_MAX_CANDIDATES,
            "cross_encoder_weight": s.RAG_CROSS_ENCODER_WEIGHT,
            "language_model_weight": s.RAG_LANGUAGE_MODEL_WEIGHT,
            "min_relevance_score": s.RAG_MIN_RELEVANCE_SCORE,
            "mmr_lambda": s.RAG_MMR_LAMBDA,
            "hyde_weight": s.RAG_HYDE_WEIGHT,
            "hyde_num_documents": s.RAG_HYDE_NUM_DOCUMENTS,
            "max_context_tokens": s.RAG_MAX_CONTEXT_TOKENS,
            "compression_ratio": s.RAG_COMPRESSION_RATIO,
            "dedup_threshold": s.RAG_DEDUP_THRESHOLD,
            "max_refinement_iterations": s.RAG_MAX_REFINEMENT_ITERATIONS,
            "cache_ttl_seconds": s.CACHE_TTL_SECONDS,
            "provider_timeout_seconds": s.PROVIDER_TIMEOUT_SECONDS,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
