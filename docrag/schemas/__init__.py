"""
Pydantic schemas for request/response validation.

Import all schemas here for easy access.
"""

from docrag.schemas.rag import (
    ChatRequest,
    ChatResponse,
    ClassifyRequest,
    ClassifyResponse,
    FilterDefinitionResponse,
    PipelineOverrides,
    QualityReport,
    QualityVerifyRequest,
    SearchRequest,
    SearchResponse,
    SelfQueryRequest,
    SelfQueryResponse,
)

__all__ = [
    # Search
    "SearchRequest",
    "SearchResponse",
    "SelfQueryRequest",
    "SelfQueryResponse",
    "FilterDefinitionResponse",
    # Chat
    "ChatRequest",
    "ChatResponse",
    "PipelineOverrides",
    # Quality / classification
    "QualityVerifyRequest",
    "QualityReport",
    "ClassifyRequest",
    "ClassifyResponse",
]
