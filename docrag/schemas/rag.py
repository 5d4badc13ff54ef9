"""
Pydantic schemas for the RAG API

This module defines request/response models for search, chat, quality
verification and classification endpoints.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from docrag.services.storage.filters import FilterOperator, FilterValueType, LogicalOperator


# ========================================
# Pipeline Overrides
# ========================================

class PipelineOverrides(BaseModel):
    """Per-request pipeline switches; unset fields use the server configuration."""

    enable_hyde: Optional[bool] = None
    enable_query_rewriting: Optional[bool] = None
    enable_reranking: Optional[bool] = None
    enable_mmr: Optional[bool] = None
    enable_contextual_compression: Optional[bool] = None
    enable_caching: Optional[bool] = None
    enable_quality_check: Optional[bool] = None
    min_similarity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    hyde_weight: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    mmr_lambda: Optional[float] = Field(default=None, ge=0.0, le=1.0)


# ========================================
# Search Schemas
# ========================================

class FilterInput(BaseModel):
    """Caller-supplied metadata filter (validated against the filter registry)."""

    field: str = Field(description="Filter field, e.g. category, upload_date, file_name")
    operator: str = Field(description="Operator, e.g. equals, gte, contains")
    value: Any = Field(description="Comparison value; dates accept relative phrases")
    logical_operator: LogicalOperator = Field(default=LogicalOperator.AND)


class SearchRequest(BaseModel):
    """Request schema for hybrid search."""

    query: str = Field(description="Search query", max_length=4000)
    user_id: Optional[str] = Field(default=None, description="Requesting user")
    top_k: int = Field(default=10, ge=1, le=100, description="Number of results")
    category: Optional[str] = Field(default=None, description="Exact category filter")
    document_ids: Optional[List[Any]] = Field(default=None, description="Restrict to these documents")
    filters: List[FilterInput] = Field(default_factory=list, description="Structured metadata filters")
    options: PipelineOverrides = Field(default_factory=PipelineOverrides)


class SearchResult(BaseModel):
    """One ranked candidate with every stage's score."""

    candidate_id: str
    document_id: Any
    chunk_id: Optional[Any] = None
    chunk_index: Optional[int] = None
    file_name: Optional[str] = None
    category: Optional[str] = None
    text: str = ""
    vector_score: Optional[float] = None
    lexical_score: Optional[float] = None
    combined_score: Optional[float] = None
    hyde_score: Optional[float] = None
    final_score: Optional[float] = None
    rerank_score: Optional[float] = None
    mmr_score: Optional[float] = None
    rank: Optional[int] = None


class SearchResponse(BaseModel):
    """Response schema for hybrid search."""

    results: List[SearchResult]
    total: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SelfQueryRequest(BaseModel):
    """Request schema for self-query search."""

    query: str = Field(description="Natural-language query with implicit filters", max_length=4000)
    user_id: Optional[str] = None
    top_k: int = Field(default=10, ge=1, le=100)


class AppliedFilter(BaseModel):
    field: str
    operator: FilterOperator
    value: Any
    value_type: FilterValueType
    logical_operator: LogicalOperator


class SelfQueryResponse(BaseModel):
    """Response schema for self-query search."""

    results: List[SearchResult]
    semantic_query: str
    applied_filters: List[AppliedFilter]
    statistics: Dict[str, Any]


class FilterDefinitionResponse(BaseModel):
    field: str
    display_name: str
    data_type: FilterValueType
    supported_operators: List[FilterOperator]
    description: str = ""
    examples: List[str] = Field(default_factory=list)


# ========================================
# Chat Schemas
# ========================================

class ChatRequest(BaseModel):
    """Request schema for a RAG answer."""

    query: str = Field(description="User's question", max_length=4000)
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    document_ids: Optional[List[Any]] = None
    top_k: Optional[int] = Field(default=None, ge=1, le=50, description="Number of chunks used for the answer")
    history: List[Dict[str, str]] = Field(default_factory=list, description="Previous messages (role/content)")
    options: PipelineOverrides = Field(default_factory=PipelineOverrides)


class SourceInfo(BaseModel):
    """Information about a source used in the answer."""

    source_number: int = Field(description="Source number [1, 2, ...]")
    document_id: Optional[Any] = None
    chunk_id: Optional[Any] = None
    file_name: Optional[str] = None
    category: Optional[str] = None
    score: Optional[float] = None
    excerpt: Optional[str] = None


class ChatResponse(BaseModel):
    """Response schema for a RAG answer."""

    answer: str
    sources: List[SourceInfo]
    conversation_id: Optional[str] = None
    response_time_ms: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ========================================
# Quality Schemas
# ========================================

class QualityVerifyRequest(BaseModel):
    """Sources are given as stored document ids or directly as texts."""

    query: str
    answer: str
    source_ids: List[Any] = Field(default_factory=list)
    source_texts: Optional[List[str]] = None


class StatementConfidence(BaseModel):
    statement: str
    confidence: float


class QualityReport(BaseModel):
    faithfulness_score: float
    answer_relevancy_score: float
    overall_confidence_score: float
    statement_confidence_scores: List[StatementConfidence] = Field(
        description="One entry per answer statement, in answer order"
    )
    low_confidence_statements: List[str]
    has_low_confidence_warnings: bool
    hallucination_detection: Dict[str, Any]
    citation_verification: Dict[str, Any]
    quality_warnings: List[str]


# ========================================
# Classification Schemas
# ========================================

class ClassifyRequest(BaseModel):
    text: str = Field(description="Document text", min_length=1)
    file_name: str = ""
    user_id: Optional[str] = None


class CategorySuggestion(BaseModel):
    category: str
    confidence: float
    reasoning: str = ""
    alternatives: List[str] = Field(default_factory=list)


class ClassifyResponse(BaseModel):
    category: CategorySuggestion
    tags: List[str]
    document_type: str
