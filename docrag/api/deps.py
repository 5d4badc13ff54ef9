"""
Service Dependencies for FastAPI Routes

Routes declare the services they need and FastAPI provides the process-wide
instances. Tests replace them through `app.dependency_overrides`.
"""

from typing import Annotated, Optional

from fastapi import Depends

from docrag.core.config import RAGPipelineConfig, settings
from docrag.schemas.rag import PipelineOverrides
from docrag.services.providers import get_embedding_provider, get_language_model_provider
from docrag.services.rag.classification import ClassificationService
from docrag.services.rag.hybrid_search import HybridSearchService, create_hybrid_search
from docrag.services.rag.orchestrator import RAGOrchestrator, get_orchestrator
from docrag.services.rag.quality import QualityService
from docrag.services.rag.self_query import SelfQueryService


async def get_rag_orchestrator() -> RAGOrchestrator:
    return await get_orchestrator()


def shared_hybrid_search(orchestrator: RAGOrchestrator) -> HybridSearchService:
    """Hybrid search over the orchestrator's store, caching raw results when caching is on."""
    cache = orchestrator.cache if orchestrator.config.enable_caching else None
    return create_hybrid_search(orchestrator.store, orchestrator.embedder, orchestrator.config, cache=cache)


async def get_self_query_service() -> SelfQueryService:
    orchestrator = await get_orchestrator()
    return SelfQueryService(
        shared_hybrid_search(orchestrator),
        orchestrator.language_model,
        orchestrator.store,
        provider_timeout=settings.PROVIDER_TIMEOUT_SECONDS,
    )


async def get_quality_service() -> QualityService:
    orchestrator = await get_orchestrator()
    return QualityService(orchestrator.store, await get_embedding_provider(), settings.PROVIDER_TIMEOUT_SECONDS)


async def get_classification_service() -> ClassificationService:
    orchestrator = await get_orchestrator()
    return ClassificationService(
        get_language_model_provider(),
        orchestrator.embedder,
        shared_hybrid_search(orchestrator),
        provider_timeout=settings.PROVIDER_TIMEOUT_SECONDS,
    )


def pipeline_config(
    base: RAGPipelineConfig,
    overrides: Optional[PipelineOverrides] = None,
    top_k: Optional[int] = None
) -> RAGPipelineConfig:
    """Per-request configuration: the orchestrator default with caller overrides on top."""
    update = overrides.model_dump(exclude_none=True) if overrides is not None else {}
    if top_k is not None:
        update["top_k"] = top_k
    return base.model_copy(update=update) if update else base


Orchestrator = Annotated[RAGOrchestrator, Depends(get_rag_orchestrator)]
SelfQuery = Annotated[SelfQueryService, Depends(get_self_query_service)]
Quality = Annotated[QualityService, Depends(get_quality_service)]
Classifier = Annotated[ClassificationService, Depends(get_classification_service)]
