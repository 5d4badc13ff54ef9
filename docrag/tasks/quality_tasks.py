"""
Celery tasks for post-hoc answer verification.

The answer has already been returned when these run; a failing
verification is logged and never reaches the user.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from docrag.core.config import settings
from docrag.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ========================================
# Async Helper
# ========================================

def run_async(coro):
    """
    Run async coroutine, handling both event loop and no event loop scenarios.

    - Celery worker (no running loop): asyncio.run()
    - Tests (pytest with a running loop): a fresh loop in a worker thread
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    import concurrent.futures

    with concurrent.futures.ThreadPoolExecutor() as executor:
        future = executor.submit(asyncio.run, coro)
        return future.result()


async def _verify(
    query: str,
    answer: str,
    source_texts: Optional[List[str]],
    source_ids: Optional[List[Any]]
) -> Dict[str, Any]:
    from docrag.services.providers import get_embedding_provider
    from docrag.services.rag.quality import QualityService
    from docrag.services.storage import get_document_store

    embedder = None
    try:
        embedder = await get_embedding_provider()
    except Exception as e:
        logger.warning(f"Embedding provider unavailable for verification, using word overlap: {e}")

    quality = QualityService(get_document_store(), embedder, settings.PROVIDER_TIMEOUT_SECONDS)
    return await quality.verify_response_quality(
        query, answer, source_ids=source_ids, source_texts=source_texts
    )


# ========================================
# Tasks
# ========================================

@celery_app.task(name='quality.verify_response', bind=True)
def verify_response_task(
    self,
    query: str,
    answer: str,
    source_texts: Optional[List[str]] = None,
    source_ids: Optional[List[Any]] = None
) -> dict:
    """
    Verify one answer against its sources.

    Args:
        query: The user query
        answer: The answer that was returned
        source_texts: Context texts the answer was generated from
        source_ids: Stored document ids (used when texts are not given)

    Returns:
        Summary of the quality report:
        {
            'success': bool,
            'faithfulness_score': float,
            'answer_relevancy_score': float,
            'hallucinations': int,
            'unverified_citations': int,
            'warnings': List[str]
        }
    """
    try:
        report = run_async(_verify(query, answer, source_texts, source_ids))
    except Exception as e:
        logger.error(f"Quality verification task {self.request.id} failed: {e}", exc_info=True)
        return {'success': False, 'error': str(e)}

    summary = {
        'success': True,
        'faithfulness_score': report['faithfulness_score'],
        'answer_relevancy_score': report['answer_relevancy_score'],
        'hallucinations': len(report['hallucination_detection']['hallucinations']),
        'unverified_citations': report['citation_verification']['unverified_citations'],
        'warnings': report['quality_warnings'],
    }
    logger.info(
        f"Verified response: faithfulness={summary['faithfulness_score']:.2f}, "
        f"hallucinations={summary['hallucinations']}"
    )
    return summary
