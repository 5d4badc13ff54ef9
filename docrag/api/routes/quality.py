"""
Quality API Routes

On-demand verification of an answer against its sources.
"""

import logging

from fastapi import APIRouter, HTTPException, status

from docrag.api.deps import Quality
from docrag.schemas.rag import QualityReport, QualityVerifyRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quality", tags=["quality"])


@router.post("/verify", response_model=QualityReport)
async def verify_quality(request: QualityVerifyRequest, quality: Quality):
    """Faithfulness, relevancy, hallucination and citation report."""
    try:
        return await quality.verify_response_quality(
            request.query,
            request.answer,
            source_ids=request.source_ids,
            source_texts=request.source_texts,
        )
    except Exception as e:
        logger.error(f"Error verifying response quality: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Quality verification failed: {str(e)}"
        )
