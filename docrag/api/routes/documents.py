"""
Document API Routes

Classification of a document's text (category, tags, type).
"""

import logging

from fastapi import APIRouter, HTTPException, status

from docrag.api.deps import Classifier
from docrag.schemas.rag import ClassifyRequest, ClassifyResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"])


@router.post("/classify", response_model=ClassifyResponse)
async def classify_document(request: ClassifyRequest, classifier: Classifier):
    """Category suggestion, tags and document type, computed concurrently."""
    try:
        return await classifier.classify(request.text, request.file_name, owner_id=request.user_id)
    except Exception as e:
        logger.error(f"Error classifying document: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Classification failed: {str(e)}"
        )
