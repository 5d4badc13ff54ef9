"""
Chat API Routes

This module provides the RAG answer endpoints:
- Blocking answer with sources and pipeline metadata
- Streaming answer (progress markers, answer fragments, end marker)
"""

import logging

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import StreamingResponse

from docrag.api.deps import Orchestrator, pipeline_config
from docrag.core.exceptions import QueryValidationError
from docrag.schemas.rag import ChatRequest, ChatResponse
from docrag.services.rag.orchestrator import validate_query

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("", response_model=ChatResponse)
async def chat(request: ChatRequest, orchestrator: Orchestrator):
    """
    Answer a question from the document library.

    Retrieval or generation failures come back as an explanatory answer,
    not as an error status.
    """
    try:
        cfg = pipeline_config(orchestrator.config, request.options, request.top_k)
        result = await orchestrator.generate_response(
            request.query,
            user_id=request.user_id,
            conversation_id=request.conversation_id,
            document_ids=request.document_ids,
            top_k=cfg.top_k,
            config=cfg,
            conversation_history=request.history or None,
        )
        return ChatResponse(
            answer=result['answer'],
            sources=result['sources'],
            conversation_id=result['conversation_id'],
            response_time_ms=result['response_time_ms'],
            metadata=result['metadata'],
        )

    except QueryValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error processing chat request: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to process message: {str(e)}"
        )


@router.post("/stream")
async def chat_stream(request: ChatRequest, orchestrator: Orchestrator):
    """
    Streaming answer.

    Returns:
        Streaming response (text/plain): progress markers in stage order,
        then answer fragments, then the end marker
    """
    try:
        validate_query(request.query)
        cfg = pipeline_config(orchestrator.config, request.options, request.top_k)

        return StreamingResponse(
            orchestrator.generate_streaming_response(
                request.query,
                user_id=request.user_id,
                conversation_id=request.conversation_id,
                document_ids=request.document_ids,
                top_k=cfg.top_k,
                config=cfg,
                conversation_history=request.history or None,
            ),
            media_type="text/plain"
        )

    except QueryValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error streaming message: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to stream message: {str(e)}"
        )
