"""
Main FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from docrag import __version__
from docrag.core.config import settings
from docrag.core.exceptions import DocRAGError, QueryValidationError
from docrag.core.logging import get_logger, setup_logging
from docrag.db.redis import check_redis_health, close_redis
from docrag.db.session import check_db_health, close_db, init_db
from docrag.services.providers import shutdown_providers, validate_provider_configuration
from docrag.services.rag.orchestrator import reset_orchestrator
from docrag.services.rag.reranker import shutdown_cross_encoder

# Setup logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan events.
    Handles startup and shutdown tasks.
    """
    # Startup
    logger.info(
        f"Starting {settings.APP_NAME}",
        extra={"environment": settings.APP_ENV, "version": __version__},
    )

    # Configuration problems are reported once here and on /health, not per request
    app.state.configuration_problems = validate_provider_configuration()

    if settings.DATABASE_URL:
        await init_db()

    yield

    # Shutdown
    logger.info("Shutting down application")

    reset_orchestrator()
    await shutdown_providers()
    await shutdown_cross_encoder()

    if settings.CACHE_BACKEND == "redis":
        await close_redis()

    if settings.DATABASE_URL:
        await close_db()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="Document RAG - retrieval, ranking and grounded answers over a private document library",
    version=__version__,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

# Add middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check() -> JSONResponse:
    """
    Health check endpoint for monitoring.
    Includes provider configuration, database and cache checks.
    """
    problems = getattr(app.state, "configuration_problems", None)
    if problems is None:
        problems = validate_provider_configuration()

    checks = {"configuration": "ok" if not problems else "invalid"}
    if settings.DATABASE_URL:
        checks["database"] = "connected" if await check_db_health() else "disconnected"
    if settings.CACHE_BACKEND == "redis":
        checks["cache"] = "connected" if await check_redis_health() else "disconnected"

    healthy = not problems and all(v in ("ok", "connected") for v in checks.values())

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "app_name": settings.APP_NAME,
            "environment": settings.APP_ENV,
            "version": __version__,
            "checks": checks,
            "configuration_problems": problems,
        }
    )


@app.get("/", tags=["root"])
async def root() -> JSONResponse:
    """
    Root endpoint.
    """
    return JSONResponse(
        content={
            "message": f"Welcome to {settings.APP_NAME} API",
            "version": __version__,
            "docs": "/docs" if settings.DEBUG else "Documentation disabled in production",
        }
    )


# Include API routers
from docrag.api import api_router  # noqa: E402
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.exception_handler(QueryValidationError)
async def query_validation_handler(request: Request, exc: QueryValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "invalid_query", "message": str(exc)}},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled errors.
    """
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {exc}",
        exc_info=True,
    )

    code = "pipeline_error" if isinstance(exc, DocRAGError) else "internal_server_error"
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": code,
                "message": "An unexpected error occurred. Please try again later.",
            }
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docrag.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
