"""FastAPI application entry point.

This module creates and configures the FastAPI application instance with:
- Middleware (CORS, RequestID, Timing)
- Exception handlers (MemoChatException, HTTPException, RequestValidationError, general)
- API routers (v1, plus root-level /chat, /health and /ready)
- Startup/shutdown lifecycle of the process-scoped components
"""

from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from qdrant_client import QdrantClient
from starlette.exceptions import HTTPException as StarletteHTTPException

from memo_chat.api.v1 import chat, health
from memo_chat.api.v1.router import router as v1_router
from memo_chat.config import Settings, get_settings
from memo_chat.middleware import setup_middleware
from memo_chat.services.chunk_store import ChunkStore
from memo_chat.services.embedding_service import EmbeddingService
from memo_chat.services.llm_service import LLMService
from memo_chat.services.rate_limit_store import InMemoryRateLimitStore, RedisRateLimitStore
from memo_chat.services.rate_limiter import RateLimiter
from memo_chat.services.retrieval_service import RetrievalEngine
from memo_chat.utils.errors import MemoChatException, RateLimitedError
from memo_chat.utils.logging import get_logger, log_error, setup_logging

setup_logging()
logger = get_logger("main")


async def _connect_redis(settings: Settings) -> Optional[redis.ConnectionPool]:
    logger.info("Initializing Redis connection...")
    try:
        redis_pool = redis.ConnectionPool.from_url(
            settings.redis.url,
            password=settings.redis.password,
            decode_responses=True,
            socket_timeout=settings.redis.socket_timeout,
            socket_connect_timeout=settings.redis.socket_connect_timeout,
            max_connections=50,
        )
        test_client = redis.Redis(connection_pool=redis_pool)
        await test_client.ping()
        await test_client.aclose()
        logger.info("Redis connection initialized successfully")
        return redis_pool
    except Exception as e:
        logger.error(f"Failed to initialize Redis connection: {e}", exc_info=True)
        if settings.is_production:
            raise  # Fail fast in production
        return None


def _connect_qdrant(settings: Settings) -> QdrantClient:
    logger.info("Initializing Qdrant connection...")
    qdrant_client = QdrantClient(
        url=settings.qdrant.url,
        api_key=settings.qdrant.api_key,
        timeout=settings.qdrant.timeout,
    )
    try:
        qdrant_client.get_collections()
        logger.info("Qdrant connection initialized successfully")
    except Exception as e:
        logger.error(f"Failed to reach Qdrant: {e}", exc_info=True)
        if settings.is_production:
            raise  # Fail fast in production
    return qdrant_client


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the process-scoped components into ``app.state`` and tear them down.

    - Redis pool and rate limiter (with its cleanup sweep)
    - Qdrant client and chunk store
    - Embedding and LLM services, retrieval engine
    """
    settings: Settings = app.state.settings
    logger.info("Starting memo chat service...")

    redis_pool = await _connect_redis(settings)
    if redis_pool is not None:
        store = RedisRateLimitStore(redis_pool, prefix=settings.redis.rate_limit_prefix)
    else:
        logger.warning("Using in-process rate limit store; limits are not shared across workers")
        store = InMemoryRateLimitStore()

    rate_limiter = RateLimiter(
        store,
        window_seconds=settings.rate_limit.window_seconds,
        max_requests=settings.rate_limit.max_requests,
        cleanup_batch_size=settings.rate_limit.cleanup_batch_size,
        cleanup_interval=settings.rate_limit.window_seconds
        * settings.rate_limit.cleanup_interval_multiplier,
    )
    rate_limiter.start_cleanup()

    qdrant_client = _connect_qdrant(settings)
    chunk_store = ChunkStore(qdrant_client, collection_prefix=settings.qdrant.collection_prefix)

    embedder = None
    if settings.embedding.is_configured:
        embedder = EmbeddingService(settings.embedding)
    else:
        logger.warning("Embeddings not configured; retrieval will use keyword search only")

    app.state.redis_pool = redis_pool
    app.state.rate_limiter = rate_limiter
    app.state.chunk_store = chunk_store
    app.state.llm_service = LLMService(settings.llm)
    app.state.retrieval_engine = RetrievalEngine.build(
        chunk_store, embedder, settings.retrieval, settings.timeouts
    )

    logger.info("Memo chat service started successfully")
    try:
        yield
    finally:
        logger.info("Shutting down memo chat service...")
        try:
            await rate_limiter.aclose()
            if redis_pool is not None:
                await redis_pool.disconnect()
            qdrant_client.close()
            logger.info("Memo chat service shut down successfully")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}", exc_info=True)


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """Render every failure as ``{"error", "code", "retryAfter"?}``."""

    @app.exception_handler(MemoChatException)
    async def memo_chat_exception_handler(request: Request, exc: MemoChatException) -> JSONResponse:
        if exc.status_code >= 500:
            log_error(
                exc,
                context={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": exc.status_code,
                    "code": exc.code,
                },
            )
        else:
            logger.warning(
                f"{exc.code}: {request.method} {request.url.path} - {exc.message}",
                extra={"status_code": exc.status_code},
            )

        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after), "X-RateLimit-Remaining": "0"}
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            logger.warning(f"404 Not Found: {request.method} {request.url.path}")
        else:
            log_error(
                exc,
                context={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": exc.status_code,
                },
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail), "code": "HTTP_ERROR"},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(loc) for loc in first.get("loc", []))
        logger.warning(
            f"Validation error: {request.method} {request.url.path}",
            extra={"status_code": status.HTTP_400_BAD_REQUEST},
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": f"Invalid {field}: {first.get('msg')}" if field else "Validation failed",
                "code": "VALIDATION_ERROR",
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log_error(
            exc,
            context={
                "method": request.method,
                "path": request.url.path,
                "unhandled": True,
            },
        )
        # Don't expose internal error details in production
        message = "An internal server error occurred" if settings.is_production else str(exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": message, "code": "INTERNAL_ERROR"},
        )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application. Components are attached by the lifespan handler."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Memo Chat",
        description=(
            "Answers questions about a user's voice memos, grounded in retrieved "
            "transcript chunks and streamed with citations."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        debug=settings.debug,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health check and readiness endpoints"},
            {"name": "chat", "description": "Streamed, cited answers"},
        ],
    )
    app.state.settings = settings

    setup_middleware(app, settings)
    register_exception_handlers(app, settings)

    app.include_router(v1_router)
    # Root-level aliases (clients and load balancers use the unversioned paths)
    app.include_router(chat.router)
    app.include_router(health.router, include_in_schema=False)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "memo_chat.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.reload and settings.is_development,
        log_level=settings.log_level.lower(),
    )
