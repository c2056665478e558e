"""Custom middleware for FastAPI."""

import time
import uuid
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from memo_chat.config import Settings, get_settings
from memo_chat.utils.logging import get_logger, log_request, set_request_id

logger = get_logger("middleware")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID to all requests."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        set_request_id(request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response


class TimingMiddleware(BaseHTTPMiddleware):
    """Middleware to log request processing time.

    For event streams this measures time to first byte, not stream duration.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        response = await call_next(request)

        duration_ms = (time.time() - start_time) * 1000
        log_request(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"

        return response


def setup_cors_middleware(app: FastAPI, settings: Settings) -> None:
    """Set up CORS middleware."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.origins,
        allow_credentials=settings.cors.allow_credentials,
        allow_methods=settings.cors.allow_methods,
        allow_headers=settings.cors.allow_headers,
        expose_headers=["Retry-After", "X-RateLimit-Remaining", "X-Request-ID"],
        max_age=settings.cors.max_age,
    )
    logger.info(
        f"CORS middleware configured: origins={settings.cors.origins}, "
        f"methods={settings.cors.allow_methods}"
    )


def setup_middleware(app: FastAPI, settings: Optional[Settings] = None) -> None:
    """Set up all middleware for the FastAPI application.

    Middleware executes in reverse order of registration:
    1. Timing - logs request duration
    2. RequestID - generates/uses request IDs
    3. CORS - first to execute, handles preflight
    """
    settings = settings or get_settings()
    # CORS must be first (last in list) to handle preflight requests
    setup_cors_middleware(app, settings)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(TimingMiddleware)

    logger.info("Middleware configured: CORS, RequestID, Timing")
