"""FastAPI dependencies for the memo chat service.

Process-scoped components are built once in the application lifespan and
stored on ``app.state``; these dependencies hand them to the endpoints.
"""

import re
from typing import Any

from fastapi import Depends, Request

from memo_chat.config import Settings, get_settings
from memo_chat.services.llm_service import LLMService
from memo_chat.services.rate_limiter import RateLimiter
from memo_chat.services.retrieval_service import RetrievalEngine
from memo_chat.utils.errors import RateLimitedError, UnauthorizedError, UpstreamUnavailableError
from memo_chat.utils.logging import get_logger, set_user_id

logger = get_logger("dependencies")


def _get_component(request: Request, name: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        logger.error(f"{name} not available in app state")
        raise UpstreamUnavailableError(service=name, message=f"{name} is not initialized")
    return component


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_rate_limiter(request: Request) -> RateLimiter:
    return _get_component(request, "rate_limiter")


def get_retrieval_engine(request: Request) -> RetrievalEngine:
    return _get_component(request, "retrieval_engine")


def get_llm_service(request: Request) -> LLMService:
    return _get_component(request, "llm_service")


async def get_user_id(
    request: Request, settings: Settings = Depends(get_app_settings)
) -> str:
    """Caller identity from the configured header.

    Raises:
        UnauthorizedError: If the header is missing or malformed.
    """
    user_id = request.headers.get(settings.auth.identity_header)
    if not user_id:
        raise UnauthorizedError("Missing user identity")
    if not re.match(settings.auth.identity_pattern, user_id):
        logger.warning("Rejected malformed user identity")
        raise UnauthorizedError("Invalid user identity format")
    set_user_id(user_id)
    return user_id


async def enforce_rate_limit(
    user_id: str = Depends(get_user_id),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> str:
    """Count the request against the caller's window; returns the caller identity.

    Raises:
        RateLimitedError: If the caller is over its budget.
    """
    if not await rate_limiter.allow(user_id):
        retry_after = rate_limiter.retry_after(user_id)
        logger.info(
            f"Rate limit exceeded, retry after {retry_after}s", extra={"retry_after": retry_after}
        )
        raise RateLimitedError(retry_after=retry_after, details={"remaining": 0})
    return user_id
