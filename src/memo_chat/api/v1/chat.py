"""Chat endpoint: retrieval-grounded answers streamed as Server-Sent Events."""

import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from memo_chat.config import Settings
from memo_chat.dependencies import (
    enforce_rate_limit,
    get_app_settings,
    get_llm_service,
    get_rate_limiter,
    get_retrieval_engine,
)
from memo_chat.models.chat import MAX_QUESTION_CHARS, ChatRequest
from memo_chat.services.llm_service import LLMService
from memo_chat.services.prompt_builder import build_messages
from memo_chat.services.rate_limiter import RateLimiter
from memo_chat.services.retrieval_service import RetrievalEngine
from memo_chat.services.stream_coordinator import SSE_HEADERS, StreamCoordinator
from memo_chat.utils.errors import InternalError, ValidationError
from memo_chat.utils.logging import get_logger

logger = get_logger("chat")
router = APIRouter(tags=["chat"])


async def parse_chat_request(request: Request) -> ChatRequest:
    """Read and validate the body after identity and rate-limit checks have passed.

    Raises:
        ValidationError: If the body is not valid JSON or has the wrong shape.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body must be valid JSON") from e

    try:
        chat_request = ChatRequest.model_validate(body)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        message = f"Invalid {field}: {first.get('msg')}" if field else "Invalid request body"
        raise ValidationError(message, field=field or None) from e

    question = chat_request.latest_question()
    if not question.strip():
        raise ValidationError("A non-empty user message is required", field="messages")
    if len(question) > MAX_QUESTION_CHARS:
        raise ValidationError(
            f"Question must be at most {MAX_QUESTION_CHARS} characters", field="messages"
        )
    return chat_request


@router.post("/chat")
async def chat(
    request: Request,
    user_id: str = Depends(enforce_rate_limit),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    retrieval_engine: RetrievalEngine = Depends(get_retrieval_engine),
    llm_service: LLMService = Depends(get_llm_service),
    settings: Settings = Depends(get_app_settings),
):
    """
    Answer the latest user message from the caller's voice memos.

    The stream carries a ``citations`` event, then ``delta`` events with the
    answer text, then ``done`` (or ``error`` if generation fails midway).
    """
    chat_request = await parse_chat_request(request)
    question = chat_request.latest_question()

    coordinator = StreamCoordinator(
        keepalive_interval=settings.streaming.keepalive_interval,
        completion_timeout=settings.timeouts.completion,
        is_disconnected=request.is_disconnected,
    )

    try:
        contexts = await retrieval_engine.retrieve(user_id, question)
    except Exception as e:
        if not coordinator.can_send_status_error:
            raise
        coordinator.fail_before_stream()
        logger.error(f"Failed to prepare answer context: {e}", exc_info=True)
        raise InternalError("Failed to prepare answer") from e

    logger.info(
        f"Chat request accepted: messages={len(chat_request.messages)}, contexts={len(contexts)}"
    )
    system_prompt, user_prompt = build_messages(contexts, question)

    return StreamingResponse(
        coordinator.stream(contexts, llm_service.stream_complete(system_prompt, user_prompt)),
        media_type="text/event-stream",
        headers={
            **SSE_HEADERS,
            "X-RateLimit-Remaining": str(rate_limiter.remaining(user_id)),
        },
    )
