"""Chat API models."""

from __future__ import annotations

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

MAX_MESSAGES = 100
MAX_QUESTION_CHARS = 5000


class ChatMessage(BaseModel):
    """One turn of the conversation sent by the client."""

    role: Literal["user", "assistant", "system"] = Field(..., description="Message author")
    content: str = Field(..., max_length=MAX_QUESTION_CHARS, description="Message text")


class ChatRequest(BaseModel):
    """Request body for the chat endpoint."""

    messages: List[ChatMessage] = Field(
        ..., min_length=1, max_length=MAX_MESSAGES, description="Conversation so far"
    )
    session_id: Optional[str] = Field(
        default=None, alias="sessionId", max_length=256, description="Optional client session id"
    )

    model_config = {"populate_by_name": True}

    def latest_question(self) -> str:
        """Content of the most recent user message, or an empty string."""
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""


class StreamEventType(str, Enum):
    """Data event types written to the SSE stream."""

    CITATIONS = "citations"
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"
