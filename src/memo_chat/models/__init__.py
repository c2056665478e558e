"""Pydantic models and transient retrieval types."""

from memo_chat.models.chat import ChatMessage, ChatRequest, StreamEventType
from memo_chat.models.chunk import Candidate, Chunk, Context

__all__ = [
    "Candidate",
    "ChatMessage",
    "ChatRequest",
    "Chunk",
    "Context",
    "StreamEventType",
]
