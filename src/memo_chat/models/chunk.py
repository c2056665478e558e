"""Chunk, candidate and context models for retrieval."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Chunk(BaseModel):
    """A contiguous slice of a memo transcript, as written by the ingestion pipeline.

    ``(memo_id, chunk_index)`` is unique within one user's chunk set. Records are
    never mutated after creation except for the ``memo_deleted`` soft-delete flag.
    """

    user_id: str = Field(..., description="Owning identity")
    memo_id: str = Field(..., description="Source memo (document) id")
    chunk_index: int = Field(..., ge=0, description="0-based ordinal within the memo")
    text: str = Field(..., min_length=1, max_length=8000, description="Chunk text")
    embedding: List[float] = Field(default_factory=list, description="Chunk embedding vector")
    terms: List[str] = Field(
        default_factory=list, description="Precomputed keywords for keyword search"
    )
    token_count: int = Field(default=0, ge=0, description="Approximate token count")
    memo_deleted: bool = Field(default=False, description="Inherited from the source memo")
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.memo_id, self.chunk_index)

    def to_payload(self) -> Dict[str, Any]:
        """Store payload (everything except the vector)."""
        payload = self.model_dump(exclude={"embedding"})
        payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass
class Candidate:
    """In-memory projection of a chunk scored against one query. Never persisted."""

    memo_id: str
    chunk_index: int
    text: str
    embedding: List[float] = field(default_factory=list)
    score: float = 0.0
    terms: List[str] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.memo_id, self.chunk_index)

    def to_context(self, max_chars: Optional[int] = None) -> "Context":
        text = self.text if max_chars is None else self.text[:max_chars]
        return Context(memo_id=self.memo_id, chunk_index=self.chunk_index, text=text)


class Context(BaseModel):
    """A chunk selected for the prompt. Carries no embedding."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    memo_id: str = Field(..., alias="memoId")
    chunk_index: int = Field(..., alias="chunkIndex")
    text: str

    @property
    def key(self) -> Tuple[str, int]:
        return (self.memo_id, self.chunk_index)

    def to_citation(self) -> Dict[str, Any]:
        """Wire form echoed to the caller in the ``citations`` event."""
        return self.model_dump(by_alias=True)
