"""Qdrant-backed chunk store.

Strategy:
- Collection per user: ``{QDRANT_COLLECTION_PREFIX}{user_id}``
- Point id is derived from ``(memo_id, chunk_index)`` so re-writing a chunk
  overwrites it instead of duplicating it
- Deleting a memo flips ``memo_deleted`` on its chunks; reads always filter it out
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, List, Optional

from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointStruct,
    VectorParams,
)

from memo_chat.models.chunk import Candidate, Chunk
from memo_chat.utils.errors import VectorStoreError
from memo_chat.utils.logging import get_logger
from memo_chat.utils.text import extract_terms

logger = get_logger("chunk_store")

# Deterministic namespace for generating stable point IDs from (memo_id, chunk_index)
_POINT_ID_NAMESPACE = uuid.UUID("2f0c6c2e-5b1a-4d8e-9a4f-7c3e1b9d6a52")

_NOT_DELETED = Filter(
    must=[FieldCondition(key="memo_deleted", match=MatchValue(value=False))]
)


def _is_not_found(error: Exception) -> bool:
    return isinstance(error, UnexpectedResponse) and error.status_code == 404


class ChunkStore:
    """Read and write a user's embedded memo chunks."""

    def __init__(self, client: QdrantClient, collection_prefix: str = "memos_") -> None:
        self._client = client
        self.collection_prefix = collection_prefix

    def get_collection_name(self, user_id: str) -> str:
        return f"{self.collection_prefix}{user_id}"

    @staticmethod
    def make_point_id(memo_id: str, chunk_index: int) -> str:
        """Create a stable UUID point id for a chunk."""
        return str(uuid.uuid5(_POINT_ID_NAMESPACE, f"{memo_id}:{chunk_index}"))

    @staticmethod
    def _to_candidate(point: Any, score: float = 0.0) -> Optional[Candidate]:
        payload = point.payload or {}
        text = payload.get("text")
        memo_id = payload.get("memo_id")
        chunk_index = payload.get("chunk_index")
        if not text or not memo_id or not isinstance(chunk_index, int):
            return None

        vector = point.vector
        if isinstance(vector, dict):
            # Named vectors are not used; take the unnamed/default one if present
            vector = vector.get("") or next(iter(vector.values()), None)

        return Candidate(
            memo_id=str(memo_id),
            chunk_index=chunk_index,
            text=str(text),
            embedding=list(vector or []),
            score=score,
            terms=list(payload.get("terms") or []),
        )

    async def has_chunks(self, user_id: str) -> bool:
        """True if the user has at least one non-deleted chunk."""
        collection = self.get_collection_name(user_id)

        def _any_live_chunk() -> bool:
            try:
                points, _ = self._client.scroll(
                    collection_name=collection,
                    scroll_filter=_NOT_DELETED,
                    limit=1,
                    with_payload=False,
                    with_vectors=False,
                )
            except Exception as e:
                if _is_not_found(e):
                    return False
                raise
            return len(points) > 0

        try:
            return await asyncio.to_thread(_any_live_chunk)
        except Exception as e:
            raise VectorStoreError(
                f"Chunk existence check failed: {e}",
                operation="has_chunks",
                details={"collection": collection},
            ) from e

    async def nearest(
        self, user_id: str, vector: List[float], limit: int = 20
    ) -> List[Candidate]:
        """Nearest non-deleted chunks by cosine distance, with their vectors."""
        collection = self.get_collection_name(user_id)

        def _search() -> List[Candidate]:
            response = self._client.query_points(
                collection_name=collection,
                query=vector,
                query_filter=_NOT_DELETED,
                limit=limit,
                with_payload=True,
                with_vectors=True,
            )
            out = []
            for point in response.points:
                candidate = self._to_candidate(point, score=float(point.score))
                if candidate is not None:
                    out.append(candidate)
            return out

        try:
            return await asyncio.to_thread(_search)
        except Exception as e:
            raise VectorStoreError(
                f"Vector search failed: {e}",
                operation="nearest",
                details={"collection": collection},
            ) from e

    async def scan(self, user_id: str, limit: int = 50) -> List[Candidate]:
        """A bounded page of non-deleted chunks, without vectors."""
        collection = self.get_collection_name(user_id)

        def _scroll() -> List[Candidate]:
            try:
                points, _ = self._client.scroll(
                    collection_name=collection,
                    scroll_filter=_NOT_DELETED,
                    limit=limit,
                    with_payload=True,
                    with_vectors=False,
                )
            except Exception as e:
                if _is_not_found(e):
                    return []
                raise
            out = []
            for point in points:
                candidate = self._to_candidate(point)
                if candidate is not None:
                    out.append(candidate)
            return out

        try:
            return await asyncio.to_thread(_scroll)
        except Exception as e:
            raise VectorStoreError(
                f"Chunk scan failed: {e}",
                operation="scan",
                details={"collection": collection},
            ) from e

    async def ensure_collection(self, user_id: str, vector_size: int) -> None:
        """Create the user's collection if it does not exist yet."""
        collection = self.get_collection_name(user_id)

        def _ensure() -> None:
            try:
                self._client.get_collection(collection)
            except Exception as e:
                if not _is_not_found(e):
                    raise
                self._client.create_collection(
                    collection_name=collection,
                    vectors_config=VectorParams(size=vector_size, distance=Distance.COSINE),
                )
                logger.info(f"Created chunk collection {collection} (vector_size={vector_size})")

        try:
            await asyncio.to_thread(_ensure)
        except Exception as e:
            raise VectorStoreError(
                f"Failed to ensure collection: {e}",
                operation="ensure_collection",
                details={"collection": collection},
            ) from e

    async def upsert_chunks(self, user_id: str, chunks: List[Chunk]) -> List[str]:
        """Batch-write chunks for one user and return their point ids."""
        if not chunks:
            return []
        if any(c.user_id != user_id for c in chunks):
            raise VectorStoreError(
                "All chunks must belong to the target user", operation="upsert"
            )
        if any(not c.embedding for c in chunks):
            raise VectorStoreError("Chunks must carry an embedding", operation="upsert")

        await self.ensure_collection(user_id, len(chunks[0].embedding))
        collection = self.get_collection_name(user_id)

        def _upsert() -> List[str]:
            points: List[PointStruct] = []
            for chunk in chunks:
                payload: Dict[str, Any] = chunk.to_payload()
                if not payload["terms"]:
                    payload["terms"] = extract_terms(chunk.text)
                points.append(
                    PointStruct(
                        id=self.make_point_id(chunk.memo_id, chunk.chunk_index),
                        vector=chunk.embedding,
                        payload=payload,
                    )
                )
            self._client.upsert(collection_name=collection, points=points, wait=True)
            return [str(p.id) for p in points]

        try:
            point_ids = await asyncio.to_thread(_upsert)
        except Exception as e:
            raise VectorStoreError(
                f"Failed to upsert chunks: {e}",
                operation="upsert",
                details={"collection": collection},
            ) from e

        logger.info(f"Chunk upsert complete: collection={collection}, points={len(point_ids)}")
        return point_ids

    async def mark_memo_deleted(self, user_id: str, memo_id: str) -> None:
        """Soft-delete every chunk of a memo."""
        collection = self.get_collection_name(user_id)
        memo_filter = Filter(
            must=[FieldCondition(key="memo_id", match=MatchValue(value=memo_id))]
        )

        def _mark() -> None:
            self._client.set_payload(
                collection_name=collection,
                payload={"memo_deleted": True},
                points=memo_filter,
                wait=True,
            )

        try:
            await asyncio.to_thread(_mark)
        except Exception as e:
            raise VectorStoreError(
                f"Failed to mark memo deleted: {e}",
                operation="mark_memo_deleted",
                details={"collection": collection, "memo_id": memo_id},
            ) from e
        logger.info(f"Memo chunks soft-deleted: collection={collection}, memo_id={memo_id}")

    def ping(self) -> None:
        """Raise if Qdrant is unreachable."""
        self._client.get_collections()
