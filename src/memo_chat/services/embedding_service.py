"""Query embedding service (OpenAI embeddings API)."""

from __future__ import annotations

import math
from typing import List, Optional

from openai import AsyncOpenAI

from memo_chat.config import EmbeddingSettings, get_settings
from memo_chat.utils.errors import EmbeddingError
from memo_chat.utils.logging import get_logger

logger = get_logger("embedding_service")


class EmbeddingService:
    """
    Embed a single question so it can be compared against stored chunk vectors.

    The vector must match the dimensionality the ingestion pipeline used, so the
    requested output dimension is pinned by configuration and checked on return.
    Retries are left to the caller: a failed embedding just means retrieval falls
    back to keyword search.
    """

    def __init__(
        self,
        embedding_settings: Optional[EmbeddingSettings] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.settings = embedding_settings or get_settings().embedding
        self._model_name = self.settings.model
        self._client = client  # lazy

    @property
    def model_name(self) -> str:
        return self._model_name

    def _get_client(self) -> AsyncOpenAI:
        if self._client is not None:
            return self._client

        if not self.settings.is_configured:
            raise EmbeddingError(
                "OPENAI_API_KEY is required for query embeddings",
                model=self._model_name,
            )
        self._client = AsyncOpenAI(
            api_key=self.settings.openai_api_key,
            base_url=self.settings.openai_base_url,
        )
        return self._client

    def _validate_vector(self, vector: object) -> List[float]:
        if not isinstance(vector, (list, tuple)) or not vector:
            raise EmbeddingError("Embedding response was empty", model=self._model_name)

        if len(vector) != self.settings.dimension:
            raise EmbeddingError(
                "Embedding dimension mismatch",
                model=self._model_name,
                details={
                    "expected_dimension": self.settings.dimension,
                    "actual_dimension": len(vector),
                },
            )

        out: List[float] = []
        for value in vector:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise EmbeddingError("Embedding contains non-numeric values", model=self._model_name)
            out.append(float(value))
        return out

    async def embed(self, text: str) -> List[float]:
        """
        Embed one piece of text.

        Args:
            text: Question text to embed

        Returns:
            Embedding vector of the configured dimension

        Raises:
            EmbeddingError: If the provider fails or returns an unusable vector
        """
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text", model=self._model_name)

        client = self._get_client()
        try:
            resp = await client.embeddings.create(
                model=self._model_name,
                input=text,
                dimensions=self.settings.dimension,
            )
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}", model=self._model_name) from e

        data = getattr(resp, "data", None) or []
        if not data:
            raise EmbeddingError("Embedding response had no data", model=self._model_name)

        vector = self._validate_vector(getattr(data[0], "embedding", None))
        logger.debug(f"Query embedded: model={self._model_name}, dimension={len(vector)}")
        return vector
