"""HTTP client for the embedding function (text -> fixed-length vector)."""

from typing import Optional

import httpx
import numpy as np
import structlog

logger = structlog.get_logger("embedding_client")


class EmbeddingError(Exception):
    """Raised when the embedding service cannot produce a vector."""
    pass


class HttpEmbeddingClient:
    """Calls ``POST {service_url}/api/v1/embed`` for one query at a time.

    Errors propagate: a missing query vector would silently turn a hybrid
    search into a lexical-only one.
    """

    def __init__(
        self,
        service_url: str,
        timeout_seconds: float = 10.0,
        model: str = "default",
        client: Optional[httpx.AsyncClient] = None
    ):
        self.service_url = service_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.model = model
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def embed(self, text: str) -> np.ndarray:
        """Return the embedding of ``text``."""
        try:
            response = await self._get_client().post(
                f"{self.service_url}/api/v1/embed",
                json={"items": [{"text": text}], "model": self.model},
            )
            response.raise_for_status()
            vectors = response.json().get("vectors") or []
        except httpx.HTTPError as e:
            logger.error("Embedding service call failed", error=str(e))
            raise EmbeddingError(f"Embedding service call failed: {e}") from e

        if not vectors:
            raise EmbeddingError("Embedding service returned no vectors")
        return np.asarray(vectors[0], dtype=np.float32)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
