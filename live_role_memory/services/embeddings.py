from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from ..memory.dedup import EMBEDDING_BATCH_SIZE, enrich_events_with_embeddings
from ..memory.models import MemoryEvent
from .http import JsonHttpClient

logger = logging.getLogger("live_role_memory")


class OllamaEmbeddingClient(JsonHttpClient):
    """Ollama `/api/embeddings` client. Failures yield None, never an exception."""

    service_name = "ollama-embeddings"

    def __init__(self, *, base_url: str, model: str, timeout_seconds: float = 30) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.base_url = (base_url or "http://127.0.0.1:11434").strip().rstrip("/")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("Embedding model cannot be empty")

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/embeddings"

    async def embed(self, text: str) -> list[float] | None:
        prompt = str(text or "").strip()
        if not prompt:
            return None
        try:
            data = await self._post_json(self._endpoint(), {"model": self.model, "prompt": prompt}, retries=2)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[memory.dedup] embedding request failed: %s", exc)
            return None
        vector = data.get("embedding")
        if not isinstance(vector, list) or not vector:
            logger.warning("[memory.dedup] embedding response missing vector (keys=%s)", sorted(data))
            return None
        try:
            return [float(x) for x in vector]
        except (TypeError, ValueError) as exc:
            logger.warning("[memory.dedup] embedding vector not numeric: %s", exc)
            return None


async def generate_embeddings_for_memories(
    memories: Sequence[MemoryEvent],
    embedder: OllamaEmbeddingClient,
    batch_size: int = EMBEDDING_BATCH_SIZE,
) -> int:
    """Backfill embeddings for stored memories that have none (e.g. after a manual edit)."""
    missing = [memory for memory in memories if not memory.embedding]
    if not missing:
        return 0
    filled = await enrich_events_with_embeddings(missing, embedder, batch_size=batch_size)
    logger.info("[memory.dedup] generated embeddings=%s/%s", filled, len(missing))
    return filled
