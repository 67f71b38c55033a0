from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence

import numpy as np

from .models import MemoryEvent

logger = logging.getLogger("live_role_memory")

DEFAULT_SIMILARITY_THRESHOLD = 0.85
EMBEDDING_BATCH_SIZE = 5


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float] | None: ...


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)
    if a.size == 0 or a.shape != b.shape:
        return 0.0
    norm1 = np.linalg.norm(a)
    norm2 = np.linalg.norm(b)
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return float(np.dot(a, b) / (norm1 * norm2))


def _best_match(
    embedding: Sequence[float],
    existing: Sequence[MemoryEvent],
) -> tuple[MemoryEvent | None, float]:
    best: MemoryEvent | None = None
    best_score = -1.0
    for memory in existing:
        if not memory.embedding:
            continue
        score = cosine_similarity(embedding, memory.embedding)
        if score > best_score:
            best, best_score = memory, score
    return best, best_score


def filter_similar_events(
    candidates: Sequence[MemoryEvent],
    existing: Sequence[MemoryEvent],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> list[MemoryEvent]:
    """Drop candidates whose embedding is too close to an already stored memory.

    Candidates without an embedding are always kept.
    """
    kept: list[MemoryEvent] = []
    for candidate in candidates:
        if not candidate.embedding:
            kept.append(candidate)
            continue
        match, score = _best_match(candidate.embedding, existing)
        if match is not None and score >= threshold:
            logger.info(
                "[memory.dedup] dropped candidate=%r similar_to=%s score=%.3f threshold=%.2f",
                candidate.summary[:80],
                match.id,
                score,
                threshold,
            )
            continue
        kept.append(candidate)
    if len(kept) != len(candidates):
        logger.info("[memory.dedup] kept=%s dropped=%s", len(kept), len(candidates) - len(kept))
    return kept


async def enrich_events_with_embeddings(
    events: Sequence[MemoryEvent],
    embedder: Embedder | None,
    batch_size: int = EMBEDDING_BATCH_SIZE,
) -> int:
    """Fill missing `embedding` fields in place. Returns how many were filled."""
    if embedder is None:
        return 0
    pending = [event for event in events if not event.embedding]
    filled = 0
    step = max(1, int(batch_size))
    for start in range(0, len(pending), step):
        chunk = pending[start : start + step]
        results = await asyncio.gather(*(embedder.embed(event.summary) for event in chunk))
        for event, vector in zip(chunk, results):
            if vector:
                event.embedding = [float(x) for x in vector]
                filled += 1
    if pending and filled < len(pending):
        logger.info("[memory.dedup] embeddings missing for %s/%s events", len(pending) - filled, len(pending))
    return filled
