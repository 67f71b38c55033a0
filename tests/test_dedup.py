from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from live_role_memory.memory.dedup import (  # noqa: E402
    cosine_similarity,
    enrich_events_with_embeddings,
    filter_similar_events,
)
from live_role_memory.memory.models import MemoryEvent  # noqa: E402


class _FakeEmbedder:
    def __init__(self, vectors: dict[str, list[float] | None]) -> None:
        self.vectors = vectors
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float] | None:
        self.calls.append(text)
        return self.vectors.get(text)


def _event(event_id: str, summary: str, embedding: list[float] | None = None) -> MemoryEvent:
    return MemoryEvent(id=event_id, summary=summary, embedding=embedding)


def test_cosine_similarity_edge_cases() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert cosine_similarity([], []) == 0.0
    assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_filter_drops_near_duplicates_only(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="live_role_memory")
    existing = [_event("old", "Alice draws her sword", [1.0, 0.0])]
    candidates = [
        _event("dup", "Alice unsheathes her sword", [0.99, 0.05]),
        _event("new", "Bob buys bread", [0.0, 1.0]),
        _event("bare", "No vector for this one", None),
    ]

    kept = filter_similar_events(candidates, existing, threshold=0.85)

    assert [e.id for e in kept] == ["new", "bare"]
    assert any("[memory.dedup] dropped" in record.getMessage() for record in caplog.records)


def test_filter_ignores_existing_memories_without_embeddings() -> None:
    existing = [_event("old", "Alice draws her sword", None)]
    candidates = [_event("c1", "Alice draws her sword", [1.0, 0.0])]

    assert filter_similar_events(candidates, existing) == candidates


def test_filter_threshold_is_inclusive() -> None:
    existing = [_event("old", "same", [1.0, 0.0])]
    candidates = [_event("c1", "same", [1.0, 0.0])]

    assert filter_similar_events(candidates, existing, threshold=1.0) == []


def test_enrich_fills_missing_embeddings_in_batches() -> None:
    embedder = _FakeEmbedder({"a": [1.0, 2.0], "b": None, "c": [3.0, 4.0]})
    events = [
        _event("1", "a"),
        _event("2", "b"),
        _event("3", "c"),
        _event("4", "already", [9.0, 9.0]),
    ]

    filled = asyncio.run(enrich_events_with_embeddings(events, embedder, batch_size=2))

    assert filled == 2
    assert embedder.calls == ["a", "b", "c"]
    assert events[0].embedding == [1.0, 2.0]
    assert events[1].embedding is None
    assert events[3].embedding == [9.0, 9.0]


def test_enrich_without_embedder_is_noop() -> None:
    events = [_event("1", "a")]

    assert asyncio.run(enrich_events_with_embeddings(events, None)) == 0
    assert events[0].embedding is None
