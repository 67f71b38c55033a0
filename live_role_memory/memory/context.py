from __future__ import annotations

import math
from typing import Iterable, Sequence

from .models import MemoryEvent

RECENCY_SHARE = 0.25
HIGH_IMPORTANCE_MIN = 4


def estimate_tokens(text: str | None) -> int:
    # Cheap, monotonic heuristic; not a tokenizer.
    return math.ceil(len(text or "") / 3.5)


def _sequence_key(memory: MemoryEvent) -> int:
    return memory.sequence if memory.sequence is not None else memory.created_at


def sort_memories_by_sequence(memories: Iterable[MemoryEvent], ascending: bool = True) -> list[MemoryEvent]:
    return sorted(memories, key=_sequence_key, reverse=not ascending)


def slice_to_token_budget(memories: Sequence[MemoryEvent], token_budget: int) -> list[MemoryEvent]:
    """Greedy prefix of `memories` whose summaries fit in `token_budget`.

    Stops before the first item that would exceed the budget; summaries are
    never truncated.
    """
    if not memories or token_budget <= 0:
        return []
    selected: list[MemoryEvent] = []
    total = 0
    for memory in memories:
        cost = estimate_tokens(memory.summary)
        if total + cost > token_budget:
            break
        selected.append(memory)
        total += cost
    return selected


def select_memories_for_extraction(memories: Sequence[MemoryEvent], total_budget: int) -> list[MemoryEvent]:
    """Pick a bounded slice of memory history for the extraction prompt.

    A quarter of the budget goes to the most recent memories, the rest to
    high-importance memories (importance >= 4, then newest first). Budget the
    importance pass leaves unused is filled with further recent memories. The
    result is returned oldest first.
    """
    if not memories or total_budget <= 0:
        return []

    recency_budget = math.floor(total_budget * RECENCY_SHARE)
    importance_budget = total_budget - recency_budget

    recent = slice_to_token_budget(sort_memories_by_sequence(memories, ascending=False), recency_budget)
    selected_ids = {m.id for m in recent}

    remaining = [m for m in memories if m.id not in selected_ids]
    high_importance = sorted(
        (m for m in remaining if m.importance >= HIGH_IMPORTANCE_MIN),
        key=lambda m: (m.importance, _sequence_key(m)),
        reverse=True,
    )
    important = slice_to_token_budget(high_importance, importance_budget)
    used = 0
    for memory in important:
        used += estimate_tokens(memory.summary)
        selected_ids.add(memory.id)

    fill: list[MemoryEvent] = []
    fill_budget = importance_budget - used
    if fill_budget > 0:
        still_remaining = [m for m in remaining if m.id not in selected_ids]
        fill = slice_to_token_budget(sort_memories_by_sequence(still_remaining, ascending=False), fill_budget)

    merged: dict[str, MemoryEvent] = {}
    for memory in (*recent, *important, *fill):
        merged.setdefault(memory.id, memory)
    return sort_memories_by_sequence(merged.values(), ascending=True)
