from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .errors import SkipReason
from .models import MemoryState, Turn


@dataclass(slots=True)
class TurnSelection:
    turns: list[Turn] = field(default_factory=list)
    skip_reason: SkipReason | None = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None

    @property
    def message_ids(self) -> list[int]:
        return [turn.index for turn in self.turns]


@dataclass(slots=True)
class BackfillStats:
    complete_batches: int
    total_unextracted: int
    extracted_count: int


def get_extracted_message_ids(state: MemoryState | None) -> set[int]:
    if state is None:
        return set()
    return state.attributed_message_ids()


def get_unextracted_message_ids(
    turns: Sequence[Turn],
    extracted_ids: set[int],
    exclude_last_n: int = 0,
) -> list[int]:
    unextracted = [turn.index for turn in turns if turn.index not in extracted_ids]
    if exclude_last_n > 0:
        return unextracted[:-exclude_last_n]
    return unextracted


def select_incremental(turns: Sequence[Turn], state: MemoryState, batch_size: int) -> TurnSelection:
    """Last `batch_size` non-system turns past the watermark, in original order."""
    if not turns:
        return TurnSelection(skip_reason=SkipReason.NO_TURNS)
    attributed = state.attributed_message_ids()
    watermark = state.last_processed_message_id
    eligible = [
        turn
        for turn in turns
        if not turn.is_system and turn.index > watermark and turn.index not in attributed
    ]
    selected = eligible[-max(1, int(batch_size)) :]
    if not selected:
        return TurnSelection(skip_reason=SkipReason.NO_NEW_TURNS)
    return TurnSelection(turns=selected)


def select_targeted(turns: Sequence[Turn], message_ids: Iterable[int]) -> TurnSelection:
    """Resolve explicit turn indices, including hidden/system turns."""
    if not turns:
        return TurnSelection(skip_reason=SkipReason.NO_TURNS)
    by_index = {turn.index: turn for turn in turns}
    selected = [by_index[i] for i in message_ids if i in by_index]
    if not selected:
        return TurnSelection(skip_reason=SkipReason.NO_NEW_TURNS)
    return TurnSelection(turns=selected)


def select_turns(
    turns: Sequence[Turn],
    state: MemoryState,
    batch_size: int,
    message_ids: Sequence[int] | None = None,
) -> TurnSelection:
    if message_ids:
        return select_targeted(turns, message_ids)
    return select_incremental(turns, state, batch_size)


def get_backfill_batches(
    turns: Sequence[Turn],
    state: MemoryState,
    batch_size: int,
    *,
    exclude: Iterable[int] = (),
) -> list[list[int]]:
    """Complete batches of unattributed turn indices, oldest first.

    A remainder smaller than one batch is deferred and never returned.
    """
    size = max(1, int(batch_size))
    extracted = get_extracted_message_ids(state) | set(exclude)
    unextracted = get_unextracted_message_ids(turns, extracted)
    complete = len(unextracted) // size
    return [unextracted[i * size : (i + 1) * size] for i in range(complete)]


def get_next_batch(
    turns: Sequence[Turn],
    state: MemoryState,
    batch_size: int,
    buffer_size: int = 0,
    *,
    exclude: Iterable[int] = (),
) -> list[int] | None:
    extracted = get_extracted_message_ids(state) | set(exclude)
    unextracted = get_unextracted_message_ids(turns, extracted, buffer_size)
    if len(unextracted) < batch_size:
        return None
    return unextracted[:batch_size]


def is_batch_ready(turns: Sequence[Turn], state: MemoryState, batch_size: int) -> bool:
    return get_next_batch(turns, state, batch_size) is not None


def get_backfill_stats(
    turns: Sequence[Turn],
    state: MemoryState,
    batch_size: int,
    exclude_last_n: int | None = None,
) -> BackfillStats:
    size = max(1, int(batch_size))
    extracted = get_extracted_message_ids(state)
    exclude_count = size if exclude_last_n is None else exclude_last_n
    unextracted = get_unextracted_message_ids(turns, extracted, exclude_count)
    return BackfillStats(
        complete_batches=len(unextracted) // size,
        total_unextracted=len(unextracted),
        extracted_count=len(extracted),
    )
