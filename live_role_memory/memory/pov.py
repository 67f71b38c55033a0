from __future__ import annotations

from typing import Iterable, Sequence

from .models import MemoryEvent, MemoryState


def _lower_set(names: Iterable[str]) -> set[str]:
    return {str(name).strip().lower() for name in names if str(name or "").strip()}


def filter_memories_by_pov(
    memories: Sequence[MemoryEvent],
    pov_characters: Sequence[str],
    state: MemoryState,
) -> list[MemoryEvent]:
    """Memories visible to any of `pov_characters`.

    A memory is visible when the character witnessed it, is involved in it and
    it is not secret, or already has it in `known_events`. Names compare
    case-insensitively. No viewpoint means no filtering.
    """
    povs = _lower_set(pov_characters)
    if not povs:
        return list(memories)

    known: set[str] = set()
    for name, character in state.character_states.items():
        if name.strip().lower() in povs:
            known.update(character.known_events)

    visible: list[MemoryEvent] = []
    for memory in memories:
        if memory.id in known:
            visible.append(memory)
        elif povs & _lower_set(memory.witnesses):
            visible.append(memory)
        elif not memory.is_secret and povs & _lower_set(memory.characters_involved):
            visible.append(memory)
    return visible
