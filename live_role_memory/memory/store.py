from __future__ import annotations

from typing import Any, Iterable, Protocol

from .models import MemoryEvent, MemoryState, Turn
from .storage.schema import MemorySchemaMixin
from .storage.sessions import MemorySessionsMixin
from .storage.state import MemoryStateMixin


class ChatMemoryStore(Protocol):
    async def current_session_id(self) -> str | None: ...

    async def get_turns(self, chat_id: str) -> list[Turn]: ...

    async def load_state(self, chat_id: str) -> MemoryState: ...

    async def save(self, chat_id: str, state: MemoryState, expected_session_id: str | None = None) -> bool: ...


class SqliteMemoryStore(
    MemorySchemaMixin,
    MemorySessionsMixin,
    MemoryStateMixin,
):
    """Persistent per-chat memory store: turns, events, character states and relationships."""

    backend_name = "sqlite"


class InMemoryMemoryStore:
    """Same contract as SqliteMemoryStore, kept in process memory.

    State documents are copied on load and save so callers never share
    mutable objects with the store.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self._active_chat: str | None = None
        self._turns: dict[str, dict[int, Turn]] = {}
        self._states: dict[str, dict[str, Any]] = {}

    async def init(self) -> None:
        return None

    async def activate_chat(self, chat_id: str) -> None:
        self._active_chat = chat_id
        self._turns.setdefault(chat_id, {})

    async def current_session_id(self) -> str | None:
        return self._active_chat

    async def append_turn(self, chat_id: str, turn: Turn) -> None:
        await self.import_turns(chat_id, [turn])

    async def import_turns(self, chat_id: str, turns: Iterable[Turn]) -> int:
        bucket = self._turns.setdefault(chat_id, {})
        count = 0
        for turn in turns:
            bucket[int(turn.index)] = Turn.from_dict(turn.to_dict())
            count += 1
        return count

    async def get_turns(self, chat_id: str) -> list[Turn]:
        bucket = self._turns.get(chat_id, {})
        return [Turn.from_dict(bucket[i].to_dict()) for i in sorted(bucket)]

    async def load_state(self, chat_id: str) -> MemoryState:
        return MemoryState.from_dict(self._states.get(chat_id, {}))

    async def save(self, chat_id: str, state: MemoryState, expected_session_id: str | None = None) -> bool:
        if expected_session_id is not None and self._active_chat != expected_session_id:
            return False
        self._states[chat_id] = state.to_dict()
        return True

    async def update_memory(self, chat_id: str, memory_id: str, **fields: Any) -> MemoryEvent | None:
        state = await self.load_state(chat_id)
        memory = state.find_memory(memory_id)
        if memory is None:
            return None
        if memory.apply_edit(fields):
            await self.save(chat_id, state)
        return memory

    async def delete_memory(self, chat_id: str, memory_id: str) -> bool:
        state = await self.load_state(chat_id)
        if state.find_memory(memory_id) is None:
            return False
        state.memories = [m for m in state.memories if m.id != memory_id]
        for character in state.character_states.values():
            if memory_id in character.known_events:
                character.known_events.remove(memory_id)
        return await self.save(chat_id, state)
