from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from ..models import (
    CharacterState,
    MemoryEvent,
    MemoryState,
    MessageRange,
    Relationship,
)
from .utils import _json_dumps, _json_loads, _sqlite_memory_connection

logger = logging.getLogger("live_role_memory")


def _event_row(chat_id: str, memory: MemoryEvent) -> tuple[Any, ...]:
    return (
        chat_id,
        memory.id,
        memory.summary,
        memory.event_type,
        _json_dumps(memory.tags),
        int(memory.importance),
        _json_dumps(memory.characters_involved),
        _json_dumps(memory.witnesses),
        memory.location,
        1 if memory.is_secret else 0,
        _json_dumps(memory.emotional_impact),
        _json_dumps(memory.relationship_impact),
        _json_dumps(memory.message_ids),
        int(memory.sequence),
        int(memory.created_at),
        memory.batch_id,
        _json_dumps(memory.embedding) if memory.embedding else None,
    )


_EVENT_INSERT_SQL = """
    INSERT OR REPLACE INTO memory_events (
        chat_id, event_id, summary, event_type, tags_json, importance,
        characters_json, witnesses_json, location, is_secret,
        emotional_impact_json, relationship_impact_json, message_ids_json,
        sequence, created_at, batch_id, embedding_json
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _event_from_row(row: aiosqlite.Row) -> MemoryEvent:
    embedding = _json_loads(row["embedding_json"], None)
    return MemoryEvent(
        id=str(row["event_id"]),
        summary=str(row["summary"]),
        event_type=str(row["event_type"]),
        tags=[str(x) for x in _json_loads(row["tags_json"], [])],
        importance=int(row["importance"]),
        characters_involved=[str(x) for x in _json_loads(row["characters_json"], [])],
        witnesses=[str(x) for x in _json_loads(row["witnesses_json"], [])],
        location=str(row["location"]) if row["location"] is not None else None,
        is_secret=bool(row["is_secret"]),
        emotional_impact={str(k): str(v) for k, v in _json_loads(row["emotional_impact_json"], {}).items()},
        relationship_impact={str(k): str(v) for k, v in _json_loads(row["relationship_impact_json"], {}).items()},
        message_ids=[int(x) for x in _json_loads(row["message_ids_json"], [])],
        sequence=int(row["sequence"]),
        created_at=int(row["created_at"]),
        batch_id=str(row["batch_id"]) if row["batch_id"] else None,
        embedding=[float(x) for x in embedding] if isinstance(embedding, list) and embedding else None,
    )


class MemoryStateMixin:
    async def load_state(self, chat_id: str) -> MemoryState:
        state = MemoryState()
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM memory_events WHERE chat_id = ? ORDER BY sequence ASC, created_at ASC",
                (chat_id,),
            ) as cursor:
                rows = await cursor.fetchall()
            state.memories = [_event_from_row(row) for row in rows]

            async with db.execute("SELECT * FROM character_states WHERE chat_id = ?", (chat_id,)) as cursor:
                rows = await cursor.fetchall()
            for row in rows:
                span = None
                if row["emotion_min_message"] is not None and row["emotion_max_message"] is not None:
                    span = MessageRange(min=int(row["emotion_min_message"]), max=int(row["emotion_max_message"]))
                state.character_states[str(row["name"])] = CharacterState(
                    name=str(row["name"]),
                    current_emotion=str(row["current_emotion"]),
                    emotion_intensity=int(row["emotion_intensity"]),
                    known_events=[str(x) for x in _json_loads(row["known_events_json"], [])],
                    last_updated=int(row["last_updated"]) if row["last_updated"] is not None else None,
                    emotion_from_messages=span,
                )

            async with db.execute("SELECT * FROM relationships WHERE chat_id = ?", (chat_id,)) as cursor:
                rows = await cursor.fetchall()
            for row in rows:
                state.relationships[str(row["rel_key"])] = Relationship.from_dict(
                    {
                        "character_a": row["character_a"],
                        "character_b": row["character_b"],
                        "trust_level": row["trust_level"],
                        "tension_level": row["tension_level"],
                        "relationship_type": row["relationship_type"],
                        "history": _json_loads(row["history_json"], []),
                        "last_updated_message_id": row["last_updated_message_id"],
                    }
                )

            async with db.execute(
                "SELECT last_processed_message_id, processed_message_ids_json FROM processing_state WHERE chat_id = ?",
                (chat_id,),
            ) as cursor:
                row = await cursor.fetchone()
            if row is not None:
                state.last_processed_message_id = int(row["last_processed_message_id"])
                state.processed_message_ids = [int(x) for x in _json_loads(row["processed_message_ids_json"], [])]
        return state

    async def save(self, chat_id: str, state: MemoryState, expected_session_id: str | None = None) -> bool:
        """Replace the stored document for `chat_id` in one transaction.

        Returns False without writing when `expected_session_id` no longer
        matches the active chat.
        """
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                if expected_session_id is not None:
                    async with db.execute(
                        "SELECT chat_id FROM chat_sessions WHERE is_active = 1 ORDER BY activated_at DESC LIMIT 1"
                    ) as cursor:
                        row = await cursor.fetchone()
                    current = str(row[0]) if row is not None else None
                    if current != expected_session_id:
                        await db.rollback()
                        logger.warning(
                            "[memory.commit] save refused chat=%s expected_session=%s current_session=%s",
                            chat_id,
                            expected_session_id,
                            current,
                        )
                        return False

                await db.execute(
                    "INSERT OR IGNORE INTO chat_sessions (chat_id, is_active) VALUES (?, 0)",
                    (chat_id,),
                )
                for table in ("memory_events", "character_states", "relationships"):
                    await db.execute(f"DELETE FROM {table} WHERE chat_id = ?", (chat_id,))
                await db.executemany(_EVENT_INSERT_SQL, [_event_row(chat_id, m) for m in state.memories])
                await db.executemany(
                    """
                    INSERT INTO character_states (
                        chat_id, name, current_emotion, emotion_intensity, known_events_json,
                        last_updated, emotion_min_message, emotion_max_message
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            chat_id,
                            name,
                            character.current_emotion,
                            int(character.emotion_intensity),
                            _json_dumps(character.known_events),
                            character.last_updated,
                            character.emotion_from_messages.min if character.emotion_from_messages else None,
                            character.emotion_from_messages.max if character.emotion_from_messages else None,
                        )
                        for name, character in state.character_states.items()
                    ],
                )
                await db.executemany(
                    """
                    INSERT INTO relationships (
                        chat_id, rel_key, character_a, character_b, trust_level, tension_level,
                        relationship_type, history_json, last_updated_message_id
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            chat_id,
                            key,
                            rel.character_a,
                            rel.character_b,
                            float(rel.trust_level),
                            float(rel.tension_level),
                            rel.relationship_type,
                            _json_dumps([entry.to_dict() for entry in rel.history]),
                            rel.last_updated_message_id,
                        )
                        for key, rel in state.relationships.items()
                    ],
                )
                await db.execute(
                    """
                    INSERT INTO processing_state (chat_id, last_processed_message_id, processed_message_ids_json, updated_at)
                    VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(chat_id) DO UPDATE SET
                        last_processed_message_id = excluded.last_processed_message_id,
                        processed_message_ids_json = excluded.processed_message_ids_json,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (chat_id, int(state.last_processed_message_id), _json_dumps(state.processed_message_ids)),
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return True

    async def update_memory(self, chat_id: str, memory_id: str, **fields: Any) -> MemoryEvent | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM memory_events WHERE chat_id = ? AND event_id = ?",
                (chat_id, memory_id),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            memory = _event_from_row(row)
            if memory.apply_edit(fields):
                await db.execute(_EVENT_INSERT_SQL, _event_row(chat_id, memory))
                await db.commit()
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
