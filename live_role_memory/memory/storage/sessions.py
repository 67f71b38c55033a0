from __future__ import annotations

from typing import Iterable

import aiosqlite

from ..models import Turn
from .utils import _sqlite_memory_connection


class MemorySessionsMixin:
    async def activate_chat(self, chat_id: str) -> None:
        """Make `chat_id` the active chat. Runs started on another chat will refuse to save."""
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("UPDATE chat_sessions SET is_active = 0 WHERE chat_id != ?", (chat_id,))
            await db.execute(
                """
                INSERT INTO chat_sessions (chat_id, is_active, created_at, activated_at)
                VALUES (?, 1, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                ON CONFLICT(chat_id) DO UPDATE SET
                    is_active = 1,
                    activated_at = CURRENT_TIMESTAMP
                """,
                (chat_id,),
            )
            await db.commit()

    async def current_session_id(self) -> str | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT chat_id FROM chat_sessions WHERE is_active = 1 ORDER BY activated_at DESC LIMIT 1"
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return str(row[0])

    async def _ensure_chat(self, db: aiosqlite.Connection, chat_id: str) -> None:
        await db.execute(
            "INSERT OR IGNORE INTO chat_sessions (chat_id, is_active) VALUES (?, 0)",
            (chat_id,),
        )

    async def append_turn(self, chat_id: str, turn: Turn) -> None:
        await self.import_turns(chat_id, [turn])

    async def import_turns(self, chat_id: str, turns: Iterable[Turn]) -> int:
        count = 0
        async with _sqlite_memory_connection(self.db_path) as db:
            await self._ensure_chat(db, chat_id)
            for turn in turns:
                await db.execute(
                    """
                    INSERT INTO chat_turns (chat_id, turn_index, speaker_name, is_user, is_system, text)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(chat_id, turn_index) DO UPDATE SET
                        speaker_name = excluded.speaker_name,
                        is_user = excluded.is_user,
                        is_system = excluded.is_system,
                        text = excluded.text
                    """,
                    (
                        chat_id,
                        int(turn.index),
                        turn.speaker_name,
                        1 if turn.is_user else 0,
                        1 if turn.is_system else 0,
                        turn.text,
                    ),
                )
                count += 1
            await db.commit()
        return count

    async def get_turns(self, chat_id: str) -> list[Turn]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT turn_index, speaker_name, is_user, is_system, text
                FROM chat_turns
                WHERE chat_id = ?
                ORDER BY turn_index ASC
                """,
                (chat_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            Turn(
                index=int(row["turn_index"]),
                text=str(row["text"]),
                is_user=bool(row["is_user"]),
                speaker_name=str(row["speaker_name"]),
                is_system=bool(row["is_system"]),
            )
            for row in rows
        ]
