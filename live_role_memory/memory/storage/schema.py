from __future__ import annotations

import logging
import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_memory_connection

logger = logging.getLogger("live_role_memory")


class MemorySchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if has_tables and version != self.SCHEMA_VERSION:
                if not self._allow_destructive_reset_on_mismatch():
                    raise RuntimeError(
                        "SQLite schema version mismatch detected. "
                        f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                        "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                    )
                logger.warning("[memory.store] resetting schema user_version=%s -> %s", version, self.SCHEMA_VERSION)
                await self._reset_schema(db)
            else:
                await self._create_schema(db)
            await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "memory_events",
            "character_states",
            "relationships",
            "processing_state",
            "chat_turns",
            "chat_sessions",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS chat_sessions (
                chat_id TEXT PRIMARY KEY,
                is_active INTEGER NOT NULL DEFAULT 0,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                activated_at DATETIME
            );

            CREATE TABLE IF NOT EXISTS chat_turns (
                chat_id TEXT NOT NULL,
                turn_index INTEGER NOT NULL,
                speaker_name TEXT NOT NULL DEFAULT '',
                is_user INTEGER NOT NULL DEFAULT 0,
                is_system INTEGER NOT NULL DEFAULT 0,
                text TEXT NOT NULL,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (chat_id, turn_index),
                FOREIGN KEY(chat_id) REFERENCES chat_sessions(chat_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS memory_events (
                chat_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                summary TEXT NOT NULL,
                event_type TEXT NOT NULL DEFAULT 'action',
                tags_json TEXT NOT NULL DEFAULT '[]',
                importance INTEGER NOT NULL DEFAULT 3,
                characters_json TEXT NOT NULL DEFAULT '[]',
                witnesses_json TEXT NOT NULL DEFAULT '[]',
                location TEXT,
                is_secret INTEGER NOT NULL DEFAULT 0,
                emotional_impact_json TEXT NOT NULL DEFAULT '{}',
                relationship_impact_json TEXT NOT NULL DEFAULT '{}',
                message_ids_json TEXT NOT NULL DEFAULT '[]',
                sequence INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                batch_id TEXT,
                embedding_json TEXT,
                PRIMARY KEY (chat_id, event_id),
                FOREIGN KEY(chat_id) REFERENCES chat_sessions(chat_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS character_states (
                chat_id TEXT NOT NULL,
                name TEXT NOT NULL,
                current_emotion TEXT NOT NULL DEFAULT 'neutral',
                emotion_intensity INTEGER NOT NULL DEFAULT 5,
                known_events_json TEXT NOT NULL DEFAULT '[]',
                last_updated INTEGER,
                emotion_min_message INTEGER,
                emotion_max_message INTEGER,
                PRIMARY KEY (chat_id, name),
                FOREIGN KEY(chat_id) REFERENCES chat_sessions(chat_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS relationships (
                chat_id TEXT NOT NULL,
                rel_key TEXT NOT NULL,
                character_a TEXT NOT NULL,
                character_b TEXT NOT NULL,
                trust_level REAL NOT NULL DEFAULT 5,
                tension_level REAL NOT NULL DEFAULT 0,
                relationship_type TEXT NOT NULL DEFAULT 'acquaintance',
                history_json TEXT NOT NULL DEFAULT '[]',
                last_updated_message_id INTEGER,
                PRIMARY KEY (chat_id, rel_key),
                FOREIGN KEY(chat_id) REFERENCES chat_sessions(chat_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS processing_state (
                chat_id TEXT PRIMARY KEY,
                last_processed_message_id INTEGER NOT NULL DEFAULT -1,
                processed_message_ids_json TEXT NOT NULL DEFAULT '[]',
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(chat_id) REFERENCES chat_sessions(chat_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_memory_events_chat_sequence
            ON memory_events(chat_id, sequence);

            CREATE INDEX IF NOT EXISTS idx_chat_sessions_active
            ON chat_sessions(is_active);
            """
        )
