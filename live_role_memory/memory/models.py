from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any


def _now_ms() -> int:
    return int(time.time() * 1000)


def _as_str_list(value: object) -> list[str]:
    if not isinstance(value, (list, tuple, set)):
        return []
    return [str(item) for item in value if str(item or "").strip()]


def _as_str_map(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if str(k or "").strip()}


def _as_int_or_none(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


EDITABLE_EVENT_FIELDS = frozenset(
    {"summary", "event_type", "importance", "tags", "characters_involved", "witnesses", "location", "is_secret"}
)


@dataclass(slots=True)
class Turn:
    index: int
    text: str
    is_user: bool = False
    speaker_name: str = ""
    is_system: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "index": self.index,
            "text": self.text,
            "is_user": self.is_user,
            "speaker_name": self.speaker_name,
            "is_system": self.is_system,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, index: int | None = None) -> "Turn":
        raw_index = data.get("index", index)
        return cls(
            index=int(raw_index if raw_index is not None else 0),
            text=str(data.get("text", data.get("mes", "")) or ""),
            is_user=bool(data.get("is_user", False)),
            speaker_name=str(data.get("speaker_name", data.get("name", "")) or ""),
            is_system=bool(data.get("is_system", False)),
        )


@dataclass(slots=True)
class MemoryEvent:
    id: str
    summary: str
    event_type: str = "action"
    tags: list[str] = field(default_factory=list)
    importance: int = 3
    characters_involved: list[str] = field(default_factory=list)
    witnesses: list[str] = field(default_factory=list)
    location: str | None = None
    is_secret: bool = False
    emotional_impact: dict[str, str] = field(default_factory=dict)
    relationship_impact: dict[str, str] = field(default_factory=dict)
    message_ids: list[int] = field(default_factory=list)
    sequence: int = 0
    created_at: int = field(default_factory=_now_ms)
    batch_id: str | None = None
    embedding: list[float] | None = None

    def apply_edit(self, fields: dict[str, Any]) -> bool:
        """Manual edit. A changed summary drops the stale embedding."""
        changed = False
        for name, value in fields.items():
            if name not in EDITABLE_EVENT_FIELDS:
                raise ValueError(f"memory field {name!r} is not editable")
            if name == "importance":
                value = max(1, min(5, int(value)))
            elif name in {"tags", "characters_involved", "witnesses"}:
                value = _as_str_list(value)
            elif name == "is_secret":
                value = bool(value)
            elif name == "location":
                value = (str(value).strip() or None) if value is not None else None
            else:
                value = str(value or "").strip()
            if getattr(self, name) == value:
                continue
            setattr(self, name, value)
            changed = True
            if name == "summary":
                self.embedding = None
        return changed

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "summary": self.summary,
            "event_type": self.event_type,
            "tags": list(self.tags),
            "importance": self.importance,
            "characters_involved": list(self.characters_involved),
            "witnesses": list(self.witnesses),
            "location": self.location,
            "is_secret": self.is_secret,
            "emotional_impact": dict(self.emotional_impact),
            "relationship_impact": dict(self.relationship_impact),
            "message_ids": list(self.message_ids),
            "sequence": self.sequence,
            "created_at": self.created_at,
            "batch_id": self.batch_id,
            "embedding": list(self.embedding) if self.embedding is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryEvent":
        embedding_raw = data.get("embedding")
        embedding = [float(x) for x in embedding_raw] if isinstance(embedding_raw, list) and embedding_raw else None
        location = data.get("location")
        return cls(
            id=str(data.get("id", "")),
            summary=str(data.get("summary", "") or ""),
            event_type=str(data.get("event_type", "action") or "action"),
            tags=_as_str_list(data.get("tags")),
            importance=int(data.get("importance", 3) or 3),
            characters_involved=_as_str_list(data.get("characters_involved")),
            witnesses=_as_str_list(data.get("witnesses")),
            location=str(location) if location is not None else None,
            is_secret=bool(data.get("is_secret", False)),
            emotional_impact=_as_str_map(data.get("emotional_impact")),
            relationship_impact=_as_str_map(data.get("relationship_impact")),
            message_ids=[int(x) for x in data.get("message_ids") or []],
            sequence=int(data.get("sequence", 0) or 0),
            created_at=int(data.get("created_at", 0) or 0),
            batch_id=str(data["batch_id"]) if data.get("batch_id") else None,
            embedding=embedding,
        )


@dataclass(slots=True)
class MessageRange:
    min: int
    max: int


@dataclass(slots=True)
class CharacterState:
    name: str
    current_emotion: str = "neutral"
    emotion_intensity: int = 5
    known_events: list[str] = field(default_factory=list)
    last_updated: int | None = None
    emotion_from_messages: MessageRange | None = None

    def add_known_event(self, event_id: str) -> bool:
        if event_id in self.known_events:
            return False
        self.known_events.append(event_id)
        return True

    def to_dict(self) -> dict[str, object]:
        span = self.emotion_from_messages
        return {
            "name": self.name,
            "current_emotion": self.current_emotion,
            "emotion_intensity": self.emotion_intensity,
            "known_events": list(self.known_events),
            "last_updated": self.last_updated,
            "emotion_from_messages": {"min": span.min, "max": span.max} if span is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CharacterState":
        span_raw = data.get("emotion_from_messages")
        span = None
        if isinstance(span_raw, dict) and "min" in span_raw and "max" in span_raw:
            span = MessageRange(min=int(span_raw["min"]), max=int(span_raw["max"]))
        return cls(
            name=str(data.get("name", "")),
            current_emotion=str(data.get("current_emotion", "neutral") or "neutral"),
            emotion_intensity=int(data.get("emotion_intensity", 5) or 0),
            known_events=_as_str_list(data.get("known_events")),
            last_updated=_as_int_or_none(data.get("last_updated")),
            emotion_from_messages=span,
        )


@dataclass(slots=True)
class RelationshipHistoryEntry:
    event_id: str
    impact: str
    timestamp: int
    message_id: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "event_id": self.event_id,
            "impact": self.impact,
            "timestamp": self.timestamp,
            "message_id": self.message_id,
        }


@dataclass(slots=True)
class Relationship:
    """Pairwise relationship keyed by `canonical_relationship_key`.

    Levels are kept as floats on a 0-10 scale so fractional decay accumulates
    between steps. `rounded_levels()` gives the whole numbers shown to users.
    """

    character_a: str
    character_b: str
    trust_level: float = 5
    tension_level: float = 0
    relationship_type: str = "acquaintance"
    history: list[RelationshipHistoryEntry] = field(default_factory=list)
    last_updated_message_id: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "character_a": self.character_a,
            "character_b": self.character_b,
            "trust_level": self.trust_level,
            "tension_level": self.tension_level,
            "relationship_type": self.relationship_type,
            "history": [entry.to_dict() for entry in self.history],
            "last_updated_message_id": self.last_updated_message_id,
        }

    def rounded_levels(self) -> tuple[int, int]:
        return math.floor(self.trust_level + 0.5), math.floor(self.tension_level + 0.5)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Relationship":
        history: list[RelationshipHistoryEntry] = []
        for row in data.get("history") or []:
            if not isinstance(row, dict):
                continue
            history.append(
                RelationshipHistoryEntry(
                    event_id=str(row.get("event_id", "")),
                    impact=str(row.get("impact", "")),
                    timestamp=int(row.get("timestamp", 0) or 0),
                    message_id=_as_int_or_none(row.get("message_id")),
                )
            )
        return cls(
            character_a=str(data.get("character_a", "")),
            character_b=str(data.get("character_b", "")),
            trust_level=float(data.get("trust_level", 5)),
            tension_level=float(data.get("tension_level", 0)),
            relationship_type=str(data.get("relationship_type", "acquaintance") or "acquaintance"),
            history=history,
            last_updated_message_id=_as_int_or_none(data.get("last_updated_message_id")),
        )


@dataclass(slots=True)
class MemoryState:
    """Per-chat memory document: events, character states, relationships and watermark."""

    memories: list[MemoryEvent] = field(default_factory=list)
    character_states: dict[str, CharacterState] = field(default_factory=dict)
    relationships: dict[str, Relationship] = field(default_factory=dict)
    last_processed_message_id: int = -1
    processed_message_ids: list[int] = field(default_factory=list)

    def attributed_message_ids(self) -> set[int]:
        attributed = set(self.processed_message_ids)
        for memory in self.memories:
            attributed.update(memory.message_ids)
        return attributed

    def mark_processed(self, message_ids: list[int]) -> None:
        known = set(self.processed_message_ids)
        for message_id in message_ids:
            if message_id not in known:
                self.processed_message_ids.append(message_id)
                known.add(message_id)

    def find_memory(self, memory_id: str) -> MemoryEvent | None:
        for memory in self.memories:
            if memory.id == memory_id:
                return memory
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "memories": [m.to_dict() for m in self.memories],
            "character_states": {k: v.to_dict() for k, v in self.character_states.items()},
            "relationships": {k: v.to_dict() for k, v in self.relationships.items()},
            "last_processed_message_id": self.last_processed_message_id,
            "processed_message_ids": list(self.processed_message_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryState":
        return cls(
            memories=[MemoryEvent.from_dict(m) for m in data.get("memories") or [] if isinstance(m, dict)],
            character_states={
                str(k): CharacterState.from_dict(v)
                for k, v in (data.get("character_states") or {}).items()
                if isinstance(v, dict)
            },
            relationships={
                str(k): Relationship.from_dict(v)
                for k, v in (data.get("relationships") or {}).items()
                if isinstance(v, dict)
            },
            last_processed_message_id=int(data.get("last_processed_message_id", -1)),
            processed_message_ids=[int(x) for x in data.get("processed_message_ids") or []],
        )
