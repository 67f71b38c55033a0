from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Sequence

from .decay import DecayCurve, IntervalDecay
from .models import (
    CharacterState,
    MemoryEvent,
    MemoryState,
    MessageRange,
    Relationship,
    RelationshipHistoryEntry,
)
from .schemas import DEFAULT_EVENT_TYPE, EVENT_TYPES, MAX_TAGS, ExtractedEvent, MemoryTag

logger = logging.getLogger("live_role_memory")

SEQUENCE_MULTIPLIER = 1000
IMPORTANCE_MIN = 1
IMPORTANCE_MAX = 5
LEVEL_MIN = 0.0
LEVEL_MAX = 10.0

_PAIR_SEPARATORS = ("<->", "->", "→", "=>")
_INTENSITY_UP = ("very", "extremely", "deeply", "intensely", "overwhelm", "furious", "terrified")
_INTENSITY_DOWN = ("slightly", "mildly", "a bit", "somewhat", "faintly")


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class CommitSummary:
    events_created: int
    characters_updated: int
    relationships_updated: int
    relationships_decayed: int


def enrich_events(
    candidates: Sequence[ExtractedEvent],
    message_ids: Sequence[int],
    batch_id: str | None = None,
    *,
    now_ms: int | None = None,
) -> list[MemoryEvent]:
    """Turn validated candidates into storable events.

    Every event is attributed to the whole batch of `message_ids`.
    """
    if not message_ids:
        raise ValueError("message_ids must not be empty")
    batch_ids = sorted({int(i) for i in message_ids})
    created_at = now_ms if now_ms is not None else _now_ms()
    batch = batch_id or f"batch_{created_at}_{uuid.uuid4().hex[:8]}"
    base_sequence = batch_ids[0] * SEQUENCE_MULTIPLIER

    events: list[MemoryEvent] = []
    for position, candidate in enumerate(candidates):
        characters = list(dict.fromkeys(candidate.characters_involved))
        witnesses = list(dict.fromkeys(candidate.witnesses)) or list(characters)
        event_type = candidate.event_type if candidate.event_type in EVENT_TYPES else DEFAULT_EVENT_TYPE
        tags = list(candidate.tags[:MAX_TAGS]) or [MemoryTag.NONE.value]
        events.append(
            MemoryEvent(
                id=f"event_{created_at}_{uuid.uuid4().hex[:12]}",
                summary=candidate.summary.strip(),
                event_type=event_type,
                tags=tags,
                importance=int(_clamp(int(candidate.importance or 3), IMPORTANCE_MIN, IMPORTANCE_MAX)),
                characters_involved=characters,
                witnesses=witnesses,
                location=candidate.location or None,
                is_secret=bool(candidate.is_secret),
                emotional_impact=dict(candidate.emotional_impact),
                relationship_impact=dict(candidate.relationship_impact),
                message_ids=list(batch_ids),
                sequence=base_sequence + position,
                created_at=created_at,
                batch_id=batch,
            )
        )
    return events


def estimate_emotion_intensity(description: str, default: int = 5) -> int:
    text = str(description or "").lower()
    value = default
    if any(word in text for word in _INTENSITY_UP):
        value += 2
    if any(word in text for word in _INTENSITY_DOWN):
        value -= 2
    return int(_clamp(value, 0, 10))


def _get_or_create_character(state: MemoryState, name: str) -> CharacterState:
    character = state.character_states.get(name)
    if character is None:
        character = CharacterState(name=name)
        state.character_states[name] = character
    return character


def update_character_states(state: MemoryState, events: Sequence[MemoryEvent]) -> set[str]:
    touched: set[str] = set()
    for event in events:
        span = MessageRange(min=min(event.message_ids), max=max(event.message_ids)) if event.message_ids else None
        for name, emotion in event.emotional_impact.items():
            name = name.strip()
            if not name or not str(emotion or "").strip():
                continue
            character = _get_or_create_character(state, name)
            character.current_emotion = str(emotion).strip()
            character.emotion_intensity = estimate_emotion_intensity(character.current_emotion)
            character.emotion_from_messages = span
            character.last_updated = event.created_at
            touched.add(name)
        for name in event.witnesses:
            name = name.strip()
            if not name:
                continue
            character = _get_or_create_character(state, name)
            if character.add_known_event(event.id):
                character.last_updated = event.created_at
            touched.add(name)
    return touched


def canonical_relationship_key(name_a: str, name_b: str) -> str:
    first, second = sorted((name_a.strip(), name_b.strip()))
    return f"{first}<->{second}"


def parse_relationship_pair(raw_key: str) -> tuple[str, str] | None:
    text = str(raw_key or "")
    for separator in _PAIR_SEPARATORS:
        if separator in text:
            left, _, right = text.partition(separator)
            left, right = left.strip(), right.strip()
            if left and right and left != right:
                return left, right
            return None
    return None


def _keyword_delta(description: str, metric: str) -> int:
    # Whole-description match; an increase wins over a decrease.
    text = description.lower()
    if metric not in text:
        return 0
    if "increas" in text:
        return 1
    if "decreas" in text:
        return -1
    return 0


def update_relationships(
    state: MemoryState,
    events: Sequence[MemoryEvent],
    batch_max_message_id: int,
) -> set[str]:
    touched: set[str] = set()
    for event in events:
        for raw_pair, description in event.relationship_impact.items():
            pair = parse_relationship_pair(raw_pair)
            if pair is None:
                logger.info("[memory.commit] unparseable relationship key=%r event=%s", raw_pair, event.id)
                continue
            key = canonical_relationship_key(*pair)
            relationship = state.relationships.get(key)
            if relationship is None:
                relationship = Relationship(character_a=pair[0], character_b=pair[1])
                state.relationships[key] = relationship

            text = str(description or "")
            relationship.history.append(
                RelationshipHistoryEntry(
                    event_id=event.id,
                    impact=text,
                    timestamp=event.created_at,
                    message_id=batch_max_message_id,
                )
            )
            relationship.trust_level = _clamp(
                relationship.trust_level + _keyword_delta(text, "trust"), LEVEL_MIN, LEVEL_MAX
            )
            relationship.tension_level = _clamp(
                relationship.tension_level + _keyword_delta(text, "tension"), LEVEL_MIN, LEVEL_MAX
            )
            relationship.last_updated_message_id = batch_max_message_id
            touched.add(key)
    return touched


def apply_relationship_decay(
    state: MemoryState,
    current_message_id: int,
    curve: DecayCurve | None = None,
) -> int:
    """Decay relationships whose clock lags `current_message_id`.

    The clock advances by whole decay steps only, so calling this again for
    the same position is a no-op.
    """
    curve = curve or IntervalDecay()
    interval = max(1, int(curve.interval))
    decayed = 0
    for key, relationship in state.relationships.items():
        last = relationship.last_updated_message_id
        if last is None:
            relationship.last_updated_message_id = current_message_id
            continue
        steps = (current_message_id - last) // interval
        if steps <= 0:
            continue
        before = (relationship.trust_level, relationship.tension_level)
        trust, tension = curve.decay(relationship.trust_level, relationship.tension_level, steps)
        relationship.trust_level = _clamp(trust, LEVEL_MIN, LEVEL_MAX)
        relationship.tension_level = _clamp(tension, LEVEL_MIN, LEVEL_MAX)
        relationship.last_updated_message_id = last + steps * interval
        if (relationship.trust_level, relationship.tension_level) != before:
            decayed += 1
            logger.debug(
                "[memory.decay] %s steps=%s trust %.2f->%.2f tension %.2f->%.2f",
                key,
                steps,
                before[0],
                relationship.trust_level,
                before[1],
                relationship.tension_level,
            )
    return decayed


def commit_events(
    state: MemoryState,
    events: Sequence[MemoryEvent],
    message_ids: Sequence[int],
    *,
    decay_curve: DecayCurve | None = None,
) -> CommitSummary:
    """Fold accepted events into `state` and advance processing tracking.

    Zero events still marks `message_ids` as processed.
    """
    batch_max = max(message_ids) if message_ids else state.last_processed_message_id
    state.memories.extend(events)
    characters = update_character_states(state, events)
    relationships = update_relationships(state, events, batch_max)
    state.mark_processed(list(message_ids))
    if message_ids:
        state.last_processed_message_id = max(state.last_processed_message_id, batch_max)
    decayed = apply_relationship_decay(state, batch_max, decay_curve)
    if decayed:
        logger.info("[memory.decay] decayed=%s current_message_id=%s", decayed, batch_max)
    logger.info(
        "[memory.commit] events=%s characters=%s relationships=%s watermark=%s",
        len(events),
        len(characters),
        len(relationships),
        state.last_processed_message_id,
    )
    return CommitSummary(
        events_created=len(events),
        characters_updated=len(characters),
        relationships_updated=len(relationships),
        relationships_decayed=decayed,
    )
