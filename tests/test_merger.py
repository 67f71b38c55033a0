from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from live_role_memory.memory.decay import ExponentialDecay, IntervalDecay  # noqa: E402
from live_role_memory.memory.merger import (  # noqa: E402
    apply_relationship_decay,
    canonical_relationship_key,
    commit_events,
    enrich_events,
    estimate_emotion_intensity,
    parse_relationship_pair,
    update_character_states,
    update_relationships,
)
from live_role_memory.memory.models import MemoryEvent, MemoryState, MessageRange, Relationship  # noqa: E402
from live_role_memory.memory.schemas import ExtractedEvent  # noqa: E402


def _relationship_state(trust: float, tension: float, last: int | None) -> MemoryState:
    state = MemoryState()
    state.relationships["Alice<->Bob"] = Relationship(
        character_a="Alice",
        character_b="Bob",
        trust_level=trust,
        tension_level=tension,
        last_updated_message_id=last,
    )
    return state


def test_enrich_attributes_whole_batch_and_orders_by_first_message() -> None:
    candidates = [
        ExtractedEvent(summary=" Alice draws a sword ", characters_involved=["Alice", "Bob"]),
        ExtractedEvent(summary="Bob runs", characters_involved=["Bob"], witnesses=["Bob", "Carol"]),
    ]

    events = enrich_events(candidates, [7, 5, 6], "batch_x", now_ms=1234)

    assert [e.sequence for e in events] == [5000, 5001]
    assert all(e.message_ids == [5, 6, 7] for e in events)
    assert all(e.batch_id == "batch_x" and e.created_at == 1234 for e in events)
    assert events[0].summary == "Alice draws a sword"
    assert events[0].witnesses == ["Alice", "Bob"]
    assert events[1].witnesses == ["Bob", "Carol"]
    assert events[0].id.startswith("event_1234_")
    assert events[0].id != events[1].id


def test_enrich_coerces_unvalidated_fields() -> None:
    candidate = ExtractedEvent.model_construct(summary="x", importance=9, event_type="weird", tags=[])

    (event,) = enrich_events([candidate], [3])

    assert event.importance == 5
    assert event.event_type == "action"
    assert event.tags == ["NONE"]


def test_enrich_requires_message_ids() -> None:
    with pytest.raises(ValueError):
        enrich_events([ExtractedEvent(summary="x")], [])


def test_relationship_key_is_commutative() -> None:
    assert canonical_relationship_key("Bob", "Alice") == canonical_relationship_key("Alice", "Bob") == "Alice<->Bob"
    assert parse_relationship_pair("Alice → Bob") == ("Alice", "Bob")
    assert parse_relationship_pair("Alice<->Bob") == ("Alice", "Bob")
    assert parse_relationship_pair("Alice and Bob") is None
    assert parse_relationship_pair("Alice->Alice") is None


def test_relationship_keywords_adjust_levels() -> None:
    state = MemoryState()
    event = MemoryEvent(id="e1", summary="s", relationship_impact={"Bob->Alice": "trust increased"}, created_at=50)

    touched = update_relationships(state, [event], 9)

    assert touched == {"Alice<->Bob"}
    relationship = state.relationships["Alice<->Bob"]
    assert relationship.character_a == "Bob"
    assert relationship.trust_level == 6
    assert relationship.tension_level == 0
    assert relationship.last_updated_message_id == 9
    assert [(h.event_id, h.message_id, h.timestamp) for h in relationship.history] == [("e1", 9, 50)]


@pytest.mark.parametrize(
    ("impact", "trust", "tension"),
    [
        ("trust and respect increased", 6, 1),
        ("increased trust and tension", 6, 2),
        ("tension decreased after the apology", 5, 0),
        ("trust increased, then trust decreased", 6, 1),
        ("they became friends", 5, 1),
    ],
)
def test_relationship_keywords_match_whole_description(impact: str, trust: float, tension: float) -> None:
    state = _relationship_state(5, 1, 0)
    event = MemoryEvent(id="e1", summary="s", relationship_impact={"Alice->Bob": impact})

    update_relationships(state, [event], 1)

    relationship = state.relationships["Alice<->Bob"]
    assert relationship.trust_level == trust
    assert relationship.tension_level == tension
    assert len(relationship.history) == 1


def test_relationship_levels_are_clamped() -> None:
    state = _relationship_state(0, 10, 0)
    events = [
        MemoryEvent(id="e1", summary="s", relationship_impact={"Alice->Bob": "trust decreased"}),
        MemoryEvent(id="e2", summary="s", relationship_impact={"Alice->Bob": "tension increased"}),
    ]

    update_relationships(state, events, 2)

    relationship = state.relationships["Alice<->Bob"]
    assert relationship.trust_level == 0
    assert relationship.tension_level == 10


def test_interval_decay_is_idempotent_per_position() -> None:
    state = _relationship_state(8, 4, 0)

    assert apply_relationship_decay(state, 100) == 1
    relationship = state.relationships["Alice<->Bob"]
    assert relationship.trust_level == pytest.approx(7.8)
    assert relationship.tension_level == pytest.approx(3.0)
    assert relationship.last_updated_message_id == 100

    assert apply_relationship_decay(state, 100) == 0
    assert apply_relationship_decay(state, 149) == 0
    assert relationship.trust_level == pytest.approx(7.8)
    assert relationship.last_updated_message_id == 100


def test_interval_decay_keeps_remainder_on_the_clock() -> None:
    state = _relationship_state(8, 4, 0)

    apply_relationship_decay(state, 120)

    assert state.relationships["Alice<->Bob"].last_updated_message_id == 100


def test_decay_does_not_overshoot_baseline() -> None:
    state = _relationship_state(4.95, 0.2, 0)

    apply_relationship_decay(state, 50)

    relationship = state.relationships["Alice<->Bob"]
    assert relationship.trust_level == 5
    assert relationship.tension_level == 0


def test_decay_starts_clock_for_relationships_without_one() -> None:
    state = _relationship_state(8, 4, None)

    assert apply_relationship_decay(state, 300) == 0
    assert state.relationships["Alice<->Bob"].last_updated_message_id == 300


def test_exponential_decay_curve() -> None:
    state = _relationship_state(9, 4, 0)

    apply_relationship_decay(state, 50, ExponentialDecay())

    relationship = state.relationships["Alice<->Bob"]
    assert relationship.trust_level == pytest.approx(8.6)
    assert relationship.tension_level == pytest.approx(2.0)


def test_interval_decay_zero_steps() -> None:
    assert IntervalDecay().decay(7.0, 3.0, 0) == (7.0, 3.0)


def test_commit_without_events_still_marks_processed() -> None:
    state = MemoryState()

    summary = commit_events(state, [], [3, 4, 5])

    assert summary.events_created == 0
    assert state.processed_message_ids == [3, 4, 5]
    assert state.last_processed_message_id == 5
    assert state.attributed_message_ids() == {3, 4, 5}


def test_commit_updates_characters_and_known_events_once() -> None:
    state = MemoryState(last_processed_message_id=20)
    (event,) = enrich_events(
        [
            ExtractedEvent(
                summary="Alice yells at Bob",
                characters_involved=["Alice", "Bob"],
                emotional_impact={"Alice": "very angry"},
                relationship_impact={"Alice->Bob": "tension increased"},
            )
        ],
        [7, 5, 6],
        now_ms=1000,
    )

    summary = commit_events(state, [event], [5, 6, 7])
    commit_events(state, [], [5, 6, 7])
    update_character_states(state, [event])

    alice = state.character_states["Alice"]
    assert alice.current_emotion == "very angry"
    assert alice.emotion_intensity == 7
    assert alice.emotion_from_messages == MessageRange(min=5, max=7)
    assert alice.last_updated == 1000
    assert alice.known_events == [event.id]
    assert state.character_states["Bob"].known_events == [event.id]
    assert summary.events_created == 1
    assert summary.relationships_updated == 1
    assert state.relationships["Alice<->Bob"].tension_level == 1
    # The watermark never moves backwards.
    assert state.last_processed_message_id == 20
    assert state.processed_message_ids == [5, 6, 7]


def test_emotion_intensity_keywords() -> None:
    assert estimate_emotion_intensity("calm") == 5
    assert estimate_emotion_intensity("extremely scared") == 7
    assert estimate_emotion_intensity("slightly annoyed") == 3


def test_rounded_levels_show_whole_numbers() -> None:
    relationship = Relationship(character_a="Alice", character_b="Bob", trust_level=7.8, tension_level=2.5)

    assert relationship.rounded_levels() == (8, 3)
    assert Relationship(character_a="A", character_b="B", trust_level=6.0, tension_level=0.2).rounded_levels() == (6, 0)
