from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from live_role_memory.memory.errors import ParseError, ValidationError  # noqa: E402
from live_role_memory.memory.schemas import extraction_json_schema  # noqa: E402
from live_role_memory.memory.validation import (  # noqa: E402
    Failed,
    Legacy,
    Structured,
    parse_extraction_response,
    parse_json_text,
    parse_legacy_events,
    sanitize_tags,
    strict_parse_extraction_response,
    strip_markdown_fence,
    strip_thinking_tags,
)


def _payload(*events: dict[str, object], reasoning: str | None = None) -> str:
    body: dict[str, object] = {"events": list(events)}
    if reasoning is not None:
        body["reasoning"] = reasoning
    return json.dumps(body)


@pytest.mark.parametrize(
    "raw",
    [
        '<think>plan the answer</think>{"events": []}',
        '<THINKING>\nlong\nplan\n</THINKING>\n{"events": []}',
        '[THINK]hidden[/THINK]\n{"events": []}',
        'the opener was in the prompt</think>\n{"events": []}',
        '<reasoning>I should output JSON {"events": []}',
        '*thinks: what happened here*\n{"events": []}',
        '(thinking: short note)\n{"events": []}',
    ],
)
def test_strip_thinking_tags_variants(raw: str) -> None:
    assert strip_thinking_tags(raw) == '{"events": []}'


def test_strip_thinking_tags_leaves_plain_json_alone() -> None:
    raw = '{"events": [{"summary": "Bob (thinking: no) laughs"}]}'
    assert strip_thinking_tags(raw) == raw


def test_strip_markdown_fence_and_surrounding_prose() -> None:
    assert strip_markdown_fence('```json\n{"events": []}\n```') == '{"events": []}'
    assert strip_markdown_fence('```\n[1, 2]\n```') == "[1, 2]"
    assert strip_markdown_fence('Here you go: {"events": []} hope it helps') == '{"events": []}'


def test_parse_json_text_repairs_trailing_commas() -> None:
    parsed = parse_json_text('{"events": [{"summary": "Alice draws a sword",}],}')

    assert isinstance(parsed, dict)
    assert parsed["events"][0]["summary"] == "Alice draws a sword"


def test_parse_json_text_rejects_primitives_and_empty() -> None:
    with pytest.raises(ParseError):
        parse_json_text("42")
    with pytest.raises(ParseError):
        parse_json_text("   ")


def test_sanitize_tags_normalizes_drops_and_truncates() -> None:
    result = sanitize_tags(["combat", "Unknown", "ROMANCE", "fear", "JOY"])

    assert result.tags == ["COMBAT", "ROMANCE", "FEAR"]
    assert result.rejected == ["Unknown"]
    assert result.truncated == ["JOY"]
    assert result.fallback_used is False


def test_sanitize_tags_falls_back_to_none() -> None:
    assert sanitize_tags([]).tags == ["NONE"]
    assert sanitize_tags(["nonsense"]).fallback_used is True
    assert sanitize_tags("combat, magic").tags == ["COMBAT", "MAGIC"]
    assert sanitize_tags(["NONE", "COMBAT"]).tags == ["COMBAT"]


def test_structured_response_is_validated(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="live_role_memory")
    raw = _payload(
        {
            "summary": "Alice confesses she stole the map.",
            "event_type": "Revelation",
            "importance": 4,
            "characters_involved": ["Alice", "Bob"],
            "tags": ["confession", "bogus"],
            "relationship_impact": {"Alice->Bob": "trust decreased"},
        },
        reasoning="one clear event",
    )

    outcome = parse_extraction_response(f"```json\n{raw}\n```")

    assert isinstance(outcome, Structured)
    assert outcome.reasoning == "one clear event"
    event = outcome.events[0]
    assert event.event_type == "revelation"
    assert event.tags == ["CONFESSION"]
    assert event.location is None
    assert event.is_secret is False
    assert any("[memory.tags]" in record.getMessage() for record in caplog.records)


def test_unknown_event_type_is_coerced_to_action() -> None:
    outcome = parse_extraction_response(_payload({"summary": "A twist", "event_type": "dramatic twist"}))

    assert isinstance(outcome, Structured)
    assert outcome.events[0].event_type == "action"


def test_out_of_range_importance_falls_back_to_legacy_and_clamps() -> None:
    outcome = parse_extraction_response(_payload({"summary": "The castle burns.", "importance": 9}))

    assert isinstance(outcome, Legacy)
    assert outcome.events[0].importance == 5
    assert outcome.events[0].tags == ["NONE"]


def test_bare_array_uses_legacy_parser_and_drops_unusable_items() -> None:
    raw = '[{"summary": "Bob leaves town", "characters_involved": ["Bob"]}, {"importance": 2}, "junk"]'

    outcome = parse_extraction_response(raw)

    assert isinstance(outcome, Legacy)
    assert len(outcome.events) == 1
    assert outcome.events[0].witnesses == ["Bob"]


def test_legacy_parser_accepts_single_event_object() -> None:
    events = parse_legacy_events({"summary": "One event", "importance": "2"})

    assert [e.importance for e in events] == [2]


def test_unparseable_text_fails_with_parse_error() -> None:
    outcome = parse_extraction_response("not json at all")

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, ParseError)


def test_wrong_shape_fails_with_diagnostics() -> None:
    outcome = parse_extraction_response('{"foo": 1}')

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, ValidationError)
    assert any("events" in line for line in outcome.error.diagnostics)


def test_strict_parse_raises() -> None:
    with pytest.raises(ValidationError):
        strict_parse_extraction_response('{"events": "nope"}')
    with pytest.raises(ParseError):
        strict_parse_extraction_response("")


def test_json_schema_wrapper_has_events_property() -> None:
    schema = extraction_json_schema()

    assert schema["name"] == "MemoryExtraction"
    assert "events" in schema["value"]["properties"]
