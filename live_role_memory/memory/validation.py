from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Union

import json_repair
from pydantic import ValidationError as PydanticValidationError

from .errors import ParseError, ValidationError
from .schemas import (
    DEFAULT_EVENT_TYPE,
    EVENT_TYPES,
    MAX_TAGS,
    TAG_VALUES,
    ExtractedEvent,
    ExtractionResponse,
    MemoryTag,
)

logger = logging.getLogger("live_role_memory")

_THINK_TAG_NAMES = "think|thinking|reasoning|thought|thoughts|reflection"
_ANGLE_BLOCK_RE = re.compile(rf"<({_THINK_TAG_NAMES})\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_ANGLE_ORPHAN_CLOSE_RE = re.compile(rf"^.*?</(?:{_THINK_TAG_NAMES})\s*>", re.IGNORECASE | re.DOTALL)
_ANGLE_UNCLOSED_RE = re.compile(rf"<(?:{_THINK_TAG_NAMES})\b[^>]*>(?![\s\S]*</)[^\[{{]*", re.IGNORECASE)
_BRACKET_BLOCK_RE = re.compile(rf"\[({_THINK_TAG_NAMES})\].*?\[/\1\]", re.IGNORECASE | re.DOTALL)
_ASTERISK_MARKER_RE = re.compile(r"(?m)^\s*\*(?:thinks?|thinking|thought)\s*:[^*]*\*\s*$", re.IGNORECASE)
_PAREN_MARKER_RE = re.compile(r"(?m)^\s*\((?:thinks?|thinking|thought)\s*:[^)]*\)\s*$", re.IGNORECASE)
_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)


@dataclass(slots=True)
class Structured:
    events: list[ExtractedEvent]
    reasoning: str | None = None


@dataclass(slots=True)
class Legacy:
    events: list[ExtractedEvent]


@dataclass(slots=True)
class Failed:
    error: ParseError | ValidationError


ParseOutcome = Union[Structured, Legacy, Failed]


@dataclass(slots=True)
class TagSanitizeResult:
    tags: list[str]
    rejected: list[str] = field(default_factory=list)
    truncated: list[str] = field(default_factory=list)
    fallback_used: bool = False

    @property
    def corrected(self) -> bool:
        return bool(self.rejected or self.truncated or self.fallback_used)


def strip_thinking_tags(text: str) -> str:
    """Remove chain-of-thought blocks that some models emit before the payload."""
    cleaned = str(text or "")
    cleaned = _ANGLE_BLOCK_RE.sub("", cleaned)
    cleaned = _BRACKET_BLOCK_RE.sub("", cleaned)
    # A closing tag with no opener means the opener was part of the prompt.
    cleaned = _ANGLE_ORPHAN_CLOSE_RE.sub("", cleaned, count=1)
    cleaned = _ANGLE_UNCLOSED_RE.sub("", cleaned)
    cleaned = _ASTERISK_MARKER_RE.sub("", cleaned)
    cleaned = _PAREN_MARKER_RE.sub("", cleaned)
    return cleaned.strip()


def strip_markdown_fence(text: str) -> str:
    cleaned = str(text or "").strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    if cleaned and cleaned[0] not in "[{":
        starts = [pos for pos in (cleaned.find("{"), cleaned.find("[")) if pos >= 0]
        if starts:
            start = min(starts)
            end = max(cleaned.rfind("}"), cleaned.rfind("]"))
            if end > start:
                cleaned = cleaned[start : end + 1].strip()
    return cleaned


def clean_llm_text(raw_text: str) -> str:
    return strip_markdown_fence(strip_thinking_tags(raw_text))


def parse_json_text(text: str) -> dict[str, Any] | list[Any]:
    if not str(text or "").strip():
        raise ParseError("JSON parse failed: empty content")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("[memory.extract] malformed JSON (%s), attempting repair", exc)
        try:
            parsed = json_repair.repair_json(text, return_objects=True)
        except Exception as repair_exc:
            raise ParseError(f"JSON parse failed: {exc}") from repair_exc
        if parsed in ("", None):
            raise ParseError(f"JSON parse failed: {exc}")
        logger.info("[memory.extract] repaired malformed JSON")
    if not isinstance(parsed, (dict, list)):
        raise ParseError(f"JSON parse returned non-object/array: {type(parsed).__name__}")
    return parsed


def sanitize_tags(raw: object) -> TagSanitizeResult:
    if isinstance(raw, str):
        values = [chunk for chunk in re.split(r"[,|;]", raw)]
    elif isinstance(raw, (list, tuple)):
        values = [str(item) for item in raw if item is not None]
    else:
        values = []

    accepted: list[str] = []
    rejected: list[str] = []
    for value in values:
        tag = value.strip().upper().replace(" ", "_")
        if not tag:
            continue
        if tag not in TAG_VALUES:
            rejected.append(value)
            continue
        if tag not in accepted:
            accepted.append(tag)

    if len(accepted) > 1 and MemoryTag.NONE.value in accepted:
        accepted.remove(MemoryTag.NONE.value)
    truncated = accepted[MAX_TAGS:]
    accepted = accepted[:MAX_TAGS]
    fallback_used = not accepted
    if fallback_used:
        accepted = [MemoryTag.NONE.value]
    return TagSanitizeResult(tags=accepted, rejected=rejected, truncated=truncated, fallback_used=fallback_used)


def _normalize_event_type(raw: object) -> str:
    value = str(raw or "").strip().lower().replace(" ", "_").replace("-", "_")
    if value in EVENT_TYPES:
        return value
    if value:
        logger.info("[memory.extract] unknown event_type=%r, using %s", raw, DEFAULT_EVENT_TYPE)
    return DEFAULT_EVENT_TYPE


def _sanitize_event_dict(item: dict[str, Any], position: int) -> dict[str, Any]:
    cleaned = dict(item)
    if "tags" in cleaned:
        result = sanitize_tags(cleaned.get("tags"))
        if result.corrected:
            logger.info(
                "[memory.tags] event=%s raw=%r -> %s (rejected=%s truncated=%s fallback=%s)",
                position,
                cleaned.get("tags"),
                result.tags,
                result.rejected,
                result.truncated,
                result.fallback_used,
            )
        cleaned["tags"] = result.tags
    if "event_type" in cleaned:
        cleaned["event_type"] = _normalize_event_type(cleaned.get("event_type"))
    return cleaned


def _format_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    diagnostics: list[str] = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()))
        diagnostics.append(f"{loc or '<root>'}: {error.get('msg', 'invalid')}")
    return diagnostics


def validate_extraction_response(parsed: object) -> ExtractionResponse:
    if not isinstance(parsed, dict):
        raise ValidationError(
            "Schema validation failed",
            [f"<root>: expected object with 'events', got {type(parsed).__name__}"],
        )
    payload = dict(parsed)
    events = payload.get("events")
    if isinstance(events, list):
        payload["events"] = [
            _sanitize_event_dict(item, i) if isinstance(item, dict) else item for i, item in enumerate(events)
        ]
    try:
        return ExtractionResponse.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError("Schema validation failed", _format_pydantic_errors(exc)) from exc


def _string_list(value: object) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    out: list[str] = []
    for item in value:
        text = str(item or "").strip()
        if text and text not in out:
            out.append(text)
    return out


def _string_map(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, str] = {}
    for key, raw in value.items():
        name = str(key or "").strip()
        text = str(raw or "").strip() if not isinstance(raw, (dict, list)) else ""
        if name and text:
            out[name] = text
    return out


def _coerce_importance(value: object) -> int:
    try:
        importance = int(round(float(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        importance = 3
    return max(1, min(5, importance or 3))


def _coerce_legacy_event(item: dict[str, Any], position: int) -> ExtractedEvent | None:
    summary = str(item.get("summary") or "").strip()
    if not summary:
        logger.info("[memory.extract] legacy event %s dropped: missing summary", position)
        return None
    location = item.get("location")
    location_text = str(location).strip() if location is not None else ""
    characters = _string_list(item.get("characters_involved"))
    tags = sanitize_tags(item.get("tags")).tags if "tags" in item else [MemoryTag.NONE.value]
    return ExtractedEvent(
        summary=summary,
        event_type=_normalize_event_type(item.get("event_type")) if item.get("event_type") else None,
        importance=_coerce_importance(item.get("importance", 3)),
        characters_involved=characters,
        witnesses=_string_list(item.get("witnesses")) or list(characters),
        location=location_text or None,
        is_secret=bool(item.get("is_secret", False)),
        emotional_impact=_string_map(item.get("emotional_impact")),
        relationship_impact=_string_map(item.get("relationship_impact")),
        tags=tags,
    )


def parse_legacy_events(parsed: object) -> list[ExtractedEvent]:
    """Looser path for older response shapes: a bare array, an `events` wrapper or one event."""
    if isinstance(parsed, list):
        items = parsed
    elif isinstance(parsed, dict) and isinstance(parsed.get("events"), list):
        items = parsed["events"]
    elif isinstance(parsed, dict) and "summary" in parsed:
        items = [parsed]
    else:
        raise ValidationError("Legacy parse failed", ["<root>: expected an array of events or {events: [...]}"])

    events: list[ExtractedEvent] = []
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            logger.info("[memory.extract] legacy event %s dropped: not an object", position)
            continue
        event = _coerce_legacy_event(item, position)
        if event is not None:
            events.append(event)
    return events


def parse_extraction_response(raw_text: str) -> ParseOutcome:
    try:
        parsed = parse_json_text(clean_llm_text(raw_text))
    except ParseError as exc:
        logger.warning("[memory.extract] %s", exc)
        return Failed(exc)

    try:
        response = validate_extraction_response(parsed)
    except ValidationError as exc:
        logger.warning("[memory.extract] structured validation failed, falling back to legacy parser: %s", exc)
        try:
            return Legacy(events=parse_legacy_events(parsed))
        except ValidationError:
            return Failed(exc)
    return Structured(events=list(response.events), reasoning=response.reasoning)


def strict_parse_extraction_response(raw_text: str) -> ExtractionResponse:
    return validate_extraction_response(parse_json_text(clean_llm_text(raw_text)))
