from __future__ import annotations

from typing import Iterable, Sequence

from ..memory.context import sort_memories_by_sequence
from ..memory.models import MemoryEvent, Turn
from ..memory.schemas import EVENT_TYPES, TAG_VALUES
from .json_loader import load_prompt_json

_DEFAULTS = {
    "extraction_system_prompt": (
        "You are analyzing role-play messages to extract structured memory events. "
        "Only extract events that matter for character memory and story continuity; skip mundane exchanges. "
        "Return only a JSON object of the form {{\"events\": [...], \"reasoning\": \"optional short note\"}} "
        "with no markdown and no additional commentary. "
        "Allowed event_type values: {event_types}. "
        "Allowed tags (at most 3 per event, use NONE when nothing fits): {tags}."
    ),
    "extraction_user_prompt_template": (
        "## Characters\n"
        "- Main character: {character_name}\n"
        "- User's character: {user_name}\n"
        "{character_context}"
        "{memory_context}"
        "## Messages to analyze\n{messages}\n\n"
        "## Task\n"
        "Extract NEW significant events from these messages. For each event give:\n"
        "1. event_type\n"
        "2. importance: 1-5 (1=minor detail, 3=significant, 5=story-changing)\n"
        "3. summary: 1-2 sentences\n"
        "4. characters_involved: names directly involved\n"
        "5. witnesses: names who observed it\n"
        "6. location: where it happened, or null\n"
        "7. is_secret: true when only witnesses should know\n"
        "8. emotional_impact: name -> emotional change, e.g. {{\"{character_name}\": \"growing trust\"}}\n"
        "9. relationship_impact: \"A->B\" -> change, e.g. {{\"{character_name}->{user_name}\": \"trust increased\"}}\n"
        "10. tags\n"
        "{duplicate_hint}"
        "If there are no significant events, return {{\"events\": []}}."
    ),
    "character_context_header": "## Character Context\n",
    "memory_context_header": (
        "## Previously Established Memories\n"
        "These events are already recorded. Avoid duplicating them and stay consistent with them.\n"
    ),
    "duplicate_hint": "Do NOT duplicate events from the Previously Established Memories section.\n",
    "retrieval_system_prompt": (
        "You are a narrative memory analyzer. Given the current role-play scene and a numbered list of memories, "
        "pick the memories the character should have in mind for the next reply. "
        "Return only a JSON object of the form {\"selected\": [1, 4, 7], \"reasoning\": \"short note\"} "
        "with no markdown and no additional commentary."
    ),
    "retrieval_user_prompt_template": (
        "## Current scene\n{scene}\n\n"
        "## Available memories\n{memories}\n\n"
        "## Task\n"
        "Select up to {limit} memories that would be most useful for {character_name} in the current scene. Consider:\n"
        "- importance (\u2605 minor to \u2605\u2605\u2605\u2605\u2605 critical)\n"
        "- direct relevance to the current conversation\n"
        "- relationships being discussed\n"
        "- background that explains the current situation\n"
        "- emotional continuity and secrets the character knows\n"
    ),
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("memory.json", _DEFAULTS)


def _text(key: str) -> str:
    return str(_cfg().get(key, _DEFAULTS[key]))


def format_turns(turns: Iterable[Turn], character_name: str, user_name: str) -> str:
    lines: list[str] = []
    for turn in turns:
        speaker = user_name if turn.is_user else (turn.speaker_name or character_name)
        lines.append(f"[{speaker}]: {turn.text}")
    return "\n\n".join(lines)


def format_memory_context(memories: Sequence[MemoryEvent]) -> str:
    if not memories:
        return ""
    rows = [
        f"{i}. [{memory.event_type or 'event'}] {memory.summary}"
        for i, memory in enumerate(sort_memories_by_sequence(memories), start=1)
    ]
    return _text("memory_context_header") + "\n".join(rows) + "\n\n"


def format_character_context(
    character_name: str,
    user_name: str,
    character_description: str = "",
    persona_description: str = "",
) -> str:
    if not character_description and not persona_description:
        return ""
    parts = [_text("character_context_header")]
    if character_description:
        parts.append(f"### {character_name} (AI character)\n{character_description.strip()}\n\n")
    if persona_description:
        parts.append(f"### {user_name} (user persona)\n{persona_description.strip()}\n\n")
    return "".join(parts)


def build_extraction_system_prompt() -> str:
    return _text("extraction_system_prompt").format(
        event_types=", ".join(EVENT_TYPES),
        tags=", ".join(sorted(TAG_VALUES)),
    )


def build_extraction_user_prompt(
    turns: Sequence[Turn],
    *,
    character_name: str,
    user_name: str,
    memories: Sequence[MemoryEvent] = (),
    character_description: str = "",
    persona_description: str = "",
) -> str:
    return _text("extraction_user_prompt_template").format(
        character_name=character_name,
        user_name=user_name,
        character_context=format_character_context(
            character_name, user_name, character_description, persona_description
        ),
        memory_context=format_memory_context(memories),
        messages=format_turns(turns, character_name, user_name),
        duplicate_hint=_text("duplicate_hint") if memories else "",
    )


def build_extraction_messages(
    turns: Sequence[Turn],
    *,
    character_name: str,
    user_name: str,
    memories: Sequence[MemoryEvent] = (),
    character_description: str = "",
    persona_description: str = "",
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": build_extraction_system_prompt()},
        {
            "role": "user",
            "content": build_extraction_user_prompt(
                turns,
                character_name=character_name,
                user_name=user_name,
                memories=memories,
                character_description=character_description,
                persona_description=persona_description,
            ),
        },
    ]


def format_retrieval_candidates(memories: Sequence[MemoryEvent]) -> str:
    rows = []
    for i, memory in enumerate(memories, start=1):
        secret = "[Secret] " if memory.is_secret else ""
        stars = "\u2605" * max(1, memory.importance or 3)
        rows.append(f"{i}. [{memory.event_type or 'event'}] [{stars}] {secret}{memory.summary}")
    return "\n".join(rows)


def build_retrieval_messages(
    memories: Sequence[MemoryEvent],
    *,
    scene: str,
    character_name: str,
    limit: int,
) -> list[dict[str, str]]:
    """Messages asking the LLM to pick memories by their 1-based position in `memories`."""
    return [
        {"role": "system", "content": _text("retrieval_system_prompt")},
        {
            "role": "user",
            "content": _text("retrieval_user_prompt_template").format(
                scene=scene.strip() or "(no recent messages)",
                memories=format_retrieval_candidates(memories),
                limit=max(1, int(limit)),
                character_name=character_name,
            ),
        },
    ]
