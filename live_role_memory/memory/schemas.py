from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field


class MemoryTag(str, Enum):
    COMBAT = "COMBAT"
    ROMANCE = "ROMANCE"
    INTIMACY = "INTIMACY"
    EXPLICIT = "EXPLICIT"
    VIOLENCE = "VIOLENCE"
    INJURY = "INJURY"
    DEATH = "DEATH"
    BETRAYAL = "BETRAYAL"
    SECRET = "SECRET"
    REVELATION = "REVELATION"
    CONFESSION = "CONFESSION"
    CONFLICT = "CONFLICT"
    RECONCILIATION = "RECONCILIATION"
    FRIENDSHIP = "FRIENDSHIP"
    ALLIANCE = "ALLIANCE"
    DECEPTION = "DECEPTION"
    HUMOR = "HUMOR"
    GRIEF = "GRIEF"
    FEAR = "FEAR"
    JOY = "JOY"
    ANGER = "ANGER"
    TRAVEL = "TRAVEL"
    DISCOVERY = "DISCOVERY"
    MYSTERY = "MYSTERY"
    MAGIC = "MAGIC"
    TRADE = "TRADE"
    PLANNING = "PLANNING"
    RITUAL = "RITUAL"
    PROMISE = "PROMISE"
    FLASHBACK = "FLASHBACK"
    NONE = "NONE"


TAG_VALUES: frozenset[str] = frozenset(tag.value for tag in MemoryTag)
MAX_TAGS = 3

EVENT_TYPES: tuple[str, ...] = ("action", "revelation", "emotion_shift", "relationship_change")
DEFAULT_EVENT_TYPE = "action"


class ExtractedEvent(BaseModel):
    """One candidate event as returned by the extraction LLM."""

    model_config = ConfigDict(extra="ignore")

    summary: str = Field(min_length=1)
    event_type: str | None = None
    importance: int = Field(default=3, ge=1, le=5)
    characters_involved: list[str] = Field(default_factory=list)
    witnesses: list[str] = Field(default_factory=list)
    location: str | None = None
    is_secret: bool = False
    emotional_impact: dict[str, str] = Field(default_factory=dict)
    relationship_impact: dict[str, str] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=lambda: [MemoryTag.NONE.value], max_length=MAX_TAGS)


class ExtractionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    events: list[ExtractedEvent]
    reasoning: str | None = None


def extraction_json_schema() -> dict[str, Any]:
    return {
        "name": "MemoryExtraction",
        "strict": True,
        "value": ExtractionResponse.model_json_schema(),
    }


class RetrievalResponse(BaseModel):
    """Memories picked by the retrieval LLM, as 1-based positions in the offered list."""

    model_config = ConfigDict(extra="ignore")

    reasoning: str | None = None
    selected: list[Annotated[int, Field(ge=1)]]


def retrieval_json_schema() -> dict[str, Any]:
    return {
        "name": "MemoryRetrieval",
        "strict": True,
        "value": RetrievalResponse.model_json_schema(),
    }
