from __future__ import annotations

import logging
import math
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Sequence

from nltk.stem.snowball import SnowballStemmer
from pydantic import ValidationError as PydanticValidationError

from ..prompts.memory import build_retrieval_messages
from ..services.llm import RETRIEVAL, ChatClient, LLMCallConfig, call_llm
from .context import estimate_tokens, slice_to_token_budget, sort_memories_by_sequence
from .dedup import Embedder, cosine_similarity
from .errors import LLMError, ParseError
from .models import CharacterState, MemoryEvent, MemoryState, Turn
from .pov import filter_memories_by_pov
from .schemas import RetrievalResponse, retrieval_json_schema
from .store import ChatMemoryStore
from .validation import clean_llm_text, parse_json_text

logger = logging.getLogger("live_role_memory")

BASE_LAMBDA = 0.05
IMPORTANCE_5_FLOOR = 5.0
BM25_K1 = 1.2
BM25_B = 0.75
USER_MESSAGE_WINDOW = 3
USER_MESSAGE_CHARS = 1000
MEMORY_LINE_OVERHEAD_TOKENS = 5

_WORD_RE = re.compile(r"\w+")
_STEMMERS = {"english": SnowballStemmer("english"), "russian": SnowballStemmer("russian")}

STOP_WORDS = frozenset(
    """
    the and is a an in to of for with on at from by as it this that are was were be been being
    have has had do does did will would could should may might must shall can or but not no yes
    so if then than when what which who whom whose where why how all each every both few more
    most other some such only own same just also now here there about into through during before
    after above below up down out off over under again further once he she they we you i me him
    her them us my your his its our their
    и в во не что он на я с со как а то все она так его но да ты к у же вы за бы по только ее
    мне было вот от меня еще нет о из ему теперь когда даже ну вдруг ли если уже или ни быть был
    него до вас нибудь опять уж вам ведь там потом себя ничего ей может они тут где есть надо ней
    для мы тебя их чем была сам чтоб без будто чего раз тоже себе под будет ж тогда кто этот того
    потому этого какой совсем ним здесь этом один почти мой тем чтобы нее сейчас были куда зачем
    всех никогда можно при наконец два об другой хоть после над больше тот через эти нас про всего
    них какая много разве три эту моя впрочем хорошо свою этой перед иногда лучше чуть том нельзя
    такой им более всегда конечно всю между
    """.split()
)


def _script_stemmer(word: str) -> SnowballStemmer | None:
    for char in word:
        if "\u0400" <= char <= "\u04ff":
            return _STEMMERS["russian"]
    for char in word:
        if char.isalpha() and unicodedata.name(char, "").startswith("LATIN"):
            return _STEMMERS["english"]
    return None


def stem_word(word: str) -> str:
    # Cyrillic and Latin words are stemmed; other scripts pass through.
    stemmer = _script_stemmer(word)
    return stemmer.stem(word) if stemmer is not None else word


def tokenize(text: str | None) -> list[str]:
    if not text:
        return []
    return [
        stem_word(word)
        for word in _WORD_RE.findall(text.lower())
        if len(word) > 2 and word not in STOP_WORDS
    ]


def _idf(documents: Sequence[Sequence[str]]) -> tuple[dict[str, float], float]:
    total = len(documents)
    frequency: dict[str, int] = {}
    length_sum = 0
    for tokens in documents:
        length_sum += len(tokens)
        for term in set(tokens):
            frequency[term] = frequency.get(term, 0) + 1
    avg_length = length_sum / total if total else 0.0
    idf = {term: math.log((total - count + 0.5) / (count + 0.5) + 1) for term, count in frequency.items()}
    return idf, avg_length


def bm25_score(
    query_tokens: Sequence[str],
    doc_tokens: Sequence[str],
    idf: dict[str, float],
    avg_length: float,
) -> float:
    if not doc_tokens or not query_tokens or avg_length == 0:
        return 0.0
    counts: dict[str, int] = {}
    for token in doc_tokens:
        counts[token] = counts.get(token, 0) + 1
    score = 0.0
    for term in query_tokens:
        tf = counts.get(term, 0)
        if not tf:
            continue
        denominator = tf + BM25_K1 * (1 - BM25_B + BM25_B * len(doc_tokens) / avg_length)
        score += idf.get(term, 0.0) * (tf * (BM25_K1 + 1)) / denominator
    return score


@dataclass(slots=True)
class ScoringSettings:
    base_lambda: float = BASE_LAMBDA
    importance_5_floor: float = IMPORTANCE_5_FLOOR
    vector_similarity_threshold: float = 0.5
    vector_similarity_weight: float = 15.0
    keyword_match_weight: float = 1.0


@dataclass(slots=True)
class ScoreBreakdown:
    total: float
    base: float
    base_after_floor: float
    vector_bonus: float
    vector_similarity: float
    bm25_bonus: float
    bm25: float
    distance: int
    importance: int


@dataclass(slots=True)
class ScoredMemory:
    memory: MemoryEvent
    score: float
    breakdown: ScoreBreakdown


def calculate_score(
    memory: MemoryEvent,
    context_embedding: Sequence[float] | None,
    chat_length: int,
    settings: ScoringSettings | None = None,
    bm25: float = 0.0,
) -> ScoreBreakdown:
    """Forgetfulness curve plus similarity and keyword bonuses.

    `importance * exp(-lambda * distance)` with `lambda = base_lambda / importance**2`,
    distance counted in turns from the memory's newest source turn. Importance-5
    memories never score below the floor.
    """
    settings = settings or ScoringSettings()
    distance = max(0, int(chat_length) - max(memory.message_ids or [0]))
    importance = int(memory.importance or 3)
    decay_rate = settings.base_lambda / (importance * importance)
    base = importance * math.exp(-decay_rate * distance)
    base_after_floor = max(base, settings.importance_5_floor) if importance == 5 else base

    vector_bonus = 0.0
    similarity = 0.0
    if context_embedding and memory.embedding:
        similarity = cosine_similarity(context_embedding, memory.embedding)
        threshold = settings.vector_similarity_threshold
        if similarity > threshold and threshold < 1.0:
            vector_bonus = (similarity - threshold) / (1.0 - threshold) * settings.vector_similarity_weight

    bm25_bonus = bm25 * settings.keyword_match_weight
    return ScoreBreakdown(
        total=base_after_floor + vector_bonus + bm25_bonus,
        base=base,
        base_after_floor=base_after_floor,
        vector_bonus=vector_bonus,
        vector_similarity=similarity,
        bm25_bonus=bm25_bonus,
        bm25=bm25,
        distance=distance,
        importance=importance,
    )


def score_memories(
    memories: Sequence[MemoryEvent],
    context_embedding: Sequence[float] | None,
    chat_length: int,
    settings: ScoringSettings | None = None,
    query: str | Sequence[str] | None = None,
) -> list[ScoredMemory]:
    """Score every memory and return them best first."""
    query_tokens = tokenize(query) if isinstance(query, str) else list(query or [])
    doc_tokens: list[list[str]] = []
    idf: dict[str, float] = {}
    avg_length = 0.0
    if query_tokens:
        doc_tokens = [tokenize(memory.summary) for memory in memories]
        idf, avg_length = _idf(doc_tokens)

    scored: list[ScoredMemory] = []
    for position, memory in enumerate(memories):
        keyword = bm25_score(query_tokens, doc_tokens[position], idf, avg_length) if doc_tokens else 0.0
        breakdown = calculate_score(memory, context_embedding, chat_length, settings, keyword)
        scored.append(ScoredMemory(memory=memory, score=breakdown.total, breakdown=breakdown))
    scored.sort(key=lambda item: item.score, reverse=True)
    return scored


@dataclass(slots=True)
class RelationshipView:
    character: str
    trust: int
    tension: int
    relationship_type: str


def get_relationship_context(
    state: MemoryState,
    pov_character: str,
    active_characters: Sequence[str],
) -> list[RelationshipView]:
    """Relationships between the viewpoint character and anyone else present."""
    others = {name for name in active_characters if name != pov_character}
    views: list[RelationshipView] = []
    for relationship in state.relationships.values():
        pair = (relationship.character_a, relationship.character_b)
        if pov_character not in pair:
            continue
        other = relationship.character_b if relationship.character_a == pov_character else relationship.character_a
        if other not in others:
            continue
        trust, tension = relationship.rounded_levels()
        views.append(RelationshipView(other, trust, tension, relationship.relationship_type or "acquaintance"))
    return views


def _relationship_line(view: RelationshipView) -> str:
    trust = "high trust" if view.trust >= 7 else "low trust" if view.trust <= 3 else "moderate trust"
    tension = "high tension" if view.tension >= 7 else "some tension" if view.tension >= 4 else ""
    label = f"{trust}, {tension}" if tension else trust
    return f"- {view.character}: {view.relationship_type} ({label})"


def _message_label(message_ids: Sequence[int]) -> str:
    if not message_ids:
        return ""
    low, high = min(message_ids), max(message_ids)
    return f"(msg #{low}) " if low == high else f"(msgs #{low}-{high}) "


def _render_context(
    memories: Sequence[MemoryEvent],
    relationships: Sequence[RelationshipView],
    character_state: CharacterState | None,
    header_name: str,
    chat_length: int,
) -> str:
    lines = [f"[{header_name}'s Memory & State]", f"(Current message: #{chat_length})", ""]

    if character_state is not None and character_state.current_emotion not in ("", "neutral"):
        emotion = f"Emotional state: {character_state.current_emotion}"
        span = character_state.emotion_from_messages
        if span is not None:
            emotion += f" (as of msg #{span.min})" if span.min == span.max else f" (as of msgs #{span.min}-{span.max})"
        lines.extend([emotion, ""])

    if relationships:
        lines.append("Relationships with present characters:")
        lines.extend(_relationship_line(view) for view in relationships)
        lines.append("")

    if memories:
        lines.append("Relevant memories (in chronological order, ★=minor to ★★★★★=critical):")
        for i, memory in enumerate(sort_memories_by_sequence(memories), start=1):
            secret = "[Secret] " if memory.is_secret else ""
            stars = "★" * max(1, memory.importance or 3)
            lines.append(f"{i}. {_message_label(memory.message_ids)}[{stars}] {secret}{memory.summary}")

    lines.append(f"[End {header_name}'s Memory]")
    return "\n".join(lines)


def format_context_for_injection(
    memories: Sequence[MemoryEvent],
    relationships: Sequence[RelationshipView],
    character_state: CharacterState | None,
    header_name: str,
    token_budget: int,
    chat_length: int,
) -> str:
    """Prompt block with emotion, relationships and memories.

    `memories` arrive best first; when the block is over `token_budget` the
    lowest ranked memories are dropped. Kept memories are listed oldest first.
    """
    text = _render_context(memories, relationships, character_state, header_name, chat_length)
    if estimate_tokens(text) <= token_budget:
        return text

    overhead = estimate_tokens(_render_context([], relationships, character_state, header_name, chat_length))
    available = token_budget - overhead
    kept: list[MemoryEvent] = []
    used = 0
    for memory in memories:
        cost = estimate_tokens(memory.summary) + MEMORY_LINE_OVERHEAD_TOKENS
        if used + cost > available:
            break
        kept.append(memory)
        used += cost
    return _render_context(kept, relationships, character_state, header_name, chat_length)


@dataclass(slots=True)
class RetrievalOptions:
    pre_filter_tokens: int = 24000
    final_tokens: int = 12000
    smart_retrieval: bool = True
    hidden_only: bool = True
    timeout_seconds: float = RETRIEVAL.timeout_seconds
    character_name: str = "Character"
    scoring: ScoringSettings = field(default_factory=ScoringSettings)


@dataclass(slots=True)
class RetrievalResult:
    memories: list[MemoryEvent]
    context: str
    candidates: int
    mode: str


def hidden_memories(turns: Sequence[Turn], memories: Sequence[MemoryEvent]) -> list[MemoryEvent]:
    """Memories whose oldest source turn is hidden, so the prompt no longer carries it."""
    hidden_ids = {turn.index for turn in turns if turn.is_system}
    return [m for m in memories if m.message_ids and min(m.message_ids) in hidden_ids]


def recent_scene(turns: Sequence[Turn], pending_user_message: str = "") -> tuple[str, str]:
    """Visible chat text and the last few user messages used as the similarity query."""
    visible = [turn for turn in turns if not turn.is_system]
    scene = "\n".join(turn.text for turn in visible)
    user_texts = [turn.text for turn in visible if turn.is_user][-USER_MESSAGE_WINDOW:]
    if pending_user_message:
        scene += "\n\n[User is about to say]: " + pending_user_message
        user_texts = [*user_texts, pending_user_message][-USER_MESSAGE_WINDOW:]
    return scene, "\n".join(user_texts)[-USER_MESSAGE_CHARS:]


class MemoryRetriever:
    """Picks stored memories worth injecting into the next reply of the active chat."""

    def __init__(
        self,
        store: ChatMemoryStore,
        llm: ChatClient | None = None,
        options: RetrievalOptions | None = None,
        *,
        embedder: Embedder | None = None,
    ) -> None:
        self.store = store
        self.llm = llm
        self.options = options or RetrievalOptions()
        self.embedder = embedder

    def _llm_config(self) -> LLMCallConfig:
        return LLMCallConfig(
            name=RETRIEVAL.name,
            timeout_seconds=float(self.options.timeout_seconds),
            max_output_tokens=RETRIEVAL.max_output_tokens,
        )

    async def select_relevant(
        self,
        memories: Sequence[MemoryEvent],
        *,
        scene: str,
        query: str,
        chat_length: int,
        character_name: str,
    ) -> tuple[list[MemoryEvent], str]:
        """Score, cut to the pre-filter budget, then narrow to the final budget.

        The narrowing step asks the LLM when smart retrieval is on and the
        pre-filtered set does not already fit; any LLM or parse failure falls
        back to the scored order.
        """
        context_embedding = None
        if self.embedder is not None and query.strip():
            context_embedding = await self.embedder.embed(query)
        scored = score_memories(memories, context_embedding, chat_length, self.options.scoring, query)
        pre_filtered = slice_to_token_budget([item.memory for item in scored], self.options.pre_filter_tokens)
        fallback = slice_to_token_budget(pre_filtered, self.options.final_tokens)
        if not self.options.smart_retrieval or self.llm is None or len(fallback) == len(pre_filtered):
            return fallback, "scored"

        messages = build_retrieval_messages(
            pre_filtered, scene=scene, character_name=character_name, limit=len(fallback)
        )
        try:
            raw = await call_llm(self.llm, messages, self._llm_config(), json_schema=retrieval_json_schema())
            response = RetrievalResponse.model_validate(parse_json_text(clean_llm_text(raw)))
        except (LLMError, ParseError, PydanticValidationError) as exc:
            logger.warning("[memory.retrieve] smart selection failed, using scores: %s", exc)
            return fallback, "scored"

        picked: list[MemoryEvent] = []
        seen: set[int] = set()
        for position in response.selected:
            if position <= len(pre_filtered) and position not in seen:
                seen.add(position)
                picked.append(pre_filtered[position - 1])
        if not picked:
            logger.info("[memory.retrieve] LLM selected no valid memories, using scores")
            return fallback, "scored"
        logger.debug("[memory.retrieve] LLM picked %s reasoning=%r", len(picked), response.reasoning)
        return slice_to_token_budget(picked, self.options.final_tokens), "smart"

    async def retrieve(
        self,
        *,
        pov_characters: Sequence[str] = (),
        active_characters: Sequence[str] | None = None,
        pending_user_message: str = "",
    ) -> RetrievalResult | None:
        session_id = await self.store.current_session_id()
        if session_id is None:
            logger.info("[memory.retrieve] no active chat")
            return None
        turns = await self.store.get_turns(session_id)
        state = await self.store.load_state(session_id)
        if not turns or not state.memories:
            logger.info("[memory.retrieve] chat=%s nothing to retrieve", session_id)
            return None

        pool = hidden_memories(turns, state.memories) if self.options.hidden_only else list(state.memories)
        candidates = filter_memories_by_pov(pool, pov_characters, state)
        if not candidates and pool:
            logger.info("[memory.retrieve] viewpoint filter left nothing, using all %s candidates", len(pool))
            candidates = pool
        if not candidates:
            logger.info("[memory.retrieve] chat=%s no candidate memories", session_id)
            return None

        primary = pov_characters[0] if pov_characters else self.options.character_name
        header = pov_characters[0] if pov_characters else "Scene"
        active = list(active_characters) if active_characters is not None else list(state.character_states)
        scene, query = recent_scene(turns, pending_user_message)

        selected, mode = await self.select_relevant(
            candidates,
            scene=scene,
            query=query,
            chat_length=len(turns),
            character_name=primary,
        )
        if not selected:
            return None

        context = format_context_for_injection(
            selected,
            get_relationship_context(state, primary, active),
            state.character_states.get(primary),
            header,
            self.options.final_tokens,
            len(turns),
        )
        logger.info(
            "[memory.retrieve] chat=%s total=%s pool=%s candidates=%s selected=%s mode=%s",
            session_id,
            len(state.memories),
            len(pool),
            len(candidates),
            len(selected),
            mode,
        )
        return RetrievalResult(memories=selected, context=context, candidates=len(candidates), mode=mode)
