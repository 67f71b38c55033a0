from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Sequence

from ..prompts.memory import build_extraction_messages
from ..services.llm import EXTRACTION, ChatClient, LLMCallConfig, call_llm
from .context import select_memories_for_extraction
from .decay import DecayCurve, IntervalDecay
from .dedup import DEFAULT_SIMILARITY_THRESHOLD, Embedder, enrich_events_with_embeddings, filter_similar_events
from .errors import ExtractionBusyError, SessionChangedError, SkipReason
from .merger import commit_events, enrich_events
from .scheduler import select_turns
from .schemas import extraction_json_schema
from .store import ChatMemoryStore
from .validation import Failed, Legacy, parse_extraction_response

logger = logging.getLogger("live_role_memory")


@dataclass(slots=True)
class ExtractionOptions:
    enabled: bool = True
    batch_size: int = 10
    rearview_tokens: int = 12000
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    timeout_seconds: float = EXTRACTION.timeout_seconds
    max_output_tokens: int = EXTRACTION.max_output_tokens
    structured_output: bool = True
    character_name: str = "Character"
    user_name: str = "User"
    character_description: str = ""
    persona_description: str = ""


@dataclass(slots=True)
class ExtractionResult:
    status: str
    events_created: int = 0
    messages_processed: int = 0
    reason: SkipReason | None = None
    batch_id: str | None = None
    message_ids: list[int] = field(default_factory=list)
    parse_mode: str | None = None

    @classmethod
    def skip(cls, reason: SkipReason) -> "ExtractionResult":
        return cls(status="skipped", reason=reason)

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"


@dataclass(frozen=True, slots=True)
class GuardToken:
    owner: str
    run_id: str


class ExtractionGuard:
    """Single-owner guard around extraction work.

    Not reentrant by owner name: every acquisition gets a fresh token, and only
    work that presents the current token runs under an existing hold (a
    backfill run drives many single extractions this way). Everyone else is
    refused while it is held.
    """

    def __init__(self) -> None:
        self._token: GuardToken | None = None

    @property
    def owner(self) -> str | None:
        return self._token.owner if self._token is not None else None

    @property
    def busy(self) -> bool:
        return self._token is not None

    def holds(self, token: GuardToken | None) -> bool:
        return token is not None and self._token is token

    def try_acquire(self, owner: str) -> GuardToken | None:
        if self._token is not None:
            return None
        self._token = GuardToken(owner=owner, run_id=uuid.uuid4().hex)
        return self._token

    def acquire(self, owner: str) -> GuardToken:
        token = self.try_acquire(owner)
        if token is None:
            raise ExtractionBusyError(str(self.owner))
        return token

    def release(self, token: GuardToken) -> None:
        if self._token is not token:
            raise RuntimeError(f"guard released by {token.owner!r} but held by {self.owner!r}")
        self._token = None


class ExtractionPipeline:
    """One extraction run against the active chat: select, prompt, validate, dedup, commit."""

    def __init__(
        self,
        store: ChatMemoryStore,
        llm: ChatClient,
        options: ExtractionOptions | None = None,
        *,
        embedder: Embedder | None = None,
        decay_curve: DecayCurve | None = None,
        guard: ExtractionGuard | None = None,
    ) -> None:
        self.store = store
        self.llm = llm
        self.options = options or ExtractionOptions()
        self.embedder = embedder
        self.decay_curve = decay_curve or IntervalDecay()
        self.guard = guard or ExtractionGuard()

    def _llm_config(self) -> LLMCallConfig:
        return LLMCallConfig(
            name=EXTRACTION.name,
            timeout_seconds=float(self.options.timeout_seconds),
            max_output_tokens=int(self.options.max_output_tokens),
        )

    async def run(
        self,
        *,
        message_ids: Sequence[int] | None = None,
        owner: str = "extract",
        token: GuardToken | None = None,
    ) -> ExtractionResult:
        """Run one extraction.

        Overlapping calls are refused with `IN_PROGRESS`. A caller that already
        holds the guard passes its `token` to run under that hold.
        """
        if not self.options.enabled:
            return ExtractionResult.skip(SkipReason.DISABLED)
        if self.guard.holds(token):
            return await self._run_locked(message_ids)
        held = self.guard.try_acquire(owner)
        if held is None:
            logger.info("[memory.extract] skipped: extraction held by %s", self.guard.owner)
            return ExtractionResult.skip(SkipReason.IN_PROGRESS)
        try:
            return await self._run_locked(message_ids)
        finally:
            self.guard.release(held)

    async def _run_locked(self, message_ids: Sequence[int] | None) -> ExtractionResult:
        session_id = await self.store.current_session_id()
        if session_id is None:
            return ExtractionResult.skip(SkipReason.NO_CONTEXT)

        turns = await self.store.get_turns(session_id)
        state = await self.store.load_state(session_id)
        selection = select_turns(turns, state, self.options.batch_size, message_ids)
        if selection.skipped:
            logger.debug("[memory.extract] chat=%s skipped reason=%s", session_id, selection.skip_reason)
            return ExtractionResult.skip(selection.skip_reason or SkipReason.NO_NEW_TURNS)

        batch_ids = selection.message_ids
        started = time.perf_counter()
        context_memories = select_memories_for_extraction(state.memories, self.options.rearview_tokens)
        messages = build_extraction_messages(
            selection.turns,
            character_name=self.options.character_name,
            user_name=self.options.user_name,
            memories=context_memories,
            character_description=self.options.character_description,
            persona_description=self.options.persona_description,
        )
        raw = await call_llm(
            self.llm,
            messages,
            self._llm_config(),
            json_schema=extraction_json_schema() if self.options.structured_output else None,
        )

        outcome = parse_extraction_response(raw)
        if isinstance(outcome, Failed):
            raise outcome.error
        parse_mode = "legacy" if isinstance(outcome, Legacy) else "structured"

        batch_id = f"batch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        events = enrich_events(outcome.events, batch_ids, batch_id)
        if events:
            await enrich_events_with_embeddings(events, self.embedder)
        accepted = filter_similar_events(events, state.memories, self.options.similarity_threshold)
        commit_events(state, accepted, batch_ids, decay_curve=self.decay_curve)

        current = await self.store.current_session_id()
        if current != session_id:
            raise SessionChangedError(session_id, current)
        if not await self.store.save(session_id, state, expected_session_id=session_id):
            raise SessionChangedError(session_id, await self.store.current_session_id())

        logger.info(
            "[memory.extract] chat=%s turns=%s candidates=%s accepted=%s mode=%s context_memories=%s latency_ms=%s",
            session_id,
            len(batch_ids),
            len(events),
            len(accepted),
            parse_mode,
            len(context_memories),
            int((time.perf_counter() - started) * 1000),
        )
        return ExtractionResult(
            status="success",
            events_created=len(accepted),
            messages_processed=len(batch_ids),
            batch_id=batch_id,
            message_ids=list(batch_ids),
            parse_mode=parse_mode,
        )
