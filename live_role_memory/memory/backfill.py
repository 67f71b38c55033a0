from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from .errors import SessionChangedError, SkipReason
from .pipeline import ExtractionPipeline, GuardToken
from .scheduler import get_backfill_batches, get_backfill_stats

logger = logging.getLogger("live_role_memory")

DEFAULT_MAX_RPM = 30
DEFAULT_MAX_RETRIES = 3


class BatchState(str, Enum):
    ATTEMPT = "attempt"
    RETRY = "retry"
    SUCCESS = "success"
    GIVE_UP = "give_up"


@dataclass(slots=True)
class BatchAttempt:
    """Retry bookkeeping for one backfill batch.

    `GIVE_UP` is a terminal value, never raised: the batch is skipped and the
    run continues.
    """

    message_ids: list[int]
    max_retries: int = DEFAULT_MAX_RETRIES
    attempts: int = 0
    state: BatchState = BatchState.ATTEMPT
    errors: list[str] = field(default_factory=list)

    @property
    def pending(self) -> bool:
        return self.state in (BatchState.ATTEMPT, BatchState.RETRY)

    def record_success(self) -> BatchState:
        self.attempts += 1
        self.state = BatchState.SUCCESS
        return self.state

    def record_failure(self, error: BaseException) -> BatchState:
        self.attempts += 1
        self.errors.append(f"{type(error).__name__}: {error}")
        self.state = BatchState.RETRY if self.attempts < max(1, self.max_retries) else BatchState.GIVE_UP
        return self.state


@dataclass(slots=True)
class BackfillReport:
    status: str
    batches_total: int = 0
    batches_succeeded: int = 0
    batches_skipped: int = 0
    events_created: int = 0
    reason: str | None = None


def request_delay_seconds(max_rpm: int) -> float:
    return math.ceil(60000 / max(1, int(max_rpm))) / 1000.0


class BackfillOrchestrator:
    """Extracts every complete batch of unattributed history, oldest first.

    Batches are re-derived from persisted state after each step. A batch that
    keeps failing is skipped for the rest of the run; a chat switch aborts.
    """

    def __init__(
        self,
        pipeline: ExtractionPipeline,
        *,
        max_rpm: int = DEFAULT_MAX_RPM,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        owner: str = "backfill",
    ) -> None:
        self.pipeline = pipeline
        self.max_rpm = max(1, int(max_rpm))
        self.max_retries = max(1, int(max_retries))
        self._sleep = sleep
        self.owner = owner

    @property
    def delay_seconds(self) -> float:
        return request_delay_seconds(self.max_rpm)

    async def run(self) -> BackfillReport:
        if not self.pipeline.options.enabled:
            return BackfillReport(status="skipped", reason=SkipReason.DISABLED.value)
        guard = self.pipeline.guard
        token = guard.try_acquire(self.owner)
        if token is None:
            logger.info("[memory.backfill] skipped: extraction held by %s", guard.owner)
            return BackfillReport(status="skipped", reason=SkipReason.IN_PROGRESS.value)
        try:
            return await self._run_locked(token)
        finally:
            guard.release(token)

    async def _run_locked(self, token: GuardToken) -> BackfillReport:
        store = self.pipeline.store
        batch_size = self.pipeline.options.batch_size
        session_id = await store.current_session_id()
        if session_id is None:
            return BackfillReport(status="skipped", reason=SkipReason.NO_CONTEXT.value)

        planned = get_backfill_batches(await store.get_turns(session_id), await store.load_state(session_id), batch_size)
        if not planned:
            return BackfillReport(status="skipped", reason=SkipReason.NO_NEW_TURNS.value)

        report = BackfillReport(status="completed", batches_total=len(planned))
        skipped_ids: set[int] = set()
        requests_made = 0
        logger.info("[memory.backfill] chat=%s start batches=%s batch_size=%s", session_id, len(planned), batch_size)

        while True:
            current = await store.current_session_id()
            if current != session_id:
                return self._abort(report, SessionChangedError(session_id, current))

            turns = await store.get_turns(session_id)
            state = await store.load_state(session_id)
            batches = get_backfill_batches(turns, state, batch_size, exclude=skipped_ids)
            if not batches:
                break

            attempt = BatchAttempt(message_ids=batches[0], max_retries=self.max_retries)
            while attempt.pending:
                if requests_made:
                    await self._sleep(self.delay_seconds)
                requests_made += 1
                try:
                    result = await self.pipeline.run(message_ids=attempt.message_ids, token=token)
                except asyncio.CancelledError:
                    raise
                except SessionChangedError as exc:
                    return self._abort(report, exc)
                except Exception as exc:
                    next_state = attempt.record_failure(exc)
                    logger.warning(
                        "[memory.backfill] batch %s-%s attempt %s/%s failed: %s",
                        attempt.message_ids[0],
                        attempt.message_ids[-1],
                        attempt.attempts,
                        self.max_retries,
                        exc,
                    )
                    if next_state is BatchState.GIVE_UP:
                        logger.exception(
                            "[memory.backfill] batch %s-%s skipped after %s attempts",
                            attempt.message_ids[0],
                            attempt.message_ids[-1],
                            attempt.attempts,
                        )
                    continue
                if result.skipped:
                    # Nothing was committed; retrying would select the same turns forever.
                    attempt.record_failure(RuntimeError(f"extraction skipped: {result.reason}"))
                    attempt.state = BatchState.GIVE_UP
                    logger.warning(
                        "[memory.backfill] batch %s-%s not extracted: %s",
                        attempt.message_ids[0],
                        attempt.message_ids[-1],
                        result.reason,
                    )
                    continue
                attempt.record_success()
                report.events_created += result.events_created

            if attempt.state is BatchState.SUCCESS:
                report.batches_succeeded += 1
            else:
                report.batches_skipped += 1
                skipped_ids.update(attempt.message_ids)

        report.batches_total = max(report.batches_total, report.batches_succeeded + report.batches_skipped)
        logger.info(
            "[memory.backfill] chat=%s done succeeded=%s skipped=%s events=%s",
            session_id,
            report.batches_succeeded,
            report.batches_skipped,
            report.events_created,
        )
        return report

    @staticmethod
    def _abort(report: BackfillReport, exc: SessionChangedError) -> BackfillReport:
        logger.warning("[memory.backfill] aborted: %s", exc)
        report.status = "aborted"
        report.reason = str(exc)
        return report


async def check_and_trigger_backfill(
    orchestrator: BackfillOrchestrator,
    *,
    auto_enabled: bool = True,
) -> BackfillReport | None:
    """Start a backfill when enough unextracted history has accumulated.

    Returns None when nothing was started.
    """
    pipeline = orchestrator.pipeline
    if not auto_enabled or not pipeline.options.enabled or pipeline.guard.busy:
        return None
    store = pipeline.store
    session_id = await store.current_session_id()
    if session_id is None:
        return None
    stats = get_backfill_stats(
        await store.get_turns(session_id),
        await store.load_state(session_id),
        pipeline.options.batch_size,
    )
    if stats.complete_batches < 1:
        return None
    logger.info(
        "[memory.backfill] auto trigger chat=%s complete_batches=%s unextracted=%s",
        session_id,
        stats.complete_batches,
        stats.total_unextracted,
    )
    return await orchestrator.run()
