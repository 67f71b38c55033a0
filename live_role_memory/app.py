from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Sequence

from .config import Settings
from .memory.backfill import BackfillOrchestrator, check_and_trigger_backfill
from .memory.errors import MemoryPipelineError
from .memory.models import Turn
from .memory.pipeline import ExtractionPipeline
from .memory.retrieval import MemoryRetriever
from .memory.scheduler import get_backfill_stats
from .memory.store import SqliteMemoryStore
from .services.embeddings import OllamaEmbeddingClient, generate_embeddings_for_memories
from .services.gemini_client import GeminiClient
from .services.ollama_chat_client import OllamaChatClient

logger = logging.getLogger("live_role_memory")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_llm_client(settings: Settings) -> OllamaChatClient | GeminiClient:
    if settings.llm_backend == "gemini":
        return GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            timeout_seconds=settings.extraction_timeout_seconds,
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_output_tokens,
            base_url=settings.gemini_base_url,
        )
    return OllamaChatClient(
        base_url=settings.ollama_base_url,
        model=settings.ollama_model,
        timeout_seconds=settings.extraction_timeout_seconds,
        temperature=settings.llm_temperature,
        max_output_tokens=settings.llm_max_output_tokens,
    )


def build_embedder(settings: Settings) -> OllamaEmbeddingClient | None:
    if not settings.embedding_enabled:
        return None
    return OllamaEmbeddingClient(
        base_url=settings.embedding_base_url,
        model=settings.embedding_model,
        timeout_seconds=settings.retrieval_timeout_seconds,
    )


def build_pipeline(
    settings: Settings,
    store: SqliteMemoryStore,
    llm: OllamaChatClient | GeminiClient,
    embedder: OllamaEmbeddingClient | None = None,
) -> ExtractionPipeline:
    return ExtractionPipeline(
        store,
        llm,
        settings.extraction_options(),
        embedder=embedder,
        decay_curve=settings.decay_curve(),
    )


def read_chat_jsonl(path: Path) -> list[Turn]:
    """Turns from a chat export: one JSON object per line, metadata lines without text are skipped."""
    turns: list[Turn] = []
    with path.open(encoding="utf-8-sig") as handle:
        for line_no, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{line_no}: invalid JSON ({exc})") from exc
            if not isinstance(row, dict) or ("mes" not in row and "text" not in row):
                continue
            turns.append(Turn.from_dict(row, index=len(turns)))
    return turns


def _parse_ids(raw: str | None) -> list[int] | None:
    if not raw:
        return None
    return [int(chunk) for chunk in raw.split(",") if chunk.strip()]


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


async def _retrieve(args: argparse.Namespace, settings: Settings, store: SqliteMemoryStore) -> int:
    options = settings.retrieval_options()
    options.hidden_only = not args.include_visible
    embedder = build_embedder(settings)
    llm = build_llm_client(settings) if options.smart_retrieval else None
    await store.activate_chat(str(args.chat_id))
    try:
        if llm is not None:
            await llm.start()
        retriever = MemoryRetriever(store, llm, options, embedder=embedder)
        result = await retriever.retrieve(
            pov_characters=args.pov,
            active_characters=args.active,
            pending_user_message=args.message,
        )
    finally:
        if llm is not None:
            await llm.close()
        if embedder is not None:
            await embedder.close()
    if result is None:
        logger.info("No memories to inject for chat=%s", args.chat_id)
        return 0
    print(result.context)
    return 0


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    store = SqliteMemoryStore(settings.sqlite_path)
    await store.init()
    chat_id = str(args.chat_id)

    if args.command == "import":
        turns = read_chat_jsonl(Path(args.path))
        count = await store.import_turns(chat_id, turns)
        await store.activate_chat(chat_id)
        logger.info("Imported %s turns into chat=%s", count, chat_id)
        return 0

    if args.command == "stats":
        turns = await store.get_turns(chat_id)
        state = await store.load_state(chat_id)
        stats = get_backfill_stats(turns, state, settings.messages_per_extraction)
        _print_json(
            {
                "chat_id": chat_id,
                "turns": len(turns),
                "memories": len(state.memories),
                "characters": len(state.character_states),
                "relationships": len(state.relationships),
                "relationship_levels": {
                    key: dict(zip(("trust", "tension"), rel.rounded_levels()))
                    for key, rel in state.relationships.items()
                },
                "last_processed_message_id": state.last_processed_message_id,
                "complete_batches": stats.complete_batches,
                "total_unextracted": stats.total_unextracted,
                "extracted_count": stats.extracted_count,
            }
        )
        return 0

    if args.command == "edit":
        fields: dict[str, Any] = {}
        if args.summary is not None:
            fields["summary"] = args.summary
        if args.importance is not None:
            fields["importance"] = args.importance
        memory = await store.update_memory(chat_id, args.memory_id, **fields)
        if memory is None:
            logger.error("Memory %s not found in chat=%s", args.memory_id, chat_id)
            return 1
        _print_json(memory.to_dict())
        return 0

    if args.command == "delete":
        deleted = await store.delete_memory(chat_id, args.memory_id)
        if not deleted:
            logger.error("Memory %s not found in chat=%s", args.memory_id, chat_id)
            return 1
        return 0

    if args.command == "retrieve":
        return await _retrieve(args, settings, store)

    embedder = build_embedder(settings)
    if args.command == "embed":
        if embedder is None:
            logger.error("EMBEDDING_ENABLED is off")
            return 1
        try:
            state = await store.load_state(chat_id)
            filled = await generate_embeddings_for_memories(state.memories, embedder)
            await store.save(chat_id, state)
        finally:
            await embedder.close()
        logger.info("Generated %s embeddings for chat=%s", filled, chat_id)
        return 0

    llm = build_llm_client(settings)
    pipeline = build_pipeline(settings, store, llm, embedder)
    orchestrator = BackfillOrchestrator(
        pipeline,
        max_rpm=settings.backfill_max_rpm,
        max_retries=settings.backfill_max_retries,
    )
    await store.activate_chat(chat_id)
    try:
        await llm.start()
        if args.command == "extract":
            result = await pipeline.run(message_ids=_parse_ids(args.message_ids))
            _print_json(
                {
                    "status": result.status,
                    "reason": result.reason,
                    "events_created": result.events_created,
                    "messages_processed": result.messages_processed,
                    "batch_id": result.batch_id,
                }
            )
            report = await check_and_trigger_backfill(orchestrator, auto_enabled=settings.auto_backfill_enabled)
            if report is None:
                return 0
        else:
            report = await orchestrator.run()
        _print_json(
            {
                "status": report.status,
                "reason": report.reason,
                "batches_total": report.batches_total,
                "batches_succeeded": report.batches_succeeded,
                "batches_skipped": report.batches_skipped,
                "events_created": report.events_created,
            }
        )
        return 0 if report.status != "aborted" else 2
    finally:
        await llm.close()
        if embedder is not None:
            await embedder.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="live_role_memory",
        description="Extract role-play memories from chat history into a local store.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="Import a chat JSONL export as turns.")
    imp.add_argument("path")
    imp.add_argument("--chat-id", required=True)

    extract = sub.add_parser("extract", help="Run one extraction over new turns.")
    extract.add_argument("--chat-id", required=True)
    extract.add_argument("--message-ids", default=None, help="Comma-separated turn indices to extract.")

    backfill = sub.add_parser("backfill", help="Extract all complete batches of unextracted history.")
    backfill.add_argument("--chat-id", required=True)

    stats = sub.add_parser("stats", help="Show extraction progress for a chat.")
    stats.add_argument("--chat-id", required=True)

    edit = sub.add_parser("edit", help="Edit a stored memory.")
    edit.add_argument("--chat-id", required=True)
    edit.add_argument("--memory-id", required=True)
    edit.add_argument("--summary", default=None)
    edit.add_argument("--importance", type=int, default=None)

    delete = sub.add_parser("delete", help="Delete a stored memory.")
    delete.add_argument("--chat-id", required=True)
    delete.add_argument("--memory-id", required=True)

    embed = sub.add_parser("embed", help="Generate missing embeddings for stored memories.")
    embed.add_argument("--chat-id", required=True)

    retrieve = sub.add_parser("retrieve", help="Print the memory block to inject for the next reply.")
    retrieve.add_argument("--chat-id", required=True)
    retrieve.add_argument("--pov", action="append", default=[], help="Viewpoint character; repeatable.")
    retrieve.add_argument("--active", action="append", default=None, help="Character present in the scene; repeatable.")
    retrieve.add_argument("--message", default="", help="User message about to be sent.")
    retrieve.add_argument(
        "--include-visible",
        action="store_true",
        help="Also consider memories whose turns are not hidden from the prompt.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    settings.validate()
    try:
        return asyncio.run(run_command(args, settings))
    except MemoryPipelineError as exc:
        logger.error("Extraction failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting.")
        return 130
