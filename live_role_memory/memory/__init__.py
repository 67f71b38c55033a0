from .backfill import BackfillOrchestrator, BackfillReport, check_and_trigger_backfill
from .models import MemoryEvent, MemoryState, Turn
from .pipeline import ExtractionGuard, ExtractionOptions, ExtractionPipeline, ExtractionResult
from .retrieval import MemoryRetriever, RetrievalOptions, RetrievalResult
from .store import InMemoryMemoryStore, SqliteMemoryStore

__all__ = [
    "BackfillOrchestrator",
    "BackfillReport",
    "ExtractionGuard",
    "ExtractionOptions",
    "ExtractionPipeline",
    "ExtractionResult",
    "InMemoryMemoryStore",
    "MemoryEvent",
    "MemoryRetriever",
    "MemoryState",
    "RetrievalOptions",
    "RetrievalResult",
    "SqliteMemoryStore",
    "Turn",
    "check_and_trigger_backfill",
]
