from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from live_role_memory.config import Settings  # noqa: E402
from live_role_memory.memory.decay import IntervalDecay  # noqa: E402


_ENV_NAMES = (
    "MEMORY_ENABLED",
    "EXTRACTION_ENABLED",
    "MESSAGES_PER_EXTRACTION",
    "EXTRACTION_BATCH_SIZE",
    "EXTRACTION_REARVIEW_TOKENS",
    "DEDUP_SIMILARITY_THRESHOLD",
    "BACKFILL_MAX_RPM",
    "BACKFILL_MAX_RETRIES",
    "AUTO_BACKFILL_ENABLED",
    "RELATIONSHIP_DECAY_INTERVAL",
    "TENSION_DECAY_RATE",
    "TRUST_DECAY_RATE",
    "EXTRACTION_TIMEOUT_SECONDS",
    "RETRIEVAL_TIMEOUT_SECONDS",
    "RETRIEVAL_PRE_FILTER_TOKENS",
    "RETRIEVAL_FINAL_TOKENS",
    "SMART_RETRIEVAL_ENABLED",
    "VECTOR_SIMILARITY_THRESHOLD",
    "VECTOR_SIMILARITY_WEIGHT",
    "LLM_BACKEND",
    "OLLAMA_BASE_URL",
    "OLLAMA_MODEL",
    "GEMINI_API_KEY",
    "GEMINI_BASE_URL",
    "GEMINI_MODEL",
    "LLM_TEMPERATURE",
    "LLM_MAX_OUTPUT_TOKENS",
    "EMBEDDING_ENABLED",
    "EMBEDDING_BASE_URL",
    "EMBEDDING_MODEL",
    "SQLITE_PATH",
    "CHARACTER_NAME",
    "USER_NAME",
    "CHARACTER_DESCRIPTION",
    "PERSONA_DESCRIPTION",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(f"\ufeff{name}", raising=False)
    return monkeypatch


def test_defaults(clean_env: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()
    settings.validate()

    assert settings.memory_enabled is True
    assert settings.messages_per_extraction == 10
    assert settings.extraction_rearview_tokens == 12000
    assert settings.dedup_similarity_threshold == 0.85
    assert settings.backfill_max_rpm == 30
    assert settings.auto_backfill_enabled is False
    assert settings.llm_backend == "ollama"
    assert settings.embedding_base_url == settings.ollama_base_url
    assert settings.sqlite_path == Path("./data/role_memory.db")


def test_aliases_and_overrides(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("EXTRACTION_ENABLED", "0")
    clean_env.setenv("EXTRACTION_BATCH_SIZE", "6")
    clean_env.setenv("\ufeffCHARACTER_NAME", "Seraphina")
    clean_env.setenv("OLLAMA_BASE_URL", "http://gpu-box:11434")
    clean_env.setenv("LLM_BACKEND", " GEMINI ")
    clean_env.setenv("GEMINI_API_KEY", "key")
    clean_env.setenv("BACKFILL_MAX_RPM", "not-a-number")

    settings = Settings.from_env()
    settings.validate()

    assert settings.memory_enabled is False
    assert settings.messages_per_extraction == 6
    assert settings.character_name == "Seraphina"
    assert settings.embedding_base_url == "http://gpu-box:11434"
    assert settings.llm_backend == "gemini"
    assert settings.backfill_max_rpm == 30


def test_primary_name_wins_over_alias(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("MESSAGES_PER_EXTRACTION", "4")
    clean_env.setenv("EXTRACTION_BATCH_SIZE", "9")

    assert Settings.from_env().messages_per_extraction == 4


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("MESSAGES_PER_EXTRACTION", "0", "MESSAGES_PER_EXTRACTION"),
        ("DEDUP_SIMILARITY_THRESHOLD", "1.5", "DEDUP_SIMILARITY_THRESHOLD"),
        ("BACKFILL_MAX_RETRIES", "0", "BACKFILL_MAX_RETRIES"),
        ("RELATIONSHIP_DECAY_INTERVAL", "0", "RELATIONSHIP_DECAY_INTERVAL"),
        ("LLM_BACKEND", "openai", "LLM_BACKEND"),
        ("LLM_BACKEND", "gemini", "GEMINI_API_KEY"),
        ("LLM_MAX_OUTPUT_TOKENS", "100", "LLM_MAX_OUTPUT_TOKENS"),
        ("EXTRACTION_TIMEOUT_SECONDS", "1", "EXTRACTION_TIMEOUT_SECONDS"),
        ("RETRIEVAL_FINAL_TOKENS", "30000", "RETRIEVAL_PRE_FILTER_TOKENS"),
        ("VECTOR_SIMILARITY_THRESHOLD", "1", "VECTOR_SIMILARITY_THRESHOLD"),
    ],
)
def test_validate_rejects_bad_values(clean_env: pytest.MonkeyPatch, name: str, value: str, message: str) -> None:
    clean_env.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()


def test_derived_options(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("MESSAGES_PER_EXTRACTION", "8")
    clean_env.setenv("RELATIONSHIP_DECAY_INTERVAL", "25")
    clean_env.setenv("TRUST_DECAY_RATE", "0.2")
    clean_env.setenv("USER_NAME", "Traveler")

    settings = Settings.from_env()
    options = settings.extraction_options()

    assert options.batch_size == 8
    assert options.user_name == "Traveler"
    assert options.timeout_seconds == 120.0
    assert settings.decay_curve() == IntervalDecay(interval=25, tension_rate=0.5, trust_rate=0.2)


def test_retrieval_options(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("RETRIEVAL_FINAL_TOKENS", "2000")
    clean_env.setenv("SMART_RETRIEVAL_ENABLED", "0")
    clean_env.setenv("VECTOR_SIMILARITY_WEIGHT", "10")
    clean_env.setenv("CHARACTER_NAME", "Seraphina")

    settings = Settings.from_env()
    settings.validate()
    options = settings.retrieval_options()

    assert options.pre_filter_tokens == 24000
    assert options.final_tokens == 2000
    assert options.smart_retrieval is False
    assert options.timeout_seconds == 60.0
    assert options.character_name == "Seraphina"
    assert options.scoring.vector_similarity_threshold == 0.5
    assert options.scoring.vector_similarity_weight == 10.0
