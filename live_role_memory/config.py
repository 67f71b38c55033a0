from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .memory.decay import IntervalDecay
from .memory.pipeline import ExtractionOptions
from .memory.retrieval import RetrievalOptions, ScoringSettings


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    memory_enabled: bool
    messages_per_extraction: int
    extraction_rearview_tokens: int
    dedup_similarity_threshold: float
    backfill_max_rpm: int
    backfill_max_retries: int
    auto_backfill_enabled: bool

    relationship_decay_interval: int
    tension_decay_rate: float
    trust_decay_rate: float

    extraction_timeout_seconds: int
    retrieval_timeout_seconds: int

    retrieval_pre_filter_tokens: int
    retrieval_final_tokens: int
    smart_retrieval_enabled: bool
    vector_similarity_threshold: float
    vector_similarity_weight: float

    llm_backend: str
    ollama_base_url: str
    ollama_model: str
    gemini_api_key: str
    gemini_base_url: str
    gemini_model: str
    llm_temperature: float
    llm_max_output_tokens: int

    embedding_enabled: bool
    embedding_base_url: str
    embedding_model: str

    sqlite_path: Path

    character_name: str
    user_name: str
    character_description: str
    persona_description: str

    @classmethod
    def from_env(cls) -> "Settings":
        ollama_base_url = _env_str("OLLAMA_BASE_URL", "http://127.0.0.1:11434")
        return cls(
            memory_enabled=_env_bool("MEMORY_ENABLED", True, aliases=("EXTRACTION_ENABLED",)),
            messages_per_extraction=_env_int("MESSAGES_PER_EXTRACTION", 10, aliases=("EXTRACTION_BATCH_SIZE",)),
            extraction_rearview_tokens=_env_int("EXTRACTION_REARVIEW_TOKENS", 12000),
            dedup_similarity_threshold=_env_float("DEDUP_SIMILARITY_THRESHOLD", 0.85),
            backfill_max_rpm=_env_int("BACKFILL_MAX_RPM", 30),
            backfill_max_retries=_env_int("BACKFILL_MAX_RETRIES", 3),
            auto_backfill_enabled=_env_bool("AUTO_BACKFILL_ENABLED", False),
            relationship_decay_interval=_env_int("RELATIONSHIP_DECAY_INTERVAL", 50),
            tension_decay_rate=_env_float("TENSION_DECAY_RATE", 0.5),
            trust_decay_rate=_env_float("TRUST_DECAY_RATE", 0.1),
            extraction_timeout_seconds=_env_int("EXTRACTION_TIMEOUT_SECONDS", 120),
            retrieval_timeout_seconds=_env_int("RETRIEVAL_TIMEOUT_SECONDS", 60),
            retrieval_pre_filter_tokens=_env_int("RETRIEVAL_PRE_FILTER_TOKENS", 24000),
            retrieval_final_tokens=_env_int("RETRIEVAL_FINAL_TOKENS", 12000),
            smart_retrieval_enabled=_env_bool("SMART_RETRIEVAL_ENABLED", True),
            vector_similarity_threshold=_env_float("VECTOR_SIMILARITY_THRESHOLD", 0.5),
            vector_similarity_weight=_env_float("VECTOR_SIMILARITY_WEIGHT", 15.0),
            llm_backend=_env_str("LLM_BACKEND", "ollama").lower(),
            ollama_base_url=ollama_base_url,
            ollama_model=_env_str("OLLAMA_MODEL", "qwen2.5:7b-instruct"),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-flash"),
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.2),
            llm_max_output_tokens=_env_int("LLM_MAX_OUTPUT_TOKENS", 4000),
            embedding_enabled=_env_bool("EMBEDDING_ENABLED", False),
            embedding_base_url=_env_str("EMBEDDING_BASE_URL", ollama_base_url),
            embedding_model=_env_str("EMBEDDING_MODEL", "nomic-embed-text"),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/role_memory.db")).expanduser(),
            character_name=_env_str("CHARACTER_NAME", "Character"),
            user_name=_env_str("USER_NAME", "User"),
            character_description=_env_str("CHARACTER_DESCRIPTION", ""),
            persona_description=_env_str("PERSONA_DESCRIPTION", ""),
        )

    def validate(self) -> None:
        if self.messages_per_extraction < 1:
            raise ValueError("MESSAGES_PER_EXTRACTION must be >= 1")
        if self.extraction_rearview_tokens < 0:
            raise ValueError("EXTRACTION_REARVIEW_TOKENS must be >= 0")
        if not 0.0 < self.dedup_similarity_threshold <= 1.0:
            raise ValueError("DEDUP_SIMILARITY_THRESHOLD must be in (0, 1]")
        if self.backfill_max_rpm < 1:
            raise ValueError("BACKFILL_MAX_RPM must be >= 1")
        if self.backfill_max_retries < 1:
            raise ValueError("BACKFILL_MAX_RETRIES must be >= 1")

        if self.relationship_decay_interval < 1:
            raise ValueError("RELATIONSHIP_DECAY_INTERVAL must be >= 1")
        if self.tension_decay_rate < 0.0 or self.trust_decay_rate < 0.0:
            raise ValueError("TENSION_DECAY_RATE and TRUST_DECAY_RATE must be >= 0")

        if self.extraction_timeout_seconds < 5:
            raise ValueError("EXTRACTION_TIMEOUT_SECONDS must be >= 5")
        if self.retrieval_timeout_seconds < 5:
            raise ValueError("RETRIEVAL_TIMEOUT_SECONDS must be >= 5")
        if self.retrieval_final_tokens < 0 or self.retrieval_pre_filter_tokens < self.retrieval_final_tokens:
            raise ValueError("RETRIEVAL_PRE_FILTER_TOKENS must be >= RETRIEVAL_FINAL_TOKENS >= 0")
        if not 0.0 <= self.vector_similarity_threshold < 1.0:
            raise ValueError("VECTOR_SIMILARITY_THRESHOLD must be in [0, 1)")

        if self.llm_backend not in {"ollama", "gemini"}:
            raise ValueError("LLM_BACKEND must be 'ollama' or 'gemini'")
        if self.llm_backend == "ollama" and not self.ollama_model:
            raise ValueError("OLLAMA_MODEL cannot be empty")
        if self.llm_backend == "gemini":
            if not self.gemini_api_key:
                raise ValueError("GEMINI_API_KEY is required when LLM_BACKEND=gemini")
            if self.gemini_api_key == "put_your_gemini_api_key_here":
                raise ValueError("GEMINI_API_KEY is still placeholder")
        if self.llm_max_output_tokens < 0:
            raise ValueError("LLM_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")
        if self.llm_max_output_tokens and self.llm_max_output_tokens < 256:
            raise ValueError("LLM_MAX_OUTPUT_TOKENS must be 0 or >= 256")

        if self.embedding_enabled and not self.embedding_model:
            raise ValueError("EMBEDDING_MODEL cannot be empty when EMBEDDING_ENABLED=1")
        if not self.character_name.strip() or not self.user_name.strip():
            raise ValueError("CHARACTER_NAME and USER_NAME cannot be empty")

    def extraction_options(self) -> ExtractionOptions:
        return ExtractionOptions(
            enabled=self.memory_enabled,
            batch_size=self.messages_per_extraction,
            rearview_tokens=self.extraction_rearview_tokens,
            similarity_threshold=self.dedup_similarity_threshold,
            timeout_seconds=float(self.extraction_timeout_seconds),
            max_output_tokens=self.llm_max_output_tokens,
            character_name=self.character_name,
            user_name=self.user_name,
            character_description=self.character_description,
            persona_description=self.persona_description,
        )

    def decay_curve(self) -> IntervalDecay:
        return IntervalDecay(
            interval=self.relationship_decay_interval,
            tension_rate=self.tension_decay_rate,
            trust_rate=self.trust_decay_rate,
        )

    def retrieval_options(self) -> RetrievalOptions:
        return RetrievalOptions(
            pre_filter_tokens=self.retrieval_pre_filter_tokens,
            final_tokens=self.retrieval_final_tokens,
            smart_retrieval=self.smart_retrieval_enabled,
            timeout_seconds=float(self.retrieval_timeout_seconds),
            character_name=self.character_name,
            scoring=ScoringSettings(
                vector_similarity_threshold=self.vector_similarity_threshold,
                vector_similarity_weight=self.vector_similarity_weight,
            ),
        )
