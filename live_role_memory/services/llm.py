from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from ..memory.errors import LLMError

logger = logging.getLogger("live_role_memory")


class ChatClient(Protocol):
    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> str: ...


@dataclass(frozen=True, slots=True)
class LLMCallConfig:
    name: str
    timeout_seconds: float
    max_output_tokens: int
    temperature: float | None = None


EXTRACTION = LLMCallConfig(name="extraction", timeout_seconds=120.0, max_output_tokens=4000)
RETRIEVAL = LLMCallConfig(name="retrieval", timeout_seconds=60.0, max_output_tokens=1000)


async def call_llm(
    client: ChatClient,
    messages: list[dict[str, str]],
    config: LLMCallConfig = EXTRACTION,
    *,
    json_schema: dict[str, Any] | None = None,
) -> str:
    """One bounded LLM round trip. Timeouts, transport failures and empty output raise LLMError."""
    started = time.perf_counter()
    try:
        text = await asyncio.wait_for(
            client.chat(
                messages,
                temperature=config.temperature,
                max_output_tokens=config.max_output_tokens,
                json_schema=json_schema,
            ),
            timeout=config.timeout_seconds,
        )
    except asyncio.CancelledError:
        raise
    except asyncio.TimeoutError as exc:
        raise LLMError(f"{config.name} LLM call timed out after {config.timeout_seconds:.0f}s") from exc
    except Exception as exc:
        raise LLMError(f"{config.name} LLM call failed: {exc}") from exc

    latency_ms = int((time.perf_counter() - started) * 1000)
    if not str(text or "").strip():
        raise LLMError(f"Empty response from {config.name} LLM")
    logger.debug("[memory.extract] llm=%s latency_ms=%s chars=%s", config.name, latency_ms, len(text))
    return str(text)
