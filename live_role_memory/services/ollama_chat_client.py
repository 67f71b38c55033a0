from __future__ import annotations

import logging
from typing import Any

from .http import HttpStatusError, JsonHttpClient

logger = logging.getLogger("live_role_memory")


class OllamaChatClient(JsonHttpClient):
    """Ollama `/api/chat` client with optional JSON Schema constrained output."""

    backend_name = "ollama"
    service_name = "ollama"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: float = 120,
        temperature: float = 0.2,
        max_output_tokens: int = 0,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.base_url = (base_url or "http://127.0.0.1:11434").strip().rstrip("/")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("Ollama model cannot be empty")
        self.temperature = float(temperature)
        self.max_output_tokens = max(0, int(max_output_tokens or 0))

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    @staticmethod
    def _sanitize_messages(messages: list[dict[str, str]]) -> list[dict[str, str]]:
        mapped_messages: list[dict[str, str]] = []
        for msg in messages:
            role = str(msg.get("role", "")).strip().lower() or "user"
            if role not in {"system", "user", "assistant"}:
                role = "user"
            content = str(msg.get("content", "")).strip()
            if not content:
                continue
            mapped_messages.append({"role": role, "content": content})
        return mapped_messages

    def _retry_payload(self, payload: dict[str, Any], error: HttpStatusError) -> dict[str, Any] | None:
        # Older Ollama builds reject some JSON Schema features; plain JSON mode still helps.
        if (
            error.status == 500
            and "invalid json schema in format" in error.body.lower()
            and payload.get("format") != "json"
        ):
            logger.warning("[memory.extract] Ollama rejected schema format, retrying with format='json'")
            retry = dict(payload)
            retry["format"] = "json"
            return retry
        return None

    @staticmethod
    def _extract_message_text(data: dict[str, Any]) -> str:
        message = data.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content
        response_text = data.get("response")
        if isinstance(response_text, str) and response_text.strip():
            return response_text
        return ""

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> str:
        mapped_messages = self._sanitize_messages(messages)
        if not mapped_messages:
            return ""

        options: dict[str, Any] = {
            "temperature": float(self.temperature if temperature is None else temperature),
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else int(max_output_tokens)
        if selected_tokens > 0:
            options["num_predict"] = selected_tokens

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": mapped_messages,
            "stream": False,
            "think": False,
            "options": options,
        }
        if json_schema is not None:
            payload["format"] = json_schema.get("value", json_schema)
        data = await self._post_json(self._endpoint(), payload)
        return self._extract_message_text(data)
