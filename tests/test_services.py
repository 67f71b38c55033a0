from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from live_role_memory.memory.models import MemoryEvent  # noqa: E402
from live_role_memory.memory.schemas import extraction_json_schema  # noqa: E402
from live_role_memory.services.embeddings import (  # noqa: E402
    OllamaEmbeddingClient,
    generate_embeddings_for_memories,
)
from live_role_memory.services.gemini_client import GeminiClient  # noqa: E402
from live_role_memory.services.http import HttpStatusError  # noqa: E402
from live_role_memory.services.ollama_chat_client import OllamaChatClient  # noqa: E402


MESSAGES = [
    {"role": "system", "content": "Extract events."},
    {"role": "user", "content": "[Alice]: hello"},
    {"role": "tool", "content": "ignored role"},
    {"role": "assistant", "content": "   "},
]


class _FakeResponse:
    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self._body = body

    async def text(self) -> str:
        return self._body

    async def __aenter__(self) -> "_FakeResponse":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None


class _FakeSession:
    closed = False

    def __init__(self, *responses: tuple[int, str]) -> None:
        self.responses = list(responses)
        self.payloads: list[dict[str, Any]] = []

    def post(self, url: str, json: dict[str, Any]) -> _FakeResponse:
        self.payloads.append(json)
        status, body = self.responses.pop(0)
        return _FakeResponse(status, body)


def _no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr("live_role_memory.services.http.asyncio.sleep", fake_sleep)
    return delays


def test_ollama_chat_payload_uses_schema_body() -> None:
    client = OllamaChatClient(base_url="http://ollama:11434/", model="qwen2.5:7b-instruct", max_output_tokens=512)
    captured: dict[str, Any] = {}

    async def fake_post_json(url: str, payload: dict[str, Any], *, retries: int = 3) -> dict[str, Any]:
        captured["url"] = url
        captured["payload"] = payload
        return {"message": {"content": '{"events": []}'}}

    client._post_json = fake_post_json  # type: ignore[method-assign]
    schema = extraction_json_schema()

    text = asyncio.run(client.chat(MESSAGES, max_output_tokens=4000, json_schema=schema))

    assert text == '{"events": []}'
    assert captured["url"] == "http://ollama:11434/api/chat"
    payload = captured["payload"]
    assert payload["format"] == schema["value"]
    assert payload["stream"] is False
    assert payload["options"] == {"temperature": 0.2, "num_predict": 4000}
    assert [m["role"] for m in payload["messages"]] == ["system", "user", "user"]


def test_ollama_retries_schema_rejection_with_json_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    delays = _no_sleep(monkeypatch)
    client = OllamaChatClient(base_url="http://ollama:11434", model="m")
    session = _FakeSession(
        (500, '{"error": "invalid JSON schema in format"}'),
        (200, json.dumps({"message": {"content": "ok"}})),
    )
    client._session = session  # type: ignore[assignment]

    text = asyncio.run(client.chat(MESSAGES, json_schema=extraction_json_schema()))

    assert text == "ok"
    assert isinstance(session.payloads[0]["format"], dict)
    assert session.payloads[1]["format"] == "json"
    assert delays == []


def test_http_client_raises_non_retriable_status_immediately(monkeypatch: pytest.MonkeyPatch) -> None:
    _no_sleep(monkeypatch)
    client = OllamaChatClient(base_url="http://ollama:11434", model="m")
    session = _FakeSession((400, "bad request"), (200, "{}"))
    client._session = session  # type: ignore[assignment]

    with pytest.raises(HttpStatusError) as excinfo:
        asyncio.run(client.chat(MESSAGES))

    assert excinfo.value.status == 400
    assert len(session.payloads) == 1


def test_http_client_gives_up_after_retriable_statuses(monkeypatch: pytest.MonkeyPatch) -> None:
    delays = _no_sleep(monkeypatch)
    client = OllamaChatClient(base_url="http://ollama:11434", model="m")
    session = _FakeSession((503, "busy"), (503, "busy"), (503, "busy"))
    client._session = session  # type: ignore[assignment]

    with pytest.raises(RuntimeError, match="failed after retries"):
        asyncio.run(client.chat(MESSAGES))

    assert len(session.payloads) == 3
    assert len(delays) == 2


def test_gemini_payload_maps_roles_and_schema() -> None:
    client = GeminiClient(
        api_key="k",
        model="gemini-2.5-flash",
        timeout_seconds=30,
        temperature=0.2,
        max_output_tokens=0,
    )
    captured: dict[str, Any] = {}

    async def fake_post_json(url: str, payload: dict[str, Any], *, retries: int = 3) -> dict[str, Any]:
        captured["url"] = url
        captured["payload"] = payload
        return {"candidates": [{"content": {"parts": [{"text": ' {"events": []} '}]}}]}

    client._post_json = fake_post_json  # type: ignore[method-assign]
    schema = extraction_json_schema()

    text = asyncio.run(client.chat(MESSAGES, max_output_tokens=4000, json_schema=schema))

    assert text == '{"events": []}'
    assert captured["url"].endswith("/v1beta/models/gemini-2.5-flash:generateContent?key=k")
    payload = captured["payload"]
    assert payload["systemInstruction"] == {"parts": [{"text": "Extract events."}]}
    assert [c["role"] for c in payload["contents"]] == ["user", "user"]
    config = payload["generationConfig"]
    assert config["maxOutputTokens"] == 4000
    assert config["responseMimeType"] == "application/json"
    assert config["responseJsonSchema"] == schema["value"]


def test_gemini_blocked_prompt_raises() -> None:
    with pytest.raises(RuntimeError, match="blocked"):
        GeminiClient._extract_text({"promptFeedback": {"blockReason": "SAFETY"}})
    assert GeminiClient._extract_text({}) == ""


def test_client_constructors_validate_required_fields() -> None:
    with pytest.raises(ValueError):
        OllamaChatClient(base_url="http://x", model=" ")
    with pytest.raises(ValueError):
        GeminiClient(api_key="", model="m", timeout_seconds=30, temperature=0.2, max_output_tokens=0)
    with pytest.raises(ValueError):
        OllamaEmbeddingClient(base_url="http://x", model="")


def test_embedding_client_returns_none_on_failure() -> None:
    client = OllamaEmbeddingClient(base_url="http://ollama:11434", model="nomic-embed-text")

    async def failing_post_json(url: str, payload: dict[str, Any], *, retries: int = 3) -> dict[str, Any]:
        raise RuntimeError("connection refused")

    client._post_json = failing_post_json  # type: ignore[method-assign]

    assert asyncio.run(client.embed("Alice draws a sword")) is None
    assert asyncio.run(client.embed("   ")) is None


def test_embedding_client_parses_vector_and_fills_memories() -> None:
    client = OllamaEmbeddingClient(base_url="http://ollama:11434", model="nomic-embed-text")
    prompts: list[str] = []

    async def fake_post_json(url: str, payload: dict[str, Any], *, retries: int = 3) -> dict[str, Any]:
        prompts.append(payload["prompt"])
        if payload["prompt"] == "broken":
            return {"embedding": ["x"]}
        return {"embedding": [1, 2, 3]}

    client._post_json = fake_post_json  # type: ignore[method-assign]
    memories = [
        MemoryEvent(id="a", summary="fresh"),
        MemoryEvent(id="b", summary="broken"),
        MemoryEvent(id="c", summary="done", embedding=[0.5]),
    ]

    filled = asyncio.run(generate_embeddings_for_memories(memories, client))

    assert filled == 1
    assert memories[0].embedding == [1.0, 2.0, 3.0]
    assert memories[1].embedding is None
    assert prompts == ["fresh", "broken"]
