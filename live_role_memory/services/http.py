from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any

import aiohttp

logger = logging.getLogger("live_role_memory")

RETRIABLE_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})


class HttpStatusError(RuntimeError):
    def __init__(self, status: int, body: str, *, service: str) -> None:
        super().__init__(f"{service} error {status}: {body[:500]}")
        self.status = status
        self.body = body


class JsonHttpClient:
    """aiohttp session owner with a bounded retry loop for JSON POST requests."""

    service_name = "http"

    def __init__(self, *, timeout_seconds: float) -> None:
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "JsonHttpClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _retry_payload(self, payload: dict[str, Any], error: HttpStatusError) -> dict[str, Any] | None:
        """Return a modified payload to retry immediately after a status error, or None."""
        return None

    async def _post_json(self, url: str, payload: dict[str, Any], *, retries: int = 3) -> dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        parsed = json.loads(text)
                        if isinstance(parsed, dict):
                            return parsed
                        raise RuntimeError(f"{self.service_name} returned non-object JSON response")
                    error = HttpStatusError(response.status, text, service=self.service_name)
                    adjusted = self._retry_payload(payload, error)
                    if adjusted is not None:
                        payload = adjusted
                        last_error = error
                        continue
                    if response.status not in RETRIABLE_STATUSES:
                        raise error
                    last_error = error
            except asyncio.CancelledError:
                raise
            except HttpStatusError:
                raise
            except Exception as exc:
                last_error = exc
            if attempt < retries:
                logger.debug("[%s] retry %s/%s after %s", self.service_name, attempt, retries, last_error)
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.25))

        if last_error is not None:
            raise RuntimeError(f"{self.service_name} request failed after retries: {last_error}")
        raise RuntimeError(f"{self.service_name} request failed without explicit error")
