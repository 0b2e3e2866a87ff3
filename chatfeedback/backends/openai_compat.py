"""
Generic OpenAI-compatible backend.

Supports any endpoint that speaks the OpenAI streaming format:
- vLLM
- llama.cpp server
- LocalAI
- Ollama's /v1 surface
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx

from chatfeedback.backends.base import BaseBackend, BackendError, StreamChunk, parse_sse_line

logger = logging.getLogger(__name__)


class OpenAICompatibleBackend(BaseBackend):
    """Streams /v1/chat/completions from any OpenAI-compatible service."""

    async def stream_chat(self, body: dict) -> AsyncIterator[StreamChunk]:
        body = {**body, "stream": True}
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.url}{self.chat_path}",
                    headers=self._headers(),
                    json=body,
                ) as resp:
                    if resp.status_code >= 400:
                        detail = (await resp.aread()).decode("utf-8", "replace")
                        raise BackendError(f"HTTP {resp.status_code}: {detail[:200]}")
                    async for line in resp.aiter_lines():
                        chunk = parse_sse_line(line)
                        if chunk is not None:
                            yield chunk
        except httpx.TimeoutException as e:
            logger.warning("Backend '%s' stream timed out", self.name)
            raise BackendError(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed: %s", self.name, e)
            raise BackendError(str(e)) from e
