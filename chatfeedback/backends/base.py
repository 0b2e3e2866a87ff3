"""
Base backend abstraction.
Every upstream provider speaks the OpenAI streaming chat-completion dialect;
backends turn its SSE lines into StreamChunk objects so the relay never sees
provider wire details.
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Upstream failure: transport, HTTP status, malformed chunk or provider error payload."""


@dataclass(frozen=True)
class StreamChunk:
    """One parsed upstream delta."""
    content: str = ""
    finish_reason: str | None = None


def parse_sse_line(line: str) -> StreamChunk | None:
    """
    Parse one upstream SSE line.

    Returns None for lines that carry no delta (comments, keep-alives, the
    [DONE] sentinel is reported as finish_reason "done"). Raises BackendError
    for malformed JSON or an in-band error payload.
    """
    line = line.strip()
    if not line or line.startswith(":") or not line.startswith("data:"):
        return None
    data_str = line[5:].strip()
    if data_str == "[DONE]":
        return StreamChunk(finish_reason="done")
    try:
        chunk = json.loads(data_str)
    except json.JSONDecodeError as e:
        raise BackendError(f"Malformed upstream chunk: {data_str[:120]}") from e

    if not isinstance(chunk, dict):
        raise BackendError(f"Unexpected upstream chunk: {data_str[:120]}")
    if chunk.get("error"):
        err = chunk["error"]
        message = err.get("message", err) if isinstance(err, dict) else err
        raise BackendError(f"Provider error: {message}")

    choices = chunk.get("choices") or [{}]
    choice = choices[0] or {}
    delta = choice.get("delta") or {}
    return StreamChunk(
        content=delta.get("content") or "",
        finish_reason=choice.get("finish_reason"),
    )


class BaseBackend(abc.ABC):
    """
    Abstract base for LLM providers.
    Subclasses set chat_path and may add headers.
    """

    chat_path = "/v1/chat/completions"
    models_path = "/v1/models"

    def __init__(
        self,
        name: str,
        url: str,
        api_key: str = "",
        timeout: int = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.timeout,
            transport=self._transport,
        )

    @abc.abstractmethod
    def stream_chat(self, body: dict) -> AsyncIterator[StreamChunk]:
        """
        Send a streaming chat completion request.
        Yields StreamChunk per upstream delta; raises BackendError on failure.
        """
        ...

    async def health_check(self) -> bool:
        """Check the provider is reachable."""
        try:
            async with self._client(timeout=5) as client:
                resp = await client.get(f"{self.url}{self.models_path}", headers=self._headers())
                return resp.status_code == 200
        except httpx.HTTPError:
            return False

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
