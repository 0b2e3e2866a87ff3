"""
OpenRouter backend — API access to hosted models.
Same streaming dialect as the generic backend; differs in path layout
(base URL already ends in /api/v1), attribution headers, and a hard
requirement on an API key.
"""

from __future__ import annotations

import logging
import os
from typing import AsyncIterator

from chatfeedback.backends.base import BackendError, StreamChunk
from chatfeedback.backends.openai_compat import OpenAICompatibleBackend

logger = logging.getLogger(__name__)


class OpenRouterBackend(OpenAICompatibleBackend):
    """Backend for the OpenRouter API."""

    chat_path = "/chat/completions"
    models_path = "/models"

    def __init__(self, name: str, url: str, api_key: str = "", **kwargs):
        super().__init__(name=name, url=url, api_key=self._resolve_env(api_key), **kwargs)

    @staticmethod
    def _resolve_env(value: str) -> str:
        """Resolve ${ENV_VAR} references left in config values."""
        if value and value.startswith("${") and value.endswith("}"):
            return os.environ.get(value[2:-1], "")
        return value

    def _headers(self) -> dict:
        headers = super()._headers()
        headers["X-Title"] = "chatfeedback"
        return headers

    async def stream_chat(self, body: dict) -> AsyncIterator[StreamChunk]:
        if not self.api_key:
            raise BackendError("No API key configured for OpenRouter")
        async for chunk in super().stream_chat(body):
            yield chunk
