"""
Relay: the streaming core of chatfeedback.
Takes a conversation from the browser/client, streams a completion from the
upstream provider, and re-frames every fragment as a `data:` event.

Per request:
  - one accumulator, one outbound event sequence, nothing shared across requests
  - exactly one terminal event (complete or error), nothing after it
  - consumer disconnect closes the upstream stream and stops emitting
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from chatfeedback.backends.base import BackendError, BaseBackend
from chatfeedback.events import (
    CompleteEvent,
    ContentEvent,
    ErrorEvent,
    StreamEvent,
    encode_frame,
)
from chatfeedback.storage.models import ROLES, Message, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "openai/gpt-4.1"
STREAM_FAILED = "Stream processing failed"

# finish_reason values that end generation normally; "done" is the [DONE] sentinel
_COMPLETE_REASONS = frozenset({"stop", "length", "done"})


class ValidationError(ValueError):
    """Request rejected before any stream is opened."""


@dataclass
class ConversationRequest:
    messages: list[Message] = field(default_factory=list)
    model: str | None = None

    @property
    def client_messages(self) -> list[Message]:
        """The turns the client sees: system turns are server-side only."""
        return [m for m in self.messages if m.role != "system"]


class StreamRelay:
    """Streams one upstream completion per request and re-frames it."""

    def __init__(
        self,
        backend: BaseBackend,
        default_model: str = DEFAULT_MODEL,
        temperature: float = 0.3,
        max_tokens: int = 1200,
        system_prompt: str = "",
    ):
        self.backend = backend
        self.default_model = default_model or DEFAULT_MODEL
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.system_prompt = (system_prompt or "").strip()

    @classmethod
    def from_config(cls, cfg: dict, backend: BaseBackend) -> StreamRelay:
        gen = cfg.get("generation") or {}
        return cls(
            backend=backend,
            default_model=(cfg.get("backend") or {}).get("default_model", DEFAULT_MODEL),
            temperature=float(gen.get("temperature", 0.3)),
            max_tokens=int(gen.get("max_tokens", 1200)),
            system_prompt=gen.get("system_prompt", ""),
        )

    @staticmethod
    def prepare(body) -> ConversationRequest:
        """
        Validate a request body. Raises ValidationError when messages is missing
        or empty, an entry is malformed, or there is no user turn.
        """
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        raw = body.get("messages")
        if not isinstance(raw, list):
            raise ValidationError("Messages array is required")
        if not raw:
            raise ValidationError("Messages array must not be empty")

        messages = []
        for i, entry in enumerate(raw):
            if (
                not isinstance(entry, dict)
                or entry.get("role") not in ROLES
                or not isinstance(entry.get("content"), str)
            ):
                raise ValidationError(f"Invalid message at index {i}")
            messages.append(Message.from_dict(entry))

        if not any(m.role == "user" for m in messages):
            raise ValidationError("No user message found")

        model = body.get("model")
        if model is not None and not isinstance(model, str):
            raise ValidationError("model must be a string")
        return ConversationRequest(messages=messages, model=model or None)

    def _upstream_body(self, request: ConversationRequest) -> dict:
        turns = [m.to_openai_format() for m in request.client_messages]
        if self.system_prompt:
            turns.insert(0, {"role": "system", "content": self.system_prompt})
        return {
            "model": request.model or self.default_model,
            "messages": turns,
            "stream": True,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    async def events(self, request: ConversationRequest) -> AsyncIterator[StreamEvent]:
        """
        Yield content events followed by exactly one terminal event.
        Closing this generator early (client gone) closes the upstream stream.
        """
        body = self._upstream_body(request)
        upstream = self.backend.stream_chat(body)
        accumulator: list[str] = []
        terminal: StreamEvent | None = None
        finished = False

        try:
            try:
                async for chunk in upstream:
                    if chunk.content:
                        accumulator.append(chunk.content)
                        yield ContentEvent(content=chunk.content)
                    if chunk.finish_reason == "error":
                        raise BackendError("upstream reported finish_reason=error")
                    if chunk.finish_reason in _COMPLETE_REASONS:
                        break
            except Exception as e:
                logger.error("Upstream streaming error (model=%s): %s", body["model"], e)
                terminal = ErrorEvent(error=STREAM_FAILED)
            else:
                now = utc_now()
                terminal = CompleteEvent(
                    message=Message(role="assistant", content="".join(accumulator), timestamp=now),
                    timestamp=now,
                    message_count=len(request.client_messages) + 1,
                )
            yield terminal
            finished = True
        finally:
            if not finished:
                logger.info(
                    "Client disconnected mid-stream (model=%s, %d fragments relayed)",
                    body["model"], len(accumulator),
                )
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def stream(self, request: ConversationRequest) -> AsyncIterator[str]:
        """Encoded `data:` frames for a StreamingResponse."""
        events = self.events(request)
        try:
            async for event in events:
                yield encode_frame(event)
        finally:
            await events.aclose()
