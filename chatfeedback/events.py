"""
Stream events exchanged between the relay and the chat client.

Wire format: one frame per event, `data: <json>\\n\\n`. The JSON payload is a
tagged union discriminated by its "type" field:

    {"type": "content",  "content": "<fragment>"}
    {"type": "complete", "message": {...}, "timestamp": "...", "messageCount": n}
    {"type": "error",    "error": "<diagnostic>"}

`complete` and `error` are terminal: nothing follows them on the same stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Union

from chatfeedback.storage.models import Message

logger = logging.getLogger(__name__)

FRAME_PREFIX = "data: "
FRAME_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class ContentEvent:
    content: str
    type: str = "content"

    def to_dict(self) -> dict:
        return {"type": self.type, "content": self.content}


@dataclass(frozen=True)
class CompleteEvent:
    message: Message
    timestamp: str
    message_count: int
    type: str = "complete"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "message": self.message.to_dict(),
            "timestamp": self.timestamp,
            "messageCount": self.message_count,
        }


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    type: str = "error"

    def to_dict(self) -> dict:
        return {"type": self.type, "error": self.error}


StreamEvent = Union[ContentEvent, CompleteEvent, ErrorEvent]

TERMINAL_TYPES = frozenset({"complete", "error"})


def is_terminal(event: StreamEvent) -> bool:
    return event.type in TERMINAL_TYPES


def parse_event(payload: dict) -> StreamEvent:
    """Build a typed event from a decoded frame. Dispatches on the tag only."""
    if not isinstance(payload, dict):
        raise ValueError(f"event payload must be an object, got {type(payload).__name__}")
    kind = payload.get("type")
    try:
        if kind == "content":
            return ContentEvent(content=str(payload["content"]))
        if kind == "complete":
            msg = payload["message"]
            timestamp = payload.get("timestamp") or msg.get("timestamp", "")
            return CompleteEvent(
                message=Message(
                    role=msg.get("role", "assistant"),
                    content=msg["content"],
                    timestamp=timestamp,
                ),
                timestamp=timestamp,
                message_count=int(payload.get("messageCount", 0)),
            )
        if kind == "error":
            return ErrorEvent(error=str(payload.get("error", "")))
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"malformed {kind!r} event: {e}") from e
    raise ValueError(f"unknown event type: {kind!r}")


def encode_frame(event: StreamEvent) -> str:
    return f"{FRAME_PREFIX}{json.dumps(event.to_dict())}{FRAME_SEPARATOR}"


class FrameDecoder:
    """
    Incremental decoder for the event stream.

    A single network read may hold half a frame, several frames, or split a
    multi-byte character; bytes are buffered until a full frame is available.
    feed() returns the JSON payloads of every frame completed so far. Frames
    that do not carry valid JSON are logged and skipped.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[dict]:
        self._buffer += self._decoder.decode(chunk)
        frames = self._buffer.split(FRAME_SEPARATOR)
        self._buffer = frames.pop()
        return self._decode_frames(frames)

    def flush(self) -> list[dict]:
        """Decode whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return self._decode_frames([rest]) if rest.strip() else []

    @staticmethod
    def _decode_frames(frames: list[str]) -> list[dict]:
        payloads = []
        for frame in frames:
            data = "\n".join(
                line[len(FRAME_PREFIX):]
                for line in frame.splitlines()
                if line.startswith(FRAME_PREFIX)
            )
            if not data:
                continue
            try:
                payloads.append(json.loads(data))
            except json.JSONDecodeError as e:
                logger.warning("Skipping malformed frame (%s): %.80r", e, data)
        return payloads
