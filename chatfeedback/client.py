"""
Chat client: the consuming side of the relay.

ChatSession owns one conversation: its committed history, the in-progress
text of the reply being streamed, and the IDLE/STREAMING state. UIs (the
terminal REPL, the Textual console) drive it and observe it through the
on_change / on_event callbacks; they never track streaming flags themselves.

    IDLE --send--> STREAMING --content--> STREAMING
    STREAMING --complete | error | cancel--> IDLE

Persistence is best-effort: every history change schedules a background save
whose failure is logged and never touches what is already displayed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from uuid import uuid4

import httpx

from chatfeedback.config import DEFAULT_CONTEXT_MSG_LIMIT, DEFAULT_MAX_MSG_SIZE
from chatfeedback.events import (
    CompleteEvent,
    ContentEvent,
    ErrorEvent,
    FrameDecoder,
    StreamEvent,
    parse_event,
)
from chatfeedback.storage.models import Message, MessageFeedback, OverallFeedback, utc_now

logger = logging.getLogger(__name__)

ERROR_REPLY = "Sorry, I encountered an error while processing your request. Please try again."
TRANSPORT_ERROR_REPLY = "Sorry, I encountered an error. Please try again."


class SessionState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"


class SendRejected(Exception):
    """A send was refused before any request was made."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


def count_words(text: str) -> int:
    return len(text.split())


@dataclass
class ChatLimits:
    context_msg_limit: int = DEFAULT_CONTEXT_MSG_LIMIT
    max_msg_size: int = DEFAULT_MAX_MSG_SIZE

    def message_too_long(self, text: str) -> bool:
        if self.max_msg_size <= 0:
            return False
        return count_words(text) > self.max_msg_size

    def context_full(self, history_len: int) -> bool:
        if self.context_msg_limit <= 0:
            return False
        return history_len >= self.context_msg_limit

    @classmethod
    async def fetch(cls, http: httpx.AsyncClient) -> ChatLimits:
        """Read limits from the server, keeping the defaults if that fails."""
        try:
            resp = await http.get("/api/config")
            resp.raise_for_status()
            data = resp.json()
            return cls(
                context_msg_limit=int(data.get("contextMsgLimit") or DEFAULT_CONTEXT_MSG_LIMIT),
                max_msg_size=int(data.get("maxMsgSize") or DEFAULT_MAX_MSG_SIZE),
            )
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.error("Failed to fetch config limits: %s", e)
            return cls()


class ChatSession:
    """One conversation with the relay, with at most one stream in flight."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        username: str = "",
        model: str | None = None,
        limits: ChatLimits | None = None,
        session_id: str | None = None,
        on_change: Callable[[ChatSession], None] | None = None,
        on_event: Callable[[StreamEvent], None] | None = None,
    ):
        self.http = http
        self.username = username
        self.model = model
        self.limits = limits or ChatLimits()
        self.session_id = session_id or str(uuid4())
        self.on_change = on_change
        self.on_event = on_event

        self.history: list[Message] = []
        self.feedback: dict[int, dict] = {}
        self.streaming_text = ""
        self.state = SessionState.IDLE
        self.ended = False

        self._inflight: asyncio.Future | None = None
        self._user_cancelled: set[asyncio.Future] = set()
        self._pending_saves: set[asyncio.Task] = set()
        self._save_lock = asyncio.Lock()

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def is_streaming(self) -> bool:
        return self.state is SessionState.STREAMING

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def _append(self, message: Message) -> None:
        self.history.append(message)
        self._notify()
        self._schedule_save()

    def _reset_stream(self) -> None:
        self.streaming_text = ""
        self.state = SessionState.IDLE
        self._notify()

    def _finish(self, message: Message) -> Message:
        self.streaming_text = ""
        self.state = SessionState.IDLE
        self._append(message)
        return message

    # ── Sending ──────────────────────────────────────────────────────────────

    def check_send(self, text: str) -> None:
        """Raise SendRejected if text may not be sent right now."""
        if not text.strip():
            raise SendRejected("empty", "Message is empty")
        if not self.username.strip():
            raise SendRejected("no_username", "Set a username before chatting")
        if self.ended:
            raise SendRejected("ended", "This chat session has ended")
        if self.is_streaming:
            raise SendRejected("streaming", "A reply is still streaming")
        if self.limits.message_too_long(text):
            raise SendRejected(
                "too_long",
                f"Message too long ({count_words(text)}/{self.limits.max_msg_size} words)",
            )
        if self.limits.context_full(len(self.history)):
            raise SendRejected(
                "context_limit",
                f"Conversation limit reached ({self.limits.context_msg_limit} messages)",
            )

    async def send(self, text: str) -> Message | None:
        """
        Send a user turn and stream the reply.

        Returns the assistant message appended to history (the real reply or a
        synthetic error reply), or None if the stream was cancelled.
        """
        self.check_send(text)
        self._append(Message(role="user", content=text.strip()))
        self.streaming_text = ""
        self.state = SessionState.STREAMING
        self._notify()

        payload: dict = {"messages": [m.to_dict() for m in self.history]}
        if self.model:
            payload["model"] = self.model

        inflight = asyncio.ensure_future(self._consume(payload))
        self._inflight = inflight
        try:
            return await inflight
        except asyncio.CancelledError:
            if inflight not in self._user_cancelled:
                raise
            logger.info("Stream cancelled by user (session=%s)", self.session_id)
            return None
        finally:
            self._user_cancelled.discard(inflight)
            # a newer send may already own the session state
            if self._inflight is inflight:
                self._inflight = None
                if self.is_streaming:
                    self._reset_stream()

    def cancel(self) -> bool:
        """
        Abort the in-flight stream. Discards the in-progress text and appends
        nothing. Returns False when there is nothing to cancel.
        """
        if self._inflight is None or self._inflight.done():
            return False
        inflight, self._inflight = self._inflight, None
        self._user_cancelled.add(inflight)
        inflight.cancel()
        self._reset_stream()
        return True

    async def _consume(self, payload: dict) -> Message:
        decoder = FrameDecoder()
        try:
            async with self.http.stream("POST", "/api/chat", json=payload) as resp:
                resp.raise_for_status()
                async for raw in resp.aiter_bytes():
                    for frame in decoder.feed(raw):
                        reply = self._handle_frame(frame)
                        if reply is not None:
                            return reply
                for frame in decoder.flush():
                    reply = self._handle_frame(frame)
                    if reply is not None:
                        return reply
            logger.error("Stream ended without a terminal event (session=%s)", self.session_id)
        except httpx.HTTPError as e:
            logger.error("Chat error (session=%s): %s", self.session_id, e)
        return self._finish(Message(role="assistant", content=TRANSPORT_ERROR_REPLY))

    def _handle_frame(self, payload: dict) -> Message | None:
        """Apply one decoded frame. Returns the committed message on a terminal event."""
        try:
            event = parse_event(payload)
        except ValueError as e:
            logger.warning("Skipping undecodable event: %s", e)
            return None

        if self.on_event is not None:
            self.on_event(event)

        if isinstance(event, ContentEvent):
            self.streaming_text += event.content
            self._notify()
            return None
        if isinstance(event, CompleteEvent):
            return self._finish(Message(
                role="assistant",
                content=event.message.content,
                timestamp=event.timestamp or utc_now(),
            ))
        if isinstance(event, ErrorEvent):
            logger.error("Stream error: %s", event.error)
            return self._finish(Message(role="assistant", content=ERROR_REPLY))
        return None

    def clear(self) -> None:
        """Start over in the same session: drop history, feedback and ended state."""
        self.cancel()
        self.history = []
        self.feedback = {}
        self.streaming_text = ""
        self.ended = False
        self._notify()

    # ── Persistence (best-effort) ────────────────────────────────────────────

    def _schedule_save(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.save_conversation())
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    async def save_conversation(self) -> bool:
        """Upsert the whole session. Saves run one at a time, newest state wins."""
        async with self._save_lock:
            if not self.history or not self.username.strip():
                logger.debug("Nothing to save for session %s", self.session_id)
                return False
            body = {
                "sessionId": self.session_id,
                "username": self.username.strip(),
                "messages": [m.to_dict() for m in self.history],
                "feedback": {str(k): v for k, v in self.feedback.items()},
            }
            try:
                resp = await self.http.post("/api/conversations", json=body)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                logger.error("Error saving conversation %s: %s", self.session_id, e)
                return False
        logger.debug("Conversation %s saved (%d messages)", self.session_id, len(body["messages"]))
        return True

    async def flush(self) -> None:
        """Wait for background saves to finish."""
        while self._pending_saves:
            await asyncio.gather(*list(self._pending_saves), return_exceptions=True)

    async def restore(self) -> bool:
        """Load history and feedback for this session id from the server."""
        try:
            resp = await self.http.get("/api/conversations", params={"sessionId": self.session_id})
            if resp.status_code == 404:
                return False
            resp.raise_for_status()
            record = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error restoring conversation %s: %s", self.session_id, e)
            return False
        self.history = [Message.from_dict(m) for m in record.get("messages", [])]
        self.feedback = {int(k): v for k, v in (record.get("feedback") or {}).items()}
        self.ended = bool(record.get("isCompleted"))
        self._notify()
        return True

    # ── Feedback ─────────────────────────────────────────────────────────────

    async def rate_message(
        self,
        index: int,
        thumbs: str | None = None,
        rating: int | None = None,
        comment: str | None = None,
    ) -> bool:
        """
        Record feedback on one assistant message, merged with what was already
        given for it. Returns False if the server could not store it.
        """
        if not 0 <= index < len(self.history) or self.history[index].role != "assistant":
            raise IndexError(f"No assistant message at index {index}")
        entry = MessageFeedback(**{**self.feedback.get(index, {}), **{
            k: v for k, v in (("thumbs", thumbs), ("rating", rating), ("comment", comment))
            if v is not None
        }})
        entry.validate()
        self.feedback[index] = entry.to_dict()
        self._notify()

        try:
            resp = await self.http.post(
                "/api/feedback",
                json={"sessionId": self.session_id, "feedback": {str(index): self.feedback[index]}},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Error saving feedback for %s[%d]: %s", self.session_id, index, e)
            self._schedule_save()
            return False
        return True

    async def end_chat(self, rating: int, thumbs: str, comment: str = "") -> None:
        """
        Submit end-of-session feedback. Raises httpx.HTTPError if the server
        rejects it so the caller can let the user retry.
        """
        if not self.history:
            raise ValueError("No conversation to end")
        overall = OverallFeedback(rating=rating, thumbs=thumbs, comment=comment)
        overall.validate()
        self.cancel()
        await self.flush()

        resp = await self.http.post(
            "/api/end-chat",
            json={"sessionId": self.session_id, "overallFeedback": overall.to_dict()},
        )
        resp.raise_for_status()
        self.ended = True
        self._notify()
        logger.info("Chat session %s ended (rating=%d)", self.session_id, rating)
