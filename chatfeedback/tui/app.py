"""
chatfeedback console — a terminal chat front end on top of ChatSession.
The session is the single source of truth; this app only re-renders it
whenever on_change fires.
Entry point: chatfeedback console (alias: tui)
"""
from __future__ import annotations
from pathlib import Path
from typing import ClassVar

import httpx
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import VerticalScroll
from textual.widgets import Footer, Header, Input, Static

from chatfeedback.client import ChatLimits, ChatSession, SendRejected
from chatfeedback.storage.models import THUMBS, Message

_ROLE_STYLE: dict[str, str] = {
    "user":      "bold #7fb4ca",
    "assistant": "bold #b48ead",
}
_THUMB_ICON = {"up": "▲", "down": "▼"}


def _escape(text: str) -> str:
    return text.replace("[", "\\[")


def render_message(index: int, message: Message, feedback: dict | None = None) -> str:
    """Rich markup for one committed message, with its feedback marker."""
    style = _ROLE_STYLE.get(message.role, _ROLE_STYLE["assistant"])
    label = "you" if message.role == "user" else "bot"
    marks = ""
    if feedback:
        if feedback.get("thumbs"):
            marks += f" {_THUMB_ICON[feedback['thumbs']]}"
        if feedback.get("rating") is not None:
            marks += f" {feedback['rating']}/10"
    return f"[{style}]{label}[/] [dim]#{index}{marks}[/dim]\n{_escape(message.content)}"


def render_transcript(history: list[Message], feedback: dict[int, dict]) -> str:
    return "\n\n".join(
        render_message(i, m, feedback.get(i)) for i, m in enumerate(history)
    )


class ChatConsoleApp(App):
    """Chat with the relay and rate its replies."""
    CSS_PATH = str(Path(__file__).parent / "styles" / "main.tcss")
    TITLE = "chatfeedback"
    SUB_TITLE = "chat · rate · repeat"
    BINDINGS: ClassVar[list[Binding]] = [
        Binding("ctrl+q", "quit", "Quit", priority=True),
        Binding("escape", "stop", "Stop reply"),
        Binding("ctrl+l", "clear", "Clear"),
        Binding("ctrl+u", "thumbs('up')", "Thumbs up", priority=True),
        Binding("ctrl+d", "thumbs('down')", "Thumbs down", priority=True),
    ]

    def __init__(self, base_url: str, username: str, model: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url
        self.username = username
        self.model = model
        self.http: httpx.AsyncClient | None = None
        self.session: ChatSession | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with VerticalScroll(id="log"):
            yield Static("", id="transcript", markup=True)
            yield Static("", id="streaming", markup=True)
        yield Static("", id="status", markup=True)
        yield Input(placeholder="Type a message, /rate up|down|0-10, /end <1-5> <up|down> [comment]", id="prompt")
        yield Footer()

    async def on_mount(self) -> None:
        self.http = httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(10.0, read=None))
        limits = await ChatLimits.fetch(self.http)
        self.session = ChatSession(
            self.http,
            username=self.username,
            model=self.model,
            limits=limits,
            on_change=self._on_session_change,
        )
        self.sub_title = f"{self.username} · {self.session.session_id[:8]}"
        self._set_status("Ready")
        self.query_one("#prompt", Input).focus()

    async def on_unmount(self) -> None:
        if self.session is not None:
            self.session.cancel()
            await self.session.flush()
        if self.http is not None:
            await self.http.aclose()

    # ── Rendering ────────────────────────────────────────────────────────────

    def _set_status(self, text: str) -> None:
        self.query_one("#status", Static).update(_escape(text))

    def _on_session_change(self, session: ChatSession) -> None:
        self.query_one("#transcript", Static).update(
            render_transcript(session.history, session.feedback)
        )
        streaming = ""
        if session.is_streaming:
            streaming = f"[{_ROLE_STYLE['assistant']}]bot[/] [dim]typing…[/dim]\n{_escape(session.streaming_text)}"
        self.query_one("#streaming", Static).update(streaming)
        if session.ended:
            self._set_status("Chat ended. Thank you for your feedback!")
        elif session.is_streaming:
            self._set_status("Streaming… (Esc to stop)")
        else:
            self._set_status(f"{len(session.history)} messages")
        self.query_one("#log", VerticalScroll).scroll_end(animate=False)

    # ── Input ────────────────────────────────────────────────────────────────

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        text = event.value.strip()
        if self.session is None or not text:
            return
        if text.startswith("/rate"):
            event.input.value = ""
            await self._rate(text.split()[1:])
            return
        if text.startswith("/end"):
            event.input.value = ""
            await self._end(text.split(maxsplit=3)[1:])
            return
        try:
            self.session.check_send(text)
        except SendRejected as e:
            self._set_status(f"✗ {e}")
            return
        event.input.value = ""
        self.run_worker(self.session.send(text), group="stream", exclusive=True)

    def _last_reply_index(self) -> int | None:
        for i in range(len(self.session.history) - 1, -1, -1):
            if self.session.history[i].role == "assistant":
                return i
        return None

    async def _rate(self, parts: list[str], thumbs: str | None = None) -> None:
        index = self._last_reply_index()
        if index is None:
            self._set_status("✗ Nothing to rate yet")
            return
        try:
            if thumbs is None and parts and parts[0] in THUMBS:
                thumbs = parts[0]
            if thumbs is not None:
                saved = await self.session.rate_message(index, thumbs=thumbs)
            else:
                saved = await self.session.rate_message(index, rating=int(parts[0]))
        except (IndexError, ValueError) as e:
            self._set_status(f"✗ {e}")
            return
        self._set_status("Rated" if saved else "✗ Rating kept locally, server unavailable")

    async def _end(self, parts: list[str]) -> None:
        try:
            rating, thumbs = int(parts[0]), parts[1]
            await self.session.end_chat(rating, thumbs, parts[2] if len(parts) > 2 else "")
        except (IndexError, ValueError) as e:
            self._set_status(f"✗ Usage: /end <1-5> <up|down> [comment] ({e})")
        except httpx.HTTPError as e:
            self._set_status(f"✗ Failed to submit feedback, try again ({e})")

    # ── Actions ──────────────────────────────────────────────────────────────

    def action_stop(self) -> None:
        if self.session is not None and self.session.cancel():
            self._set_status("Stopped")

    def action_clear(self) -> None:
        if self.session is not None:
            self.session.clear()

    async def action_thumbs(self, value: str) -> None:
        if self.session is not None:
            await self._rate([], thumbs=value)
