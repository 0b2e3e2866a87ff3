"""
Tests for the console's transcript rendering.
"""

from chatfeedback.storage.models import Message
from chatfeedback.tui.app import ChatConsoleApp, render_message, render_transcript


def test_render_message_escapes_markup():
    out = render_message(0, Message(role="user", content="see [bold]this[/bold]"))
    assert "you" in out
    assert "\\[bold]" in out


def test_render_message_feedback_markers():
    out = render_message(1, Message(role="assistant", content="hi"), {"thumbs": "up", "rating": 8})
    assert "▲" in out
    assert "8/10" in out


def test_render_transcript_order():
    history = [Message(role="user", content="first"), Message(role="assistant", content="second")]
    out = render_transcript(history, {1: {"thumbs": "down"}})
    assert out.index("first") < out.index("second")
    assert "▼" in out
    assert render_transcript([], {}) == ""


def test_bindings():
    keys = {b.key: b.action for b in ChatConsoleApp.BINDINGS}
    assert keys["escape"] == "stop"
    assert keys["ctrl+l"] == "clear"
    assert keys["ctrl+u"] == "thumbs('up')"
    assert keys["ctrl+d"] == "thumbs('down')"
