"""Shared fakes for relay, server and client tests."""

import pytest

from chatfeedback.backends.base import BaseBackend, StreamChunk


class FakeBackend(BaseBackend):
    """Replays canned chunks, then optionally raises."""

    def __init__(self, chunks=(), error: Exception | None = None):
        super().__init__(name="fake", url="http://fake.local")
        self.chunks = list(chunks)
        self.error = error
        self.bodies: list[dict] = []
        self.closed = False

    async def stream_chat(self, body):
        self.bodies.append(body)
        try:
            for chunk in self.chunks:
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


@pytest.fixture
def fake_upstream():
    """
    Build a FakeBackend: fake_upstream("Hel", "lo") streams two fragments then
    finish_reason "stop". Pass chunks= for a hand-written sequence.
    """
    def make(*parts, finish_reason="stop", chunks=None, error=None):
        if chunks is None:
            chunks = [StreamChunk(content=p) for p in parts]
            if finish_reason:
                chunks.append(StreamChunk(finish_reason=finish_reason))
        return FakeBackend(chunks, error=error)
    return make
