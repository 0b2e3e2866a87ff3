"""
Tests for the FastAPI app: chat relay endpoint and the conversation,
feedback and end-chat stores.
"""

from unittest.mock import patch

import pytest

from chatfeedback.events import FrameDecoder
from chatfeedback.relay import STREAM_FAILED


@pytest.fixture
def server(tmp_path, fake_upstream):
    """Yield (TestClient, fake backend) with a temp database."""
    from fastapi.testclient import TestClient
    from chatfeedback import config as cfg_mod

    cfg_data = {
        "server": {"host": "127.0.0.1", "port": 8000},
        "backend": {"provider": "openrouter", "url": "http://fake.local", "default_model": "test/model"},
        "generation": {"temperature": 0.3, "max_tokens": 100, "system_prompt": "Be helpful."},
        "limits": {"context_msg_limit": "10", "max_msg_size": ""},
        "storage": {"sqlite_path": str(tmp_path / "test.db")},
        "logging": {"level": "WARNING"},
        "models": ["test/model", {"id": "other/model", "name": "Other"}],
    }
    orig_config = cfg_mod._config
    cfg_mod._config = cfg_data

    backend = fake_upstream("Hel", "lo")
    import chatfeedback.main  # ensure module is imported before patching

    with patch("chatfeedback.main.make_backend", return_value=backend):
        from chatfeedback.main import app
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c, backend

    cfg_mod._config = orig_config


def _frames(text: str) -> list[dict]:
    decoder = FrameDecoder()
    return decoder.feed(text.encode()) + decoder.flush()


def _save(c, session_id="s1", messages=None, feedback=None):
    messages = messages if messages is not None else [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
    ]
    return c.post("/api/conversations", json={
        "sessionId": session_id, "username": "ada", "messages": messages, "feedback": feedback or {},
    })


# ---------------------------------------------------------------------------
# /api/chat
# ---------------------------------------------------------------------------

class TestChat:
    def test_streams_frames(self, server):
        c, backend = server
        r = c.post("/api/chat", json={"messages": [{"role": "user", "content": "Hi"}]})
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/plain")
        assert r.headers["cache-control"] == "no-cache"

        frames = _frames(r.text)
        assert [f["type"] for f in frames] == ["content", "content", "complete"]
        assert frames[-1]["message"]["content"] == "Hello"
        assert frames[-1]["messageCount"] == 2
        assert backend.bodies[0]["messages"][0] == {"role": "system", "content": "Be helpful."}

    def test_empty_messages_rejected(self, server):
        c, backend = server
        r = c.post("/api/chat", json={"messages": []})
        assert r.status_code == 400
        assert "error" in r.json()
        assert backend.bodies == []

    def test_missing_messages_rejected(self, server):
        c, _ = server
        r = c.post("/api/chat", json={"model": "x"})
        assert r.status_code == 400
        assert r.json()["error"] == "Messages array is required"

    def test_invalid_json_rejected(self, server):
        c, _ = server
        r = c.post("/api/chat", content=b"{nope", headers={"content-type": "application/json"})
        assert r.status_code == 400

    def test_upstream_failure_is_error_frame(self, server):
        from chatfeedback.backends.base import BackendError

        c, backend = server
        backend.chunks = []
        backend.error = BackendError("HTTP 500: upstream down")
        r = c.post("/api/chat", json={"messages": [{"role": "user", "content": "Hi"}]})
        assert r.status_code == 200
        assert _frames(r.text) == [{"type": "error", "error": STREAM_FAILED}]

    def test_chat_info(self, server):
        c, _ = server
        data = c.get("/api/chat").json()
        assert data["defaultModel"] == "test/model"
        assert data["supportedMethods"] == ["POST"]


# ---------------------------------------------------------------------------
# Config, models, health
# ---------------------------------------------------------------------------

def test_config_endpoint(server):
    c, _ = server
    assert c.get("/api/config").json() == {
        "contextMsgLimit": 10,
        "maxMsgSize": 1000,
        "status": "success",
    }


def test_models_endpoint(server):
    c, _ = server
    data = c.get("/api/models").json()
    assert data["default"] == "test/model"
    assert [m["id"] for m in data["models"]] == ["test/model", "other/model"]


def test_health(server):
    c, _ = server
    data = c.get("/api/health").json()
    assert data["status"] == "healthy"
    assert data["version"]


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

class TestConversations:
    def test_save_and_load(self, server):
        c, _ = server
        assert _save(c).json() == {"success": True}
        r = c.get("/api/conversations", params={"sessionId": "s1"})
        assert r.status_code == 200
        data = r.json()
        assert data["sessionId"] == "s1"
        assert data["username"] == "ada"
        assert len(data["messages"]) == 2
        assert data["isCompleted"] is False

    def test_save_requires_session_id(self, server):
        c, _ = server
        r = c.post("/api/conversations", json={"username": "ada", "messages": []})
        assert r.status_code == 400

    def test_save_rejects_bad_types(self, server):
        c, _ = server
        r = c.post("/api/conversations", json={"sessionId": "s1", "messages": "nope"})
        assert r.status_code == 400

    def test_load_unknown(self, server):
        c, _ = server
        assert c.get("/api/conversations", params={"sessionId": "missing"}).status_code == 404
        assert c.get("/api/conversations").status_code == 400


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

class TestFeedback:
    def test_merge(self, server):
        c, _ = server
        _save(c, feedback={"1": {"thumbs": "up"}})
        r = c.post("/api/feedback", json={"sessionId": "s1", "feedback": {"1": {"thumbs": "up", "rating": 8}}})
        assert r.json() == {"success": True}
        data = c.get("/api/conversations", params={"sessionId": "s1"}).json()
        assert data["feedback"] == {"1": {"thumbs": "up", "rating": 8}}

    def test_unknown_session(self, server):
        c, _ = server
        r = c.post("/api/feedback", json={"sessionId": "missing", "feedback": {"1": {"thumbs": "up"}}})
        assert r.status_code == 404

    @pytest.mark.parametrize("feedback", [
        {"x": {"thumbs": "up"}},
        {"1": {"thumbs": "sideways"}},
        {"1": {"rating": 42}},
        {"1": {"stars": 3}},
        "nope",
    ])
    def test_invalid(self, server, feedback):
        c, _ = server
        _save(c)
        r = c.post("/api/feedback", json={"sessionId": "s1", "feedback": feedback})
        assert r.status_code == 400


# ---------------------------------------------------------------------------
# End chat
# ---------------------------------------------------------------------------

class TestEndChat:
    def test_end(self, server):
        c, _ = server
        _save(c)
        r = c.post("/api/end-chat", json={
            "sessionId": "s1",
            "overallFeedback": {"rating": 4, "thumbs": "up", "comment": "good"},
        })
        assert r.json() == {"success": True}
        data = c.get("/api/conversations", params={"sessionId": "s1"}).json()
        assert data["isCompleted"] is True
        assert data["overallRating"] == 4
        assert data["overallThumbs"] == "up"
        assert data["overallFeedback"] == "good"

    def test_unknown_session(self, server):
        c, _ = server
        r = c.post("/api/end-chat", json={"sessionId": "missing", "overallFeedback": {"rating": 3, "thumbs": "up"}})
        assert r.status_code == 404

    @pytest.mark.parametrize("overall", [
        {"rating": 0, "thumbs": "up"},
        {"rating": 6, "thumbs": "down"},
        {"rating": 3, "thumbs": "meh"},
        {"thumbs": "up"},
    ])
    def test_invalid(self, server, overall):
        c, _ = server
        _save(c)
        r = c.post("/api/end-chat", json={"sessionId": "s1", "overallFeedback": overall})
        assert r.status_code == 400
        assert c.get("/api/conversations", params={"sessionId": "s1"}).json()["isCompleted"] is False
