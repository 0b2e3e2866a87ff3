"""
Tests for SQLite conversation storage.
Uses a temp database for each test.
"""

import sqlite3

import pytest

from chatfeedback.storage.models import (
    ConversationRecord,
    Message,
    MessageFeedback,
    OverallFeedback,
)
from chatfeedback.storage.sqlite_store import SQLiteStore


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    return SQLiteStore(str(tmp_path / "test.db"))


def _history(*pairs):
    return [Message(role=r, content=c).to_dict() for r, c in pairs]


def test_save_and_get(store):
    messages = _history(("user", "hi"), ("assistant", "hello!"))
    record = store.save_conversation("s1", "ada", messages)
    assert isinstance(record, ConversationRecord)
    assert record.session_id == "s1"
    assert record.username == "ada"
    assert [m["content"] for m in record.messages] == ["hi", "hello!"]
    assert record.feedback == {}
    assert record.is_completed is False


def test_get_unknown_session(store):
    assert store.get_conversation("missing") is None


def test_save_is_upsert(store):
    store.save_conversation("s1", "ada", _history(("user", "hi")))
    first = store.get_conversation("s1")
    store.save_conversation("s1", "ada", _history(("user", "hi"), ("assistant", "yo")))
    second = store.get_conversation("s1")
    assert second.id == first.id
    assert second.created_at == first.created_at
    assert len(second.messages) == 2
    assert store.get_stats()["conversations"] == 1


def test_save_normalizes_feedback_keys(store):
    record = store.save_conversation("s1", "ada", _history(("user", "hi")), {1: {"thumbs": "up"}})
    assert record.feedback == {"1": {"thumbs": "up"}}


def test_update_feedback_merges(store):
    store.save_conversation("s1", "ada", _history(("user", "a"), ("assistant", "b"), ("user", "c"), ("assistant", "d")),
                            {"1": {"thumbs": "up"}})
    record = store.update_feedback("s1", {"3": {"rating": 7}})
    assert record.feedback == {"1": {"thumbs": "up"}, "3": {"rating": 7}}

    record = store.update_feedback("s1", {"1": {"thumbs": "down", "comment": "meh"}})
    assert record.feedback["1"] == {"thumbs": "down", "comment": "meh"}
    assert record.feedback["3"] == {"rating": 7}


def test_update_feedback_unknown_session(store):
    with pytest.raises(KeyError):
        store.update_feedback("missing", {"1": {"thumbs": "up"}})


def test_end_session(store):
    store.save_conversation("s1", "ada", _history(("user", "hi"), ("assistant", "hello")))
    record = store.end_session("s1", OverallFeedback(rating=4, thumbs="up", comment="nice"))
    assert record.is_completed is True
    assert record.overall_rating == 4
    assert record.overall_thumbs == "up"
    assert record.overall_feedback == "nice"


def test_end_session_unknown(store):
    with pytest.raises(KeyError):
        store.end_session("missing", OverallFeedback(rating=3, thumbs="down"))


def test_end_session_rejects_invalid(store):
    store.save_conversation("s1", "ada", _history(("user", "hi")))
    with pytest.raises(ValueError):
        store.end_session("s1", OverallFeedback(rating=6, thumbs="up"))
    assert store.get_conversation("s1").is_completed is False


def test_list_and_stats(store):
    store.save_conversation("s1", "ada", _history(("user", "a"), ("assistant", "b")))
    store.save_conversation("s2", "bob", _history(("user", "c")))
    store.save_conversation("s3", "ada", _history(("user", "d")))
    store.end_session("s1", OverallFeedback(rating=5, thumbs="up"))
    store.end_session("s3", OverallFeedback(rating=2, thumbs="down"))

    rows = store.list_conversations(limit=10)
    assert len(rows) == 3
    by_id = {r["session_id"]: r for r in rows}
    assert by_id["s1"]["message_count"] == 2
    assert by_id["s1"]["is_completed"] is True
    assert by_id["s2"]["overall_rating"] is None

    stats = store.get_stats()
    assert stats["conversations"] == 3
    assert stats["completed"] == 2
    assert stats["users"] == 2
    assert stats["avg_overall_rating"] == 3.5


def test_list_respects_limit(store):
    for i in range(5):
        store.save_conversation(f"s{i}", "ada", _history(("user", str(i))))
    assert len(store.list_conversations(limit=2)) == 2


def test_export_all_json(store):
    store.save_conversation("s1", "ada", _history(("user", "hi")))
    data = store.export_all_json()
    assert len(data) == 1
    assert data[0]["sessionId"] == "s1"
    assert data[0]["isCompleted"] is False
    assert data[0]["messages"][0]["content"] == "hi"


def test_migrates_old_schema(tmp_path):
    db_path = tmp_path / "old.db"
    conn = sqlite3.connect(db_path)
    conn.execute(
        """CREATE TABLE conversations (
               id INTEGER PRIMARY KEY AUTOINCREMENT,
               session_id TEXT NOT NULL UNIQUE,
               username TEXT NOT NULL,
               messages TEXT NOT NULL,
               feedback TEXT NOT NULL DEFAULT '{}',
               created_at TEXT NOT NULL,
               updated_at TEXT NOT NULL)"""
    )
    conn.commit()
    conn.close()

    store = SQLiteStore(str(db_path))
    store.save_conversation("s1", "ada", _history(("user", "hi")))
    record = store.end_session("s1", OverallFeedback(rating=3, thumbs="up"))
    assert record.is_completed is True

    # reopening must not fail on columns that now exist
    SQLiteStore(str(db_path))


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

def test_message_feedback_validation():
    MessageFeedback(thumbs="up", rating=0).validate()
    MessageFeedback(rating=10).validate()
    with pytest.raises(ValueError):
        MessageFeedback(thumbs="sideways").validate()
    with pytest.raises(ValueError):
        MessageFeedback(rating=11).validate()


def test_message_feedback_to_dict_drops_unset():
    assert MessageFeedback(thumbs="down").to_dict() == {"thumbs": "down"}


@pytest.mark.parametrize("rating, thumbs", [(0, "up"), (6, "up"), (True, "up"), ("4", "up"), (3, "meh")])
def test_overall_feedback_invalid(rating, thumbs):
    with pytest.raises(ValueError):
        OverallFeedback.from_dict({"rating": rating, "thumbs": thumbs})


def test_message_from_dict_fills_timestamp():
    msg = Message.from_dict({"role": "user", "content": "hi"})
    assert msg.timestamp
    assert msg.to_openai_format() == {"role": "user", "content": "hi"}
