"""
SQLite storage for chat sessions and their feedback.
One row per session: the message history and per-message feedback are kept
as JSON columns, overall feedback as plain columns. Upserts key on session_id.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from chatfeedback.storage.models import ConversationRecord, OverallFeedback, utc_now

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL UNIQUE,
    username TEXT NOT NULL,
    messages TEXT NOT NULL,
    feedback TEXT NOT NULL DEFAULT '{}',
    overall_rating INTEGER,
    overall_thumbs TEXT,
    overall_feedback TEXT,
    is_completed BOOLEAN NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_username
    ON conversations(username);
CREATE INDEX IF NOT EXISTS idx_conversations_updated
    ON conversations(updated_at);
"""

# Databases created before end-of-session feedback existed (safe to re-run)
MIGRATIONS = [
    "ALTER TABLE conversations ADD COLUMN overall_rating INTEGER",
    "ALTER TABLE conversations ADD COLUMN overall_thumbs TEXT",
    "ALTER TABLE conversations ADD COLUMN overall_feedback TEXT",
    "ALTER TABLE conversations ADD COLUMN is_completed BOOLEAN NOT NULL DEFAULT 0",
]


def _row_to_record(row: sqlite3.Row) -> ConversationRecord:
    return ConversationRecord(
        id=row["id"],
        session_id=row["session_id"],
        username=row["username"],
        messages=json.loads(row["messages"]),
        feedback=json.loads(row["feedback"] or "{}"),
        overall_rating=row["overall_rating"],
        overall_thumbs=row["overall_thumbs"],
        overall_feedback=row["overall_feedback"],
        is_completed=bool(row["is_completed"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _normalize_feedback(feedback: dict | None) -> dict[str, dict]:
    """JSON object keys are strings; message indexes may arrive as ints."""
    return {str(k): dict(v) for k, v in (feedback or {}).items()}


class SQLiteStore:
    """Thread-safe SQLite conversation/feedback store."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
            for migration in MIGRATIONS:
                try:
                    conn.execute(migration)
                except sqlite3.OperationalError as e:
                    if "duplicate column" not in str(e).lower():
                        logger.warning("Migration skipped: %s", e)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def save_conversation(
        self,
        session_id: str,
        username: str,
        messages: list[dict],
        feedback: dict | None = None,
    ) -> ConversationRecord:
        """Insert or replace the history and feedback for a session."""
        now = utc_now()
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO conversations
                   (session_id, username, messages, feedback, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(session_id) DO UPDATE SET
                       username = excluded.username,
                       messages = excluded.messages,
                       feedback = excluded.feedback,
                       updated_at = excluded.updated_at""",
                (session_id, username, json.dumps(messages),
                 json.dumps(_normalize_feedback(feedback)), now, now),
            )
        logger.debug(
            "Saved conversation %s (user=%s, messages=%d)",
            session_id, username, len(messages),
        )
        return self.get_conversation(session_id)

    def get_conversation(self, session_id: str) -> ConversationRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return _row_to_record(row) if row else None

    def update_feedback(self, session_id: str, feedback: dict) -> ConversationRecord:
        """
        Merge per-message feedback into the stored mapping.
        Entries for indexes not mentioned are kept; mentioned indexes are replaced.
        Raises KeyError if the session has never been saved.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT feedback FROM conversations WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if row is None:
                raise KeyError(session_id)
            merged = json.loads(row["feedback"] or "{}")
            merged.update(_normalize_feedback(feedback))
            conn.execute(
                "UPDATE conversations SET feedback = ?, updated_at = ? WHERE session_id = ?",
                (json.dumps(merged), utc_now(), session_id),
            )
        logger.debug("Merged feedback for %s: %s", session_id, sorted(feedback))
        return self.get_conversation(session_id)

    def end_session(self, session_id: str, overall: OverallFeedback) -> ConversationRecord:
        """Record end-of-session feedback and mark the session completed."""
        overall.validate()
        with self._connect() as conn:
            cur = conn.execute(
                """UPDATE conversations
                   SET overall_rating = ?, overall_thumbs = ?, overall_feedback = ?,
                       is_completed = 1, updated_at = ?
                   WHERE session_id = ?""",
                (overall.rating, overall.thumbs, overall.comment, utc_now(), session_id),
            )
            if cur.rowcount == 0:
                raise KeyError(session_id)
        logger.info(
            "Session %s completed (rating=%d, thumbs=%s)",
            session_id, overall.rating, overall.thumbs,
        )
        return self.get_conversation(session_id)

    def list_conversations(self, limit: int = 20) -> list[dict]:
        """Most recently updated sessions with their message counts."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT session_id, username, messages, is_completed, overall_rating, updated_at
                   FROM conversations
                   ORDER BY updated_at DESC
                   LIMIT ?""",
                (limit,),
            ).fetchall()
        return [
            {
                "session_id": r["session_id"],
                "username": r["username"],
                "message_count": len(json.loads(r["messages"])),
                "is_completed": bool(r["is_completed"]),
                "overall_rating": r["overall_rating"],
                "updated_at": r["updated_at"],
            }
            for r in rows
        ]

    def export_all_json(self) -> list[dict]:
        """Export every session, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM conversations ORDER BY created_at"
            ).fetchall()
        return [_row_to_record(r).to_dict() for r in rows]

    def get_stats(self) -> dict:
        with self._connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
            completed = conn.execute(
                "SELECT COUNT(*) FROM conversations WHERE is_completed = 1"
            ).fetchone()[0]
            users = conn.execute(
                "SELECT COUNT(DISTINCT username) FROM conversations"
            ).fetchone()[0]
            avg_rating = conn.execute(
                "SELECT AVG(overall_rating) FROM conversations WHERE overall_rating IS NOT NULL"
            ).fetchone()[0]
        return {
            "conversations": total,
            "completed": completed,
            "users": users,
            "avg_overall_rating": round(avg_rating, 2) if avg_rating is not None else None,
        }
