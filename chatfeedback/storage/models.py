"""
Data models for conversation and feedback storage.
These define the shape of data flowing between the chat client and the stores.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone

ROLES = ("user", "assistant", "system")
THUMBS = ("up", "down")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Message:
    """A single turn in a conversation. Immutable once appended to history."""
    role: str = ""           # "user", "assistant" ("system" only on the wire)
    content: str = ""
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}

    def to_openai_format(self) -> dict:
        """Role/content pair as sent upstream."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        return cls(
            role=data.get("role", ""),
            content=data.get("content", ""),
            timestamp=data.get("timestamp") or utc_now(),
        )


@dataclass
class MessageFeedback:
    """Per-message rating. Every field is optional; rating is 0-10."""
    thumbs: str | None = None
    rating: int | None = None
    comment: str | None = None

    def validate(self) -> None:
        if self.thumbs is not None and self.thumbs not in THUMBS:
            raise ValueError(f"thumbs must be one of {THUMBS}, got {self.thumbs!r}")
        if self.rating is not None and not 0 <= self.rating <= 10:
            raise ValueError(f"rating must be between 0 and 10, got {self.rating}")

    def to_dict(self) -> dict:
        return {k: v for k, v in
                (("thumbs", self.thumbs), ("rating", self.rating), ("comment", self.comment))
                if v is not None}


@dataclass
class OverallFeedback:
    """End-of-session rating submitted when the user ends the chat."""
    rating: int
    thumbs: str
    comment: str = ""

    def validate(self) -> None:
        if isinstance(self.rating, bool) or not isinstance(self.rating, int):
            raise ValueError("rating must be an integer")
        if not 1 <= self.rating <= 5:
            raise ValueError("rating must be between 1 and 5")
        if self.thumbs not in THUMBS:
            raise ValueError(f"thumbs must be one of {THUMBS}")

    @classmethod
    def from_dict(cls, data: dict) -> OverallFeedback:
        fb = cls(
            rating=data.get("rating"),
            thumbs=data.get("thumbs"),
            comment=data.get("comment") or "",
        )
        fb.validate()
        return fb

    def to_dict(self) -> dict:
        return {"rating": self.rating, "thumbs": self.thumbs, "comment": self.comment}


@dataclass
class ConversationRecord:
    """One persisted chat session, keyed by its opaque session id."""
    session_id: str
    username: str = ""
    messages: list[dict] = field(default_factory=list)
    feedback: dict[str, dict] = field(default_factory=dict)
    overall_rating: int | None = None
    overall_thumbs: str | None = None
    overall_feedback: str | None = None
    is_completed: bool = False
    id: int | None = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        """API shape (camelCase, as the browser client expects)."""
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "username": self.username,
            "messages": self.messages,
            "feedback": self.feedback,
            "overallRating": self.overall_rating,
            "overallThumbs": self.overall_thumbs,
            "overallFeedback": self.overall_feedback,
            "isCompleted": self.is_completed,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
