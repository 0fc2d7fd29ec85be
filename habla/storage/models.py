from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LANGUAGE_LEVELS = ("beginner", "intermediate", "advanced")
CONVERSATION_STATUSES = ("active", "completed", "paused")
LOG_LEVELS = ("info", "warning", "error", "debug", "http")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    language_level: str = "beginner"
    total_points: int = 0
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    def public_view(self) -> Dict[str, Any]:
        """Client-facing projection; the password digest never leaves the store layer."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "languageLevel": self.language_level,
            "totalPoints": self.total_points,
            "memberSince": self.created_at.isoformat() if self.created_at else None,
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
        }


@dataclass
class ProfileUpdate:
    """Partial profile update; only fields listed in ``fields_set`` are written."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    language_level: Optional[str] = None
    email: Optional[str] = None
    fields_set: frozenset[str] = frozenset()

    # Column written for each updatable attribute
    COLUMNS = {
        "first_name": "first_name",
        "last_name": "last_name",
        "language_level": "language_level",
        "email": "email",
    }

    def is_empty(self) -> bool:
        return not self.fields_set

    def changes(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.COLUMNS if name in self.fields_set}


@dataclass
class Conversation:
    id: str
    user_id: str
    topic: str
    difficulty: str = "beginner"
    status: str = "active"
    duration_seconds: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    seq: int
    message_type: str = "text"
    audio_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LogRecord:
    level: str
    message: str
    method: Optional[str] = None
    path: Optional[str] = None
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    error: Optional[str] = None
    stack: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None
