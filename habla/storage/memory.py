from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from habla.logging import get_logger
from habla.storage.errors import ConstraintViolation
from habla.storage.models import (
    Conversation,
    LogRecord,
    Message,
    ProfileUpdate,
    User,
    utcnow,
)


class MemoryStore:
    """In-process backing store used for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.logs: List[LogRecord] = []
        self._log_id_seq: int = 1
        # RLock so helpers can be composed inside a locked section
        self._data_lock = threading.RLock()

    # -- users -----------------------------------------------------------

    def _find_conflict(
        self, *, email: Optional[str] = None, username: Optional[str] = None, exclude_id: Optional[str] = None
    ) -> Optional[str]:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email is not None and existing.email.lower() == email.lower():
                return "email"
            if username is not None and existing.username.lower() == username.lower():
                return "username"
        return None

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        language_level: str = "beginner",
    ) -> User:
        with self._data_lock:
            conflict = self._find_conflict(email=email, username=username)
            if conflict:
                raise ConstraintViolation(f"{conflict} already exists", {"field": conflict})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                language_level=language_level,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == email.lower():
                    return replace(user)
        return None

    def find_user_by_email_or_username(self, email: str, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == email.lower() or user.username.lower() == username.lower():
                    return replace(user)
        return None

    def update_user(self, user_id: str, update: ProfileUpdate) -> Optional[User]:
        changes = update.changes()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.is_active:
                return None
            if "email" in changes and self._find_conflict(email=changes["email"], exclude_id=user_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(user, **changes, updated_at=utcnow())
            self.users[user_id] = updated
            return replace(updated)

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, last_login=at)
            self.users[user_id] = updated
            return replace(updated)

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self.users[user_id] = replace(user, is_active=is_active, updated_at=utcnow())
            return True

    # -- conversations ---------------------------------------------------

    def create_conversation(
        self, user_id: str, topic: str, *, difficulty: str = "beginner"
    ) -> Conversation:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            now = utcnow()
            conversation = Conversation(
                id=str(uuid.uuid4()),
                user_id=user_id,
                topic=topic,
                difficulty=difficulty,
                created_at=now,
                updated_at=now,
            )
            self.conversations[conversation.id] = conversation
            self.messages[conversation.id] = []
            return replace(conversation)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._data_lock:
            conversation = self.conversations.get(conversation_id)
            return replace(conversation) if conversation else None

    def _user_conversations(self, user_id: str, status: Optional[str]) -> List[Conversation]:
        return [
            c
            for c in self.conversations.values()
            if c.user_id == user_id and (status is None or c.status == status)
        ]

    def list_conversations(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Conversation]:
        with self._data_lock:
            rows = sorted(
                self._user_conversations(user_id, status),
                key=lambda c: c.updated_at,
                reverse=True,
            )
            return [replace(c) for c in rows[offset : offset + limit]]

    def count_conversations(self, user_id: str, *, status: Optional[str] = None) -> int:
        with self._data_lock:
            return len(self._user_conversations(user_id, status))

    def update_conversation(
        self,
        conversation_id: str,
        *,
        status: Optional[str] = None,
        duration_seconds: Optional[int] = None,
    ) -> Optional[Conversation]:
        with self._data_lock:
            conversation = self.conversations.get(conversation_id)
            if not conversation:
                return None
            changes: dict = {"updated_at": utcnow()}
            if status is not None:
                changes["status"] = status
            if duration_seconds is not None:
                changes["duration_seconds"] = duration_seconds
            updated = replace(conversation, **changes)
            self.conversations[conversation_id] = updated
            return replace(updated)

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        message_type: str = "text",
        audio_url: Optional[str] = None,
    ) -> Message:
        with self._data_lock:
            conversation = self.conversations.get(conversation_id)
            if not conversation:
                raise ConstraintViolation(
                    "conversation does not exist", {"field": "conversation_id"}
                )
            thread = self.messages.setdefault(conversation_id, [])
            now = utcnow()
            message = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                role=role,
                content=content,
                seq=len(thread),
                message_type=message_type,
                audio_url=audio_url,
                created_at=now,
            )
            thread.append(message)
            self.conversations[conversation_id] = replace(conversation, updated_at=now)
            return replace(message)

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._data_lock:
            return [replace(m) for m in self.messages.get(conversation_id, [])]

    def message_summary(self, conversation_id: str) -> Tuple[int, Optional[str]]:
        """Return ``(message_count, last_message_content)`` for a conversation."""
        with self._data_lock:
            thread = self.messages.get(conversation_id, [])
            return len(thread), (thread[-1].content if thread else None)

    # -- audit log -------------------------------------------------------

    def append_log(self, record: LogRecord) -> LogRecord:
        with self._data_lock:
            stored = replace(record, id=self._log_id_seq)
            self._log_id_seq += 1
            self.logs.append(stored)
            return stored

    def list_logs(self, *, level: Optional[str] = None, limit: int = 100) -> List[LogRecord]:
        with self._data_lock:
            rows = [r for r in self.logs if level is None or r.level == level]
            return rows[-limit:]

    def close(self) -> None:
        return None
