from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from habla.logging import get_correlation_id
from habla.storage.models import LANGUAGE_LEVELS, Conversation, Message, ProfileUpdate

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "duplicate_user",
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "server_error",
    "upstream_unavailable",
})


class ErrorBody(BaseModel):
    """Error half of the response envelope, with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """JSON envelope returned by every API route."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")

INVALID_EMAIL = "Please provide a valid email address"
INVALID_LEVEL = "Language level must be beginner, intermediate, or advanced"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError(INVALID_EMAIL)
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValueError(INVALID_EMAIL)
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError(INVALID_EMAIL)
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError(INVALID_EMAIL)
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError(INVALID_EMAIL)
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError(INVALID_EMAIL)
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 6:
        raise ValueError("Password must be at least 6 characters long")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters long")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
    ):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number"
        )
    return value


def _validate_username(value: str) -> str:
    if not 3 <= len(value) <= 20:
        raise ValueError("Username must be between 3 and 20 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("Username can only contain letters, numbers, and underscores")
    return value


def _validate_name(value: Optional[str], label: str) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not 1 <= len(value) <= 50:
        raise ValueError(f"{label} must be between 1 and 50 characters")
    return value


def _validate_level(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in LANGUAGE_LEVELS:
        raise ValueError(INVALID_LEVEL)
    return value


class _CamelModel(BaseModel):
    # Clients send camelCase; snake_case is accepted too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(_CamelModel):
    username: str
    email: str
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    language_level: str = "beginner"

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("first_name")
    @classmethod
    def _validate_first_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value, "First name")

    @field_validator("last_name")
    @classmethod
    def _validate_last_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value, "Last name")

    @field_validator("language_level")
    @classmethod
    def _validate_language_level(cls, value: str) -> str:
        return _validate_level(value)


class LoginRequest(_CamelModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _require_password(cls, value: str) -> str:
        if not value:
            raise ValueError("Password is required")
        return value


class ProfileUpdateRequest(_CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    language_level: Optional[str] = None
    email: Optional[str] = None

    @field_validator("first_name")
    @classmethod
    def _validate_first_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value, "First name")

    @field_validator("last_name")
    @classmethod
    def _validate_last_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value, "Last name")

    @field_validator("language_level")
    @classmethod
    def _validate_language_level(cls, value: Optional[str]) -> Optional[str]:
        return _validate_level(value)

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)

    def to_update(self) -> ProfileUpdate:
        """Build a partial update carrying only the fields the client sent."""
        return ProfileUpdate(
            first_name=self.first_name,
            last_name=self.last_name,
            language_level=self.language_level,
            email=self.email,
            fields_set=frozenset(self.model_fields_set),
        )


class StartConversationRequest(_CamelModel):
    topic: Optional[str] = Field(default=None, max_length=200)
    difficulty: str = "beginner"
    preferences: Optional[List[str]] = Field(default=None, max_length=20)


class SendMessageRequest(_CamelModel):
    message: Optional[str] = Field(default=None, max_length=10000)
    message_type: str = Field(default="text", alias="type", pattern="^(text|audio)$")
    audio_url: Optional[str] = Field(default=None, max_length=2048)
    audio_data: Optional[str] = None


class CompleteConversationRequest(_CamelModel):
    duration: int = Field(default=0, ge=0)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def message_view(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "conversationId": message.conversation_id,
        "role": message.role,
        "content": message.content,
        "messageType": message.message_type,
        "audioUrl": message.audio_url,
        "seq": message.seq,
        "createdAt": _iso(message.created_at),
    }


def conversation_view(
    conversation: Conversation,
    *,
    message_count: Optional[int] = None,
    last_message: Optional[str] = None,
) -> Dict[str, Any]:
    view: Dict[str, Any] = {
        "id": conversation.id,
        "userId": conversation.user_id,
        "topic": conversation.topic,
        "difficulty": conversation.difficulty,
        "status": conversation.status,
        "duration": conversation.duration_seconds,
        "createdAt": _iso(conversation.created_at),
        "updatedAt": _iso(conversation.updated_at),
    }
    if message_count is not None:
        view["messageCount"] = message_count
        view["lastMessage"] = last_message
    return view
