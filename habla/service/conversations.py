from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from habla.logging import get_logger
from habla.service.errors import NotFoundError, UpstreamUnavailableError, ValidationError
from habla.service.gateway import ConversationGateway
from habla.storage.models import (
    CONVERSATION_STATUSES,
    LANGUAGE_LEVELS,
    Conversation,
    Message,
)

logger = get_logger(__name__)

# Response keys the workflow has used for the tutor's reply, in lookup order
_REPLY_KEYS = ("response", "reply", "message", "text", "output")


@dataclass
class MessageExchange:
    user_message: Message
    assistant_message: Message
    execution_id: Optional[str] = None


def _extract_reply(data: Dict[str, Any]) -> Optional[str]:
    for key in _REPLY_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class ConversationService:
    """Persist tutoring conversations and relay turns to the workflow gateway."""

    def __init__(self, store, gateway: ConversationGateway) -> None:
        self.store = store
        self.gateway = gateway

    def _owned(self, user_id: str, conversation_id: str, *, require_active: bool = False) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if (
            not conversation
            or conversation.user_id != user_id
            or (require_active and conversation.status != "active")
        ):
            raise NotFoundError("Conversation not found or not accessible")
        return conversation

    async def start(
        self,
        user_id: str,
        topic: str,
        *,
        difficulty: str = "beginner",
        preferences: Optional[List[str]] = None,
    ) -> tuple[Conversation, List[Message]]:
        topic = (topic or "").strip()
        if not topic:
            raise ValidationError(
                "Topic is required",
                detail={"errors": [{"field": "topic", "message": "Topic is required"}]},
            )
        if difficulty not in LANGUAGE_LEVELS:
            raise ValidationError(
                "Difficulty must be beginner, intermediate, or advanced",
                detail={"errors": [{"field": "difficulty", "message": "invalid difficulty"}]},
            )
        conversation = self.store.create_conversation(user_id, topic, difficulty=difficulty)
        messages: List[Message] = []
        if self.gateway.is_configured:
            session = await self.gateway.start_session(
                user_id=user_id, level=difficulty, preferences=preferences or [topic]
            )
            greeting = session.data.get("greeting") if session.success else None
            if isinstance(greeting, str) and greeting.strip():
                messages.append(
                    self.store.append_message(conversation.id, "assistant", greeting)
                )
            elif not session.success:
                logger.warning(
                    "conversation_greeting_unavailable",
                    conversation_id=conversation.id,
                    error=session.error,
                )
        logger.info("conversation_started", conversation_id=conversation.id, user_id=user_id)
        return conversation, messages

    async def send_message(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        *,
        message_type: str = "text",
        audio_url: Optional[str] = None,
        audio_data: Optional[str] = None,
    ) -> MessageExchange:
        content = (content or "").strip()
        if not content:
            raise ValidationError(
                "Message is required",
                detail={"errors": [{"field": "message", "message": "Message is required"}]},
            )
        self._owned(user_id, conversation_id, require_active=True)
        user_message = self.store.append_message(
            conversation_id,
            "user",
            content,
            message_type=message_type,
            audio_url=audio_url,
        )

        result = await self.gateway.process_conversation(
            user_id=user_id,
            conversation_id=conversation_id,
            message=content,
            audio_data=audio_data,
        )
        if not result.success:
            detail: Dict[str, Any] = {"error": result.error}
            if result.status_code is not None:
                detail["upstreamStatus"] = result.status_code
            raise UpstreamUnavailableError(
                "Conversation service is unavailable, please try again later",
                detail=detail,
            )
        reply = _extract_reply(result.data)
        if reply is None:
            logger.error(
                "conversation_reply_missing",
                conversation_id=conversation_id,
                keys=sorted(result.data.keys()),
            )
            raise UpstreamUnavailableError(
                "Conversation service returned no reply",
                detail={"error": "empty workflow response"},
            )
        assistant_message = self.store.append_message(conversation_id, "assistant", reply)
        return MessageExchange(
            user_message=user_message,
            assistant_message=assistant_message,
            execution_id=result.data.get("executionId"),
        )

    def history(self, user_id: str, conversation_id: str) -> List[Message]:
        self._owned(user_id, conversation_id)
        return self.store.list_messages(conversation_id)

    def list_conversations(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        status: str = "all",
    ) -> Dict[str, Any]:
        if status != "all" and status not in CONVERSATION_STATUSES:
            raise ValidationError(
                "Status must be all, active, completed, or paused",
                detail={"errors": [{"field": "status", "message": "invalid status"}]},
            )
        status_filter = None if status == "all" else status
        page = max(1, page)
        limit = max(1, limit)
        conversations = self.store.list_conversations(
            user_id, status=status_filter, limit=limit, offset=(page - 1) * limit
        )
        total = self.store.count_conversations(user_id, status=status_filter)
        items = []
        for conversation in conversations:
            count, last = self.store.message_summary(conversation.id)
            items.append((conversation, count, last))
        return {
            "items": items,
            "pagination": {
                "currentPage": page,
                "limit": limit,
                "totalConversations": total,
                "totalPages": math.ceil(total / limit) if total else 0,
            },
        }

    async def feedback(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        conversation = self._owned(user_id, conversation_id)
        transcript = [
            {"role": m.role, "content": m.content}
            for m in self.store.list_messages(conversation_id)
        ]
        if not transcript:
            raise ValidationError("Conversation has no messages yet")
        result = await self.gateway.get_feedback(
            conversation_id=conversation_id,
            transcript=transcript,
            duration=conversation.duration_seconds,
        )
        if not result.success:
            raise UpstreamUnavailableError(
                "Failed to generate feedback", detail={"error": result.error}
            )
        return result.data

    def complete(self, user_id: str, conversation_id: str, *, duration_seconds: int) -> Conversation:
        self._owned(user_id, conversation_id)
        if duration_seconds < 0:
            raise ValidationError("Duration must not be negative")
        updated = self.store.update_conversation(
            conversation_id, status="completed", duration_seconds=duration_seconds
        )
        if not updated:
            raise NotFoundError("Conversation not found or not accessible")
        logger.info("conversation_completed", conversation_id=conversation_id, duration_seconds=duration_seconds)
        return updated
