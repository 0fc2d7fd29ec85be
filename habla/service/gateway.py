from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import httpx

from habla.logging import get_logger, sanitize_error_message
from habla.service.audit import AuditLogger

logger = get_logger(__name__)

USER_AGENT = "Habla-Tutor-Backend/1.0"

PROCESS_TIMEOUT_SECONDS = 30.0
START_SESSION_TIMEOUT_SECONDS = 15.0
FEEDBACK_TIMEOUT_SECONDS = 20.0
HEALTH_TIMEOUT_SECONDS = 5.0


@dataclass
class GatewayResult:
    """Local success/failure shape for a workflow call.

    ``status_code`` is set only when the remote answered with an error
    status; unreachable or timed-out calls leave it ``None``.
    """

    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    status_code: Optional[int] = None
    details: Any = None


class ConversationGateway:
    """Relay conversation payloads to the n8n workflow webhook.

    Every call is mirrored into the audit log as an info event on success
    or an error event on failure.
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        *,
        api_key: Optional[str] = None,
        audit: Optional[AuditLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.api_key = api_key
        self.audit = audit
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    @property
    def health_url(self) -> Optional[str]:
        """Health endpoint on the same n8n instance as the webhook."""
        if not self.webhook_url:
            return None
        base, sep, _ = self.webhook_url.partition("/webhook/")
        if sep:
            return f"{base}/health"
        return urljoin(self.webhook_url, "/health")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                headers=headers,
                transport=self._transport,
                follow_redirects=False,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _mirror(self, action: str, result: GatewayResult, **context: Any) -> None:
        if self.audit is None:
            return
        metadata = {"action": action, **context}
        if result.success:
            self.audit.info(f"Gateway {action} succeeded", metadata=metadata)
        else:
            metadata["status_code"] = result.status_code
            self.audit.error(
                f"Gateway {action} failed",
                error=result.error,
                metadata=metadata,
            )

    async def _request(
        self,
        action: str,
        method: str,
        url: Optional[str],
        *,
        timeout: float,
        payload: Optional[Dict[str, Any]] = None,
        **context: Any,
    ) -> GatewayResult:
        if not url:
            result = GatewayResult(
                success=False,
                error="N8N Service Unavailable",
                details="workflow webhook is not configured",
            )
            logger.warning("gateway_not_configured", action=action)
            self._mirror(action, result, **context)
            return result

        try:
            client = await self._get_client()
            response = await client.request(method, url, json=payload, timeout=timeout)
            response.raise_for_status()
            data = response.json() if response.content else {}
            if not isinstance(data, dict):
                data = {"response": data}
            result = GatewayResult(success=True, data=data)
            logger.info("gateway_call_succeeded", action=action, status_code=response.status_code)
        except httpx.HTTPStatusError as exc:
            # Remote answered: surface its status and body
            try:
                body: Any = exc.response.json()
            except ValueError:
                body = exc.response.text
            result = GatewayResult(
                success=False,
                error=f"N8N API Error: {exc.response.status_code} - {exc.response.reason_phrase}",
                status_code=exc.response.status_code,
                details=body,
            )
            logger.error(
                "gateway_call_failed",
                action=action,
                status_code=exc.response.status_code,
                error_body=body,
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            result = GatewayResult(
                success=False,
                error="N8N Service Unavailable",
                details=sanitize_error_message(str(exc) or type(exc).__name__),
            )
            logger.error(
                "gateway_unreachable",
                action=action,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        except ValueError as exc:
            result = GatewayResult(
                success=False,
                error="N8N Service Unavailable",
                details=f"invalid response body: {exc}",
            )
            logger.error("gateway_invalid_response", action=action, error=str(exc))
        self._mirror(action, result, **context)
        return result

    async def process_conversation(
        self,
        *,
        user_id: str,
        conversation_id: str,
        message: Optional[str] = None,
        audio_data: Optional[str] = None,
    ) -> GatewayResult:
        payload = {
            "userId": user_id,
            "conversationId": conversation_id,
            "message": message,
            "audioData": audio_data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "language": "spanish",
            "action": "process_conversation",
        }
        return await self._request(
            "process_conversation",
            "POST",
            self.webhook_url,
            timeout=PROCESS_TIMEOUT_SECONDS,
            payload=payload,
            user_id=user_id,
            conversation_id=conversation_id,
        )

    async def start_session(
        self,
        *,
        user_id: str,
        level: Optional[str] = None,
        preferences: Optional[List[str]] = None,
    ) -> GatewayResult:
        payload = {
            "userId": user_id,
            "userLevel": level or "intermediate",
            "preferences": preferences or [],
            "action": "start_session",
        }
        result = await self._request(
            "start_session",
            "POST",
            self.webhook_url,
            timeout=START_SESSION_TIMEOUT_SECONDS,
            payload=payload,
            user_id=user_id,
        )
        if result.success:
            result.data = {
                "topics": result.data.get("suggestedTopics") or [],
                "sessionId": result.data.get("sessionId"),
                "greeting": result.data.get("greeting"),
            }
        return result

    async def get_feedback(
        self,
        *,
        conversation_id: str,
        transcript: List[Dict[str, str]],
        duration: int,
    ) -> GatewayResult:
        payload = {
            "conversationId": conversation_id,
            "transcript": transcript,
            "duration": duration,
            "action": "generate_feedback",
        }
        result = await self._request(
            "generate_feedback",
            "POST",
            self.webhook_url,
            timeout=FEEDBACK_TIMEOUT_SECONDS,
            payload=payload,
            conversation_id=conversation_id,
        )
        if result.success:
            result.data = {
                "feedback": result.data.get("feedback"),
                "improvements": result.data.get("suggestions") or [],
                "score": result.data.get("score"),
            }
        return result

    async def health_check(self) -> GatewayResult:
        result = await self._request(
            "health_check",
            "GET",
            self.health_url,
            timeout=HEALTH_TIMEOUT_SECONDS,
        )
        result.data = {"status": "healthy" if result.success else "unhealthy", "response": result.data}
        return result
