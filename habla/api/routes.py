from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from habla.api.schemas import (
    CompleteConversationRequest,
    Envelope,
    LoginRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    SendMessageRequest,
    StartConversationRequest,
    conversation_view,
    message_view,
)
from habla.service.errors import RateLimitedError
from habla.service.runtime import check_rate_limit, get_runtime
from habla.service.tokens import TokenClaims

router = APIRouter(prefix="/api")

TOO_MANY_ATTEMPTS = "Too many attempts. Please try again later."


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a sliding-window limit and optionally apply headers to ``response``.

    Raises:
        RateLimitedError: the key already used ``limit`` attempts inside the window
    """
    decision = await check_rate_limit(runtime, key, limit, window_seconds)
    info = RateLimitInfo(limit, decision.remaining, window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not decision.allowed:
        raise RateLimitedError(TOO_MANY_ATTEMPTS, retry_after=decision.retry_after)

    return info


def _auth_rate_limit(limit_setting: str):
    """Route dependency enforcing a credential-endpoint limit.

    Dependencies are solved before the request body is validated, so
    malformed bodies still spend the budget.
    """

    async def _dependency(request: Request, response: Response) -> None:
        runtime = get_runtime()
        # Keyed on client address plus route path
        await _enforce_rate_limit(
            runtime,
            f"{client_address(request)}:{request.url.path}",
            getattr(runtime.settings, limit_setting),
            runtime.settings.auth_rate_limit_window_minutes * 60,
            response=response,
        )

    return _dependency


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> TokenClaims:
    runtime = get_runtime()
    claims = runtime.auth.authenticate(authorization)
    # Read back by the audit middleware
    request.state.user_id = claims.user_id
    return claims


# -- auth ---------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(_auth_rate_limit("register_rate_limit"))],
)
async def register(body: RegisterRequest):
    """Create a new user account.

    Returns a bearer token together with the public profile.

    Raises:
        400: validation failure, or the email/username is already registered
        429: too many registrations from this address
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        language_level=body.language_level,
    )
    return Envelope(
        success=True,
        message="User registered successfully",
        data={"token": result.token, "user": result.user.public_view()},
    )


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(_auth_rate_limit("login_rate_limit"))],
)
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: unknown email, inactive account or wrong password
        429: too many attempts from this address
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(
        success=True,
        message="Login successful",
        data={"token": result.token, "user": result.user.public_view()},
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: TokenClaims = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_profile(principal.user_id)
    return Envelope(success=True, data={"user": user.public_view()})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: TokenClaims = Depends(get_user)):
    """Acknowledge a logout.

    Tokens are not revoked server side; the client is expected to discard its
    copy, and the token stays valid until it expires.
    """
    runtime = get_runtime()
    return Envelope(
        success=True,
        message="Logged out successfully",
        data=runtime.auth.logout(principal.user_id),
    )


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_token(principal: TokenClaims = Depends(get_user)):
    return Envelope(success=True, message="Token is valid", data={"user": principal.identity()})


# -- profile ------------------------------------------------------------------


@router.get("/user/profile", response_model=Envelope, tags=["user"])
async def get_profile(principal: TokenClaims = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_profile(principal.user_id)
    return Envelope(success=True, data={"user": user.public_view()})


@router.put("/user/profile", response_model=Envelope, tags=["user"])
async def update_profile(body: ProfileUpdateRequest, principal: TokenClaims = Depends(get_user)):
    """Partially update the caller's profile.

    Only fields present in the body are written; an empty body is rejected.
    """
    runtime = get_runtime()
    user = runtime.auth.update_profile(principal.user_id, body.to_update())
    return Envelope(
        success=True,
        message="Profile updated successfully",
        data={"user": user.public_view()},
    )


@router.delete("/user/account", response_model=Envelope, tags=["user"])
async def deactivate_account(principal: TokenClaims = Depends(get_user)):
    runtime = get_runtime()
    runtime.auth.deactivate(principal.user_id)
    return Envelope(success=True, message="Account deactivated successfully")


# -- conversations ------------------------------------------------------------


@router.post("/conversation/start", response_model=Envelope, status_code=201, tags=["conversation"])
async def start_conversation(
    body: StartConversationRequest, principal: TokenClaims = Depends(get_user)
):
    """Open a new tutoring conversation.

    When the workflow service is configured its greeting is stored as the
    first assistant message.
    """
    runtime = get_runtime()
    conversation, messages = await runtime.conversations.start(
        principal.user_id,
        body.topic or "",
        difficulty=body.difficulty,
        preferences=body.preferences,
    )
    return Envelope(
        success=True,
        message="Conversation started successfully",
        data={
            "conversation": {
                **conversation_view(conversation),
                "messages": [message_view(m) for m in messages],
            }
        },
    )


@router.get("/conversation/list", response_model=Envelope, tags=["conversation"])
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: str = Query("all"),
    principal: TokenClaims = Depends(get_user),
):
    runtime = get_runtime()
    listing = runtime.conversations.list_conversations(
        principal.user_id, page=page, limit=limit, status=status
    )
    return Envelope(
        success=True,
        data={
            "conversations": [
                conversation_view(conversation, message_count=count, last_message=last)
                for conversation, count, last in listing["items"]
            ],
            "pagination": listing["pagination"],
        },
    )


@router.post("/conversation/{conversation_id}/message", response_model=Envelope, tags=["conversation"])
async def send_message(
    body: SendMessageRequest,
    conversation_id: str = Path(..., max_length=64),
    principal: TokenClaims = Depends(get_user),
):
    """Send a learner turn and return the tutor's reply.

    Raises:
        404: conversation missing, not owned by the caller, or not active
        502: the workflow service failed; the learner's message stays stored
    """
    runtime = get_runtime()
    exchange = await runtime.conversations.send_message(
        principal.user_id,
        conversation_id,
        body.message or "",
        message_type=body.message_type,
        audio_url=body.audio_url,
        audio_data=body.audio_data,
    )
    return Envelope(
        success=True,
        message="Message sent successfully",
        data={
            "userMessage": message_view(exchange.user_message),
            "aiResponse": message_view(exchange.assistant_message),
            "executionId": exchange.execution_id,
        },
    )


@router.get("/conversation/{conversation_id}/history", response_model=Envelope, tags=["conversation"])
async def conversation_history(
    conversation_id: str = Path(..., max_length=64),
    principal: TokenClaims = Depends(get_user),
):
    runtime = get_runtime()
    messages = runtime.conversations.history(principal.user_id, conversation_id)
    return Envelope(
        success=True,
        data={
            "conversationId": conversation_id,
            "messages": [message_view(m) for m in messages],
            "totalMessages": len(messages),
        },
    )


@router.post("/conversation/{conversation_id}/feedback", response_model=Envelope, tags=["conversation"])
async def conversation_feedback(
    conversation_id: str = Path(..., max_length=64),
    principal: TokenClaims = Depends(get_user),
):
    runtime = get_runtime()
    feedback = await runtime.conversations.feedback(principal.user_id, conversation_id)
    return Envelope(success=True, data={"conversationId": conversation_id, **feedback})


@router.post("/conversation/{conversation_id}/complete", response_model=Envelope, tags=["conversation"])
async def complete_conversation(
    body: Optional[CompleteConversationRequest] = None,
    conversation_id: str = Path(..., max_length=64),
    principal: TokenClaims = Depends(get_user),
):
    runtime = get_runtime()
    conversation = runtime.conversations.complete(
        principal.user_id, conversation_id, duration_seconds=body.duration if body else 0
    )
    return Envelope(
        success=True,
        message="Conversation completed",
        data={"conversation": conversation_view(conversation)},
    )
