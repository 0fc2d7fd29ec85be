from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from habla.logging import get_logger
from habla.service.audit import AuditLogger
from habla.service.errors import (
    AuthenticationError,
    DuplicateUserError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from habla.service.tokens import TokenClaims, TokenService
from habla.storage.errors import ConstraintViolation
from habla.storage.models import LANGUAGE_LEVELS, ProfileUpdate, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        language_level: str = "beginner",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_email_or_username(self, email: str, username: str) -> Optional[User]: ...

    def update_user(self, user_id: str, update: ProfileUpdate) -> Optional[User]: ...

    def record_login(self, user_id: str, at: datetime) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> bool: ...


@dataclass
class AuthResult:
    token: str
    user: User


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Registration, login and profile management on top of the token service."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        *,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.audit = audit
        # argon2id defaults are well above the bcrypt cost-12 work factor
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        """Constant-time check of ``password`` against an argon2 digest."""
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _issue(self, user: User) -> str:
        return self.tokens.issue(
            TokenClaims(user_id=user.id, email=user.email, username=user.username)
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        language_level: str = "beginner",
    ) -> AuthResult:
        missing = [
            name
            for name, value in (("username", username), ("email", email), ("password", password))
            if not value
        ]
        if missing:
            raise ValidationError(
                "Username, email and password are required",
                detail={"errors": [{"field": name, "message": f"{name} is required"} for name in missing]},
            )
        if language_level not in LANGUAGE_LEVELS:
            raise ValidationError(
                "Language level must be beginner, intermediate, or advanced",
                detail={"errors": [{"field": "languageLevel", "message": "invalid language level"}]},
            )
        email = normalize_email(email)

        # Advisory only; the store's unique constraint is authoritative
        if self.store.find_user_by_email_or_username(email, username):
            raise DuplicateUserError("User already exists with this email or username")

        password_hash = await asyncio.to_thread(self._hash_password, password)
        try:
            user = self.store.create_user(
                username,
                email,
                password_hash,
                first_name=first_name,
                last_name=last_name,
                language_level=language_level,
            )
        except ConstraintViolation as exc:
            self.logger.info("register_race_lost", field=exc.field)
            raise DuplicateUserError("User already exists with this email or username")

        token = self._issue(user)
        self.logger.info("user_registered", user_id=user.id)
        if self.audit:
            self.audit.info("User registered", user_id=user.id, metadata={"username": user.username})
        return AuthResult(token=token, user=user)

    async def login(self, email: str, password: str) -> AuthResult:
        if not email or not password:
            raise ValidationError("Email and password are required")
        user = self.store.get_user_by_email(normalize_email(email))
        if not user or not user.is_active:
            self.logger.info("login_failed", reason="unknown_or_inactive")
            raise InvalidCredentialsError("Invalid credentials")
        if not await asyncio.to_thread(self.verify_password, user.password_hash, password):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError("Invalid credentials")

        now = self._now()
        if user.last_login is not None and now <= user.last_login:
            now = user.last_login + timedelta(microseconds=1)
        user = self.store.record_login(user.id, now) or user

        token = self._issue(user)
        self.logger.info("user_logged_in", user_id=user.id)
        if self.audit:
            self.audit.info("User logged in", user_id=user.id)
        return AuthResult(token=token, user=user)

    def authenticate(self, authorization: Optional[str]) -> TokenClaims:
        """Resolve an ``Authorization`` header to token claims.

        Raises:
            AuthenticationError: no bearer token was sent (401)
            InvalidTokenError: the token is malformed, forged or expired (403)
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Access token required")
        return self.tokens.verify(token)

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise NotFoundError("User not found")
        return user

    def logout(self, user_id: str) -> dict:
        # Tokens are stateless; the client discards its copy
        self.logger.info("user_logged_out", user_id=user_id)
        if self.audit:
            self.audit.info("User logged out", user_id=user_id)
        return {"loggedOut": True}

    def update_profile(self, user_id: str, update: ProfileUpdate) -> User:
        if update.is_empty():
            raise ValidationError("No fields to update")
        if "language_level" in update.fields_set and update.language_level not in LANGUAGE_LEVELS:
            raise ValidationError(
                "Language level must be beginner, intermediate, or advanced",
                detail={"errors": [{"field": "languageLevel", "message": "invalid language level"}]},
            )
        if "email" in update.fields_set:
            if not update.email:
                raise ValidationError(
                    "Please provide a valid email address",
                    detail={"errors": [{"field": "email", "message": "email is required"}]},
                )
            update = replace(update, email=normalize_email(update.email))
            existing = self.store.get_user_by_email(update.email)
            if existing and existing.id != user_id:
                raise DuplicateUserError("Email is already in use by another user")

        try:
            user = self.store.update_user(user_id, update)
        except ConstraintViolation:
            raise DuplicateUserError("Email is already in use by another user")
        if not user:
            raise NotFoundError("User not found")
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(update.fields_set))
        return user

    def deactivate(self, user_id: str) -> None:
        if not self.store.set_user_active(user_id, False):
            raise NotFoundError("User not found")
        self.logger.info("account_deactivated", user_id=user_id)
        if self.audit:
            self.audit.warning("Account deactivated", user_id=user_id)
