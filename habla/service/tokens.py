from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from habla.logging import get_logger
from habla.service.errors import InvalidTokenError

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    username: str
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None

    def identity(self) -> dict[str, str]:
        return {"userId": self.user_id, "email": self.email, "username": self.username}


class TokenService:
    """Issue and verify HS256 bearer tokens carrying the user's identity."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int = 7 * 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode("utf-8", "surrogateescape"), hashlib.sha256).digest()
        )

    def issue(self, claims: TokenClaims, ttl_seconds: Optional[int] = None) -> str:
        now = int(self.clock())
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        payload: dict[str, Any] = {
            **claims.identity(),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + ttl,
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        """Return the token's claims or raise ``InvalidTokenError``."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("Invalid or expired token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid or expired token")
        # Pin the algorithm so a forged header cannot downgrade verification
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise InvalidTokenError("Invalid or expired token")

        # Compare bytes: compare_digest rejects non-ASCII str operands with TypeError
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogateescape")):
            raise InvalidTokenError("Invalid or expired token")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid or expired token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("Invalid or expired token")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise InvalidTokenError("Invalid or expired token")

        try:
            exp_ts = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Invalid or expired token")
        if exp_ts <= self.clock():
            raise InvalidTokenError("Invalid or expired token")

        try:
            return TokenClaims(
                user_id=str(payload["userId"]),
                email=payload["email"],
                username=payload["username"],
                issued_at=payload.get("iat"),
                expires_at=exp_ts,
            )
        except KeyError:
            raise InvalidTokenError("Invalid or expired token")
