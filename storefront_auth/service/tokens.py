"""Signed, stateless session tokens.

Tokens are HS256 JWTs. The payload carries exactly the keys in
``_PAYLOAD_KEYS``; anything else is treated as malformed so the decoded
claims always have the shape of :class:`TokenClaims`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from storefront_auth.config import Settings
from storefront_auth.logging import get_logger
from storefront_auth.service.errors import InvalidTokenError
from storefront_auth.storage.models import Role

logger = get_logger(__name__)

_PAYLOAD_KEYS = frozenset({"iss", "aud", "sub", "email", "role", "token_type", "iat", "exp", "jti"})
# Issued tokens are a few hundred characters long
_MAX_TOKEN_LENGTH = 4096


class TokenPurpose(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenErrorKind(str, Enum):
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    WRONG_PURPOSE = "wrong_purpose"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    email: str
    role: Role
    purpose: TokenPurpose
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class TokenResult:
    """Either verified claims or the reason verification failed."""

    claims: Optional[TokenClaims] = None
    error: Optional[TokenErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.claims is not None and self.error is None

    def unwrap(self) -> TokenClaims:
        if self.claims is None or self.error is not None:
            kind = self.error or TokenErrorKind.MALFORMED
            raise InvalidTokenError(reason=kind.value)
        return self.claims


def _failure(kind: TokenErrorKind) -> TokenResult:
    return TokenResult(error=kind)


class TokenCodec:
    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_minutes * 60

    def issue_access_token(self, subject_id: str, email: str, role: Role) -> str:
        return self._issue(subject_id, email, role, TokenPurpose.ACCESS)

    def issue_refresh_token(self, subject_id: str, email: str, role: Role) -> str:
        return self._issue(subject_id, email, role, TokenPurpose.REFRESH)

    def decode_access_token(self, token: Optional[str]) -> TokenResult:
        return self._decode(token, TokenPurpose.ACCESS)

    def decode_refresh_token(self, token: Optional[str]) -> TokenResult:
        return self._decode(token, TokenPurpose.REFRESH)

    def verify_access_token(self, token: Optional[str]) -> TokenClaims:
        return self.decode_access_token(token).unwrap()

    def verify_refresh_token(self, token: Optional[str]) -> TokenClaims:
        return self.decode_refresh_token(token).unwrap()

    def _secret_for(self, purpose: TokenPurpose) -> str:
        if purpose == TokenPurpose.REFRESH:
            return self.settings.refresh_signing_secret
        return self.settings.jwt_secret  # type: ignore[return-value]

    def _issue(self, subject_id: str, email: str, role: Role, purpose: TokenPurpose) -> str:
        issued_at = int(self._clock())
        ttl = self.access_ttl_seconds if purpose == TokenPurpose.ACCESS else self.refresh_ttl_seconds
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject_id,
            "email": email,
            "role": Role(role).value,
            "token_type": purpose.value,
            "iat": issued_at,
            "exp": issued_at + ttl,
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload, self._secret_for(purpose))

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode(self, token: Optional[str], expected: TokenPurpose) -> TokenResult:
        if not token or not isinstance(token, str):
            return _failure(TokenErrorKind.MALFORMED)
        if len(token) > _MAX_TOKEN_LENGTH or not token.isascii():
            return _failure(TokenErrorKind.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3:
            return _failure(TokenErrorKind.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError, RecursionError):
            logger.warning("jwt_header_decode_failed")
            return _failure(TokenErrorKind.MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return _failure(TokenErrorKind.MALFORMED)

        signing_input = f"{header_b64}.{payload_b64}"
        expected_secret = self._secret_for(expected)
        if not hmac.compare_digest(self._sign(signing_input, expected_secret), sig_b64):
            other = TokenPurpose.REFRESH if expected == TokenPurpose.ACCESS else TokenPurpose.ACCESS
            other_secret = self._secret_for(other)
            if other_secret != expected_secret and hmac.compare_digest(
                self._sign(signing_input, other_secret), sig_b64
            ):
                return _failure(TokenErrorKind.WRONG_PURPOSE)
            return _failure(TokenErrorKind.BAD_SIGNATURE)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return _failure(TokenErrorKind.MALFORMED)

        claims = self._claims_from_payload(payload)
        if claims is None:
            return _failure(TokenErrorKind.MALFORMED)
        if claims.purpose != expected:
            return _failure(TokenErrorKind.WRONG_PURPOSE)
        if self._clock() >= claims.expires_at + self.settings.token_leeway_seconds:
            return _failure(TokenErrorKind.EXPIRED)
        return TokenResult(claims=claims)

    def _claims_from_payload(self, payload: Any) -> Optional[TokenClaims]:
        if not isinstance(payload, dict) or set(payload) != _PAYLOAD_KEYS:
            return None
        if payload["iss"] != self.settings.jwt_issuer or payload["aud"] != self.settings.jwt_audience:
            return None
        for key in ("sub", "email", "role", "token_type", "jti"):
            if not isinstance(payload[key], str) or not payload[key]:
                return None
        for key in ("iat", "exp"):
            if isinstance(payload[key], bool) or not isinstance(payload[key], int):
                return None
        try:
            role = Role(payload["role"])
            purpose = TokenPurpose(payload["token_type"])
        except ValueError:
            return None
        return TokenClaims(
            subject_id=payload["sub"],
            email=payload["email"],
            role=role,
            purpose=purpose,
            issued_at=payload["iat"],
            expires_at=payload["exp"],
        )


__all__ = [
    "TokenCodec",
    "TokenClaims",
    "TokenResult",
    "TokenPurpose",
    "TokenErrorKind",
]
