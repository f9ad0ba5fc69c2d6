"""Request authentication and authorization.

Token precedence is fixed: a non-empty ``Authorization`` header always wins
and the ``access_token`` cookie is only consulted when no such header is
present. A header that is not a usable bearer token is rejected outright.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from storefront_auth.config import Settings
from storefront_auth.logging import get_logger
from storefront_auth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    ServiceError,
)
from storefront_auth.service.permissions import (
    Principal,
    can_access_route,
    has_permission,
)
from storefront_auth.service.tokens import TokenCodec
from storefront_auth.storage.models import SUPER_ADMIN_ID, Role

logger = get_logger(__name__)

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

TOKEN_REQUIRED = "Authorization token required"
TOKEN_INVALID = "Invalid or expired token"
ADMIN_REQUIRED = "Admin access required"
INSUFFICIENT_PERMISSIONS = "Insufficient permissions"


@dataclass(frozen=True)
class GateResult:
    success: bool
    principal: Optional[Principal] = None
    error: Optional[ServiceError] = None

    def unwrap(self) -> Principal:
        if self.error is not None or self.principal is None:
            raise self.error or AuthenticationError(TOKEN_INVALID)
        return self.principal


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def extract_token(authorization: Optional[str], cookie: Optional[str]) -> Optional[str]:
    """Pick the request token, preferring the Authorization header over the cookie."""
    if authorization and authorization.strip():
        return extract_bearer(authorization)
    return cookie.strip() if cookie and cookie.strip() else None


class RequestGate:
    def __init__(self, codec: TokenCodec, store: Any, settings: Settings) -> None:
        self.codec = codec
        self.store = store
        self.settings = settings

    def _resolve(self, subject_id: str, email: str, role: Role) -> Optional[Principal]:
        if subject_id == SUPER_ADMIN_ID:
            if (
                role == Role.SUPER_ADMIN
                and self.settings.super_admin_configured
                and email == self.settings.super_admin_email
            ):
                return Principal.super_admin(email)
            return None
        account = self.store.get_account(subject_id)
        if account is None or not account.is_active:
            return None
        # Role and grants come from the stored record, not the token
        return Principal.from_account(account)

    def authenticate(
        self, authorization: Optional[str] = None, cookie: Optional[str] = None
    ) -> GateResult:
        token = extract_token(authorization, cookie)
        if not token:
            if authorization and authorization.strip():
                logger.info("authorization_header_rejected")
                return GateResult(False, error=AuthenticationError(TOKEN_INVALID))
            return GateResult(False, error=AuthenticationError(TOKEN_REQUIRED))
        result = self.codec.decode_access_token(token)
        if not result.ok:
            logger.info("access_token_rejected", reason=result.error.value if result.error else None)
            return GateResult(False, error=AuthenticationError(TOKEN_INVALID))
        claims = result.claims
        principal = self._resolve(claims.subject_id, claims.email, claims.role)
        if principal is None:
            logger.info("access_token_subject_unavailable", subject_id=claims.subject_id)
            return GateResult(False, error=AuthenticationError(TOKEN_INVALID))
        return GateResult(True, principal=principal)

    def verify_admin_token(
        self, authorization: Optional[str] = None, cookie: Optional[str] = None
    ) -> GateResult:
        result = self.authenticate(authorization, cookie)
        if not result.success:
            return result
        if not result.principal.is_administrative:
            logger.info("admin_access_denied", subject_id=result.principal.subject_id)
            return GateResult(False, error=ForbiddenError(ADMIN_REQUIRED))
        return result

    @staticmethod
    def require_permission(principal: Principal, resource: str, action: str) -> Principal:
        if not has_permission(principal, resource, action):
            logger.info(
                "permission_denied",
                subject_id=principal.subject_id,
                resource=resource,
                action=action,
            )
            raise ForbiddenError(
                INSUFFICIENT_PERMISSIONS, detail={"required": f"{resource}.{action}"}
            )
        return principal

    @staticmethod
    def authorize_route(principal: Principal, path: str) -> bool:
        return can_access_route(principal, path)
