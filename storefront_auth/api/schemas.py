from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from storefront_auth.service.permissions import PERMISSION_SCHEMA, Principal
from storefront_auth.storage.models import Account, AccountStatus, Role

MAX_NAME_LENGTH = 100
MAX_TOKEN_LENGTH = 2048


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize a string after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Please provide a valid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email address")
    return normalized


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("name must not be blank")
    return cleaned


class _Request(BaseModel):
    # Clients send either camelCase or snake_case field names
    model_config = ConfigDict(populate_by_name=True, str_max_length=4096)


class SignupRequest(_Request):
    email: str
    password: str = Field(..., max_length=256)
    first_name: str = Field(
        ..., max_length=MAX_NAME_LENGTH, validation_alias=AliasChoices("first_name", "firstName")
    )
    last_name: str = Field(
        ..., max_length=MAX_NAME_LENGTH, validation_alias=AliasChoices("last_name", "lastName")
    )
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class SigninRequest(_Request):
    # Malformed emails fall through to the generic credential failure
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)


class RefreshRequest(_Request):
    refresh_token: Optional[str] = Field(
        default=None,
        max_length=MAX_TOKEN_LENGTH,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )


class ForgotPasswordRequest(_Request):
    email: str = Field(..., max_length=254)


class ResetPasswordRequest(_Request):
    token: str = Field(..., max_length=256)
    new_password: str = Field(
        ..., max_length=256, validation_alias=AliasChoices("new_password", "newPassword")
    )


class VerifyPasswordResetRequest(_Request):
    code: str = Field(..., max_length=256)
    new_password: str = Field(
        ..., max_length=256, validation_alias=AliasChoices("new_password", "newPassword")
    )


class ChangePasswordRequest(_Request):
    current_password: str = Field(
        ...,
        min_length=1,
        max_length=256,
        validation_alias=AliasChoices("current_password", "currentPassword"),
    )
    new_password: str = Field(
        ..., max_length=256, validation_alias=AliasChoices("new_password", "newPassword")
    )


class VerifyEmailRequest(_Request):
    token: str = Field(..., max_length=256)


class ResendVerificationRequest(_Request):
    email: str = Field(..., max_length=254)


class AdminCreateRequest(_Request):
    email: str
    password: str = Field(..., max_length=256)
    first_name: str = Field(
        ..., max_length=MAX_NAME_LENGTH, validation_alias=AliasChoices("first_name", "firstName")
    )
    last_name: str = Field(
        ..., max_length=MAX_NAME_LENGTH, validation_alias=AliasChoices("last_name", "lastName")
    )
    role: Role = Role.ADMIN
    permissions: Optional[Dict[str, Dict[str, bool]]] = None

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("permissions")
    @classmethod
    def _limit_permissions(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None and len(value) > len(PERMISSION_SCHEMA):
            raise ValueError("too many permission resources")
        return value


class UpdatePermissionsRequest(_Request):
    permissions: Dict[str, Dict[str, bool]]


class AdminPasswordResetRequest(_Request):
    new_password: str = Field(
        ..., max_length=256, validation_alias=AliasChoices("new_password", "newPassword")
    )


class UpdateStatusRequest(_Request):
    status: AccountStatus


class AccountResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    status: str
    phone: Optional[str] = None
    is_email_verified: bool = False
    preferences: Dict[str, str] = Field(default_factory=dict)
    addresses: List[Dict] = Field(default_factory=list)
    permissions: Optional[Dict[str, Dict[str, bool]]] = None
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account, *, include_permissions: bool = False) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            role=account.role.value,
            status=account.status.value,
            phone=account.phone,
            is_email_verified=account.is_email_verified,
            preferences=dict(account.preferences),
            addresses=list(account.addresses),
            permissions=account.permissions if include_permissions else None,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
        )


class PrincipalResponse(BaseModel):
    id: str
    email: str
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_super_admin: bool = False
    permissions: Dict[str, Dict[str, bool]] = Field(default_factory=dict)

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.subject_id,
            email=principal.email,
            role=principal.role.value,
            first_name=principal.first_name,
            last_name=principal.last_name,
            is_super_admin=principal.is_super_admin,
            permissions=principal.permissions,
        )


class AuthResponse(BaseModel):
    message: str
    user: Optional[AccountResponse] = None
    admin: Optional[PrincipalResponse] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None


class AccountListResponse(BaseModel):
    items: List[AccountResponse]
    total: int
    limit: int
    offset: int


class RouteAccessResponse(BaseModel):
    path: str
    allowed: bool
