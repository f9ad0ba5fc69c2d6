from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

SUPER_ADMIN_ID = "super-admin"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles.

    ``SUPER_ADMIN`` is never persisted; it only appears on the
    configuration-derived identity.
    """

    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def is_administrative(self) -> bool:
        return self in (Role.STAFF, Role.ADMIN, Role.SUPER_ADMIN)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class TicketPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


def default_preferences() -> Dict[str, str]:
    return {"currency": "USD", "language": "en", "theme": "light"}


@dataclass
class Account:
    id: str
    email: str
    first_name: str
    last_name: str
    role: Role = Role.CUSTOMER
    status: AccountStatus = AccountStatus.ACTIVE
    phone: Optional[str] = None
    is_email_verified: bool = False
    permissions: Optional[Dict[str, Dict[str, bool]]] = None
    preferences: Dict[str, str] = field(default_factory=default_preferences)
    addresses: List[Dict] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass
class OneTimeTicket:
    """Stored half of a reset or verification ticket.

    Only the SHA-256 digest of the secret is kept; the raw value is handed
    to the caller once at issue time.
    """

    token_hash: str
    account_id: str
    email: str
    purpose: TicketPurpose
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
