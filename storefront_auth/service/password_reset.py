"""One-time ticket lifecycle for password resets and email verification.

A ticket moves from issued to consumed, expired or superseded. Only the
SHA-256 digest of the secret is stored, and consumption is a conditional
delete in the backing store, so two concurrent resets with the same secret
cannot both succeed.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from storefront_auth.config import Settings
from storefront_auth.logging import get_logger, hash_email
from storefront_auth.service.errors import (
    ExpiredError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from storefront_auth.service.passwords import CredentialHasher
from storefront_auth.storage.models import Account, OneTimeTicket, TicketPurpose, utcnow

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = (
    "If an account exists with this email, a password reset link has been sent."
)
INVALID_RESET_MESSAGE = "Invalid or expired reset token"
_MAX_TOKEN_LENGTH = 256


@dataclass(frozen=True)
class TicketResult:
    success: bool
    message: str
    email: Optional[str] = None
    account_id: Optional[str] = None
    token: Optional[str] = None
    error: Optional[ServiceError] = None

    def raise_for_error(self) -> "TicketResult":
        if self.error is not None:
            raise self.error
        return self


def _fail(error: ServiceError) -> TicketResult:
    return TicketResult(success=False, message=error.message, error=error)


def hash_ticket_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PasswordResetService:
    def __init__(
        self,
        store: Any,
        hasher: CredentialHasher,
        settings: Settings,
        *,
        cache: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.hasher = hasher
        self.settings = settings
        self._clock = clock

    # Backend dispatch: Redis when configured, otherwise the primary store.

    async def _save(self, ticket: OneTimeTicket) -> None:
        if self.cache:
            await self.cache.save_ticket(ticket, supersede=True)
        else:
            self.store.save_ticket(ticket, supersede=True)

    async def _get(self, token_hash: str, purpose: TicketPurpose) -> Optional[OneTimeTicket]:
        if self.cache:
            return await self.cache.get_ticket(token_hash, purpose)
        return self.store.get_ticket(token_hash, purpose)

    async def _consume(self, token_hash: str, purpose: TicketPurpose) -> Optional[OneTimeTicket]:
        if self.cache:
            return await self.cache.consume_ticket(token_hash, purpose)
        return self.store.consume_ticket(token_hash, purpose)

    async def _delete(self, token_hash: str, purpose: TicketPurpose) -> None:
        if self.cache:
            await self.cache.delete_ticket(token_hash, purpose)
        else:
            self.store.delete_ticket(token_hash, purpose)

    async def _issue(self, account: Account, purpose: TicketPurpose, ttl: timedelta) -> str:
        token = secrets.token_hex(32)
        now = self._clock()
        ticket = OneTimeTicket(
            token_hash=hash_ticket_token(token),
            account_id=account.id,
            email=account.email,
            purpose=purpose,
            created_at=now,
            expires_at=now + ttl,
        )
        await self._save(ticket)
        return token

    async def _lookup(
        self, token: Optional[str], purpose: TicketPurpose, *, expired_message: str
    ) -> tuple[Optional[OneTimeTicket], Optional[ServiceError]]:
        if not token or len(token) > _MAX_TOKEN_LENGTH:
            return None, NotFoundError(INVALID_RESET_MESSAGE)
        token_hash = hash_ticket_token(token.strip())
        ticket = await self._get(token_hash, purpose)
        if ticket is None:
            logger.warning("ticket_not_found", purpose=purpose.value, token_prefix=token[:8])
            return None, NotFoundError(INVALID_RESET_MESSAGE)
        if ticket.is_expired(self._clock()):
            await self._delete(token_hash, purpose)
            logger.info("ticket_expired", purpose=purpose.value, account_id=ticket.account_id)
            return None, ExpiredError(expired_message)
        return ticket, None

    # Password reset

    async def create_reset(self, email: str) -> TicketResult:
        """Issue a reset ticket for an active account.

        The result always reports success; ``token`` is only set when a
        ticket was actually created.
        """
        normalized = (email or "").strip().lower()
        account = self.store.get_account_by_email(normalized) if normalized else None
        if account is None or not account.is_active:
            logger.info(
                "password_reset_skipped",
                email_hash=hash_email(normalized),
                reason="missing" if account is None else "inactive",
            )
            return TicketResult(success=True, message=RESET_REQUESTED_MESSAGE)
        token = await self._issue(
            account,
            TicketPurpose.PASSWORD_RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        logger.info("password_reset_requested", account_id=account.id)
        return TicketResult(
            success=True,
            message=RESET_REQUESTED_MESSAGE,
            email=account.email,
            account_id=account.id,
            token=token,
        )

    async def verify_reset_token(self, token: Optional[str]) -> TicketResult:
        """Check a reset ticket without consuming it."""
        ticket, error = await self._lookup(
            token, TicketPurpose.PASSWORD_RESET, expired_message="Reset token has expired"
        )
        if error is not None:
            return _fail(error)
        return TicketResult(
            success=True,
            message="Reset token is valid",
            email=ticket.email,
            account_id=ticket.account_id,
        )

    async def reset_password(self, token: Optional[str], new_password: str) -> TicketResult:
        check = self.hasher.validate(new_password)
        if not check.valid:
            return _fail(ValidationError(check.message or "Invalid password"))

        ticket, error = await self._lookup(
            token, TicketPurpose.PASSWORD_RESET, expired_message="Reset token has expired"
        )
        if error is not None:
            return _fail(error)

        account = self.store.get_account(ticket.account_id)
        if account is None:
            await self._delete(ticket.token_hash, TicketPurpose.PASSWORD_RESET)
            return _fail(NotFoundError(INVALID_RESET_MESSAGE))

        consumed = await self._consume(ticket.token_hash, TicketPurpose.PASSWORD_RESET)
        if consumed is None:
            logger.warning("password_reset_race_lost", account_id=account.id)
            return _fail(NotFoundError(INVALID_RESET_MESSAGE))
        if consumed.is_expired(self._clock()):
            return _fail(ExpiredError("Reset token has expired"))

        self.store.save_password(account.id, self.hasher.hash(new_password), self.hasher.algorithm)
        logger.info("password_reset_completed", account_id=account.id)
        return TicketResult(
            success=True,
            message="Password reset successfully",
            email=account.email,
            account_id=account.id,
        )

    # Email verification

    async def create_verification(self, account: Account) -> Optional[str]:
        if account.is_email_verified:
            return None
        token = await self._issue(
            account,
            TicketPurpose.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        logger.info("email_verification_issued", account_id=account.id)
        return token

    async def resend_verification(self, email: str) -> TicketResult:
        normalized = (email or "").strip().lower()
        account = self.store.get_account_by_email(normalized) if normalized else None
        message = "If the account exists and is unverified, a verification email has been sent."
        if account is None or not account.is_active or account.is_email_verified:
            return TicketResult(success=True, message=message)
        token = await self.create_verification(account)
        return TicketResult(
            success=True, message=message, email=account.email, account_id=account.id, token=token
        )

    async def verify_email(self, token: Optional[str]) -> TicketResult:
        ticket, error = await self._lookup(
            token,
            TicketPurpose.EMAIL_VERIFICATION,
            expired_message="Verification token has expired",
        )
        if error is not None:
            if isinstance(error, NotFoundError):
                error = NotFoundError("Invalid or expired verification token")
            return _fail(error)
        consumed = await self._consume(ticket.token_hash, TicketPurpose.EMAIL_VERIFICATION)
        if consumed is None:
            return _fail(NotFoundError("Invalid or expired verification token"))
        account = self.store.mark_email_verified(consumed.account_id)
        if account is None:
            return _fail(NotFoundError("Account not found"))
        logger.info("email_verified", account_id=account.id)
        return TicketResult(
            success=True,
            message="Email verified successfully",
            email=account.email,
            account_id=account.id,
        )

    async def purge_expired(self) -> int:
        """Drop expired tickets from the primary store; Redis expires its own keys."""
        purged = self.store.purge_expired_tickets(self._clock())
        if purged:
            logger.info("expired_tickets_purged", count=purged)
        return purged
