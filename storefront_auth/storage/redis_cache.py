from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from storefront_auth.storage.models import OneTimeTicket, TicketPurpose

# Keys outlive the ticket so an expired ticket can still be reported as
# expired rather than missing.
_EXPIRED_GRACE_SECONDS = 3600


def _ticket_key(purpose: TicketPurpose, token_hash: str) -> str:
    return f"ticket:{TicketPurpose(purpose).value}:{token_hash}"


def _account_key(purpose: TicketPurpose, account_id: str) -> str:
    return f"ticket:{TicketPurpose(purpose).value}:account:{account_id}"


def _ticket_to_json(ticket: OneTimeTicket) -> str:
    return json.dumps(
        {
            "token_hash": ticket.token_hash,
            "account_id": ticket.account_id,
            "email": ticket.email,
            "purpose": ticket.purpose.value,
            "created_at": ticket.created_at.isoformat(),
            "expires_at": ticket.expires_at.isoformat(),
        }
    )


def _ticket_from_json(raw: Optional[str]) -> Optional[OneTimeTicket]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
        return OneTimeTicket(
            token_hash=data["token_hash"],
            account_id=data["account_id"],
            email=data["email"],
            purpose=TicketPurpose(data["purpose"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )
    except (json.JSONDecodeError, TypeError, KeyError, ValueError):
        # Corrupted entries are treated as absent
        return None


class RedisCache:
    """Thin Redis wrapper for one-time tickets."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL for a ticket key, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        remaining = int((expires_at - datetime.now(timezone.utc)).total_seconds())
        return max(1, remaining + _EXPIRED_GRACE_SECONDS)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def save_ticket(self, ticket: OneTimeTicket, *, supersede: bool = True) -> None:
        ttl = self._ttl_seconds(ticket.expires_at)
        key = _ticket_key(ticket.purpose, ticket.token_hash)
        if supersede:
            previous = await self.client.set(
                _account_key(ticket.purpose, ticket.account_id),
                ticket.token_hash,
                ex=ttl,
                get=True,
            )
            if previous and previous != ticket.token_hash:
                await self.client.delete(_ticket_key(ticket.purpose, previous))
        await self.client.set(key, _ticket_to_json(ticket), ex=ttl)

    async def get_ticket(self, token_hash: str, purpose: TicketPurpose) -> Optional[OneTimeTicket]:
        return _ticket_from_json(await self.client.get(_ticket_key(purpose, token_hash)))

    async def consume_ticket(
        self, token_hash: str, purpose: TicketPurpose
    ) -> Optional[OneTimeTicket]:
        """Atomically get and delete a ticket so only one caller can use it."""
        cached = await self.client.getdel(_ticket_key(purpose, token_hash))
        return _ticket_from_json(cached)

    async def delete_ticket(self, token_hash: str, purpose: TicketPurpose) -> None:
        await self.client.delete(_ticket_key(purpose, token_hash))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes async methods so callers await it the same way
    as :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def save_ticket(self, ticket: OneTimeTicket, *, supersede: bool = True) -> None:
        ttl = RedisCache._ttl_seconds(ticket.expires_at)
        if supersede:
            previous = self._sync_client.set(
                _account_key(ticket.purpose, ticket.account_id),
                ticket.token_hash,
                ex=ttl,
                get=True,
            )
            if previous and previous != ticket.token_hash:
                self._sync_client.delete(_ticket_key(ticket.purpose, previous))
        self._sync_client.set(
            _ticket_key(ticket.purpose, ticket.token_hash), _ticket_to_json(ticket), ex=ttl
        )

    async def get_ticket(self, token_hash: str, purpose: TicketPurpose) -> Optional[OneTimeTicket]:
        return _ticket_from_json(self._sync_client.get(_ticket_key(purpose, token_hash)))

    async def consume_ticket(
        self, token_hash: str, purpose: TicketPurpose
    ) -> Optional[OneTimeTicket]:
        return _ticket_from_json(self._sync_client.getdel(_ticket_key(purpose, token_hash)))

    async def delete_ticket(self, token_hash: str, purpose: TicketPurpose) -> None:
        self._sync_client.delete(_ticket_key(purpose, token_hash))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
