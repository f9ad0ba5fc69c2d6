from datetime import timedelta

import pytest

from storefront_auth.service.password_reset import PasswordResetService, hash_ticket_token
from storefront_auth.service.passwords import CredentialHasher
from storefront_auth.storage.memory import MemoryStore
from storefront_auth.storage.models import OneTimeTicket, TicketPurpose, utcnow
from storefront_auth.storage.redis_cache import (
    RedisCache,
    SyncRedisCache,
    _ticket_from_json,
    _ticket_to_json,
)


class DictRedis:
    """Just enough of the redis client API for the ticket cache."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def set(self, key, value, ex=None, get=False):
        previous = self.data.get(key)
        self.data[key] = value
        self.ttls[key] = ex
        return previous if get else True

    def get(self, key):
        return self.data.get(key)

    def getdel(self, key):
        return self.data.pop(key, None)

    def delete(self, key):
        self.data.pop(key, None)

    def close(self):
        pass


@pytest.fixture
def cache():
    cache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://unused"
    cache._sync_client = DictRedis()
    return cache


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def service(store, settings, cache):
    return PasswordResetService(store, CredentialHasher(), settings, cache=cache)


def _ticket(minutes=15):
    now = utcnow()
    return OneTimeTicket(
        token_hash="abc",
        account_id="acct-1",
        email="a@b.com",
        purpose=TicketPurpose.PASSWORD_RESET,
        created_at=now,
        expires_at=now + timedelta(minutes=minutes),
    )


def test_ticket_json_helpers():
    ticket = _ticket()
    assert _ticket_from_json(_ticket_to_json(ticket)) == ticket
    assert _ticket_from_json(None) is None
    assert _ticket_from_json("{broken") is None
    assert _ticket_from_json('{"token_hash": "x"}') is None


def test_ttl_keeps_expired_tickets_around_for_reporting():
    ttl = RedisCache._ttl_seconds(utcnow() + timedelta(minutes=15))
    assert 3600 + 15 * 60 - 5 <= ttl <= 3600 + 15 * 60
    assert RedisCache._ttl_seconds(utcnow() - timedelta(days=2)) == 1


async def test_tickets_go_to_redis_not_the_store(service, store, cache):
    account = store.create_account("a@b.com", first_name="A", last_name="B")
    token = (await service.create_reset("a@b.com")).token
    assert store.tickets == {}
    key = f"ticket:password_reset:{hash_ticket_token(token)}"
    assert key in cache._sync_client.data
    assert cache._sync_client.data[f"ticket:password_reset:account:{account.id}"] == hash_ticket_token(token)


async def test_redis_supersede_and_single_use(service, store):
    store.create_account("a@b.com", first_name="A", last_name="B")
    old = (await service.create_reset("a@b.com")).token
    new = (await service.create_reset("a@b.com")).token
    assert not (await service.verify_reset_token(old)).success

    assert (await service.reset_password(new, "Changed123")).success
    assert not (await service.reset_password(new, "Another123")).success


async def test_purge_is_a_no_op_with_redis(service):
    assert await service.purge_expired() == 0
