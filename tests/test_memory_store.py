import threading
from datetime import timedelta

import pytest

from storefront_auth.storage.errors import ConstraintViolation
from storefront_auth.storage.memory import MemoryStore
from storefront_auth.storage.models import (
    AccountStatus,
    OneTimeTicket,
    Role,
    TicketPurpose,
    utcnow,
)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _ticket(account_id, token_hash="h1", purpose=TicketPurpose.PASSWORD_RESET, minutes=15):
    now = utcnow()
    return OneTimeTicket(
        token_hash=token_hash,
        account_id=account_id,
        email="a@b.com",
        purpose=purpose,
        created_at=now,
        expires_at=now + timedelta(minutes=minutes),
    )


def test_email_uniqueness_is_case_insensitive(store):
    store.create_account("A@B.com", first_name="A", last_name="B")
    with pytest.raises(ConstraintViolation):
        store.create_account("a@b.COM", first_name="A", last_name="B")
    assert store.get_account_by_email(" A@b.com ").email == "a@b.com"


def test_state_survives_a_restart(tmp_path):
    first = MemoryStore(fs_root=str(tmp_path))
    account = first.create_account("a@b.com", first_name="A", last_name="B", phone="555")
    first.save_password(account.id, "hash", "argon2id")
    first.save_ticket(_ticket(account.id))

    second = MemoryStore(fs_root=str(tmp_path))
    restored = second.get_account(account.id)
    assert restored.email == "a@b.com"
    assert restored.phone == "555"
    assert restored.role == Role.CUSTOMER
    assert restored.created_at == account.created_at
    assert second.get_password_record(account.id) == ("hash", "argon2id")
    assert second.get_ticket("h1", TicketPurpose.PASSWORD_RESET).account_id == account.id


def test_save_password_requires_account(store):
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")


def test_list_and_count_filter_by_role_and_search(store):
    store.create_account("jane@shop.com", first_name="Jane", last_name="Doe")
    store.create_account("ops@shop.com", first_name="Ops", last_name="Team", role=Role.ADMIN)
    store.create_account("joe@shop.com", first_name="Joe", last_name="Bloggs")

    customers = store.list_accounts(roles=[Role.CUSTOMER])
    assert {a.email for a in customers} == {"jane@shop.com", "joe@shop.com"}
    assert store.count_accounts(roles=[Role.CUSTOMER], search="doe") == 1
    assert store.count_accounts(roles=[Role.ADMIN, Role.STAFF]) == 1
    assert len(store.list_accounts(limit=1)) == 1


def test_updates(store):
    account = store.create_account("a@b.com", first_name="A", last_name="B")
    assert store.update_account_status(account.id, AccountStatus.SUSPENDED).status == AccountStatus.SUSPENDED
    assert store.mark_email_verified(account.id).is_email_verified
    store.record_login(account.id)
    assert store.get_account(account.id).last_login_at is not None
    assert store.update_account_status("missing", AccountStatus.ACTIVE) is None


def test_delete_cascades_to_credentials_and_tickets(store):
    account = store.create_account("a@b.com", first_name="A", last_name="B")
    store.save_password(account.id, "hash", "argon2id")
    store.save_ticket(_ticket(account.id))
    assert store.delete_account(account.id)
    assert store.get_password_record(account.id) is None
    assert store.tickets == {}
    assert store.delete_account(account.id) is False


def test_save_ticket_supersedes_same_purpose_only(store):
    account = store.create_account("a@b.com", first_name="A", last_name="B")
    store.save_ticket(_ticket(account.id, "reset-1"))
    store.save_ticket(_ticket(account.id, "verify-1", TicketPurpose.EMAIL_VERIFICATION))
    store.save_ticket(_ticket(account.id, "reset-2"))
    assert set(store.tickets) == {"verify-1", "reset-2"}


def test_ticket_lookup_respects_purpose(store):
    account = store.create_account("a@b.com", first_name="A", last_name="B")
    store.save_ticket(_ticket(account.id))
    assert store.get_ticket("h1", TicketPurpose.EMAIL_VERIFICATION) is None
    assert store.consume_ticket("h1", TicketPurpose.EMAIL_VERIFICATION) is None
    assert "h1" in store.tickets


def test_concurrent_consumption_has_one_winner(store):
    account = store.create_account("a@b.com", first_name="A", last_name="B")
    store.save_ticket(_ticket(account.id))
    barrier = threading.Barrier(8)
    winners = []

    def consume():
        barrier.wait()
        if store.consume_ticket("h1", TicketPurpose.PASSWORD_RESET) is not None:
            winners.append(1)

    threads = [threading.Thread(target=consume) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(winners) == 1


def test_purge_expired_tickets(store):
    account = store.create_account("a@b.com", first_name="A", last_name="B")
    other = store.create_account("c@d.com", first_name="C", last_name="D")
    store.save_ticket(_ticket(account.id, "old", minutes=-1))
    store.save_ticket(_ticket(other.id, "fresh"))
    assert store.purge_expired_tickets() == 1
    assert set(store.tickets) == {"fresh"}
