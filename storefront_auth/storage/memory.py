from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from storefront_auth.logging import get_logger
from storefront_auth.storage.errors import ConstraintViolation
from storefront_auth.storage.models import (
    Account,
    AccountStatus,
    OneTimeTicket,
    Role,
    TicketPurpose,
    default_preferences,
    utcnow,
)


class MemoryStore:
    """In-memory backing store persisted to a JSON file under ``fs_root``.

    Used for tests and single-process development. All reads and writes go
    through ``_data_lock`` so ticket consumption is a single check-and-delete.
    """

    def __init__(self, fs_root: str = "/tmp/storefront") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.tickets: Dict[str, OneTimeTicket] = {}
        # RLock so helpers can re-enter while the caller holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # Accounts -----------------------------------------------------------

    def create_account(
        self,
        email: str,
        *,
        first_name: str,
        last_name: str,
        role: Role = Role.CUSTOMER,
        status: AccountStatus = AccountStatus.ACTIVE,
        phone: Optional[str] = None,
        permissions: Optional[Dict[str, Dict[str, bool]]] = None,
        created_by: Optional[str] = None,
        is_email_verified: bool = False,
    ) -> Account:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                role=Role(role),
                status=AccountStatus(status),
                phone=phone,
                is_email_verified=is_email_verified,
                permissions=copy.deepcopy(permissions) if permissions is not None else None,
                preferences=default_preferences(),
                addresses=[],
                created_by=created_by,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == normalized), None)

    def _filtered(
        self, roles: Optional[Iterable[Role]], search: Optional[str]
    ) -> List[Account]:
        wanted = {Role(r) for r in roles} if roles else None
        needle = search.strip().lower() if search else None
        results = []
        for account in self.accounts.values():
            if wanted is not None and account.role not in wanted:
                continue
            if needle and not any(
                needle in value.lower()
                for value in (account.email, account.first_name, account.last_name)
            ):
                continue
            results.append(account)
        return results

    def list_accounts(
        self,
        *,
        roles: Optional[Iterable[Role]] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Account]:
        with self._data_lock:
            results = self._filtered(roles, search)
            results.sort(key=lambda a: a.created_at, reverse=True)
            return results[offset : offset + limit]

    def count_accounts(
        self, *, roles: Optional[Iterable[Role]] = None, search: Optional[str] = None
    ) -> int:
        with self._data_lock:
            return len(self._filtered(roles, search))

    def _update(self, account_id: str, **changes: Any) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            for key, value in changes.items():
                setattr(account, key, value)
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def update_account_status(self, account_id: str, status: AccountStatus) -> Optional[Account]:
        return self._update(account_id, status=AccountStatus(status))

    def update_account_permissions(
        self, account_id: str, permissions: Dict[str, Dict[str, bool]]
    ) -> Optional[Account]:
        return self._update(account_id, permissions=copy.deepcopy(permissions))

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        return self._update(account_id, is_email_verified=True)

    def record_login(self, account_id: str) -> None:
        self._update(account_id, last_login_at=utcnow())

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            self.credentials.pop(account_id, None)
            for token_hash, ticket in list(self.tickets.items()):
                if ticket.account_id == account_id:
                    self.tickets.pop(token_hash, None)
            self._persist_state()
            return True

    # Credentials --------------------------------------------------------

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # One-time tickets ---------------------------------------------------

    def save_ticket(self, ticket: OneTimeTicket, *, supersede: bool = True) -> None:
        with self._data_lock:
            if supersede:
                for token_hash, existing in list(self.tickets.items()):
                    if (
                        existing.account_id == ticket.account_id
                        and existing.purpose == ticket.purpose
                    ):
                        self.tickets.pop(token_hash, None)
            self.tickets[ticket.token_hash] = ticket
            self._persist_state()

    def get_ticket(self, token_hash: str, purpose: TicketPurpose) -> Optional[OneTimeTicket]:
        with self._data_lock:
            ticket = self.tickets.get(token_hash)
            if ticket is None or ticket.purpose != TicketPurpose(purpose):
                return None
            return ticket

    def consume_ticket(self, token_hash: str, purpose: TicketPurpose) -> Optional[OneTimeTicket]:
        """Remove and return the ticket; ``None`` if another caller got it first."""
        with self._data_lock:
            ticket = self.get_ticket(token_hash, purpose)
            if ticket is None:
                return None
            self.tickets.pop(token_hash, None)
            self._persist_state()
            return ticket

    def delete_ticket(self, token_hash: str, purpose: TicketPurpose) -> None:
        with self._data_lock:
            if self.get_ticket(token_hash, purpose) is not None:
                self.tickets.pop(token_hash, None)
                self._persist_state()

    def purge_expired_tickets(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            expired = [h for h, t in self.tickets.items() if t.is_expired(cutoff)]
            for token_hash in expired:
                self.tickets.pop(token_hash, None)
            if expired:
                self._persist_state()
            return len(expired)

    # Persistence --------------------------------------------------------

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "role": account.role.value,
            "status": account.status.value,
            "phone": account.phone,
            "is_email_verified": account.is_email_verified,
            "permissions": account.permissions,
            "preferences": account.preferences,
            "addresses": account.addresses,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "created_by": account.created_by,
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=Role(data.get("role", Role.CUSTOMER.value)),
            status=AccountStatus(data.get("status", AccountStatus.ACTIVE.value)),
            phone=data.get("phone"),
            is_email_verified=data.get("is_email_verified", False),
            permissions=data.get("permissions"),
            preferences=data.get("preferences") or default_preferences(),
            addresses=data.get("addresses") or [],
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_by=data.get("created_by"),
        )

    def _serialize_ticket(self, ticket: OneTimeTicket) -> dict:
        return {
            "token_hash": ticket.token_hash,
            "account_id": ticket.account_id,
            "email": ticket.email,
            "purpose": ticket.purpose.value,
            "created_at": self._serialize_datetime(ticket.created_at),
            "expires_at": self._serialize_datetime(ticket.expires_at),
        }

    def _deserialize_ticket(self, data: dict) -> OneTimeTicket:
        return OneTimeTicket(
            token_hash=data["token_hash"],
            account_id=data["account_id"],
            email=data["email"],
            purpose=TicketPurpose(data["purpose"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "account_id": account_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for account_id, creds in self.credentials.items()
            ],
            "tickets": [self._serialize_ticket(t) for t in self.tickets.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            entry["account_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tickets = {
            t["token_hash"]: self._deserialize_ticket(t) for t in data.get("tickets", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            tickets=len(self.tickets),
        )
        return True
