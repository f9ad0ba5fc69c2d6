from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed account, credential and ticket store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the account, credential and ticket tables if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'customer',
                    status TEXT NOT NULL DEFAULT 'active',
                    phone TEXT,
                    is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    permissions JSONB,
                    preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
                    addresses JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ,
                    last_login_at TIMESTAMPTZ,
                    created_by TEXT
                )
                """
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email))"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account_credential (
                    account_id UUID PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
                    password_hash TEXT NOT NULL,
                    password_algo TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    last_updated_at TIMESTAMPTZ
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS one_time_ticket (
                    token_hash TEXT PRIMARY KEY,
                    account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
                    email TEXT NOT NULL,
                    purpose TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    expires_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS one_time_ticket_account_idx ON one_time_ticket (account_id, purpose)"
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            role=Role(row.get("role") or Role.CUSTOMER.value),
            status=AccountStatus(row.get("status") or AccountStatus.ACTIVE.value),
            phone=row.get("phone"),
            is_email_verified=bool(row.get("is_email_verified", False)),
            permissions=row.get("permissions"),
            preferences=row.get("preferences") or default_preferences(),
            addresses=row.get("addresses") or [],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
            last_login_at=row.get("last_login_at"),
            created_by=row.get("created_by"),
        )

    @staticmethod
    def _ticket_from_row(row: Dict[str, Any]) -> OneTimeTicket:
        return OneTimeTicket(
            token_hash=row["token_hash"],
            account_id=str(row["account_id"]),
            email=row["email"],
            purpose=TicketPurpose(row["purpose"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    # accounts
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
        account_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        preferences = default_preferences()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, first_name, last_name, role, status, phone,
                                         is_email_verified, permissions, preferences, addresses, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalized,
                        first_name,
                        last_name,
                        Role(role).value,
                        AccountStatus(status).value,
                        phone,
                        is_email_verified,
                        json.dumps(permissions) if permissions is not None else None,
                        json.dumps(preferences),
                        json.dumps([]),
                        created_by,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE lower(email) = %s", (email.strip().lower(),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    @staticmethod
    def _account_filters(
        roles: Optional[Iterable[Role]], search: Optional[str]
    ) -> tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if roles:
            clauses.append("role = ANY(%s)")
            params.append([Role(r).value for r in roles])
        if search and search.strip():
            pattern = f"%{search.strip().lower()}%"
            clauses.append(
                "(lower(email) LIKE %s OR lower(first_name) LIKE %s OR lower(last_name) LIKE %s)"
            )
            params.extend([pattern, pattern, pattern])
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_accounts(
        self,
        *,
        roles: Optional[Iterable[Role]] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Account]:
        where, params = self._account_filters(roles, search)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM account{where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def count_accounts(
        self, *, roles: Optional[Iterable[Role]] = None, search: Optional[str] = None
    ) -> int:
        where, params = self._account_filters(roles, search)
        with self._connect() as conn:
            row = conn.execute(f"SELECT count(*) AS total FROM account{where}", params).fetchone()
        return int(row["total"]) if row else 0

    def _update_returning(self, sql: str, params: tuple) -> Optional[Account]:
        # account id is always the last parameter
        if not _is_uuid(params[-1]):
            return None
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._account_from_row(row) if row else None

    def update_account_status(self, account_id: str, status: AccountStatus) -> Optional[Account]:
        return self._update_returning(
            "UPDATE account SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
            (AccountStatus(status).value, account_id),
        )

    def update_account_permissions(
        self, account_id: str, permissions: Dict[str, Dict[str, bool]]
    ) -> Optional[Account]:
        return self._update_returning(
            "UPDATE account SET permissions = %s, updated_at = now() WHERE id = %s RETURNING *",
            (json.dumps(permissions), account_id),
        )

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        return self._update_returning(
            "UPDATE account SET is_email_verified = TRUE, updated_at = now() WHERE id = %s RETURNING *",
            (account_id,),
        )

    def record_login(self, account_id: str) -> None:
        if not _is_uuid(account_id):
            return
        with self._connect() as conn:
            conn.execute("UPDATE account SET last_login_at = now() WHERE id = %s", (account_id,))

    def delete_account(self, account_id: str) -> bool:
        if not _is_uuid(account_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM account WHERE id = %s RETURNING id", (account_id,)
            ).fetchone()
        return row is not None

    # credentials
    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # one-time tickets
    def save_ticket(self, ticket: OneTimeTicket, *, supersede: bool = True) -> None:
        with self._connect() as conn:
            if supersede:
                conn.execute(
                    "DELETE FROM one_time_ticket WHERE account_id = %s AND purpose = %s",
                    (ticket.account_id, ticket.purpose.value),
                )
            conn.execute(
                """
                INSERT INTO one_time_ticket (token_hash, account_id, email, purpose, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    ticket.token_hash,
                    ticket.account_id,
                    ticket.email,
                    ticket.purpose.value,
                    ticket.created_at,
                    ticket.expires_at,
                ),
            )

    def get_ticket(self, token_hash: str, purpose: TicketPurpose) -> Optional[OneTimeTicket]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_ticket WHERE token_hash = %s AND purpose = %s",
                (token_hash, TicketPurpose(purpose).value),
            ).fetchone()
        return self._ticket_from_row(row) if row else None

    def consume_ticket(self, token_hash: str, purpose: TicketPurpose) -> Optional[OneTimeTicket]:
        # DELETE ... RETURNING makes check-and-consume a single statement
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM one_time_ticket WHERE token_hash = %s AND purpose = %s RETURNING *",
                (token_hash, TicketPurpose(purpose).value),
            ).fetchone()
        return self._ticket_from_row(row) if row else None

    def delete_ticket(self, token_hash: str, purpose: TicketPurpose) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM one_time_ticket WHERE token_hash = %s AND purpose = %s",
                (token_hash, TicketPurpose(purpose).value),
            )

    def purge_expired_tickets(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM one_time_ticket WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cursor.rowcount or 0
