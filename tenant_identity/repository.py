"""Database repository for tenant, account, and credential data."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from psycopg import errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, CredentialRecord, Role
from .domain.contracts import NewAccount

_CREDENTIAL_COLUMNS = """
    account_id, tenant_id, email, name, role, email_verified_at, created_at,
    password_hash, refresh_token_hash,
    email_verification_token_hash, email_verification_expires_at,
    password_reset_token_hash, password_reset_expires_at
"""


class DuplicateEmailError(Exception):
    """Raised when an insert collides with the global unique index on email."""


class AccountRepository:
    """Postgres-backed credential store.

    Email lookups are global (uniqueness spans tenants); every lookup or
    update by account id is also filtered by ``tenant_id``. One-time token
    consumption happens in a single conditional ``UPDATE ... RETURNING`` so
    two racing callers cannot both consume the same token.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def find_by_email(self, email: str) -> CredentialRecord | None:
        """Return the credential row for ``email`` across all tenants, or ``None``."""
        return self._fetch_one(
            f"SELECT {_CREDENTIAL_COLUMNS} FROM accounts WHERE email = %s",
            (email,),
        )

    def find_by_id(self, account_id: str, tenant_id: str) -> CredentialRecord | None:
        """Fetch an account belonging to the specified tenant or return ``None``."""
        return self._fetch_one(
            f"SELECT {_CREDENTIAL_COLUMNS} FROM accounts WHERE account_id = %s AND tenant_id = %s",
            (account_id, tenant_id),
        )

    def create_tenant_with_owner(self, tenant_name: str, new_account: NewAccount) -> CredentialRecord:
        """Insert a tenant and its first account in one transaction."""
        tenant_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                try:
                    cur.execute(
                        "INSERT INTO tenants (tenant_id, name, created_at) VALUES (%s, %s, %s)",
                        (tenant_id, tenant_name, now),
                    )
                    row = self._insert_account(cur, tenant_id, new_account, now)
                except errors.UniqueViolation as exc:
                    conn.rollback()
                    raise DuplicateEmailError(new_account.email) from exc
                conn.commit()
        return self._map_record(row)

    def create_account(self, new_account: NewAccount) -> CredentialRecord:
        """Insert an account into the existing tenant named by ``new_account.tenant_id``."""
        now = datetime.now(timezone.utc)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                try:
                    row = self._insert_account(cur, new_account.tenant_id, new_account, now)
                except errors.UniqueViolation as exc:
                    conn.rollback()
                    raise DuplicateEmailError(new_account.email) from exc
                conn.commit()
        return self._map_record(row)

    def set_refresh_token(self, account_id: str, tenant_id: str, token_hash: str | None) -> None:
        """Replace (or clear, with ``None``) the single stored refresh token hash."""
        self._execute(
            """
            UPDATE accounts
            SET refresh_token_hash = %s, updated_at = NOW()
            WHERE account_id = %s AND tenant_id = %s
            """,
            (token_hash, account_id, tenant_id),
        )

    def set_verification_token(
        self, account_id: str, tenant_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        """Store a verification token, superseding any previous one."""
        self._execute(
            """
            UPDATE accounts
            SET email_verification_token_hash = %s, email_verification_expires_at = %s, updated_at = NOW()
            WHERE account_id = %s AND tenant_id = %s
            """,
            (token_hash, expires_at, account_id, tenant_id),
        )

    def set_reset_token(
        self, account_id: str, tenant_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        """Store a password reset token, superseding any previous one."""
        self._execute(
            """
            UPDATE accounts
            SET password_reset_token_hash = %s, password_reset_expires_at = %s, updated_at = NOW()
            WHERE account_id = %s AND tenant_id = %s
            """,
            (token_hash, expires_at, account_id, tenant_id),
        )

    def consume_verification_token(self, token_hash: str, now: datetime) -> CredentialRecord | None:
        """Mark the matching unexpired account verified and clear its token atomically."""
        return self._fetch_one(
            f"""
            UPDATE accounts
            SET email_verified_at = %s,
                email_verification_token_hash = NULL,
                email_verification_expires_at = NULL,
                updated_at = %s
            WHERE email_verification_token_hash = %s AND email_verification_expires_at > %s
            RETURNING {_CREDENTIAL_COLUMNS}
            """,
            (now, now, token_hash, now),
            commit=True,
        )

    def consume_reset_token(
        self,
        token_hash: str,
        password_hash: str,
        now: datetime,
        *,
        revoke_refresh: bool = False,
    ) -> CredentialRecord | None:
        """Swap in ``password_hash`` and clear the matching unexpired reset token atomically."""
        refresh_clause = ", refresh_token_hash = NULL" if revoke_refresh else ""
        return self._fetch_one(
            f"""
            UPDATE accounts
            SET password_hash = %s,
                password_reset_token_hash = NULL,
                password_reset_expires_at = NULL,
                updated_at = %s{refresh_clause}
            WHERE password_reset_token_hash = %s AND password_reset_expires_at > %s
            RETURNING {_CREDENTIAL_COLUMNS}
            """,
            (password_hash, now, token_hash, now),
            commit=True,
        )

    def write_audit_event(
        self,
        *,
        action: str,
        tenant_id: str | None,
        account_id: str | None,
        entity: str = "account",
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing identity workflow activity."""
        self._execute(
            """
            INSERT INTO audit_logs (tenant_id, account_id, action, entity, entity_id, metadata)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (tenant_id, account_id, action, entity, entity_id or account_id, Json(metadata or {})),
        )

    def _insert_account(self, cur, tenant_id: str, new_account: NewAccount, now: datetime) -> tuple:
        cur.execute(
            f"""
            INSERT INTO accounts (
                account_id, tenant_id, email, name, role, password_hash,
                email_verification_token_hash, email_verification_expires_at,
                created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_CREDENTIAL_COLUMNS}
            """,
            (
                str(uuid.uuid4()),
                tenant_id,
                new_account.email,
                new_account.name,
                new_account.role.value,
                new_account.password_hash,
                new_account.verification_token_hash,
                new_account.verification_expires_at,
                now,
                now,
            ),
        )
        return cur.fetchone()

    def _fetch_one(self, query: str, params: tuple, *, commit: bool = False) -> CredentialRecord | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
            if commit:
                conn.commit()
        if not row:
            return None
        return self._map_record(row)

    def _execute(self, query: str, params: tuple) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
            conn.commit()

    def _map_record(self, row: tuple) -> CredentialRecord:
        """Convert a raw database tuple into a ``CredentialRecord``."""
        return CredentialRecord(
            account=Account(
                account_id=str(row[0]),
                tenant_id=str(row[1]),
                email=row[2],
                name=row[3],
                role=Role(row[4]),
                email_verified_at=row[5],
                created_at=row[6],
            ),
            password_hash=row[7],
            refresh_token_hash=row[8],
            verification_token_hash=row[9],
            verification_expires_at=row[10],
            reset_token_hash=row[11],
            reset_expires_at=row[12],
        )
