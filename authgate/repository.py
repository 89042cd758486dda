"""Postgres-backed credential store."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Iterator

import psycopg
from psycopg.errors import UniqueViolation
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool, PoolTimeout

from .domain.account import Account, Role
from .domain.errors import AccountNotFound, DuplicateAccount, StorageError, StorageUnreachable
from .domain.lockout import LockoutState

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id      TEXT PRIMARY KEY,
    email           TEXT NOT NULL UNIQUE,
    password_hash   TEXT NOT NULL CHECK (password_hash <> ''),
    role            TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    failed_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempts >= 0),
    locked_until    TIMESTAMPTZ,
    created_at      TIMESTAMPTZ NOT NULL,
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

_ACCOUNT_COLUMNS = "account_id, email, password_hash, role, failed_attempts, locked_until, created_at"


@dataclass(slots=True)
class AccountRecord:
    """Row projection used when mapping database tuples to domain aggregates."""

    account_id: str
    email: str
    password_hash: str
    role: str
    failed_attempts: int
    locked_until: datetime | None
    created_at: datetime


def create_pool(database_url: str, *, timeout: float) -> ConnectionPool:
    """Build a pool whose checkouts, connects and statements are all time-bounded."""
    return ConnectionPool(
        database_url,
        open=False,
        timeout=timeout,
        kwargs={
            "connect_timeout": max(1, int(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        },
    )


class AccountRepository:
    """Postgres implementation of the ``CredentialStore`` contract."""

    def __init__(self, pool: ConnectionPool, *, timeout: float = 5.0) -> None:
        """Store the connection pool and the checkout timeout applied to every call."""
        self._pool = pool
        self._timeout = timeout

    @contextmanager
    def _connection(self) -> Iterator[psycopg.Connection]:
        try:
            with self._pool.connection(timeout=self._timeout) as conn:
                yield conn
        except PoolTimeout as exc:
            raise StorageUnreachable("timed out waiting for a database connection") from exc
        except psycopg.OperationalError as exc:
            raise StorageUnreachable(str(exc)) from exc
        except psycopg.Error as exc:
            raise StorageError(str(exc)) from exc

    def ensure_schema(self) -> None:
        """Create the accounts table when it does not exist yet."""
        with self._connection() as conn:
            conn.execute(SCHEMA_SQL)
            conn.commit()

    def find_by_email(self, email: str) -> Account | None:
        """Return the account registered under the normalised ``email`` or ``None``."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE email = %s",
                    (email,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return self._map_record(AccountRecord(*row))

    def insert(self, account: Account) -> str:
        """Persist a new account, translating the unique email index into ``DuplicateAccount``."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                try:
                    cur.execute(
                        """
                        INSERT INTO accounts (account_id, email, password_hash, role, failed_attempts, locked_until, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        RETURNING account_id
                        """,
                        (
                            account.account_id,
                            account.email,
                            account.password_hash,
                            account.role.value,
                            account.failed_attempts,
                            account.locked_until,
                            account.created_at,
                        ),
                    )
                except UniqueViolation as exc:
                    conn.rollback()
                    raise DuplicateAccount() from exc
                row = cur.fetchone()
            conn.commit()
        return row[0]

    def update_lockout_fields(
        self, account_id: str, expected: LockoutState, new: LockoutState
    ) -> bool:
        """Compare-and-update the lockout columns in a single statement."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE accounts
                    SET failed_attempts = %s, locked_until = %s, updated_at = NOW()
                    WHERE account_id = %s
                      AND failed_attempts = %s
                      AND locked_until IS NOT DISTINCT FROM %s::timestamptz
                    """,
                    (
                        new.failed_attempts,
                        new.locked_until,
                        account_id,
                        expected.failed_attempts,
                        expected.locked_until,
                    ),
                )
                swapped = cur.rowcount == 1
                if not swapped:
                    cur.execute("SELECT 1 FROM accounts WHERE account_id = %s", (account_id,))
                    if cur.fetchone() is None:
                        raise AccountNotFound(f"account {account_id} not found")
            conn.commit()
        if not swapped:
            logger.debug("lockout update lost a race account_id=%s", account_id)
        return swapped

    def ping(self) -> None:
        """Run a trivial query, raising ``StorageUnreachable`` on any failure."""
        try:
            with self._connection() as conn:
                conn.execute("SELECT 1")
        except StorageError as exc:
            raise StorageUnreachable(str(exc)) from exc

    def close(self) -> None:
        self._pool.close(timeout=self._timeout)

    def _map_record(self, record: AccountRecord) -> Account:
        """Convert a row projection into the domain ``Account`` dataclass."""
        return Account(
            account_id=record.account_id,
            email=record.email,
            password_hash=record.password_hash,
            created_at=record.created_at,
            role=Role(record.role),
            failed_attempts=record.failed_attempts,
            locked_until=record.locked_until,
        )
