from __future__ import annotations

import contextlib
import threading
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from clinicauth.logging import get_logger
from clinicauth.storage.errors import ConstraintViolation, StoreError, StoreUnavailable
from clinicauth.storage.models import (
    TOKEN_PATCHABLE_FIELDS,
    Account,
    TokenFilter,
    TokenRecord,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        failed_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempts >= 0),
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        access_token TEXT NOT NULL UNIQUE,
        refresh_token TEXT NOT NULL UNIQUE,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        access_expires_at TIMESTAMPTZ NOT NULL,
        refresh_expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_owner_idx ON auth_token (owner_id, revoked)",
)


def token_filter_sql(flt: TokenFilter) -> Tuple[str, List[Any]]:
    """Compile a TokenFilter into a WHERE clause and its parameters."""

    clauses: List[str] = []
    params: List[Any] = []
    if flt.owner_id is not None:
        clauses.append("owner_id = %s")
        params.append(flt.owner_id)
    if flt.access_token is not None:
        clauses.append("access_token = %s")
        params.append(flt.access_token)
    if flt.refresh_token is not None:
        clauses.append("refresh_token = %s")
        params.append(flt.refresh_token)
    if flt.exclude_access_token is not None:
        clauses.append("access_token <> %s")
        params.append(flt.exclude_access_token)
    if flt.active_at is not None:
        clauses.append("(NOT revoked AND access_expires_at > %s)")
        params.append(flt.active_at)
    if flt.live_at is not None:
        clauses.append(
            "(NOT revoked AND (access_expires_at > %s OR refresh_expires_at > %s))"
        )
        params.extend([flt.live_at, flt.live_at])
    if flt.refresh_valid_at is not None:
        clauses.append("(NOT revoked AND refresh_expires_at > %s)")
        params.append(flt.refresh_valid_at)
    if flt.stale_at is not None:
        clauses.append(
            "(revoked OR access_expires_at <= %s OR refresh_expires_at <= %s)"
        )
        params.extend([flt.stale_at, flt.stale_at])
    if flt.dead_at is not None:
        clauses.append(
            "(revoked OR (access_expires_at <= %s AND refresh_expires_at <= %s))"
        )
        params.extend([flt.dead_at, flt.dead_at])
    if not clauses:
        # refuse to touch every row in the table
        raise ValueError("token filter must constrain at least one column")
    return " AND ".join(clauses), params


class PostgresStore:
    """Postgres-backed credential and token store.

    Store calls run on pooled connections. Inside ``transaction()`` every
    call made from the same thread reuses the transaction's connection, so
    ``for_update`` lookups hold their row locks until the block exits.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._local = threading.local()
        self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    @contextlib.contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("duplicate value", {"diag": str(exc)}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("referenced row missing", {"diag": str(exc)}) from exc
        except PoolTimeout as exc:
            raise StoreUnavailable(
                "no database connection available",
                {"timeout_seconds": self.timeout_seconds},
            ) from exc
        except psycopg.OperationalError as exc:
            raise StoreUnavailable("database unavailable", {"diag": str(exc)}) from exc
        except psycopg.Error as exc:
            raise StoreError("database error", {"diag": str(exc)}) from exc

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return
        with self._translate_errors():
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        outer = getattr(self._local, "conn", None)
        if outer is not None:
            with self._translate_errors(), outer.transaction():
                yield self
            return
        with self._connect() as conn:
            self._local.conn = conn
            try:
                with self._translate_errors(), conn.transaction():
                    yield self
            finally:
                self._local.conn = None

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=["account", "auth_token"])

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            failed_attempts=row.get("failed_attempts") or 0,
            locked_until=row.get("locked_until"),
            password_hash=row.get("password_hash"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> TokenRecord:
        return TokenRecord(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            revoked=bool(row["revoked"]),
            access_expires_at=row["access_expires_at"],
            refresh_expires_at=row["refresh_expires_at"],
            created_at=row["created_at"],
        )

    # accounts
    def create_account(self, email: str, password_hash: str | None = None) -> Account:
        account = Account.new(email, password_hash=password_hash)
        with self._connect() as conn, self._translate_errors():
            conn.execute(
                """
                INSERT INTO account (id, email, password_hash, failed_attempts, locked_until, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    account.id,
                    account.email,
                    account.password_hash,
                    account.failed_attempts,
                    account.locked_until,
                    account.created_at,
                ),
            )
        return account

    def find_by_email(self, email: str, *, for_update: bool = False) -> Optional[Account]:
        query = "SELECT * FROM account WHERE email = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._connect() as conn, self._translate_errors():
            row = conn.execute(query, (email,)).fetchone()
        return self._account_from_row(row) if row else None

    def find_by_id(self, account_id: str, *, for_update: bool = False) -> Optional[Account]:
        query = "SELECT * FROM account WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._connect() as conn, self._translate_errors():
            row = conn.execute(query, (account_id,)).fetchone()
        return self._account_from_row(row) if row else None

    def save(self, account: Account) -> None:
        with self._connect() as conn, self._translate_errors():
            result = conn.execute(
                """
                UPDATE account
                SET email = %s, failed_attempts = %s, locked_until = %s, password_hash = %s
                WHERE id = %s
                """,
                (
                    account.email,
                    account.failed_attempts,
                    account.locked_until,
                    account.password_hash,
                    account.id,
                ),
            )
        if result.rowcount == 0:
            raise ConstraintViolation("account does not exist", {"account_id": account.id})

    def set_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._connect() as conn, self._translate_errors():
            result = conn.execute(
                "UPDATE account SET password_hash = %s WHERE id = %s",
                (password_hash, account_id),
            )
        if result.rowcount == 0:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})

    # tokens
    def create_token(self, record: TokenRecord) -> TokenRecord:
        with self._connect() as conn, self._translate_errors():
            conn.execute(
                """
                INSERT INTO auth_token (id, owner_id, access_token, refresh_token, revoked,
                                        access_expires_at, refresh_expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.owner_id,
                    record.access_token,
                    record.refresh_token,
                    record.revoked,
                    record.access_expires_at,
                    record.refresh_expires_at,
                    record.created_at,
                ),
            )
        return record

    def find_by_access_token(self, token: str) -> Optional[TokenRecord]:
        with self._connect() as conn, self._translate_errors():
            row = conn.execute(
                "SELECT * FROM auth_token WHERE access_token = %s", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def find_by_refresh_token(self, token: str) -> Optional[TokenRecord]:
        with self._connect() as conn, self._translate_errors():
            row = conn.execute(
                "SELECT * FROM auth_token WHERE refresh_token = %s", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def query_active(self, account_id: str, now: datetime) -> List[TokenRecord]:
        where, params = token_filter_sql(TokenFilter(owner_id=account_id, active_at=now))
        with self._connect() as conn, self._translate_errors():
            rows = conn.execute(
                f"SELECT * FROM auth_token WHERE {where} ORDER BY created_at", params
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def update_many(self, flt: TokenFilter, patch: Dict[str, Any]) -> int:
        unknown = set(patch) - TOKEN_PATCHABLE_FIELDS
        if unknown or not patch:
            raise ValueError(f"unsupported token patch: {sorted(patch)}")
        where, params = token_filter_sql(flt)
        columns = sorted(patch)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        values = [patch[column] for column in columns]
        with self._connect() as conn, self._translate_errors():
            result = conn.execute(
                f"UPDATE auth_token SET {assignments} WHERE {where}", values + params
            )
        return result.rowcount

    def count_tokens(self, flt: TokenFilter) -> int:
        where, params = token_filter_sql(flt)
        with self._connect() as conn, self._translate_errors():
            row = conn.execute(
                f"SELECT count(*) AS n FROM auth_token WHERE {where}", params
            ).fetchone()
        return int(row["n"]) if row else 0

    def delete_tokens(self, flt: TokenFilter) -> int:
        where, params = token_filter_sql(flt)
        with self._connect() as conn, self._translate_errors():
            result = conn.execute(f"DELETE FROM auth_token WHERE {where}", params)
        return result.rowcount
