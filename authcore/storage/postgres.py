from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import (
    ConstraintViolation,
    DuplicateAccount,
    DuplicateToken,
    StorageUnavailable,
)
from authcore.storage.models import Account, RefreshToken, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        password_hash TEXT,
        password_algo TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        token_value TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expiry_date TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_id_idx ON refresh_token (user_id)",
)

_INSERT_TOKEN_SQL = """
    INSERT INTO refresh_token (id, token_value, user_id, created_at, expiry_date, is_revoked, revoked_at)
    VALUES (%s, %s, %s, %s, %s, %s, %s)
"""


class PostgresStore:
    """Postgres-backed account and refresh-token store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        try:
            self._ensure_schema()
        except Exception:
            self.pool.close()
            raise

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection; commits on success, rolls back on error.

        Integrity errors are left for the caller to translate; any other
        driver error surfaces as ``StorageUnavailable``.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.IntegrityError:
            raise
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StorageUnavailable("database unavailable", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _row_to_token(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token_value=row["token_value"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expiry_date=row["expiry_date"],
            is_revoked=bool(row.get("is_revoked", False)),
            revoked_at=row.get("revoked_at"),
        )

    # accounts
    def create_account(
        self, email: str, first_name: str = "", last_name: str = ""
    ) -> Account:
        account = Account.new(email, first_name=first_name, last_name=last_name)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, first_name, last_name, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.first_name,
                        account.last_name,
                        account.is_active,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise DuplicateAccount("email already exists", {"field": "email"})
        return account

    def get_account(self, user_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_account(self, account: Account) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE account
                    SET email = %s, first_name = %s, last_name = %s,
                        is_active = %s, last_login_at = %s
                    WHERE id = %s
                    """,
                    (
                        account.email,
                        account.first_name,
                        account.last_name,
                        account.is_active,
                        account.last_login_at,
                        account.id,
                    ),
                )
                return result.rowcount > 0
        except errors.UniqueViolation:
            raise DuplicateAccount("email already exists", {"field": "email"})

    def delete_account(self, user_id: str) -> bool:
        # refresh_token rows go with it through ON DELETE CASCADE
        with self._connect() as conn:
            result = conn.execute("DELETE FROM account WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE account SET password_hash = %s, password_algo = %s WHERE id = %s",
                (password_hash, password_algo, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "account not found for credentials", {"user_id": user_id}
                )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh tokens
    @staticmethod
    def _token_params(token: RefreshToken) -> tuple:
        return (
            token.id,
            token.token_value,
            token.user_id,
            token.created_at,
            token.expiry_date,
            token.is_revoked,
            token.revoked_at,
        )

    def add(self, token: RefreshToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(_INSERT_TOKEN_SQL, self._token_params(token))
        except errors.UniqueViolation:
            raise DuplicateToken("refresh token value already exists")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token owner missing", {"user_id": token.user_id}
            )

    def get_by_token(self, token_value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_value = %s", (token_value,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def revoke(self, token_value: str, *, now: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE token_value = %s AND is_revoked = FALSE
                """,
                (now or utcnow(), token_value),
            )
            return result.rowcount > 0

    def revoke_all_for_user(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (now or utcnow(), user_id),
            )
            return result.rowcount

    def rotate(
        self,
        token_value: str,
        replacement: RefreshToken,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """Redeem ``token_value`` and persist ``replacement`` in one transaction.

        The guarded UPDATE is the compare-and-set: under concurrent rotation
        of the same value only one transaction sees its row match.
        """
        current = now or utcnow()
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                        WHERE token_value = %s AND is_revoked = FALSE AND expiry_date > %s
                        RETURNING id
                        """,
                        (current, token_value, current),
                    ).fetchone()
                    if not row:
                        return False
                    conn.execute(_INSERT_TOKEN_SQL, self._token_params(replacement))
        except errors.UniqueViolation:
            raise DuplicateToken("refresh token value already exists")
        return True

    def list_active_for_user(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND is_revoked = FALSE AND expiry_date > %s
                ORDER BY created_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def sweep_expired(self, *, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expiry_date <= %s AND is_revoked = FALSE",
                (now or utcnow(),),
            )
            return result.rowcount
