from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from commerce_auth.logging import get_logger
from commerce_auth.storage.errors import ConstraintViolation
from commerce_auth.storage.models import Account, utcnow

# Uniqueness only binds active rows so a soft-deleted name can be reused
_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id BIGSERIAL PRIMARY KEY,
        username VARCHAR(50) NOT NULL,
        email VARCHAR(100) NOT NULL,
        password_digest VARCHAR(255) NOT NULL,
        refresh_token VARCHAR(500),
        refresh_token_expiry TIMESTAMPTZ,
        last_login_time TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_refresh_pair
            CHECK ((refresh_token IS NULL) = (refresh_token_expiry IS NULL))
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_username_active_uq ON account (username) WHERE is_active",
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_active_uq ON account (email) WHERE is_active",
    "CREATE UNIQUE INDEX IF NOT EXISTS account_refresh_token_uq ON account (refresh_token) WHERE refresh_token IS NOT NULL",
)

_CONSTRAINT_FIELDS = {
    "account_username_active_uq": "username",
    "account_email_active_uq": "email",
}


class PostgresStore:
    """Postgres-backed account store.

    Each method runs in a single pooled transaction that commits on clean exit
    and rolls back if the caller is interrupted mid-way. Refresh-token swaps
    are conditional ``UPDATE``s, so the row lock taken by the update decides
    which of two concurrent refreshes wins.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("account_schema_ready")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: Mapping[str, Any]) -> Account:
        return Account(
            id=int(row["id"]),
            username=row["username"],
            email=row["email"],
            password_digest=row["password_digest"],
            refresh_token=row.get("refresh_token"),
            refresh_token_expiry=row.get("refresh_token_expiry"),
            last_login_time=row.get("last_login_time"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def _fetch_one(self, query: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._account_from_row(row) if row else None

    # lookups

    def find_active_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE username = %s AND is_active", (username,)
        )

    def find_active_by_id(self, account_id: int) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE id = %s AND is_active", (account_id,)
        )

    def find_active_by_refresh_token(self, token: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE refresh_token = %s AND is_active", (token,)
        )

    def username_taken(self, username: str, excluding_id: Optional[int] = None) -> bool:
        return self._exists("username", username, excluding_id)

    def email_taken(self, email: str, excluding_id: Optional[int] = None) -> bool:
        return self._exists("email", email, excluding_id)

    def _exists(self, column: str, value: str, excluding_id: Optional[int]) -> bool:
        if column not in ("username", "email"):
            raise ValueError(f"unsupported column {column!r}")
        with self._connect() as conn:
            if excluding_id is None:
                row = conn.execute(
                    f"SELECT 1 FROM account WHERE {column} = %s AND is_active LIMIT 1",
                    (value,),
                ).fetchone()
            else:
                row = conn.execute(
                    f"SELECT 1 FROM account WHERE {column} = %s AND is_active AND id <> %s LIMIT 1",
                    (value, excluding_id),
                ).fetchone()
        return row is not None

    # writes

    def insert(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (username, email, password_digest, is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account.username,
                        account.email,
                        account.password_digest,
                        account.is_active,
                        account.created_at,
                        account.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            field = _CONSTRAINT_FIELDS.get(constraint or "")
            raise ConstraintViolation(
                f"{field or 'account'} already exists", {"field": field}
            ) from exc
        return self._account_from_row(row)

    def persist_refresh_token(self, account_id: int, token: str, expiry: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET refresh_token = %s, refresh_token_expiry = %s, updated_at = now()
                WHERE id = %s
                """,
                (token, expiry, account_id),
            )

    def replace_refresh_token(
        self, account_id: int, expected: str, token: str, expiry: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET refresh_token = %s, refresh_token_expiry = %s, updated_at = now()
                WHERE id = %s AND is_active AND refresh_token = %s
                RETURNING id
                """,
                (token, expiry, account_id, expected),
            ).fetchone()
        return row is not None

    def clear_refresh_token(self, account_id: int, expected: Optional[str] = None) -> bool:
        with self._connect() as conn:
            if expected is None:
                row = conn.execute(
                    """
                    UPDATE account
                    SET refresh_token = NULL, refresh_token_expiry = NULL, updated_at = now()
                    WHERE id = %s AND refresh_token IS NOT NULL
                    RETURNING id
                    """,
                    (account_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    UPDATE account
                    SET refresh_token = NULL, refresh_token_expiry = NULL, updated_at = now()
                    WHERE id = %s AND refresh_token = %s
                    RETURNING id
                    """,
                    (account_id, expected),
                ).fetchone()
        return row is not None

    def touch_last_login(self, account_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_login_time = now(), updated_at = now() WHERE id = %s",
                (account_id,),
            )

    def update_password_digest(self, account_id: int, digest: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET password_digest = %s, updated_at = now() WHERE id = %s",
                (digest, account_id),
            )

    def deactivate(self, account_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET is_active = FALSE, refresh_token = NULL, refresh_token_expiry = NULL,
                    updated_at = now()
                WHERE id = %s AND is_active
                RETURNING id
                """,
                (account_id,),
            ).fetchone()
        return row is not None
