from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from realtyauth.logging import get_logger
from realtyauth.storage.errors import ConstraintViolation, StoreUnavailable
from realtyauth.storage.models import DEFAULT_ROLE, UserAccount, normalize_email, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS user_account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'User',
        permissions JSONB NOT NULL DEFAULT '[]'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        refresh_token TEXT,
        refresh_token_expiry TIMESTAMPTZ,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        lockout_end TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        metadata JSONB
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS user_account_email_idx ON user_account (lower(email))",
    "CREATE INDEX IF NOT EXISTS user_account_refresh_token_idx ON user_account (refresh_token)",
    "CREATE INDEX IF NOT EXISTS user_account_active_role_idx ON user_account (is_active, role)",
)


def _row_to_user(row: Dict[str, Any]) -> UserAccount:
    permissions = row.get("permissions") or []
    if isinstance(permissions, str):
        permissions = json.loads(permissions)
    metadata = row.get("metadata")
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return UserAccount(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        first_name=row.get("first_name", ""),
        last_name=row.get("last_name", ""),
        role=row.get("role") or DEFAULT_ROLE,
        permissions=list(permissions),
        is_active=row.get("is_active", True),
        is_email_verified=row.get("is_email_verified", False),
        refresh_token=row.get("refresh_token"),
        refresh_token_expiry=row.get("refresh_token_expiry"),
        failed_login_attempts=row.get("failed_login_attempts") or 0,
        lockout_end=row.get("lockout_end"),
        last_login=row.get("last_login"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
        metadata=metadata,
    )


class PostgresStore:
    """Credential store backed by a single ``user_account`` table."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("credential_store_unavailable", error=str(exc))
            raise StoreUnavailable() from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        role: str = DEFAULT_ROLE,
        permissions: Optional[List[str]] = None,
        is_active: bool = True,
        is_email_verified: bool = False,
        metadata: Optional[Dict] = None,
    ) -> UserAccount:
        user_id = str(uuid.uuid4())
        normalized = normalize_email(email)
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_account (
                    id, email, password_hash, first_name, last_name, role,
                    permissions, is_active, is_email_verified, metadata
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    user_id,
                    normalized,
                    password_hash,
                    first_name,
                    last_name,
                    role or DEFAULT_ROLE,
                    json.dumps(list(permissions or [])),
                    is_active,
                    is_email_verified,
                    json.dumps(metadata) if metadata else None,
                ),
            ).fetchone()
        self.logger.info("user_created", user_id=user_id)
        return _row_to_user(row)

    def _fetch_one(self, query: str, params: tuple) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self._fetch_one(
            "SELECT * FROM user_account WHERE lower(email) = %s AND is_active",
            (normalized,),
        )

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        if not user_id:
            return None
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        return self._fetch_one(
            "SELECT * FROM user_account WHERE id = %s AND is_active", (user_id,)
        )

    def get_user_by_refresh_token(
        self, refresh_token: str, *, active_only: bool = True
    ) -> Optional[UserAccount]:
        if not refresh_token or not refresh_token.strip():
            return None
        query = "SELECT * FROM user_account WHERE refresh_token = %s"
        if active_only:
            query += " AND is_active"
        return self._fetch_one(query, (refresh_token,))

    def _update(self, user_id: str, assignments: str, params: tuple) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE user_account SET {assignments}, updated_at = now() WHERE id = %s",
                (*params, user_id),
            )
        return cursor.rowcount > 0

    def update_refresh_token(
        self, user_id: str, refresh_token: str, refresh_token_expiry: datetime
    ) -> bool:
        return self._update(
            user_id,
            "refresh_token = %s, refresh_token_expiry = %s",
            (refresh_token, refresh_token_expiry),
        )

    def update_last_login(self, user_id: str) -> bool:
        return self._update(user_id, "last_login = now()", ())

    def increment_failed_login_attempts(self, user_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_account
                SET failed_login_attempts = failed_login_attempts + 1, updated_at = now()
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (user_id,),
            ).fetchone()
        return row["failed_login_attempts"] if row else None

    def reset_failed_login_attempts(self, user_id: str) -> bool:
        return self._update(
            user_id, "failed_login_attempts = 0, lockout_end = NULL", ()
        )

    def lock_user_account(self, user_id: str, lockout_end: datetime) -> bool:
        return self._update(
            user_id, "lockout_end = %s, failed_login_attempts = 0", (lockout_end,)
        )

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        return self._update(user_id, "is_active = %s", (is_active,))

    def update_user_role(self, user_id: str, role: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE user_account SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return _row_to_user(row) if row else None
