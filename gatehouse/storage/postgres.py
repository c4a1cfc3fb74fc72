from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, RecordNotFound
from gatehouse.storage.models import MUTABLE_USER_FIELDS, User, utcnow


class PostgresStore:
    """Postgres-backed account store."""

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

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    first_name TEXT NOT NULL DEFAULT '',
                    last_name TEXT NOT NULL DEFAULT '',
                    phone_number TEXT,
                    tenant_id TEXT NOT NULL DEFAULT 'public',
                    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    last_login_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            phone_number=row.get("phone_number"),
            tenant_id=row.get("tenant_id", "public"),
            is_verified=row.get("is_verified", False),
            is_active=row.get("is_active", True),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at", utcnow()),
            updated_at=row.get("updated_at", utcnow()),
        )

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone_number: Optional[str] = None,
        tenant_id: str = "public",
        is_verified: bool = False,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, password_hash, first_name, last_name,
                        phone_number, tenant_id, is_verified, is_active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        password_hash,
                        first_name,
                        last_name,
                        phone_number,
                        tenant_id,
                        is_verified,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not self._is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._connect() as conn:
            if tenant_id:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s",
                    (tenant_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> User:
        unknown = set(fields) - MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {', '.join(sorted(unknown))}")
        if not fields:
            user = self.get_user(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            return user
        # Column names come from the fixed allow-list above, never from input
        columns = sorted(fields)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        params = [fields[column] for column in columns]
        row = None
        if self._is_uuid(user_id):
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    (*params, user_id),
                ).fetchone()
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return self._row_to_user(row)

    def delete_user(self, user_id: str) -> None:
        deleted = 0
        if self._is_uuid(user_id):
            with self._connect() as conn:
                deleted = conn.execute(
                    "DELETE FROM app_user WHERE id = %s", (user_id,)
                ).rowcount
        if not deleted:
            raise RecordNotFound("user not found", {"user_id": user_id})

    @staticmethod
    def _is_uuid(value: str) -> bool:
        try:
            uuid.UUID(value)
        except ValueError:
            return False
        return True
