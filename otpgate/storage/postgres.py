from __future__ import annotations

import uuid
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from otpgate.logging import get_logger
from otpgate.storage.errors import ConstraintViolation
from otpgate.storage.models import Identity, Role


class PostgresStore:
    """Postgres-backed identity store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_identity_table()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_identity_table(self) -> None:
        """Create the ``identity`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS identity (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT,
                    role TEXT NOT NULL DEFAULT 'CUSTOMER',
                    is_verified BOOLEAN NOT NULL DEFAULT false,
                    otp_challenge TEXT,
                    refresh_token TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    @staticmethod
    def _row_to_identity(row: dict[str, Any]) -> Identity:
        return Identity(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            role=Role(row.get("role") or Role.CUSTOMER.value),
            is_verified=bool(row.get("is_verified", False)),
            otp_challenge=row.get("otp_challenge"),
            refresh_token=row.get("refresh_token"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # identity
    def create_identity(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: Role = Role.CUSTOMER,
        is_verified: bool = False,
    ) -> Identity:
        identity_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO identity (id, email, name, role, is_verified)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (identity_id, email, name, Role(role).value, is_verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_identity(row)

    @staticmethod
    def _is_uuid(identity_id: str) -> bool:
        # the column is UUID-typed; a malformed id can never match
        try:
            uuid.UUID(str(identity_id))
        except ValueError:
            return False
        return True

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        if not self._is_uuid(identity_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def list_identities(self, limit: int = 100) -> List[Identity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM identity ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_identity(row) for row in rows]

    def update_profile(
        self,
        identity_id: str,
        *,
        name: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> Optional[Identity]:
        if not self._is_uuid(identity_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity
                SET name = COALESCE(%s, name),
                    role = COALESCE(%s, role),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (name, Role(role).value if role is not None else None, identity_id),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def mark_verified(self, identity_id: str) -> Optional[Identity]:
        if not self._is_uuid(identity_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE identity SET is_verified = true, updated_at = now() WHERE id = %s RETURNING *",
                (identity_id,),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def set_refresh_token(self, identity_id: str, refresh_token: Optional[str]) -> bool:
        if not self._is_uuid(identity_id):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE identity SET refresh_token = %s, updated_at = now() WHERE id = %s",
                (refresh_token, identity_id),
            )
            return cur.rowcount > 0

    # otp challenge slot
    def set_otp_challenge(self, email: str, challenge: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE identity SET otp_challenge = %s, updated_at = now() WHERE email = %s",
                (challenge, email),
            )
            return cur.rowcount > 0

    def get_otp_challenge(self, email: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT otp_challenge FROM identity WHERE email = %s", (email,)
            ).fetchone()
        return row["otp_challenge"] if row else None

    def clear_otp_challenge(self, email: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE identity SET otp_challenge = NULL, updated_at = now()
                WHERE email = %s AND otp_challenge IS NOT NULL
                """,
                (email,),
            )

    def consume_otp_challenge(self, email: str, expected: str) -> bool:
        """Clear the challenge only if it still equals ``expected``.

        The conditional UPDATE makes concurrent verifications race on a single
        row lock; exactly one of them sees a returned row.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity SET otp_challenge = NULL, updated_at = now()
                WHERE email = %s AND otp_challenge = %s
                RETURNING id
                """,
                (email, expected),
            ).fetchone()
        return row is not None
