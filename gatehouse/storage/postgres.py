from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.common import (
    SecretCipher,
    generate_uuid,
    normalize_email,
    parse_json_meta,
)
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import Account, MFAConfig, SessionRecord, utcnow

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL CHECK (char_length(username) BETWEEN 1 AND 32),
        email TEXT NOT NULL,
        password_hash TEXT,
        display_name TEXT,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    # Global on purpose: tombstoned accounts keep their username and email
    "CREATE UNIQUE INDEX IF NOT EXISTS account_username_lower_key ON account (lower(username))",
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_key ON account (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS account_mfa_secret (
        account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        access_token_hash TEXT NOT NULL,
        refresh_token_hash TEXT NOT NULL,
        device_info JSONB,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT auth_session_access_hash_key UNIQUE (access_token_hash)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_refresh_idx ON auth_session (account_id, refresh_token_hash)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
]

_CONSTRAINT_FIELDS = {
    "account_username_lower_key": "username",
    "account_email_lower_key": "email",
    "auth_session_access_hash_key": "access_token_hash",
}


def _constraint_field(exc: errors.UniqueViolation) -> str:
    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None) or ""
    return _CONSTRAINT_FIELDS.get(name, "unknown")


class PostgresStore:
    """Postgres-backed account and session store.

    Uniqueness comes from the unique indexes and session rotation from a
    conditional ``UPDATE ... RETURNING``, so several service instances can
    share one database.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row.get("password_hash"),
            display_name=row.get("display_name"),
            verified=bool(row.get("verified", False)),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            access_token_hash=row["access_token_hash"],
            refresh_token_hash=row["refresh_token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            last_used_at=row.get("last_used_at") or utcnow(),
            device_info=parse_json_meta(row.get("device_info")),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    # accounts
    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
    ) -> Account:
        handle = username.strip()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, username, email, password_hash, display_name)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        generate_uuid(),
                        handle,
                        normalize_email(email),
                        password_hash,
                        display_name or handle,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", field=field)
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s AND deleted_at IS NULL",
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE lower(email) = %s AND deleted_at IS NULL",
                (normalize_email(email),),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account SET password_hash = %s, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                """,
                (password_hash, account_id),
            )
        if result.rowcount == 0:
            raise ConstraintViolation("account not found", account_id=account_id)

    def set_mfa_enabled(self, account_id: str, enabled: bool) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account SET mfa_enabled = %s, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                """,
                (enabled, account_id),
            )
        if result.rowcount == 0:
            raise ConstraintViolation("account not found", account_id=account_id)

    def soft_delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account SET deleted_at = now(), updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                """,
                (account_id,),
            )
            if result.rowcount == 0:
                return False
            conn.execute("DELETE FROM auth_session WHERE account_id = %s", (account_id,))
        return True

    # mfa
    def set_mfa_secret(
        self, account_id: str, secret: str, enabled: bool = False
    ) -> MFAConfig:
        record = MFAConfig(account_id=account_id, secret=secret, enabled=enabled)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_mfa_secret (account_id, secret, enabled, created_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET secret = EXCLUDED.secret, enabled = EXCLUDED.enabled
                    """,
                    (account_id, self._cipher.encrypt(secret), enabled),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found for mfa", account_id=account_id)
        return record

    def get_mfa_secret(self, account_id: str) -> Optional[MFAConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_mfa_secret WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        secret = self._cipher.decrypt(row["secret"])
        if secret is None:
            return None
        return MFAConfig(
            account_id=str(row["account_id"]),
            secret=secret,
            enabled=bool(row.get("enabled", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    def delete_mfa_secret(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM account_mfa_secret WHERE account_id = %s", (account_id,)
            )

    # sessions
    def create_session(self, record: SessionRecord) -> SessionRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, account_id, access_token_hash, refresh_token_hash,
                        device_info, ip_address, user_agent, created_at, last_used_at, expires_at
                    )
                    SELECT %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
                    WHERE EXISTS (
                        SELECT 1 FROM account WHERE id = %s AND deleted_at IS NULL
                    )
                    RETURNING *
                    """,
                    (
                        record.id,
                        record.account_id,
                        record.access_token_hash,
                        record.refresh_token_hash,
                        json.dumps(record.device_info) if record.device_info else None,
                        record.ip_address,
                        record.user_agent,
                        record.created_at,
                        record.last_used_at,
                        record.expires_at,
                        record.account_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already bound", field=field)
        except errors.ForeignKeyViolation:
            row = None
        if not row:
            raise ConstraintViolation(
                "session account missing", account_id=record.account_id
            )
        return self._session_from_row(row)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_access_hash(self, access_token_hash: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE access_token_hash = %s",
                (access_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_hash(
        self, account_id: str, refresh_token_hash: str
    ) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE account_id = %s AND refresh_token_hash = %s
                """,
                (account_id, refresh_token_hash),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        expected_refresh_hash: str,
        access_token_hash: str,
        refresh_token_hash: str,
        *,
        now: datetime,
    ) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET access_token_hash = %s, refresh_token_hash = %s, last_used_at = %s
                WHERE id = %s AND refresh_token_hash = %s AND expires_at > %s
                RETURNING *
                """,
                (
                    access_token_hash,
                    refresh_token_hash,
                    now,
                    session_id,
                    expected_refresh_hash,
                    now,
                ),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
        return result.rowcount > 0

    def delete_account_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE account_id = %s", (account_id,)
            )
        return max(result.rowcount, 0)

    def list_account_sessions(self, account_id: str) -> List[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session WHERE account_id = %s
                ORDER BY created_at DESC
                """,
                (account_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            )
        return max(result.rowcount, 0)
