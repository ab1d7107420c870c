from __future__ import annotations

import dataclasses
import threading
from datetime import datetime
from typing import Dict, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.common import (
    SecretCipher,
    generate_uuid,
    normalize_email,
    username_key,
)
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import Account, MFAConfig, SessionRecord, utcnow


class MemoryStore:
    """In-process account and session store.

    Used for tests and single-instance development. All mutations happen
    under one re-entrant lock, which gives the same atomicity the postgres
    store gets from unique indexes and conditional updates.
    """

    def __init__(self, *, mfa_encryption_key: str = "memory-store-mfa-key") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.mfa_secrets: Dict[str, MFAConfig] = {}
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)

    @staticmethod
    def _copy(record):
        return dataclasses.replace(record) if record is not None else None

    def _live_account(self, account_id: str) -> Optional[Account]:
        account = self.accounts.get(account_id)
        if not account or account.is_deleted:
            return None
        return account

    # accounts
    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
    ) -> Account:
        normalized_email = normalize_email(email)
        handle_key = username_key(username)
        with self._data_lock:
            # Tombstoned accounts keep their username and email reserved
            for existing in self.accounts.values():
                if username_key(existing.username) == handle_key:
                    raise ConstraintViolation("username already exists", field="username")
                if existing.email == normalized_email:
                    raise ConstraintViolation("email already exists", field="email")
            now = utcnow()
            account = Account(
                id=generate_uuid(),
                username=username.strip(),
                email=normalized_email,
                password_hash=password_hash,
                display_name=display_name or username.strip(),
                created_at=now,
                updated_at=now,
            )
            self.accounts[account.id] = account
            return self._copy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._copy(self._live_account(account_id))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            match = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.email == normalized and not a.is_deleted
                ),
                None,
            )
            return self._copy(match)

    def update_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._data_lock:
            account = self._live_account(account_id)
            if not account:
                raise ConstraintViolation("account not found", account_id=account_id)
            account.password_hash = password_hash
            account.updated_at = utcnow()

    def set_mfa_enabled(self, account_id: str, enabled: bool) -> None:
        with self._data_lock:
            account = self._live_account(account_id)
            if not account:
                raise ConstraintViolation("account not found", account_id=account_id)
            account.mfa_enabled = enabled
            account.updated_at = utcnow()

    def soft_delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            account = self._live_account(account_id)
            if not account:
                return False
            now = utcnow()
            account.deleted_at = now
            account.updated_at = now
            self.delete_account_sessions(account_id)
            return True

    # mfa
    def set_mfa_secret(
        self, account_id: str, secret: str, enabled: bool = False
    ) -> MFAConfig:
        with self._data_lock:
            if not self._live_account(account_id):
                raise ConstraintViolation("account not found for mfa", account_id=account_id)
            record = MFAConfig(
                account_id=account_id,
                secret=self._cipher.encrypt(secret),
                enabled=enabled,
            )
            self.mfa_secrets[account_id] = record
            return MFAConfig(
                account_id=account_id,
                secret=secret,
                enabled=enabled,
                created_at=record.created_at,
            )

    def get_mfa_secret(self, account_id: str) -> Optional[MFAConfig]:
        with self._data_lock:
            cfg = self.mfa_secrets.get(account_id)
            if not cfg:
                return None
            decrypted = self._cipher.decrypt(cfg.secret)
            if decrypted is None:
                return None
            return MFAConfig(
                account_id=cfg.account_id,
                secret=decrypted,
                enabled=cfg.enabled,
                created_at=cfg.created_at,
            )

    def delete_mfa_secret(self, account_id: str) -> None:
        with self._data_lock:
            self.mfa_secrets.pop(account_id, None)

    # sessions
    def create_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            if not self._live_account(record.account_id):
                raise ConstraintViolation(
                    "session account missing", account_id=record.account_id
                )
            if record.id in self.sessions:
                raise ConstraintViolation("session id already exists", session_id=record.id)
            if any(
                s.access_token_hash == record.access_token_hash
                for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "access token hash already bound", field="access_token_hash"
                )
            stored = self._copy(record)
            self.sessions[stored.id] = stored
            return self._copy(stored)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            return self._copy(self.sessions.get(session_id))

    def get_session_by_access_hash(self, access_token_hash: str) -> Optional[SessionRecord]:
        with self._data_lock:
            match = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.access_token_hash == access_token_hash
                ),
                None,
            )
            return self._copy(match)

    def get_session_by_refresh_hash(
        self, account_id: str, refresh_token_hash: str
    ) -> Optional[SessionRecord]:
        with self._data_lock:
            match = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.account_id == account_id
                    and s.refresh_token_hash == refresh_token_hash
                ),
                None,
            )
            return self._copy(match)

    def rotate_session(
        self,
        session_id: str,
        expected_refresh_hash: str,
        access_token_hash: str,
        refresh_token_hash: str,
        *,
        now: datetime,
    ) -> Optional[SessionRecord]:
        """Swap both token hashes if the presented refresh hash still matches."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or sess.refresh_token_hash != expected_refresh_hash
                or sess.is_expired(now)
            ):
                return None
            sess.access_token_hash = access_token_hash
            sess.refresh_token_hash = refresh_token_hash
            sess.last_used_at = now
            return self._copy(sess)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_account_sessions(self, account_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.account_id == account_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def list_account_sessions(self, account_id: str) -> List[SessionRecord]:
        with self._data_lock:
            results = [
                self._copy(s) for s in self.sessions.values() if s.account_id == account_id
            ]
            return sorted(results, key=lambda s: s.created_at, reverse=True)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)
