from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from gatehouse.logging import get_logger
from gatehouse.service.errors import InvalidRefreshTokenError, ReuseDetectedError
from gatehouse.service.tokens import hash_token
from gatehouse.storage.models import SessionInfo, SessionRecord, TokenPair, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, record: SessionRecord) -> SessionRecord: ...

    def get_session(self, session_id: str) -> Optional[SessionRecord]: ...

    def get_session_by_access_hash(
        self, access_token_hash: str
    ) -> Optional[SessionRecord]: ...

    def get_session_by_refresh_hash(
        self, account_id: str, refresh_token_hash: str
    ) -> Optional[SessionRecord]: ...

    def rotate_session(
        self,
        session_id: str,
        expected_refresh_hash: str,
        access_token_hash: str,
        refresh_token_hash: str,
        *,
        now: datetime,
    ) -> Optional[SessionRecord]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_account_sessions(self, account_id: str) -> int: ...

    def list_account_sessions(self, account_id: str) -> List[SessionRecord]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


class SessionRegistry:
    """Server-side record of live sessions.

    Only token hashes are persisted. Every read drops records whose
    ``expires_at`` has passed, so an expired session is indistinguishable
    from a revoked one.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        reuse_revokes_all: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.reuse_revokes_all = reuse_revokes_all
        self._clock = clock
        self.logger = logger

    def _live(self, record: Optional[SessionRecord]) -> Optional[SessionRecord]:
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    def create(
        self,
        account_id: str,
        token_pair: TokenPair,
        session_info: Optional[SessionInfo] = None,
        *,
        session_id: str,
        expires_at: datetime,
    ) -> SessionRecord:
        info = session_info or SessionInfo()
        now = self._clock()
        record = SessionRecord(
            id=session_id,
            account_id=account_id,
            access_token_hash=hash_token(token_pair.access_token),
            refresh_token_hash=hash_token(token_pair.refresh_token),
            expires_at=expires_at,
            created_at=now,
            last_used_at=now,
            device_info=info.device_info,
            ip_address=info.ip_address,
            user_agent=info.user_agent,
        )
        created = self.store.create_session(record)
        self.logger.info("session_created", session_id=created.id, account_id=account_id)
        return created

    def expiry_for(self, ttl_seconds: int, *, issued_at: Optional[int] = None) -> datetime:
        if issued_at is None:
            return self._clock() + timedelta(seconds=ttl_seconds)
        return datetime.fromtimestamp(issued_at + ttl_seconds, tz=timezone.utc)

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._live(self.store.get_session(session_id))

    def find_by_access_token_hash(self, access_token_hash: str) -> Optional[SessionRecord]:
        return self._live(self.store.get_session_by_access_hash(access_token_hash))

    def find_by_refresh_token_hash(
        self, account_id: str, refresh_token_hash: str
    ) -> Optional[SessionRecord]:
        return self._live(
            self.store.get_session_by_refresh_hash(account_id, refresh_token_hash)
        )

    def rotate(
        self, session_id: str, presented_refresh_hash: str, new_pair: TokenPair
    ) -> SessionRecord:
        """Replace a session's token hashes in one conditional write.

        If the presented refresh hash no longer matches, the token was
        already rotated away: the session is revoked (every session of the
        account when ``reuse_revokes_all`` is set) and ``ReuseDetectedError``
        is raised. A session that expired or vanished in the meantime only
        raises ``InvalidRefreshTokenError``.
        """
        now = self._clock()
        rotated = self.store.rotate_session(
            session_id,
            presented_refresh_hash,
            hash_token(new_pair.access_token),
            hash_token(new_pair.refresh_token),
            now=now,
        )
        if rotated is not None:
            self.logger.info("session_rotated", session_id=session_id)
            return rotated

        current = self.store.get_session(session_id)
        if current is None or current.is_expired(now):
            self.logger.info("session_rotation_missed", session_id=session_id)
            raise InvalidRefreshTokenError()
        self.revoke_for_reuse(session_id, current.account_id)
        raise ReuseDetectedError(session_id, current.account_id)

    def revoke_for_reuse(self, session_id: str, account_id: str) -> int:
        if self.reuse_revokes_all and account_id:
            revoked = self.revoke_all(account_id)
        else:
            revoked = 1 if self.store.delete_session(session_id) else 0
        self.logger.warning(
            "refresh_reuse_detected",
            session_id=session_id,
            account_id=account_id,
            revoked=revoked,
            revoked_all=self.reuse_revokes_all,
        )
        return revoked

    def revoke(self, session_id: str) -> None:
        if self.store.delete_session(session_id):
            self.logger.info("session_revoked", session_id=session_id)

    def revoke_all(self, account_id: str) -> int:
        count = self.store.delete_account_sessions(account_id)
        self.logger.info("sessions_revoked_all", account_id=account_id, count=count)
        return count

    def list_for_account(self, account_id: str) -> List[SessionRecord]:
        now = self._clock()
        return [
            s for s in self.store.list_account_sessions(account_id) if not s.is_expired(now)
        ]

    def purge_expired(self) -> int:
        purged = self.store.delete_expired_sessions(self._clock())
        if purged:
            self.logger.info("expired_sessions_purged", count=purged)
        return purged
