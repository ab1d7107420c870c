from __future__ import annotations

import asyncio
import functools
from typing import List, Optional, Protocol, Tuple

from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    AccountNotFoundError,
    ConflictError,
    CorruptDigestError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    MfaRequiredError,
    ReuseDetectedError,
    ServerError,
    ServiceError,
    ValidationError,
)
from gatehouse.service.mfa import MFAGate
from gatehouse.service.passwords import CredentialHasher
from gatehouse.service.sessions import SessionRegistry
from gatehouse.service.tokens import TokenCodec, hash_token
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    Account,
    Claims,
    Credentials,
    RegisterInput,
    SessionInfo,
    SessionRecord,
    TokenPair,
)

logger = get_logger(__name__)

MAX_USERNAME_LENGTH = 32


class AccountStore(Protocol):
    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_password_hash(self, account_id: str, password_hash: str) -> None: ...

    def set_mfa_enabled(self, account_id: str, enabled: bool) -> None: ...

    def soft_delete_account(self, account_id: str) -> bool: ...


def _guarded(operation: str):
    """Let service errors through; turn anything else into an opaque 500."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except ServiceError:
                raise
            except Exception as exc:
                self.logger.error(
                    "auth_operation_failed",
                    operation=operation,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise ServerError("internal error") from exc

        return wrapper

    return decorator


class AuthService:
    """Register, login, refresh, logout and access-token verification.

    Holds no mutable state of its own. Uniqueness and rotation atomicity
    come from the backing store; argon2 and TOTP work runs off the event
    loop.
    """

    def __init__(
        self,
        store: AccountStore,
        codec: TokenCodec,
        hasher: CredentialHasher,
        sessions: SessionRegistry,
        mfa: MFAGate,
    ) -> None:
        self.store = store
        self.codec = codec
        self.hasher = hasher
        self.sessions = sessions
        self.mfa = mfa
        self.logger = logger

    def _open_session(
        self, account: Account, session_info: Optional[SessionInfo]
    ) -> TokenPair:
        session_id = SessionRecord.new_id()
        now = self.codec.now()
        pair = self.codec.issue_pair(
            account.id,
            session_id,
            email=account.email,
            username=account.username,
            now=now,
        )
        self.sessions.create(
            account.id,
            pair,
            session_info,
            session_id=session_id,
            expires_at=self.sessions.expiry_for(self.codec.refresh_ttl, issued_at=now),
        )
        return pair

    async def _password_matches(self, account: Account, password: str) -> bool:
        if not account.password_hash:
            await asyncio.to_thread(self.hasher.burn, password)
            return False
        try:
            return await asyncio.to_thread(
                self.hasher.verify, password, account.password_hash
            )
        except CorruptDigestError:
            self.logger.warning("password_digest_corrupt", account_id=account.id)
            return False

    @_guarded("register")
    async def register(
        self, data: RegisterInput, session_info: Optional[SessionInfo] = None
    ) -> Tuple[Account, TokenPair]:
        username = (data.username or "").strip()
        email = (data.email or "").strip()
        if not username or len(username) > MAX_USERNAME_LENGTH:
            raise ValidationError(
                f"username must be 1-{MAX_USERNAME_LENGTH} characters",
                detail={"field": "username"},
            )
        if not email:
            raise ValidationError("email is required", detail={"field": "email"})
        if not data.password:
            raise ValidationError("password is required", detail={"field": "password"})

        digest = await asyncio.to_thread(self.hasher.hash, data.password)
        try:
            account = self.store.create_account(
                username, email, digest, display_name=data.display_name
            )
        except ConstraintViolation as exc:
            field = exc.field or "account"
            self.logger.info("register_conflict", field=field)
            raise ConflictError(
                f"{field} already registered", detail={"field": field}
            ) from None

        pair = self._open_session(account, session_info)
        self.logger.info("account_registered", account_id=account.id)
        return account.redacted(), pair

    @_guarded("login")
    async def login(
        self, credentials: Credentials, session_info: Optional[SessionInfo] = None
    ) -> Tuple[Account, TokenPair]:
        account = self.store.get_account_by_email(credentials.email or "")
        if account is None:
            await asyncio.to_thread(self.hasher.burn, credentials.password or "")
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError()
        if not await self._password_matches(account, credentials.password or ""):
            self.logger.info("login_failed", reason="bad_password", account_id=account.id)
            raise InvalidCredentialsError()

        if await self.mfa.required(account):
            if not credentials.mfa_code:
                raise MfaRequiredError()
            await self.mfa.verify(account.id, credentials.mfa_code)

        if self.hasher.needs_rehash(account.password_hash):
            upgraded = await asyncio.to_thread(self.hasher.hash, credentials.password)
            self.store.update_password_hash(account.id, upgraded)
            self.logger.info("password_rehashed", account_id=account.id)

        pair = self._open_session(account, session_info)
        self.logger.info("login_succeeded", account_id=account.id)
        return account.redacted(), pair

    @_guarded("refresh")
    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.codec.decode_refresh(refresh_token)
        except InvalidTokenError:
            raise InvalidRefreshTokenError() from None

        presented = hash_token(refresh_token)
        session = self.sessions.find_by_refresh_token_hash(claims.sub, presented)
        if session is None or session.id != claims.sid:
            # A correctly signed token for a session that still exists but no
            # longer carries this hash has already been rotated away.
            existing = self.sessions.get(claims.sid)
            if existing is not None and existing.account_id == claims.sub:
                self.sessions.revoke_for_reuse(existing.id, claims.sub)
            raise InvalidRefreshTokenError()

        account = self.store.get_account(claims.sub)
        if account is None:
            self.sessions.revoke(session.id)
            raise AccountNotFoundError()

        pair = self.codec.issue_pair(
            account.id, session.id, email=account.email, username=account.username
        )
        try:
            self.sessions.rotate(session.id, presented, pair)
        except ReuseDetectedError:
            raise InvalidRefreshTokenError() from None
        self.logger.info("tokens_refreshed", account_id=account.id, session_id=session.id)
        return pair

    @_guarded("verify_access")
    async def verify_access(self, access_token: str) -> Claims:
        claims = self.codec.decode_access(access_token)
        session = self.sessions.find_by_access_token_hash(hash_token(access_token))
        if session is None or session.account_id != claims.sub or session.id != claims.sid:
            raise InvalidTokenError()
        return claims

    @_guarded("logout")
    async def logout(self, account_id: str, access_token: str) -> None:
        session = self.sessions.find_by_access_token_hash(hash_token(access_token))
        if session is None or session.account_id != account_id:
            return
        self.sessions.revoke(session.id)
        self.logger.info("logout", account_id=account_id, session_id=session.id)

    async def authenticate(self, authorization: Optional[str]) -> Claims:
        """Resolve an ``Authorization`` header value to access claims."""
        if not authorization:
            raise InvalidTokenError()
        scheme, _, credentials = authorization.strip().partition(" ")
        if scheme.lower() == "bot":
            self.logger.info("bot_scheme_rejected")
            raise InvalidTokenError()
        if scheme.lower() != "bearer" or not credentials.strip():
            raise InvalidTokenError()
        return await self.verify_access(credentials.strip())

    @_guarded("logout_all")
    async def logout_all(self, account_id: str) -> int:
        return self.sessions.revoke_all(account_id)

    @_guarded("change_password")
    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError()
        if not new_password:
            raise ValidationError("password is required", detail={"field": "password"})
        if not await self._password_matches(account, current_password or ""):
            self.logger.info("password_change_rejected", account_id=account_id)
            raise InvalidCredentialsError()
        digest = await asyncio.to_thread(self.hasher.hash, new_password)
        self.store.update_password_hash(account_id, digest)
        revoked = self.sessions.revoke_all(account_id)
        self.logger.info("password_changed", account_id=account_id, sessions_revoked=revoked)

    @_guarded("delete_account")
    async def delete_account(self, account_id: str) -> None:
        if not self.store.soft_delete_account(account_id):
            raise AccountNotFoundError()
        self.sessions.revoke_all(account_id)
        self.logger.info("account_deleted", account_id=account_id)

    @_guarded("begin_mfa_enrollment")
    async def begin_mfa_enrollment(self, account_id: str) -> dict:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError()
        return await self.mfa.begin_enrollment(account.id, account.email)

    @_guarded("confirm_mfa_enrollment")
    async def confirm_mfa_enrollment(self, account_id: str, code: str) -> None:
        if self.store.get_account(account_id) is None:
            raise AccountNotFoundError()
        await self.mfa.confirm_enrollment(account_id, code)

    @_guarded("disable_mfa")
    async def disable_mfa(self, account_id: str, code: str) -> None:
        if self.store.get_account(account_id) is None:
            raise AccountNotFoundError()
        await self.mfa.disable(account_id, code)

    @_guarded("list_sessions")
    async def list_sessions(self, account_id: str) -> List[SessionRecord]:
        return self.sessions.list_for_account(account_id)
