from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple
from urllib.parse import quote, urlencode

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import InvalidMfaError, ValidationError
from gatehouse.storage.models import Account, MFAConfig

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def generate_secret() -> str:
    """Fresh 160-bit base32 seed, unpadded as authenticator apps expect."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def totp_at(secret: str, counter: int, *, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code for a time-step counter (HMAC-SHA1)."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def match_counter(
    secret: str, code: str, timestamp: float, *, window: int = 1
) -> Optional[int]:
    """Return the time-step ``code`` belongs to, or None.

    Checks the current step and ``window`` steps either side. Every
    candidate is compared in constant time.
    """
    if not code.isascii():
        return None
    current = int(timestamp // TOTP_INTERVAL)
    matched = None
    for counter in range(current - window, current + window + 1):
        generated = totp_at(secret, counter)
        if generated and hmac.compare_digest(generated, code) and matched is None:
            matched = counter
    return matched


class MFALedger(Protocol):
    async def check_mfa_lockout(self, account_id: str) -> bool: ...

    async def atomic_mfa_attempt(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]: ...

    async def clear_mfa_attempts(self, account_id: str) -> None: ...

    async def consume_totp_step(
        self, account_id: str, counter: int, ttl_seconds: int
    ) -> bool: ...


class MFASecretStore(Protocol):
    def get_mfa_secret(self, account_id: str) -> Optional[MFAConfig]: ...

    def set_mfa_secret(
        self, account_id: str, secret: str, enabled: bool = False
    ) -> MFAConfig: ...

    def delete_mfa_secret(self, account_id: str) -> None: ...

    def set_mfa_enabled(self, account_id: str, enabled: bool) -> None: ...


class MemoryMFALedger:
    """Process-local MFA bookkeeping for tests and single-node deployments."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts: Dict[str, Tuple[int, float]] = {}  # account_id -> (count, expires)
        self._lockouts: Dict[str, float] = {}  # account_id -> locked_until
        self._consumed: Dict[Tuple[str, int], float] = {}  # (account_id, step) -> expires

    def _prune(self, now: float) -> None:
        for key in [k for k, exp in self._consumed.items() if exp <= now]:
            self._consumed.pop(key, None)
        for key in [k for k, until in self._lockouts.items() if until <= now]:
            self._lockouts.pop(key, None)
        for key in [k for k, (_, exp) in self._attempts.items() if exp <= now]:
            self._attempts.pop(key, None)

    async def check_mfa_lockout(self, account_id: str) -> bool:
        with self._lock:
            self._prune(self._clock())
            return account_id in self._lockouts

    async def atomic_mfa_attempt(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        with self._lock:
            now = self._clock()
            self._prune(now)
            if account_id in self._lockouts:
                return (True, -1)
            count = self._attempts.get(account_id, (0, 0.0))[0] + 1
            if count >= max_attempts:
                self._lockouts[account_id] = now + lockout_seconds
                self._attempts.pop(account_id, None)
                return (True, count)
            self._attempts[account_id] = (count, now + lockout_seconds)
            return (False, count)

    async def clear_mfa_attempts(self, account_id: str) -> None:
        with self._lock:
            self._attempts.pop(account_id, None)

    async def consume_totp_step(
        self, account_id: str, counter: int, ttl_seconds: int
    ) -> bool:
        with self._lock:
            now = self._clock()
            self._prune(now)
            key = (account_id, counter)
            if key in self._consumed:
                return False
            self._consumed[key] = now + ttl_seconds
            return True


class MFAGate:
    """TOTP second factor with replay protection and attempt lockout."""

    def __init__(
        self,
        store: MFASecretStore,
        ledger: MFALedger,
        *,
        enforce: bool = True,
        window: int = 1,
        max_attempts: int = 5,
        lockout_seconds: int = 300,
        issuer_name: str = "Gatehouse",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.enforce = enforce
        self.window = window
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.issuer_name = issuer_name
        self._clock = clock
        self.logger = logger

    @classmethod
    def from_settings(
        cls, settings: Settings, store: MFASecretStore, ledger: MFALedger, **kwargs
    ) -> "MFAGate":
        return cls(
            store,
            ledger,
            enforce=settings.enable_mfa,
            window=settings.totp_window,
            max_attempts=settings.mfa_max_attempts,
            lockout_seconds=settings.mfa_lockout_seconds,
            issuer_name=settings.mfa_issuer_name,
            **kwargs,
        )

    @property
    def _consumed_ttl(self) -> int:
        # a step stays acceptable for (2 * window + 1) intervals
        return (2 * self.window + 2) * TOTP_INTERVAL

    async def required(self, account: Account) -> bool:
        if not self.enforce or not account.mfa_enabled:
            return False
        # The account flag is authoritative; an unreadable seed fails closed in verify
        cfg = self.store.get_mfa_secret(account.id)
        if not cfg or not cfg.enabled:
            self.logger.warning("mfa_secret_unavailable", account_id=account.id)
        return True

    async def verify(self, account_id: str, code: str) -> int:
        """Check ``code`` against the enabled secret and consume its step."""
        cfg = self.store.get_mfa_secret(account_id)
        if not cfg or not cfg.enabled:
            raise InvalidMfaError()
        return await self._check(account_id, cfg.secret, code)

    async def mark_consumed(self, account_id: str, counter: int) -> bool:
        """Record a time-step as used. False when it already was."""
        return await self.ledger.consume_totp_step(
            account_id, counter, self._consumed_ttl
        )

    async def _check(self, account_id: str, secret: str, code: Optional[str]) -> int:
        if await self.ledger.check_mfa_lockout(account_id):
            self.logger.warning("mfa_locked_out", account_id=account_id)
            raise InvalidMfaError()

        candidate = (code or "").strip()
        counter = None
        if len(candidate) == TOTP_DIGITS and candidate.isascii() and candidate.isdigit():
            counter = await asyncio.to_thread(
                match_counter, secret, candidate, self._clock(), window=self.window
            )

        if counter is None:
            await self._record_failure(account_id)
            raise InvalidMfaError()

        if not await self.mark_consumed(account_id, counter):
            self.logger.warning("mfa_code_replayed", account_id=account_id)
            await self._record_failure(account_id)
            raise InvalidMfaError()

        await self.ledger.clear_mfa_attempts(account_id)
        return counter

    async def _record_failure(self, account_id: str) -> None:
        locked, attempts = await self.ledger.atomic_mfa_attempt(
            account_id, self.max_attempts, self.lockout_seconds
        )
        if locked:
            self.logger.warning(
                "mfa_lockout_triggered", account_id=account_id, attempts=attempts
            )
        else:
            self.logger.info("mfa_attempt_failed", account_id=account_id, attempts=attempts)

    def provisioning_uri(self, secret: str, label: str) -> str:
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer_name,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{quote(self.issuer_name)}:{quote(label)}?{params}"

    async def begin_enrollment(self, account_id: str, label: str) -> dict:
        existing = self.store.get_mfa_secret(account_id)
        if existing and existing.enabled:
            raise ValidationError("mfa already enabled")
        secret = generate_secret()
        self.store.set_mfa_secret(account_id, secret, enabled=False)
        self.logger.info("mfa_enrollment_started", account_id=account_id)
        return {"secret": secret, "otpauth_uri": self.provisioning_uri(secret, label)}

    async def confirm_enrollment(self, account_id: str, code: str) -> None:
        cfg = self.store.get_mfa_secret(account_id)
        if not cfg:
            raise ValidationError("mfa enrollment not started")
        if cfg.enabled:
            raise ValidationError("mfa already enabled")
        await self._check(account_id, cfg.secret, code)
        self.store.set_mfa_secret(account_id, cfg.secret, enabled=True)
        self.store.set_mfa_enabled(account_id, True)
        self.logger.info("mfa_enabled", account_id=account_id)

    async def disable(self, account_id: str, code: str) -> None:
        await self.verify(account_id, code)
        self.store.delete_mfa_secret(account_id)
        self.store.set_mfa_enabled(account_id, False)
        self.logger.info("mfa_disabled", account_id=account_id)
