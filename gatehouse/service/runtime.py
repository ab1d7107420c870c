from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatehouse.config import get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthService
from gatehouse.service.mfa import MFAGate, MemoryMFALedger
from gatehouse.service.passwords import CredentialHasher
from gatehouse.service.sessions import SessionRegistry
from gatehouse.service.tokens import TokenCodec
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton service graph built from settings."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        mfa_key = self.settings.mfa_encryption_key or self.settings.access_token_secret

        try:
            self.store = (
                MemoryStore(mfa_encryption_key=mfa_key)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, mfa_encryption_key=mfa_key)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; MFA lockout and "
                        "replay tracking must be shared across instances"
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
        if self.cache is None:
            logger.warning(
                "mfa_ledger_in_memory",
                message="MFA lockout and replay tracking are process-local",
            )

        self.codec = TokenCodec.from_settings(self.settings)
        self.hasher = CredentialHasher.from_settings(self.settings)
        self.sessions = SessionRegistry(
            self.store, reuse_revokes_all=self.settings.refresh_reuse_revokes_all
        )
        self.mfa = MFAGate.from_settings(
            self.settings, self.store, self.cache or MemoryMFALedger()
        )
        self.auth = AuthService(
            self.store, self.codec, self.hasher, self.sessions, self.mfa
        )
        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            mfa_enabled=self.settings.enable_mfa,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
