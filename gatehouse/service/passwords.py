from __future__ import annotations

import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatehouse.config import Settings
from gatehouse.service.errors import CorruptDigestError


class CredentialHasher:
    """argon2id hashing for account passwords.

    Digests are self-describing PHC strings, so raising the work factor only
    affects new digests; ``needs_rehash`` flags the old ones for upgrade.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_digest: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return whether ``plaintext`` matches ``digest``.

        A mismatch is False. A digest that cannot be parsed raises
        ``CorruptDigestError`` so storage corruption is distinguishable from a
        wrong password.
        """
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHash as exc:
            raise CorruptDigestError("stored password digest is malformed") from exc
        except VerificationError:
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    def burn(self, plaintext: str) -> None:
        """Spend one verification worth of work against a throwaway digest.

        Called when no account matches so the miss costs the same as a
        wrong password.
        """
        if self._dummy_digest is None:
            self._dummy_digest = self._hasher.hash(secrets.token_urlsafe(16))
        try:
            self._hasher.verify(self._dummy_digest, plaintext)
        except VerificationError:
            pass
