from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed MFA bookkeeping shared by every service instance."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic check-and-increment so concurrent failures cannot all slip
    # under the limit before any of them is counted
    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def check_mfa_lockout(self, account_id: str) -> bool:
        return bool(await self.client.exists(f"mfa:lockout:{account_id}"))

    async def atomic_mfa_attempt(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed MFA attempt, locking the account at ``max_attempts``.

        Returns:
            Tuple of (is_now_locked_out, current_attempts); attempts is -1
            when the account was already locked.
        """
        result = await self._mfa_attempt(
            keys=[f"mfa:lockout:{account_id}", f"mfa:attempts:{account_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return (bool(result[0]), int(result[1]))

    async def clear_mfa_attempts(self, account_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{account_id}")

    async def consume_totp_step(
        self, account_id: str, counter: int, ttl_seconds: int
    ) -> bool:
        """Claim a TOTP time-step; False when it was already used."""
        claimed = await self.client.set(
            f"mfa:used:{account_id}:{counter}", "1", nx=True, ex=ttl_seconds
        )
        return bool(claimed)
