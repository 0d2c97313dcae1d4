from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError

SSO_STATE_PREFIX = "sso:state:"

# GET + DEL in one server-side step for clients without GETDEL
_POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def _state_key(state: str) -> str:
    return f"{SSO_STATE_PREFIX}{state}"


class RedisCache:
    """Expiring key-value cache for single-use SSO CSRF state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling federated login."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def set_sso_state(self, state: str, provider: str, ttl_seconds: int) -> None:
        await self.client.set(_state_key(state), provider, ex=max(1, int(ttl_seconds)))

    async def pop_sso_state(self, state: str) -> Optional[str]:
        """Atomically read and delete a state token; returns the bound provider.

        Uses GETDEL (Redis 6.2+) or a Lua script so two callbacks racing on the
        same state cannot both observe it.
        """
        key = _state_key(state)
        try:
            return await self.client.getdel(key)
        except ResponseError:
            # server predates GETDEL (6.2)
            return await self.client.eval(_POP_SCRIPT, 1, key)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Avoids binding an async pool to pytest's per-test event loops while still
    exposing awaitable methods, so callers treat it exactly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client: Redis | None = None):
        self.redis_url = redis_url
        self._sync_client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def set_sso_state(self, state: str, provider: str, ttl_seconds: int) -> None:
        self._sync_client.set(_state_key(state), provider, ex=max(1, int(ttl_seconds)))

    async def pop_sso_state(self, state: str) -> Optional[str]:
        key = _state_key(state)
        try:
            return self._sync_client.getdel(key)
        except ResponseError:
            # server predates GETDEL (6.2)
            return self._sync_client.eval(_POP_SCRIPT, 1, key)

    async def close(self) -> None:
        self._sync_client.close()
