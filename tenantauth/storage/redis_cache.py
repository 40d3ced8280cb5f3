from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Revocation markers and activity stamps in front of the auth store.

    The store stays authoritative. The cache only answers "already revoked"
    quickly, so a missing key never means "valid" on its own.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""

        # A short-lived sync client keeps the async client off a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _execute(self, pipe: Any) -> List[Any]:
        return await pipe.execute()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        await self._execute(pipe)

    async def mark_session_revoked(self, session_id: str, ttl_seconds: int) -> None:
        pipe = self.client.pipeline()
        pipe.delete(f"auth:session:{session_id}")
        pipe.delete(f"session:activity:{session_id}")
        pipe.set(f"auth:session:revoked:{session_id}", "1", ex=max(1, ttl_seconds))
        await self._execute(pipe)

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(await self.client.exists(f"auth:session:revoked:{session_id}"))

    async def revoke_user_sessions(
        self,
        user_id: str,
        ttl_seconds: int,
        except_session_id: Optional[str] = None,
    ) -> int:
        """Mark every cached session of ``user_id`` revoked, keeping ``except_session_id``."""

        user_sessions_key = f"auth:user_sessions:{user_id}"
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0

        revoked = 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            if except_session_id and session_id == except_session_id:
                continue
            pipe.delete(f"auth:session:{session_id}")
            pipe.set(f"auth:session:revoked:{session_id}", "1", ex=max(1, ttl_seconds))
            pipe.srem(user_sessions_key, session_id)
            revoked += 1
        await self._execute(pipe)
        return revoked

    async def mark_refresh_revoked(self, token_hash: str, ttl_seconds: int) -> None:
        await self.client.set(
            f"auth:refresh:revoked:{token_hash}", "1", ex=max(1, ttl_seconds)
        )

    async def is_refresh_revoked(self, token_hash: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:revoked:{token_hash}"))

    async def update_session_activity(
        self, session_id: str, when: datetime, ttl_seconds: int = 86400
    ) -> None:
        await self.client.set(
            f"session:activity:{session_id}", when.isoformat(), ex=max(1, ttl_seconds)
        )

    async def get_session_activity(self, session_id: str) -> Optional[datetime]:
        value = await self.client.get(f"session:activity:{session_id}")
        if value:
            try:
                return datetime.fromisoformat(value)
            except (ValueError, TypeError):
                return None
        return None

    async def close(self) -> None:
        await self.client.aclose()


class _SyncClientAdapter:
    """Expose a sync Redis client through the awaitable calls RedisCache makes."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def smembers(self, key: str) -> set:
        return self._sync.smembers(key)

    def pipeline(self):
        return self._sync.pipeline()

    async def aclose(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """RedisCache on a synchronous client.

    Tests run each coroutine under its own ``asyncio.run`` loop; a sync
    client avoids binding connections to a loop that is already closed.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def _execute(self, pipe: Any) -> List[Any]:
        return pipe.execute()


__all__ = ["RedisCache", "SyncRedisCache"]
