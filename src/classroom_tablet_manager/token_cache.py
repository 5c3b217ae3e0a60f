"""Redis-backed cache for the teacher session token.

Lets a restarted process reuse the token obtained by an earlier bootstrap
instead of authenticating again.
"""

from datetime import datetime

import redis.asyncio as redis
from pydantic import BaseModel


class CachedToken(BaseModel):
    token: str
    obtained_at: datetime


class RedisTokenCache:
    """Stores one session token under a fixed key with a TTL.

    Attributes:
        redis_client: Async Redis client.
        key: Redis key holding the token.
        ttl_seconds: Expiry applied on every save.
    """

    def __init__(self, redis_client: redis.Redis, key: str = "classroom_teacher_token", ttl_seconds: int = 43200) -> None:
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds

    async def get_cached_token(self) -> CachedToken | None:
        raw = await self.redis_client.get(self.key)
        if raw is None:
            return None
        try:
            return CachedToken.model_validate_json(raw)
        except ValueError:
            # Unreadable entries are treated as a cache miss and dropped.
            await self.redis_client.delete(self.key)
            return None

    async def save_token(self, token: str, obtained_at: datetime) -> None:
        payload = CachedToken(token=token, obtained_at=obtained_at).model_dump_json()
        await self.redis_client.set(self.key, payload, ex=self.ttl_seconds)

    async def clear(self) -> None:
        await self.redis_client.delete(self.key)
