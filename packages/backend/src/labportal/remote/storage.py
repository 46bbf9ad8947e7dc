"""Session storage — keeps the refresh token across restarts.

Learn: The browser SDK persists its session under a storage key so a
reload doesn't sign the user out. Here the same record lives in Redis:

    labportal-auth-token → {"refresh_token": "...", "identity_id": "..."}

Only the refresh token is stored. On startup the auth backend trades it
for a fresh access token, so nothing short-lived is ever read back.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from labportal.core.errors import CONNECTION_ERROR, RemoteError

logger = structlog.get_logger()

DEFAULT_STORAGE_KEY = "labportal-auth-token"


class SessionStorage(ABC):
    """Where the persisted session record lives."""

    @abstractmethod
    async def load(self) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def save(self, record: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...


class RedisSessionStorage(SessionStorage):
    def __init__(self, redis: aioredis.Redis, key: str = DEFAULT_STORAGE_KEY):
        self.redis = redis
        self.key = key

    async def load(self) -> Optional[dict[str, Any]]:
        try:
            raw = await self.redis.get(self.key)
        except (RedisError, OSError) as e:
            raise RemoteError(f"Session storage unreachable: {e}", code=CONNECTION_ERROR)
        if raw is None:
            return None
        try:
            record = json.loads(raw)
        except (ValueError, TypeError):
            logger.warning("session_storage.corrupt_record", key=self.key)
            return None
        return record if isinstance(record, dict) else None

    async def save(self, record: dict[str, Any]) -> None:
        try:
            await self.redis.set(self.key, json.dumps(record))
        except (RedisError, OSError) as e:
            raise RemoteError(f"Session storage unreachable: {e}", code=CONNECTION_ERROR)

    async def clear(self) -> None:
        try:
            await self.redis.delete(self.key)
        except (RedisError, OSError) as e:
            raise RemoteError(f"Session storage unreachable: {e}", code=CONNECTION_ERROR)
