from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from redis import Redis

from portalbridge.logging import get_logger
from portalbridge.storage.errors import CorruptRecordError
from portalbridge.storage.models import CachedResult, UserRecord, utcnow

logger = get_logger(__name__)


class RedisStore:
    """Redis-backed sessions, cache and users partitions.

    Key layout::

        portal:session:{handle}          encrypted session blob
        portal:cache:{handle}:{sig}      JSON CachedResult, native EX ttl
        portal:user:{handle}             hash of UserRecord fields
        portal:users                     set of known handles
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    SESSION_PREFIX = "portal:session:"
    CACHE_PREFIX = "portal:cache:"
    USER_PREFIX = "portal:user:"
    USERS_INDEX = "portal:users"

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self._client: Optional[aioredis.Redis] = None

    @property
    def client(self) -> aioredis.Redis:
        # Created on first use, then shared for the life of the process
        if self._client is None:
            self._client = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
        return self._client

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 for Redis."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection_sync(self) -> None:
        """Ping with a short-lived synchronous client.

        Keeps the async client from binding to a throwaway event loop at startup.
        """
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def verify_connection(self) -> None:
        await self.client.ping()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -- sessions partition -------------------------------------------------

    async def get_secret(self, handle: str) -> Optional[str]:
        return await self.client.get(f"{self.SESSION_PREFIX}{handle}")

    async def put_secret(self, handle: str, blob: str) -> None:
        await self.client.set(f"{self.SESSION_PREFIX}{handle}", blob)

    async def delete_secret(self, handle: str) -> bool:
        return bool(await self.client.delete(f"{self.SESSION_PREFIX}{handle}"))

    async def has_secret(self, handle: str) -> bool:
        return bool(await self.client.exists(f"{self.SESSION_PREFIX}{handle}"))

    # -- cache partition ----------------------------------------------------

    def _cache_key(self, handle: str, signature: str) -> str:
        return f"{self.CACHE_PREFIX}{handle}:{signature}"

    async def get_cache_entry(self, handle: str, signature: str) -> Optional[CachedResult]:
        cached = await self.client.get(self._cache_key(handle, signature))
        if not cached:
            return None
        try:
            return CachedResult.from_dict(json.loads(cached))
        except (json.JSONDecodeError, TypeError, CorruptRecordError) as exc:
            logger.warning("cache_entry_corrupt", user_handle=handle, error=str(exc))
            return None

    async def put_cache_entry(
        self, handle: str, signature: str, entry: CachedResult
    ) -> None:
        await self.client.set(
            self._cache_key(handle, signature),
            json.dumps(entry.to_dict(), default=str),
            ex=self._ttl_seconds(entry.expires_at),
        )

    async def delete_cache_entry(self, handle: str, signature: str) -> bool:
        return bool(await self.client.delete(self._cache_key(handle, signature)))

    async def delete_user_cache(self, handle: str) -> int:
        keys = [key async for key in self.client.scan_iter(match=f"{self.CACHE_PREFIX}{handle}:*")]
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    # -- users partition ----------------------------------------------------

    @staticmethod
    def _user_mapping(record: UserRecord) -> Dict[str, Any]:
        # is_default is owned by set_default_user alone; a missing field reads as "0"
        data = record.to_dict()
        data.pop("is_default", None)
        return data

    async def get_user(self, handle: str) -> Optional[UserRecord]:
        raw = await self.client.hgetall(f"{self.USER_PREFIX}{handle}")
        if not raw:
            return None
        try:
            return UserRecord.from_dict(raw)
        except CorruptRecordError as exc:
            logger.warning("user_record_corrupt", user_handle=handle, error=exc.message)
            return None

    async def create_user(self, record: UserRecord) -> bool:
        """HSETNX every field in one MULTI/EXEC; an existing row keeps its values."""

        key = f"{self.USER_PREFIX}{record.handle}"
        pipe = self.client.pipeline(transaction=True)
        for name, value in self._user_mapping(record).items():
            pipe.hsetnx(key, name, value)
        pipe.sadd(self.USERS_INDEX, record.handle)
        results = await pipe.execute()
        # first HSETNX is the handle field: 1 only when the row did not exist
        return bool(results[0])

    async def list_users(self) -> List[UserRecord]:
        handles = sorted(await self.client.smembers(self.USERS_INDEX))
        if not handles:
            return []
        pipe = self.client.pipeline(transaction=False)
        for handle in handles:
            pipe.hgetall(f"{self.USER_PREFIX}{handle}")
        rows = await pipe.execute()
        records: List[UserRecord] = []
        for handle, raw in zip(handles, rows):
            if not raw:
                continue
            try:
                records.append(UserRecord.from_dict(raw))
            except CorruptRecordError as exc:
                logger.warning("user_record_corrupt", user_handle=handle, error=exc.message)
        return records

    async def set_default_user(self, handle: str) -> bool:
        """Clear all default flags and set the target's in one MULTI/EXEC."""

        if not await self.client.exists(f"{self.USER_PREFIX}{handle}"):
            return False
        handles = await self.client.smembers(self.USERS_INDEX)
        pipe = self.client.pipeline(transaction=True)
        for other in handles:
            pipe.hset(f"{self.USER_PREFIX}{other}", "is_default", "0")
        pipe.hset(f"{self.USER_PREFIX}{handle}", "is_default", "1")
        await pipe.execute()
        return True

    async def touch_user(self, handle: str, when: Optional[datetime] = None) -> bool:
        key = f"{self.USER_PREFIX}{handle}"
        if not await self.client.exists(key):
            return False
        await self.client.hset(key, "last_used_at", (when or utcnow()).isoformat())
        return True

    async def delete_user(self, handle: str) -> bool:
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(f"{self.USER_PREFIX}{handle}")
        pipe.srem(self.USERS_INDEX, handle)
        deleted, _ = await pipe.execute()
        return bool(deleted)
