from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from portalbridge.logging import get_logger
from portalbridge.storage.models import CachedResult, utcnow

logger = get_logger(__name__)

DEFAULT_TTL_HOURS = 24


@dataclass
class CacheInfo:
    age_minutes: int
    expires_in_minutes: int


class SessionCache:
    """Per-user, per-query cached results with TTL enforced at read time.

    The backend may expire rows natively, but a row that is past
    ``expires_at`` and not yet swept still reads as a miss.
    """

    def __init__(
        self,
        backend,
        *,
        default_ttl_hours: int = DEFAULT_TTL_HOURS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.default_ttl_hours = default_ttl_hours
        self._clock = clock

    async def get(self, handle: str, signature: str) -> Optional[Any]:
        entry = await self.backend.get_cache_entry(handle, signature)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            logger.debug("cache_expired", user_handle=handle, signature=signature[:12])
            return None
        return entry.payload

    async def set(
        self,
        handle: str,
        signature: str,
        payload: Any,
        ttl_hours: Optional[float] = None,
    ) -> CachedResult:
        now = self._clock()
        hours = self.default_ttl_hours if ttl_hours is None else ttl_hours
        entry = CachedResult(
            payload=payload, captured_at=now, expires_at=now + timedelta(hours=hours)
        )
        # Overwrites an expired row in place
        await self.backend.put_cache_entry(handle, signature, entry)
        return entry

    async def invalidate(self, handle: str, signature: Optional[str] = None) -> int:
        """Drop one entry, or every entry for ``handle`` when no signature is given."""

        if signature is None:
            removed = await self.backend.delete_user_cache(handle)
        else:
            removed = int(await self.backend.delete_cache_entry(handle, signature))
        logger.info("cache_invalidated", user_handle=handle, removed=removed)
        return removed

    async def info(self, handle: str, signature: str) -> Optional[CacheInfo]:
        entry = await self.backend.get_cache_entry(handle, signature)
        now = self._clock()
        if entry is None or entry.is_expired(now):
            return None
        return CacheInfo(
            age_minutes=int((now - entry.captured_at).total_seconds() // 60),
            expires_in_minutes=int((entry.expires_at - now).total_seconds() // 60),
        )
