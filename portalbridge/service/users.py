from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from portalbridge.logging import get_logger
from portalbridge.storage.common import normalize_identity, user_handle
from portalbridge.storage.models import UserRecord, utcnow

logger = get_logger(__name__)


class UserRegistry:
    """Known users, the single default, and recency for implicit resolution."""

    def __init__(self, backend, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.backend = backend
        self._clock = clock

    async def add_user(self, identity: str, make_default: bool = False) -> UserRecord:
        """Register ``identity``; an existing record keeps its default flag
        unless ``make_default`` asks to move it here."""

        handle = user_handle(identity)
        now = self._clock()
        record = UserRecord(
            handle=handle,
            email=normalize_identity(identity),
            last_used_at=now,
            created_at=now,
        )
        # Never write back a read record: its default flag may already be stale
        if await self.backend.create_user(record):
            logger.info("user_added", user_handle=handle)
        else:
            await self.backend.touch_user(handle, now)
        if make_default:
            await self.backend.set_default_user(handle)
        return await self.backend.get_user(handle) or record

    async def set_default_user(self, identity: str) -> UserRecord:
        """Make ``identity`` the only default, adding it when unknown.

        Idempotent: repeating the call leaves the same single default.
        """

        handle = user_handle(identity)
        record = UserRecord(handle=handle, email=normalize_identity(identity))
        await self.backend.create_user(record)
        await self.backend.set_default_user(handle)
        logger.info("default_user_set", user_handle=handle)
        return await self.backend.get_user(handle) or record

    async def get_default_user(self) -> Optional[str]:
        for record in await self.backend.list_users():
            if record.is_default:
                return record.email
        return None

    async def get_most_recent_user(self) -> Optional[str]:
        """Most recently used identity; None on a tie or with no recency at all."""

        used = [r for r in await self.backend.list_users() if r.last_used_at is not None]
        if not used:
            return None
        used.sort(key=lambda r: r.last_used_at, reverse=True)
        if len(used) > 1 and used[0].last_used_at == used[1].last_used_at:
            return None
        return used[0].email

    async def resolve_implicit_user(self) -> Optional[str]:
        default = await self.get_default_user()
        if default:
            return default
        return await self.get_most_recent_user()

    async def touch(self, identity: str) -> bool:
        return await self.backend.touch_user(user_handle(identity), self._clock())

    async def get_user(self, identity: str) -> Optional[UserRecord]:
        return await self.backend.get_user(user_handle(identity))

    async def list_users(self) -> List[UserRecord]:
        records = await self.backend.list_users()
        return sorted(records, key=lambda r: (not r.is_default, r.email))

    async def remove_user(self, identity: str) -> bool:
        handle = user_handle(identity)
        removed = await self.backend.delete_user(handle)
        if removed:
            logger.info("user_removed", user_handle=handle)
        return removed
