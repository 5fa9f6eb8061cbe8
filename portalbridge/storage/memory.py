from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from portalbridge.logging import get_logger
from portalbridge.storage.errors import CorruptRecordError, StorageError
from portalbridge.storage.models import CachedResult, UserRecord, utcnow


class MemoryStore:
    """In-process backing store for sessions, cached results and users.

    Optionally mirrors users and encrypted session blobs to a JSON file under
    ``state_dir`` so a local run survives restarts. Cached results are never
    written to disk.
    """

    def __init__(self, state_dir: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.secrets: Dict[str, str] = {}
        self.cache: Dict[Tuple[str, str], CachedResult] = {}
        self.users: Dict[str, UserRecord] = {}
        # Every mutation is synchronous under this lock; no await happens while held
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return self.state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "secrets": self.secrets,
            "users": [u.to_dict() for u in self.users.values()],
        }
        # Readers see the old file or the new one, never a partial write
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".memory_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                os.fchmod(handle.fileno(), 0o600)
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_state_unreadable", error=str(exc))
            return False
        self.secrets = {
            str(k): str(v) for k, v in (data.get("secrets") or {}).items()
        }
        users: Dict[str, UserRecord] = {}
        for raw in data.get("users", []):
            try:
                record = UserRecord.from_dict(raw)
            except CorruptRecordError as exc:
                self.logger.warning("memory_state_user_skipped", error=exc.message)
                continue
            users[record.handle] = record
        self.users = users
        return True

    async def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # -- sessions partition -------------------------------------------------

    async def get_secret(self, handle: str) -> Optional[str]:
        with self._data_lock:
            return self.secrets.get(handle)

    async def put_secret(self, handle: str, blob: str) -> None:
        with self._data_lock:
            self.secrets[handle] = blob
            self._persist_state()

    async def delete_secret(self, handle: str) -> bool:
        with self._data_lock:
            removed = self.secrets.pop(handle, None) is not None
            if removed:
                self._persist_state()
            return removed

    async def has_secret(self, handle: str) -> bool:
        with self._data_lock:
            return handle in self.secrets

    # -- cache partition ----------------------------------------------------

    async def get_cache_entry(self, handle: str, signature: str) -> Optional[CachedResult]:
        with self._data_lock:
            return self.cache.get((handle, signature))

    async def put_cache_entry(
        self, handle: str, signature: str, entry: CachedResult
    ) -> None:
        with self._data_lock:
            self.cache[(handle, signature)] = entry

    async def delete_cache_entry(self, handle: str, signature: str) -> bool:
        with self._data_lock:
            return self.cache.pop((handle, signature), None) is not None

    async def delete_user_cache(self, handle: str) -> int:
        with self._data_lock:
            keys = [key for key in self.cache if key[0] == handle]
            for key in keys:
                del self.cache[key]
            return len(keys)

    async def purge_expired_cache(self, now: Optional[datetime] = None) -> int:
        """Out-of-band sweep; reads never depend on it having run."""
        current = now or utcnow()
        with self._data_lock:
            expired = [key for key, entry in self.cache.items() if entry.is_expired(current)]
            for key in expired:
                del self.cache[key]
            return len(expired)

    # -- users partition ----------------------------------------------------

    async def get_user(self, handle: str) -> Optional[UserRecord]:
        with self._data_lock:
            record = self.users.get(handle)
            return UserRecord(**vars(record)) if record else None

    async def create_user(self, record: UserRecord) -> bool:
        """Insert ``record`` when the handle is unknown; an existing row is left alone.

        The default flag is never written here, only by ``set_default_user``.
        """
        with self._data_lock:
            if record.handle in self.users:
                return False
            stored = UserRecord(**vars(record))
            stored.is_default = False
            self.users[record.handle] = stored
            self._persist_state()
            return True

    async def list_users(self) -> List[UserRecord]:
        with self._data_lock:
            return [UserRecord(**vars(u)) for u in self.users.values()]

    async def set_default_user(self, handle: str) -> bool:
        """Clear every default flag, then set ``handle``'s, in one critical section."""
        with self._data_lock:
            if handle not in self.users:
                return False
            for record in self.users.values():
                record.is_default = False
            self.users[handle].is_default = True
            self._persist_state()
            return True

    async def touch_user(self, handle: str, when: Optional[datetime] = None) -> bool:
        with self._data_lock:
            record = self.users.get(handle)
            if record is None:
                return False
            record.last_used_at = when or utcnow()
            self._persist_state()
            return True

    async def delete_user(self, handle: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(handle, None) is not None
            if removed:
                self._persist_state()
            return removed
