import os
import stat
from datetime import timedelta

from portalbridge.storage.memory import MemoryStore
from portalbridge.storage.models import CachedResult, UserRecord, utcnow


async def test_memory_store_persists_users_and_secrets(tmp_path):
    store = MemoryStore(state_dir=str(tmp_path))
    await store.create_user(UserRecord(handle="h1", email="a@x.com", last_used_at=utcnow()))
    await store.set_default_user("h1")
    await store.put_secret("h1", "ciphertext")
    now = utcnow()
    await store.put_cache_entry("h1", "sig", CachedResult([1], now, now + timedelta(hours=1)))

    reloaded = MemoryStore(state_dir=str(tmp_path))

    user = await reloaded.get_user("h1")
    assert user is not None
    assert user.is_default is True
    assert user.last_used_at is not None
    assert await reloaded.get_secret("h1") == "ciphertext"
    # cached results are never written to disk
    assert await reloaded.get_cache_entry("h1", "sig") is None


async def test_unreadable_state_file_starts_empty(tmp_path):
    (tmp_path / "memory_store.json").write_text("{not json")
    store = MemoryStore(state_dir=str(tmp_path))
    assert await store.list_users() == []


async def test_set_default_unknown_user_is_refused():
    store = MemoryStore()
    await store.create_user(UserRecord(handle="h1", email="a@x.com"))
    await store.set_default_user("h1")
    assert await store.set_default_user("missing") is False
    assert (await store.get_user("h1")).is_default is True


async def test_get_user_returns_a_copy():
    store = MemoryStore()
    await store.create_user(UserRecord(handle="h1", email="a@x.com"))
    record = await store.get_user("h1")
    record.is_default = True
    assert (await store.get_user("h1")).is_default is False


async def test_touch_and_delete_user():
    store = MemoryStore()
    assert await store.touch_user("h1") is False
    await store.create_user(UserRecord(handle="h1", email="a@x.com"))
    assert await store.touch_user("h1") is True
    assert (await store.get_user("h1")).last_used_at is not None
    assert await store.delete_user("h1") is True
    assert await store.delete_user("h1") is False


async def test_create_user_leaves_existing_row_alone():
    store = MemoryStore()
    assert await store.create_user(UserRecord(handle="h1", email="a@x.com")) is True
    await store.set_default_user("h1")

    again = UserRecord(handle="h1", email="a@x.com", last_used_at=utcnow())
    assert await store.create_user(again) is False
    stored = await store.get_user("h1")
    assert stored.is_default is True
    assert stored.last_used_at is None


async def test_create_user_never_writes_default_flag():
    store = MemoryStore()
    await store.create_user(UserRecord(handle="h1", email="a@x.com", is_default=True))
    assert (await store.get_user("h1")).is_default is False


async def test_state_file_is_private_and_replaced_whole(tmp_path):
    store = MemoryStore(state_dir=str(tmp_path))
    await store.put_secret("h1", "ciphertext")
    await store.put_secret("h2", "other")

    state_file = tmp_path / "memory_store.json"
    assert stat.S_IMODE(os.stat(state_file).st_mode) == 0o600
    assert sorted(p.name for p in tmp_path.iterdir()) == ["memory_store.json"]
