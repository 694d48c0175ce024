import datetime
import fnmatch
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from contentlock.plugins.redis_lock_store.redis_lock_store import (
    COMPARE_AND_DELETE_SCRIPT,
    COMPARE_AND_SET_SCRIPT,
    RedisLockStore,
)
from contentlock.server.lock_models import LockRecord
from contentlock.server.lock_store_base import InsertOutcome, LockStoreError, UpdateOutcome


class FakeRedis:
    """Subset of the `redis.asyncio.Redis` commands used by the lock store - keys expire against the given clock."""

    def __init__(self, clock) -> None:
        self.clock = clock
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.deadlines: dict[str, datetime.datetime] = {}
        self.closed = False

    def _purge(self) -> None:
        now = self.clock()
        for key, deadline in list(self.deadlines.items()):
            if deadline <= now:
                self.values.pop(key, None)
                self.ttls.pop(key, None)
                del self.deadlines[key]

    async def get(self, key):
        self._purge()
        return self.values.get(key)

    async def set(self, key, value, ex=None, nx=False, xx=False):
        self._purge()
        if nx and key in self.values:
            return None
        if xx and key not in self.values:
            return None

        self.values[key] = value
        self.ttls[key] = ex
        self.deadlines[key] = self.clock() + datetime.timedelta(seconds=ex)
        return True

    async def delete(self, *keys):
        self._purge()
        removed = 0
        for key in keys:
            removed += self.values.pop(key, None) is not None
            self.ttls.pop(key, None)
            self.deadlines.pop(key, None)
        return removed

    async def eval(self, script, numkeys, *keys_and_args):
        assert numkeys == 1
        key, expected_lock_id, *args = keys_and_args
        current = await self.get(key)
        if current is None or json.loads(current)["lock_id"] != expected_lock_id:
            return 0

        if script == COMPARE_AND_SET_SCRIPT:
            value, ttl_seconds = args
            await self.set(key, value, ex=int(ttl_seconds))
            return 1
        if script == COMPARE_AND_DELETE_SCRIPT:
            return await self.delete(key)

        raise AssertionError(f"unexpected script: {script}")

    async def scan_iter(self, match=None, count=None):
        self._purge()
        for key in list(self.values):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def mget(self, keys):
        self._purge()
        return [self.values.get(key) for key in keys]

    async def aclose(self):
        self.closed = True


class DownRedis(FakeRedis):
    async def get(self, key):
        raise RedisConnectionError("Connection refused")

    async def set(self, key, value, ex=None, nx=False, xx=False):
        raise RedisConnectionError("Connection refused")

    async def eval(self, script, numkeys, *keys_and_args):
        raise RedisConnectionError("Connection refused")


def make_record(
    clock,
    lock_id: str = "lock-1",
    resource_id: str = "doc-1",
    resource_type: str = "content",
    created_by: str = "alice",
) -> LockRecord:
    return LockRecord(
        lock_id=lock_id,
        resource_id=resource_id,
        resource_type=resource_type,
        resource_info="{}",
        created_by=created_by,
        creator_info='{"name": "Alice"}',
        device_id="device-1",
        created_on=clock(),
        expires_at=clock(),
    )


@pytest.fixture
def redis(clock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def redis_store(redis) -> RedisLockStore:
    return RedisLockStore(redis=redis, key_prefix="locks")


@pytest.mark.anyio
async def test_insert_uses_set_nx_with_ttl(redis_store, redis, clock):
    assert await redis_store.insert_if_absent(make_record(clock, "first"), 600) is InsertOutcome.INSERTED
    assert await redis_store.insert_if_absent(make_record(clock, "second"), 600) is InsertOutcome.ALREADY_EXISTS

    assert redis.ttls == {"locks:content:doc-1": 600}
    found = await redis_store.find_one("doc-1", "content")
    assert found == make_record(clock, "first")


@pytest.mark.anyio
async def test_update_requires_existing_key(redis_store, redis, clock):
    assert await redis_store.update("doc-1", "content", make_record(clock), 600) is UpdateOutcome.NOT_FOUND
    assert redis.values == {}

    await redis_store.insert_if_absent(make_record(clock), 600)
    assert await redis_store.update("doc-1", "content", make_record(clock), 900) is UpdateOutcome.UPDATED
    assert redis.ttls["locks:content:doc-1"] == 900


@pytest.mark.anyio
async def test_rows_expire_with_their_ttl(redis_store, clock):
    await redis_store.insert_if_absent(make_record(clock, "first"), 600)

    clock.advance(599)
    assert (await redis_store.find_one("doc-1", "content")).lock_id == "first"

    clock.advance(1)
    assert await redis_store.find_one("doc-1", "content") is None
    assert await redis_store.update("doc-1", "content", make_record(clock), 600) is UpdateOutcome.NOT_FOUND
    assert await redis_store.insert_if_absent(make_record(clock, "second"), 600) is InsertOutcome.INSERTED


@pytest.mark.anyio
async def test_update_restarts_ttl(redis_store, clock):
    await redis_store.insert_if_absent(make_record(clock), 600)
    clock.advance(500)

    outcome = await redis_store.update("doc-1", "content", make_record(clock), 600, expected_lock_id="lock-1")
    assert outcome is UpdateOutcome.UPDATED
    clock.advance(500)
    assert await redis_store.find_one("doc-1", "content") is not None


@pytest.mark.anyio
async def test_conditional_update_keeps_another_owners_row(redis_store, clock):
    await redis_store.insert_if_absent(make_record(clock, "bob-lock", created_by="bob"), 600)

    outcome = await redis_store.update(
        "doc-1", "content", make_record(clock, "alice-lock"), 600, expected_lock_id="alice-lock"
    )

    assert outcome is UpdateOutcome.NOT_FOUND
    assert (await redis_store.find_one("doc-1", "content")).created_by == "bob"


@pytest.mark.anyio
async def test_conditional_delete_keeps_another_owners_row(redis_store, clock):
    await redis_store.insert_if_absent(make_record(clock, "bob-lock", created_by="bob"), 600)

    assert await redis_store.delete("doc-1", "content", expected_lock_id="alice-lock") is False
    assert (await redis_store.find_one("doc-1", "content")).lock_id == "bob-lock"

    assert await redis_store.delete("doc-1", "content", expected_lock_id="bob-lock") is True
    assert await redis_store.find_one("doc-1", "content") is None


@pytest.mark.anyio
async def test_keys_of_different_resources_never_collide(redis_store, redis, clock):
    first = make_record(clock, "first", resource_id="c", resource_type="a:b")
    second = make_record(clock, "second", resource_id="b:c", resource_type="a")

    assert await redis_store.insert_if_absent(first, 600) is InsertOutcome.INSERTED
    assert await redis_store.insert_if_absent(second, 600) is InsertOutcome.INSERTED

    assert len(redis.values) == 2
    assert (await redis_store.find_one("c", "a:b")).lock_id == "first"
    assert (await redis_store.find_one("b:c", "a")).lock_id == "second"
    assert {record.lock_id for record in await redis_store.list_locks()} == {"first", "second"}


@pytest.mark.anyio
async def test_delete_and_list(redis_store, redis, clock):
    await redis_store.insert_if_absent(make_record(clock, "a", resource_id="doc-1"), 600)
    await redis_store.insert_if_absent(make_record(clock, "b", resource_id="doc-2"), 600)
    redis.values["other:content:doc-3"] = "ignored"

    assert {record.lock_id for record in await redis_store.list_locks()} == {"a", "b"}
    assert [record.lock_id for record in await redis_store.list_locks(["doc-2"])] == ["b"]

    assert await redis_store.delete("doc-1", "content") is True
    assert await redis_store.delete("doc-1", "content") is False
    assert [record.lock_id for record in await redis_store.list_locks()] == ["b"]


@pytest.mark.anyio
async def test_list_without_keys(redis_store):
    assert await redis_store.list_locks() == []


@pytest.mark.anyio
async def test_redis_errors_become_store_errors(clock):
    store = RedisLockStore(redis=DownRedis(clock))

    with pytest.raises(LockStoreError):
        await store.find_one("doc-1", "content")

    with pytest.raises(LockStoreError):
        await store.insert_if_absent(make_record(clock), 600)

    with pytest.raises(LockStoreError):
        await store.update("doc-1", "content", make_record(clock), 600, expected_lock_id="lock-1")

    with pytest.raises(LockStoreError):
        await store.delete("doc-1", "content", expected_lock_id="lock-1")


@pytest.mark.anyio
async def test_corrupted_row_is_a_store_error(redis_store, redis):
    redis.values["locks:content:doc-1"] = "{not json"

    with pytest.raises(LockStoreError):
        await redis_store.find_one("doc-1", "content")


@pytest.mark.anyio
async def test_close_closes_the_client(redis_store, redis):
    await redis_store.close()
    assert redis.closed
