from typing import Any, Collection, Self
from urllib.parse import quote

from typing_extensions import override
from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from contentlock.server.expiry_policy import Clock
from contentlock.server.lock_models import LockRecord
from contentlock.server.lock_store_base import (
    InsertOutcome,
    LockStoreProtocol,
    UpdateOutcome,
    assume_store_error_on_failure,
)

# rows are stored as `LockRecord.model_dump_json()` - the lock id lives under `lock_id`
COMPARE_AND_SET_SCRIPT = """
local current = redis.call('get', KEYS[1])
if current and cjson.decode(current)['lock_id'] == ARGV[1] then
    redis.call('set', KEYS[1], ARGV[2], 'EX', ARGV[3])
    return 1
end
return 0
"""

COMPARE_AND_DELETE_SCRIPT = """
local current = redis.call('get', KEYS[1])
if current and cjson.decode(current)['lock_id'] == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisLockStoreInitConfig(BaseModel):
    """Initialization params required to initialize the redis lock store.

    Attributes:
        url: Redis connection url.
        key_prefix: Prefix of every lock key.
        scan_batch_size: `COUNT` hint used when scanning keys to list locks.
    """

    url: str = "redis://localhost:6379/0"
    key_prefix: str = "contentlock"
    scan_batch_size: int = 500


class RedisLockStore(LockStoreProtocol):
    """Lock store keeping one redis key per lock, expiring through the key TTL.

    Expiry is owned by redis - the clock is not consulted.
    """

    def __init__(self, redis: Redis, key_prefix: str = "contentlock", scan_batch_size: int = 500) -> None:
        self.redis = redis
        self.key_prefix = key_prefix
        self.scan_batch_size = scan_batch_size

    @override
    @classmethod
    async def from_config(cls, raw_config: Any, *, clock: Clock) -> Self:
        result = RedisLockStoreInitConfig.model_validate(raw_config or {})
        return cls(
            redis=Redis.from_url(result.url),
            key_prefix=result.key_prefix,
            scan_batch_size=result.scan_batch_size,
        )

    def _key(self, resource_id: str, resource_type: str) -> str:
        # both parts are quoted so a `:` inside them cannot make two resources share a key
        return f"{self.key_prefix}:{quote(resource_type, safe='')}:{quote(resource_id, safe='')}"

    @override
    async def find_one(self, resource_id: str, resource_type: str) -> LockRecord | None:
        async with assume_store_error_on_failure("read the lock", RedisError, ValidationError):
            raw = await self.redis.get(self._key(resource_id, resource_type))
            if raw is None:
                return None

            return LockRecord.model_validate_json(raw)

    @override
    async def insert_if_absent(self, record: LockRecord, ttl_seconds: int) -> InsertOutcome:
        async with assume_store_error_on_failure("insert the lock", RedisError):
            created = await self.redis.set(
                self._key(record.resource_id, record.resource_type),
                record.model_dump_json(),
                ex=ttl_seconds,
                nx=True,
            )

        return InsertOutcome.INSERTED if created else InsertOutcome.ALREADY_EXISTS

    @override
    async def update(
        self,
        resource_id: str,
        resource_type: str,
        record: LockRecord,
        ttl_seconds: int,
        require_exists: bool = True,
        expected_lock_id: str | None = None,
    ) -> UpdateOutcome:
        key = self._key(resource_id, resource_type)
        stored = record.model_copy(update={"resource_id": resource_id, "resource_type": resource_type})
        async with assume_store_error_on_failure("update the lock", RedisError):
            if expected_lock_id is None:
                written = await self.redis.set(key, stored.model_dump_json(), ex=ttl_seconds, xx=require_exists)
            else:
                written = await self.redis.eval(
                    COMPARE_AND_SET_SCRIPT,
                    1,
                    key,
                    expected_lock_id,
                    stored.model_dump_json(),
                    ttl_seconds,
                )

        return UpdateOutcome.UPDATED if written else UpdateOutcome.NOT_FOUND

    @override
    async def delete(self, resource_id: str, resource_type: str, expected_lock_id: str | None = None) -> bool:
        key = self._key(resource_id, resource_type)
        async with assume_store_error_on_failure("delete the lock", RedisError):
            if expected_lock_id is None:
                removed = await self.redis.delete(key)
            else:
                removed = await self.redis.eval(COMPARE_AND_DELETE_SCRIPT, 1, key, expected_lock_id)

        return bool(removed)

    @override
    async def list_locks(self, resource_ids: Collection[str] | None = None) -> list[LockRecord]:
        async with assume_store_error_on_failure("list the locks", RedisError, ValidationError):
            keys = [
                key
                async for key in self.redis.scan_iter(match=f"{self.key_prefix}:*", count=self.scan_batch_size)
            ]
            if not keys:
                return []

            # keys may expire between the scan and the read
            values = await self.redis.mget(keys)
            records = [LockRecord.model_validate_json(value) for value in values if value is not None]

        if resource_ids:
            records = [record for record in records if record.resource_id in resource_ids]

        return records

    @override
    async def close(self) -> None:
        await self.redis.aclose()
