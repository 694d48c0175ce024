import asyncio
import datetime
from typing import Any, Collection, Self

from typing_extensions import override

from pydantic import BaseModel

from contentlock.server.expiry_policy import Clock, utcnow
from contentlock.server.lock_models import LockRecord
from contentlock.server.lock_store_base import (
    InsertOutcome,
    LockStoreProtocol,
    UpdateOutcome,
)

RowKey = tuple[str, str]


class MemoryLockStoreInitConfig(BaseModel):
    """Initialization params required to initialize the memory lock store.

    The memory lock store currently has no initialization params.
    """


class MemoryLockStore(LockStoreProtocol):
    """Process local lock store - rows live in a dict and expire against the injected clock."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock
        self._rows: dict[RowKey, tuple[LockRecord, datetime.datetime]] = {}
        self._lock = asyncio.Lock()

    @override
    @classmethod
    async def from_config(cls, raw_config: Any, *, clock: Clock) -> Self:
        MemoryLockStoreInitConfig.model_validate(raw_config or {})
        return cls(clock=clock)

    def _purge_expired(self) -> None:
        now = self.clock()
        expired = [key for key, (_, deadline) in self._rows.items() if deadline <= now]
        for key in expired:
            del self._rows[key]

    def _deadline(self, ttl_seconds: int) -> datetime.datetime:
        return self.clock() + datetime.timedelta(seconds=ttl_seconds)

    @override
    async def find_one(self, resource_id: str, resource_type: str) -> LockRecord | None:
        async with self._lock:
            self._purge_expired()
            row = self._rows.get((resource_id, resource_type))
            return row[0].model_copy() if row else None

    @override
    async def insert_if_absent(self, record: LockRecord, ttl_seconds: int) -> InsertOutcome:
        key = (record.resource_id, record.resource_type)
        async with self._lock:
            self._purge_expired()
            if key in self._rows:
                return InsertOutcome.ALREADY_EXISTS

            self._rows[key] = (record.model_copy(), self._deadline(ttl_seconds))
            return InsertOutcome.INSERTED

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
        key = (resource_id, resource_type)
        async with self._lock:
            self._purge_expired()
            if not self._holds(key, expected_lock_id, require_exists):
                return UpdateOutcome.NOT_FOUND

            # the key columns always come from the row key
            stored = record.model_copy(update={"resource_id": resource_id, "resource_type": resource_type})
            self._rows[key] = (stored, self._deadline(ttl_seconds))
            return UpdateOutcome.UPDATED

    @override
    async def delete(self, resource_id: str, resource_type: str, expected_lock_id: str | None = None) -> bool:
        key = (resource_id, resource_type)
        async with self._lock:
            self._purge_expired()
            if not self._holds(key, expected_lock_id, require_exists=True):
                return False

            del self._rows[key]
            return True

    def _holds(self, key: RowKey, expected_lock_id: str | None, require_exists: bool) -> bool:
        row = self._rows.get(key)
        if row is None:
            return not require_exists and expected_lock_id is None

        return expected_lock_id is None or row[0].lock_id == expected_lock_id

    @override
    async def list_locks(self, resource_ids: Collection[str] | None = None) -> list[LockRecord]:
        async with self._lock:
            self._purge_expired()
            return [
                record.model_copy()
                for record, _ in self._rows.values()
                if not resource_ids or record.resource_id in resource_ids
            ]

    @override
    async def close(self) -> None:
        async with self._lock:
            self._rows.clear()
