import enum
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Collection, Protocol, Self, runtime_checkable

from contentlock.server.expiry_policy import Clock
from contentlock.server.lock_models import LockRecord

LOCK_STORES_ENTRYPOINT = "contentlock.plugins.lock_store"


class InsertOutcome(enum.Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


class UpdateOutcome(enum.Enum):
    UPDATED = "updated"
    NOT_FOUND = "not_found"


class LockStoreError(Exception):
    """Raised when the lock store cannot complete an operation."""


@runtime_checkable
class LockStoreProtocol(Protocol):
    """Protocol for lock stores.

    A lock store keeps one row per `(resource_id, resource_type)` with a row level TTL.
    All operations are atomic at the row level - there are no cross-row transactions.

    Every lock store must implement `LockStoreProtocol` methods - and register to the
    `contentlock.plugins.lock_store` entrypoint.

    Example:
        ```toml
        [project.entry-points."contentlock.plugins.lock_store"]
        memory = "contentlock.plugins.memory_lock_store.memory_lock_store:MemoryLockStore"
        ```
    """

    @classmethod
    async def from_config(cls, raw_config: Any, *, clock: Clock) -> Self:
        """Create an instance of the lock store from the configuration.

        Args:
            raw_config: The raw configuration propagated from the `lock_store` config section.
            clock: Source of the current time shared with the expiry policy.
        """
        ...

    async def find_one(self, resource_id: str, resource_type: str) -> LockRecord | None:
        """Return the live lock of the resource, if any."""
        ...

    async def insert_if_absent(self, record: LockRecord, ttl_seconds: int) -> InsertOutcome:
        """Insert the record unless a live row already exists for its key.

        Args:
            record: The lock to persist.
            ttl_seconds: Row TTL - the row disappears once it elapses.

        Returns:
            `InsertOutcome.ALREADY_EXISTS` if another live row holds the key - nothing is written then.
        """
        ...

    async def update(
        self,
        resource_id: str,
        resource_type: str,
        record: LockRecord,
        ttl_seconds: int,
        require_exists: bool = True,
        expected_lock_id: str | None = None,
    ) -> UpdateOutcome:
        """Replace the row of the resource with `record` and restart its TTL.

        Args:
            resource_id: Identifier of the locked resource.
            resource_type: Type of the locked resource.
            record: The full new value of the row.
            ttl_seconds: New row TTL.
            require_exists: When set, nothing is written if there is no live row.
            expected_lock_id: When set, nothing is written unless the live row holds this lock id.
                The comparison and the write are a single atomic step.

        Returns:
            `UpdateOutcome.NOT_FOUND` when a condition did not hold - nothing is written then.
        """
        ...

    async def delete(self, resource_id: str, resource_type: str, expected_lock_id: str | None = None) -> bool:
        """Delete the row of the resource - deleting a missing row is not an error.

        Args:
            resource_id: Identifier of the locked resource.
            resource_type: Type of the locked resource.
            expected_lock_id: When set, the row is only deleted if it holds this lock id.

        Returns:
            Whether a row was deleted.
        """
        ...

    async def list_locks(self, resource_ids: Collection[str] | None = None) -> list[LockRecord]:
        """List live locks, optionally restricted to the given resource ids."""
        ...

    async def close(self) -> None: ...


@asynccontextmanager
async def assume_store_error_on_failure(operation: str, *errors: type[Exception]) -> AsyncIterator[None]:
    try:
        yield
    except errors as e:
        raise LockStoreError(f"Lock store failed to {operation}") from e
