import datetime
from typing import Any, Mapping

import pytest

from contentlock.plugins.memory_lock_store.memory_lock_store import MemoryLockStore
from contentlock.server.collaborators import NotifyOutcome, ResourceSnapshot, ValidationOutcome
from contentlock.server.expiry_policy import ExpiryPolicy
from contentlock.server.lock_models import CallerIdentity, CreateLockRequest
from contentlock.server.lock_state_machine import LockStateMachine

LEASE_SECONDS = 600


@pytest.fixture(scope="module")
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self) -> None:
        self.current = datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += datetime.timedelta(seconds=seconds)


class FakeContentService:
    """Validator and notifier standing in for the content service - keeps one snapshot per resource."""

    def __init__(self) -> None:
        self.snapshots: dict[str, ResourceSnapshot] = {}
        self.unlockable: set[str] = set()
        self.notify_rejects = False
        self.notify_raises = False
        self.check_calls: list[tuple[str, dict[str, Any]]] = []
        self.notify_calls: list[tuple[str, str | None, str]] = []
        self._versions = 1

    def snapshot(self, resource_id: str) -> ResourceSnapshot:
        return self.snapshots.setdefault(resource_id, ResourceSnapshot(version_identifier="v1", raw={"name": "doc"}))

    async def check(
        self,
        operation: str,
        request: Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> ValidationOutcome:
        self.check_calls.append((operation, dict(request)))
        if request["resourceType"].lower() != "content" or request["resourceId"] in self.unlockable:
            return ValidationOutcome(lockable=False, reason="Resource type is not valid")

        return ValidationOutcome(lockable=True, reason="ok", snapshot=self.snapshot(request["resourceId"]))

    async def notify(
        self,
        lock_id: str,
        version_identifier: str | None,
        resource_id: str,
        headers: Mapping[str, str],
    ) -> NotifyOutcome:
        self.notify_calls.append((lock_id, version_identifier, resource_id))
        if self.notify_raises:
            raise ConnectionError("content service unreachable")

        if self.notify_rejects:
            return NotifyOutcome(accepted=False)

        self._versions += 1
        snapshot = self.snapshot(resource_id)
        snapshot.external_lock_key = lock_id
        snapshot.version_identifier = f"v{self._versions}"
        snapshot.raw = {**snapshot.raw, "lockKey": lock_id}
        return NotifyOutcome(accepted=True, version_identifier=snapshot.version_identifier)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def content_service() -> FakeContentService:
    return FakeContentService()


@pytest.fixture
def store(clock) -> MemoryLockStore:
    return MemoryLockStore(clock=clock)


@pytest.fixture
def expiry_policy(clock) -> ExpiryPolicy:
    return ExpiryPolicy(lease_seconds=LEASE_SECONDS, clock=clock)


@pytest.fixture
def machine(store, content_service, expiry_policy) -> LockStateMachine:
    return LockStateMachine(
        store=store,
        validator=content_service,
        notifier=content_service,
        expiry_policy=expiry_policy,
    )


def caller(user_id: str, device_id: str | None = "device-1", user_name: str | None = None) -> CallerIdentity:
    return CallerIdentity(user_id=user_id, device_id=device_id, user_name=user_name)


def create_request(user_id: str, resource_id: str = "doc-1", resource_type: str = "content") -> CreateLockRequest:
    return CreateLockRequest(
        resource_id=resource_id,
        resource_type=resource_type,
        resource_info='{"name": "doc"}',
        created_by=user_id,
        creator_info=f'{{"name": "{user_id.title()}", "id": "{user_id}"}}',
    )
