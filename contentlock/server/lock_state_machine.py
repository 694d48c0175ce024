import enum
import json
import uuid
from typing import Any, Mapping, NoReturn

from contentlock.server.collaborators import (
    ResourceSnapshot,
    ResourceTypeValidatorProtocol,
    VersionNotifierProtocol,
)
from contentlock.server.expiry_policy import ExpiryPolicy
from contentlock.server.lock_models import (
    AcquireResult,
    CallerIdentity,
    CreateLockRequest,
    ErrorCode,
    LockFilters,
    LockListing,
    LockRecord,
    LockServiceError,
    RefreshLockRequest,
    RefreshResult,
    ResourceRef,
)
from contentlock.server.lock_store_base import (
    InsertOutcome,
    LockStoreError,
    LockStoreProtocol,
    UpdateOutcome,
)
from contentlock.utils.logging import get_logger

logger = get_logger(__name__)

DEVICE_ID_MISSING = "x-device-id missing"
ALREADY_LOCKED_MESSAGE = "The resource is already locked by {name}"
SELF_LOCKED_MESSAGE = "The resource is already locked by you in a different window/device"


class Ownership(enum.Enum):
    """How an existing lock relates to the caller."""

    SAME_SESSION = "same_session"
    SAME_USER_OTHER_SESSION = "same_user_other_session"
    OTHER_USER = "other_user"


def classify_ownership(record: LockRecord, caller: CallerIdentity, resource_type: str) -> Ownership:
    if record.created_by != caller.user_id:
        return Ownership.OTHER_USER

    if record.device_id == caller.device_id and record.resource_type == resource_type:
        return Ownership.SAME_SESSION

    return Ownership.SAME_USER_OTHER_SESSION


class LockStateMachine:
    def __init__(
        self,
        store: LockStoreProtocol,
        validator: ResourceTypeValidatorProtocol,
        notifier: VersionNotifierProtocol,
        expiry_policy: ExpiryPolicy,
    ):
        self.store = store
        self.validator = validator
        self.notifier = notifier
        self.expiry_policy = expiry_policy

    async def acquire(self, caller: CallerIdentity, payload: CreateLockRequest) -> AcquireResult:
        self._require_device(caller, "createLock")
        if caller.user_id != payload.created_by:
            self._fail(
                "createLock",
                ErrorCode.UNAUTHORIZED,
                "You are not authorized to lock this resource",
                userId=caller.user_id,
                createdBy=payload.created_by,
            )

        snapshot = await self._validate_resource("createLock", payload, caller)
        return await self._acquire(caller, payload, snapshot)

    async def refresh(self, caller: CallerIdentity, payload: RefreshLockRequest) -> RefreshResult:
        self._require_device(caller, "refreshLock")
        snapshot = await self._validate_resource("refreshLock", payload, caller)

        if payload.lock_id != snapshot.external_lock_key:
            self._fail(
                "refreshLock",
                ErrorCode.LOCK_KEY_MISMATCH,
                "Lock key and request lock key does not match",
                requestLockKey=payload.lock_id,
                contentLockKey=snapshot.external_lock_key,
            )

        record = await self._find("refreshLock", payload)
        if record is None:
            return await self._reacquire_expired(caller, payload, snapshot)

        if record.created_by != caller.user_id:
            self._fail(
                "refreshLock",
                ErrorCode.UNAUTHORIZED,
                "You are not authorized to refresh this lock",
                createdBy=record.created_by,
                requestedBy=caller.user_id,
            )

        refreshed = record.model_copy(update={"expires_at": self.expiry_policy.expires_at()})
        try:
            outcome = await self.store.update(
                payload.resource_id,
                payload.resource_type,
                refreshed,
                self.expiry_policy.ttl_seconds,
                require_exists=True,
                expected_lock_id=record.lock_id,
            )
        except LockStoreError as e:
            self._fail_store("refreshLock", e, payload)

        if outcome is UpdateOutcome.NOT_FOUND:
            # the row expired, was released or was taken over between the read and the update
            self._fail(
                "refreshLock",
                ErrorCode.SERVER_ERROR,
                "Unable to refresh the lock, please try again",
                resourceId=payload.resource_id,
                resourceType=payload.resource_type,
                lockId=record.lock_id,
            )

        logger.info("refresh lock successful: lockId=%s expiresAt=%s", refreshed.lock_id, refreshed.expires_at)
        return RefreshResult(
            lock_id=refreshed.lock_id,
            expires_at=refreshed.expires_at,
            ttl_minutes=self.expiry_policy.ttl_minutes,
        )

    async def release(self, caller: CallerIdentity, payload: ResourceRef) -> None:
        self._require_device(caller, "retireLock")
        await self._validate_resource("retireLock", payload, caller)

        record = await self._find("retireLock", payload)
        if record is None:
            self._fail(
                "retireLock",
                ErrorCode.NOT_FOUND,
                "No lock found for the resource",
                resourceId=payload.resource_id,
                resourceType=payload.resource_type,
            )

        if record.created_by != caller.user_id:
            self._fail(
                "retireLock",
                ErrorCode.UNAUTHORIZED,
                "You are not authorized to retire this lock",
                createdBy=record.created_by,
                requestedBy=caller.user_id,
            )

        try:
            deleted = await self.store.delete(
                payload.resource_id,
                payload.resource_type,
                expected_lock_id=record.lock_id,
            )
        except LockStoreError as e:
            self._fail_store("retireLock", e, payload)

        if not deleted:
            # the lock expired or changed hands after it was read - whatever holds the key now is left alone
            self._fail(
                "retireLock",
                ErrorCode.NOT_FOUND,
                "No lock found for the resource",
                resourceId=payload.resource_id,
                resourceType=payload.resource_type,
                lockId=record.lock_id,
            )

        logger.info("retire lock successful: resourceId=%s", payload.resource_id)

    async def list_locks(self, filters: LockFilters | None = None) -> LockListing:
        resource_ids = filters.resource_id if filters is not None else None
        try:
            records = await self.store.list_locks(resource_ids or None)
        except LockStoreError as e:
            logger.error("listLock failed: %s (resourceIds=%s)", e, resource_ids)
            raise LockServiceError(ErrorCode.SERVER_ERROR, "Unable to list the locks") from e

        logger.debug("listLock returned %d locks", len(records))
        return LockListing(count=len(records), data=records)

    async def _acquire(
        self,
        caller: CallerIdentity,
        payload: CreateLockRequest,
        snapshot: ResourceSnapshot,
    ) -> AcquireResult:
        existing = await self._find("createLock", payload)
        if existing is not None:
            return self._resolve_existing(caller, payload, existing, snapshot)

        now = self.expiry_policy.now()
        record = LockRecord(
            lock_id=str(uuid.uuid4()),
            resource_id=payload.resource_id,
            resource_type=payload.resource_type,
            resource_info=payload.resource_info,
            created_by=payload.created_by,
            creator_info=payload.creator_info,
            device_id=caller.device_id,
            created_on=now,
            expires_at=self.expiry_policy.expires_at(),
        )
        try:
            outcome = await self.store.insert_if_absent(record, self.expiry_policy.ttl_seconds)
        except LockStoreError as e:
            self._fail_store("createLock", e, payload)

        if outcome is InsertOutcome.ALREADY_EXISTS:
            # lost the race to a concurrent acquire - decide against the winner
            winner = await self._find("createLock", payload)
            if winner is None:
                self._fail(
                    "createLock",
                    ErrorCode.LOCK_RACE,
                    "The resource was locked and unlocked concurrently, please try again",
                    resourceId=payload.resource_id,
                    resourceType=payload.resource_type,
                )

            return self._resolve_existing(caller, payload, winner, snapshot)

        logger.info("lock successfully saved: lockId=%s resourceId=%s", record.lock_id, record.resource_id)
        version_identifier, version_stale = await self._notify(caller, record, snapshot)
        return AcquireResult(
            lock_id=record.lock_id,
            expires_at=record.expires_at,
            ttl_minutes=self.expiry_policy.ttl_minutes,
            version_identifier=version_identifier,
            version_stale=version_stale,
        )

    def _resolve_existing(
        self,
        caller: CallerIdentity,
        payload: CreateLockRequest,
        record: LockRecord,
        snapshot: ResourceSnapshot,
    ) -> AcquireResult:
        match classify_ownership(record, caller, payload.resource_type):
            case Ownership.SAME_SESSION:
                return AcquireResult(
                    lock_id=record.lock_id,
                    expires_at=record.expires_at,
                    ttl_minutes=self.expiry_policy.ttl_minutes,
                    version_identifier=snapshot.version_identifier,
                )
            case Ownership.SAME_USER_OTHER_SESSION:
                self._fail(
                    "createLock",
                    ErrorCode.SELF_LOCK_CONFLICT,
                    SELF_LOCKED_MESSAGE,
                    userId=caller.user_id,
                    deviceId=caller.device_id,
                    lockDeviceId=record.device_id,
                )
            case Ownership.OTHER_USER:
                self._fail(
                    "createLock",
                    ErrorCode.ALREADY_LOCKED,
                    ALREADY_LOCKED_MESSAGE.format(name=record.creator_name()),
                    userId=caller.user_id,
                    createdBy=record.created_by,
                )

    async def _reacquire_expired(
        self,
        caller: CallerIdentity,
        payload: RefreshLockRequest,
        snapshot: ResourceSnapshot,
    ) -> RefreshResult:
        if snapshot.external_lock_key != payload.lock_id:
            self._fail(
                "refreshLock",
                ErrorCode.NOT_FOUND,
                "No lock found to refresh",
                contentLockKey=snapshot.external_lock_key,
                requestLockKey=payload.lock_id,
            )

        # the row expired but the content system still references it - lock it again for the caller
        logger.info("lock %s expired in store, re-creating it for %s", payload.lock_id, caller.user_id)
        creation = CreateLockRequest(
            resource_id=payload.resource_id,
            resource_type=payload.resource_type,
            resource_info=json.dumps(snapshot.raw),
            created_by=caller.user_id,
            creator_info=json.dumps({"name": caller.user_name, "id": caller.user_id}),
        )
        result = await self._acquire(caller, creation, snapshot)
        return RefreshResult(
            lock_id=result.lock_id,
            expires_at=result.expires_at,
            ttl_minutes=result.ttl_minutes,
        )

    async def _notify(
        self,
        caller: CallerIdentity,
        record: LockRecord,
        snapshot: ResourceSnapshot,
    ) -> tuple[str | None, bool]:
        try:
            outcome = await self.notifier.notify(
                record.lock_id,
                snapshot.version_identifier,
                record.resource_id,
                caller.headers,
            )
        except Exception:
            # the lock is already stored - a failed notification only leaves the version stale
            logger.exception("updateContent failed for resourceId=%s lockId=%s", record.resource_id, record.lock_id)
            return snapshot.version_identifier, True

        if not outcome.accepted:
            logger.error(
                "updateContent rejected lockId=%s for resourceId=%s", record.lock_id, record.resource_id
            )
            return snapshot.version_identifier, True

        return outcome.version_identifier or snapshot.version_identifier, False

    async def _validate_resource(
        self,
        operation: str,
        payload: ResourceRef,
        caller: CallerIdentity,
    ) -> ResourceSnapshot:
        request: dict[str, Any] = payload.model_dump(by_alias=True)
        request["apiName"] = operation
        try:
            outcome = await self.validator.check(operation, request, caller.headers)
        except Exception as e:
            logger.exception("%s: resource validation raised for resourceId=%s", operation, payload.resource_id)
            raise LockServiceError(
                ErrorCode.VALIDATION_FAILED,
                "Unable to validate the resource",
                {"resourceId": payload.resource_id, "resourceType": payload.resource_type},
            ) from e

        if not outcome.lockable:
            self._fail(
                operation,
                ErrorCode.VALIDATION_FAILED,
                outcome.reason or "Resource type validation failed",
                resourceId=payload.resource_id,
                resourceType=payload.resource_type,
                versionIdentifier=outcome.snapshot.version_identifier,
            )

        return outcome.snapshot

    async def _find(self, operation: str, ref: ResourceRef) -> LockRecord | None:
        try:
            return await self.store.find_one(ref.resource_id, ref.resource_type)
        except LockStoreError as e:
            self._fail_store(operation, e, ref)

    def _require_device(self, caller: CallerIdentity, operation: str) -> None:
        if not caller.device_id:
            self._fail(operation, ErrorCode.VALIDATION_FAILED, DEVICE_ID_MISSING, userId=caller.user_id)

    def _fail_store(self, operation: str, error: LockStoreError, ref: ResourceRef) -> NoReturn:
        logger.error(
            "%s failed: %s (resourceId=%s resourceType=%s)",
            operation,
            error,
            ref.resource_id,
            ref.resource_type,
            exc_info=error,
        )
        raise LockServiceError(
            ErrorCode.SERVER_ERROR,
            "Something went wrong while processing the lock, please try again",
            {"resourceId": ref.resource_id, "resourceType": ref.resource_type},
        ) from error

    def _fail(self, operation: str, code: ErrorCode, msg: str, **details: Any) -> NoReturn:
        logger.error("%s failed [%s]: %s %s", operation, code, msg, _format_details(details))
        raise LockServiceError(code, msg, details)


def _format_details(details: Mapping[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in details.items())
