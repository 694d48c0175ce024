import datetime
import enum
import json
from typing import Any, Generic, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LockRecord(CamelModel):
    """Data struct that contains a persisted lock.

    At most one live record exists per `(resource_id, resource_type)` - the pair is the key of the row.

    Attributes:
        lock_id: Opaque unique identifier generated when the lock is created.
        resource_id: Identifier of the locked resource.
        resource_type: Type of the locked resource.
        resource_info: Serialized snapshot of the resource at lock time - never interpreted.
        created_by: The user that acquired the lock - used for every ownership check.
        creator_info: Serialized display metadata about the creator (JSON with a `name` key).
        device_id: The device the lock was created from.
        created_on: The time when the lock was created.
        expires_at: The end of the current lease.
    """

    model_config = ConfigDict(from_attributes=True)

    lock_id: str
    resource_id: str
    resource_type: str
    resource_info: str
    created_by: str
    creator_info: str
    device_id: str
    created_on: datetime.datetime
    expires_at: datetime.datetime

    def creator_name(self, default: str = "another user") -> str:
        try:
            name = json.loads(self.creator_info)["name"]
        except (ValueError, TypeError, KeyError):
            return default

        return name if isinstance(name, str) and name else default


class ResourceRef(CamelModel):
    resource_id: str = Field(min_length=1)
    resource_type: str = Field(min_length=1)


class CreateLockRequest(ResourceRef):
    resource_info: str = Field(min_length=1)
    created_by: str = Field(min_length=1)
    creator_info: str = Field(min_length=1)


class RefreshLockRequest(ResourceRef):
    lock_id: str = Field(min_length=1)


class LockFilters(CamelModel):
    resource_id: list[str] | None = None

    @field_validator("resource_id", mode="before")
    @classmethod
    def wrap_single_value(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]

        return value


class ListLocksRequest(CamelModel):
    filters: LockFilters = Field(default_factory=LockFilters)


T = TypeVar("T", bound=BaseModel)


class RequestEnvelope(BaseModel, Generic[T]):
    request: T


class ListLocksEnvelope(BaseModel):
    request: ListLocksRequest = Field(default_factory=ListLocksRequest)


class CallerIdentity(BaseModel):
    """Identity of the caller as extracted by the request gate.

    Attributes:
        user_id: Authenticated user id.
        device_id: Device the request originates from - may be missing.
        user_name: Display name of the user, if known.
        headers: Raw request headers - forwarded to the content service.
    """

    user_id: str
    device_id: str | None = None
    user_name: str | None = None
    headers: Mapping[str, str] = Field(default_factory=dict)


class AcquireResult(CamelModel):
    lock_id: str
    expires_at: datetime.datetime
    ttl_minutes: float
    version_identifier: str | None = None
    version_stale: bool = False


class RefreshResult(CamelModel):
    lock_id: str
    expires_at: datetime.datetime
    ttl_minutes: float


class LockListing(CamelModel):
    count: int
    data: list[LockRecord]


class ErrorCode(enum.StrEnum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNAUTHORIZED = "UNAUTHORIZED"
    SELF_LOCK_CONFLICT = "SELF_LOCK_CONFLICT"
    ALREADY_LOCKED = "ALREADY_LOCKED"
    LOCK_KEY_MISMATCH = "LOCK_KEY_MISMATCH"
    NOT_FOUND = "NOT_FOUND"
    LOCK_RACE = "LOCK_RACE"
    SERVER_ERROR = "SERVER_ERROR"


CLIENT_ERROR_CODES = frozenset(code for code in ErrorCode if code is not ErrorCode.SERVER_ERROR)


class LockServiceError(Exception):
    def __init__(self, code: ErrorCode, msg: str, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(msg)
        self.code = code
        self.details = dict(details or {})

    @property
    def is_client_error(self) -> bool:
        return self.code in CLIENT_ERROR_CODES
