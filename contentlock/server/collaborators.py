from typing import Any, Mapping, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class ResourceSnapshot(BaseModel):
    """Authoritative state of a resource as recorded by the content system.

    Attributes:
        version_identifier: Current version of the resource.
        external_lock_key: Lock id the content system associates with the resource, if any.
        raw: The full snapshot as returned by the content system.
    """

    version_identifier: str | None = None
    external_lock_key: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ValidationOutcome(BaseModel):
    lockable: bool
    reason: str | None = None
    snapshot: ResourceSnapshot = Field(default_factory=ResourceSnapshot)


class NotifyOutcome(BaseModel):
    accepted: bool
    version_identifier: str | None = None


@runtime_checkable
class ResourceTypeValidatorProtocol(Protocol):
    async def check(
        self,
        operation: str,
        request: Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> ValidationOutcome:
        """Check whether the referenced resource can be locked.

        Args:
            operation: Name of the lock operation asking - forwarded to the content system.
            request: The lock request fields, keyed by their wire names.
            headers: Caller headers to forward.

        Returns:
            The outcome, with the authoritative resource snapshot when the resource is known.
            Failing to reach the content system is reported as a non lockable outcome.
        """
        ...


@runtime_checkable
class VersionNotifierProtocol(Protocol):
    async def notify(
        self,
        lock_id: str,
        version_identifier: str | None,
        resource_id: str,
        headers: Mapping[str, str],
    ) -> NotifyOutcome:
        """Inform the content system that the lock of a resource changed.

        Best effort - a rejected or failed call must never undo the lock operation.
        """
        ...
