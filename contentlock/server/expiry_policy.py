import datetime
from dataclasses import dataclass, field
from typing import Callable

Clock = Callable[[], datetime.datetime]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class ExpiryPolicy:
    """Computes lease expiration from the configured lease duration.

    Attributes:
        lease_seconds: Length of a lease - also used as the row TTL in the lock store.
        clock: Source of the current time - injectable for tests.
    """

    lease_seconds: int
    clock: Clock = field(default=utcnow)

    def __post_init__(self) -> None:
        if self.lease_seconds <= 0:
            raise ValueError(f"Lease duration must be positive, got {self.lease_seconds}")

    @property
    def ttl_seconds(self) -> int:
        return self.lease_seconds

    @property
    def ttl_minutes(self) -> float:
        return self.lease_seconds / 60

    def now(self) -> datetime.datetime:
        return self.clock()

    def expires_at(self) -> datetime.datetime:
        return self.now() + datetime.timedelta(seconds=self.lease_seconds)
