from typing import Any, Mapping, Self

import httpx

from contentlock.server.collaborators import (
    NotifyOutcome,
    ResourceSnapshot,
    ResourceTypeValidatorProtocol,
    ValidationOutcome,
    VersionNotifierProtocol,
)
from contentlock.server.config import ContentServiceConfig
from contentlock.utils.logging import get_logger

logger = get_logger(__name__)

INVALID_RESOURCE_TYPE = "Resource type is not valid"

# hop-by-hop and body describing headers must not be forwarded
NON_FORWARDED_HEADERS = frozenset({"host", "content-length", "content-type", "connection", "accept-encoding"})


def forwardable_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {name: value for name, value in headers.items() if name.lower() not in NON_FORWARDED_HEADERS}


class ContentServiceClient(ResourceTypeValidatorProtocol, VersionNotifierProtocol):
    """Client of the content service.

    Validates that a resource can be locked and keeps the lock key recorded on the content in sync.
    """

    def __init__(self, config: ContentServiceConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self.client = client
        self.lockable_types = {resource_type.lower() for resource_type in config.lockable_types}

    @classmethod
    def from_config(cls, config: ContentServiceConfig, transport: httpx.AsyncBaseTransport | None = None) -> Self:
        client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            transport=transport,
        )
        return cls(config=config, client=client)

    async def close(self) -> None:
        await self.client.aclose()

    async def check(
        self,
        operation: str,
        request: Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> ValidationOutcome:
        resource_type = str(request.get("resourceType", ""))
        if resource_type.lower() not in self.lockable_types:
            return ValidationOutcome(lockable=False, reason=INVALID_RESOURCE_TYPE)

        try:
            response = await self.client.post(
                self.config.validation_path,
                json={"request": dict(request)},
                headers=forwardable_headers(headers),
            )
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("%s: content lock validation call failed: %s", operation, e)
            return ValidationOutcome(lockable=False, reason=f"Unable to validate the resource: {e}")

        result = body.get("result") if isinstance(body, dict) else None
        if not isinstance(result, dict) or not result.get("message"):
            logger.error("%s: unexpected content lock validation response: %s", operation, body)
            params = body.get("params") if isinstance(body, dict) else None
            reason = params.get("errmsg") if isinstance(params, dict) else None
            return ValidationOutcome(lockable=False, reason=reason or "Resource validation failed")

        content = result.get("contentdata")
        if not isinstance(content, dict):
            content = {}

        # the content service reports version keys as numbers or strings
        return ValidationOutcome(
            lockable=bool(result.get("validation")),
            reason=str(result["message"]),
            snapshot=ResourceSnapshot(
                version_identifier=_optional_str(content.get("versionKey")),
                external_lock_key=_optional_str(content.get("lockKey")),
                raw=content,
            ),
        )

    async def notify(
        self,
        lock_id: str,
        version_identifier: str | None,
        resource_id: str,
        headers: Mapping[str, str],
    ) -> NotifyOutcome:
        payload = {"request": {"content": {"lockKey": lock_id, "versionKey": version_identifier}}}
        try:
            response = await self.client.patch(
                self.config.update_path.format(resource_id=resource_id),
                json=payload,
                headers=forwardable_headers(headers),
            )
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("updateContent call failed for resourceId=%s: %s", resource_id, e)
            return NotifyOutcome(accepted=False)

        if not isinstance(body, dict) or body.get("responseCode") != "OK":
            logger.error("updateContent rejected for resourceId=%s: %s", resource_id, body)
            return NotifyOutcome(accepted=False)

        result = body.get("result")
        if not isinstance(result, dict):
            result = {}

        return NotifyOutcome(accepted=True, version_identifier=_optional_str(result.get("versionKey")))


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)
