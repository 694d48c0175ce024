import logging
import pathlib
from typing import Annotated

import semver
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_NAME = "contentlock"

CONFIG_VERSION = "1"

CONFIG_FILE_NAME = "contentlock.yaml"


class LeaseConfig(BaseModel):
    """Lease configuration.

    Attributes:
        duration_seconds: Length of a lease - the lock row TTL and `expiresAt` are both derived from it.
    """

    duration_seconds: Annotated[int, Field(gt=0)] = 3600


class LockStoreConfig(BaseModel):
    """Data struct that contains the configuration for the lock store.

    Each lock store defines it's own unique configuration parameters -
    and the parameters will be passed through to the lock store.

    Attributes:
        type: lock store type as declared in the entrypoint.
        **kwargs: lock store specific configuration parameters.

    Example:
        ```yaml
        type: redis
        url: redis://localhost:6379/0
        key_prefix: contentlock
        ```
    """

    model_config = ConfigDict(extra="allow")
    type: str


class ContentServiceConfig(BaseModel):
    """Connection details of the content service - it validates resources and records their lock keys.

    Attributes:
        base_url: Base url of the content service.
        validation_path: Path of the lock validation endpoint.
        update_path: Path of the content update endpoint - formatted with `resource_id`.
        timeout_seconds: Timeout of every call - a timed out validation fails the lock operation.
        lockable_types: Resource types that may be locked, compared case insensitively.
    """

    base_url: str
    validation_path: str = "/v1/content/getContentLockValidation"
    update_path: str = "/content/v3/update/{resource_id}"
    timeout_seconds: Annotated[float, Field(gt=0)] = 10.0
    lockable_types: list[str] = Field(default_factory=lambda: ["content"])


class ConfigFile(BaseModel):
    """The configuration file for contentlock.

    Attributes:
        version: The version of the configuration file.
        lease: The lease configuration.
        lock_store: The configuration of the lock store.
        content_service: The configuration of the content service.
    """

    version: str = CONFIG_VERSION
    lease: LeaseConfig = Field(default_factory=LeaseConfig)
    lock_store: LockStoreConfig
    content_service: ContentServiceConfig

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: str) -> str:
        current_version = semver.Version.parse(value, optional_minor_and_patch=True)
        config_version = semver.Version.parse(CONFIG_VERSION, optional_minor_and_patch=True)
        if current_version.major < config_version.major:
            raise ValueError(
                f"Unsupported version ({current_version} < {config_version}) - please upgrade the config file"
            )

        if current_version.major > config_version.major:
            raise ValueError(
                f"Unsupported version ({current_version} > {config_version}) - please check if there is a newer version of {PACKAGE_NAME}"
            )

        return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix=f"{PACKAGE_NAME.upper()}_")

    config_file: pathlib.Path = pathlib.Path(CONFIG_FILE_NAME)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")

        return level
