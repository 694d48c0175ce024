import datetime
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, AsyncIterator, Literal

import uvicorn
import yaml
from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from contentlock.plugins.content_service.content_service_client import ContentServiceClient
from contentlock.server.config import ConfigFile, Settings
from contentlock.server.expiry_policy import Clock, ExpiryPolicy, utcnow
from contentlock.server.lock_models import (
    CallerIdentity,
    CreateLockRequest,
    ErrorCode,
    ListLocksEnvelope,
    LockServiceError,
    RefreshLockRequest,
    RequestEnvelope,
    ResourceRef,
)
from contentlock.server.lock_state_machine import LockStateMachine
from contentlock.server.lock_store_base import LOCK_STORES_ENTRYPOINT, LockStoreProtocol
from contentlock.utils.logging import configure_logging, get_logger
from contentlock.utils.plugins import get_providers

config = Settings()  # type: ignore

logger = get_logger(__name__)

API_VERSION = "1.0"

API_IDS = {
    "/v1/lock/create": "api.lock.create",
    "/v1/lock/refresh": "api.lock.refresh",
    "/v1/lock/retire": "api.lock.retire",
    "/v1/lock/list": "api.lock.list",
}

ERROR_STATUS_CODES = {
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.SELF_LOCK_CONFLICT: 400,
    ErrorCode.ALREADY_LOCKED: 423,
    ErrorCode.LOCK_KEY_MISMATCH: 422,
    ErrorCode.NOT_FOUND: 400,
    ErrorCode.LOCK_RACE: 409,
    ErrorCode.SERVER_ERROR: 500,
}


@dataclass
class Services:
    state_machine: LockStateMachine
    store: LockStoreProtocol
    content_service: ContentServiceClient

    async def close(self) -> None:
        await self.content_service.close()
        await self.store.close()


def load_config_file(location: Path) -> ConfigFile:
    if not location.exists():
        raise FileNotFoundError(f"Config file not found: {location}")

    obj = yaml.safe_load(location.read_bytes())
    return ConfigFile.model_validate(obj)


async def create_lock_store(file_config: ConfigFile, clock: Clock) -> LockStoreProtocol:
    lock_stores = get_providers(
        LockStoreProtocol,
        LOCK_STORES_ENTRYPOINT,
    )

    store_config = file_config.lock_store
    if store_config.type not in lock_stores:
        raise ValueError(f"Unsupported lock store type: {store_config.type}")

    store_class = lock_stores[store_config.type].model_class
    return await store_class.from_config(store_config.model_extra or {}, clock=clock)


async def initialize_services(file_config: ConfigFile, clock: Clock = utcnow) -> Services:
    store = await create_lock_store(file_config, clock)
    content_service = ContentServiceClient.from_config(file_config.content_service)
    state_machine = LockStateMachine(
        store=store,
        validator=content_service,
        notifier=content_service,
        expiry_policy=ExpiryPolicy(lease_seconds=file_config.lease.duration_seconds, clock=clock),
    )
    return Services(state_machine=state_machine, store=store, content_service=content_service)


state: dict[str, Services] = {}


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_logging(config.log_level)
    services = await initialize_services(load_config_file(config.config_file))
    state["services"] = services
    logger.info("lock service started with %s", type(services.store).__name__)
    try:
        yield
    finally:
        state.pop("services", None)
        await services.close()


def get_state_machine() -> LockStateMachine:
    return state["services"].state_machine


def get_caller(
    request: Request,
    user_id: Annotated[str, Header(alias="x-authenticated-userid")],
    device_id: Annotated[str | None, Header(alias="x-device-id")] = None,
    user_name: Annotated[str | None, Header(alias="x-authenticated-user-name")] = None,
) -> CallerIdentity:
    return CallerIdentity(
        user_id=user_id,
        device_id=device_id,
        user_name=user_name,
        headers=dict(request.headers),
    )


StateMachineDependency = Annotated[LockStateMachine, Depends(get_state_machine)]
CallerDependency = Annotated[CallerIdentity, Depends(get_caller)]


def envelope(
    api_id: str,
    result: dict[str, Any],
    response_code: Literal["OK", "CLIENT_ERROR", "SERVER_ERROR"] = "OK",
    err: str | None = None,
    errmsg: str | None = None,
) -> dict[str, Any]:
    return {
        "id": api_id,
        "ver": API_VERSION,
        "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "params": {
            "resmsgid": str(uuid.uuid4()),
            "status": "successful" if response_code == "OK" else "failed",
            "err": err,
            "errmsg": errmsg,
        },
        "responseCode": response_code,
        "result": result,
    }


def success_response(request: Request, result: BaseModel | None = None) -> JSONResponse:
    content = result.model_dump(mode="json", by_alias=True) if result is not None else {}
    return JSONResponse(content=envelope(_api_id(request), content))


def _api_id(request: Request) -> str:
    return API_IDS.get(request.url.path, "api.lock")


app = FastAPI(lifespan=lifespan)


@app.exception_handler(LockServiceError)
async def lock_service_exception_handler(request: Request, exc: LockServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS_CODES[exc.code],
        content=jsonable_encoder(
            envelope(
                _api_id(request),
                {},
                response_code="CLIENT_ERROR" if exc.is_client_error else "SERVER_ERROR",
                err=exc.code.value,
                errmsg=str(exc),
            )
        ),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = f"{location}: {first.get('msg')}"
    else:
        message = "Invalid request"

    return JSONResponse(
        status_code=400,
        content=jsonable_encoder(
            envelope(
                _api_id(request),
                {},
                response_code="CLIENT_ERROR",
                err=ErrorCode.VALIDATION_FAILED.value,
                errmsg=message,
            )
        ),
    )


@app.post("/v1/lock/create")
async def create_lock(
    request: Request,
    body: RequestEnvelope[CreateLockRequest],
    caller: CallerDependency,
    state_machine: StateMachineDependency,
) -> JSONResponse:
    result = await state_machine.acquire(caller, body.request)
    return success_response(request, result)


@app.patch("/v1/lock/refresh")
async def refresh_lock(
    request: Request,
    body: RequestEnvelope[RefreshLockRequest],
    caller: CallerDependency,
    state_machine: StateMachineDependency,
) -> JSONResponse:
    result = await state_machine.refresh(caller, body.request)
    return success_response(request, result)


@app.delete("/v1/lock/retire")
async def retire_lock(
    request: Request,
    body: RequestEnvelope[ResourceRef],
    caller: CallerDependency,
    state_machine: StateMachineDependency,
) -> JSONResponse:
    await state_machine.release(caller, body.request)
    return success_response(request)


@app.post("/v1/lock/list")
async def list_locks(
    request: Request,
    caller: CallerDependency,
    state_machine: StateMachineDependency,
    body: ListLocksEnvelope | None = None,
) -> JSONResponse:
    filters = body.request.filters if body is not None else None
    result = await state_machine.list_locks(filters)
    return success_response(request, result)


@app.get("/ready")
def ready() -> Literal["Ready"]:
    return "Ready"


def start_server(port: int, host: str = "127.0.0.1") -> None:
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    start_server(port=8700)
