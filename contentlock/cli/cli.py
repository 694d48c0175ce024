import asyncio
import json
import pathlib
from contextlib import contextmanager
from typing import Annotated, Iterator, Optional

import httpx
import questionary
import typer
import yaml

from contentlock.server.app import start_server
from contentlock.server.config import (
    CONFIG_FILE_NAME,
    ConfigFile,
    ContentServiceConfig,
    LockStoreConfig,
)

app = typer.Typer(pretty_exceptions_enable=False, rich_markup_mode=None)


@contextmanager
def capture_aborts() -> Iterator[None]:
    try:
        yield
    except typer.Abort as e:
        print("Error:", e)
        raise


def default_config(content_service_url: str) -> ConfigFile:
    return ConfigFile(
        lock_store=LockStoreConfig(type="memory"),
        content_service=ContentServiceConfig(base_url=content_service_url),
    )


async def _init(content_service_url: str) -> None:
    config_file_location = pathlib.Path(CONFIG_FILE_NAME)
    if config_file_location.exists():
        print("Configuration file already exists")
        should_replace = await questionary.confirm(
            "Do you want to replace it?",
            default=False,
        ).ask_async()
        if not should_replace:
            print("Aborting...")
            return

        print("Replacing existing configuration file")

    result_file = default_config(content_service_url)
    raw_file = yaml.safe_dump(yaml.safe_load(result_file.model_dump_json()))
    config_file_location.write_text(raw_file, encoding="utf-8")

    print("Configuration file created")
    print("You can now start the server with `contentlock start`")


@app.command()
def init(
    content_service_url: Annotated[
        str, typer.Option(help="Base url of the content service")
    ] = "http://localhost:9000",
) -> None:
    """Initialize the configuration file for the server in current directory.

    The created file uses the in-memory lock store - switch `lock_store` to `redis` for a shared store.

    Output will be a file named `contentlock.yaml` in the current directory.
    """
    with capture_aborts():
        asyncio.run(_init(content_service_url))


@app.command()
def start(
    port: Annotated[int, typer.Option(help="Port to run the server on")] = 8700,
    host: Annotated[str, typer.Option(help="Interface to bind the server to")] = "127.0.0.1",
) -> None:
    """Starts the server with the configuration file in the current directory."""
    start_server(port, host=host)


@app.command()
def list_locks(
    user_id: Annotated[str, typer.Option(help="User id to authenticate the request with")],
    resource_id: Annotated[
        Optional[list[str]], typer.Option(help="Only list locks of this resource - repeatable")
    ] = None,
    port: Annotated[int, typer.Option(help="Port the server runs on")] = 8700,
) -> None:
    """Lists the live locks held by a running server."""
    body = {"request": {"filters": {"resourceId": resource_id}}} if resource_id else {"request": {}}
    with httpx.Client(base_url=f"http://localhost:{port}") as client:
        response = client.post(
            "/v1/lock/list",
            json=body,
            headers={"x-authenticated-userid": user_id},
        )

    payload = response.json()
    if response.is_error:
        print("Error:", payload.get("params", {}).get("errmsg"))
        raise typer.Exit(code=1)

    result = payload["result"]
    print(f"{result['count']} lock(s)")
    for record in result["data"]:
        print(json.dumps(record, indent=2))


def main() -> None:
    app()
