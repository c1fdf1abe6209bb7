"""Thin CLI wrapper over :class:`enoslink.Connection`."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.syntax import Syntax

from enoslink.builders import MeasurepointPostRequestBuilder
from enoslink.client import Connection
from enoslink.config import ConnectionConfig, load_config, save_config
from enoslink.errors import ClientError
from enoslink.messages import DeviceRef, FileCategory, FileMode, Response

T = TypeVar("T")

app = typer.Typer(help="Talk to an EnOS HTTP integration broker.", invoke_without_command=True)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log HTTP traffic"),
) -> None:
    """Talk to an EnOS HTTP integration broker."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True))],
        )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY, compact otherwise."""
    if sys.stdout.isatty():
        Console().print(Syntax(json.dumps(obj, indent=2), "json"))
    else:
        typer.echo(json.dumps(obj))


def _response_dict(response: Response) -> dict[str, object]:
    return {
        "code": response.code,
        "msg": response.msg,
        "requestId": response.request_id,
        "data": response.data,
    }


def _ensure_connection() -> Connection:
    """Load the saved config or exit with an error."""
    try:
        return Connection.from_config()
    except FileNotFoundError:
        typer.echo("No saved config. Run `enoslink configure` first.", err=True)
        raise typer.Exit(1) from None


def _device(asset_id: str | None, product_key: str | None, device_key: str | None) -> DeviceRef:
    if not asset_id and not (product_key and device_key):
        typer.echo("Pass --asset-id, or both --product-key and --device-key.", err=True)
        raise typer.Exit(1)
    return DeviceRef(asset_id=asset_id, product_key=product_key, device_key=device_key)


def _parse_assignments(items: list[str], *, as_path: bool = False) -> dict[str, object]:
    """Parse ``KEY=VALUE`` items; values are JSON when they parse as JSON."""
    out: dict[str, object] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            typer.echo(f"Expected KEY=VALUE, got '{item}'.", err=True)
            raise typer.Exit(1)
        if as_path:
            out[key] = Path(raw)
            continue
        try:
            out[key] = json.loads(raw)
        except json.JSONDecodeError:
            out[key] = raw
    return out


async def _run(connection: Connection, operation: Callable[[Connection], Awaitable[T]]) -> T:
    async with connection:
        return await operation(connection)


def _execute(connection: Connection, operation: Callable[[Connection], Awaitable[T]]) -> T:
    """Run *operation* on a fresh event loop, turning library errors into exit code 1."""
    try:
        return asyncio.run(_run(connection, operation))
    except (ClientError, OSError) as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def configure(
    broker_url: str = typer.Option(..., prompt=True, help="Integration broker URL"),
    token_server_url: str = typer.Option(..., prompt=True, help="Token server URL"),
    app_key: str = typer.Option(..., prompt=True, help="Application access key"),
    app_secret: str = typer.Option(
        ..., prompt=True, hide_input=True, help="Application secret key"
    ),
    org_id: str = typer.Option(..., prompt=True, help="Organization ID"),
    use_lark: bool = typer.Option(
        False, "--lark/--no-lark", help="Upload files through presigned URLs by default"
    ),
    auto_upload: bool = typer.Option(
        True, "--auto-upload/--no-auto-upload", help="Upload to presigned URLs automatically"
    ),
) -> None:
    """Save broker and application settings locally."""
    config = ConnectionConfig(
        broker_url=broker_url,
        token_server_url=token_server_url,
        app_key=app_key,
        app_secret=app_secret,
        org_id=org_id,
        use_lark=use_lark,
        auto_upload=auto_upload,
    )
    path = save_config(config)
    typer.echo(f"Saved settings to {path}.")


@app.command()
def auth() -> None:
    """Check that an access token can be obtained."""
    connection = _ensure_connection()

    async def op(conn: Connection) -> None:
        await conn.auth()

    _execute(connection, op)
    typer.echo("Access token obtained.")


@app.command("post-measurepoint")
def post_measurepoint(
    point: list[str] = typer.Option([], "--point", "-p", help="KEY=VALUE measurepoint value"),
    file: list[str] = typer.Option([], "--file", "-f", help="KEY=PATH file measurepoint"),
    asset_id: str | None = typer.Option(None, "--asset-id", help="Device asset ID"),
    product_key: str | None = typer.Option(None, "--product-key", help="Device product key"),
    device_key: str | None = typer.Option(None, "--device-key", help="Device key"),
    timestamp: int | None = typer.Option(
        None, "--time", "-t", help="Timestamp in ms (default: now)"
    ),
    lark: bool | None = typer.Option(
        None, "--lark/--direct", help="Override the configured file transfer mode"
    ),
) -> None:
    """Publish measurepoint values (and file measurepoints) for one device."""
    device = _device(asset_id, product_key, device_key)
    values = {**_parse_assignments(point), **_parse_assignments(file, as_path=True)}
    if not values:
        typer.echo("Nothing to publish: pass --point or --file.", err=True)
        raise typer.Exit(1)

    ts = timestamp if timestamp is not None else int(time.time() * 1000)
    file_mode = None if lark is None else (FileMode.INDIRECT if lark else FileMode.DIRECT)
    connection = _ensure_connection()

    async def op(conn: Connection) -> Response:
        request = MeasurepointPostRequestBuilder().add_measurepoint(device, ts, values).build()
        return await conn.publish(request, file_mode=file_mode)

    response = _execute(connection, op)
    _print_json(_response_dict(response))
    if not response.is_success:
        raise typer.Exit(1)


@app.command()
def delete(
    file_uri: str = typer.Argument(..., help="File URI returned by the broker"),
    asset_id: str | None = typer.Option(None, "--asset-id", help="Device asset ID"),
    product_key: str | None = typer.Option(None, "--product-key", help="Device product key"),
    device_key: str | None = typer.Option(None, "--device-key", help="Device key"),
) -> None:
    """Delete a file stored by the broker."""
    device = _device(asset_id, product_key, device_key)
    connection = _ensure_connection()

    async def op(conn: Connection) -> Response:
        return await conn.delete_file(device, file_uri)

    response = _execute(connection, op)
    _print_json(_response_dict(response))
    if not response.is_success:
        raise typer.Exit(1)


@app.command()
def download(
    file_uri: str = typer.Argument(..., help="File URI returned by the broker"),
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the file"),
    asset_id: str | None = typer.Option(None, "--asset-id", help="Device asset ID"),
    product_key: str | None = typer.Option(None, "--product-key", help="Device product key"),
    device_key: str | None = typer.Option(None, "--device-key", help="Device key"),
    category: FileCategory = typer.Option(FileCategory.FEATURE, help="File category"),
) -> None:
    """Download a file stored by the broker."""
    device = _device(asset_id, product_key, device_key)
    connection = _ensure_connection()

    async def op(conn: Connection) -> bytes:
        return await conn.download_file(device, file_uri, category)

    data = _execute(connection, op)
    output.write_bytes(data)
    typer.echo(f"Wrote {len(data)} bytes to {output}.")


@app.command("download-url")
def download_url(
    file_uri: str = typer.Argument(..., help="enos-lark:// file URI"),
    asset_id: str | None = typer.Option(None, "--asset-id", help="Device asset ID"),
    product_key: str | None = typer.Option(None, "--product-key", help="Device product key"),
    device_key: str | None = typer.Option(None, "--device-key", help="Device key"),
    category: FileCategory = typer.Option(FileCategory.FEATURE, help="File category"),
) -> None:
    """Print a presigned download URL for a file."""
    device = _device(asset_id, product_key, device_key)
    connection = _ensure_connection()

    async def op(conn: Connection) -> str:
        return await conn.get_download_url(device, file_uri, category)

    typer.echo(_execute(connection, op))


@app.command("show-config")
def show_config() -> None:
    """Print the saved settings (secret masked)."""
    try:
        config = load_config()
    except FileNotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    data = dataclasses.asdict(config)
    data["app_secret"] = "****"
    _print_json(data)
