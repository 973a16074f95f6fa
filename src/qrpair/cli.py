"""CLI entry point for qrpair."""

import asyncio
import json
from pathlib import Path
from typing import Iterator

import aiohttp
import click

from qrpair import __version__
from qrpair.config import Config, load_config
from qrpair.credential_store import CredentialStore
from qrpair.errors import NotAuthenticatedError, UnauthorizedError
from qrpair.gateway import Gateway
from qrpair.logging import setup_logging
from qrpair.pairing_client import PairingClient
from qrpair.state_machine import AuthState, PairingStateMachine


def _build_gateway(config: Config) -> Gateway:
    store = CredentialStore(Path(config.storage.directory))
    return Gateway(
        store,
        request_timeout=config.http.request_timeout,
        verify_path=config.http.verify_path,
    )


def _scanned_payloads(payload: str | None, payload_file: Path | None) -> Iterator[str]:
    """Yield scanned QR texts: the argument, the file, or stdin lines."""
    if payload is not None:
        yield payload
        return
    if payload_file is not None:
        yield payload_file.read_text()
        return
    for line in click.get_text_stream("stdin"):
        line = line.strip()
        if line:
            yield line


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """qrpair - Pair this device with a web app by scanning a QR code."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
@click.argument("payload", required=False)
@click.option(
    "--file",
    "-f",
    "payload_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read the scanned QR text from a file.",
)
@click.pass_context
def pair(ctx: click.Context, payload: str | None, payload_file: Path | None) -> None:
    """Pair this device using a scanned QR code.

    PAYLOAD is the text decoded from the QR code. Without it, scanned
    payloads are read from stdin, one per line, until one is accepted.
    """
    config = ctx.obj["config"]

    async def _pair() -> bool:
        gateway = _build_gateway(config)
        try:
            async with PairingClient(
                device_name=config.device_name,
                request_timeout=config.http.request_timeout,
            ) as client:
                machine = PairingStateMachine(gateway.store, gateway, client)
                machine.on_scan_warning(lambda message: click.echo(message, err=True))
                machine.start()

                for raw in _scanned_payloads(payload, payload_file):
                    await machine.scanned(raw)
                    if machine.state != AuthState.SCANNING:
                        break
        finally:
            await gateway.close()

        if machine.state == AuthState.AUTHENTICATED:
            credential = machine.credential
            click.echo("Authentication successful! Your device has been paired.")
            click.echo(f"Device ID: {credential.device_id}")
            click.echo(f"API URL:   {credential.api_url}")
            return True

        if machine.state == AuthState.FAILED:
            click.echo(f"Authentication failed: {machine.failure.message}", err=True)
        else:
            click.echo("No valid pairing code was scanned.", err=True)
        return False

    if not asyncio.run(_pair()):
        raise SystemExit(1)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show pairing status."""
    config = ctx.obj["config"]

    async def _status():
        store = CredentialStore(Path(config.storage.directory))
        return await store.get_auth_data()

    credential = asyncio.run(_status())
    if credential is None:
        click.echo("Status: not paired")
        return
    click.echo("Status: paired")
    click.echo(f"Device ID: {credential.device_id}")
    click.echo(f"API URL:   {credential.api_url}")


@main.command()
@click.pass_context
def verify(ctx: click.Context) -> None:
    """Verify the stored credentials with the server."""
    config = ctx.obj["config"]

    async def _verify() -> bool:
        gateway = _build_gateway(config)
        try:
            machine = PairingStateMachine(gateway.store, gateway, pairing_client=None)
            if await machine.restore() != AuthState.AUTHENTICATED:
                click.echo("Error: device is not paired.", err=True)
                return False

            result = await machine.verify()
        finally:
            await gateway.close()

        if machine.state == AuthState.AUTHENTICATED:
            click.echo("Token verification successful! Your token is valid.")
            if result.rotated:
                click.echo("Refresh token was rotated.")
            return True

        click.echo(f"Token verification failed: {machine.failure.message}", err=True)
        return False

    if not asyncio.run(_verify()):
        raise SystemExit(1)


@main.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Remove stored credentials."""
    config = ctx.obj["config"]

    async def _logout():
        gateway = _build_gateway(config)
        await gateway.logout()

    asyncio.run(_logout())
    click.echo("Logged out.")


@main.command()
@click.argument("method")
@click.argument("path")
@click.option("--data", "-d", default=None, help="JSON request body.")
@click.pass_context
def request(ctx: click.Context, method: str, path: str, data: str | None) -> None:
    """Send an authenticated request, e.g. `qrpair request GET /api/me`."""
    config = ctx.obj["config"]

    body = None
    if data is not None:
        try:
            body = json.loads(data)
        except ValueError as e:
            raise click.BadParameter(f"not valid JSON: {e}", param_hint="--data")

    async def _request():
        gateway = _build_gateway(config)
        try:
            return await gateway.request(method.upper(), path, json=body)
        finally:
            await gateway.close()

    try:
        response = asyncio.run(_request())
    except NotAuthenticatedError:
        click.echo("Error: device is not paired.", err=True)
        raise SystemExit(1)
    except UnauthorizedError:
        click.echo("Error: server rejected the credentials; they were removed. Pair again.", err=True)
        raise SystemExit(1)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        click.echo(f"Error: request failed: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"HTTP {response.status}")
    click.echo(response.text)
    if not response.ok:
        raise SystemExit(1)


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"qrpair version {__version__}")
