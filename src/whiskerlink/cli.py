"""Thin CLI wrapper over :class:`whiskerlink.Client`."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Coroutine
from datetime import datetime
from typing import Any, TypeVar

import typer

from whiskerlink.client import Client
from whiskerlink.errors import AuthenticationError, WhiskerError
from whiskerlink.models import DataSource
from whiskerlink.realtime import EventKind, RealtimeEvent
from whiskerlink.store import FileCredentialStore

_T = TypeVar("_T")

app = typer.Typer(help="Talk to Litter-Robot 4 units through the Whisker cloud.", invoke_without_command=True)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="-v for info, -vv for debug logs"),
) -> None:
    """Talk to Litter-Robot 4 units through the Whisker cloud."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG if verbose > 1 else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY."""
    if sys.stdout.isatty():
        try:
            from rich.console import Console
            from rich.syntax import Syntax

            Console().print(Syntax(json.dumps(obj, indent=2), "json"))
        except ImportError:
            typer.echo(json.dumps(obj, indent=2))
    else:
        typer.echo(json.dumps(obj))


def _ensure_client() -> Client:
    """Load saved credentials or exit with an error."""
    try:
        return Client.from_saved()
    except FileNotFoundError:
        typer.echo("No saved credentials. Run `whiskerlink login` first.", err=True)
        raise typer.Exit(1) from None


def _run(coro: Coroutine[Any, Any, _T]) -> _T:
    """Run *coro*, turning library errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except AuthenticationError as e:
        typer.echo(f"{e} Run `whiskerlink login` again.", err=True)
        raise typer.Exit(1) from None
    except WhiskerError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None


def _stamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def login(
    email: str = typer.Option(..., prompt=True, help="Whisker account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True, help="Whisker account password"),
) -> None:
    """Authenticate with Whisker and save credentials locally."""
    typer.echo(f"Logging in as {email}...")

    async def _login() -> int:
        async with await Client.login(email, password) as client:
            client.save_credentials()
            return len(await client.fetch_robots())

    n = _run(_login())
    typer.echo(f"Logged in. {n} robot(s) found.")


@app.command()
def logout() -> None:
    """Forget the saved credentials."""
    store = FileCredentialStore()
    if not store.exists():
        typer.echo("Not logged in.")
        return
    store.clear()
    typer.echo("Logged out.")


@app.command()
def robots(
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List the Litter-Robot 4 units on the account."""
    client = _ensure_client()

    async def _fetch() -> list[dict[str, object]]:
        async with client:
            return await client.fetch_robots()

    units = _run(_fetch())
    if as_json:
        _print_json(units)
        return
    if not units:
        typer.echo("No robots found.", err=True)
        raise typer.Exit(1)
    for unit in units:
        online = "online" if unit.get("isOnline") else "offline"
        typer.echo(f"  {unit.get('name') or '(unnamed)'} [{online}] {unit.get('robotStatus') or ''}")
        typer.echo(f"        SN: {unit.get('serial')}")


@app.command()
def pets(
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List the pet profiles on the account."""
    client = _ensure_client()

    async def _fetch() -> list[dict[str, object]]:
        async with client:
            return await client.fetch_pets()

    profiles = _run(_fetch())
    if as_json:
        _print_json(profiles)
        return
    if not profiles:
        typer.echo("No pets found.", err=True)
        raise typer.Exit(1)
    for pet in profiles:
        weight = pet.get("lastWeightReading") or pet.get("weight")
        typer.echo(f"  {pet.get('name')} ({pet.get('type') or 'pet'}): {weight} lbs")
        typer.echo(f"        ID: {pet.get('petId')}")


@app.command()
def watch(
    serial: str = typer.Argument(..., help="Robot serial number"),
    with_pets: bool = typer.Option(False, "--pets", help="Also print pet profile updates"),
) -> None:
    """Watch realtime state updates from one robot.

    \b
    With --pets, pet profiles are polled too and refreshed after every
    weighing reported by the robot.
    Press Ctrl+C to stop.
    """
    client = _ensure_client()
    with contextlib.suppress(KeyboardInterrupt):
        _run(_watch_async(client, serial, with_pets))


async def _watch_async(client: Client, serial: str, with_pets: bool) -> None:
    """Async implementation of the watch command."""
    is_tty = sys.stdout.isatty()
    stopped = asyncio.Event()

    def emit(label: str, text: str, color: str | None = None) -> None:
        if is_tty:
            label = typer.style(label, bold=True)
            if color:
                text = typer.style(text, fg=color)
        typer.echo(f"[{_stamp()}] {label} {text}")

    async def on_robot(state: dict[str, object], source: DataSource) -> None:
        fields = ", ".join(f"{k}={v}" for k, v in state.items() if v is not None)
        emit(serial, fields)

    async def on_pet(profile: dict[str, object], source: DataSource) -> None:
        weight = profile.get("lastWeightReading") or profile.get("weight")
        emit(str(profile.get("name")), f"weight={weight} ({source.value})", "cyan")

    def on_event(event: RealtimeEvent) -> None:
        if event.kind is EventKind.DISCONNECTED and event.detail != "closed":
            emit(event.device_id, "Disconnected, reconnecting...", "yellow")
        elif event.kind is EventKind.CONNECTED:
            emit(event.device_id, "Connected", "green")

    def on_auth_error(error: AuthenticationError) -> None:
        emit(serial, f"Session expired: {error}", "red")
        stopped.set()

    client.on_auth_error = on_auth_error
    client.realtime.add_listener(on_event)
    async with client:
        typer.echo(f"Watching {serial}... (Ctrl+C to stop)")
        await client.watch_robot(serial, on_robot)
        if with_pets:
            for profile in await client.fetch_pets():
                if profile.get("petId") is not None:
                    client.register_pet(str(profile["petId"]), on_pet)
        await stopped.wait()
