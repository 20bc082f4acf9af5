"""Tripgate CLI — bootstrap the database, manage trips, invites and grants.

Usage:
    tripgate init-db                                  # Create tables + bootstrap row
    tripgate create-trip iceland-2024 "Iceland 2024"  # Add a trip (local DB)
    tripgate sweep-challenges                         # Evict expired challenges
    tripgate status                                   # Server health + registration state
    tripgate invites                                  # List invites (admin)
    tripgate invite <trip-id>... --role editor        # Create an invite (admin)
    tripgate revoke-invite <invite-id>                # Revoke a pending invite (admin)
    tripgate grants <trip-id-or-slug>                 # Who can see a trip (admin)

Local commands talk to TRIPGATE_DATABASE_URL directly. Admin commands go
through the HTTP API at TRIPGATE_API_URL with the bearer token in
TRIPGATE_TOKEN (copy it from a signed-in admin session).
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

from tripgate import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("TRIPGATE_API_URL", DEFAULT_API_URL).rstrip("/")


def _token() -> str:
    token = os.environ.get("TRIPGATE_TOKEN")
    if not token:
        click.secho("Error: set TRIPGATE_TOKEN to an admin session token", fg="red", err=True)
        sys.exit(1)
    return token


def _client(token: Optional[str] = None) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Tripgate API."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k) or "—")[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


def _status_color(status: str) -> str:
    colors = {
        "pending": "yellow",
        "used": "green",
        "expired": "red",
        "revoked": "red",
        "viewer": "cyan",
        "editor": "magenta",
    }
    return colors.get(status, "white")


def _fail(r: httpx.Response) -> None:
    """Print the API's error detail and exit non-zero."""
    try:
        detail = r.json().get("detail", r.text)
    except ValueError:
        detail = r.text
    click.secho(f"Error ({r.status_code}): {detail}", fg="red", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="tripgate")
def main():
    """Tripgate — passkey accounts and trip access control."""


# ---------------------------------------------------------------------------
# Local database commands
# ---------------------------------------------------------------------------


@main.command("init-db")
def init_db_cmd():
    """Create tables and seed the admin bootstrap row (idempotent)."""
    from tripgate.db.engine import engine, init_db

    async def _impl():
        await init_db()
        await engine.dispose()

    _run(_impl())
    click.secho("Database ready.", fg="green")


@main.command("sweep-challenges")
def sweep_challenges():
    """Delete expired ceremony challenges now."""
    from tripgate.db.engine import async_session_factory, engine
    from tripgate.services.challenge_service import ChallengeSweeper

    async def _impl() -> int:
        removed = await ChallengeSweeper(async_session_factory).sweep_once()
        await engine.dispose()
        return removed

    removed = _run(_impl())
    click.echo(f"Removed {removed} expired challenge(s).")


@main.command("create-trip")
@click.argument("slug")
@click.argument("title")
def create_trip(slug: str, title: str):
    """Add a trip directly to the database."""
    from tripgate.db.engine import async_session_factory, engine
    from tripgate.errors import TripConflict
    from tripgate.services.trip_service import TripService

    async def _impl():
        try:
            async with async_session_factory() as db:
                return await TripService(db).create_trip(slug, title)
        finally:
            await engine.dispose()

    try:
        trip = _run(_impl())
    except (ValueError, TripConflict) as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)
    click.secho(f"Created trip {trip.slug}", fg="green")
    click.echo(f"  id: {trip.id}")


# ---------------------------------------------------------------------------
# tripgate status
# ---------------------------------------------------------------------------


@main.command()
def status():
    """Show server health and whether registration is still open."""
    _run(_status_impl())


async def _status_impl():
    async with _client() as c:
        r = await c.get("/api/v1/health")
        health = r.json()
        color = "green" if health.get("status") == "healthy" else "yellow"
        click.secho(f"Server: {health.get('status')} (v{health.get('version')})", fg=color, bold=True)
        for key in ("database", "redis"):
            click.echo(f"  {key:10s} {health.get(key)}")

        r = await c.get("/api/v1/auth/registration-status")
        if r.status_code != 200:
            _fail(r)
        if r.json()["registration_open"]:
            click.secho("\nRegistration open — the next account becomes admin.", fg="yellow")
        else:
            click.echo("\nAdmin assigned; new accounts need an invite for trip access.")


# ---------------------------------------------------------------------------
# tripgate invites / invite / revoke-invite
# ---------------------------------------------------------------------------


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include used/expired/revoked")
def invites(show_all: bool):
    """List invites."""
    _run(_invites_impl(show_all))


async def _invites_impl(show_all: bool):
    async with _client(_token()) as c:
        r = await c.get("/api/v1/invites")
        if r.status_code != 200:
            _fail(r)
        rows = r.json()

    if not show_all:
        rows = [i for i in rows if i["status"] == "pending"]
    if not rows:
        click.echo("No pending invites." if not show_all else "No invites found.")
        return

    click.secho(f"Invites ({len(rows)}):", bold=True)
    click.echo()
    for row in rows:
        row["status"] = click.style(row["status"], fg=_status_color(row["status"]))
    _print_table(rows, [
        ("Code", "code", 34),
        ("Role", "role", 7),
        ("Trips", "trip_count", 5),
        ("Email", "email", 28),
        ("Status", "status", 18),
        ("Expires", "expires_at", 20),
    ])


@main.command()
@click.argument("trip_ids", nargs=-1, required=True)
@click.option("--role", "-r", type=click.Choice(["viewer", "editor"]), default="viewer")
@click.option("--email", "-e", help="Only this email may redeem the invite")
@click.option("--days", "-d", type=int, help="Days until the invite expires")
@click.option("--json", "as_json", is_flag=True, help="Print the raw API response")
def invite(trip_ids: tuple[str, ...], role: str, email: Optional[str],
           days: Optional[int], as_json: bool):
    """Create an invite granting ROLE on TRIP_IDS."""
    _run(_invite_impl(list(trip_ids), role, email, days, as_json))


async def _invite_impl(trip_ids: list[str], role: str, email: Optional[str],
                       days: Optional[int], as_json: bool):
    body: dict = {"role": role, "trip_ids": trip_ids}
    if email:
        body["email"] = email
    if days:
        body["expires_in_days"] = days

    async with _client(_token()) as c:
        r = await c.post("/api/v1/invites", json=body)
        if r.status_code != 201:
            _fail(r)
        created = r.json()

    if as_json:
        click.echo(_pretty_json(created))
        return
    click.secho("Invite created", fg="green", bold=True)
    click.echo(f"  Code:    {created['code']}")
    click.echo(f"  Role:    {created['role']}")
    click.echo(f"  Trips:   {len(created['trip_ids'])}")
    click.echo(f"  Expires: {created['expires_at']}")


@main.command("revoke-invite")
@click.argument("invite_id")
def revoke_invite(invite_id: str):
    """Revoke a pending invite."""
    _run(_revoke_impl(invite_id))


async def _revoke_impl(invite_id: str):
    async with _client(_token()) as c:
        r = await c.delete(f"/api/v1/invites/{invite_id}")
        if r.status_code != 200:
            _fail(r)
    click.secho(f"Invite {invite_id} revoked.", fg="green")


# ---------------------------------------------------------------------------
# tripgate grants
# ---------------------------------------------------------------------------


@main.command()
@click.argument("trip_ref")
def grants(trip_ref: str):
    """List who has access to a trip (id or slug)."""
    _run(_grants_impl(trip_ref))


async def _grants_impl(trip_ref: str):
    async with _client(_token()) as c:
        r = await c.get(f"/api/v1/trips/{trip_ref}/access")
        if r.status_code != 200:
            _fail(r)
        rows = r.json()

    if not rows:
        click.echo("No grants on this trip (admins always have access).")
        return
    click.secho(f"Grants ({len(rows)}):", bold=True)
    click.echo()
    _print_table(rows, [
        ("Email", "email", 30),
        ("Name", "display_name", 20),
        ("Role", "role", 7),
        ("Granted", "granted_at", 20),
        ("Grant ID", "id", 36),
    ])


if __name__ == "__main__":
    main()
