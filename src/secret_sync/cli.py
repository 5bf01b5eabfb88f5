# ABOUTME: Operator command line: run the receiver or daemon, inspect devices and status
# ABOUTME: Also probes a running receiver end to end with a signed manual sync

"""
secret-sync command line.

    secret-sync receiver              run the webhook receiver
    secret-sync daemon                run the device sync daemon
    secret-sync devices list          show the device registry
    secret-sync devices add ...       register a device by hand
    secret-sync status                show the last local sync outcome
    secret-sync check                 probe a running receiver
"""

from __future__ import annotations

import asyncio
import json
import sys

import click
import httpx
import structlog
from pydantic import ValidationError

from secret_sync import __version__
from secret_sync.config import SyncSettings, load_settings, resolve_device_id
from secret_sync.daemon import run_daemon
from secret_sync.models import Device, SyncOutcome
from secret_sync.receiver import run_receiver
from secret_sync.utils.logging import configure_logging
from secret_sync.utils.safety import signed_headers
from secret_sync.utils.storage import FileDeviceRegistry, FileSyncStatusStore
from secret_sync.utils.vault import AuthenticationError

logger = structlog.get_logger(__name__)


def _settings(ctx: click.Context) -> SyncSettings:
    settings = ctx.obj.get("settings")
    if settings is None:
        try:
            settings = load_settings()
        except ValidationError as e:
            raise click.ClickException(f"Invalid configuration:\n{e}") from e
        configure_logging(level=settings.log_level, json_output=settings.json_logs)
        ctx.obj["settings"] = settings
    return settings


@click.group()
@click.version_option(version=__version__, prog_name="secret-sync")
@click.pass_context
def main(ctx: click.Context) -> None:
    """Bidirectional secret sync between a vault and a fleet of devices."""
    ctx.ensure_object(dict)


@main.command()
@click.pass_context
def receiver(ctx: click.Context) -> None:
    """Run the webhook receiver."""
    settings = _settings(ctx)
    run_receiver(settings)


@main.command()
@click.pass_context
def daemon(ctx: click.Context) -> None:
    """Run the device sync daemon."""
    settings = _settings(ctx)
    try:
        asyncio.run(run_daemon(settings))
    except AuthenticationError:
        logger.error("daemon_startup_failed", reason="vault not authenticated")
        account = settings.vault.account or "<account>"
        click.echo("Vault CLI is not signed in.", err=True)
        click.echo(f"Run: eval $(op signin --account {account})", err=True)
        sys.exit(1)


# =============================================================================
# DEVICES
# =============================================================================


@main.group()
def devices() -> None:
    """Inspect and edit the device registry."""


@devices.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print the raw registry records.")
@click.pass_context
def list_devices(ctx: click.Context, as_json: bool) -> None:
    """List registered devices."""
    registry = FileDeviceRegistry(_settings(ctx).registry_path)
    records = registry.list_devices()

    if as_json:
        click.echo(json.dumps([d.to_dict() for d in records], indent=2))
        return
    if not records:
        click.echo("No devices registered.")
        return

    for device in records:
        endpoint = device.sync_endpoint or "(pull-only)"
        click.echo(f"{device.id}  {device.hostname}  {device.platform}/{device.architecture}  {endpoint}")
        click.echo(f"    last seen {device.last_seen.isoformat()}")


@devices.command("add")
@click.option("--id", "device_id", required=True, help="Device id.")
@click.option("--hostname", required=True, help="Device hostname.")
@click.option("--platform", "platform_name", required=True, help="Operating system, e.g. darwin or linux.")
@click.option("--arch", default="", help="CPU architecture.")
@click.option("--sync-url", default=None, help="Receiver URL; omit for a pull-only device.")
@click.pass_context
def add_device(
    ctx: click.Context,
    device_id: str,
    hostname: str,
    platform_name: str,
    arch: str,
    sync_url: str | None,
) -> None:
    """Register a device by hand."""
    registry = FileDeviceRegistry(_settings(ctx).registry_path)
    stored = registry.upsert_device(
        Device(
            id=device_id,
            hostname=hostname,
            platform=platform_name,
            architecture=arch,
            sync_endpoint=sync_url,
            added_manually=True,
        )
    )
    click.echo(f"Registered {stored.id}")


# =============================================================================
# STATUS AND CHECK
# =============================================================================


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the last local sync outcome."""
    settings = _settings(ctx)
    current = asyncio.run(FileSyncStatusStore(settings.status_path).read())
    if current is None:
        click.echo("No sync has run yet.")
        sys.exit(1)
    click.echo(json.dumps(current.to_dict(), indent=2))
    if current.last_sync_outcome == SyncOutcome.FAILURE:
        sys.exit(1)


@main.command()
@click.option("--url", default=None, help="Receiver base URL (default: this device's).")
@click.option("--timeout", default=30.0, show_default=True, help="Seconds per request.")
@click.pass_context
def check(ctx: click.Context, url: str | None, timeout: float) -> None:
    """Probe a running receiver: health, status and a signed manual sync."""
    settings = _settings(ctx)
    base = (url or settings.sync_url or f"http://localhost:{settings.port}").rstrip("/")
    if base.endswith("/sync"):
        base = base[: -len("/sync")]
    device_id = resolve_device_id(settings)
    failures = 0

    with httpx.Client(base_url=base, timeout=timeout) as client:
        try:
            health = client.get("/health")
        except httpx.HTTPError as e:
            click.echo(f"FAIL  health: {e}")
            sys.exit(1)
        ok = health.status_code == 200
        failures += not ok
        click.echo(f"{'OK  ' if ok else 'FAIL'}  health: HTTP {health.status_code}")

        current = client.get("/status")
        click.echo(f"INFO  status: HTTP {current.status_code}")

        body = json.dumps({"source": device_id, "deviceId": device_id}).encode()
        response = client.post("/sync", content=body, headers=signed_headers(settings.signing_secret, body))
        ok = response.status_code == 200
        failures += not ok
        click.echo(f"{'OK  ' if ok else 'FAIL'}  sync: HTTP {response.status_code}")
        if not ok:
            click.echo(response.text, err=True)

    sys.exit(1 if failures else 0)
