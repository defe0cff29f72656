"""CLI for the budgetsync server and sync client."""
import asyncio
import json
from typing import Optional

import click

from budgetsync.client.local_store import JsonFileLocalStore
from budgetsync.client.migration import migrate_local_to_server
from budgetsync.client.sync_client import SyncClient
from budgetsync.client.transport import HttpTransport
from budgetsync.errors import SyncError
from budgetsync.logging_hardening import setup_logging
from budgetsync.settings import Settings, get_settings


def build_sync_client(settings: Settings, base_url: Optional[str] = None) -> SyncClient:
    transport = HttpTransport(
        base_url or settings.client_base_url,
        endpoint=settings.client_endpoint,
        timeout=settings.client_request_timeout,
    )
    return SyncClient(
        transport,
        JsonFileLocalStore(settings.client_local_store_path),
        cache_ttl=settings.client_cache_ttl_seconds,
        request_timeout=settings.client_request_timeout,
        save_attempts=settings.client_save_attempts,
        retry_base_delay=settings.client_retry_base_delay,
        throttle_window=settings.client_throttle_window,
    )


@click.group()
@click.option("--base-url", default=None, help="Server URL (defaults to CLIENT_BASE_URL)")
@click.pass_context
def cli(ctx: click.Context, base_url: Optional[str]):
    """budgetsync CLI."""
    settings = get_settings()
    setup_logging(settings.log_level)
    ctx.obj = {"settings": settings, "base_url": base_url}


@cli.command()
@click.option("--host", default="127.0.0.1")
@click.option("--port", default=8000, type=int)
def serve(host: str, port: int):
    """Run the sync server."""
    import uvicorn
    uvicorn.run("budgetsync.main:app", host=host, port=port)


@cli.command()
@click.argument("mobile")
@click.option("--data-type", default="user", show_default=True)
@click.pass_obj
def fetch(obj: dict, mobile: str, data_type: str):
    """Fetch and print one data slot."""

    async def run():
        async with build_sync_client(obj["settings"], obj["base_url"]) as client:
            return await client.fetch(mobile, data_type)

    try:
        payload = asyncio.run(run())
    except SyncError as e:
        raise click.ClickException(f"{e.code}: {e.message}")
    if payload is None:
        click.echo("No data found", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@cli.command()
@click.argument("mobile")
@click.argument("data")
@click.option("--data-type", default="user", show_default=True)
@click.pass_obj
def save(obj: dict, mobile: str, data: str, data_type: str):
    """Save DATA (a JSON document, or @file) into one data slot."""
    if data.startswith("@"):
        with open(data[1:], "r", encoding="utf-8") as f:
            data = f.read()
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="DATA")

    async def run():
        async with build_sync_client(obj["settings"], obj["base_url"]) as client:
            return await client.save(mobile, data_type, payload)

    try:
        ack = asyncio.run(run())
    except SyncError as e:
        raise click.ClickException(f"{e.code}: {e.message}")
    click.echo(json.dumps(ack, indent=2))


@cli.command()
@click.argument("mobile")
@click.option("--force", is_flag=True, help="Migrate even if already marked complete")
@click.pass_obj
def migrate(obj: dict, mobile: str, force: bool):
    """Upload all locally stored data for MOBILE to the server."""

    async def run():
        async with build_sync_client(obj["settings"], obj["base_url"]) as client:
            return await migrate_local_to_server(client, mobile, force=force)

    report = asyncio.run(run())
    if report.skipped:
        click.echo("Already migrated (use --force to repeat)")
        return
    click.echo(f"✓ Migrated: {', '.join(report.migrated) or 'nothing'}")
    for data_type, code in report.failed.items():
        click.echo(f"✗ {data_type}: {code}", err=True)
    if report.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
