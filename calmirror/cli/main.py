"""Command-line interface for calmirror."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from calmirror import __version__
from calmirror.client import MirrorClient, PageVisibility, PollScheduler
from calmirror.core.config import AppConfig, load_config
from calmirror.core.exceptions import CalMirrorError
from calmirror.core.models import User
from calmirror.core.reconcile import ReconciliationEngine
from calmirror.core.subscriptions import SubscriptionManager
from calmirror.sources.google import google_client_factory
from calmirror.utils.db import EventStore


app = typer.Typer(
    name="calmirror",
    help="Mirror a remote calendar into a local store via push notifications and polling",
    add_completion=False,
)

# Shared by commands and the log handler so output interleaves cleanly
console = Console()


def setup_logging(log_level: str) -> None:
    """Route CLI log records through the rich console."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file",
        exists=True,
        dir_okay=False,
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
) -> None:
    """calmirror - keep a local mirror of your calendar."""
    ctx.ensure_object(dict)
    cfg = load_config(config_file)
    ctx.obj["config"] = cfg

    if log_level == "INFO" and cfg.general.log_level != "INFO":
        log_level = cfg.general.log_level
    setup_logging(log_level)


def _store(cfg: AppConfig) -> EventStore:
    return EventStore(cfg.store_db_path)


async def _load_user(store: EventStore, email: str) -> User:
    await store.initialize()
    user = await store.get_user(email.strip().lower())
    if user is None:
        console.print(f"[red]Unknown user: {email}[/red]")
        console.print("[dim]Add one with 'calmirror users add EMAIL --token TOKEN'[/dim]")
        raise typer.Exit(1)
    return user


def _subscriptions(cfg: AppConfig, store: EventStore) -> SubscriptionManager:
    return SubscriptionManager(
        store,
        google_client_factory(cfg.google),
        channel_ttl=timedelta(hours=cfg.webhook.channel_ttl_hours),
    )


def _run(coro, failure: str):
    """Run a coroutine, turning sync errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except CalMirrorError as e:
        console.print(f"[red]{failure}: {e.message}[/red]")
        raise typer.Exit(1) from e


@app.command()
def version() -> None:
    """Print the calmirror, Python and platform versions."""
    import platform

    table = Table(title="calmirror Version Information")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", platform.python_version())
    table.add_row("Platform", platform.platform())

    console.print(table)


@app.command()
def config(
    ctx: typer.Context,
    show: bool = typer.Option(
        False,
        "--show",
        "-s",
        help="Show current configuration",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        "-i",
        help="Create a default configuration file",
    ),
) -> None:
    """Show or initialise the settings file."""
    cfg = ctx.obj["config"]

    if init:
        config_path = cfg.general.config_file or cfg.default_config_path

        if config_path.exists():
            console.print(f"[yellow]Config file already exists:[/yellow] {config_path}")
            overwrite = typer.confirm("Overwrite existing config?")
            if not overwrite:
                console.print("[dim]Config creation cancelled[/dim]")
                raise typer.Exit(0)

        cfg.save_to_file(config_path)
        console.print(f"[green]✓ Config file created:[/green] {config_path}")
        console.print("[yellow]Set webhook.callback_url before opening channels.[/yellow]")
        return

    if show:
        table = Table(title="calmirror Configuration")
        table.add_column("Setting", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        table.add_row("Data Directory", str(cfg.general.data_dir))
        table.add_row("Config File", str(cfg.general.config_file or "Not set"))
        table.add_row("Log Level", cfg.general.log_level)
        table.add_row("Event Store", str(cfg.store_db_path))

        table.add_row("", "")
        table.add_row("[bold]Google[/bold]", "")
        table.add_row("Calendar", cfg.google.calendar_id)
        table.add_row("Page Size", str(cfg.google.page_size))
        table.add_row("Request Timeout", f"{cfg.google.request_timeout}s")

        table.add_row("", "")
        table.add_row("[bold]Webhook[/bold]", "")
        table.add_row("Callback URL", cfg.webhook.callback_url or "Not set")
        table.add_row("Channel TTL", f"{cfg.webhook.channel_ttl_hours}h")
        table.add_row("Reconcile Mode", cfg.webhook.reconcile_mode)
        table.add_row("Prune Policy", cfg.sync.prune_policy)

        table.add_row("", "")
        table.add_row("[bold]Polling[/bold]", "")
        table.add_row("Enabled", "✓" if cfg.polling.enabled else "✗")
        table.add_row("Server", cfg.polling.server_url)
        table.add_row("Interval", f"{cfg.polling.interval_seconds}s")

        console.print(table)
    else:
        console.print(
            f"[yellow]Configuration file:[/yellow] {cfg.general.config_file or 'Not set'}"
        )
        console.print(f"[yellow]Data directory:[/yellow] {cfg.general.data_dir}")
        console.print("\n[dim]Use --show to display full configuration[/dim]")
        console.print("[dim]Use --init to create a default config file[/dim]")


# Users subcommand group
users_app = typer.Typer(help="Manage mirrored users")
app.add_typer(users_app, name="users")


@users_app.command("list")
def users_list(ctx: typer.Context) -> None:
    """List users and their push channels."""
    cfg = ctx.obj["config"]

    async def run_list():
        store = _store(cfg)
        await store.initialize()
        users = await store.list_users()

        if not users:
            console.print("[yellow]No users yet[/yellow]")
            return

        table = Table(title="Users")
        table.add_column("Email", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Credential", style="green")
        table.add_column("Channel", style="dim")
        table.add_column("Expires")
        table.add_column("Events", justify="right")

        for user in users:
            count = await store.count_mirrored_events(user.email)
            table.add_row(
                user.email,
                user.name or "",
                "✓" if user.has_credential else "✗",
                user.channel.channel_id if user.channel else "-",
                user.channel.expiration.strftime("%Y-%m-%d %H:%M") if user.channel else "-",
                str(count),
            )

        console.print(table)

    _run(run_list(), "Failed to list users")


@users_app.command("add")
def users_add(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email"),
    token: str = typer.Option(..., "--token", "-t", help="Bearer access token"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
) -> None:
    """Store or replace a user's access token."""
    cfg = ctx.obj["config"]

    async def run_add():
        store = _store(cfg)
        await store.initialize()
        return await store.upsert_user(email.strip().lower(), access_token=token, name=name)

    user = _run(run_add(), "Failed to store credential")
    console.print(f"[green]✓ Credential stored for {user.email}[/green]")


@app.command()
def sync(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email"),
) -> None:
    """Reconcile a user's upcoming events into the mirror."""
    cfg = ctx.obj["config"]

    async def run_sync():
        store = _store(cfg)
        user = await _load_user(store, email)
        engine = ReconciliationEngine(
            store,
            google_client_factory(cfg.google),
            prune_policy=cfg.sync.prune_policy,
            page_size=cfg.google.page_size,
        )
        return await engine.reconcile(user)

    console.print(f"[cyan]Reconciling calendar for {email}...[/cyan]")
    result = _run(run_sync(), "Sync failed")

    table = Table(title="Sync Results")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Snapshot", str(result.snapshot_size))
    table.add_row("Merged", str(result.merged_count))
    table.add_row("Skipped", str(result.skipped_count))
    table.add_row("Pruned", str(result.pruned_count))
    console.print(table)

    if result.skipped_ids:
        console.print(f"[yellow]Skipped events: {', '.join(result.skipped_ids)}[/yellow]")


@app.command()
def subscribe(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email"),
    callback: Optional[str] = typer.Option(
        None, "--callback", help="Public https:// callback URL (defaults to webhook.callback_url)"
    ),
) -> None:
    """Open a push channel for a user, replacing the previous one."""
    cfg = ctx.obj["config"]
    callback_address = callback or cfg.webhook.callback_url
    if not callback_address:
        console.print("[red]No callback URL configured[/red]")
        console.print("[dim]Set webhook.callback_url or pass --callback[/dim]")
        raise typer.Exit(1)

    async def run_subscribe():
        store = _store(cfg)
        user = await _load_user(store, email)
        return await _subscriptions(cfg, store).rotate(user, callback_address)

    channel = _run(run_subscribe(), "Failed to open channel")
    console.print(f"[green]✓ Channel open:[/green] {channel.channel_id}")
    console.print(f"[dim]Resource: {channel.resource_id}[/dim]")
    console.print(f"[dim]Expires: {channel.expiration.isoformat()}[/dim]")


@app.command()
def unsubscribe(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email"),
) -> None:
    """Stop a user's push channel."""
    cfg = ctx.obj["config"]

    async def run_unsubscribe():
        store = _store(cfg)
        user = await _load_user(store, email)
        if user.channel is None:
            return False
        await _subscriptions(cfg, store).close(user)
        return True

    if _run(run_unsubscribe(), "Failed to close channel"):
        console.print(f"[green]✓ Channel closed for {email}[/green]")
    else:
        console.print(f"[yellow]{email} has no open channel[/yellow]")


@app.command()
def events(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email"),
    show_all: bool = typer.Option(False, "--all", "-a", help="Include past events"),
) -> None:
    """List a user's mirrored events."""
    cfg = ctx.obj["config"]

    async def run_events():
        store = _store(cfg)
        user = await _load_user(store, email)
        since = None if show_all else datetime.now(timezone.utc)
        return await store.list_mirrored_events(user.email, since=since)

    mirrored = _run(run_events(), "Failed to list events")
    if not mirrored:
        console.print("[yellow]No mirrored events[/yellow]")
        console.print(f"[dim]Run 'calmirror sync {email}' first[/dim]")
        return

    table = Table(title=f"Mirrored events for {email}")
    table.add_column("Start", style="cyan", no_wrap=True)
    table.add_column("End", no_wrap=True)
    table.add_column("Title", style="green")
    table.add_column("Location")
    table.add_column("ID", style="dim")

    for event in mirrored:
        table.add_row(
            event.start_time.strftime("%Y-%m-%d %H:%M"),
            event.end_time.strftime("%Y-%m-%d %H:%M"),
            event.title,
            event.location or "",
            event.remote_event_id,
        )

    console.print(table)
    console.print(f"\n[dim]Total: {len(mirrored)} events[/dim]")


@app.command()
def watch(
    ctx: typer.Context,
    email: Optional[str] = typer.Option(None, "--email", "-e", help="User email (defaults to polling.user_email)"),
    server: Optional[str] = typer.Option(None, "--server", help="Server URL (defaults to polling.server_url)"),
    interval: Optional[float] = typer.Option(None, "--interval", help="Poll interval in seconds"),
) -> None:
    """Poll the server's reconciliation endpoint until interrupted."""
    cfg = ctx.obj["config"]
    user_email = email or cfg.polling.user_email
    if not user_email:
        console.print("[red]No user email given[/red]")
        console.print("[dim]Pass --email or set polling.user_email[/dim]")
        raise typer.Exit(1)

    server_url = server or cfg.polling.server_url
    poll_interval = interval or cfg.polling.interval_seconds

    async def run_watch():
        async with MirrorClient(server_url, user_email, user_header=cfg.api.user_header) as client:

            async def tick():
                if await client.refresh():
                    console.print(
                        f"[green]{client.last_synced_at:%H:%M:%S}[/green] "
                        f"{len(client.events)} upcoming events"
                    )
                else:
                    console.print(f"[yellow]{client.notices[-1]}[/yellow]")

            scheduler = PollScheduler(
                tick,
                poll_interval,
                enabled=cfg.polling.enabled,
                visibility=PageVisibility(),
            )
            await tick()
            scheduler.start()
            try:
                await asyncio.Event().wait()
            finally:
                scheduler.dispose()

    console.print(Panel.fit(
        f"[bold cyan]Watching calendar for {user_email}[/bold cyan]\n\n"
        f"[white]{server_url} every {poll_interval}s[/white]",
        border_style="cyan"
    ))
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    try:
        asyncio.run(run_watch())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped watching[/yellow]")


@app.command()
def serve(
    ctx: typer.Context,
    host: Annotated[Optional[str], typer.Option("--host", "-h", help="Host to bind to")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Port to bind to")] = None,
    reload: Annotated[bool, typer.Option("--reload", help="Enable auto-reload (development)")] = False,
) -> None:
    """Start the calmirror API server.

    Examples:
        # Start server on the configured host and port
        calmirror serve

        # Start on specific host and port
        calmirror serve --host 0.0.0.0 --port 8080
    """
    import uvicorn

    cfg = ctx.obj["config"]
    host = host or cfg.api.host
    port = port or cfg.api.port

    console.print(Panel.fit(
        f"[bold cyan]calmirror API Server[/bold cyan]\n\n"
        f"[white]Starting server on {host}:{port}[/white]",
        border_style="cyan"
    ))

    try:
        console.print(f"[green]Server running at: http://{host}:{port}[/green]")
        console.print(f"[dim]API docs: http://{host}:{port}/api/docs[/dim]")
        console.print("[dim]Press Ctrl+C to stop[/dim]\n")

        uvicorn.run(
            "calmirror.api.app:create_app",
            factory=True,
            host=host,
            port=port,
            reload=reload,
            log_level="info",
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")


if __name__ == "__main__":
    app()
