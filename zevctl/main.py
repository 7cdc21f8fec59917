"""Main CLI application for zevctl."""

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import click
from rich.console import Console
from rich.live import Live
from rich.prompt import Confirm, Prompt
from rich.text import Text

from zevops import __version__
from zevops.classifier import LogCategory, count_by_category, filter_entries
from zevops.client import DeviceClient
from zevops.config import ConsoleConfig
from zevops.errors import ConsoleError
from zevops.logger import get_logger, setup_logging
from zevops.session import ConsoleSession

from .dashboard import (
    render_category_counts,
    render_collector_table,
    render_health,
    render_health_table,
    render_logs,
    render_statistics,
    render_update_availability,
    render_update_progress,
)

console = Console()
logger = get_logger(__name__)

NOTIFY_STYLES = {
    "success": "green",
    "error": "red",
    "warning": "yellow",
    "info": "cyan",
}

ClientFactory = Callable[[ConsoleConfig], DeviceClient]


def notify(level: str, message: str) -> None:
    style = NOTIFY_STYLES.get(level, "white")
    console.print(f"[{style}]{message}[/{style}]")


def ask_confirmation(prompt: str) -> bool:
    return Confirm.ask(prompt, default=False, console=console)


def always_yes(prompt: str) -> bool:
    console.print(f"{prompt} [dim](confirmed by --yes)[/dim]")
    return True


def _config(ctx: click.Context) -> ConsoleConfig:
    return ctx.obj["config"]


def _client(ctx: click.Context) -> DeviceClient:
    factory: ClientFactory = ctx.obj.get("client_factory") or DeviceClient
    return factory(_config(ctx))


def _session(ctx: click.Context, yes: bool = False, **kwargs) -> ConsoleSession:
    return ConsoleSession(
        config=_config(ctx),
        client=_client(ctx),
        repository=ctx.obj.get("repository"),
        confirm=always_yes if yes else ask_confirmation,
        notify=notify,
        **kwargs,
    )


async def _follow_reload(session: ConsoleSession, timeout: float) -> bool:
    """Wait for update polling and the scheduled reload, then report the device state."""
    reloads = session.reload_count
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    maintenance = session.maintenance

    def view():
        if maintenance.update_progress is not None:
            return render_update_progress(maintenance.update_progress)
        return Text("Waiting for the device to come back...", style="cyan")

    with Live(view(), console=console, transient=True) as live:
        while maintenance.update_polling or maintenance.reload_pending or session.reloading:
            if loop.time() > deadline:
                break
            live.update(view())
            await asyncio.sleep(0.25)

    if maintenance.update_progress is not None:
        console.print(render_update_progress(maintenance.update_progress))
    if session.reload_count == reloads:
        return False
    if session.online:
        console.print("[green]✓ Device is back online[/green]")
    else:
        console.print("[yellow]⚠ Device has not answered yet; check again with 'zevctl status'[/yellow]")
    return True


@click.group()
@click.version_option(version=__version__)
@click.option("--url", "device_url", default=None, help="Device base URL (default: $ZEV_DEVICE_URL)")
@click.option("--token", default=None, help="Bearer token (default: $ZEV_TOKEN or the token file)")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr")
@click.pass_context
def cli(ctx, device_url: Optional[str], token: Optional[str], verbose: bool):
    """ZEV Console - Device health, audit logs and maintenance."""
    ctx.ensure_object(dict)
    overrides = {}
    if device_url:
        overrides["device_url"] = device_url
    if token:
        overrides["token"] = token
    if verbose:
        overrides["log_level"] = "DEBUG"
    config = ctx.obj.get("config") or ConsoleConfig(**overrides)
    if overrides and "config" in ctx.obj:
        config = config.model_copy(update=overrides)
    ctx.obj["config"] = config
    setup_logging("zevctl", config.log_level)
    logger.debug("Using device", api_base=config.api_base)


@cli.command()
@click.pass_context
def status(ctx):
    """Show device health, collector state and statistics."""
    client = _client(ctx)

    async def run() -> bool:
        ok = True
        async with client:
            try:
                device = await client.get_status()
                console.print(render_health_table(device.system_health))
                console.print(render_collector_table(device))
            except ConsoleError as e:
                console.print(f"[red]✗ Device unreachable: {e}[/red]")
                return False

            try:
                console.print(render_statistics(await client.get_statistics()))
            except ConsoleError as e:
                console.print(f"[yellow]⚠ Statistics unavailable: {e}[/yellow]")
                ok = False

            try:
                console.print(render_update_availability(await client.check_for_updates()))
            except ConsoleError as e:
                console.print(f"[yellow]⚠ Update check failed: {e}[/yellow]")
        return ok

    if not asyncio.run(run()):
        sys.exit(1)


@cli.command()
@click.option("--watch", is_flag=True, help="Continuously monitor health")
@click.option("--interval", type=float, default=None, help="Poll interval in seconds (with --watch)")
@click.pass_context
def health(ctx, watch: bool, interval: Optional[float]):
    """Display device health and the 24h history."""
    if interval is not None:
        if interval <= 0:
            raise click.BadParameter("must be positive", param_hint="--interval")
        ctx.obj["config"] = _config(ctx).model_copy(update={"health_poll_interval": interval})
    session = _session(ctx)

    async def run() -> bool:
        await session.start()
        try:
            if not watch:
                console.print(render_health(session))
                return session.is_live

            with Live(render_health(session), console=console, refresh_per_second=1) as live:
                while True:
                    live.update(render_health(session))
                    await asyncio.sleep(1)
        finally:
            await session.stop()

    try:
        ok = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[cyan]Stopped watching[/cyan]")
        return
    if not ok:
        console.print("[red]✗ Device is offline[/red]")
        sys.exit(1)


@cli.command()
@click.option("--limit", default=100, show_default=True, help="Number of entries to fetch")
@click.option("--since", type=click.DateTime(), default=None, help="Only entries after this time")
@click.option(
    "--category", "-c", "categories", multiple=True,
    type=click.Choice([c.value for c in LogCategory]),
    help="Only show these categories (repeatable)",
)
@click.option("--search", "-s", default=None, help="Text to look for in action, details or IP")
@click.pass_context
def logs(ctx, limit: int, since: Optional[datetime], categories, search: Optional[str]):
    """Show the device audit log, classified by category."""
    client = _client(ctx)

    async def run():
        async with client:
            return await client.get_logs(limit=limit, since=since)

    try:
        entries = asyncio.run(run())
    except ConsoleError as e:
        console.print(f"[red]✗ Failed to load logs: {e}[/red]")
        sys.exit(1)

    console.print(render_category_counts(count_by_category(entries)))
    shown = filter_entries(entries, [LogCategory(c) for c in categories], search)
    if not shown:
        console.print("[dim]No matching log entries[/dim]")
        return
    console.print(render_logs(shown))
    if len(shown) != len(entries):
        console.print(f"[dim]{len(shown)} of {len(entries)} entries shown[/dim]")


@cli.command()
@click.option("--output", "-o", type=click.Path(path_type=Path), default=None, help="Directory or file for the backup")
@click.pass_context
def backup(ctx, output: Optional[Path]):
    """Create a database backup on the device and download it."""
    session = _session(ctx)

    async def run() -> Optional[Path]:
        async with session.client:
            return await session.maintenance.backup(output)

    target = asyncio.run(run())
    if target is None:
        sys.exit(1)
    console.print(f"[green]✓[/green] Saved to {target}")


@cli.command()
@click.argument("backup_file", type=click.Path(path_type=Path))
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--wait/--no-wait", default=True, help="Wait for the device to come back")
@click.pass_context
def restore(ctx, backup_file: Path, yes: bool, wait: bool):
    """Restore the device database from a backup file."""
    session = _session(ctx, yes=yes, check_updates_on_start=False)
    timeout = session.config.restore_reload_delay + 60

    async def run() -> bool:
        await session.client.connect()
        try:
            if not await session.maintenance.restore(backup_file):
                return False
            if wait:
                await _follow_reload(session, timeout)
            return True
        finally:
            await session.stop()

    if not asyncio.run(run()):
        sys.exit(1)


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--wait/--no-wait", default=True, help="Wait for the device to come back")
@click.pass_context
def reboot(ctx, yes: bool, wait: bool):
    """Reboot the device."""
    session = _session(ctx, yes=yes, check_updates_on_start=False)
    timeout = session.config.reboot_reload_delay + 120

    async def run() -> bool:
        await session.client.connect()
        try:
            if not await session.maintenance.reboot():
                return False
            if wait:
                await _follow_reload(session, timeout)
            return True
        finally:
            await session.stop()

    if not asyncio.run(run()):
        sys.exit(1)


@cli.group()
def update():
    """Check for and apply device software updates."""


@update.command("check")
@click.pass_context
def update_check(ctx):
    """Ask the device whether an update is available."""
    session = _session(ctx)

    async def run():
        async with session.client:
            return await session.maintenance.check_for_updates()

    availability = asyncio.run(run())
    if availability is None:
        console.print("[red]✗ Update check failed[/red]")
        sys.exit(1)
    console.print(render_update_availability(availability))


@update.command("apply")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--wait/--no-wait", default=True, help="Follow progress until the device is back")
@click.pass_context
def update_apply(ctx, yes: bool, wait: bool):
    """Apply the available update and follow its progress."""
    session = _session(ctx, yes=yes, check_updates_on_start=False)
    config = session.config
    timeout = config.update_reconnect_reload_delay + 600

    async def run() -> bool:
        await session.client.connect()
        try:
            availability = await session.maintenance.check_for_updates()
            if availability is not None:
                console.print(render_update_availability(availability))
                if not availability.updates_available:
                    return True
            if not await session.maintenance.apply_update():
                return False
            if wait:
                await _follow_reload(session, timeout)
                progress = session.maintenance.update_progress
                if progress is not None and progress.error:
                    return False
            return True
        finally:
            await session.stop()

    if not asyncio.run(run()):
        sys.exit(1)


@cli.command("factory-reset")
@click.option("--wait/--no-wait", default=True, help="Wait for the device to come back")
@click.pass_context
def factory_reset(ctx, wait: bool):
    """Wipe all device data (a backup is taken first)."""
    session = _session(ctx, check_updates_on_start=False)
    maintenance = session.maintenance
    timeout = session.config.factory_reset_reload_delay + 60

    console.print("[bold red]This deletes all users, buildings, meters, chargers and invoices.[/bold red]")
    challenge = maintenance.open_factory_reset()
    answer = Prompt.ask(challenge.question, console=console)
    if not maintenance.answer_captcha(answer):
        maintenance.close_factory_reset()
        console.print("[red]✗ Wrong answer, nothing was reset[/red]")
        sys.exit(1)

    async def run() -> bool:
        await session.client.connect()
        try:
            result = await maintenance.confirm_factory_reset()
            if result is None:
                return False
            if wait:
                await _follow_reload(session, timeout)
            return True
        finally:
            await session.stop()

    if not asyncio.run(run()):
        sys.exit(1)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
