"""Rich renderables for the console screens."""

from datetime import datetime, timezone
from statistics import mean
from typing import Dict, Iterable, List, Optional, Sequence

from rich.console import Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from zevops.classifier import CATEGORY_STYLES, LogCategory, classify
from zevops.models import (
    DeviceStatus,
    HealthPoint,
    HealthSample,
    LogEntry,
    Statistics,
    UpdateAvailability,
    UpdatePhase,
    UpdateProgress,
)
from zevops.session import ConsoleSession

SPARK_CHARS = "▁▂▃▄▅▆▇█"


def format_bytes(value: int) -> str:
    size = float(value)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} TB"


def format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def percent_color(percent: float) -> str:
    return "red" if percent > 90 else "yellow" if percent > 80 else "green"


def sparkline(values: Sequence[float], width: int = 60) -> str:
    """Block-character sparkline of the last ``width`` values on a 0-100 scale."""
    values = list(values)[-width:]
    if not values:
        return ""
    top = len(SPARK_CHARS) - 1
    return "".join(SPARK_CHARS[min(top, int(v / 100 * top + 0.5))] for v in values)


def render_health_table(sample: Optional[HealthSample]) -> Table:
    table = Table(title="System", show_header=False, box=None)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    if sample is None:
        table.add_row("Health", "[dim]no data[/dim]")
        return table

    for label, percent, used, total in (
        ("CPU", sample.cpu_percent, None, None),
        ("Memory", sample.memory_percent, sample.memory_used_bytes, sample.memory_total_bytes),
        ("Disk", sample.disk_percent, sample.disk_used_bytes, sample.disk_total_bytes),
    ):
        color = percent_color(percent)
        value = f"[{color}]{percent:.1f}%[/{color}]"
        if total:
            value += f"  ({format_bytes(used)} / {format_bytes(total)})"
        table.add_row(label, value)

    table.add_row("Temperature", f"{sample.temperature_celsius:.1f}°C" if sample.has_temperature else "N/A")
    table.add_row("Uptime", sample.uptime_label or "-")
    table.add_row("Updated", format_time(sample.timestamp))
    return table


def render_collector_table(status: Optional[DeviceStatus]) -> Table:
    table = Table(title="Collector", show_header=False, box=None)
    table.add_column("Item", style="bold")
    table.add_column("Value")
    if status is None:
        table.add_row("Collector", "[dim]no data[/dim]")
        return table

    table.add_row("Meters", f"{status.active_meters} / {status.total_meters} active")
    table.add_row("Chargers", f"{status.active_chargers} / {status.total_chargers} active")
    table.add_row("Last collection", format_time(status.last_collection))
    if status.next_collection_minutes is not None:
        table.add_row("Next collection", f"in {status.next_collection_minutes} min")
    ports = ", ".join(str(p) for p in status.udp_listener_ports) or "none"
    table.add_row("UDP listeners", ports)
    errors = status.recent_error_count
    table.add_row("Recent errors", f"[red]{errors}[/red]" if errors else "0")
    return table


def render_history(points: Sequence[HealthPoint]) -> Panel:
    """Summary of the health history: span, ranges and sparklines."""
    if not points:
        return Panel("[dim]No history yet[/dim]", title="History")

    span = points[-1].timestamp - points[0].timestamp
    hours, remainder = divmod(int(span.total_seconds()), 3600)
    lines: List[str] = [
        f"{len(points)} points over {hours}h {remainder // 60}m "
        f"({format_time(points[0].timestamp)} to {format_time(points[-1].timestamp)})"
    ]
    for label, values in (
        ("CPU", [p.cpu_percent for p in points]),
        ("Memory", [p.memory_percent for p in points]),
        ("Disk", [p.disk_percent for p in points]),
    ):
        lines.append(
            f"{label:<7} {sparkline(values)}  "
            f"min {min(values):.0f}%  avg {mean(values):.0f}%  max {max(values):.0f}%"
        )
    temperatures = [p.temperature_celsius for p in points if p.temperature_celsius > 0]
    if temperatures:
        lines.append(f"Temp    max {max(temperatures):.1f}°C")
    return Panel("\n".join(lines), title="History")


def render_health(session: ConsoleSession) -> Group:
    """Full health screen for a running session."""
    online = session.online
    header = Panel(
        "[bold]ONLINE[/bold]" if online else "[bold]OFFLINE[/bold]",
        style="green" if online else "red",
        title=f"Device Health: {session.config.device_url}",
    )
    status = session.status
    sample = status.system_health if status is not None else None

    body = Table.grid(expand=True)
    body.add_column(ratio=1)
    body.add_column(ratio=1)
    body.add_row(Panel(render_health_table(sample)), Panel(render_collector_table(status)))

    parts = [header, body, render_history(session.history.history)]
    if session.statistics is not None:
        parts.append(render_statistics(session.statistics, live=session.statistics_live))
    if session.maintenance.update_availability is not None:
        parts.append(render_update_availability(session.maintenance.update_availability))
    return Group(*parts)


def render_statistics(stats: Statistics, live: bool = True) -> Panel:
    table = Table(show_header=False, box=None)
    table.add_column("Counter", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Users", f"{stats.total_users} ({stats.admin_users} admin, {stats.regular_users} regular)")
    table.add_row("Complexes", str(stats.total_complexes))
    table.add_row("Buildings", str(stats.total_buildings))
    table.add_row("Meters", str(stats.total_meters))
    table.add_row("Chargers", str(stats.total_chargers))
    table.add_row("Invoices", str(stats.total_invoices))
    title = "Statistics" if live else "Statistics [yellow](stale)[/yellow]"
    return Panel(table, title=title)


def render_update_availability(availability: UpdateAvailability) -> Panel:
    current = availability.current_version_id[:7] or "?"
    if not availability.updates_available:
        return Panel(f"[green]Up to date[/green] ({current})", title="Updates")

    remote = availability.remote_version_id[:7] or "?"
    text = f"[yellow]Update available[/yellow]: {current} -> {remote}"
    if availability.change_log:
        text += "\n\n" + availability.change_log.strip()
    return Panel(text, title="Updates")


def render_update_progress(progress: Optional[UpdateProgress]) -> Panel:
    if progress is None:
        return Panel("[dim]No update running[/dim]", title="Update")

    width = 40
    filled = int(progress.percent / 100 * width)
    bar = "█" * filled + "░" * (width - filled)
    color = {
        UpdatePhase.ERROR: "red",
        UpdatePhase.DONE: "green",
    }.get(progress.phase, "cyan")
    text = f"[{color}]{bar}[/{color}] {progress.percent:.0f}%\n{progress.message}"
    if progress.error:
        text += f"\n[red]{progress.error}[/red]"
    return Panel(text, title=f"Update: {progress.phase.value}")


def category_label(category: LogCategory) -> Text:
    style = CATEGORY_STYLES[category]
    return Text(f"{style.icon} {category.value}", style=style.color)


def render_logs(entries: Iterable[LogEntry]) -> Table:
    table = Table(title="Audit Log", show_header=True)
    table.add_column("Time", no_wrap=True)
    table.add_column("Category", no_wrap=True)
    table.add_column("Action")
    table.add_column("Details")
    table.add_column("IP", no_wrap=True)
    for entry in entries:
        category = classify(entry.action)
        table.add_row(
            entry.created_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            category_label(category),
            Text(entry.action, style=CATEGORY_STYLES[category].color),
            entry.details or "",
            entry.ip_address or "",
        )
    return table


def render_category_counts(counts: Dict[LogCategory, int]) -> Text:
    text = Text()
    for category, count in counts.items():
        if not count:
            continue
        if text:
            text.append("  ")
        text.append_text(category_label(category))
        text.append(f": {count}")
    return text or Text("No entries", style="dim")
