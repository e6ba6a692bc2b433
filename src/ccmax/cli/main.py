"""CLI commands for ccmax using Typer."""

from __future__ import annotations

import asyncio
import csv
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ccmax import __version__
from ccmax.analyzer.adaptive import (
    get_last_adjustment_info,
    run_adaptive_adjustment,
    should_run_adjustment,
)
from ccmax.analyzer.aggregator import aggregate_by_day, get_weekday_distribution
from ccmax.analyzer.optimizer import calculate_optimal_start_time
from ccmax.analyzer.patterns import analyze_weekly_patterns
from ccmax.analyzer.trigger_optimizer import (
    HourlyProfile,
    build_profile_from_records,
    calculate_optimal_start_times,
    calculate_wasted_quota,
    count_wait_events,
    determine_phase,
)
from ccmax.core.config import Config, get_config
from ccmax.core.errors import CcmaxError, InvalidTimeFormat
from ccmax.storage.database import open_database
from ccmax.sync.gist_sync import GistSync, HourlyUsageData, aggregate_hourly_usage
from ccmax.utils.time import (
    ALL_WEEKDAYS,
    MINUTES_PER_DAY,
    WINDOW_DURATION_MINUTES,
    diff_minutes,
    format_date_hour,
    from_iso,
    get_window_end,
    minutes_to_time_string,
    now,
    parse_time_to_minutes,
    utcnow,
)

# Initialize Typer app
app = typer.Typer(
    name="ccmax",
    help="Plan daily usage windows around a rolling 5-hour quota.",
    add_completion=False,
)
sync_app = typer.Typer(help="Share usage history across machines through a GitHub gist.")
app.add_typer(sync_app, name="sync")

console = Console()


def setup_logging(log_level: str, log_file: Path | None = None) -> None:
    """Configure logging for the application."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )

    # Reduce noise from external libraries
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def _run(coro):
    """Run a coroutine, turning ccmax errors into a red message and exit 1."""
    try:
        return asyncio.run(coro)
    except CcmaxError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        "-l",
        help="Log level (DEBUG, INFO, WARNING, ERROR)",
    ),
) -> None:
    """Plan daily usage windows around a rolling 5-hour quota."""
    setup_logging(log_level)


@app.command()
def record(
    usage_pct: float = typer.Argument(..., min=0, help="Quota used in the current window (percent)"),
    at: str = typer.Option(None, "--at", help="Timestamp of the sample (ISO 8601, default now)"),
) -> None:
    """Record a usage sample for the current hour."""
    config = get_config()
    config.ensure_directories()

    try:
        timestamp = from_iso(at) if at else utcnow()
    except ValueError:
        console.print(f"[red]Error: invalid timestamp {at!r}[/red]")
        raise typer.Exit(1)

    async def do_record() -> tuple[int, bool]:
        db = await open_database(config.db_path)
        try:
            await db.upsert_hourly_usage(usage_pct, timestamp)

            window = await db.get_current_window(timestamp)
            if window is None:
                window_id = await db.create_window(timestamp, get_window_end(timestamp))
                window_start = timestamp
                quota_usage = usage_pct
            else:
                window_id = window["id"]
                window_start = from_iso(window["window_start"])
                quota_usage = max(window["quota_usage_pct"] or 0.0, usage_pct)

            active = min(int(diff_minutes(timestamp, window_start)), WINDOW_DURATION_MINUTES)
            await db.update_window_utilization(window_id, active, quota_usage)
            return window_id, window is None
        finally:
            await db.close()

    window_id, created = _run(do_record())

    note = " (new window)" if created else ""
    console.print(
        f"[green]Recorded {usage_pct:.0f}% for {format_date_hour(timestamp)}[/green]"
        f" [dim]window #{window_id}{note}[/dim]"
    )


@app.command()
def analyze(
    days: int = typer.Option(30, "--days", "-d", min=1, help="Days of history to analyze"),
    save: bool = typer.Option(False, "--save", help="Save recommended start times to config"),
) -> None:
    """Recommend start times from recorded usage."""
    config = get_config()
    settings = config.analyzer.to_settings()

    async def load_records() -> list[dict]:
        db = await open_database(config.db_path)
        try:
            return await db.get_hourly_usage_since(utcnow() - timedelta(days=days))
        finally:
            await db.close()

    records = _run(load_records())
    daily = aggregate_by_day(records)

    if not daily:
        console.print("[yellow]No usage data recorded yet. Run 'ccmax record' from a hook first.[/yellow]")
        return

    overall = calculate_optimal_start_time(list(daily.values()), settings)
    pattern = analyze_weekly_patterns(get_weekday_distribution(daily), settings)
    phase = determine_phase(len(daily), settings.calibration_days)

    summary = [f"Days analyzed: [bold]{len(daily)}[/bold] ({phase.value})"]
    if overall is not None:
        summary.append(
            f"Recommended start: [bold green]{overall.time_string}[/bold green]"
            f"  utilization {overall.expected_utilization:.0f}%"
            f"  confidence {overall.confidence:.0%}"
        )
    summary.append(
        f"Most active: {pattern.most_active_day.label}"
        f"  Least active: {pattern.least_active_day.label}"
        f"  Avg hours/day: {pattern.average_daily_hours:.1f}"
    )
    summary.append(f"Peak hour: {pattern.peak_hour:02d}:00 UTC")
    console.print(Panel("\n".join(summary), title="ccmax Analysis", border_style="cyan"))

    table = Table(title="Recommendations by Weekday", show_header=True, header_style="bold cyan")
    table.add_column("Day")
    table.add_column("Windows")
    table.add_column("Active Hours", justify="right")
    table.add_column("Avg Usage", justify="right")
    table.add_column("Confidence", justify="right")

    for day in ALL_WEEKDAYS:
        rec = pattern.recommendations[day]
        if not rec.windows:
            table.add_row(day.label, "[dim]no data[/dim]", "0", "-", "-")
            continue
        starts = ", ".join(
            f"{w.time_string} ({w.first_active_hour:02d}-{w.last_active_hour:02d}h)" for w in rec.windows
        )
        table.add_row(
            day.label,
            starts,
            str(rec.total_expected_hours),
            f"{rec.avg_usage:.0f}%",
            f"{max(w.confidence for w in rec.windows):.0%}",
        )

    console.print(table)

    if save:
        saved = 0
        for day, rec in pattern.recommendations.items():
            if rec.windows:
                config.optimal_start_times[day] = rec.windows[0].time_string
                saved += 1
        config.save()
        console.print(f"[green]Saved start times for {saved} day(s) to {config.config_file}[/green]")


@app.command()
def optimize(
    start: str = typer.Argument(..., help="Workday start (HH:MM)"),
    end: str = typer.Argument(..., help="Workday end (HH:MM, earlier than start crosses midnight)"),
    history: bool = typer.Option(False, "--history", help="Weight hours by recorded usage"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
) -> None:
    """Find window start times that cover a workday."""
    config = get_config()
    settings = config.analyzer.to_settings()

    profile: HourlyProfile | None = None
    if history:
        async def load_profile() -> HourlyProfile | None:
            db = await open_database(config.db_path)
            try:
                since = utcnow() - timedelta(days=config.analyzer.profile_lookback_days)
                hourly = await db.get_hourly_usage_since(since)
                if len(hourly) < config.analyzer.min_profile_records:
                    return None
                windows = await db.get_windows_since(since)
                return build_profile_from_records(hourly, windows)
            finally:
                await db.close()

        profile = _run(load_profile())
        if profile is None and not as_json:
            console.print("[yellow]Not enough history yet, using the default profile.[/yellow]")

    try:
        times = calculate_optimal_start_times(start, end, profile, settings)
    except InvalidTimeFormat as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps({"start": start, "end": end, "windows": times}))
        return

    table = Table(title=f"Windows for {start}-{end}", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Start")
    table.add_column("Resets")

    for i, time_str in enumerate(times, 1):
        reset = (parse_time_to_minutes(time_str) + settings.window_minutes) % MINUTES_PER_DAY
        table.add_row(str(i), time_str, minutes_to_time_string(reset))

    console.print(table)


@app.command()
def adjust(
    status: bool = typer.Option(False, "--status", help="Show when adjustment last ran"),
    force: bool = typer.Option(False, "--force", "-f", help="Run even if not due yet"),
) -> None:
    """Re-optimize saved start times from recent usage."""
    config = get_config()

    async def do_adjust():
        db = await open_database(config.db_path)
        try:
            if status:
                return await get_last_adjustment_info(db)
            if not force and not await should_run_adjustment(db, config):
                return None
            return await run_adaptive_adjustment(db, config)
        finally:
            await db.close()

    result = _run(do_adjust())

    if status:
        if result["timestamp"] is None:
            console.print("[dim]Adaptive adjustment has not run yet.[/dim]")
        else:
            console.print(
                f"Last adjustment: {result['timestamp']:%Y-%m-%d %H:%M} UTC"
                f" ({result['days_since']} days ago), {result['count']} total"
            )
        return

    if result is None:
        interval = config.analyzer.adjustment_interval_days
        console.print(f"[dim]Not due yet (runs every {interval} days). Use --force to run now.[/dim]")
        return

    if not result.adjusted:
        console.print(f"[yellow]{result.reason}[/yellow]")
        return

    table = Table(title="Adjusted Start Times", show_header=True, header_style="bold cyan")
    table.add_column("Day")
    table.add_column("Old")
    table.add_column("New")
    for change in result.changes:
        table.add_row(change.day.label, change.old_time or "-", change.new_time or "-")
    console.print(table)
    console.print(f"[green]{result.reason}[/green]")


@app.command()
def stats() -> None:
    """Show recorded usage statistics."""
    config = get_config()
    lookback = config.analyzer.profile_lookback_days

    async def get_stats() -> dict:
        db = await open_database(config.db_path)
        try:
            since = utcnow() - timedelta(days=lookback)
            hourly = await db.get_hourly_usage_since(since)
            windows = await db.get_windows_since(since)
            local_hourly = await db.get_hourly_usage_since(
                utcnow() - timedelta(hours=config.sync.hourly_history_hours), local_only=True
            )
            return {
                "hourly_count": await db.get_hourly_usage_count(),
                "window_count": await db.get_window_count(),
                "days": len(aggregate_by_day(hourly)),
                "waits": count_wait_events(hourly, windows),
                "wasted": calculate_wasted_quota(hourly, windows),
                "recent_windows": len(windows),
                "local_hourly": local_hourly,
                "size_mb": await db.get_size_mb(),
                "adjustment": await get_last_adjustment_info(db),
            }
        finally:
            await db.close()

    info = _run(get_stats())
    phase = determine_phase(info["days"], config.analyzer.calibration_days)

    table = Table(title="ccmax Statistics", show_header=True, header_style="bold cyan")
    table.add_column("Metric")
    table.add_column("Value", justify="right")

    table.add_row("Hourly records", str(info["hourly_count"]))
    table.add_row("Windows", str(info["window_count"]))
    table.add_row("Database size", f"{info['size_mb']:.2f} MB")
    table.add_row(f"[bold]Last {lookback} days[/bold]", "")
    table.add_row("  Days with data", str(info["days"]))
    table.add_row("  Phase", phase.value)
    table.add_row("  Windows", str(info["recent_windows"]))
    table.add_row("  Quota exhausted", str(info["waits"]))
    avg_wasted = info["wasted"] / info["recent_windows"] if info["recent_windows"] else 0.0
    table.add_row("  Avg unused quota", f"{avg_wasted:.0f}%")
    table.add_row("Adjustments run", str(info["adjustment"]["count"]))

    console.print(table)

    cache = GistSync(config, db=None).load_cache() if config.sync.configured else None
    if cache and cache.machines:
        local = [HourlyUsageData(date_hour=r["date_hour"], usage_pct=r["usage_pct"]) for r in info["local_hourly"]]
        since_key = format_date_hour(utcnow() - timedelta(hours=config.sync.hourly_history_hours))
        peaks = aggregate_hourly_usage(cache, config.get_machine_id(), local, since_key)
        if peaks:
            busiest = max(peaks, key=lambda h: (peaks[h], -h))
            console.print(
                f"Across {len(cache.machines)} machine(s): busiest hour {busiest:02d}:00 UTC"
                f" at {peaks[busiest]:.0f}%"
            )


@app.command()
def config_show() -> None:
    """Show current configuration."""
    config = get_config()

    table = Table(title="ccmax Configuration", show_header=True, header_style="bold cyan")
    table.add_column("Setting")
    table.add_column("Value")

    # Paths
    table.add_row("[bold]Paths[/bold]", "")
    table.add_row("  Data Directory", str(config.data_dir))
    table.add_row("  Config File", str(config.config_file))
    table.add_row("  Database", str(config.db_path))

    # Analyzer
    analyzer = config.analyzer
    table.add_row("[bold]Analyzer[/bold]", "")
    table.add_row("  Window", f"{analyzer.window_minutes} min")
    table.add_row("  Lead-in", f"{analyzer.lead_in_minutes} min")
    table.add_row("  Quota", f"{analyzer.quota:g}")
    table.add_row("  Auto Adjust", str(config.auto_adjust_enabled))
    table.add_row("  Adjust Every", f"{analyzer.adjustment_interval_days} days")

    # Working hours
    hours = config.working_hours
    table.add_row("[bold]Working Hours[/bold]", "")
    table.add_row("  Enabled", str(hours.enabled))
    for day in hours.work_days:
        span = hours.hours.get(day)
        table.add_row(f"  {day.label}", f"{span.start}-{span.end}" if span else "[dim]not set[/dim]")

    # Start times
    table.add_row("[bold]Start Times[/bold]", "")
    for day in ALL_WEEKDAYS:
        table.add_row(f"  {day.label}", config.optimal_start_times.get(day) or "[dim]-[/dim]")

    # Sync
    table.add_row("[bold]Sync[/bold]", "")
    table.add_row("  Gist", config.sync.gist_id or "[yellow]Not Set[/yellow]")
    table.add_row("  Machine", config.sync.machine_id or "-")
    table.add_row("  Token", "***" if config.sync.github_token else "[dim]env / gh CLI[/dim]")

    console.print(table)


HOURLY_CSV_FIELDS = ["date_hour", "usage_pct", "updated_at", "machine_id"]
WINDOW_CSV_FIELDS = [
    "id",
    "window_start",
    "window_end",
    "active_minutes",
    "utilization_pct",
    "quota_usage_pct",
    "machine_id",
]


def _write_csv(path: Path, fields: list[str], rows: list[dict]) -> None:
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fields, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)


@app.command()
def export(
    output: Path = typer.Argument(Path("ccmax-export.json"), help="Output file"),
    as_csv: bool = typer.Option(False, "--csv", help="Write hourly and window CSV files instead"),
) -> None:
    """Export all recorded usage."""
    config = get_config()

    async def load_all() -> tuple[list[dict], list[dict], dict[str, float]]:
        db = await open_database(config.db_path)
        try:
            epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
            return (
                await db.get_hourly_usage_since(epoch),
                await db.get_windows_since(epoch),
                await db.get_all_baseline_stats(),
            )
        finally:
            await db.close()

    hourly, windows, baseline = _run(load_all())

    if as_csv:
        hourly_path = output.with_name(f"{output.stem}-hourly.csv")
        windows_path = output.with_name(f"{output.stem}-windows.csv")
        _write_csv(hourly_path, HOURLY_CSV_FIELDS, hourly)
        _write_csv(windows_path, WINDOW_CSV_FIELDS, windows)
        console.print(f"Wrote {hourly_path} and {windows_path}")
    else:
        data = {
            "exported_at": now(),
            "config": config.model_dump(mode="json", exclude={"sync": {"github_token"}}),
            "baseline": baseline,
            "hourly_usage": hourly,
            "windows": windows,
        }
        with open(output, "w") as f:
            json.dump(data, f, indent=2)
        console.print(f"Wrote {output}")

    console.print(f"[green]Exported {len(hourly)} hourly records and {len(windows)} windows.[/green]")


@app.command()
def clear(
    force: bool = typer.Option(False, "--force", "-f", help="Skip the confirmation prompt"),
    clear_all: bool = typer.Option(False, "--all", help="Also remove the config file and sync cache"),
) -> None:
    """Delete recorded usage."""
    config = get_config()

    if not config.db_path.exists():
        console.print("[dim]No data to clear.[/dim]")
        return

    async def count() -> tuple[int, int]:
        db = await open_database(config.db_path)
        try:
            return await db.get_hourly_usage_count(), await db.get_window_count()
        finally:
            await db.close()

    hourly_count, window_count = _run(count())

    console.print("This will delete:")
    console.print(f"  {hourly_count} hourly usage records")
    console.print(f"  {window_count} usage windows")
    console.print("  adaptive adjustment history")
    if clear_all:
        console.print(f"  {config.config_file}")
        console.print(f"  {config.sync_cache_path}")

    if not force and not typer.confirm("Are you sure?"):
        console.print("Cancelled.")
        return

    async def do_clear() -> None:
        db = await open_database(config.db_path)
        try:
            await db.clear_hourly_usage()
            await db.clear_windows()
            await db.clear_baseline_stats()
        finally:
            await db.close()

    _run(do_clear())

    if clear_all:
        config.config_file.unlink(missing_ok=True)
        config.sync_cache_path.unlink(missing_ok=True)

    console.print("[green]Data cleared successfully.[/green]")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"ccmax v{__version__}")


# Sync commands


def _sync_command(config: Config, action: str, **kwargs):
    async def run():
        db = await open_database(config.db_path)
        try:
            return await getattr(GistSync(config, db), action)(**kwargs)
        finally:
            await db.close()

    result = _run(run())
    if not result.success:
        console.print(f"[red]{result.message}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]{result.message}[/green]")


@sync_app.command("setup")
def sync_setup(
    gist_id: str = typer.Option(None, "--gist-id", help="Join an existing sync gist"),
) -> None:
    """Create or find the sync gist for this account."""
    config = get_config()
    config.ensure_directories()
    _sync_command(config, "setup", existing_gist_id=gist_id)


@sync_app.command("push")
def sync_push() -> None:
    """Upload this machine's recent usage."""
    _sync_command(get_config(), "push")


@sync_app.command("pull")
def sync_pull() -> None:
    """Import usage recorded on other machines."""
    _sync_command(get_config(), "pull")


@sync_app.command("status")
def sync_status() -> None:
    """Show sync configuration."""
    config = get_config()
    info = GistSync(config, db=None).status()

    if not info["configured"]:
        console.print("[yellow]Sync not configured. Run 'ccmax sync setup' first.[/yellow]")
        return

    last_sync = info["last_sync"]
    last = f"{from_iso(last_sync):%Y-%m-%d %H:%M} UTC" if last_sync else "never"

    table = Table(title="Sync Status", show_header=False)
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Gist", info["gist_id"])
    table.add_row("Machine", info["machine_id"] or "-")
    table.add_row("Last sync", last)
    table.add_row("Machines", ", ".join(info["machines"]) or "-")
    console.print(table)
