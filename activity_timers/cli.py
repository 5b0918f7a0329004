"""CLI entry point for activity timers."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import timezone
from pathlib import Path

import click

from activity_timers.aggregation import ActivityTotals, summarize, summarize_recent
from activity_timers.clock import AsyncioScheduler, SystemClock
from activity_timers.config import DisplaySettings, default_db_path
from activity_timers.display import LiveDisplayDriver, LiveElapsed
from activity_timers.errors import IllegalTransition, TimerError
from activity_timers.machine import IntervalStateMachine, elapsed_seconds
from activity_timers.models import KINDS, OPEN_STATUSES, Status
from activity_timers.store import TimerStore


def format_elapsed(seconds: int) -> str:
    """Format seconds as 'HH:MM:SS'."""
    hours, remainder = divmod(max(0, seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_duration(seconds: int) -> str:
    """Format seconds as 'Xh Ym', 'Ym', or '<1m'."""
    if seconds < 60:
        return "<1m" if seconds > 0 else "0m"
    total_minutes = seconds // 60
    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours > 0:
        return f"{hours}h {minutes:2d}m"
    return f"{minutes}m"


def make_progress_bar(value: int, max_value: int, width: int = 16) -> str:
    """Create ASCII progress bar like '████████░░░░░░░░'."""
    if max_value == 0 or value == 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)


def _format_line(entity_id: str, status: str, seconds: int, category: str, name: str) -> str:
    return f"{entity_id[:8]}  {status:<9} {format_elapsed(seconds)}  {category:<16} {name}"


db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=default_db_path,
    help="Path to SQLite database",
)


def _open_store(db: Path) -> TimerStore:
    db.parent.mkdir(parents=True, exist_ok=True)
    return TimerStore.open(db)


def _resolve_id(store: TimerStore, timer_id: str) -> str:
    """Resolve a full or prefix timer ID, exiting with an error if it fails."""
    try:
        entity = store.get_by_prefix(timer_id)
    except ValueError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    if entity is None:
        click.echo(f"Timer not found: {timer_id}", err=True)
        sys.exit(1)
    return entity.id


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """Activity timers CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("start")
@click.argument("owner_id")
@db_option
@click.option("--category", default="other", show_default=True, help="Activity category")
@click.option("--name", default=None, help="Activity name")
@click.option("--project", "project_id", default=None, help="Project ID")
@click.option("--kind", type=click.Choice(KINDS), default="activity", show_default=True)
@click.option("--notes", default="", help="Initial notes")
def start_command(
    owner_id: str,
    db: Path,
    category: str,
    name: str | None,
    project_id: str | None,
    kind: str,
    notes: str,
) -> None:
    """Start a new timer for OWNER_ID and print its ID."""
    with _open_store(db) as store:
        machine = IntervalStateMachine(store)
        try:
            entity = machine.start(
                owner_id,
                category,
                kind=kind,
                name=name,
                project_id=project_id,
                notes=notes,
            )
        except (TimerError, ValueError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(entity.id)


@main.command("pause")
@click.argument("timer_id")
@db_option
@click.option("--reason", default="", help="Why the timer is paused")
def pause_command(timer_id: str, db: Path, reason: str) -> None:
    """Pause an active timer (ID or unique prefix)."""
    with _open_store(db) as store:
        entity_id = _resolve_id(store, timer_id)
        try:
            entity = IntervalStateMachine(store).pause(entity_id, reason)
        except TimerError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Paused {entity.id[:8]} at {format_elapsed(elapsed_seconds(entity, SystemClock().now()))}")


@main.command("resume")
@click.argument("timer_id")
@db_option
def resume_command(timer_id: str, db: Path) -> None:
    """Resume a paused timer (ID or unique prefix)."""
    with _open_store(db) as store:
        entity_id = _resolve_id(store, timer_id)
        try:
            entity = IntervalStateMachine(store).resume(entity_id)
        except TimerError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Resumed {entity.id[:8]} ({format_duration(entity.total_paused_seconds)} paused in total)")


@main.command("complete")
@click.argument("timer_id")
@db_option
@click.option("--notes", default=None, help="Final notes")
@click.option("--section", "report_section", default=None, help="Report section")
@click.option("--exclude-from-report", is_flag=True, help="Leave this timer out of reports")
def complete_command(
    timer_id: str,
    db: Path,
    notes: str | None,
    report_section: str | None,
    exclude_from_report: bool,
) -> None:
    """Complete a timer and print its final duration.

    Completing a timer that is already completed is not an error.
    """
    details = {"notes": notes, "report_section": report_section}
    if exclude_from_report:
        details["include_in_report"] = False

    with _open_store(db) as store:
        entity_id = _resolve_id(store, timer_id)
        try:
            entity = IntervalStateMachine(store).complete(entity_id, details)
        except TimerError as e:
            if isinstance(e, IllegalTransition) and e.already_completed:
                final = store.get(entity_id)
                click.echo(f"Already completed {final.id[:8]}: {format_elapsed(final.total_seconds)}")
                return
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Completed {entity.id[:8]}: {format_elapsed(entity.total_seconds)}")


@main.command("list")
@db_option
@click.option("--owner", "owner_id", default=None, help="Only this owner's timers")
@click.option("--project", "project_id", default=None, help="Only this project's timers")
@click.option("--status", type=click.Choice([s.value for s in Status]), default=None)
@click.option("--open", "open_only", is_flag=True, help="Only active and paused timers")
@click.option("--json", "output_json", is_flag=True, help="Output as JSONL")
def list_command(
    db: Path,
    owner_id: str | None,
    project_id: str | None,
    status: str | None,
    open_only: bool,
    output_json: bool,
) -> None:
    """List timers with their current elapsed time."""
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    with TimerStore.open(db) as store:
        if open_only and owner_id is not None and project_id is None:
            entities = store.query_by_owner(owner_id, OPEN_STATUSES)
        else:
            entities = store.list_entities(owner_id=owner_id, project_id=project_id, status=status)
            if open_only:
                entities = [e for e in entities if e.is_open]

    now = SystemClock().now()
    if not entities:
        if not output_json:
            click.echo("No timers found")
        return

    for entity in entities:
        seconds = elapsed_seconds(entity, now)
        if output_json:
            record = entity.model_dump(mode="json")
            record["elapsed_seconds"] = seconds
            click.echo(json.dumps(record))
        else:
            click.echo(_format_line(entity.id, entity.status.value, seconds, entity.category, entity.name))


@main.command("report")
@db_option
@click.option("--owner", "owner_id", default=None, help="Only this owner's timers")
@click.option("--project", "project_id", default=None, help="Only this project's timers")
@click.option("--days", type=int, default=None, help="Only timers started in the last N days")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def report_command(
    db: Path,
    owner_id: str | None,
    project_id: str | None,
    days: int | None,
    output_json: bool,
) -> None:
    """Show total tracked time by status and category."""
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    with TimerStore.open(db) as store:
        entities = store.list_entities(owner_id=owner_id, project_id=project_id)

    now = SystemClock().now()
    if days is not None:
        totals: ActivityTotals = summarize_recent(entities, now, days=days)
    else:
        totals = summarize(entities, now)

    if output_json:
        output = {
            "generated_at": now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            **totals.model_dump(),
        }
        click.echo(json.dumps(output, indent=2))
        return

    _output_human_report(totals)


def _output_human_report(totals: ActivityTotals) -> None:
    period = getattr(totals, "period", None)
    click.echo(f"Timer Report{f': {period}' if period else ''}")
    click.echo()

    if totals.count == 0:
        click.echo("No timers recorded for this period.")
        return

    click.echo(f"Total: {format_duration(totals.total_seconds)} across {totals.count} timers")
    counts = ", ".join(f"{count} {status}" for status, count in totals.by_status.items() if count)
    click.echo(f"  {counts}")
    click.echo()

    click.echo("By Category:")
    click.echo("                      Time   Count")
    sorted_categories = sorted(
        totals.by_category.items(), key=lambda item: (-item[1].seconds, item[0])
    )
    max_seconds = max((data.seconds for _, data in sorted_categories), default=0)
    for category, data in sorted_categories:
        display = category if len(category) <= 18 else category[:15] + "..."
        bar = make_progress_bar(data.seconds, max_seconds)
        click.echo(f"  {display:<18} {format_duration(data.seconds):>7} {data.count:>7}   {bar}")


@main.command("watch")
@click.argument("owner_id")
@db_option
@click.option("--duration", type=float, default=None, help="Stop after this many seconds")
@click.option("--tick", "tick_seconds", type=float, default=1.0, show_default=True)
@click.option("--reconcile", "reconcile_seconds", type=float, default=30.0, show_default=True)
def watch_command(
    owner_id: str,
    db: Path,
    duration: float | None,
    tick_seconds: float,
    reconcile_seconds: float,
) -> None:
    """Show OWNER_ID's open timers ticking live.

    Timers paused or completed from another device show up at the next
    reconciliation.
    """
    try:
        settings = DisplaySettings.from_intervals(tick_seconds, reconcile_seconds)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    with _open_store(db) as store:
        try:
            asyncio.run(_watch(store, owner_id, settings, duration))
        except KeyboardInterrupt:
            pass


async def _watch(
    store: TimerStore,
    owner_id: str,
    settings: DisplaySettings,
    duration: float | None,
) -> None:
    driver = LiveDisplayDriver(
        IntervalStateMachine(store),
        store,
        scheduler=AsyncioScheduler(),
        settings=settings,
    )

    def on_update(values: list[LiveElapsed]) -> None:
        if not values:
            click.echo("No open timers")
            return
        click.echo(" | ".join(
            f"{v.entity.name} {format_elapsed(v.live_elapsed_seconds)} [{v.entity.status.value}]"
            for v in values
        ))

    sub = driver.subscribe(owner_id, on_update)
    try:
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        driver.unsubscribe(sub)


if __name__ == "__main__":
    main()
