"""
Main entry point for the Ticket Reconciler.

Command-line interface for:
1. Syncing tickets from the helpdesk, service desk and tracker
2. Deriving the escalation ledger
3. Sweeping L4 orphan incidents and curating them by hand
4. Refreshing team sprint boards
5. Exporting the escalation ledger to Excel
6. Running the hourly background scheduler
"""

import dataclasses
import logging
import sys
import time
from datetime import date, datetime
from datetime import time as time_of_day
from pathlib import Path
from typing import Optional

import click

from .config import AppConfig, CategorizationSettings, ConfigurationError, get_config
from .escalations import list_escalations, summarize
from .jobs import JobRegistry
from .models import JobState, SupportLevel
from .orphans import list_active_orphans, reassign_orphan, update_orphan_team
from .report import ReportGeneratorError, generate_report
from .scheduler import SyncScheduler
from .store import Store
from .sync import (
    KIND_ALL,
    KIND_ESCALATIONS,
    KIND_ORPHANS,
    KIND_SPRINT_BOARD,
    SYNC_KINDS,
    SyncService,
)


def setup_logging(level: str) -> None:
    """
    Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


class Runtime:
    """Store, categorization tables and sync service built from one config."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.settings: CategorizationSettings = config.load_categorization()
        self.store = Store.from_config(config.database)
        self.store.create_all()
        self.registry = JobRegistry()
        self.service = SyncService(config, self.store, self.settings, self.registry)


def validate_config(config: AppConfig) -> None:
    """
    Validate configuration before running.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise ConfigurationError(
            f"Configuration validation failed with {len(errors)} error(s)"
        )


def _runtime(ctx: click.Context) -> Runtime:
    if "runtime" not in ctx.obj:
        try:
            ctx.obj["runtime"] = Runtime(ctx.obj["config"])
        except ConfigurationError as e:
            click.echo(f"Startup failed: {e}", err=True)
            sys.exit(1)
    return ctx.obj["runtime"]


def _run_job(ctx: click.Context, kind: str) -> None:
    """Run one job in the foreground and exit non-zero if it failed."""
    runtime = _runtime(ctx)
    logger.info("=" * 60)
    logger.info(f"Starting {kind} sync")
    logger.info("=" * 60)
    job_id = runtime.service.run(kind)
    status = runtime.registry.get_status(job_id)
    click.echo(f"[{status.state.value}] {status.message}")
    if status.state is JobState.FAILED:
        sys.exit(1)


def _parse_date(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    """
    Parse an ISO date or datetime option.

    A bare date with ``end_of_day`` set covers the whole day, so an upper
    bound of 2025-03-01 includes everything up to 23:59:59.999999.
    """
    if value is None:
        return None
    try:
        day = date.fromisoformat(value)
    except ValueError:
        day = None
    if day is not None:
        return datetime.combine(day, time_of_day.max if end_of_day else time_of_day.min)
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise click.BadParameter(f"'{value}' is not an ISO date (YYYY-MM-DD)") from e


@click.group(invoke_without_command=True)
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug logging",
)
@click.option(
    "--validate-only",
    is_flag=True,
    default=False,
    help="Only validate configuration without running anything",
)
@click.pass_context
def main(ctx: click.Context, debug: bool, validate_only: bool) -> None:
    """
    Multi-source ticket reconciler.

    Pulls tickets from the helpdesk, service desk and engineering tracker
    into one canonical store with L1-L4 support levels and an auditable
    escalation history.
    """
    config = get_config()
    if debug:
        config = dataclasses.replace(config, log_level="DEBUG")
    setup_logging(config.log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["debug"] = debug

    if validate_only:
        logger.info("Validating configuration...")
        try:
            validate_config(config)
        except ConfigurationError as e:
            click.echo(f"Validation failed: {e}", err=True)
            sys.exit(1)
        logger.info("Configuration is valid!")
        ctx.exit(0)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@main.command()
@click.option(
    "--kind",
    type=click.Choice(SYNC_KINDS),
    default=KIND_ALL,
    show_default=True,
    help="What to sync",
)
@click.pass_context
def sync(ctx: click.Context, kind: str) -> None:
    """Run one sync now and wait for it to finish."""
    _run_job(ctx, kind)


@main.command("derive-escalations")
@click.pass_context
def derive_escalations(ctx: click.Context) -> None:
    """Replay movements into the escalation ledger."""
    _run_job(ctx, KIND_ESCALATIONS)


@main.group(invoke_without_command=True)
@click.pass_context
def orphans(ctx: click.Context) -> None:
    """Sweep and curate L4 orphan incidents (sweeps when no subcommand is given)."""
    if ctx.invoked_subcommand is None:
        _run_job(ctx, KIND_ORPHANS)


@orphans.command("list")
@click.option("--team", default=None, help="Only show this team's items")
@click.pass_context
def orphans_list(ctx: click.Context, team: Optional[str]) -> None:
    """List open L4 items still waiting on engineering."""
    items = list_active_orphans(_runtime(ctx).store, team=team)
    for item in items:
        click.echo(
            f"{item.id:>5}  {item.external_id:<10} {item.team:<22} "
            f"{item.linkage_ref or '-':<12} {item.tracker_status or '-':<16} {item.title}"
        )
    click.echo(f"{len(items)} open L4 items")


@orphans.command("set-team")
@click.argument("orphan_id", type=int)
@click.argument("team")
@click.pass_context
def orphans_set_team(ctx: click.Context, orphan_id: int, team: str) -> None:
    """Manually set the owning team of an L4 item."""
    runtime = _runtime(ctx)
    try:
        updated = update_orphan_team(runtime.store, orphan_id, team, runtime.settings)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    if updated is None:
        click.echo(f"No L4 item with id {orphan_id}", err=True)
        sys.exit(1)
    click.echo(f"{updated.external_id} now owned by {updated.team}")


@orphans.command("reassign")
@click.argument("orphan_id", type=int)
@click.argument("level", type=click.Choice([level.value for level in SupportLevel][:3]))
@click.pass_context
def orphans_reassign(ctx: click.Context, orphan_id: int, level: str) -> None:
    """Hand an L4 item back to L1, L2 or L3."""
    updated = reassign_orphan(_runtime(ctx).store, orphan_id, level)
    if updated is None:
        click.echo(f"No L4 item with id {orphan_id}", err=True)
        sys.exit(1)
    click.echo(f"{updated.external_id} reassigned to {level}")


@main.command("sprint-board")
@click.pass_context
def sprint_board(ctx: click.Context) -> None:
    """Refresh the configured teams' sprint boards from the tracker."""
    _run_job(ctx, KIND_SPRINT_BOARD)


@main.command("export-escalations")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Custom output path for the report",
)
@click.option("--level", type=click.Choice([level.value for level in SupportLevel]), default=None)
@click.option("--since", default=None, help="Only escalations on or after this date (YYYY-MM-DD)")
@click.option("--until", default=None, help="Only escalations on or before this date (YYYY-MM-DD)")
@click.option("--team", default=None, help="Only escalations for this team")
@click.pass_context
def export_escalations(
    ctx: click.Context,
    output: Optional[Path],
    level: Optional[str],
    since: Optional[str],
    until: Optional[str],
    team: Optional[str],
) -> None:
    """Export the escalation ledger to Excel."""
    runtime = _runtime(ctx)
    escalations = list_escalations(
        runtime.store,
        to_level=SupportLevel.parse(level),
        since=_parse_date(since),
        until=_parse_date(until, end_of_day=True),
        team=team,
    )
    summary = summarize(escalations)
    try:
        path = generate_report(escalations, runtime.config.output, output)
    except ReportGeneratorError as e:
        click.echo(f"Export failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"{summary.total} escalations written to {path}")
    for name, count in summary.by_level.items():
        click.echo(f"  {name}: {count}")


@main.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the recurring sync until interrupted."""
    runtime = _runtime(ctx)
    scheduler = SyncScheduler(
        runtime.service,
        interval_seconds=runtime.config.scheduler.interval_seconds,
        run_on_start=runtime.config.scheduler.sync_on_startup,
    )
    scheduler.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping scheduler...", err=True)
    finally:
        scheduler.stop(timeout=30)


if __name__ == "__main__":
    main()
