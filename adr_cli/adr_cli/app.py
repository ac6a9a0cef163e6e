"""ADR CLI -- operator commands for the invoice-retrieval orchestrator.

Commands
--------
run         Execute one orchestration run in the foreground.
status      Show the active run and live job counts.
runs        List recent runs.
next-date   Project the next billing date for a cadence and anchor.
recover     Mark runs orphaned by a crashed process as Interrupted.
archive     Move finalized jobs past retention into the archive tables.
sync        Sync accounts from a JSON snapshot file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from pathlib import Path

import typer
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adr_cli.display import (
    display_job_counts,
    display_next_date,
    display_run_list,
    display_run_summary,
    display_sync_result,
)
from adr_engine.config import Settings, load_settings
from adr_engine.errors import AdrError, RunConflictError
from adr_engine.models.run import PhaseFlags, RunStatus
from adr_engine.state.database import create_tables, get_engine, get_session_factory, session_scope

app = typer.Typer(
    name="adr",
    help="ADR: automated vendor-invoice retrieval orchestration.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False

# Exit codes.
EXIT_RUN_FAILED = 1
EXIT_CONFLICT = 2
EXIT_ERROR = 3


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log engine activity to stderr.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_date(value: str, label: str) -> date:
    """Parse a YYYY-MM-DD string into a :class:`date`, raising on failure."""
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid {label} date '{value}': expected YYYY-MM-DD.[/red]")
        raise typer.Exit(code=EXIT_ERROR) from exc


def _settings() -> Settings:
    try:
        return load_settings()
    except ValueError as exc:
        console.print(f"[red]Invalid configuration: {exc}[/red]")
        raise typer.Exit(code=EXIT_ERROR) from exc


def _emit_json(payload: object) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


@asynccontextmanager
async def _state(settings: Settings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Open the state database for one command and dispose of it afterwards.

    Local SQLite databases get their tables created on first use; Postgres
    schemas are managed by Alembic.
    """
    engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    try:
        if settings.database_url.startswith("sqlite"):
            await create_tables(engine)
        yield get_session_factory(engine)
    finally:
        await engine.dispose()


def _phase_flags(
    only_status_check: bool,
    skip_sync: bool,
    skip_create_jobs: bool,
    skip_credentials: bool,
    skip_scraping: bool,
    skip_status_check: bool,
) -> PhaseFlags:
    if only_status_check:
        return PhaseFlags.status_check_only()
    return PhaseFlags(
        run_sync=not skip_sync,
        run_create_jobs=not skip_create_jobs,
        run_credential_verification=not skip_credentials,
        run_scraping=not skip_scraping,
        run_status_check=not skip_status_check,
    )


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@app.command()
def run(
    only_status_check: bool = typer.Option(
        False, "--only-status-check", help="Only poll outstanding scrapes and finalize stale jobs."
    ),
    skip_sync: bool = typer.Option(False, "--skip-sync", help="Skip the account sync phase."),
    skip_create_jobs: bool = typer.Option(False, "--skip-create-jobs", help="Skip job creation."),
    skip_credentials: bool = typer.Option(False, "--skip-credentials", help="Skip credential verification."),
    skip_scraping: bool = typer.Option(False, "--skip-scraping", help="Skip scrape requests."),
    skip_status_check: bool = typer.Option(
        False, "--skip-status-check", help="Skip status checks and the stale-job sweep."
    ),
    requested_by: str = typer.Option("cli", "--requested-by", help="Recorded as the run's requester."),
) -> None:
    """Execute one orchestration run in the foreground."""
    from adr_engine.orchestration.coordinator import OrchestrationCoordinator

    settings = _settings()
    flags = _phase_flags(
        only_status_check, skip_sync, skip_create_jobs, skip_credentials, skip_scraping, skip_status_check
    )

    async def _run():
        async with _state(settings) as factory:
            coordinator = OrchestrationCoordinator.from_settings(settings, factory)
            try:
                return await coordinator.run(flags, requested_by)
            finally:
                await coordinator.close()

    try:
        summary = asyncio.run(_run())
    except RunConflictError as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(code=EXIT_CONFLICT) from exc
    except (AdrError, OSError) as exc:
        console.print(f"[red]Run could not start: {exc}[/red]")
        raise typer.Exit(code=EXIT_ERROR) from exc

    if _json_output:
        sys.stdout.write(summary.model_dump_json(indent=2) + "\n")
    else:
        display_run_summary(console, summary)

    if summary.status is RunStatus.FAILED:
        raise typer.Exit(code=EXIT_RUN_FAILED)


# ---------------------------------------------------------------------------
# status / runs
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show the active run (if any) and live job counts."""
    from adr_engine.orchestration.coordinator import to_summary
    from adr_engine.state.repository import JobRepository, OrchestrationRunRepository

    settings = _settings()

    async def _status():
        async with _state(settings) as factory, session_scope(factory) as session:
            row = await OrchestrationRunRepository(session, settings.tenant_id).get_current()
            counts = await JobRepository(session, settings.tenant_id).count_by_status()
            return (to_summary(row) if row is not None else None), counts

    current, counts = asyncio.run(_status())

    if _json_output:
        _emit_json(
            {
                "current_run": current.model_dump(mode="json") if current is not None else None,
                "job_counts": counts,
            }
        )
        return

    if current is None:
        console.print("[dim]No orchestration run is active.[/dim]")
    else:
        display_run_summary(console, current)
    display_job_counts(console, counts)


@app.command()
def runs(
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=200, help="Number of runs to show."),
) -> None:
    """List recent orchestration runs, newest first."""
    from adr_engine.orchestration.coordinator import to_summary
    from adr_engine.state.repository import OrchestrationRunRepository

    settings = _settings()

    async def _runs():
        async with _state(settings) as factory, session_scope(factory) as session:
            rows = await OrchestrationRunRepository(session, settings.tenant_id).list_recent(limit)
            return [to_summary(row) for row in rows]

    summaries = asyncio.run(_runs())
    if _json_output:
        _emit_json([summary.model_dump(mode="json") for summary in summaries])
    else:
        display_run_list(console, summaries)


# ---------------------------------------------------------------------------
# next-date
# ---------------------------------------------------------------------------


@app.command("next-date")
def next_date_command(
    period_type: str = typer.Option("Monthly", "--period-type", "-p", help="Billing cadence, e.g. Quarterly."),
    anchor: str = typer.Option(..., "--anchor", "-a", help="Last billing date (YYYY-MM-DD)."),
    today: str | None = typer.Option(None, "--today", help="Reference date (YYYY-MM-DD); defaults to today."),
    days_before: int | None = typer.Option(None, "--days-before", min=0, help="Window opens N days early."),
    days_after: int | None = typer.Option(None, "--days-after", min=0, help="Window closes N days late."),
) -> None:
    """Project the next billing date on or after today, with its window."""
    from adr_engine.billing import calculator
    from adr_engine.errors import CalculationLimitError
    from adr_engine.models.account import PeriodType

    anchor_date = _parse_date(anchor, "anchor")
    reference = _parse_date(today, "today") if today else datetime.now(UTC).date()
    period = PeriodType.parse(period_type)

    try:
        projected = calculator.next_date(period, anchor_date)
        if projected < reference:
            projected = calculator.next_date_on_or_after(period, projected, reference, anchor_date.day)
    except CalculationLimitError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=EXIT_ERROR) from exc

    default_before, default_after = calculator.default_window_days(period)
    before = days_before if days_before is not None else default_before
    after = days_after if days_after is not None else default_after
    window = calculator.billing_window(projected, before, after)
    run_status = calculator.classify_next_run_status((projected - reference).days, before)

    if _json_output:
        _emit_json(
            {
                "period_type": period.value,
                "anchor": anchor_date.isoformat(),
                "next_run_date": projected.isoformat(),
                "window_start": window[0].isoformat(),
                "window_end": window[1].isoformat(),
                "next_run_status": run_status.value,
            }
        )
    else:
        display_next_date(
            console,
            period_type=period.value,
            anchor=anchor_date,
            next_run_date=projected,
            window=window,
            status=run_status.value,
        )


# ---------------------------------------------------------------------------
# recover
# ---------------------------------------------------------------------------


@app.command()
def recover() -> None:
    """Mark runs left Queued/Running by a crashed process as Interrupted.

    Do not use while another process is executing a run: its run would be
    marked Interrupted as well.
    """
    from adr_engine.orchestration.coordinator import OrchestrationCoordinator

    settings = _settings()

    async def _recover():
        async with _state(settings) as factory:
            coordinator = OrchestrationCoordinator.from_settings(settings, factory)
            try:
                return await coordinator.recover_orphaned_runs()
            finally:
                await coordinator.close()

    interrupted = asyncio.run(_recover())
    if _json_output:
        _emit_json({"interrupted": interrupted})
    elif interrupted:
        console.print(f"[yellow]Marked {len(interrupted)} run(s) Interrupted:[/yellow]")
        for request_id in interrupted:
            console.print(f"  {request_id}")
    else:
        console.print("[green]No orphaned runs.[/green]")


# ---------------------------------------------------------------------------
# archive
# ---------------------------------------------------------------------------


@app.command()
def archive() -> None:
    """Move finalized jobs and executions past retention to the archive tables."""
    from adr_engine.archival import ArchiveManager, RetentionPolicy

    settings = _settings()

    async def _archive():
        async with _state(settings) as factory, session_scope(factory) as session:
            manager = ArchiveManager(session, settings.tenant_id, RetentionPolicy.from_settings(settings))
            return await manager.run(datetime.now(UTC))

    result = asyncio.run(_archive())
    if _json_output:
        _emit_json({"jobs_archived": result.jobs_archived, "executions_archived": result.executions_archived})
    else:
        console.print(
            f"Archived [bold]{result.jobs_archived}[/bold] job(s) and "
            f"[bold]{result.executions_archived}[/bold] execution(s)."
        )


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


@app.command()
def sync(
    file: Path = typer.Option(
        ...,
        "--file",
        "-f",
        help="JSON array of account rows.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
) -> None:
    """Sync accounts from a JSON snapshot instead of the configured feed."""
    from adr_engine.errors import AccountSourceError
    from adr_engine.sync.account_sync import AccountSyncService, StaticAccountSource

    settings = _settings()
    try:
        source = StaticAccountSource.from_file(file)
    except AccountSourceError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=EXIT_ERROR) from exc

    async def _sync():
        rows = await source.fetch_accounts()
        async with _state(settings) as factory, session_scope(factory) as session:
            return await AccountSyncService(session, settings.tenant_id).sync_accounts(rows, datetime.now(UTC))

    result = asyncio.run(_sync())
    if _json_output:
        _emit_json({**result.model_dump(exclude={"error_messages", "errors"}), "rejected": source.rejected})
    else:
        display_sync_result(console, result, source.rejected)
