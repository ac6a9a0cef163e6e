"""Rich output formatting for the ADR CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from adr_engine.models.run import PhaseResult, RunSummary, SyncResult


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "Completed": "green",
    "Failed": "red",
    "Running": "yellow",
    "Queued": "dim",
    "Cancelled": "dim red",
    "Interrupted": "magenta",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value is not None else "-"


def _fmt_counts(result: PhaseResult) -> str:
    counts = result.model_dump(exclude={"error_messages"})
    return ", ".join(f"{key}={value}" for key, value in counts.items() if value)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def display_run_summary(console: Console, summary: RunSummary) -> None:
    """Render one run with its per-phase tallies.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    summary:
        The run to display.
    """
    header_lines = [
        f"[bold]Run:[/bold]          {summary.request_id}",
        f"[bold]Status:[/bold]       {_coloured_status(summary.status.value)}",
        f"[bold]Requested by:[/bold] {summary.requested_by}",
        f"[bold]Started:[/bold]      {_fmt_time(summary.started_at)}",
        f"[bold]Completed:[/bold]    {_fmt_time(summary.completed_at)}",
    ]
    if summary.current_step:
        header_lines.append(
            f"[bold]Step:[/bold]         {summary.current_step} "
            f"({summary.current_progress}/{summary.total_items})"
        )
    if summary.error_message:
        header_lines.append(f"[bold]Error:[/bold]        [red]{summary.error_message}[/red]")
    console.print(Panel("\n".join(header_lines), title="Orchestration Run", border_style="blue"))

    phases = summary.results.phases()
    if not phases:
        console.print("[dim]No phase results recorded.[/dim]")
        return

    table = Table(title="Phase Results", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Phase", style="bold")
    table.add_column("Counts")
    table.add_column("Failures", justify="right")
    for name, result in phases.items():
        failures = result.failure_count
        colour = "red" if failures else "green"
        table.add_row(name, _fmt_counts(result) or "-", f"[{colour}]{failures}[/{colour}]")
    console.print(table)

    messages = summary.results.error_messages()
    if messages:
        console.print(f"[bold red]{len(messages)} error message(s):[/bold red]")
        for message in messages[:20]:
            console.print(f"  [red]-[/red] {message}")
        if len(messages) > 20:
            console.print(f"  [dim]... and {len(messages) - 20} more[/dim]")


def display_run_list(console: Console, runs: list[RunSummary]) -> None:
    """Render a table of recent runs, newest first."""
    if not runs:
        console.print("[dim]No orchestration runs recorded.[/dim]")
        return

    table = Table(title="Orchestration Runs", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Request ID", style="bold")
    table.add_column("Status")
    table.add_column("Requested by")
    table.add_column("Started")
    table.add_column("Completed")
    table.add_column("Failures", justify="right")

    for run in runs:
        table.add_row(
            run.request_id,
            _coloured_status(run.status.value),
            run.requested_by,
            _fmt_time(run.started_at),
            _fmt_time(run.completed_at),
            str(run.results.total_failures),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def display_job_counts(console: Console, counts: dict[str, int]) -> None:
    """Render live job counts per status."""
    if not counts:
        console.print("[dim]No jobs.[/dim]")
        return

    table = Table(title="Jobs by Status", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Status", style="bold")
    table.add_column("Jobs", justify="right")
    for status, count in sorted(counts.items()):
        table.add_row(status, str(count))
    table.add_row("[bold]Total[/bold]", f"[bold]{sum(counts.values())}[/bold]")
    console.print(table)


# ---------------------------------------------------------------------------
# Billing dates
# ---------------------------------------------------------------------------


def display_next_date(
    console: Console,
    *,
    period_type: str,
    anchor: date,
    next_run_date: date,
    window: tuple[date, date],
    status: str,
) -> None:
    """Render the projected next billing date and its search window."""
    lines = [
        f"[bold]Period type:[/bold]   {period_type}",
        f"[bold]Anchor:[/bold]        {anchor.isoformat()}",
        f"[bold]Next run date:[/bold] {next_run_date.isoformat()}",
        f"[bold]Window:[/bold]        {window[0].isoformat()} .. {window[1].isoformat()}",
        f"[bold]Status:[/bold]        {status}",
    ]
    console.print(Panel("\n".join(lines), title="Next Billing Date", border_style="cyan"))


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


def display_sync_result(console: Console, result: SyncResult, rejected: list[str]) -> None:
    """Render the outcome of an account sync."""
    table = Table(title="Account Sync", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Processed", justify="right")
    table.add_column("Inserted", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Marked deleted", justify="right")
    table.add_row(
        str(result.total_processed),
        f"[green]{result.inserted}[/green]",
        f"[yellow]{result.updated}[/yellow]",
        f"[dim red]{result.marked_deleted}[/dim red]",
    )
    console.print(table)
    for message in rejected:
        console.print(f"  [yellow]Rejected:[/yellow] {message}")
