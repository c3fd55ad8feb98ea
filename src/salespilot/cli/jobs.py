"""Job queue commands: inspect, submit and cancel pipeline jobs."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from salespilot.errors import ClientError, ConfigurationError, JobNotFoundError, QueueFullError
from salespilot.orchestrator import JobQueue, JobStatus, JobType
from salespilot.orchestrator.config import ConfigurationManager, default_workspace

console = Console()
jobs_app = typer.Typer(help="Inspect and manage pipeline jobs")

_STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.RUNNING: "blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "dim",
}


def _config_option() -> Optional[Path]:
    return typer.Option(
        None,
        "--config",
        help="Path to configuration file (default: $SALESPILOT_HOME/config.yaml)",
    )


def _open_queue(config_path: Optional[Path]) -> JobQueue:
    path = config_path or default_workspace() / "config.yaml"
    try:
        config = ConfigurationManager(config_path=path).load()
    except ConfigurationError as exc:
        console.print(f"[red]Failed to load configuration: {exc}[/red]")
        raise typer.Exit(1)
    return JobQueue(config.database_path, capacity=config.queue.capacity)


def _format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _dump(data, format_output: str) -> None:
    if format_output == "json":
        typer.echo(json.dumps(data, indent=2, default=str))
    else:
        typer.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


@jobs_app.command("list")
def jobs_list(
    config_path: Optional[Path] = _config_option(),
    status: Optional[str] = typer.Option(
        None, "--status", help="Filter by status: pending, running, completed, failed, cancelled"
    ),
    job_type: Optional[str] = typer.Option(
        None, "--job-type", help="Filter by type: discover, enrich, sync, outreach, custom-workflow"
    ),
    limit: int = typer.Option(20, "--limit", help="Limit results (default: 20)"),
    format_output: str = typer.Option("table", "--format", help="Output format: table, json, or yaml"),
) -> None:
    """List jobs, newest first."""
    try:
        status_filter = JobStatus(status.lower()) if status else None
        type_filter = JobType(job_type.lower()) if job_type else None
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    queue = _open_queue(config_path)
    try:
        jobs = queue.list_jobs(status=status_filter, job_type=type_filter, limit=limit)
    finally:
        queue.close()

    if format_output in ("json", "yaml"):
        _dump([job.to_dict() for job in jobs], format_output)
        return

    if not jobs:
        console.print("[yellow]No jobs found matching criteria[/yellow]")
        return

    table = Table(title=f"Jobs ({len(jobs)} shown)")
    table.add_column("Job ID", style="cyan", no_wrap=True)
    table.add_column("Type", style="green")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Created", style="magenta")
    table.add_column("Reason")

    for job in jobs:
        style = _STATUS_STYLES[job.status]
        table.add_row(
            job.job_id[:8],
            job.job_type.value,
            job.priority.value,
            f"[{style}]{job.status.value}[/{style}]",
            f"{job.progress:.0%}",
            _format_timestamp(job.created_at),
            job.reason.value if job.reason else "",
        )
    console.print(table)


@jobs_app.command("status")
def jobs_status(
    job_id: str = typer.Argument(..., help="Job ID to display"),
    config_path: Optional[Path] = _config_option(),
    format_output: str = typer.Option("table", "--format", help="Output format: table, json, or yaml"),
) -> None:
    """Display one job's status, progress and failure reason."""
    queue = _open_queue(config_path)
    try:
        job = queue.get_status(job_id)
    except JobNotFoundError:
        console.print(f"[red]Job {job_id} not found[/red]")
        raise typer.Exit(1)
    finally:
        queue.close()

    if format_output in ("json", "yaml"):
        _dump(job.to_dict(), format_output)
        return

    style = _STATUS_STYLES[job.status]
    lines = [
        f"[bold]Type:[/bold] {job.job_type.value}",
        f"[bold]Priority:[/bold] {job.priority.value}",
        f"[bold]Status:[/bold] [{style}]{job.status.value}[/{style}]",
        f"[bold]Progress:[/bold] {job.progress:.0%}",
        f"[bold]Created:[/bold] {_format_timestamp(job.created_at)}",
        f"[bold]Started:[/bold] {_format_timestamp(job.started_at)}",
        f"[bold]Finished:[/bold] {_format_timestamp(job.completed_at)}",
    ]
    if job.duration_seconds is not None:
        lines.append(f"[bold]Duration:[/bold] {job.duration_seconds:.1f}s")
    if job.cancel_requested and not job.is_terminal:
        lines.append("[yellow]Cancellation requested[/yellow]")
    if job.error:
        lines.append(f"[bold]Error:[/bold] {job.error}")
    if job.reason:
        lines.append(f"[bold]Reason:[/bold] {job.reason.value}")
    if job.requeued_from:
        lines.append(f"[bold]Requeued from:[/bold] {job.requeued_from}")
    console.print(Panel("\n".join(lines), title=f"Job {job.job_id}", border_style="cyan"))


@jobs_app.command("cancel")
def jobs_cancel(
    job_id: str = typer.Argument(..., help="Job ID to cancel"),
    operator: str = typer.Option("cli", "--operator", help="Operator recorded with the action"),
    config_path: Optional[Path] = _config_option(),
) -> None:
    """Cancel a pending job, or ask a running job to stop at its next checkpoint."""
    queue = _open_queue(config_path)
    try:
        job = queue.cancel(job_id, operator=operator)
    except JobNotFoundError:
        typer.echo(f"❌ Job {job_id} not found")
        raise typer.Exit(code=1)
    finally:
        queue.close()

    if job.status == JobStatus.CANCELLED:
        typer.echo(f"✅ Cancelled job {job_id}")
    elif job.status == JobStatus.RUNNING:
        typer.echo(f"✅ Cancellation requested for running job {job_id}")
    else:
        typer.echo(f"Job {job_id} already finished ({job.status.value})")


@jobs_app.command("enqueue")
def jobs_enqueue(
    job_type: str = typer.Argument(..., help="discover, enrich, sync, outreach or custom-workflow"),
    payload: str = typer.Option("{}", "--payload", help="JSON payload"),
    priority: str = typer.Option("normal", "--priority", help="normal or high"),
    config_path: Optional[Path] = _config_option(),
) -> None:
    """Submit a job to the queue."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        typer.echo(f"❌ Payload is not valid JSON: {exc}")
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.echo("❌ Payload must be a JSON object")
        raise typer.Exit(code=1)

    queue = _open_queue(config_path)
    try:
        job_id = queue.enqueue(job_type, data, priority=priority)
    except (ClientError, QueueFullError) as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=1)
    finally:
        queue.close()
    typer.echo(f"✅ Enqueued {job_type} job {job_id}")


@jobs_app.command("stats")
def jobs_stats(
    config_path: Optional[Path] = _config_option(),
    format_output: str = typer.Option("table", "--format", help="Output format: table, json, or yaml"),
) -> None:
    """Show queue depth, utilisation and job counts."""
    queue = _open_queue(config_path)
    try:
        stats = queue.stats()
    finally:
        queue.close()

    if format_output in ("json", "yaml"):
        _dump(stats, format_output)
        return

    table = Table(title="Queue Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total jobs", str(stats["total"]))
    for status, count in stats["by_status"].items():
        table.add_row(f"  {status}", str(count))
    for priority, count in stats["pending_by_priority"].items():
        table.add_row(f"Pending ({priority})", str(count))
    table.add_row("Active / capacity", f"{stats['active']} / {stats['capacity']}")
    table.add_row("Utilization", f"{stats['utilization']:.1%}")
    avg = stats["avg_duration_seconds"]
    table.add_row("Avg duration", f"{avg:.1f}s" if avg is not None else "-")
    console.print(table)


__all__ = ["jobs_app"]
