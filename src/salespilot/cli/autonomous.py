"""Operator controls for autonomous (YOLO) mode.

Every command goes through :class:`AutonomousConfigManager`, so changes are
validated, stamped and written to the audit log. A running scheduler picks
them up at its next stage boundary.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from salespilot.audit import AuditLogger
from salespilot.autonomous import (
    AutonomousConfig,
    AutonomousConfigManager,
    CronScheduleTrigger,
    Decision,
    ReviewStatus,
    ReviewStore,
    RunStateStore,
)
from salespilot.errors import ClientError, ConfigurationError, InvalidStateTransitionError
from salespilot.orchestrator.config import ConfigurationManager, default_workspace

console = Console()
autonomous_app = typer.Typer(help="Control autonomous prospecting mode")
review_app = typer.Typer(help="Contacts held back for manual review")
autonomous_app.add_typer(review_app, name="review")

_MODE_STYLES = {"enabled": "green", "disabled": "yellow", "emergency_stopped": "bold red"}


@dataclass
class _Workspace:
    manager: AutonomousConfigManager
    run_state: RunStateStore
    review_path: Path
    audit: AuditLogger


def _config_option() -> Optional[Path]:
    return typer.Option(
        None,
        "--config",
        help="Path to configuration file (default: $SALESPILOT_HOME/config.yaml)",
    )


def _operator_option() -> str:
    return typer.Option("cli", "--operator", help="Operator recorded in the audit log")


def _open(config_path: Optional[Path]) -> _Workspace:
    path = config_path or default_workspace() / "config.yaml"
    try:
        config = ConfigurationManager(config_path=path).load()
    except ConfigurationError as exc:
        typer.echo(f"❌ Failed to load configuration: {exc}")
        raise typer.Exit(code=1)
    audit = AuditLogger(config.audit_dir)
    return _Workspace(
        manager=AutonomousConfigManager(config.autonomous_config_path, audit),
        run_state=RunStateStore(config.workspace_dir / "run_state.json"),
        review_path=config.workspace_dir / "review.db",
        audit=audit,
    )


def _describe(config: AutonomousConfig) -> str:
    style = _MODE_STYLES[config.mode]
    return f"[{style}]{config.mode}[/{style}]"


def _apply(action, success: str) -> AutonomousConfig:
    try:
        config = action()
    except (ConfigurationError, InvalidStateTransitionError) as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=1)
    typer.echo(f"✅ {success}")
    return config


@autonomous_app.command("status")
def autonomous_status(
    config_path: Optional[Path] = _config_option(),
    format_output: str = typer.Option("table", "--format", help="Output format: table, json, or yaml"),
) -> None:
    """Show mode, schedule, today's counters and the review queue."""
    workspace = _open(config_path)
    try:
        config = workspace.manager.load()
        state = workspace.run_state.load()
    except ConfigurationError as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=1)
    reviews = ReviewStore(workspace.review_path)
    try:
        review_counts = reviews.counts()
    finally:
        reviews.close()

    trigger = CronScheduleTrigger(config.schedule_cron, config.tz)
    next_run = trigger.get_next_fire_time(None, datetime.now(config.tz))
    data = {
        "mode": config.mode,
        "emergency_reason": config.emergency_reason,
        "schedule_cron": config.schedule_cron,
        "timezone": config.timezone,
        "next_run_at": next_run.isoformat() if config.is_active else None,
        "daily_cap": config.daily_cap,
        "quality_threshold": config.quality_threshold,
        "campaign_id": config.campaign_id,
        "updated_at": config.updated_at.isoformat() if config.updated_at else None,
        "updated_by": config.updated_by,
        "review_queue": review_counts,
        "run_state": state.model_dump(mode="json"),
    }
    if format_output == "json":
        typer.echo(json.dumps(data, indent=2))
        return
    if format_output == "yaml":
        typer.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
        return

    lines = [
        f"[bold]Mode:[/bold] {_describe(config)}",
        f"[bold]Schedule:[/bold] {config.schedule_cron} ({config.timezone})",
        f"[bold]Next run:[/bold] {data['next_run_at'] or '-'}",
        f"[bold]Daily cap:[/bold] {config.daily_cap}",
        f"[bold]Quality threshold:[/bold] {config.quality_threshold:.2f}",
        f"[bold]Campaign:[/bold] {config.campaign_id or '[yellow]not set[/yellow]'}",
    ]
    if config.emergency_stopped:
        lines.append(f"[bold red]Emergency reason:[/bold red] {config.emergency_reason}")
    if config.updated_by:
        lines.append(f"[dim]Last changed by {config.updated_by} at {data['updated_at']}[/dim]")
    console.print(Panel("\n".join(lines), title="Autonomous Mode", border_style="cyan"))

    table = Table(title=f"Today ({state.day.isoformat() if state.day else 'no cycles yet'})")
    table.add_column("Counter", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Discovered", str(state.discovered_today))
    table.add_row("Enriched", str(state.enriched_today))
    table.add_row("Synced", str(state.synced_today))
    table.add_row("Enrolled", f"{state.enrolled_today} / {config.daily_cap}")
    table.add_row("Follow-ups", str(state.follow_ups_today))
    table.add_row("Cycles run", str(state.cycles_run))
    table.add_row("Cycles failed", str(state.cycles_failed))
    table.add_row(
        "Consecutive failures",
        f"{state.consecutive_failures} / {config.max_consecutive_failures}",
    )
    table.add_row("Awaiting review", str(sum(review_counts.values())))
    console.print(table)
    if state.last_error:
        console.print(f"[red]Last error:[/red] {state.last_error}")


@autonomous_app.command("enable")
def autonomous_enable(
    config_path: Optional[Path] = _config_option(),
    operator: str = _operator_option(),
) -> None:
    """Turn autonomous mode on."""
    workspace = _open(config_path)
    config = _apply(lambda: workspace.manager.enable(operator), "Autonomous mode enabled")
    if config.emergency_stopped:
        typer.echo("⚠️  Emergency stop is still in effect; run 'salespilot autonomous resume'")


@autonomous_app.command("disable")
def autonomous_disable(
    config_path: Optional[Path] = _config_option(),
    operator: str = _operator_option(),
) -> None:
    """Turn autonomous mode off. A running cycle stops at its next stage."""
    workspace = _open(config_path)
    _apply(lambda: workspace.manager.disable(operator), "Autonomous mode disabled")


@autonomous_app.command("emergency-stop")
def autonomous_emergency_stop(
    reason: str = typer.Option(..., "--reason", help="Why autonomous mode is being stopped"),
    config_path: Optional[Path] = _config_option(),
    operator: str = _operator_option(),
) -> None:
    """Stop autonomous mode until an operator resumes it."""
    workspace = _open(config_path)
    _apply(
        lambda: workspace.manager.emergency_stop(operator, reason),
        f"Emergency stop recorded: {reason}",
    )


@autonomous_app.command("resume")
def autonomous_resume(
    config_path: Optional[Path] = _config_option(),
    operator: str = _operator_option(),
) -> None:
    """Clear an emergency stop and reset the consecutive failure count."""
    workspace = _open(config_path)
    config = _apply(
        lambda: workspace.manager.resume_after_emergency(operator),
        "Emergency stop cleared",
    )
    state = workspace.run_state.load()
    state.consecutive_failures = 0
    workspace.run_state.save(state)
    console.print(f"Mode is now {_describe(config)}")


@autonomous_app.command("set-cap")
def autonomous_set_cap(
    cap: int = typer.Argument(..., help="Maximum contacts to prospect per day"),
    config_path: Optional[Path] = _config_option(),
    operator: str = _operator_option(),
) -> None:
    """Change the daily outreach cap."""
    workspace = _open(config_path)
    _apply(lambda: workspace.manager.set_daily_cap(cap, operator), f"Daily cap set to {cap}")


@autonomous_app.command("set-threshold")
def autonomous_set_threshold(
    threshold: float = typer.Argument(..., help="Composite score needed for automatic outreach"),
    config_path: Optional[Path] = _config_option(),
    operator: str = _operator_option(),
) -> None:
    """Change the auto-approve quality threshold."""
    workspace = _open(config_path)
    _apply(
        lambda: workspace.manager.set_quality_threshold(threshold, operator),
        f"Quality threshold set to {threshold:.2f}",
    )


@review_app.command("list")
def review_list(
    decision: Optional[str] = typer.Option(
        None, "--decision", help="Filter by decision: review, low_priority, disqualified, deferred"
    ),
    limit: int = typer.Option(50, "--limit", help="Limit results (default: 50)"),
    config_path: Optional[Path] = _config_option(),
) -> None:
    """List pending contacts, best score first."""
    try:
        decision_filter = Decision(decision) if decision else None
    except ValueError as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=1)

    workspace = _open(config_path)
    reviews = ReviewStore(workspace.review_path)
    try:
        items = reviews.list(status=ReviewStatus.PENDING, decision=decision_filter, limit=limit)
    finally:
        reviews.close()

    if not items:
        console.print("[yellow]Nothing awaiting review[/yellow]")
        return
    table = Table(title=f"Awaiting Review ({len(items)})")
    table.add_column("Contact", style="cyan")
    table.add_column("Name")
    table.add_column("Company")
    table.add_column("Score", justify="right")
    table.add_column("Decision", style="yellow")
    for item in items:
        table.add_row(
            item.contact_id,
            item.contact.full_name or "",
            item.contact.company or "",
            f"{item.score:.2f}",
            item.decision.value,
        )
    console.print(table)


def _resolve(config_path: Optional[Path], contact_id: str, approved: bool, operator: str) -> None:
    workspace = _open(config_path)
    reviews = ReviewStore(workspace.review_path)
    try:
        item = reviews.resolve(contact_id, approved=approved, operator=operator)
    except ClientError as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=1)
    finally:
        reviews.close()
    workspace.audit.record_action(
        source="autonomous_cli",
        action=f"review_{item.status.value}",
        status="succeeded",
        subject_id=contact_id,
        operator=operator,
        metadata={"score": item.score, "decision": item.decision.value},
    )
    typer.echo(f"✅ {contact_id} {item.status.value}")


@review_app.command("approve")
def review_approve(
    contact_id: str = typer.Argument(..., help="Contact to approve"),
    config_path: Optional[Path] = _config_option(),
    operator: str = _operator_option(),
) -> None:
    """Mark a contact as approved for outreach."""
    _resolve(config_path, contact_id, True, operator)


@review_app.command("reject")
def review_reject(
    contact_id: str = typer.Argument(..., help="Contact to reject"),
    config_path: Optional[Path] = _config_option(),
    operator: str = _operator_option(),
) -> None:
    """Mark a contact as rejected."""
    _resolve(config_path, contact_id, False, operator)
