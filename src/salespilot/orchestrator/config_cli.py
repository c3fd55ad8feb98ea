"""CLI commands for orchestrator configuration management."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
import yaml

from salespilot.errors import ConfigurationError

from .config import ConfigurationManager, OrchestratorConfig, default_workspace

orchestrator_config_app = typer.Typer(help="Manage orchestrator configuration", name="config")


def _config_option() -> Optional[Path]:
    return typer.Option(
        None,
        "--config",
        help="Path to configuration file (default: $SALESPILOT_HOME/config.yaml)",
    )


@orchestrator_config_app.command("validate")
def validate_config(
    config_path: Optional[Path] = _config_option(),
    verbose: bool = typer.Option(False, "--verbose", help="Show detailed validation output"),
) -> None:
    """Validate orchestrator configuration.

    Reports schema errors and dependencies whose retry budget does not fit
    inside the circuit breaker timeout.
    """
    path = config_path or default_workspace() / "config.yaml"
    manager = ConfigurationManager(config_path=path)
    errors = manager.validate()

    if errors:
        typer.echo(f"❌ Configuration validation failed: {path}")
        typer.echo("\nErrors:")
        for error in errors:
            typer.echo(f"  - {error}")
        raise typer.Exit(code=1)

    typer.echo(f"✅ Configuration is valid: {path}")
    if verbose:
        config = manager.load()
        typer.echo("\nConfiguration details:")
        typer.echo(f"  Version: {config.version}")
        typer.echo(f"  Workspace: {config.workspace_dir}")
        typer.echo(f"  Workers: {config.workers.max_workers}")
        typer.echo(f"  Queue: {config.database_path} (capacity {config.queue.capacity})")
        typer.echo(f"  Services: {', '.join(config.dependencies.services())}")
        typer.echo(f"  Telemetry: {'enabled' if config.telemetry.enabled else 'disabled'}")


@orchestrator_config_app.command("show")
def show_config(
    config_path: Optional[Path] = _config_option(),
    section: Optional[str] = typer.Option(
        None,
        "--section",
        help="Show a single section (workers, queue, retry, breakers, dependencies, telemetry)",
    ),
    format: str = typer.Option("yaml", "--format", help="Output format (yaml or json)"),
) -> None:
    """Display the effective orchestrator configuration."""
    path = config_path or default_workspace() / "config.yaml"
    try:
        config = ConfigurationManager(config_path=path).load()
    except ConfigurationError as exc:
        typer.echo(f"❌ Failed to load configuration: {exc}")
        raise typer.Exit(code=1)

    data = config.model_dump(mode="json")
    if section:
        if section not in data:
            typer.echo(f"❌ Unknown section: {section}")
            typer.echo(f"Available sections: {', '.join(data.keys())}")
            raise typer.Exit(code=1)
        data = {section: data[section]}

    if format == "json":
        output = json.dumps(data, indent=2, default=str)
    else:
        output = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    typer.echo(output)


@orchestrator_config_app.command("init")
def init_config(
    config_path: Optional[Path] = _config_option(),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    """Write a configuration file populated with defaults."""
    path = config_path or default_workspace() / "config.yaml"
    if path.exists() and not force:
        typer.echo(f"❌ Configuration already exists: {path} (use --force to overwrite)")
        raise typer.Exit(code=1)
    ConfigurationManager(config_path=path).save(OrchestratorConfig())
    typer.echo(f"✅ Wrote default configuration: {path}")
