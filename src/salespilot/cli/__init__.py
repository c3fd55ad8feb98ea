"""Command line entry points for SalesPilot."""

from typer import Typer

from ..orchestrator.config_cli import orchestrator_config_app
from .autonomous import autonomous_app
from .jobs import jobs_app


cli = Typer(help="SalesPilot command line tools")
cli.add_typer(jobs_app, name="jobs")
cli.add_typer(autonomous_app, name="autonomous")
cli.add_typer(orchestrator_config_app, name="config")

__all__ = ["cli"]
