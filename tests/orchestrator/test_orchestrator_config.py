"""Tests for orchestrator configuration management."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from salespilot.errors import ConfigurationError
from salespilot.orchestrator.config import (
    BreakerConfig,
    ConfigurationManager,
    OrchestratorConfig,
    default_workspace,
)
from salespilot.orchestrator.config_cli import orchestrator_config_app
from salespilot.resilience import BreakerOptions


runner = CliRunner()


class TestOrchestratorConfig:
    def test_defaults(self, tmp_path: Path):
        config = OrchestratorConfig(workspace_dir=tmp_path)
        assert config.workers.max_workers == 4
        assert config.queue.capacity == 1000
        assert config.database_path == tmp_path / "salespilot.db"
        assert config.telemetry_dir == tmp_path / "telemetry"
        assert config.audit_dir == tmp_path / "audit"
        assert config.dependencies.crm == "hubspot"

    def test_workspace_from_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SALESPILOT_HOME", str(tmp_path / "home"))
        assert default_workspace() == tmp_path / "home"
        assert OrchestratorConfig().workspace_dir == tmp_path / "home"

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValueError):
            OrchestratorConfig(unexpected=True)

    def test_worker_bounds(self):
        with pytest.raises(ValueError):
            OrchestratorConfig(workers={"max_workers": 0})

    def test_breaker_options_for(self):
        breakers = BreakerConfig(overrides={"hubspot": BreakerOptions(timeout_seconds=20)})
        assert breakers.options_for("hubspot").timeout_seconds == 20
        assert breakers.options_for("lemlist").timeout_seconds == 15
        assert breakers.options_for("custom").timeout_seconds == 10

    def test_default_budgets_fit(self, tmp_path: Path):
        assert OrchestratorConfig(workspace_dir=tmp_path).budget_violations() == []

    def test_budget_violation_reported(self, tmp_path: Path):
        config = OrchestratorConfig(
            workspace_dir=tmp_path,
            breakers={"overrides": {"hubspot": {"timeout_seconds": 3}}},
        )
        problems = config.budget_violations()
        assert len(problems) == 1
        assert problems[0].startswith("breakers.hubspot")


class TestConfigurationManager:
    def test_load_defaults_when_missing(self, tmp_path: Path):
        manager = ConfigurationManager(tmp_path / "config.yaml")
        assert manager.load().version == 1

    def test_save_and_load_round_trip(self, tmp_path: Path):
        manager = ConfigurationManager(tmp_path / "config.yaml")
        config = OrchestratorConfig(workspace_dir=tmp_path, workers={"max_workers": 6})
        manager.save(config)

        loaded = manager.load()
        assert loaded.workers.max_workers == 6
        assert loaded.workspace_dir == tmp_path

    def test_load_invalid_raises(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"workers": {"max_workers": 100}}))
        with pytest.raises(ConfigurationError):
            ConfigurationManager(path).load()

    def test_validate_reports_errors(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"queue": {"capacity": 0}}))
        errors = ConfigurationManager(path).validate()
        assert errors and errors[0].startswith("queue.capacity")

    def test_validate_missing_file(self, tmp_path: Path):
        errors = ConfigurationManager(tmp_path / "none.yaml").validate()
        assert errors == [f"Configuration file not found: {tmp_path / 'none.yaml'}"]

    def test_validate_malformed_yaml(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("workers: [unclosed\n")
        errors = ConfigurationManager(path).validate()
        assert errors and errors[0].startswith("Invalid YAML")


class TestConfigCli:
    def test_init_then_validate(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SALESPILOT_HOME", str(tmp_path))
        path = tmp_path / "config.yaml"
        result = runner.invoke(orchestrator_config_app, ["init", "--config", str(path)])
        assert result.exit_code == 0
        assert path.exists()

        result = runner.invoke(
            orchestrator_config_app, ["validate", "--config", str(path), "--verbose"]
        )
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output
        assert "Workers: 4" in result.output

    def test_validate_failure_exit_code(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"workers": {"max_workers": -1}}))
        result = runner.invoke(orchestrator_config_app, ["validate", "--config", str(path)])
        assert result.exit_code == 1
        assert "workers.max_workers" in result.output

    def test_show_section_json(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        ConfigurationManager(path).save(OrchestratorConfig(workspace_dir=tmp_path))
        result = runner.invoke(
            orchestrator_config_app,
            ["show", "--config", str(path), "--section", "dependencies", "--format", "json"],
        )
        assert result.exit_code == 0
        assert '"crm": "hubspot"' in result.output

    def test_show_unknown_section(self, tmp_path: Path):
        result = runner.invoke(
            orchestrator_config_app,
            ["show", "--config", str(tmp_path / "missing.yaml"), "--section", "nope"],
        )
        assert result.exit_code == 1
        assert "Unknown section" in result.output
