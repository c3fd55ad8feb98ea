"""Orchestrator configuration management with validation.

Pydantic models for the worker pool, job queue, retry policies, circuit
breakers and telemetry, persisted as YAML by :class:`ConfigurationManager`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from salespilot.audit import AuditLogger
from salespilot.errors import ConfigurationError
from salespilot.resilience.circuit_breaker import SERVICE_PRESETS, BreakerOptions
from salespilot.resilience.retry_policy import RetryPolicyRegistry


def default_workspace() -> Path:
    """Workspace root, overridable with ``SALESPILOT_HOME``."""
    return Path(os.environ.get("SALESPILOT_HOME", Path.home() / ".salespilot")).expanduser()


class WorkerConfig(BaseModel):
    """Worker pool configuration.

    Attributes:
        max_workers: Concurrent workers (1-32)
        poll_interval_seconds: Idle polling interval of the dispatcher
    """

    max_workers: int = Field(default=4, ge=1, le=32, description="Concurrent workers")
    poll_interval_seconds: float = Field(
        default=0.1, gt=0, le=10, description="Idle polling interval"
    )


class QueueConfig(BaseModel):
    """Job queue configuration.

    Attributes:
        database_path: SQLite database path (defaults inside the workspace)
        capacity: Hard limit on pending plus running jobs
        retention_days: Finished jobs older than this are removed by cleanup
    """

    database_path: Optional[Path] = Field(default=None, description="SQLite database path")
    capacity: int = Field(default=1000, ge=1, le=1_000_000, description="Active job limit")
    retention_days: int = Field(default=90, ge=1, le=3650, description="Finished job retention")

    @field_validator("database_path")
    @classmethod
    def expand_database_path(cls, v: Optional[Path]) -> Optional[Path]:
        return v.expanduser() if v is not None else None


class RetryConfig(BaseModel):
    """Retry policy configuration.

    Attributes:
        policies_path: Optional YAML file with per-dependency overrides
    """

    policies_path: Optional[Path] = Field(
        default=None, description="YAML file with retry_policies overrides"
    )


class BreakerConfig(BaseModel):
    """Circuit breaker overrides keyed by dependency name.

    Unlisted dependencies use the built-in service presets.
    """

    overrides: Dict[str, BreakerOptions] = Field(default_factory=dict)

    def options_for(self, name: str) -> BreakerOptions:
        return self.overrides.get(name) or SERVICE_PRESETS.get(name) or BreakerOptions()


class DependencyConfig(BaseModel):
    """Which external service backs each pipeline role."""

    discovery: str = "explorium"
    enrichment: str = "explorium"
    scoring: str = "explorium"
    crm: str = "hubspot"
    email: str = "lemlist"
    linkedin: str = "phantombuster"

    def services(self) -> List[str]:
        return sorted(set(self.model_dump().values()))


class TelemetryConfig(BaseModel):
    """Telemetry configuration.

    Attributes:
        enabled: Enable telemetry collection
        output_dir: Telemetry output directory (defaults inside the workspace)
    """

    enabled: bool = Field(default=True, description="Enable telemetry collection")
    output_dir: Optional[Path] = Field(default=None, description="Telemetry output directory")


class OrchestratorConfig(BaseModel):
    """Main orchestrator configuration.

    Attributes:
        version: Configuration schema version
        workspace_dir: Root directory for databases, logs and state files
        workers: Worker pool configuration
        queue: Job queue configuration
        retry: Retry policy configuration
        breakers: Circuit breaker overrides
        dependencies: Service used for each pipeline role
        telemetry: Telemetry configuration
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    version: int = Field(default=1, description="Configuration schema version")
    workspace_dir: Path = Field(default_factory=default_workspace)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    breakers: BreakerConfig = Field(default_factory=BreakerConfig)
    dependencies: DependencyConfig = Field(default_factory=DependencyConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @field_validator("workspace_dir")
    @classmethod
    def expand_workspace(cls, v: Path) -> Path:
        return v.expanduser()

    @property
    def database_path(self) -> Path:
        return self.queue.database_path or self.workspace_dir / "salespilot.db"

    @property
    def telemetry_dir(self) -> Path:
        return self.telemetry.output_dir or self.workspace_dir / "telemetry"

    @property
    def audit_dir(self) -> Path:
        return self.workspace_dir / "audit"

    @property
    def autonomous_config_path(self) -> Path:
        return self.workspace_dir / "autonomous.yaml"

    def budget_violations(self) -> List[str]:
        """Dependencies whose retry budget does not fit inside the breaker timeout."""
        registry = RetryPolicyRegistry(self.retry.policies_path)
        problems = []
        for service in self.dependencies.services():
            budget = registry.get_policy(service).budget_seconds()
            timeout = self.breakers.options_for(service).timeout_seconds
            if budget >= timeout:
                problems.append(
                    f"breakers.{service}: retry budget {budget:.2f}s is not below "
                    f"timeout {timeout:.2f}s"
                )
        return problems


def _format_validation_error(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


class ConfigurationManager:
    """Manages orchestrator configuration with validation and audit logging.

    Attributes:
        config_path: Path to configuration file
        audit_logger: Optional audit logger for configuration changes
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.config_path = config_path or default_workspace() / "config.yaml"
        self._audit = audit_logger
        self._config: Optional[OrchestratorConfig] = None

    def load(self) -> OrchestratorConfig:
        """Load and validate configuration.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if self.config_path.exists():
            data = self._read_yaml(self.config_path)
            try:
                self._config = OrchestratorConfig(**data)
            except ValidationError as exc:
                raise ConfigurationError(
                    f"Invalid configuration: {'; '.join(_format_validation_error(exc))}"
                ) from exc
        else:
            self._config = OrchestratorConfig()
        return self._config

    def save(self, config: OrchestratorConfig) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json", exclude_none=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

        if self._audit:
            self._audit.record_action(
                source="configuration_manager",
                action="save_configuration",
                status="succeeded",
                metadata={"config_path": str(self.config_path)},
            )

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate configuration without keeping it.

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self.config_path
        if not path.exists():
            return [f"Configuration file not found: {path}"]

        try:
            config = OrchestratorConfig(**self._read_yaml(path))
        except ConfigurationError as exc:
            return [exc.message]
        except ValidationError as exc:
            return _format_validation_error(exc)

        try:
            return config.budget_violations()
        except ConfigurationError as exc:
            return [exc.message]

    @staticmethod
    def _read_yaml(path: Path) -> Dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping")
        return data
