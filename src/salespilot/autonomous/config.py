"""Autonomous-mode configuration and its single writer.

The configuration lives in one YAML document under an ``autonomous`` key::

    autonomous:
      enabled: true
      schedule_cron: "0 9 * * 1-5"
      timezone: Europe/Berlin
      daily_cap: 50
      thresholds:
        auto_approve: 0.85
        review_required: 0.70
        disqualify: 0.50
      campaign_id: q2-outbound

Only :class:`AutonomousConfigManager` writes the file. Every change goes
through one of its setters, which validate the new value, stamp
``updated_at`` / ``updated_by`` and record an audit event.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from salespilot.audit import AuditLogger
from salespilot.campaigns.models import EnrollmentChannel
from salespilot.errors import ConfigurationError, InvalidStateTransitionError

logger = logging.getLogger(__name__)

CONFIG_SECTION = "autonomous"


class ScoreThresholds(BaseModel):
    """Composite score gates.

    Attributes:
        auto_approve: Contacts at or above this are synced and enrolled
        review_required: Contacts at or above this are queued for review
        disqualify: Contacts below this are disqualified
    """

    model_config = ConfigDict(extra="forbid")

    auto_approve: float = Field(default=0.85, ge=0.0, le=1.0)
    review_required: float = Field(default=0.70, ge=0.0, le=1.0)
    disqualify: float = Field(default=0.50, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _ordered(self) -> "ScoreThresholds":
        if not self.disqualify <= self.review_required <= self.auto_approve:
            raise ValueError(
                "thresholds must satisfy disqualify <= review_required <= auto_approve "
                f"(got disqualify={self.disqualify}, review_required={self.review_required}, "
                f"auto_approve={self.auto_approve})"
            )
        return self


class AutonomousConfig(BaseModel):
    """Autonomous-mode settings.

    ``emergency_stopped`` overrides ``enabled``: a stopped configuration never
    runs a cycle, whatever ``enabled`` says.
    """

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    schedule_cron: str = Field(default="0 9 * * 1-5", description="Cycle schedule")
    timezone: str = Field(default="UTC", description="IANA zone for schedule and daily cap")
    daily_cap: int = Field(default=50, ge=0, le=10_000, description="Enrollments per day")
    thresholds: ScoreThresholds = Field(default_factory=ScoreThresholds)
    min_viability_score: float = Field(default=0.5, ge=0.0, le=1.0)
    discovery_limit: int = Field(default=25, ge=1, le=1000)
    icp_profile: Dict[str, Any] = Field(default_factory=dict)
    campaign_id: Optional[str] = None
    enrollment_channel: EnrollmentChannel = EnrollmentChannel.EMAIL
    follow_up_limit: int = Field(default=50, ge=0, le=10_000)
    stage_timeout_seconds: float = Field(default=900.0, gt=0)
    emergency_stopped: bool = False
    emergency_reason: Optional[str] = None
    max_consecutive_failures: int = Field(default=3, ge=1, le=100)
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    @field_validator("schedule_cron")
    @classmethod
    def _valid_cron(cls, v: str) -> str:
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v}")
        return v

    @field_validator("timezone")
    @classmethod
    def _valid_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v}") from exc
        return v

    @property
    def quality_threshold(self) -> float:
        return self.thresholds.auto_approve

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def mode(self) -> str:
        if self.emergency_stopped:
            return "emergency_stopped"
        return "enabled" if self.enabled else "disabled"

    @property
    def is_active(self) -> bool:
        return self.enabled and not self.emergency_stopped


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_validation_error(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


class AutonomousConfigManager:
    """Owns the autonomous configuration file.

    Attributes:
        config_path: Path to the YAML file
    """

    def __init__(
        self,
        config_path: Path,
        audit_logger: Optional[AuditLogger] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config_path = config_path
        self._audit = audit_logger
        self._clock = clock
        self._lock = threading.Lock()
        self._config: Optional[AutonomousConfig] = None

    @property
    def config(self) -> AutonomousConfig:
        if self._config is None:
            return self.load()
        return self._config

    def load(self) -> AutonomousConfig:
        """Read the configuration, falling back to defaults when the file is missing.

        Raises:
            ConfigurationError: If the file is not valid YAML or fails validation
        """
        if not self.config_path.exists():
            self._config = AutonomousConfig()
            return self._config
        try:
            with open(self.config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {self.config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.config_path} must contain a mapping")
        try:
            self._config = AutonomousConfig(**(data.get(CONFIG_SECTION) or {}))
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid autonomous configuration: {'; '.join(_format_validation_error(exc))}"
            ) from exc
        return self._config

    def save(self, config: AutonomousConfig) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        data = {CONFIG_SECTION: config.model_dump(mode="json", exclude_none=True)}
        tmp_path = self.config_path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        tmp_path.replace(self.config_path)
        self._config = config

    # ------------------------------------------------------------------
    # Setters
    # ------------------------------------------------------------------

    def update(self, *, operator: str, action: str = "update_config", **changes: Any) -> AutonomousConfig:
        """Apply ``changes``, persist them and audit the change.

        Raises:
            ConfigurationError: If the resulting configuration is invalid
        """
        with self._lock:
            current = self.config
            data = current.model_dump()
            data.update(changes)
            data["updated_at"] = self._clock()
            data["updated_by"] = operator
            try:
                updated = AutonomousConfig(**data)
            except ValidationError as exc:
                raise ConfigurationError(
                    "; ".join(_format_validation_error(exc)),
                    details={"changes": {k: str(v) for k, v in changes.items()}},
                ) from exc
            self.save(updated)

        changed = {
            key: value.model_dump(mode="json") if isinstance(value, BaseModel) else value
            for key, value in changes.items()
        }
        logger.info(
            "Autonomous configuration updated",
            extra={"action": action, "operator": operator, "changes": changed},
        )
        if self._audit:
            self._audit.record_action(
                source="autonomous_config",
                action=action,
                status="succeeded",
                operator=operator,
                metadata={"changes": changed, "mode": updated.mode},
            )
        return updated

    def enable(self, operator: str) -> AutonomousConfig:
        """Turn autonomous mode on. An emergency stop still takes precedence."""
        return self.update(operator=operator, action="enable", enabled=True)

    def disable(self, operator: str) -> AutonomousConfig:
        return self.update(operator=operator, action="disable", enabled=False)

    def emergency_stop(self, operator: str, reason: str) -> AutonomousConfig:
        return self.update(
            operator=operator,
            action="emergency_stop",
            emergency_stopped=True,
            emergency_reason=reason,
        )

    def resume_after_emergency(self, operator: str) -> AutonomousConfig:
        """Clear an emergency stop.

        Raises:
            InvalidStateTransitionError: If no emergency stop is in effect
        """
        if not self.config.emergency_stopped:
            raise InvalidStateTransitionError(
                "Autonomous mode is not emergency-stopped",
                details={"mode": self.config.mode},
            )
        return self.update(
            operator=operator,
            action="resume_after_emergency",
            emergency_stopped=False,
            emergency_reason=None,
        )

    def set_daily_cap(self, cap: int, operator: str) -> AutonomousConfig:
        return self.update(operator=operator, action="set_daily_cap", daily_cap=cap)

    def set_quality_threshold(self, threshold: float, operator: str) -> AutonomousConfig:
        """Move the auto-approve gate, keeping the other thresholds.

        The gate cannot go below ``review_required``; lower that threshold
        first with :meth:`update`.

        Raises:
            ConfigurationError: If ``threshold`` is out of range or below
                ``review_required``
        """
        review_required = self.config.thresholds.review_required
        if threshold < review_required:
            raise ConfigurationError(
                f"Quality threshold {threshold:.2f} is below review_required "
                f"({review_required:.2f}); lower review_required first"
            )
        thresholds = {**self.config.thresholds.model_dump(), "auto_approve": threshold}
        return self.update(
            operator=operator, action="set_quality_threshold", thresholds=thresholds
        )

    def set_schedule(self, schedule_cron: str, operator: str) -> AutonomousConfig:
        return self.update(operator=operator, action="set_schedule", schedule_cron=schedule_cron)
