"""Process wiring: builds every component from an :class:`OrchestratorConfig`."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, Optional

from salespilot.audit import AuditLogger
from salespilot.autonomous import (
    AutonomousConfigManager,
    AutonomousScheduler,
    ReviewStore,
    RunStateStore,
)
from salespilot.campaigns import EnrollmentStateMachine, EnrollmentStore, EventInbox
from salespilot.orchestrator import JobQueue, StateMachineValidator, TelemetryRecorder, WorkerPool
from salespilot.orchestrator.config import OrchestratorConfig
from salespilot.pipeline import PipelineDependencies, PipelineHandlers
from salespilot.providers import (
    ChannelRouter,
    CrmProvider,
    DiscoveryProvider,
    EnrichmentProvider,
    OutreachChannel,
    ScoringProvider,
)
from salespilot.resilience import CircuitBreakerRegistry, ProtectedDependency, RetryPolicyRegistry

logger = logging.getLogger(__name__)


class SalesPilotRuntime:
    """Owns the long-lived components of one SalesPilot process.

    Construction only opens the stores. :meth:`start` recovers state left by
    a previous process and starts the worker pool, the event inbox and the
    autonomous scheduler; :meth:`stop` shuts them down in reverse order.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        discovery: DiscoveryProvider,
        enrichment: EnrichmentProvider,
        scoring: ScoringProvider,
        crm: CrmProvider,
        channels: Iterable[OutreachChannel],
        sleep=asyncio.sleep,
    ) -> None:
        self.config = config
        workspace = config.workspace_dir
        workspace.mkdir(parents=True, exist_ok=True)

        self.audit = AuditLogger(config.audit_dir)
        self.telemetry: Optional[TelemetryRecorder] = (
            TelemetryRecorder(config.telemetry_dir) if config.telemetry.enabled else None
        )
        self.queue = JobQueue(
            config.database_path,
            capacity=config.queue.capacity,
            validator=StateMachineValidator(self.audit),
        )
        self.pool = WorkerPool(
            self.queue,
            max_workers=config.workers.max_workers,
            telemetry=self.telemetry,
            poll_interval=config.workers.poll_interval_seconds,
        )

        self.breakers = CircuitBreakerRegistry(config.breakers.overrides)
        self.retries = RetryPolicyRegistry(config.retry.policies_path)
        protection: Dict[str, ProtectedDependency] = {
            role: ProtectedDependency.from_registries(service, self.breakers, self.retries, sleep=sleep)
            for role, service in config.dependencies.model_dump().items()
        }
        self.dependencies = PipelineDependencies(
            discovery=discovery,
            enrichment=enrichment,
            scoring=scoring,
            crm=crm,
            channels=ChannelRouter(channels),
            protection=protection,
        )

        self.store = EnrollmentStore(workspace / "campaigns.db")
        self.machine = EnrollmentStateMachine(self.store, self.audit)
        self.inbox = EventInbox(self.machine)
        self.handlers = PipelineHandlers(self.dependencies, self.store, self.machine)
        self.handlers.register_all(self.pool)

        self.autonomous_config = AutonomousConfigManager(config.autonomous_config_path, self.audit)
        self.reviews = ReviewStore(workspace / "review.db")
        self.run_state = RunStateStore(workspace / "run_state.json")
        self.scheduler = AutonomousScheduler(
            config_manager=self.autonomous_config,
            pool=self.pool,
            queue=self.queue,
            dependencies=self.dependencies,
            store=self.store,
            review_store=self.reviews,
            run_state_store=self.run_state,
            audit_logger=self.audit,
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        released = self.store.release_stale_reservations()
        removed = self.queue.cleanup(self.config.queue.retention_days)
        self.pool.start()
        self.inbox.start()
        self.scheduler.start()
        self._started = True
        logger.info(
            "SalesPilot runtime started",
            extra={
                "workspace": str(self.config.workspace_dir),
                "released_reservations": released,
                "expired_jobs_removed": removed,
            },
        )

    async def stop(self) -> None:
        if not self._started:
            return
        await self.scheduler.shutdown()
        await self.inbox.stop()
        await self.pool.shutdown()
        self.queue.close()
        self.store.close()
        self.reviews.close()
        self._started = False
        logger.info("SalesPilot runtime stopped")

    def health(self) -> Dict[str, object]:
        return {
            "breakers": self.breakers.health(),
            "queue": self.queue.stats(),
            "inbox": {
                "orphans": self.inbox.orphan_count,
                "dead_letters": len(self.inbox.dead_letters),
                "dead_lettered": self.inbox.stats.dead_lettered,
                "failed": self.inbox.stats.failed,
            },
            "invariant_violations": self.pool.check_invariants(),
        }
