"""Job handlers for the prospecting pipeline.

Each handler receives a :class:`JobContext`, calls its providers through the
dependency's :class:`ProtectedDependency` and checks for cancellation before
and after every external call. Payloads and results are plain JSON dicts so
they survive the job table.

Payload shapes::

    discover        {"icp_criteria": {...}, "limit": 25}
    enrich          {"candidates": [ProspectCandidate...], "icp_profile": {...}}
    sync            {"contacts": [EnrichedContact...]}
    outreach        {"action": "enroll", "campaign_id": "...", "channel": "email",
                     "contacts": [EnrichedContact...]}
                    {"action": "follow_up", "enrollment_ids": [...], "limit": 50}
    custom-workflow {"workflow": "name", "params": {...}}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from salespilot.campaigns import (
    CampaignEvent,
    Channel,
    Enrollment,
    EnrollmentStateMachine,
    EnrollmentStore,
    EventType,
)
from salespilot.errors import ClientError
from salespilot.orchestrator import JobContext, JobType, WorkerPool
from salespilot.providers import (
    ChannelRouter,
    CrmProvider,
    DiscoveryProvider,
    EnrichedContact,
    EnrichmentProvider,
    ProspectCandidate,
    ScoringProvider,
)
from salespilot.resilience import ProtectedDependency

logger = logging.getLogger(__name__)

# Dependency roles, matching the fields of DependencyConfig
DISCOVERY = "discovery"
ENRICHMENT = "enrichment"
SCORING = "scoring"
CRM = "crm"

CHANNEL_ROLES: Dict[Channel, str] = {
    Channel.EMAIL: "email",
    Channel.LINKEDIN: "linkedin",
}

STAGE_ROLES: Dict[JobType, Sequence[str]] = {
    JobType.DISCOVER: (DISCOVERY,),
    JobType.ENRICH: (ENRICHMENT, SCORING),
    JobType.SYNC: (CRM,),
    JobType.OUTREACH: tuple(CHANNEL_ROLES.values()),
}

Workflow = Callable[[JobContext, "PipelineDependencies"], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class PipelineDependencies:
    """Providers plus the protected dependency guarding each role."""

    discovery: DiscoveryProvider
    enrichment: EnrichmentProvider
    scoring: ScoringProvider
    crm: CrmProvider
    channels: ChannelRouter
    protection: Dict[str, ProtectedDependency] = field(default_factory=dict)

    def protected(self, role: str) -> ProtectedDependency:
        try:
            return self.protection[role]
        except KeyError:
            raise ClientError(
                f"No protected dependency configured for role '{role}'",
                details={"role": role},
            ) from None

    def open_dependencies(
        self, job_type: JobType, channels: Optional[Iterable[Channel]] = None
    ) -> List[str]:
        """Names of OPEN breakers a job of ``job_type`` would have to call.

        For outreach, ``channels`` narrows the check to the channels actually
        used; by default every channel counts.
        """
        roles = list(STAGE_ROLES.get(JobType(job_type), ()))
        if JobType(job_type) is JobType.OUTREACH and channels is not None:
            roles = [CHANNEL_ROLES[Channel(c)] for c in channels]
        open_names = []
        for role in roles:
            dependency = self.protection.get(role)
            if dependency is not None and dependency.is_open and dependency.name not in open_names:
                open_names.append(dependency.name)
        return open_names


class PipelineHandlers:
    """Handlers for every pipeline :class:`JobType`."""

    def __init__(
        self,
        dependencies: PipelineDependencies,
        store: EnrollmentStore,
        machine: EnrollmentStateMachine,
    ) -> None:
        self.dependencies = dependencies
        self.store = store
        self.machine = machine
        self._workflows: Dict[str, Workflow] = {}

    def register_all(self, pool: WorkerPool) -> None:
        pool.register(JobType.DISCOVER, self.discover)
        pool.register(JobType.ENRICH, self.enrich)
        pool.register(JobType.SYNC, self.sync)
        pool.register(JobType.OUTREACH, self.outreach)
        pool.register(JobType.CUSTOM_WORKFLOW, self.custom_workflow)

    def register_workflow(self, name: str, workflow: Workflow) -> None:
        self._workflows[name] = workflow

    @property
    def workflows(self) -> List[str]:
        return sorted(self._workflows)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def discover(self, ctx: JobContext) -> Dict[str, Any]:
        criteria = ctx.payload.get("icp_criteria") or {}
        limit = int(ctx.payload.get("limit", 25))
        if limit < 1:
            return {"candidates": []}

        ctx.checkpoint()
        candidates = await self.dependencies.protected(DISCOVERY).call(
            self.dependencies.discovery.discover, criteria, limit
        )
        ctx.checkpoint()

        # Providers are asked for at most ``limit`` but not trusted to honour it
        candidates = list(candidates)[:limit]
        logger.info(
            "Discovery finished",
            extra={"job_id": ctx.job.job_id, "candidates": len(candidates)},
        )
        return {"candidates": [c.model_dump(mode="json") for c in candidates]}

    async def enrich(self, ctx: JobContext) -> Dict[str, Any]:
        """Enrich each candidate, then attach its sub-scores."""
        candidates = [
            ProspectCandidate.model_validate(item) for item in ctx.payload.get("candidates", [])
        ]
        icp_profile = ctx.payload.get("icp_profile") or {}
        enrichment = self.dependencies.protected(ENRICHMENT)
        scoring = self.dependencies.protected(SCORING)

        contacts: List[EnrichedContact] = []
        for index, candidate in enumerate(candidates, start=1):
            ctx.checkpoint()
            enriched = await enrichment.call(self.dependencies.enrichment.enrich, candidate)
            ctx.checkpoint()
            sub_scores = await scoring.call(self.dependencies.scoring.score, enriched, icp_profile)
            ctx.checkpoint()
            contacts.append(enriched.model_copy(update={"sub_scores": sub_scores}))
            ctx.report_progress(index / len(candidates))

        return {"contacts": [c.model_dump(mode="json") for c in contacts]}

    async def sync(self, ctx: JobContext) -> Dict[str, Any]:
        contacts = [EnrichedContact.model_validate(c) for c in ctx.payload.get("contacts", [])]
        crm = self.dependencies.protected(CRM)

        synced: List[EnrichedContact] = []
        for index, contact in enumerate(contacts, start=1):
            ctx.checkpoint()
            crm_id = await crm.call(self.dependencies.crm.upsert_contact, contact)
            ctx.checkpoint()
            await crm.call(
                self.dependencies.crm.log_activity,
                crm_id,
                {"type": "prospect_synced", "contact_id": contact.contact_id},
            )
            ctx.checkpoint()
            synced.append(contact.model_copy(update={"crm_id": crm_id}))
            ctx.report_progress(index / len(contacts))

        logger.info("CRM sync finished", extra={"job_id": ctx.job.job_id, "synced": len(synced)})
        return {"contacts": [c.model_dump(mode="json") for c in synced]}

    async def outreach(self, ctx: JobContext) -> Dict[str, Any]:
        action = ctx.payload.get("action", "enroll")
        if action == "enroll":
            return await self._enroll(ctx)
        if action == "follow_up":
            return await self._follow_up(ctx)
        raise ClientError(f"Unknown outreach action '{action}'", details={"action": action})

    async def custom_workflow(self, ctx: JobContext) -> Optional[Dict[str, Any]]:
        name = ctx.payload.get("workflow")
        workflow = self._workflows.get(name) if name else None
        if workflow is None:
            raise ClientError(
                f"Unknown workflow '{name}'",
                details={"workflow": name, "available": self.workflows},
            )
        return await workflow(ctx, self.dependencies)

    # ------------------------------------------------------------------
    # Outreach
    # ------------------------------------------------------------------

    async def _enroll(self, ctx: JobContext) -> Dict[str, Any]:
        campaign_id = ctx.payload.get("campaign_id")
        if not campaign_id:
            raise ClientError("Outreach enroll job requires a campaign_id")
        channel = ctx.payload.get("channel", "email")
        contacts = ctx.payload.get("contacts", [])

        result: Dict[str, List[Any]] = {
            "enrolled": [],
            "already_enrolled": [],
            "sent": [],
            "skipped": [],
        }
        for index, contact in enumerate(contacts, start=1):
            ctx.checkpoint()
            enrollment, created = self.store.enroll(campaign_id, contact["contact_id"], channel)
            bucket = "enrolled" if created else "already_enrolled"
            result[bucket].append(enrollment.enrollment_id)
            if enrollment.next_action_at is not None and enrollment.next_action_at <= self.store.now():
                await self._send_next(ctx, enrollment, result)
            ctx.report_progress(index / len(contacts))
        return result

    async def _follow_up(self, ctx: JobContext) -> Dict[str, Any]:
        ids = ctx.payload.get("enrollment_ids")
        if ids is None:
            due = self.store.due_for_followup(limit=int(ctx.payload.get("limit", 50)))
        else:
            due = [self.store.get(enrollment_id) for enrollment_id in ids]

        result: Dict[str, List[Any]] = {"sent": [], "skipped": []}
        for index, enrollment in enumerate(due, start=1):
            ctx.checkpoint()
            await self._send_next(ctx, enrollment, result)
            ctx.report_progress(index / len(due))
        return result

    async def _send_next(
        self, ctx: JobContext, enrollment: Enrollment, result: Dict[str, List[Any]]
    ) -> None:
        """Send the step an enrollment is waiting on, at most once."""
        step = enrollment.next_step
        if step is None:
            result["skipped"].append({"enrollment_id": enrollment.enrollment_id, "why": "finished"})
            return
        sequence = self.store.get_sequence(enrollment.campaign_id)
        channel = sequence.step(step).channel
        if not self.store.reserve_send(enrollment.enrollment_id, step):
            result["skipped"].append({"enrollment_id": enrollment.enrollment_id, "why": "not_sendable"})
            return

        try:
            ctx.checkpoint()
            message_id = await self.dependencies.protected(CHANNEL_ROLES[channel]).call(
                self.dependencies.channels.send_step, enrollment.enrollment_id, step, channel
            )
            applied = self.machine.apply_event(
                CampaignEvent(
                    enrollment_id=enrollment.enrollment_id,
                    event_type=EventType.SENT,
                    channel=channel,
                    timestamp=self.store.now(),
                    step_number=step,
                    metadata={"source": "outreach", "job_id": ctx.job.job_id},
                    provider_event_id=message_id,
                )
            )
        finally:
            self.store.release_send(enrollment.enrollment_id, step)

        result["sent"].append(
            {
                "enrollment_id": enrollment.enrollment_id,
                "step": step,
                "channel": channel.value,
                "message_id": message_id,
                "outcome": applied.outcome.value,
            }
        )
        ctx.checkpoint()
