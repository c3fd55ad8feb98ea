"""Collaborator interfaces consumed by the pipeline.

Concrete clients (Explorium, HubSpot, Lemlist, PhantomBuster, Postmark) live
outside this package. The pipeline only depends on these protocols and value
types, and always calls them through a :class:`ProtectedDependency`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from salespilot.campaigns.models import Channel


# =============================================================================
# Value Types
# =============================================================================


class ProspectCandidate(BaseModel):
    """A prospect returned by discovery, before enrichment.

    Attributes:
        contact_id: Stable identifier for the prospect
        preliminary_score: Discovery-time ICP estimate in [0, 1]
    """

    contact_id: str = Field(min_length=1)
    full_name: Optional[str] = None
    email: Optional[str] = None
    title: Optional[str] = None
    company: Optional[str] = None
    linkedin_url: Optional[str] = None
    preliminary_score: float = Field(default=0.0, ge=0.0, le=1.0)
    attributes: Dict[str, Any] = Field(default_factory=dict)


class SubScores(BaseModel):
    """Normalised ICP sub-scores produced by the scoring provider."""

    fit: float = Field(ge=0.0, le=1.0)
    intent: float = Field(ge=0.0, le=1.0)
    reachability: float = Field(ge=0.0, le=1.0)
    freshness: float = Field(ge=0.0, le=1.0)


class EnrichedContact(BaseModel):
    """A prospect after enrichment, optionally carrying its sub-scores."""

    contact_id: str = Field(min_length=1)
    full_name: Optional[str] = None
    email: Optional[str] = None
    title: Optional[str] = None
    company: Optional[str] = None
    linkedin_url: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    sub_scores: Optional[SubScores] = None
    crm_id: Optional[str] = None

    @classmethod
    def from_candidate(cls, candidate: ProspectCandidate, **updates: Any) -> "EnrichedContact":
        data = candidate.model_dump(exclude={"preliminary_score"})
        data.update(updates)
        return cls(**data)


# =============================================================================
# Provider Protocols
# =============================================================================


@runtime_checkable
class DiscoveryProvider(Protocol):
    async def discover(
        self, icp_criteria: Dict[str, Any], limit: int
    ) -> List[ProspectCandidate]:
        """Find prospects matching the ICP criteria, at most ``limit``."""
        ...


@runtime_checkable
class EnrichmentProvider(Protocol):
    async def enrich(self, contact_ref: ProspectCandidate) -> EnrichedContact:
        ...


@runtime_checkable
class ScoringProvider(Protocol):
    async def score(
        self, contact: EnrichedContact, icp_profile: Dict[str, Any]
    ) -> SubScores:
        """Compute the four normalised sub-scores for a contact."""
        ...


@runtime_checkable
class CrmProvider(Protocol):
    async def upsert_contact(self, contact: EnrichedContact) -> str:
        """Create or update the contact and return its CRM id."""
        ...

    async def log_activity(self, crm_id: str, activity: Dict[str, Any]) -> None:
        ...


@runtime_checkable
class OutreachChannel(Protocol):
    """Sends campaign steps over one channel.

    Inbound events for the sent messages arrive separately through the
    campaign event inbox.
    """

    channel: Channel

    async def send_step(self, enrollment_id: str, step: int, channel: Channel) -> str:
        """Send one sequence step and return the provider message id."""
        ...
