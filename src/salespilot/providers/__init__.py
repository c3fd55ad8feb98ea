"""Interfaces to external prospecting, CRM and outreach services."""

from .channels import ChannelRouter
from .interfaces import (
    CrmProvider,
    DiscoveryProvider,
    EnrichedContact,
    EnrichmentProvider,
    OutreachChannel,
    ProspectCandidate,
    ScoringProvider,
    SubScores,
)

__all__ = [
    "ChannelRouter",
    "CrmProvider",
    "DiscoveryProvider",
    "EnrichedContact",
    "EnrichmentProvider",
    "OutreachChannel",
    "ProspectCandidate",
    "ScoringProvider",
    "SubScores",
]
