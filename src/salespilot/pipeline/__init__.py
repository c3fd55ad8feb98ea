"""Prospecting pipeline stages executed by the worker pool."""

from .handlers import (
    CHANNEL_ROLES,
    STAGE_ROLES,
    PipelineDependencies,
    PipelineHandlers,
    Workflow,
)

__all__ = [
    "CHANNEL_ROLES",
    "STAGE_ROLES",
    "PipelineDependencies",
    "PipelineHandlers",
    "Workflow",
]
