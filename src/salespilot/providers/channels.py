"""Dispatch of sequence steps to the outreach channel implementations."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from salespilot.campaigns.models import Channel
from salespilot.errors import ClientError

from .interfaces import OutreachChannel

logger = logging.getLogger(__name__)


class ChannelRouter:
    """Holds one :class:`OutreachChannel` per :class:`Channel`."""

    def __init__(self, channels: Iterable[OutreachChannel] = ()) -> None:
        self._channels: Dict[Channel, OutreachChannel] = {}
        for implementation in channels:
            self.register(implementation)

    def register(self, implementation: OutreachChannel) -> None:
        channel = Channel(implementation.channel)
        if channel in self._channels:
            logger.warning("Replacing outreach channel", extra={"channel": channel.value})
        self._channels[channel] = implementation

    @property
    def channels(self) -> List[Channel]:
        return list(self._channels)

    def for_channel(self, channel: Channel) -> OutreachChannel:
        """Implementation for ``channel``.

        Raises:
            ClientError: If no implementation is registered
        """
        try:
            return self._channels[Channel(channel)]
        except KeyError:
            raise ClientError(
                f"No outreach provider configured for {Channel(channel).value}",
                details={"channel": Channel(channel).value},
            ) from None

    async def send_step(self, enrollment_id: str, step: int, channel: Channel) -> str:
        return await self.for_channel(channel).send_step(enrollment_id, step, channel)
