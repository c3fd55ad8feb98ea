"""Inbound campaign event inbox.

Provider webhooks (or pollers) put events on an asyncio queue; a single
consumer task drains it in arrival order and applies each event through the
:class:`EnrollmentStateMachine`.

Events for an enrollment that does not exist yet (webhook arriving before the
enrollment commit) are parked as orphans and retried on a fixed backoff
schedule. Later events for a parked enrollment queue up behind it so their
order is kept. After the last retry the whole batch is dead-lettered; only the most recent
dead letters are kept in memory.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Sequence

from salespilot.errors import EnrollmentNotFoundError, ValidationError

from .models import CampaignEvent, EventOutcome
from .state_machine import ApplyResult, EnrollmentStateMachine

logger = logging.getLogger(__name__)

# Seconds before each orphan retry: 5s, 15s, 1m, 5m, 15m, 1h
ORPHAN_RETRY_DELAYS: Sequence[float] = (5, 15, 60, 300, 900, 3600)

MAX_DEAD_LETTERS = 1000


@dataclass
class _Orphans:
    events: List[CampaignEvent]
    attempts: int = 0
    due_at: float = 0.0


@dataclass
class DeadLetter:
    enrollment_id: str
    events: List[CampaignEvent]
    attempts: int


@dataclass
class InboxStats:
    received: int = 0
    applied: int = 0
    duplicates: int = 0
    rejected: int = 0
    orphaned: int = 0
    dead_lettered: int = 0
    failed: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)


class EventInbox:
    """Single-consumer event channel in front of the enrollment state machine."""

    def __init__(
        self,
        machine: EnrollmentStateMachine,
        *,
        retry_delays: Sequence[float] = ORPHAN_RETRY_DELAYS,
        tick_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        maxsize: int = 0,
        max_dead_letters: int = MAX_DEAD_LETTERS,
    ) -> None:
        self._machine = machine
        self._retry_delays = tuple(retry_delays)
        self._tick = tick_seconds
        self._clock = clock
        self._queue: asyncio.Queue[CampaignEvent] = asyncio.Queue(maxsize=maxsize)
        self._orphans: "OrderedDict[str, _Orphans]" = OrderedDict()
        self._dead_letters: Deque[DeadLetter] = deque(maxlen=max_dead_letters)
        self._consumer: Optional[asyncio.Task] = None
        self.stats = InboxStats()

    @property
    def orphan_count(self) -> int:
        return sum(len(parked.events) for parked in self._orphans.values())

    @property
    def dead_letters(self) -> List[DeadLetter]:
        return list(self._dead_letters)

    async def put(self, event: CampaignEvent) -> None:
        await self._queue.put(event)

    def put_nowait(self, event: CampaignEvent) -> None:
        self._queue.put_nowait(event)

    def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="campaign-event-inbox")
            logger.info("Campaign event inbox started")

    async def stop(self) -> None:
        if self._consumer is None:
            return
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None
        logger.info(
            "Campaign event inbox stopped",
            extra={"pending": self._queue.qsize(), "orphans": self.orphan_count},
        )

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    def process(self, event: CampaignEvent) -> Optional[ApplyResult]:
        """Handle one event synchronously.

        Returns:
            The apply result, or None if the event was parked or rejected
        """
        self.stats.received += 1
        parked = self._orphans.get(event.enrollment_id)
        if parked is not None:
            parked.events.append(event)
            self.stats.orphaned += 1
            return None
        return self._apply(event)

    def retry_orphans(self) -> int:
        """Retry parked events whose backoff elapsed.

        A batch that fails part way keeps its unapplied events and counts the
        pass as an attempt.

        Returns:
            Number of events applied
        """
        now = self._clock()
        applied = 0
        for enrollment_id in list(self._orphans):
            parked = self._orphans[enrollment_id]
            if parked.due_at > now:
                continue
            if self._machine.store.exists(enrollment_id):
                logger.info(
                    "Orphaned events matched their enrollment",
                    extra={"enrollment_id": enrollment_id, "events": len(parked.events)},
                )
                applied += self._release(parked)
                if not parked.events:
                    del self._orphans[enrollment_id]
                    continue

            parked.attempts += 1
            if parked.attempts >= len(self._retry_delays):
                del self._orphans[enrollment_id]
                if self._dead_letters and len(self._dead_letters) == self._dead_letters.maxlen:
                    logger.warning(
                        "Dropping oldest dead letter",
                        extra={"enrollment_id": self._dead_letters[0].enrollment_id},
                    )
                self._dead_letters.append(
                    DeadLetter(enrollment_id, parked.events, parked.attempts)
                )
                self.stats.dead_lettered += len(parked.events)
                logger.error(
                    "Dead-lettered orphaned events",
                    extra={
                        "enrollment_id": enrollment_id,
                        "events": len(parked.events),
                        "attempts": parked.attempts,
                    },
                )
            else:
                parked.due_at = now + self._retry_delays[parked.attempts]
        return applied

    async def _consume(self) -> None:
        while True:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=self._tick)
            except asyncio.TimeoutError:
                self._retry_in_consumer()
                continue
            try:
                self.process(event)
            except Exception:
                self.stats.failed += 1
                logger.exception(
                    "Failed to apply campaign event",
                    extra={"enrollment_id": event.enrollment_id},
                )
            finally:
                self._queue.task_done()
            if self._orphans:
                self._retry_in_consumer()

    def _retry_in_consumer(self) -> None:
        try:
            self.retry_orphans()
        except Exception:
            logger.exception("Orphan retry failed")

    def _release(self, parked: _Orphans) -> int:
        """Apply parked events oldest first, dropping each only once it is handled.

        A failure leaves that event and everything behind it parked.
        """
        applied = 0
        while parked.events:
            event = parked.events[0]
            try:
                result = self._apply(event, park=False)
            except Exception:
                logger.exception(
                    "Failed to apply orphaned event",
                    extra={"enrollment_id": event.enrollment_id, "remaining": len(parked.events)},
                )
                break
            parked.events.pop(0)
            if result is not None:
                applied += 1
        return applied

    def _apply(self, event: CampaignEvent, *, park: bool = True) -> Optional[ApplyResult]:
        try:
            result = self._machine.apply_event(event)
        except EnrollmentNotFoundError:
            if not park:
                raise
            self._orphans[event.enrollment_id] = _Orphans(
                events=[event], due_at=self._clock() + self._retry_delays[0]
            )
            self.stats.orphaned += 1
            logger.warning(
                "Parked event for unknown enrollment",
                extra={
                    "enrollment_id": event.enrollment_id,
                    "event_type": event.event_type.value,
                },
            )
            return None
        except ValidationError:
            # Already logged by the state machine
            self.stats.rejected += 1
            return None

        outcome = result.outcome.value
        self.stats.outcomes[outcome] = self.stats.outcomes.get(outcome, 0) + 1
        if result.changed:
            self.stats.applied += 1
        elif result.outcome is EventOutcome.DUPLICATE:
            self.stats.duplicates += 1
        return result
