"""SQLite persistence for campaign sequences, enrollments and event history.

Enrollment rows are only rewritten while holding that enrollment's record
lock (:meth:`EnrollmentStore.record_lock`). The event state machine holds it
for its whole read-classify-write cycle, and the compare-and-send reservation
takes it too, so a send can never be reserved against a stale status.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from salespilot.errors import ClientError, EnrollmentNotFoundError, StateTransitionRaceError
from salespilot.orchestrator.locks import KeyedLocks

from .models import (
    CampaignEvent,
    CampaignSequence,
    Engagement,
    Enrollment,
    EnrollmentChannel,
    EnrollmentStatus,
    EventOutcome,
    RecordedEvent,
)

logger = logging.getLogger(__name__)

WallClock = Callable[[], datetime]


SCHEMA = """
CREATE TABLE IF NOT EXISTS campaign_sequences (
    campaign_id TEXT PRIMARY KEY,
    definition TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS enrollments (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    enrollment_id TEXT NOT NULL UNIQUE,
    campaign_id TEXT NOT NULL,
    contact_id TEXT NOT NULL,
    status TEXT NOT NULL,
    current_step INTEGER NOT NULL DEFAULT 0,
    total_steps INTEGER NOT NULL,
    channel TEXT NOT NULL,
    enrolled_at TEXT NOT NULL,
    last_event_at TEXT,
    next_action_at TEXT,
    in_flight_step INTEGER,
    reserved_at TEXT,
    completed_at TEXT,
    terminated_at TEXT,
    engagement TEXT NOT NULL DEFAULT '{}',
    UNIQUE(campaign_id, contact_id),
    CHECK (current_step >= 0 AND current_step <= total_steps)
);
CREATE INDEX IF NOT EXISTS idx_enrollments_due ON enrollments(status, next_action_at);
CREATE TABLE IF NOT EXISTS enrollment_events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    idempotency_key TEXT NOT NULL UNIQUE,
    enrollment_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    channel TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    step_number INTEGER,
    metadata TEXT NOT NULL,
    provider_event_id TEXT,
    outcome TEXT NOT NULL,
    received_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_enrollment ON enrollment_events(enrollment_id, seq);
"""

COLUMNS = (
    "enrollment_id, campaign_id, contact_id, status, current_step, total_steps, channel, "
    "enrolled_at, last_event_at, next_action_at, in_flight_step, completed_at, "
    "terminated_at, engagement"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnrollmentStore:
    """Durable enrollments with per-record locking."""

    def __init__(self, path: Path, *, clock: WallClock = _utcnow) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()
        self._record_locks = KeyedLocks()
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def record_lock(self, enrollment_id: str) -> Iterator[None]:
        """Exclusive access to one enrollment row. Never hold across an ``await``."""
        with self._record_locks.hold(enrollment_id):
            yield

    # ------------------------------------------------------------------
    # Sequences
    # ------------------------------------------------------------------

    def save_sequence(self, sequence: CampaignSequence) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO campaign_sequences(campaign_id, definition, updated_at) "
                    "VALUES (?, ?, ?) ON CONFLICT(campaign_id) DO UPDATE SET "
                    "definition = excluded.definition, updated_at = excluded.updated_at",
                    (sequence.campaign_id, sequence.model_dump_json(), _iso(self._clock())),
                )
        logger.info(
            "Saved campaign sequence",
            extra={"campaign_id": sequence.campaign_id, "total_steps": sequence.total_steps},
        )

    def get_sequence(self, campaign_id: str) -> CampaignSequence:
        """Load a campaign's sequence.

        Raises:
            ClientError: If no sequence was saved for the campaign
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT definition FROM campaign_sequences WHERE campaign_id = ?",
                (campaign_id,),
            ).fetchone()
        if row is None:
            raise ClientError(
                f"Unknown campaign {campaign_id}", details={"campaign_id": campaign_id}
            )
        return CampaignSequence.model_validate_json(row[0])

    # ------------------------------------------------------------------
    # Enrollments
    # ------------------------------------------------------------------

    def enroll(
        self,
        campaign_id: str,
        contact_id: str,
        channel: Union[EnrollmentChannel, str] = EnrollmentChannel.EMAIL,
        *,
        enrollment_id: Optional[str] = None,
    ) -> Tuple[Enrollment, bool]:
        """Enroll a contact, or return the existing enrollment for the pair.

        Returns:
            ``(enrollment, created)``

        Raises:
            ClientError: If the campaign is unknown or cannot use the channel
        """
        channel = EnrollmentChannel(channel)
        sequence = self.get_sequence(campaign_id)
        sequence.check_channel(channel)

        now = self._clock()
        first_due = now + timedelta(days=sequence.step(1).delay_days)
        enrollment_id = enrollment_id or str(uuid.uuid4())
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    "INSERT OR IGNORE INTO enrollments(enrollment_id, campaign_id, contact_id, "
                    "status, current_step, total_steps, channel, enrolled_at, next_action_at) "
                    "VALUES (?, ?, ?, 'active', 0, ?, ?, ?, ?)",
                    (
                        enrollment_id,
                        campaign_id,
                        contact_id,
                        sequence.total_steps,
                        channel.value,
                        _iso(now),
                        _iso(first_due),
                    ),
                )
        created = cur.rowcount == 1
        enrollment = self.find(campaign_id, contact_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(
                f"Enrollment for contact {contact_id} in {campaign_id} vanished",
                details={"campaign_id": campaign_id, "contact_id": contact_id},
            )
        logger.info(
            "Enrolled contact" if created else "Contact already enrolled",
            extra={
                "enrollment_id": enrollment.enrollment_id,
                "campaign_id": campaign_id,
                "contact_id": contact_id,
            },
        )
        return enrollment, created

    def get(self, enrollment_id: str) -> Enrollment:
        """Current snapshot of an enrollment.

        Raises:
            EnrollmentNotFoundError: If the enrollment does not exist
        """
        with self._lock:
            row = self._conn.execute(
                f"SELECT {COLUMNS} FROM enrollments WHERE enrollment_id = ?", (enrollment_id,)
            ).fetchone()
        if row is None:
            raise EnrollmentNotFoundError(
                f"Enrollment {enrollment_id} not found", details={"enrollment_id": enrollment_id}
            )
        return _row_to_enrollment(row)

    def exists(self, enrollment_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM enrollments WHERE enrollment_id = ?", (enrollment_id,)
            ).fetchone()
        return row is not None

    def find(self, campaign_id: str, contact_id: str) -> Optional[Enrollment]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {COLUMNS} FROM enrollments WHERE campaign_id = ? AND contact_id = ?",
                (campaign_id, contact_id),
            ).fetchone()
        return _row_to_enrollment(row) if row else None

    def list_enrollments(
        self,
        *,
        campaign_id: Optional[str] = None,
        status: Optional[Union[EnrollmentStatus, str]] = None,
        limit: Optional[int] = 100,
    ) -> List[Enrollment]:
        clauses = []
        params: List[Any] = []
        if campaign_id is not None:
            clauses.append("campaign_id = ?")
            params.append(campaign_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(EnrollmentStatus(status).value)
        query = f"SELECT {COLUMNS} FROM enrollments"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY seq ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_enrollment(row) for row in rows]

    def due_for_followup(
        self, *, now: Optional[datetime] = None, limit: int = 50
    ) -> List[Enrollment]:
        """Active enrollments whose next step is due and not already being sent."""
        now = now or self._clock()
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {COLUMNS} FROM enrollments "
                "WHERE status = 'active' AND current_step < total_steps "
                "AND in_flight_step IS NULL AND next_action_at IS NOT NULL "
                "AND next_action_at <= ? ORDER BY next_action_at ASC LIMIT ?",
                (_iso(now), limit),
            ).fetchall()
        return [_row_to_enrollment(row) for row in rows]

    def counts_by_status(self, campaign_id: Optional[str] = None) -> Dict[str, int]:
        query = "SELECT status, COUNT(*) FROM enrollments"
        params: Tuple[Any, ...] = ()
        if campaign_id is not None:
            query += " WHERE campaign_id = ?"
            params = (campaign_id,)
        with self._lock:
            counts = dict(self._conn.execute(query + " GROUP BY status", params).fetchall())
        return {status.value: counts.get(status.value, 0) for status in EnrollmentStatus}

    def write(self, before: Enrollment, after: Enrollment) -> Enrollment:
        """Replace an enrollment row. Caller holds the record lock.

        Raises:
            StateTransitionRaceError: If the row no longer matches ``before``
        """
        with self._lock:
            with self._conn:
                self._update(before, after)
        return self.get(after.enrollment_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def has_event(self, idempotency_key: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM enrollment_events WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
        return row is not None

    def commit_event(
        self,
        event: CampaignEvent,
        outcome: EventOutcome,
        *,
        before: Optional[Enrollment] = None,
        after: Optional[Enrollment] = None,
    ) -> bool:
        """Record an event and, when given, its enrollment update in one transaction.

        Caller holds the record lock.

        Returns:
            False if an event with the same idempotency key was already stored
        """
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    "INSERT OR IGNORE INTO enrollment_events(idempotency_key, enrollment_id, "
                    "event_type, channel, timestamp, step_number, metadata, provider_event_id, "
                    "outcome, received_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        event.idempotency_key,
                        event.enrollment_id,
                        event.event_type.value,
                        event.channel.value,
                        _iso(event.timestamp),
                        event.step_number,
                        json.dumps(event.metadata, default=str),
                        event.provider_event_id,
                        outcome.value,
                        _iso(self._clock()),
                    ),
                )
                if cur.rowcount == 0:
                    return False
                if before is not None and after is not None:
                    self._update(before, after)
        return True

    def events_for(self, enrollment_id: str) -> List[RecordedEvent]:
        """Event history of an enrollment in arrival order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT enrollment_id, event_type, channel, timestamp, step_number, metadata, "
                "provider_event_id, outcome, received_at FROM enrollment_events "
                "WHERE enrollment_id = ? ORDER BY seq ASC",
                (enrollment_id,),
            ).fetchall()
        history = []
        for (
            _enrollment_id,
            event_type,
            channel,
            timestamp,
            step_number,
            metadata,
            provider_event_id,
            outcome,
            received_at,
        ) in rows:
            event = CampaignEvent(
                enrollment_id=_enrollment_id,
                event_type=event_type,
                channel=channel,
                timestamp=datetime.fromisoformat(timestamp),
                step_number=step_number,
                metadata=json.loads(metadata),
                provider_event_id=provider_event_id,
            )
            history.append(
                RecordedEvent(
                    event=event,
                    outcome=EventOutcome(outcome),
                    received_at=datetime.fromisoformat(received_at),
                )
            )
        return history

    # ------------------------------------------------------------------
    # Compare-and-send
    # ------------------------------------------------------------------

    def reserve_send(self, enrollment_id: str, step: int) -> bool:
        """Claim the right to send ``step``.

        Succeeds only while the enrollment is active, waiting on exactly that
        step and not already reserved.
        """
        with self.record_lock(enrollment_id):
            with self._lock:
                with self._conn:
                    cur = self._conn.execute(
                        "UPDATE enrollments SET in_flight_step = ?, reserved_at = ? "
                        "WHERE enrollment_id = ? AND status = 'active' "
                        "AND current_step = ? AND in_flight_step IS NULL",
                        (step, _iso(self._clock()), enrollment_id, step - 1),
                    )
        reserved = cur.rowcount == 1
        logger.debug(
            "Send reservation",
            extra={"enrollment_id": enrollment_id, "step": step, "reserved": reserved},
        )
        return reserved

    def release_send(self, enrollment_id: str, step: int) -> None:
        """Drop a reservation; a no-op once the step was applied or the enrollment ended."""
        with self.record_lock(enrollment_id):
            with self._lock:
                with self._conn:
                    self._conn.execute(
                        "UPDATE enrollments SET in_flight_step = NULL, reserved_at = NULL "
                        "WHERE enrollment_id = ? AND in_flight_step = ?",
                        (enrollment_id, step),
                    )

    def release_stale_reservations(self, older_than: timedelta = timedelta(hours=1)) -> int:
        """Clear reservations left behind by an interrupted process.

        Returns:
            Number of reservations released
        """
        cutoff = _iso(self._clock() - older_than)
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    "UPDATE enrollments SET in_flight_step = NULL, reserved_at = NULL "
                    "WHERE in_flight_step IS NOT NULL AND reserved_at < ?",
                    (cutoff,),
                )
        if cur.rowcount:
            logger.warning(
                "Released stale send reservations", extra={"count": cur.rowcount}
            )
        return cur.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _update(self, before: Enrollment, after: Enrollment) -> None:
        """Conditional row rewrite. Caller holds ``self._lock`` inside a transaction."""
        cur = self._conn.execute(
            "UPDATE enrollments SET status = ?, current_step = ?, last_event_at = ?, "
            "next_action_at = ?, in_flight_step = ?, "
            "reserved_at = CASE WHEN ? IS NULL THEN NULL ELSE reserved_at END, "
            "completed_at = ?, terminated_at = ?, engagement = ? "
            "WHERE enrollment_id = ? AND status = ? AND current_step = ?",
            (
                after.status.value,
                after.current_step,
                _iso(after.last_event_at),
                _iso(after.next_action_at),
                after.in_flight_step,
                after.in_flight_step,
                _iso(after.completed_at),
                _iso(after.terminated_at),
                json.dumps(after.engagement.to_dict()),
                before.enrollment_id,
                before.status.value,
                before.current_step,
            ),
        )
        if cur.rowcount != 1:
            raise StateTransitionRaceError(
                f"Enrollment {before.enrollment_id} changed while being updated",
                details={"enrollment_id": before.enrollment_id},
            )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_enrollment(row: tuple) -> Enrollment:
    (
        enrollment_id,
        campaign_id,
        contact_id,
        status,
        current_step,
        total_steps,
        channel,
        enrolled_at,
        last_event_at,
        next_action_at,
        in_flight_step,
        completed_at,
        terminated_at,
        engagement,
    ) = row
    return Enrollment(
        enrollment_id=enrollment_id,
        campaign_id=campaign_id,
        contact_id=contact_id,
        status=EnrollmentStatus(status),
        current_step=int(current_step),
        total_steps=int(total_steps),
        channel=EnrollmentChannel(channel),
        enrolled_at=_parse(enrolled_at),
        last_event_at=_parse(last_event_at),
        next_action_at=_parse(next_action_at),
        in_flight_step=in_flight_step,
        completed_at=_parse(completed_at),
        terminated_at=_parse(terminated_at),
        engagement=Engagement.from_dict(json.loads(engagement)),
    )
