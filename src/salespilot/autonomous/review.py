"""Contacts held back from automatic outreach, kept for manual review."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from salespilot.errors import ClientError
from salespilot.providers import EnrichedContact

from .scoring import Decision

logger = logging.getLogger(__name__)


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class ReviewItem:
    contact: EnrichedContact
    score: float
    decision: Decision
    status: ReviewStatus
    created_at: datetime
    updated_at: datetime
    cycle_id: Optional[str] = None
    reviewed_by: Optional[str] = None

    @property
    def contact_id(self) -> str:
        return self.contact.contact_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "score": self.score,
            "decision": self.decision.value,
            "status": self.status.value,
            "cycle_id": self.cycle_id,
            "reviewed_by": self.reviewed_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "contact": self.contact.model_dump(mode="json"),
        }


REVIEW_SCHEMA = """
CREATE TABLE IF NOT EXISTS review_items (
    contact_id TEXT PRIMARY KEY,
    contact TEXT NOT NULL,
    score REAL NOT NULL,
    decision TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    cycle_id TEXT,
    reviewed_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_review_status ON review_items(status, score);
"""

_COLUMNS = "contact, score, decision, status, cycle_id, reviewed_by, created_at, updated_at"


class ReviewStore:
    """SQLite-backed review queue, one row per contact.

    A contact seen again in a later cycle replaces its pending row; decided
    rows are left alone.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(REVIEW_SCHEMA)
        self._lock = threading.Lock()

    def add(
        self,
        contact: EnrichedContact,
        score: float,
        decision: Decision,
        *,
        cycle_id: Optional[str] = None,
    ) -> bool:
        """Keep a contact for review.

        Returns:
            False if the contact was already reviewed and was left unchanged
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    """
                    INSERT INTO review_items(contact_id, contact, score, decision,
                                             status, cycle_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 'pending', ?, ?, ?)
                    ON CONFLICT(contact_id) DO UPDATE SET
                        contact = excluded.contact,
                        score = excluded.score,
                        decision = excluded.decision,
                        cycle_id = excluded.cycle_id,
                        updated_at = excluded.updated_at
                    WHERE review_items.status = 'pending'
                    """,
                    (
                        contact.contact_id,
                        contact.model_dump_json(),
                        score,
                        decision.value,
                        cycle_id,
                        now,
                        now,
                    ),
                )
        return cur.rowcount == 1

    def list(
        self,
        *,
        status: Optional[ReviewStatus] = ReviewStatus.PENDING,
        decision: Optional[Decision] = None,
        limit: int = 100,
    ) -> List[ReviewItem]:
        """Review items, best score first."""
        query = f"SELECT {_COLUMNS} FROM review_items"
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(ReviewStatus(status).value)
        if decision is not None:
            clauses.append("decision = ?")
            params.append(Decision(decision).value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY score DESC, created_at ASC LIMIT ?"
        params.append(limit)

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_item(row) for row in rows]

    def get(self, contact_id: str) -> Optional[ReviewItem]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM review_items WHERE contact_id = ?", (contact_id,)
            ).fetchone()
        return self._row_to_item(row) if row else None

    def resolve(self, contact_id: str, *, approved: bool, operator: str) -> ReviewItem:
        """Record a reviewer's decision on a pending item.

        Raises:
            ClientError: If the contact is not pending review
        """
        status = ReviewStatus.APPROVED if approved else ReviewStatus.REJECTED
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    "UPDATE review_items SET status = ?, reviewed_by = ?, updated_at = ? "
                    "WHERE contact_id = ? AND status = 'pending'",
                    (status.value, operator, datetime.now(timezone.utc).isoformat(), contact_id),
                )
                row = None
                if cur.rowcount == 1:
                    row = self._conn.execute(
                        f"SELECT {_COLUMNS} FROM review_items WHERE contact_id = ?", (contact_id,)
                    ).fetchone()
        if row is None:
            raise ClientError(
                f"Contact {contact_id} is not pending review", details={"contact_id": contact_id}
            )
        logger.info(
            "Review resolved",
            extra={"contact_id": contact_id, "review_status": status.value, "operator": operator},
        )
        return self._row_to_item(row)

    def counts(self) -> Dict[str, int]:
        """Pending items per decision."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT decision, COUNT(*) FROM review_items WHERE status = 'pending' "
                "GROUP BY decision"
            ).fetchall()
        return {decision: count for decision, count in rows}

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _row_to_item(row: tuple) -> ReviewItem:
        contact, score, decision, status, cycle_id, reviewed_by, created_at, updated_at = row
        return ReviewItem(
            contact=EnrichedContact.model_validate(json.loads(contact)),
            score=score,
            decision=Decision(decision),
            status=ReviewStatus(status),
            cycle_id=cycle_id,
            reviewed_by=reviewed_by,
            created_at=datetime.fromisoformat(created_at),
            updated_at=datetime.fromisoformat(updated_at),
        )
