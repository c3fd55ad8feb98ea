"""Telemetry for pipeline jobs.

Every finished job is appended to ``jobs.jsonl``; a rolled-up summary per job
type, status and failure reason is rewritten to ``jobs_summary.json`` after
each record so operators can read it without the process running.
"""

from __future__ import annotations

import json
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass
class _Outcomes:
    runs: int = 0
    seconds: float = 0.0
    by_status: Counter = field(default_factory=Counter)

    def add(self, status: str, seconds: float) -> None:
        self.runs += 1
        self.seconds += seconds
        self.by_status[status] += 1

    @property
    def mean_seconds(self) -> float:
        return self.seconds / self.runs if self.runs else 0.0


@dataclass
class TelemetryRecorder:
    """Job outcome log plus summary.

    Attributes:
        output_dir: Directory receiving both files
        log_name: JSON-lines file with one entry per finished job
        summary_name: Summary file, rewritten after every job
    """

    output_dir: Path
    log_name: str = "jobs.jsonl"
    summary_name: str = "jobs_summary.json"

    def __post_init__(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._overall = _Outcomes()
        self._per_type: Dict[str, _Outcomes] = {}
        self._reasons: Counter = Counter()

    @property
    def log_path(self) -> Path:
        return self.output_dir / self.log_name

    @property
    def summary_path(self) -> Path:
        return self.output_dir / self.summary_name

    def record(
        self,
        job_id: str,
        job_type: str,
        duration: float,
        status: str,
        *,
        reason: Optional[str] = None,
        active_workers: Optional[int] = None,
        queue_depth: Optional[int] = None,
    ) -> None:
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "job_id": job_id,
            "job_type": job_type,
            "status": status,
            "seconds": round(duration, 6),
        }
        if reason is not None:
            entry["reason"] = reason
        if active_workers is not None:
            entry["active_workers"] = active_workers
        if queue_depth is not None:
            entry["queue_depth"] = queue_depth

        with self._lock:
            self._overall.add(status, duration)
            self._per_type.setdefault(job_type, _Outcomes()).add(status, duration)
            if reason is not None:
                self._reasons[reason] += 1
            with self.log_path.open("a", encoding="utf-8") as fp:
                fp.write(json.dumps(entry) + "\n")
            self.summary_path.write_text(json.dumps(self._summarise(), indent=2))

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            return self._summarise()

    def _summarise(self) -> Dict[str, Any]:
        return {
            "jobs": self._overall.runs,
            "mean_seconds": self._overall.mean_seconds,
            "by_status": dict(self._overall.by_status),
            "by_type": {
                job_type: {
                    "jobs": outcomes.runs,
                    "mean_seconds": outcomes.mean_seconds,
                    "by_status": dict(outcomes.by_status),
                }
                for job_type, outcomes in sorted(self._per_type.items())
            },
            "failure_reasons": dict(self._reasons),
        }
