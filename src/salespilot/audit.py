"""Tamper-evident audit trail for autonomous-mode and operator actions."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """Represents a structured audit event."""

    subject_id: str
    source: str
    action: str
    status: str
    timestamp: datetime
    operator: Optional[str] = None
    metadata: Dict[str, object] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "subject_id": self.subject_id,
            "source": self.source,
            "action": self.action,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.operator:
            payload["operator"] = self.operator
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


@dataclass
class AuditLogger:
    """Writes append-only, hash-chained audit logs.

    Each line carries the hash of the previous line so that edits or
    deletions inside the log are detectable with :meth:`verify`.

    Attributes:
        output_dir: Directory for audit log files
        filename: Name of the main audit log file
        max_bytes: Maximum log file size before rotation
        manifest_name: Name of the manifest file
    """

    output_dir: Path
    filename: str = "audit.log"
    max_bytes: int = 5 * 1024 * 1024
    manifest_name: str = "audit_manifest.json"

    def __post_init__(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._path = self.output_dir / self.filename
        self._manifest_path = self.output_dir / self.manifest_name
        self._lock = threading.Lock()
        if not self._manifest_path.exists():
            self._save_manifest({"last_hash": None, "rotated": []})

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            payload = self._augment_with_chain(event.to_payload())
            with self._path.open("a", encoding="utf-8") as fp:
                fp.write(json.dumps(payload, separators=(",", ":"), default=str) + "\n")
            self._rotate_if_needed()

    def record_action(
        self,
        *,
        source: str,
        action: str,
        status: str = "executed",
        subject_id: Optional[str] = None,
        operator: Optional[str] = None,
        metadata: Optional[Dict[str, object]] = None,
    ) -> None:
        """Convenience wrapper used by the scheduler, config manager and CLI."""
        now = datetime.now(timezone.utc)
        self.record(
            AuditEvent(
                subject_id=subject_id or f"{source}_{action}_{now.strftime('%Y%m%d%H%M%S%f')}",
                source=source,
                action=action,
                status=status,
                timestamp=now,
                operator=operator,
                metadata=metadata or {},
            )
        )

    def verify(self, *, path: Optional[Path] = None) -> bool:
        """Verify the integrity of the audit log chain.

        Returns:
            True if chain is valid, False if tampered
        """
        target = path or self._path
        if not target.exists():
            return True
        previous_hash = self._load_manifest().get("chain_start")
        for entry in _iter_json_lines(target):
            if entry.get("chain_prev") != previous_hash:
                return False
            if entry.get("chain_hash") != _compute_chain_hash(entry):
                return False
            previous_hash = entry.get("chain_hash")
        return True

    def iter_events(
        self,
        *,
        action: Optional[str] = None,
        on_date: Optional[date] = None,
    ) -> Iterable[Dict[str, object]]:
        """Iterate over recorded events, optionally filtered.

        Args:
            action: Only yield events with this action
            on_date: Only yield events recorded on this UTC date
        """
        if not self._path.exists():
            return
        for entry in _iter_json_lines(self._path):
            if action and entry.get("action") != action:
                continue
            if on_date and not str(entry.get("timestamp", "")).startswith(on_date.isoformat()):
                continue
            yield entry

    def _augment_with_chain(self, payload: Dict[str, object]) -> Dict[str, object]:
        manifest = self._load_manifest()
        if not self._path.exists():
            manifest["chain_start"] = manifest.get("last_hash")
        augmented = dict(payload)
        augmented["chain_prev"] = manifest.get("last_hash")
        augmented["chain_hash"] = _compute_chain_hash(augmented)
        manifest["last_hash"] = augmented["chain_hash"]
        self._save_manifest(manifest)
        return augmented

    def _rotate_if_needed(self) -> None:
        if not self._path.exists() or self._path.stat().st_size < self.max_bytes:
            return
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        rotated_name = self.output_dir / f"audit-{stamp}.log"
        os.replace(self._path, rotated_name)
        manifest = self._load_manifest()
        rotated = manifest.get("rotated", [])
        rotated.append({"path": rotated_name.name, "hash": manifest.get("last_hash")})
        manifest["rotated"] = rotated
        self._save_manifest(manifest)
        logger.info("Rotated audit log", extra={"audit_rotated_to": rotated_name.name})

    def _load_manifest(self) -> Dict[str, object]:
        return json.loads(self._manifest_path.read_text(encoding="utf-8"))

    def _save_manifest(self, manifest: Dict[str, object]) -> None:
        self._manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")


def _compute_chain_hash(payload: Dict[str, object]) -> str:
    canonical = json.dumps(
        {k: payload[k] for k in sorted(payload) if k != "chain_hash"},
        separators=(",", ":"),
        default=str,
    )
    return sha256(canonical.encode("utf-8")).hexdigest()


def _iter_json_lines(path: Path) -> Iterable[Dict[str, object]]:
    with path.open("r", encoding="utf-8") as fp:
        for line in fp:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Failed to parse audit line as JSON")
