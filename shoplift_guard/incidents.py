"""Append-only incident log.

One JSON object per line, one line per gate decision. Records are never
rewritten; write failures are logged and swallowed so the alert pipeline
always finishes.
"""
from __future__ import annotations

import json
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional

from loguru import logger

TRIGGERED = "triggered"
SUPPRESSED = "suppressed"
FALLBACK_USED = "fallback_used"


@dataclass(frozen=True)
class IncidentRecord:
    """Audit record of a single gate decision."""
    timestamp: str
    camera_id: str
    location: str
    status: str  # triggered | suppressed | fallback_used
    confidence: Optional[float] = None
    track_id: Optional[str] = None
    suspicion_score: Optional[float] = None
    suspicion_reasons: List[str] = field(default_factory=list)
    evidence_refs: List[str] = field(default_factory=list)
    judge_backend: Optional[str] = None
    judge_result: Optional[dict] = None
    voice_backend: Optional[str] = None
    audio_ref: Optional[str] = None
    alert_text: Optional[str] = None
    suppressed_reason: Optional[str] = None

    def __post_init__(self):
        if self.status == SUPPRESSED and not self.suppressed_reason:
            raise ValueError("Suppressed incidents need a reason")

    def to_json(self) -> str:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        # Strict JSON: a NaN or inf confidence is a write error, not a log line
        return json.dumps(data, ensure_ascii=False, sort_keys=True, allow_nan=False)


class IncidentLog:
    """JSON-lines incident log at a fixed path."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        logger.info(f"Incident log at {self.path}")

    def append(self, record: IncidentRecord) -> bool:
        """Write one record. Returns False (and logs) instead of raising on IO errors."""
        try:
            line = record.to_json()
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write incident for {record.camera_id} to {self.path}: {e}")
            return False
        return True

    def read_recent(self, limit: int = 100) -> List[dict]:
        """Most recent records, oldest first. Corrupt lines are skipped."""
        if not self.path.exists():
            return []
        tail: deque = deque(maxlen=limit)
        with self._lock, open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    tail.append(json.loads(line))
                except ValueError:
                    logger.warning(f"Skipping corrupt incident line in {self.path}")
        return list(tail)

    def get_stats(self) -> dict:
        counts = {TRIGGERED: 0, SUPPRESSED: 0, FALLBACK_USED: 0}
        for record in self.read_recent(limit=10_000):
            status = record.get("status")
            if status in counts:
                counts[status] += 1
        return counts
