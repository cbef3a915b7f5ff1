from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple

from loguru import logger

from .config import GateConfig

BELOW_CONFIDENCE = "below_confidence"
CAMERA_COOLDOWN = "camera_cooldown"
TRACK_COOLDOWN = "track_cooldown"
PERSISTENCE_NOT_MET = "persistence_not_met"


@dataclass(frozen=True)
class GateDecision:
    allow: bool
    reason: Optional[str] = None


class _KeyedLocks:
    """One lock per key, created on demand."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def items(self) -> List[Tuple[str, threading.Lock]]:
        with self._guard:
            return list(self._locks.items())


class AlertGate:
    """Anti-spam gate in front of the voice alert.

    Checks run in order: confidence, camera cooldown, track cooldown,
    persistence. The first failing check is the rejection reason. Admission
    and the cooldown update happen under a per-camera lock, so two racing
    events for the same camera can never both pass.
    """

    def __init__(self, cfg: GateConfig):
        self.cfg = cfg
        self._last_camera: Dict[str, float] = {}
        self._last_track: Dict[str, Dict[str, float]] = {}  # camera -> track -> last alert
        self._recent: Dict[str, Deque[float]] = {}
        self._camera_locks = _KeyedLocks()

    def evaluate(
        self,
        camera_id: str,
        confidence: float,
        track_id: Optional[str] = None,
        now: Optional[float] = None,
        min_confidence: Optional[float] = None,
    ) -> GateDecision:
        threshold = self.cfg.min_confidence if min_confidence is None else min_confidence
        # NaN and inf never pass
        if not math.isfinite(confidence) or confidence < threshold:
            return GateDecision(False, BELOW_CONFIDENCE)

        # Every piece of gate state is keyed under the camera, so its lock is enough
        with self._camera_locks.get(camera_id):
            now = time.time() if now is None else now
            return self._check_and_admit(camera_id, track_id, now)

    def _check_and_admit(self, camera_id: str, track_id: Optional[str], now: float) -> GateDecision:
        last = self._last_camera.get(camera_id)
        if last is not None and now - last < self.cfg.camera_cooldown_s:
            return GateDecision(False, CAMERA_COOLDOWN)

        if track_id is not None and self.cfg.track_cooldown_s > 0:
            last = self._last_track.get(camera_id, {}).get(track_id)
            if last is not None and now - last < self.cfg.track_cooldown_s:
                return GateDecision(False, TRACK_COOLDOWN)

        if self.cfg.persistence_count > 1 and self.cfg.persistence_window_s > 0:
            recent = self._recent.setdefault(camera_id, deque(maxlen=self.cfg.persistence_buffer))
            while recent and recent[0] < now - self.cfg.persistence_window_s:
                recent.popleft()
            recent.append(now)
            if len(recent) < self.cfg.persistence_count:
                return GateDecision(False, PERSISTENCE_NOT_MET)

        self._last_camera[camera_id] = now
        if track_id is not None:
            self._last_track.setdefault(camera_id, {})[track_id] = now
        logger.debug(f"Gate admitted camera={camera_id} track={track_id}")
        return GateDecision(True)

    def reset(self) -> None:
        """Forget all cooldowns and persistence buffers.

        Each camera is cleared under its own lock, so a reset never interleaves
        with an admission in progress.
        """
        for camera_id, lock in self._camera_locks.items():
            with lock:
                self._forget(camera_id)

    def _forget(self, camera_id: str) -> None:
        self._last_camera.pop(camera_id, None)
        self._last_track.pop(camera_id, None)
        self._recent.pop(camera_id, None)

    def snapshot_config(self) -> dict:
        return {
            "min_confidence": self.cfg.min_confidence,
            "judge_min_confidence": self.cfg.judge_min_confidence,
            "camera_cooldown_s": self.cfg.camera_cooldown_s,
            "track_cooldown_s": self.cfg.track_cooldown_s,
            "persistence_count": self.cfg.persistence_count,
            "persistence_window_s": self.cfg.persistence_window_s,
        }
