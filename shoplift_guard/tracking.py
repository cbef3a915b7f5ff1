from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from shapely.geometry import box as shapely_box

from .config import TrackingConfig
from .zones import BoundingBox, Point


@dataclass(frozen=True)
class PersonDetection:
    bbox: BoundingBox  # xyxy
    confidence: float


@dataclass(frozen=True)
class ZoneVisit:
    zone_id: str
    zone_type: str
    entered_at: float  # unix seconds


@dataclass
class Track:
    track_id: int
    bbox: BoundingBox
    confidence: float
    first_seen: float
    last_seen: float
    bbox_history: Deque[BoundingBox] = field(default_factory=lambda: deque(maxlen=10))

    def snapshot(self) -> "Track":
        """Copy safe to hand out of the store."""
        return Track(
            track_id=self.track_id,
            bbox=self.bbox,
            confidence=self.confidence,
            first_seen=self.first_seen,
            last_seen=self.last_seen,
            bbox_history=deque(self.bbox_history, maxlen=self.bbox_history.maxlen),
        )


def iou(a: BoundingBox, b: BoundingBox) -> float:
    """Intersection over union of two xyxy boxes."""
    box_a = shapely_box(*a)
    box_b = shapely_box(*b)
    union = box_a.union(box_b).area
    if union <= 0:
        return 0.0
    return float(box_a.intersection(box_b).area / union)


def bbox_center(box: BoundingBox, frame_size: Optional[Tuple[float, float]] = None) -> Point:
    """Center of a box, normalized to 0-1 when the frame (width, height) is given."""
    x1, y1, x2, y2 = box
    cx, cy = (x1 + x2) / 2, (y1 + y2) / 2
    if frame_size is not None:
        width, height = frame_size
        return cx / width, cy / height
    return cx, cy


def bbox_aspect_ratio(box: BoundingBox) -> float:
    """Width / height, used as a cheap posture proxy."""
    x1, y1, x2, y2 = box
    height = y2 - y1
    if height <= 0:
        return 0.0
    return (x2 - x1) / height


class Associator(ABC):
    """Assigns current-frame detections to existing tracks."""

    @abstractmethod
    def assign(self, detections: Sequence[PersonDetection], tracks: Sequence[Track]) -> List[Optional[int]]:
        """Return, per detection, the matched track_id or None."""


class GreedyIouAssociator(Associator):
    """First-come greedy IOU matching.

    Detections are taken in input order; each grabs the unmatched track with
    the highest IOU above the threshold. Not globally optimal.
    """

    def __init__(self, threshold: float = 0.3):
        self.threshold = threshold

    def assign(self, detections: Sequence[PersonDetection], tracks: Sequence[Track]) -> List[Optional[int]]:
        matched: set[int] = set()
        result: List[Optional[int]] = []
        for det in detections:
            best_id = None
            best_iou = self.threshold
            for track in tracks:
                if track.track_id in matched:
                    continue
                score = iou(track.bbox, det.bbox)
                if score > best_iou:
                    best_iou = score
                    best_id = track.track_id
            if best_id is not None:
                matched.add(best_id)
            result.append(best_id)
        return result


class TrackStore:
    """Shared store of active tracks and their zone-visit history.

    Owned by one pipeline instance; every mutation goes through the lock.
    """

    def __init__(self, max_bbox_history: int = 10):
        self.max_bbox_history = max_bbox_history
        self._tracks: Dict[int, Track] = {}
        self._zone_history: Dict[int, List[ZoneVisit]] = {}
        self._next_id = 1
        self.lock = threading.RLock()

    def new_track(self, det: PersonDetection, now: float) -> Track:
        with self.lock:
            track = Track(
                track_id=self._next_id,
                bbox=det.bbox,
                confidence=det.confidence,
                first_seen=now,
                last_seen=now,
                bbox_history=deque([det.bbox], maxlen=self.max_bbox_history),
            )
            self._next_id += 1
            self._tracks[track.track_id] = track
            return track

    def update_track(self, track_id: int, det: PersonDetection, now: float) -> Track:
        """Apply a matched detection; track_id and first_seen are preserved."""
        with self.lock:
            track = self._tracks[track_id]
            track.bbox_history.append(det.bbox)
            track.bbox = det.bbox
            track.confidence = det.confidence
            track.last_seen = now
            return track

    def get(self, track_id: int) -> Optional[Track]:
        with self.lock:
            track = self._tracks.get(track_id)
            return track.snapshot() if track else None

    def active_tracks(self) -> List[Track]:
        with self.lock:
            return [t.snapshot() for t in self._tracks.values()]

    def __len__(self) -> int:
        with self.lock:
            return len(self._tracks)

    def record_zone_visit(self, track_id: int, visit: ZoneVisit) -> None:
        with self.lock:
            self._zone_history.setdefault(track_id, []).append(visit)

    def zone_history(self, track_id: int) -> List[ZoneVisit]:
        with self.lock:
            return list(self._zone_history.get(track_id, []))

    def evict_stale(self, now: float, max_idle_s: float) -> List[int]:
        """Drop tracks unseen for longer than max_idle_s. Ids are never reissued."""
        with self.lock:
            stale = [tid for tid, t in self._tracks.items() if now - t.last_seen > max_idle_s]
            for tid in stale:
                del self._tracks[tid]
                self._zone_history.pop(tid, None)
        if stale:
            logger.info(f"Evicted {len(stale)} stale tracks: {stale}")
        return stale

    def reset(self) -> None:
        """Clear everything, including the id counter (test isolation)."""
        with self.lock:
            self._tracks.clear()
            self._zone_history.clear()
            self._next_id = 1


class PersonTracker:
    """Frame-to-frame person tracker over a shared TrackStore.

    Tracks missing from a frame are left untouched; expiry only happens when
    track_ttl_s is configured.
    """

    def __init__(
        self,
        cfg: TrackingConfig,
        store: Optional[TrackStore] = None,
        associator: Optional[Associator] = None,
    ):
        self.cfg = cfg
        self.store = store or TrackStore(cfg.max_bbox_history)
        self.associator = associator or GreedyIouAssociator(cfg.iou_threshold)
        logger.info(f"Initialized person tracker ({type(self.associator).__name__}, iou>{cfg.iou_threshold})")

    def update(self, detections: Sequence[PersonDetection], now: Optional[float] = None) -> List[Track]:
        now = time.time() if now is None else now
        result: List[Track] = []
        # Hold the store for the whole frame so matching sees a consistent view
        with self.store.lock:
            assignments = self.associator.assign(detections, self.store.active_tracks())
            for det, track_id in zip(detections, assignments):
                if track_id is None:
                    track = self.store.new_track(det, now)
                    logger.debug(f"New track {track.track_id} at {det.bbox}")
                else:
                    track = self.store.update_track(track_id, det, now)
                result.append(track.snapshot())
        if self.cfg.track_ttl_s > 0:
            self.store.evict_stale(now, self.cfg.track_ttl_s)
        return result

    def reset(self) -> None:
        self.store.reset()
