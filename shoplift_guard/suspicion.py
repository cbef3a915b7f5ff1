"""Suspicion scoring from zone logic and a silhouette proxy.

`compute_suspicion` is pure: everything it needs is passed in, nothing is
remembered between calls.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import SuspicionConfig
from .tracking import Track, ZoneVisit, bbox_aspect_ratio, bbox_center
from .zones import Zone, classify_zone


@dataclass(frozen=True)
class SuspicionResult:
    score: float  # 0-100
    reasons: Tuple[str, ...]
    exit_without_checkout: bool = False
    dwell_high_theft_sec: float = 0.0
    torso_ratio_spike: bool = False


def _exit_without_checkout(
    track: Track,
    zones: Sequence[Zone],
    zone_history: Sequence[ZoneVisit],
    now: float,
    cfg: SuspicionConfig,
    frame_size: Optional[Tuple[float, float]],
) -> bool:
    current = classify_zone(bbox_center(track.bbox, frame_size), zones)
    if current is None or current.zone_type != "exit":
        return False
    cutoff = now - cfg.checkout_memory_s
    return not any(v.zone_type == "checkout" and v.entered_at >= cutoff for v in zone_history)


def _high_theft_dwell(zones: Sequence[Zone], zone_history: Sequence[ZoneVisit], now: float) -> float:
    # Sums every recorded high-theft visit up to now, not just the current one
    high_theft_ids = {z.zone_id for z in zones if z.enabled and z.zone_type == "high_theft"}
    return sum(
        now - v.entered_at
        for v in zone_history
        if v.zone_type == "high_theft" and v.zone_id in high_theft_ids
    )


def _torso_ratio_spike(track: Track, cfg: SuspicionConfig) -> bool:
    if len(track.bbox_history) < cfg.torso_ratio_window:
        return False
    recent = list(track.bbox_history)[-cfg.torso_ratio_window:]
    ratios = np.array([bbox_aspect_ratio(b) for b in recent])
    return bool(abs(ratios[-1] - ratios.mean()) >= cfg.torso_spike_delta)


def compute_suspicion(
    track: Track,
    zones: Sequence[Zone],
    zone_history: Sequence[ZoneVisit],
    now: float,
    cfg: Optional[SuspicionConfig] = None,
    frame_size: Optional[Tuple[float, float]] = None,
) -> SuspicionResult:
    """Score a track 0-100.

    Terms are additive:
    - exit_without_checkout: standing in an exit with no checkout visit in
      the last `checkout_memory_s` seconds.
    - dwell_high_theft: cumulative seconds across all high-theft visits
      reaches `dwell_s`.
    - torso_ratio_spike: latest bbox width/height deviates from the mean of
      the last few boxes.
    """
    cfg = cfg or SuspicionConfig()
    reasons: List[str] = []
    score = 0.0

    exit_flag = _exit_without_checkout(track, zones, zone_history, now, cfg, frame_size)
    if exit_flag:
        score += cfg.exit_without_checkout_bonus
        reasons.append("exit_without_checkout")

    dwell = _high_theft_dwell(zones, zone_history, now)
    if dwell >= cfg.dwell_s:
        score += cfg.dwell_high_theft_bonus
        reasons.append(f"dwell_high_theft_{dwell:.0f}s")

    spike = _torso_ratio_spike(track, cfg)
    if spike:
        score += cfg.torso_ratio_spike_bonus
        reasons.append("torso_ratio_spike")

    return SuspicionResult(
        score=float(min(100.0, max(0.0, score))),
        reasons=tuple(reasons),
        exit_without_checkout=exit_flag,
        dwell_high_theft_sec=round(dwell, 1),
        torso_ratio_spike=spike,
    )


def should_escalate(result: SuspicionResult, cfg: Optional[SuspicionConfig] = None) -> bool:
    """Whether the score is high enough to ask the concealment judge."""
    cfg = cfg or SuspicionConfig()
    return result.score >= cfg.escalate_score
