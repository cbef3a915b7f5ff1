"""Zone geometry for store floor plans.

Zones are polygons in normalized frame coordinates (0-1). Helpers here answer
"which zone is this person in" and "how risky is the area under this box".
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry import Polygon

ZONE_TYPES = ("entrance", "exit", "checkout", "high_theft", "staff_only", "general")

Point = Tuple[float, float]
BoundingBox = Tuple[float, float, float, float]  # x1, y1, x2, y2


@dataclass(frozen=True)
class Zone:
    zone_id: str
    name: str
    zone_type: str
    polygon: Tuple[Point, ...]
    risk_multiplier: float = 1.0
    enabled: bool = True


@dataclass(frozen=True)
class ZoneTransition:
    from_zone: Optional[Zone]
    to_zone: Optional[Zone]
    is_critical: bool = False
    reason: Optional[str] = None


def is_point_in_polygon(point: Point, polygon: Sequence[Point]) -> bool:
    """Even-odd ray casting test.

    Polygons with fewer than 3 vertices contain nothing. Points lying exactly
    on an edge are unspecified: the answer depends on which side the ray tie
    falls and is not guaranteed to be stable.
    """
    if len(polygon) < 3:
        return False
    px, py = point
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        xi, yi = polygon[i]
        xj, yj = polygon[j]
        if (yi > py) != (yj > py) and px < (xj - xi) * (py - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def classify_zone(point: Point, zones: Iterable[Zone]) -> Optional[Zone]:
    """First enabled zone containing the point, in configured order.

    Overlapping zones are resolved by declaration order, not by type or risk.
    """
    for zone in zones:
        if not zone.enabled:
            continue
        if is_point_in_polygon(point, zone.polygon):
            return zone
    return None


def box_center(box: BoundingBox) -> Point:
    x1, y1, x2, y2 = box
    return (x1 + x2) / 2, (y1 + y2) / 2


def box_corners(box: BoundingBox) -> List[Point]:
    x1, y1, x2, y2 = box
    return [(x1, y1), (x2, y1), (x2, y2), (x1, y2)]


def box_overlap_score(box: BoundingBox, zone: Zone) -> float:
    """Center counts 0.5, each corner inside the zone counts 0.125."""
    score = 0.5 if is_point_in_polygon(box_center(box), zone.polygon) else 0.0
    for corner in box_corners(box):
        if is_point_in_polygon(corner, zone.polygon):
            score += 0.125
    return min(score, 1.0)


def zones_for_box(box: BoundingBox, zones: Iterable[Zone], enabled_only: bool = True) -> List[Tuple[Zone, float]]:
    """Zones overlapping the box, highest overlap first (ties keep config order)."""
    results = []
    for zone in zones:
        if enabled_only and not zone.enabled:
            continue
        overlap = box_overlap_score(box, zone)
        if overlap > 0:
            results.append((zone, overlap))
    results.sort(key=lambda item: item[1], reverse=True)
    return results


def primary_zone_for_box(box: BoundingBox, zones: Iterable[Zone]) -> Optional[Zone]:
    overlapping = zones_for_box(box, zones)
    return overlapping[0][0] if overlapping else None


def risk_multiplier_for_box(box: BoundingBox, zones: Iterable[Zone]) -> float:
    """Overlap-weighted average risk multiplier, 1.0 outside every zone."""
    overlapping = zones_for_box(box, zones)
    if not overlapping:
        return 1.0
    weights = np.array([overlap for _, overlap in overlapping])
    multipliers = np.array([zone.risk_multiplier for zone, _ in overlapping])
    return float(np.average(multipliers, weights=weights))


def risk_multiplier_at(point: Point, zones: Iterable[Zone]) -> float:
    """Highest multiplier among enabled zones containing the point."""
    containing = [z.risk_multiplier for z in zones if z.enabled and is_point_in_polygon(point, z.polygon)]
    return max(containing) if containing else 1.0


def zones_of_type(point: Point, zones: Iterable[Zone], zone_type: str) -> List[Zone]:
    return [
        z for z in zones
        if z.enabled and z.zone_type == zone_type and is_point_in_polygon(point, z.polygon)
    ]


def is_in_zone_type(point: Point, zones: Iterable[Zone], zone_type: str) -> bool:
    return bool(zones_of_type(point, zones, zone_type))


def polygon_area(polygon: Sequence[Point]) -> float:
    if len(polygon) < 3:
        return 0.0
    return float(Polygon(polygon).area)


def polygon_centroid(polygon: Sequence[Point]) -> Point:
    """Vertex mean (used for label placement, not an area centroid)."""
    if not polygon:
        return 0.0, 0.0
    mean = np.asarray(polygon, dtype=float).mean(axis=0)
    return float(mean[0]), float(mean[1])


def detect_zone_transition(previous: Optional[Point], current: Point, zones: Sequence[Zone]) -> ZoneTransition:
    """Classify a move between two positions.

    Entering an exit from anywhere but a checkout, or entering a staff-only
    area, is critical.
    """
    to_zone = classify_zone(current, zones)
    from_zone = classify_zone(previous, zones) if previous is not None else None
    from_type = from_zone.zone_type if from_zone else None
    to_type = to_zone.zone_type if to_zone else None

    if to_type == "exit" and from_type not in ("exit", "checkout"):
        return ZoneTransition(from_zone, to_zone, True, "approaching exit without passing checkout")
    if to_type == "staff_only" and from_type != "staff_only":
        return ZoneTransition(from_zone, to_zone, True, "entering staff-only area")
    return ZoneTransition(from_zone, to_zone)


def _parse_point(raw) -> Point:
    if isinstance(raw, dict):
        return float(raw["x"]), float(raw["y"])
    x, y = raw
    return float(x), float(y)


def zone_from_dict(data: dict) -> Zone:
    """Build a zone from dashboard-style JSON (camelCase or snake_case keys).

    Raises ValueError for anything that is not a well-formed zone.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Zone must be a JSON object, got {type(data).__name__}")
    zone_type = data.get("type", data.get("zone_type", "general"))
    if zone_type not in ZONE_TYPES:
        raise ValueError(f"Unknown zone type: {zone_type!r}")
    zone_id = str(data.get("id", data.get("zone_id", "")))
    if not zone_id:
        raise ValueError("Zone is missing an id")
    try:
        polygon = tuple(_parse_point(p) for p in data.get("polygon", []))
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Zone {zone_id!r} has a malformed polygon point: {e!r}") from e
    multiplier = data.get("riskMultiplier", data.get("risk_multiplier", 1.0))
    try:
        risk_multiplier = float(multiplier)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Zone {zone_id!r} has an invalid risk multiplier: {multiplier!r}") from e
    return Zone(
        zone_id=zone_id,
        name=str(data.get("name", zone_id)),
        zone_type=zone_type,
        polygon=polygon,
        risk_multiplier=risk_multiplier,
        enabled=bool(data.get("enabled", True)),
    )


def load_zones(path: str | Path) -> List[Zone]:
    """Load a zone list from a JSON file (either a list or {"zones": [...]}).

    Raises OSError when the file cannot be read and ValueError when it is not
    valid zone JSON.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("zones", [])
    if not isinstance(data, list):
        raise ValueError(f"Zone file {path} must hold a list of zones")
    return [zone_from_dict(item) for item in data]
