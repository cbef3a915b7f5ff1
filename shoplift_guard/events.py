"""Canonical shoplifting event.

Every alert, whether it comes from an upstream detector or from the local
tracking and judging path, is expressed as a ShopliftingEvent before it
reaches the gate. The model validates itself on construction, so an
instance that exists is always well-formed.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

SHOPLIFTING_EVENT_TYPE = "shoplifting_detected"


class EventValidationError(ValueError):
    """Raised when an incoming event does not match the canonical shape."""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_timestamp(value: str) -> datetime:
    # fromisoformat only learned the trailing "Z" in 3.11
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class EventEvidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    keyframe_path: Optional[str] = None
    keyframe_base64: Optional[str] = None
    clip_path: Optional[str] = None

    def refs(self) -> list[str]:
        """References suitable for the audit log (inline images are not copied)."""
        refs = [p for p in (self.keyframe_path, self.clip_path) if p]
        if self.keyframe_base64:
            refs.append("inline:keyframe_base64")
        return refs

    def to_dict(self) -> Dict[str, str]:
        return self.model_dump(exclude_none=True)


class ShopliftingEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    camera_id: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0, allow_inf_nan=False, strict=True)
    timestamp: str = Field(..., min_length=1)  # ISO-8601
    evidence: Optional[EventEvidence] = None
    track_id: Optional[str] = None
    event_type: Literal["shoplifting_detected"] = SHOPLIFTING_EVENT_TYPE

    @field_validator("camera_id", "location")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("timestamp")
    @classmethod
    def _iso_timestamp(cls, value: str) -> str:
        try:
            _parse_timestamp(value)
        except ValueError:
            raise ValueError(f"not ISO-8601: {value!r}") from None
        return value

    @field_validator("track_id", mode="before")
    @classmethod
    def _track_id_as_str(cls, value: Any) -> Any:
        # Trackers hand out integer ids; the wire format carries strings
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "event_type": self.event_type,
            "camera_id": self.camera_id,
            "location": self.location,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }
        if self.evidence is not None:
            data["evidence"] = self.evidence.to_dict()
        if self.track_id is not None:
            data["track_id"] = self.track_id
        return data


def _build(values: Mapping[str, Any]) -> ShopliftingEvent:
    try:
        return ShopliftingEvent.model_validate(values)
    except ValidationError as e:
        raise EventValidationError(f"Invalid shoplifting event: {e}") from e


def parse_event(data: Union[ShopliftingEvent, Mapping[str, Any], str, bytes]) -> ShopliftingEvent:
    """Validate raw input (event, mapping or JSON text) into a ShopliftingEvent.

    Existing instances are validated again, so nothing built around the
    model's validators slips through.
    """
    if isinstance(data, ShopliftingEvent):
        data = data.model_dump()
    elif isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise EventValidationError(f"Event is not valid JSON: {e}") from e
    if not isinstance(data, Mapping):
        raise EventValidationError("Event must be a JSON object")
    # The wire format must name its type; only Python callers get the default
    if "event_type" not in data:
        raise EventValidationError(f"event_type must be {SHOPLIFTING_EVENT_TYPE!r}")
    return _build(data)


def is_shoplifting_event(data: Any) -> bool:
    try:
        parse_event(data)
    except EventValidationError:
        return False
    return True


def event_from_judgement(
    camera_id: str,
    location: str,
    confidence: float,
    track_id: Optional[str] = None,
    timestamp: Optional[float] = None,
    keyframe_path: Optional[str] = None,
) -> ShopliftingEvent:
    """Build the canonical event for a judged track (confidence clamped to 0-1)."""
    if timestamp is None:
        iso = now_iso()
    else:
        iso = datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return _build({
        "camera_id": camera_id,
        "location": location,
        "confidence": min(1.0, max(0.0, float(confidence))),
        "timestamp": iso,
        "evidence": {"keyframe_path": keyframe_path} if keyframe_path else None,
        "track_id": track_id,
    })


def stub_event(**overrides: Any) -> ShopliftingEvent:
    """Synthetic event for smoke tests and the CLI --stub mode.

    Raises EventValidationError when an override is out of range.
    """
    values = {
        "camera_id": "cam-test-1",
        "location": "Aisle 6",
        "confidence": 0.85,
        "timestamp": now_iso(),
    }
    values.update(overrides)
    return _build(values)
