"""Alert pipeline: event -> gate -> voice -> incident log -> playback.

Two entry points:
1. `process_event` takes a canonical ShopliftingEvent from any upstream detector.
2. `process_frame` takes a frame's person detections, tracks them, scores
   suspicion per track, asks the concealment judge for escalated tracks and
   feeds the resulting event into `process_event`.

Neither entry point raises. Every gate decision leaves exactly one incident
record; unexpected errors leave a suppressed "pipeline_error" record.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from loguru import logger

from .config import PipelineConfig
from .events import EventValidationError, ShopliftingEvent, event_from_judgement, now_iso, parse_event
from .gate import AlertGate
from .incidents import FALLBACK_USED, SUPPRESSED, TRIGGERED, IncidentLog, IncidentRecord
from .judge import ConcealmentJudge, JudgeEvidence, JudgeResult, create_judge
from .playback import PlaybackQueue
from .suspicion import SuspicionResult, compute_suspicion, should_escalate
from .tracking import PersonDetection, PersonTracker, Track, ZoneVisit, bbox_center
from .voice import VoiceAlert, build_alert_text, create_voice
from .zones import Zone, classify_zone, detect_zone_transition

PIPELINE_ERROR = "pipeline_error"
INVALID_EVENT = "invalid_event"


class PipelineState(str, Enum):
    RECEIVED = "received"
    GATED = "gated"
    ALLOWED = "allowed"
    REJECTED = "rejected"
    VOICED = "voiced"
    LOGGED = "logged"


@dataclass(frozen=True)
class PipelineResult:
    ok: bool
    triggered: bool
    status: str
    reason: Optional[str] = None
    audio_ref: Optional[str] = None
    voice_backend: Optional[str] = None
    fallback_used: bool = False
    camera_id: Optional[str] = None
    track_id: Optional[str] = None
    error: Optional[str] = None


class AlertPipeline:
    """Owns the tracker, gate, judge, voice, incident log and playback queue.

    Judge and voice strategies are chosen once here and never swapped.
    """

    def __init__(
        self,
        cfg: Optional[PipelineConfig] = None,
        tracker: Optional[PersonTracker] = None,
        gate: Optional[AlertGate] = None,
        judge: Optional[ConcealmentJudge] = None,
        voice: Optional[VoiceAlert] = None,
        incidents: Optional[IncidentLog] = None,
        playback: Optional[PlaybackQueue] = None,
    ):
        self.cfg = cfg or PipelineConfig()
        self.tracker = tracker or PersonTracker(self.cfg.tracking)
        self.gate = gate or AlertGate(self.cfg.gate)
        self.judge = judge or create_judge(self.cfg.judge)
        self.voice = voice or create_voice(self.cfg.voice, self.cfg.storage.audio_dir)
        self.incidents = incidents or IncidentLog(self.cfg.storage.incident_log_path)
        if playback is None and self.cfg.storage.playback_enabled:
            playback = PlaybackQueue(self.cfg.storage.playback_queue_size)
        self.playback = playback
        logger.info(f"Alert pipeline ready: {self.cfg.describe()}")

    # === Event path ===

    def process_event(
        self,
        event: Union[ShopliftingEvent, Mapping[str, Any], str],
        now: Optional[float] = None,
        suspicion: Optional[SuspicionResult] = None,
        judge_result: Optional[JudgeResult] = None,
        min_confidence: Optional[float] = None,
    ) -> PipelineResult:
        try:
            event = parse_event(event)
        except EventValidationError as e:
            logger.warning(f"Rejected malformed event: {e}")
            return PipelineResult(ok=False, triggered=False, status=PipelineState.REJECTED.value,
                                  reason=INVALID_EVENT, error=str(e))

        self._trace(event, PipelineState.RECEIVED)
        try:
            return self._run(event, now, suspicion, judge_result, min_confidence)
        except Exception as e:
            logger.exception(f"Alert pipeline failed for {event.camera_id}")
            self._log_pipeline_error(event, suspicion, judge_result)
            return PipelineResult(ok=False, triggered=False, status=SUPPRESSED, reason=PIPELINE_ERROR,
                                  camera_id=event.camera_id, track_id=event.track_id, error=str(e))

    def _run(
        self,
        event: ShopliftingEvent,
        now: Optional[float],
        suspicion: Optional[SuspicionResult],
        judge_result: Optional[JudgeResult],
        min_confidence: Optional[float],
    ) -> PipelineResult:
        decision = self.gate.evaluate(
            event.camera_id, event.confidence, event.track_id, now=now, min_confidence=min_confidence
        )
        self._trace(event, PipelineState.GATED)

        if not decision.allow:
            self._trace(event, PipelineState.REJECTED)
            self.incidents.append(self._record(event, SUPPRESSED, suspicion, judge_result,
                                               suppressed_reason=decision.reason))
            self._trace(event, PipelineState.LOGGED)
            logger.info(f"Alert suppressed for {event.camera_id}/{event.track_id}: {decision.reason}")
            return PipelineResult(ok=True, triggered=False, status=SUPPRESSED, reason=decision.reason,
                                  camera_id=event.camera_id, track_id=event.track_id)

        self._trace(event, PipelineState.ALLOWED)
        voice = self.voice.play(event.location, event.camera_id, event.track_id)
        self._trace(event, PipelineState.VOICED)

        # Admitted but no audio at all: the alert survives as a log entry only
        status = TRIGGERED if voice.success and voice.audio_ref else FALLBACK_USED
        self.incidents.append(self._record(
            event, status, suspicion, judge_result,
            voice_backend=voice.backend_used,
            audio_ref=voice.audio_ref,
            alert_text=build_alert_text(event.location, self.cfg.voice.template),
        ))
        self._trace(event, PipelineState.LOGGED)

        if self.playback is not None and voice.audio_ref:
            self.playback.enqueue(voice.audio_ref)

        logger.warning(
            f"ALERT {status} at {event.location} (camera {event.camera_id}, track {event.track_id}, "
            f"confidence {event.confidence:.2f}, voice {voice.backend_used})"
        )
        return PipelineResult(
            ok=True,
            triggered=True,
            status=status,
            audio_ref=voice.audio_ref,
            voice_backend=voice.backend_used,
            fallback_used=voice.fallback_used,
            camera_id=event.camera_id,
            track_id=event.track_id,
            error=voice.error,
        )

    def _record(
        self,
        event: ShopliftingEvent,
        status: str,
        suspicion: Optional[SuspicionResult],
        judge_result: Optional[JudgeResult],
        **extra: Any,
    ) -> IncidentRecord:
        return IncidentRecord(
            timestamp=now_iso(),
            camera_id=event.camera_id,
            location=event.location,
            status=status,
            confidence=event.confidence,
            track_id=event.track_id,
            suspicion_score=suspicion.score if suspicion else None,
            suspicion_reasons=list(suspicion.reasons) if suspicion else [],
            evidence_refs=event.evidence.refs() if event.evidence else [],
            judge_backend=judge_result.backend if judge_result else None,
            judge_result=judge_result.to_dict() if judge_result else None,
            **extra,
        )

    def _log_pipeline_error(
        self,
        event: ShopliftingEvent,
        suspicion: Optional[SuspicionResult],
        judge_result: Optional[JudgeResult],
    ) -> None:
        try:
            self.incidents.append(self._record(event, SUPPRESSED, suspicion, judge_result,
                                               suppressed_reason=PIPELINE_ERROR))
        except Exception as e:
            logger.error(f"Could not record pipeline error for {event.camera_id}: {e}")

    @staticmethod
    def _trace(event: ShopliftingEvent, state: PipelineState) -> None:
        logger.debug(f"[{event.camera_id}/{event.track_id}] {state.value}")

    # === Frame path ===

    def process_frame(
        self,
        camera_id: str,
        location: str,
        detections: Sequence[PersonDetection],
        zones: Sequence[Zone],
        now: Optional[float] = None,
        frame_size: Optional[Tuple[float, float]] = None,
        frame_paths: Sequence[str] = (),
    ) -> List[PipelineResult]:
        """Track persons in one frame and push escalated tracks through the gate.

        Returns one result per gate decision made for this frame.
        """
        now = time.time() if now is None else now
        try:
            tracks = self.tracker.update(detections, now)
        except Exception as e:
            logger.exception(f"Tracker update failed for {camera_id}")
            return [PipelineResult(ok=False, triggered=False, status=SUPPRESSED, reason=PIPELINE_ERROR,
                                   camera_id=camera_id, error=str(e))]

        results = []
        for track in tracks:
            result = self._process_track(camera_id, location, track, zones, now, frame_size, frame_paths)
            if result is not None:
                results.append(result)
        return results

    def _record_zone_visit(
        self,
        camera_id: str,
        track: Track,
        zones: Sequence[Zone],
        now: float,
        frame_size: Optional[Tuple[float, float]],
    ) -> List[ZoneVisit]:
        store = self.tracker.store
        history = store.zone_history(track.track_id)
        point = bbox_center(track.bbox, frame_size)
        zone = classify_zone(point, zones)
        last_zone_id = history[-1].zone_id if history else None
        if zone is None or zone.zone_id == last_zone_id:
            return history

        previous = None
        if len(track.bbox_history) >= 2:
            previous = bbox_center(track.bbox_history[-2], frame_size)
        transition = detect_zone_transition(previous, point, zones)
        if transition.is_critical:
            logger.info(f"[{camera_id}] track {track.track_id}: {transition.reason}")

        visit = ZoneVisit(zone.zone_id, zone.zone_type, now)
        store.record_zone_visit(track.track_id, visit)
        return history + [visit]

    def _process_track(
        self,
        camera_id: str,
        location: str,
        track: Track,
        zones: Sequence[Zone],
        now: float,
        frame_size: Optional[Tuple[float, float]],
        frame_paths: Sequence[str],
    ) -> Optional[PipelineResult]:
        try:
            history = self._record_zone_visit(camera_id, track, zones, now, frame_size)
            suspicion = compute_suspicion(track, zones, history, now, self.cfg.suspicion, frame_size)
            if not should_escalate(suspicion, self.cfg.suspicion):
                return None

            logger.info(
                f"[{camera_id}] track {track.track_id} escalated: score={suspicion.score:.0f} "
                f"reasons={list(suspicion.reasons)}"
            )
            judge_result = self.judge.judge(JudgeEvidence(
                camera_id=camera_id,
                location=location,
                suspicion_score=suspicion.score,
                reasons=suspicion.reasons,
                exit_without_checkout=suspicion.exit_without_checkout,
                torso_ratio_spike=suspicion.torso_ratio_spike,
                frame_paths=tuple(frame_paths),
            ))
            event = event_from_judgement(
                camera_id=camera_id,
                location=location,
                confidence=judge_result.confidence,
                track_id=str(track.track_id),
                timestamp=now,
                keyframe_path=frame_paths[0] if frame_paths else None,
            )
        except Exception as e:
            logger.exception(f"Scoring failed for {camera_id} track {track.track_id}")
            try:
                fallback_event = event_from_judgement(camera_id, location, 0.0, str(track.track_id), now)
            except EventValidationError as invalid:
                logger.error(f"Could not record pipeline error for {camera_id!r}: {invalid}")
            else:
                self._log_pipeline_error(fallback_event, None, None)
            return PipelineResult(ok=False, triggered=False, status=SUPPRESSED, reason=PIPELINE_ERROR,
                                  camera_id=camera_id, track_id=str(track.track_id), error=str(e))

        return self.process_event(
            event,
            now=now,
            suspicion=suspicion,
            judge_result=judge_result,
            min_confidence=self.cfg.gate.judge_min_confidence,
        )

    # === Lifecycle ===

    def reset(self) -> None:
        """Clear tracks and gate state. Track ids restart at 1, so this is for test isolation only."""
        self.tracker.reset()
        self.gate.reset()
        rate_limiter = getattr(self.judge, "rate_limiter", None)
        if rate_limiter is not None:
            rate_limiter.reset()

    def close(self) -> None:
        if self.playback is not None:
            self.playback.stop()


def create_pipeline(cfg: Optional[PipelineConfig] = None, session=None) -> AlertPipeline:
    """Build a pipeline from configuration (environment when cfg is None).

    `session` is handed to the remote judge and remote TTS (a requests.Session
    or anything with a compatible `post`).
    """
    cfg = cfg or PipelineConfig.from_env()
    return AlertPipeline(
        cfg,
        judge=create_judge(cfg.judge, session=session),
        voice=create_voice(cfg.voice, cfg.storage.audio_dir, session=session),
    )
