"""Concealment judges.

LocalJudge is the always-available rule judge. VisionJudge asks a remote
vision-language model but hands every failure back to LocalJudge, so callers
always get a result and never see an exception.
"""
from __future__ import annotations

import base64
import json
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple

from loguru import logger

from .config import JudgeConfig
from .remote import RemoteCallError, post_json

LOCAL_CONFIDENCE_LIKELY = 0.7
LOCAL_CONFIDENCE_UNLIKELY = 0.2
ALERT_CONFIDENCE = 0.7

JUDGE_PROMPT = (
    "You review short person crops from a retail store camera. "
    "Decide only whether the person appears to be concealing merchandise on their body or in a bag. "
    "Do not identify the person, do not describe items in detail and do not accuse anyone. "
    "Rule signals already observed: {reasons}. Location: {location}. "
    'Reply with JSON only: {{"concealment_likely": bool, "confidence_0_1": number, '
    '"evidence": [string], "risk_of_false_positive": [string]}}'
)


@dataclass(frozen=True)
class JudgeEvidence:
    camera_id: str
    location: str
    suspicion_score: float
    reasons: Tuple[str, ...] = ()
    exit_without_checkout: bool = False
    torso_ratio_spike: bool = False
    frame_paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class JudgeResult:
    concealment_likely: bool
    confidence: float  # 0-1
    evidence: Tuple[str, ...] = ()
    risk_of_false_positive: Tuple[str, ...] = ()
    recommended_action: str = "log_only"  # "alert" | "log_only"
    backend: str = "local"

    def to_dict(self) -> dict:
        return {
            "concealment_likely": self.concealment_likely,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
            "risk_of_false_positive": list(self.risk_of_false_positive),
            "recommended_action": self.recommended_action,
            "backend": self.backend,
        }


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


def recommended_action(concealment_likely: bool, confidence: float) -> str:
    return "alert" if concealment_likely and confidence >= ALERT_CONFIDENCE else "log_only"


class ConcealmentJudge(ABC):
    backend_name = "unknown"

    @abstractmethod
    def judge(self, evidence: JudgeEvidence) -> JudgeResult:
        ...


class LocalJudge(ConcealmentJudge):
    """Deterministic rule judge, no network and no credentials."""

    backend_name = "local"

    def judge(self, evidence: JudgeEvidence) -> JudgeResult:
        likely = evidence.exit_without_checkout or evidence.torso_ratio_spike
        confidence = LOCAL_CONFIDENCE_LIKELY if likely else LOCAL_CONFIDENCE_UNLIKELY
        tags = []
        if evidence.exit_without_checkout:
            tags.append("exit_without_checkout")
        if evidence.torso_ratio_spike:
            tags.append("torso_ratio_spike")
        return JudgeResult(
            concealment_likely=likely,
            confidence=confidence,
            evidence=tuple(tags),
            risk_of_false_positive=("rule-based heuristic; no visual analysis",),
            recommended_action=recommended_action(likely, confidence),
        )


class CameraRateLimiter:
    """Sliding-window call budget per camera."""

    def __init__(self, max_calls: int, window_s: float):
        self.max_calls = max_calls
        self.window_s = window_s
        self._calls: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def try_acquire(self, camera_id: str, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        with self._lock:
            calls = self._calls.setdefault(camera_id, deque())
            while calls and calls[0] < now - self.window_s:
                calls.popleft()
            if len(calls) >= self.max_calls:
                return False
            calls.append(now)
            return True

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()


def _encode_frame(path: str) -> Optional[str]:
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        logger.warning(f"Skipping unreadable frame {path}: {e}")
        return None
    return "data:image/jpeg;base64," + base64.b64encode(data).decode("ascii")


def parse_verdict(data: dict) -> JudgeResult:
    """Turn a chat-completion response into a JudgeResult.

    Raises ValueError when the model did not return the expected JSON.
    """
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise ValueError("Response has no message content") from e
    if not isinstance(content, str):
        raise ValueError("Message content is not text")
    # Models sometimes wrap the JSON in prose or code fences
    verdict = json.loads(content[content.find("{"): content.rfind("}") + 1])
    if not isinstance(verdict, dict) or "concealment_likely" not in verdict:
        raise ValueError("Verdict is missing concealment_likely")
    likely = bool(verdict["concealment_likely"])
    confidence = _clamp01(verdict.get("confidence_0_1", verdict.get("confidence", 0.0)))
    return JudgeResult(
        concealment_likely=likely,
        confidence=confidence,
        evidence=tuple(str(e) for e in verdict.get("evidence", []) or []),
        risk_of_false_positive=tuple(str(r) for r in verdict.get("risk_of_false_positive", []) or []),
        recommended_action=recommended_action(likely, confidence),
        backend="remote",
    )


class VisionJudge(ConcealmentJudge):
    """Remote vision-language judge with a per-camera rate limit.

    Falls back to `fallback` whenever the remote path is unavailable: flag off,
    no key, no frames, rate limit hit, HTTP failure or unparseable verdict.
    """

    backend_name = "remote"

    def __init__(
        self,
        cfg: JudgeConfig,
        fallback: Optional[ConcealmentJudge] = None,
        session=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.fallback = fallback or LocalJudge()
        self.session = session
        self.sleep = sleep
        self.rate_limiter = CameraRateLimiter(cfg.rate_limit_calls, cfg.rate_limit_window_s)

    def _build_payload(self, evidence: JudgeEvidence, images: List[str]) -> dict:
        prompt = JUDGE_PROMPT.format(
            reasons=", ".join(evidence.reasons) or "none",
            location=evidence.location,
        )
        content = [{"type": "text", "text": prompt}]
        content.extend({"type": "image_url", "image_url": {"url": url}} for url in images)
        return {
            "model": self.cfg.model,
            "messages": [{"role": "user", "content": content}],
            "temperature": 0.1,
        }

    def _delegate(self, evidence: JudgeEvidence, why: str) -> JudgeResult:
        logger.info(f"Vision judge falling back to {self.fallback.backend_name} for {evidence.camera_id}: {why}")
        return self.fallback.judge(evidence)

    def judge(self, evidence: JudgeEvidence) -> JudgeResult:
        if not self.cfg.remote_available:
            return self._delegate(evidence, "remote judge disabled or no API key")
        if not self.rate_limiter.try_acquire(evidence.camera_id):
            return self._delegate(evidence, "rate limit exceeded")
        images = [img for img in (_encode_frame(p) for p in evidence.frame_paths) if img]
        if not images:
            return self._delegate(evidence, "no frames to review")

        try:
            data = post_json(
                self.cfg.url,
                self._build_payload(evidence, images),
                api_key=self.cfg.api_key or "",
                timeout_s=self.cfg.timeout_s,
                max_retries=self.cfg.max_retries,
                session=self.session,
                sleep=self.sleep,
            )
            result = parse_verdict(data)
        except RemoteCallError as e:
            return self._delegate(evidence, f"remote call failed: {e}")
        except ValueError as e:
            return self._delegate(evidence, f"bad verdict: {e}")
        except Exception as e:
            logger.exception(f"Unexpected vision judge error for {evidence.camera_id}")
            return self._delegate(evidence, f"unexpected error: {e}")

        logger.info(
            f"Vision judge for {evidence.camera_id}: likely={result.concealment_likely} "
            f"confidence={result.confidence:.2f}"
        )
        return result


def create_judge(cfg: JudgeConfig, session=None) -> ConcealmentJudge:
    """Pick the judge once, at pipeline construction."""
    if cfg.remote_available:
        logger.info("Concealment judge: remote vision judge with local fallback")
        return VisionJudge(cfg, session=session)
    logger.info("Concealment judge: local rule judge")
    return LocalJudge()
