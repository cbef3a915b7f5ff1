import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from loguru import logger


DEFAULT_ALERT_TEMPLATE = "Security alert. Possible shoplifting detected at {location}."


def _raw(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def env_float(
    environ: Mapping[str, str],
    name: str,
    default: float,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    """Read a float knob; anything non-numeric or out of range resolves to the default."""
    raw = _raw(environ, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not a number, using default {default}")
        return default
    if value != value or value in (float("inf"), float("-inf")):
        logger.warning(f"{name}={raw!r} is not finite, using default {default}")
        return default
    if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
        logger.warning(f"{name}={raw!r} out of range, using default {default}")
        return default
    return value


def env_int(environ: Mapping[str, str], name: str, default: int, minimum: Optional[int] = None) -> int:
    value = env_float(environ, name, float(default), None if minimum is None else float(minimum))
    if value != int(value):
        logger.warning(f"{name}={value} is not an integer, using default {default}")
        return default
    return int(value)


def env_flag(environ: Mapping[str, str], name: str) -> bool:
    raw = _raw(environ, name)
    return raw is not None and raw.lower() in ("1", "true")


def env_str(environ: Mapping[str, str], name: str, default: str) -> str:
    raw = _raw(environ, name)
    return default if raw is None else raw


@dataclass
class TrackingConfig:
    iou_threshold: float = 0.3  # detection must overlap a track by more than this
    max_bbox_history: int = 10
    # Tracks are never expired unless this is set (seconds unseen before eviction)
    track_ttl_s: float = 0.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TrackingConfig":
        environ = os.environ if environ is None else environ
        return cls(track_ttl_s=env_float(environ, "SHOPLIFT_TRACK_TTL_SECONDS", 0.0, minimum=0.0))


@dataclass
class SuspicionConfig:
    escalate_score: float = 70.0
    dwell_s: float = 12.0  # cumulative seconds in high-theft zones
    checkout_memory_s: float = 60.0  # how far back a checkout visit still counts

    # Score terms
    exit_without_checkout_bonus: float = 40.0
    dwell_high_theft_bonus: float = 25.0
    torso_ratio_spike_bonus: float = 20.0

    # Posture proxy: last N bbox width/height ratios
    torso_ratio_window: int = 5
    torso_spike_delta: float = 0.25

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SuspicionConfig":
        environ = os.environ if environ is None else environ
        return cls(
            escalate_score=env_float(environ, "SHOPLIFT_ESCALATE_SCORE", 70.0, 0.0, 100.0),
            dwell_s=env_float(environ, "SHOPLIFT_DWELL_SECONDS", 12.0, minimum=0.0),
            checkout_memory_s=env_float(environ, "SHOPLIFT_CHECKOUT_MEMORY_SECONDS", 60.0, minimum=0.0),
        )


@dataclass
class JudgeConfig:
    remote_enabled: bool = False
    api_key: Optional[str] = field(default=None, repr=False)
    url: str = "https://api.minimax.io/v1/text/chatcompletion_v2"
    model: str = "MiniMax-Text-01"
    timeout_s: float = 20.0
    max_retries: int = 2

    # Per-camera sliding window for remote calls
    rate_limit_calls: int = 6
    rate_limit_window_s: float = 60.0

    @property
    def remote_available(self) -> bool:
        return self.remote_enabled and bool(self.api_key)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "JudgeConfig":
        environ = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            remote_enabled=env_flag(environ, "ENABLE_MINIMAX_VLM"),
            api_key=_raw(environ, "MINIMAX_API_KEY"),
            url=env_str(environ, "MINIMAX_VLM_URL", defaults.url),
            model=env_str(environ, "MINIMAX_VLM_MODEL", defaults.model),
        )


@dataclass
class GateConfig:
    min_confidence: float = 0.75  # canonical events from upstream detectors
    judge_min_confidence: float = 0.7  # events built from a concealment judgement
    camera_cooldown_s: float = 20.0
    track_cooldown_s: float = 30.0  # 0 disables
    persistence_count: int = 1  # 1 disables
    persistence_window_s: float = 1.0
    persistence_buffer: int = 10

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GateConfig":
        environ = os.environ if environ is None else environ
        window_ms = env_float(environ, "SHOPLIFT_PERSISTENCE_WINDOW_MS", 1000.0, minimum=0.0)
        return cls(
            min_confidence=env_float(environ, "SHOPLIFT_MIN_CONFIDENCE", 0.75, 0.0, 1.0),
            judge_min_confidence=env_float(environ, "SHOPLIFT_JUDGE_MIN_CONFIDENCE", 0.7, 0.0, 1.0),
            camera_cooldown_s=env_float(environ, "SHOPLIFT_CAMERA_COOLDOWN_SECONDS", 20.0, minimum=0.0),
            track_cooldown_s=env_float(environ, "SHOPLIFT_TRACK_COOLDOWN_SECONDS", 30.0, minimum=0.0),
            persistence_count=env_int(environ, "SHOPLIFT_PERSISTENCE_COUNT", 1, minimum=1),
            persistence_window_s=window_ms / 1000.0,
        )


@dataclass
class VoiceConfig:
    template: str = DEFAULT_ALERT_TEMPLATE
    local_engine: str = "auto"  # "auto" tries OS speech first, "tone" always writes a beep
    speech_timeout_s: float = 10.0

    remote_enabled: bool = False
    api_key: Optional[str] = field(default=None, repr=False)
    dry_run: bool = False
    url: str = "https://api-uw.minimax.io/v1/t2a_v2"
    model: str = "speech-2.8-turbo"
    voice_id: str = "English_expressive_narrator"
    timeout_s: float = 15.0
    max_retries: int = 2
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 5.0

    @property
    def remote_available(self) -> bool:
        return self.remote_enabled and bool(self.api_key) and not self.dry_run

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "VoiceConfig":
        environ = os.environ if environ is None else environ
        defaults = cls()
        template = env_str(environ, "SHOPLIFT_ALERT_TEMPLATE", DEFAULT_ALERT_TEMPLATE)
        engine = env_str(environ, "SHOPLIFT_LOCAL_VOICE", "auto").lower()
        if engine not in ("auto", "tone"):
            logger.warning(f"SHOPLIFT_LOCAL_VOICE={engine!r} unknown, using 'auto'")
            engine = "auto"
        return cls(
            template=template,
            local_engine=engine,
            remote_enabled=env_flag(environ, "ENABLE_MINIMAX_TTS"),
            api_key=_raw(environ, "MINIMAX_API_KEY"),
            dry_run=env_flag(environ, "DRY_RUN"),
            url=env_str(environ, "MINIMAX_TTS_URL", defaults.url),
            model=env_str(environ, "MINIMAX_TTS_MODEL", defaults.model),
            voice_id=env_str(environ, "MINIMAX_VOICE_ID", defaults.voice_id),
        )


@dataclass
class StorageConfig:
    root: Path = Path("alerts")
    enable_file_logging: bool = True
    playback_enabled: bool = True
    playback_queue_size: int = 16

    @property
    def audio_dir(self) -> Path:
        return self.root / "audio"

    @property
    def incident_log_path(self) -> Path:
        return self.root / "incidents.jsonl"

    @property
    def log_dir(self) -> Path:
        return self.root / "logs"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StorageConfig":
        environ = os.environ if environ is None else environ
        return cls(root=Path(env_str(environ, "SHOPLIFT_ALERTS_DIR", "alerts")))


@dataclass
class PipelineConfig:
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    suspicion: SuspicionConfig = field(default_factory=SuspicionConfig)
    judge: JudgeConfig = field(default_factory=JudgeConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        environ = os.environ if environ is None else environ
        return cls(
            tracking=TrackingConfig.from_env(environ),
            suspicion=SuspicionConfig.from_env(environ),
            judge=JudgeConfig.from_env(environ),
            gate=GateConfig.from_env(environ),
            voice=VoiceConfig.from_env(environ),
            storage=StorageConfig.from_env(environ),
        )

    def describe(self) -> dict:
        """Knob summary for startup logs. Never includes credentials."""
        return {
            "escalate_score": self.suspicion.escalate_score,
            "dwell_s": self.suspicion.dwell_s,
            "checkout_memory_s": self.suspicion.checkout_memory_s,
            "min_confidence": self.gate.min_confidence,
            "judge_min_confidence": self.gate.judge_min_confidence,
            "camera_cooldown_s": self.gate.camera_cooldown_s,
            "track_cooldown_s": self.gate.track_cooldown_s,
            "persistence_count": self.gate.persistence_count,
            "persistence_window_s": self.gate.persistence_window_s,
            "remote_judge": self.judge.remote_available,
            "remote_voice": self.voice.remote_available,
            "alerts_dir": str(self.storage.root),
        }
