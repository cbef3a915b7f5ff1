"""Voice alerts: local speech or tone by default, optional remote TTS.

`play()` renders the alert audio to a file and reports which backend made it.
Actual speaker output goes through the PlaybackQueue so it never holds up the
gate or the incident log.
"""
from __future__ import annotations

import re
import secrets
import shutil
import subprocess
import sys
import time
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import numpy as np
from loguru import logger

from .config import DEFAULT_ALERT_TEMPLATE, VoiceConfig
from .remote import RemoteCallError, post_json

TONE_SAMPLE_RATE = 8000
TONE_DURATION_S = 0.4
TONE_FREQ_HZ = 880.0
TONE_AMPLITUDE = 0.3

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


@dataclass(frozen=True)
class VoiceResult:
    success: bool
    audio_ref: Optional[str]
    backend_used: str  # "local" | "remote"
    error: Optional[str] = None
    fallback_used: bool = False


def build_alert_text(location: str, template: Optional[str] = None) -> str:
    """Neutral alert wording; the template only ever receives the location."""
    return (template or DEFAULT_ALERT_TEMPLATE).replace("{location}", location)


def safe_component(value: str, max_len: int = 32) -> str:
    return _UNSAFE_CHARS.sub("_", value)[:max_len] or "_"


def artifact_name(
    camera_id: str,
    suffix: str,
    ext: str,
    track_id: Optional[str] = None,
    now: Optional[float] = None,
) -> str:
    """Filesystem-safe, collision-resistant audio file name.

    <UTC timestamp with ms>_<camera>[_<track>]_<suffix>_<random>.<ext>
    """
    now = time.time() if now is None else now
    stamp = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3]
    parts = [stamp, safe_component(camera_id)]
    if track_id is not None:
        parts.append(safe_component(str(track_id), 16))
    parts.extend([suffix, secrets.token_hex(3)])
    return "_".join(parts) + "." + ext


def hex_to_bytes(hex_str: str) -> bytes:
    """Decode the hex-encoded audio returned by the TTS API (whitespace allowed)."""
    clean = re.sub(r"\s", "", hex_str)
    if len(clean) % 2 != 0:
        raise ValueError("Invalid hex length")
    return bytes.fromhex(clean)


def write_tone_wav(
    path: Path,
    freq_hz: float = TONE_FREQ_HZ,
    duration_s: float = TONE_DURATION_S,
    sample_rate: int = TONE_SAMPLE_RATE,
) -> Path:
    """Write a short mono 16-bit sine beep."""
    path.parent.mkdir(parents=True, exist_ok=True)
    t = np.arange(int(sample_rate * duration_s)) / sample_rate
    samples = (32767 * TONE_AMPLITUDE * np.sin(2 * np.pi * freq_hz * t)).astype("<i2")
    with wave.open(str(path), "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(samples.tobytes())
    return path


class VoiceAlert(ABC):
    backend_name = "unknown"

    @abstractmethod
    def play(self, location: str, camera_id: str, track_id: Optional[str] = None) -> VoiceResult:
        ...


class LocalVoiceAlert(VoiceAlert):
    """OS speech synthesis when available, otherwise a beep.

    Speech failures degrade to the beep; only a failure to write the beep
    itself (bad directory, disk full) is reported as unsuccessful.
    """

    backend_name = "local"

    def __init__(self, cfg: VoiceConfig, audio_dir: Path, platform: Optional[str] = None):
        self.cfg = cfg
        self.audio_dir = Path(audio_dir)
        self.platform = platform or sys.platform

    def _speech_command(self, text: str, out_path: Path) -> Optional[list[str]]:
        if self.platform == "darwin" and shutil.which("say"):
            return ["say", "-o", str(out_path), text]
        if self.platform.startswith("linux") and shutil.which("espeak"):
            return ["espeak", "-w", str(out_path), text]
        return None

    def _synthesize_speech(self, text: str, camera_id: str, track_id: Optional[str]) -> Optional[Path]:
        ext = "aiff" if self.platform == "darwin" else "wav"
        out_path = self.audio_dir / artifact_name(camera_id, "local", ext, track_id)
        cmd = self._speech_command(text, out_path)
        if cmd is None:
            return None
        try:
            self.audio_dir.mkdir(parents=True, exist_ok=True)
            subprocess.run(cmd, check=True, capture_output=True, timeout=self.cfg.speech_timeout_s)
        except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            logger.warning(f"{cmd[0]} failed, using tone instead: {e}")
            return None
        if not out_path.exists():
            logger.warning(f"{cmd[0]} produced no file, using tone instead")
            return None
        return out_path

    def play(self, location: str, camera_id: str, track_id: Optional[str] = None) -> VoiceResult:
        if self.cfg.local_engine == "auto":
            text = build_alert_text(location, self.cfg.template)
            spoken = self._synthesize_speech(text, camera_id, track_id)
            if spoken is not None:
                return VoiceResult(True, str(spoken), self.backend_name)

        tone_path = self.audio_dir / artifact_name(camera_id, "beep", "wav", track_id)
        try:
            write_tone_wav(tone_path)
        except OSError as e:
            logger.error(f"Could not write alert tone to {tone_path}: {e}")
            return VoiceResult(False, None, self.backend_name, error=f"tone write failed: {e}")
        return VoiceResult(True, str(tone_path), self.backend_name)


class RemoteTtsVoiceAlert(VoiceAlert):
    """Remote text-to-speech with bounded retries and local fallback."""

    backend_name = "remote"

    def __init__(
        self,
        cfg: VoiceConfig,
        audio_dir: Path,
        fallback: Optional[VoiceAlert] = None,
        session=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.audio_dir = Path(audio_dir)
        self.fallback = fallback or LocalVoiceAlert(cfg, audio_dir)
        self.session = session
        self.sleep = sleep

    def _payload(self, text: str) -> dict:
        return {
            "model": self.cfg.model,
            "text": text,
            "stream": False,
            "output_format": "hex",
            "voice_setting": {"voice_id": self.cfg.voice_id, "speed": 1, "vol": 1, "pitch": 0},
            "audio_setting": {"sample_rate": 32000, "bitrate": 128000, "format": "mp3", "channel": 1},
        }

    def _fallback(self, location: str, camera_id: str, track_id: Optional[str], why: str) -> VoiceResult:
        logger.warning(f"Remote TTS unavailable for {camera_id} ({why}), using local voice")
        result = self.fallback.play(location, camera_id, track_id)
        return VoiceResult(
            success=result.success,
            audio_ref=result.audio_ref,
            backend_used=result.backend_used,
            error=result.error or why,
            fallback_used=True,
        )

    def play(self, location: str, camera_id: str, track_id: Optional[str] = None) -> VoiceResult:
        if not self.cfg.remote_available:
            why = "DRY_RUN" if self.cfg.dry_run else "remote TTS disabled or no API key"
            return self._fallback(location, camera_id, track_id, why)

        text = build_alert_text(location, self.cfg.template)
        try:
            data = post_json(
                self.cfg.url,
                self._payload(text),
                api_key=self.cfg.api_key or "",
                timeout_s=self.cfg.timeout_s,
                max_retries=self.cfg.max_retries,
                backoff_base_s=self.cfg.backoff_base_s,
                backoff_cap_s=self.cfg.backoff_cap_s,
                session=self.session,
                sleep=self.sleep,
            )
            audio_hex = (data.get("data") or {}).get("audio")
            if not isinstance(audio_hex, str) or not audio_hex:
                return self._fallback(location, camera_id, track_id, "missing data.audio in response")
            audio = hex_to_bytes(audio_hex)
            out_path = self.audio_dir / artifact_name(camera_id, "tts", "mp3", track_id)
            self.audio_dir.mkdir(parents=True, exist_ok=True)
            out_path.write_bytes(audio)
        except RemoteCallError as e:
            return self._fallback(location, camera_id, track_id, str(e))
        except (ValueError, OSError) as e:
            return self._fallback(location, camera_id, track_id, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected remote TTS error for {camera_id}")
            return self._fallback(location, camera_id, track_id, f"{type(e).__name__}: {e}")

        logger.info(f"Remote TTS alert written to {out_path} (trace {data.get('trace_id')})")
        return VoiceResult(True, str(out_path), self.backend_name)


def create_voice(cfg: VoiceConfig, audio_dir: Path, session=None) -> VoiceAlert:
    """Pick the voice backend once, at pipeline construction."""
    local = LocalVoiceAlert(cfg, audio_dir)
    if cfg.remote_available:
        logger.info("Voice alert: remote TTS with local fallback")
        return RemoteTtsVoiceAlert(cfg, audio_dir, fallback=local, session=session)
    logger.info(f"Voice alert: local ({cfg.local_engine})")
    return local
