"""
Shoplifting voice-alert pipeline package.

Modules:
- config: tunable parameters resolved from the environment.
- zones: store zone geometry and zone transitions.
- tracking: IOU person tracker over a shared track store.
- suspicion: zone and posture based suspicion scoring.
- judge: local and remote concealment judges.
- gate: anti-spam alert gate (confidence, cooldowns, persistence).
- voice: local speech/tone and remote TTS alert audio.
- playback: sequential audio playback queue.
- remote: retrying JSON POST used by remote judge and TTS.
- events: canonical shoplifting event and validation.
- incidents: append-only incident log.
- pipeline: event and frame orchestration.
- runner: command-line replay.
"""

__all__ = [
    "config",
    "zones",
    "tracking",
    "suspicion",
    "judge",
    "gate",
    "voice",
    "playback",
    "remote",
    "events",
    "incidents",
    "pipeline",
    "runner",
]
