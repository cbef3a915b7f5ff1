from pathlib import Path

from shoplift_guard.config import GateConfig, PipelineConfig, SuspicionConfig, VoiceConfig


def test_defaults_from_empty_environment():
    cfg = PipelineConfig.from_env({})
    assert cfg.suspicion.escalate_score == 70.0
    assert cfg.suspicion.dwell_s == 12.0
    assert cfg.gate.min_confidence == 0.75
    assert cfg.gate.judge_min_confidence == 0.7
    assert cfg.gate.camera_cooldown_s == 20.0
    assert cfg.gate.track_cooldown_s == 30.0
    assert cfg.gate.persistence_count == 1
    assert cfg.gate.persistence_window_s == 1.0
    assert cfg.tracking.track_ttl_s == 0.0
    assert cfg.storage.root == Path("alerts")
    assert not cfg.judge.remote_available
    assert not cfg.voice.remote_available


def test_environment_overrides():
    cfg = PipelineConfig.from_env({
        "SHOPLIFT_ESCALATE_SCORE": "55",
        "SHOPLIFT_MIN_CONFIDENCE": "0.6",
        "SHOPLIFT_PERSISTENCE_COUNT": "3",
        "SHOPLIFT_PERSISTENCE_WINDOW_MS": "2500",
        "SHOPLIFT_ALERTS_DIR": "/var/alerts",
        "SHOPLIFT_LOCAL_VOICE": "tone",
    })
    assert cfg.suspicion.escalate_score == 55.0
    assert cfg.gate.min_confidence == 0.6
    assert cfg.gate.persistence_count == 3
    assert cfg.gate.persistence_window_s == 2.5
    assert cfg.storage.incident_log_path == Path("/var/alerts/incidents.jsonl")
    assert cfg.voice.local_engine == "tone"


def test_bad_values_fall_back_to_defaults():
    env = {
        "SHOPLIFT_ESCALATE_SCORE": "very",
        "SHOPLIFT_MIN_CONFIDENCE": "1.5",
        "SHOPLIFT_CAMERA_COOLDOWN_SECONDS": "-3",
        "SHOPLIFT_DWELL_SECONDS": "nan",
        "SHOPLIFT_PERSISTENCE_COUNT": "2.5",
        "SHOPLIFT_LOCAL_VOICE": "opera",
    }
    assert SuspicionConfig.from_env(env).escalate_score == 70.0
    assert SuspicionConfig.from_env(env).dwell_s == 12.0
    gate = GateConfig.from_env(env)
    assert gate.min_confidence == 0.75
    assert gate.camera_cooldown_s == 20.0
    assert gate.persistence_count == 1
    assert VoiceConfig.from_env(env).local_engine == "auto"


def test_remote_flags_need_a_key():
    cfg = PipelineConfig.from_env({"ENABLE_MINIMAX_TTS": "true", "ENABLE_MINIMAX_VLM": "1"})
    assert not cfg.voice.remote_available
    assert not cfg.judge.remote_available
    cfg = PipelineConfig.from_env({"ENABLE_MINIMAX_TTS": "1", "ENABLE_MINIMAX_VLM": "1", "MINIMAX_API_KEY": "k"})
    assert cfg.voice.remote_available
    assert cfg.judge.remote_available


def test_dry_run_disables_remote_voice():
    cfg = VoiceConfig.from_env({"ENABLE_MINIMAX_TTS": "1", "MINIMAX_API_KEY": "k", "DRY_RUN": "1"})
    assert not cfg.remote_available


def test_api_key_never_shows_up():
    cfg = PipelineConfig.from_env({"MINIMAX_API_KEY": "secret-key-123", "ENABLE_MINIMAX_TTS": "1"})
    assert "secret-key-123" not in repr(cfg)
    assert "secret-key-123" not in str(cfg.describe())
