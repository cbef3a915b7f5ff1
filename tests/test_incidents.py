import json
import math

import pytest

from shoplift_guard.incidents import FALLBACK_USED, SUPPRESSED, TRIGGERED, IncidentLog, IncidentRecord


def record(status=TRIGGERED, **overrides):
    values = dict(timestamp="2026-01-15T14:30:00.000Z", camera_id="cam-1", location="Aisle 6", status=status)
    values.update(overrides)
    return IncidentRecord(**values)


def test_append_writes_one_line_per_record(tmp_path):
    log = IncidentLog(tmp_path / "incidents.jsonl")
    assert log.append(record(audio_ref="a.wav", voice_backend="local"))
    assert log.append(record(SUPPRESSED, suppressed_reason="camera_cooldown"))
    lines = (tmp_path / "incidents.jsonl").read_text().splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["status"] == "triggered"
    assert first["audio_ref"] == "a.wav"
    assert "suppressed_reason" not in first
    assert json.loads(lines[1])["suppressed_reason"] == "camera_cooldown"


def test_suppressed_record_needs_reason():
    with pytest.raises(ValueError):
        record(SUPPRESSED)


def test_write_failure_is_tolerated(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    log = IncidentLog(blocker / "incidents.jsonl")
    assert not log.append(record())


def test_read_recent_skips_corrupt_lines(tmp_path):
    path = tmp_path / "incidents.jsonl"
    log = IncidentLog(path)
    log.append(record(confidence=0.8))
    with open(path, "a", encoding="utf-8") as f:
        f.write("{truncated\n")
    log.append(record(FALLBACK_USED))
    recent = log.read_recent()
    assert [r["status"] for r in recent] == [TRIGGERED, FALLBACK_USED]
    assert log.read_recent(limit=1)[0]["status"] == FALLBACK_USED


def test_read_recent_without_file(tmp_path):
    assert IncidentLog(tmp_path / "missing.jsonl").read_recent() == []


def test_get_stats(tmp_path):
    log = IncidentLog(tmp_path / "incidents.jsonl")
    log.append(record())
    log.append(record(SUPPRESSED, suppressed_reason="below_confidence"))
    log.append(record(SUPPRESSED, suppressed_reason="camera_cooldown"))
    assert log.get_stats() == {TRIGGERED: 1, SUPPRESSED: 2, FALLBACK_USED: 0}


def test_non_finite_confidence_is_not_written(tmp_path):
    path = tmp_path / "incidents.jsonl"
    log = IncidentLog(path)
    assert not log.append(record(confidence=math.nan))
    assert not path.exists() or path.read_text() == ""
