import json

import pytest

from shoplift_guard.events import stub_event
from shoplift_guard.runner import main, parse_detections, read_json_records

BASE_ARGS = ["--no-playback", "--tone-only", "--no-log-file"]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("MINIMAX_API_KEY", "ENABLE_MINIMAX_TTS", "ENABLE_MINIMAX_VLM", "SHOPLIFT_ALERTS_DIR"):
        monkeypatch.delenv(name, raising=False)


def read_incidents(alerts_dir):
    return [json.loads(line) for line in (alerts_dir / "incidents.jsonl").read_text().splitlines()]


def test_stub_event(tmp_path):
    alerts = tmp_path / "alerts"
    assert main(["--stub", "--alerts-dir", str(alerts)] + BASE_ARGS) == 0
    [entry] = read_incidents(alerts)
    assert entry["status"] == "triggered"
    assert entry["camera_id"] == "cam-test-1"


def test_event_file_with_bad_line(tmp_path):
    alerts = tmp_path / "alerts"
    events = tmp_path / "events.jsonl"
    events.write_text("\n".join([
        json.dumps(stub_event(camera_id="cam-1").to_dict()),
        "{broken",
        json.dumps(stub_event(camera_id="cam-2").to_dict()),
    ]))
    # the broken line counts as a failure
    assert main(["--event", str(events), "--alerts-dir", str(alerts)] + BASE_ARGS) == 1
    assert [e["camera_id"] for e in read_incidents(alerts)] == ["cam-1", "cam-2"]


def test_frames_file(tmp_path):
    alerts = tmp_path / "alerts"
    zones = tmp_path / "zones.json"
    zones.write_text(json.dumps([
        {"id": "ht", "type": "high_theft", "polygon": [[0, 0], [0.5, 0], [0.5, 1], [0, 1]]},
        {"id": "exit", "type": "exit", "polygon": [[0.5, 0], [1, 0], [1, 1], [0.5, 1]]},
    ]))
    frames = tmp_path / "frames.jsonl"
    walk = [(0, [30, 50, 70, 150]), (1, [40, 50, 80, 150]), (2, [50, 50, 90, 150]),
            (3, [60, 50, 100, 150]), (15, [60, 60, 150, 150])]
    frames.write_text("\n".join(
        json.dumps({"t": t, "frame_size": [200, 200], "detections": [{"bbox": box, "confidence": 0.9}]})
        for t, box in walk
    ))
    assert main(["--frames", str(frames), "--zones", str(zones), "--alerts-dir", str(alerts)] + BASE_ARGS) == 0
    [entry] = read_incidents(alerts)
    assert entry["suspicion_score"] == 85.0


def test_frames_require_zones(tmp_path):
    with pytest.raises(SystemExit):
        main(["--frames", str(tmp_path / "frames.jsonl")])


def test_read_json_records_accepts_lists(tmp_path):
    path = tmp_path / "events.json"
    path.write_text(json.dumps([{"a": 1}, {"a": 2}]))
    assert list(read_json_records(path)) == [{"a": 1}, {"a": 2}]


def write_zones(path):
    path.write_text(json.dumps([
        {"id": "ht", "type": "high_theft", "polygon": [[0, 0], [0.5, 0], [0.5, 1], [0, 1]]},
        {"id": "exit", "type": "exit", "polygon": [[0.5, 0], [1, 0], [1, 1], [0.5, 1]]},
    ]))


@pytest.mark.parametrize("confidence", ["5", "nan", "inf", "-0.5"])
def test_stub_with_invalid_confidence_fails(tmp_path, confidence):
    alerts = tmp_path / "alerts"
    assert main(["--stub", "--confidence", confidence, "--alerts-dir", str(alerts)] + BASE_ARGS) == 1
    assert not (alerts / "incidents.jsonl").exists()


def test_stub_with_blank_location_fails(tmp_path):
    alerts = tmp_path / "alerts"
    assert main(["--stub", "--location", " ", "--alerts-dir", str(alerts)] + BASE_ARGS) == 1
    assert not (alerts / "incidents.jsonl").exists()


def test_event_file_with_nan_confidence_is_rejected(tmp_path):
    alerts = tmp_path / "alerts"
    events = tmp_path / "events.jsonl"
    events.write_text(json.dumps(stub_event().to_dict()).replace('"confidence": 0.85', '"confidence": NaN'))
    assert main(["--event", str(events), "--alerts-dir", str(alerts)] + BASE_ARGS) == 1
    assert not (alerts / "incidents.jsonl").exists()


def test_missing_event_file_fails(tmp_path):
    assert main(["--event", str(tmp_path / "missing.jsonl"), "--alerts-dir", str(tmp_path / "alerts")] + BASE_ARGS) == 1


@pytest.mark.parametrize("zones_text", [
    json.dumps([{"id": "ht", "type": "high_theft", "polygon": [{"x": 0}]}]),
    json.dumps([{"id": "ht", "type": "high_theft", "polygon": [[0, 0]], "riskMultiplier": None}]),
    json.dumps(["ht"]),
    json.dumps({"zones": 3}),
    "{not json",
])
def test_malformed_zone_file_fails(tmp_path, zones_text):
    zones = tmp_path / "zones.json"
    zones.write_text(zones_text)
    frames = tmp_path / "frames.jsonl"
    frames.write_text(json.dumps({"t": 0, "detections": []}))
    args = ["--frames", str(frames), "--zones", str(zones), "--alerts-dir", str(tmp_path / "alerts")]
    assert main(args + BASE_ARGS) == 1


def test_missing_zone_file_fails(tmp_path):
    frames = tmp_path / "frames.jsonl"
    frames.write_text(json.dumps({"t": 0, "detections": []}))
    args = ["--frames", str(frames), "--zones", str(tmp_path / "missing.json"), "--alerts-dir", str(tmp_path / "alerts")]
    assert main(args + BASE_ARGS) == 1


def test_malformed_frames_and_detections_are_skipped(tmp_path):
    alerts = tmp_path / "alerts"
    zones = tmp_path / "zones.json"
    write_zones(zones)
    frames = tmp_path / "frames.jsonl"
    walk = [(0, [30, 50, 70, 150]), (1, [40, 50, 80, 150]), (2, [50, 50, 90, 150]),
            (3, [60, 50, 100, 150]), (15, [60, 60, 150, 150])]
    lines = [
        json.dumps({"t": "later", "detections": []}),
        json.dumps({"t": 0.5, "frame_size": [200], "detections": []}),
        json.dumps({"t": 0.5, "detections": {"bbox": [0, 0, 1, 1]}}),
        json.dumps([1, 2, 3]),
    ]
    for t, box in walk:
        lines.append(json.dumps({"t": t, "frame_size": [200, 200], "detections": [
            {"confidence": 0.9},
            {"bbox": [1, 2], "confidence": 0.9},
            {"bbox": box, "confidence": 0.9},
        ]}))
    frames.write_text("\n".join(lines))
    assert main(["--frames", str(frames), "--zones", str(zones), "--alerts-dir", str(alerts)] + BASE_ARGS) == 0
    [entry] = read_incidents(alerts)
    assert entry["suspicion_score"] == 85.0


def test_parse_detections_skips_bad_entries():
    detections = parse_detections([
        {"bbox": [0, 0, 10, 10], "confidence": 0.8},
        {"confidence": 0.9},
        {"bbox": None},
        {"bbox": ["a", 0, 1, 1]},
        {"bbox": [0, 0, 1, 1], "confidence": "high"},
        "not a detection",
    ])
    assert [d.bbox for d in detections] == [(0.0, 0.0, 10.0, 10.0)]
