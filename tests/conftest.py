from pathlib import Path
from typing import List

import pytest
import requests

from shoplift_guard.config import PipelineConfig
from shoplift_guard.zones import Zone


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Returns queued responses (or raises queued exceptions) in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: List[dict] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeSleep:
    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def cfg(tmp_path: Path) -> PipelineConfig:
    cfg = PipelineConfig()
    cfg.storage.root = tmp_path / "alerts"
    cfg.storage.playback_enabled = False
    cfg.storage.enable_file_logging = False
    cfg.voice.local_engine = "tone"
    return cfg


@pytest.fixture
def store_zones() -> List[Zone]:
    """Pixel-space floor plan: high-theft aisle on the left, exit on the right, checkout below."""
    return [
        Zone("ht", "Electronics", "high_theft", ((0, 0), (100, 0), (100, 200), (0, 200))),
        Zone("exit", "Main exit", "exit", ((100, 0), (200, 0), (200, 200), (100, 200))),
        Zone("co", "Checkout", "checkout", ((0, 200), (200, 200), (200, 300), (0, 300))),
    ]


def timeout_error():
    return requests.Timeout("read timed out")


def tts_response(audio_hex: str = "49443303") -> FakeResponse:
    return FakeResponse(200, {"data": {"audio": audio_hex}, "trace_id": "abc"})
