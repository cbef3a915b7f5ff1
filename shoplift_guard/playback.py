from __future__ import annotations

import queue
import shutil
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable, List, Optional

from loguru import logger

_STOP = object()


def player_command(audio_path: str, platform: Optional[str] = None) -> Optional[List[str]]:
    """Command that plays a file to the speakers, or None when no player is installed."""
    platform = platform or sys.platform
    if platform == "darwin" and shutil.which("afplay"):
        return ["afplay", audio_path]
    if shutil.which("ffplay"):
        return ["ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet", audio_path]
    return None


def play_with_system_player(audio_path: str) -> None:
    cmd = player_command(audio_path)
    if cmd is None:
        logger.warning(f"No audio player found, skipping playback of {audio_path}")
        return
    subprocess.run(cmd, check=False, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=60)


class PlaybackQueue:
    """Single-consumer FIFO for alert audio.

    Clips play one after another on a daemon thread. `enqueue` never blocks:
    when the queue is full the new clip is dropped and a warning is logged.
    """

    def __init__(self, maxsize: int = 16, player: Optional[Callable[[str], None]] = None):
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._player = player or play_with_system_player
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.dropped = 0

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name="alert-playback", daemon=True)
                self._thread.start()

    def enqueue(self, audio_path: str) -> bool:
        if not audio_path:
            return False
        path = str(Path(audio_path).resolve())
        self._ensure_worker()
        try:
            self._queue.put_nowait(path)
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Playback queue full, dropping {path}")
            return False
        return True

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if not Path(item).exists():
                    logger.warning(f"Alert audio missing, skipping: {item}")
                    continue
                logger.info(f"Playback start: {item}")
                self._player(item)
                logger.info(f"Playback end: {item}")
            except Exception as e:
                logger.warning(f"Playback of {item} failed: {e}")
            finally:
                self._queue.task_done()

    def join(self) -> None:
        """Block until everything queued so far has been played."""
        self._queue.join()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
        if thread is None or not thread.is_alive():
            return
        self._queue.put(_STOP)
        thread.join(timeout=timeout)
