"""Command-line runner: replay events or recorded detections through the pipeline.

Three input modes:
- --event FILE: canonical shoplifting events (one JSON object, a JSON list, or JSON lines)
- --frames FILE --zones FILE: recorded person detections, one frame per JSON line
- --stub: a single synthetic event (smoke test)
"""
import argparse
import json
import sys
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from loguru import logger

from .config import PipelineConfig
from .events import EventValidationError, ShopliftingEvent, stub_event
from .pipeline import AlertPipeline, PipelineResult, create_pipeline
from .tracking import PersonDetection
from .zones import Zone, load_zones


def read_json_records(path: Path) -> Iterator[Any]:
    """Yield records from a JSON document or a JSON-lines file."""
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except ValueError:
        pass
    else:
        if isinstance(data, list):
            yield from data
        else:
            yield data
        return
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            yield json.loads(line)
        except ValueError as e:
            # Handed on as raw text so the pipeline reports it as an invalid event
            logger.warning(f"{path}:{lineno} is not valid JSON: {e}")
            yield line


def parse_detections(raw: List[dict]) -> List[PersonDetection]:
    """Convert recorded detections, skipping any without a four-number bbox."""
    detections = []
    for d in raw:
        try:
            bbox = tuple(float(v) for v in d["bbox"])
            if len(bbox) != 4:
                raise ValueError(f"bbox needs 4 values, got {len(bbox)}")
            detections.append(PersonDetection(bbox, float(d.get("confidence", 1.0))))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Skipping malformed detection {d!r}: {e!r}")
    return detections


def _frame_size(raw) -> Optional[tuple]:
    if not raw:
        return None
    w, h = (float(v) for v in raw)
    return w, h


def setup_logging(cfg: PipelineConfig, verbose: bool = False) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")
    if cfg.storage.enable_file_logging:
        cfg.storage.log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(cfg.storage.log_dir / "shoplift_guard_{time}.log", rotation="10 MB", retention=10, level="DEBUG")


def run_events(pipeline: AlertPipeline, path: Path) -> List[PipelineResult]:
    results = []
    for record in read_json_records(path):
        results.append(pipeline.process_event(record))
    return results


def run_frames(pipeline: AlertPipeline, frames_path: Path, zones: Sequence[Zone], camera_id: str, location: str) -> List[PipelineResult]:
    """Replay recorded frames.

    Each line: {"t": seconds, "detections": [{"bbox": [x1, y1, x2, y2], "confidence": c}],
    "frame_size": [w, h] (optional), "frame_paths": [...] (optional)}
    Frames that cannot be read are skipped with a warning.
    """
    results = []
    for lineno, frame in enumerate(read_json_records(frames_path), 1):
        if not isinstance(frame, dict):
            logger.warning(f"Skipping malformed frame record {lineno} in {frames_path}")
            continue
        try:
            t = frame.get("t")
            now = None if t is None else float(t)
            frame_size = _frame_size(frame.get("frame_size"))
            detections = frame.get("detections", [])
            if not isinstance(detections, list):
                raise TypeError("detections must be a list")
            frame_paths = tuple(str(p) for p in frame.get("frame_paths", []))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed frame record {lineno} in {frames_path}: {e}")
            continue
        results.extend(pipeline.process_frame(
            camera_id=str(frame.get("camera_id", camera_id)),
            location=str(frame.get("location", location)),
            detections=parse_detections(detections),
            zones=zones,
            now=now,
            frame_size=frame_size,
            frame_paths=frame_paths,
        ))
    return results


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Shoplifting voice alert pipeline")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--event", type=Path, help="File with canonical shoplifting events (JSON or JSON lines)")
    source.add_argument("--frames", type=Path, help="File with recorded person detections (JSON lines)")
    source.add_argument("--stub", action="store_true", help="Send one synthetic event")
    parser.add_argument("--zones", type=Path, default=None, help="Zone configuration JSON (required with --frames)")
    parser.add_argument("--camera-id", type=str, default="cam-test-1", help="Camera identifier")
    parser.add_argument("--location", type=str, default="Aisle 6", help="Location spoken in the alert")
    parser.add_argument("--confidence", type=float, default=None, help="Stub event confidence")
    parser.add_argument("--alerts-dir", type=Path, default=None, help="Directory for audio, incidents and logs")
    parser.add_argument("--no-playback", action="store_true", help="Render audio but do not play it")
    parser.add_argument("--tone-only", action="store_true", help="Skip OS speech, always use the beep")
    parser.add_argument("--no-log-file", action="store_true", help="Log to stderr only")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)
    if args.frames is not None and args.zones is None:
        parser.error("--frames requires --zones")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    cfg = PipelineConfig.from_env()
    if args.alerts_dir is not None:
        cfg.storage.root = args.alerts_dir
    if args.no_playback:
        cfg.storage.playback_enabled = False
    if args.no_log_file:
        cfg.storage.enable_file_logging = False
    if args.tone_only:
        cfg.voice.local_engine = "tone"
    setup_logging(cfg, args.verbose)

    # Inputs are checked before the pipeline starts its playback worker
    zones: List[Zone] = []
    stub: Optional[ShopliftingEvent] = None
    if args.frames is not None:
        try:
            zones = load_zones(args.zones)
        except (OSError, ValueError) as e:
            logger.error(f"Could not load zones from {args.zones}: {e}")
            return 1
        logger.info(f"Loaded {len(zones)} zones from {args.zones}")
    elif args.stub:
        overrides = {"camera_id": args.camera_id, "location": args.location}
        if args.confidence is not None:
            overrides["confidence"] = args.confidence
        try:
            stub = stub_event(**overrides)
        except EventValidationError as e:
            logger.error(f"Invalid stub event: {e}")
            return 1

    pipeline = create_pipeline(cfg)
    try:
        if args.event is not None:
            results = run_events(pipeline, args.event)
        elif args.frames is not None:
            results = run_frames(pipeline, args.frames, zones, args.camera_id, args.location)
        else:
            results = [pipeline.process_event(stub)]
        if pipeline.playback is not None:
            pipeline.playback.join()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except OSError as e:
        logger.error(f"Could not read input: {e}")
        return 1
    finally:
        pipeline.close()

    triggered = sum(1 for r in results if r.triggered)
    failed = sum(1 for r in results if not r.ok)
    logger.info(f"Processed {len(results)} decisions: {triggered} alerts, {failed} failures")
    logger.info(f"Incident stats: {pipeline.incidents.get_stats()}")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
