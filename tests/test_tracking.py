import pytest

from shoplift_guard.config import TrackingConfig
from shoplift_guard.tracking import (
    GreedyIouAssociator,
    PersonDetection,
    PersonTracker,
    TrackStore,
    ZoneVisit,
    bbox_aspect_ratio,
    bbox_center,
    iou,
)


def test_iou_identical_and_disjoint():
    assert iou((0, 0, 10, 10), (0, 0, 10, 10)) == pytest.approx(1.0)
    assert iou((0, 0, 10, 10), (20, 20, 30, 30)) == 0.0


def test_iou_degenerate_boxes():
    assert iou((0, 0, 0, 0), (0, 0, 0, 0)) == 0.0


def test_iou_partial_overlap():
    # intersection 50, union 150
    assert iou((0, 0, 10, 10), (5, 0, 15, 10)) == pytest.approx(1 / 3)


def test_bbox_helpers():
    assert bbox_center((0, 0, 10, 20)) == (5, 10)
    assert bbox_center((0, 0, 10, 20), frame_size=(100, 100)) == (0.05, 0.1)
    assert bbox_aspect_ratio((0, 0, 10, 20)) == 0.5
    assert bbox_aspect_ratio((0, 0, 10, 0)) == 0.0


def test_matched_detection_keeps_track_id():
    tracker = PersonTracker(TrackingConfig())
    [t1] = tracker.update([PersonDetection((0, 0, 10, 10), 0.9)], now=0.0)
    # IOU with the first box is 0.5
    [t2] = tracker.update([PersonDetection((0, 0, 10, 20), 0.8)], now=1.0)
    assert t2.track_id == t1.track_id
    assert t2.first_seen == 0.0
    assert t2.last_seen == 1.0
    assert t2.confidence == 0.8
    assert list(t2.bbox_history) == [(0, 0, 10, 10), (0, 0, 10, 20)]


def test_unmatched_detection_creates_new_track():
    tracker = PersonTracker(TrackingConfig())
    [t1] = tracker.update([PersonDetection((0, 0, 10, 10), 0.9)], now=0.0)
    [t2] = tracker.update([PersonDetection((50, 50, 60, 60), 0.9)], now=1.0)
    assert t2.track_id != t1.track_id
    assert len(t2.bbox_history) == 1
    # absent tracks are left alone
    assert len(tracker.store) == 2


def test_bbox_history_is_bounded():
    tracker = PersonTracker(TrackingConfig())
    for i in range(15):
        [track] = tracker.update([PersonDetection((i, 0, i + 10, 10), 0.9)], now=float(i))
    assert len(track.bbox_history) == 10
    assert track.bbox_history[0] == (5, 0, 15, 10)
    assert track.bbox == (14, 0, 24, 10)


def test_greedy_association_goes_in_detection_order():
    tracker = PersonTracker(TrackingConfig())
    first = tracker.update([PersonDetection((0, 0, 10, 10), 0.9), PersonDetection((100, 0, 110, 10), 0.9)], now=0.0)
    ids = [t.track_id for t in first]
    second = tracker.update([PersonDetection((101, 0, 111, 10), 0.9), PersonDetection((1, 0, 11, 10), 0.9)], now=1.0)
    assert [t.track_id for t in second] == [ids[1], ids[0]]


def test_associator_threshold_is_strict():
    assoc = GreedyIouAssociator(threshold=0.5)
    store = TrackStore()
    track = store.new_track(PersonDetection((0, 0, 10, 10), 0.9), now=0.0)
    # IOU exactly 0.5 is not enough
    assert assoc.assign([PersonDetection((0, 0, 10, 20), 0.9)], [track]) == [None]


def test_snapshots_do_not_leak_store_state():
    tracker = PersonTracker(TrackingConfig())
    [track] = tracker.update([PersonDetection((0, 0, 10, 10), 0.9)], now=0.0)
    track.bbox_history.append((99, 99, 100, 100))
    assert len(tracker.store.get(track.track_id).bbox_history) == 1


def test_zone_history_and_reset():
    store = TrackStore()
    track = store.new_track(PersonDetection((0, 0, 10, 10), 0.9), now=0.0)
    store.record_zone_visit(track.track_id, ZoneVisit("ht", "high_theft", 0.0))
    assert store.zone_history(track.track_id) == [ZoneVisit("ht", "high_theft", 0.0)]
    store.reset()
    assert len(store) == 0
    assert store.zone_history(track.track_id) == []
    assert store.new_track(PersonDetection((0, 0, 10, 10), 0.9), now=0.0).track_id == 1


def test_tracks_are_kept_without_ttl():
    tracker = PersonTracker(TrackingConfig())
    tracker.update([PersonDetection((0, 0, 10, 10), 0.9)], now=0.0)
    tracker.update([], now=10_000.0)
    assert len(tracker.store) == 1


def test_ttl_evicts_stale_tracks_without_reusing_ids():
    tracker = PersonTracker(TrackingConfig(track_ttl_s=5.0))
    [old] = tracker.update([PersonDetection((0, 0, 10, 10), 0.9)], now=0.0)
    [new] = tracker.update([PersonDetection((50, 50, 60, 60), 0.9)], now=10.0)
    assert tracker.store.get(old.track_id) is None
    assert new.track_id > old.track_id
