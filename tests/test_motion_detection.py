from __future__ import annotations

import numpy as np
import pytest

from mosaic_nvr.config import MotionSettings
from mosaic_nvr.motion import MotionDetector, MotionMode, sample_frame


def _frame(value: int, *, width: int = 64, height: int = 32) -> np.ndarray:
    return np.full((height, width, 3), value, dtype=np.uint8)


def _alternating(count: int) -> list[np.ndarray]:
    return [_frame(200 if position % 2 else 0) for position in range(count)]


def test_sample_frame_uses_first_channel_with_stride() -> None:
    frame = np.zeros((4, 8, 3), dtype=np.uint8)
    frame[:, :, 0] = np.arange(32, dtype=np.uint8).reshape(4, 8)
    frame[:, :, 1] = 255

    sample = sample_frame(frame, stride=16)

    assert sample.tolist() == [0, 16]
    assert sample.dtype == np.int16


def test_sample_frame_accepts_single_channel() -> None:
    frame = np.arange(64, dtype=np.uint8).reshape(8, 8)
    assert sample_frame(frame).tolist() == [0, 16, 32, 48]


def test_first_frame_never_triggers() -> None:
    detector = MotionDetector(start_frames=1)
    detector.observe(_frame(255))
    assert detector.mode is MotionMode.LOW_RATE
    assert detector.snapshot()["last_changed_percent"] is None


def test_still_frame_interrupts_motion_run() -> None:
    changes: list[MotionMode] = []
    detector = MotionDetector()
    detector.add_listener(changes.append)

    frames = _alternating(10)
    for frame in frames:
        detector.observe(frame)
    assert detector.motion_run == 9
    assert detector.mode is MotionMode.LOW_RATE

    detector.observe(frames[-1])

    assert detector.motion_run == 0
    assert detector.still_run == 1
    assert changes == []


def test_nine_motion_one_still_ten_motion_switches_once() -> None:
    changes: list[MotionMode] = []
    detector = MotionDetector(start_frames=10, stop_frames=40)
    detector.add_listener(changes.append)

    detector.observe(_frame(0))
    for position in range(9):
        detector.observe(_frame(200 if position % 2 == 0 else 0))
    assert detector.motion_run == 9
    last = 200
    detector.observe(_frame(last))
    assert detector.motion_run == 0
    assert detector.mode is MotionMode.LOW_RATE

    value = last
    for _ in range(10):
        value = 0 if value else 200
        detector.observe(_frame(value))

    assert detector.mode is MotionMode.NORMAL_RATE
    assert changes == [MotionMode.NORMAL_RATE]


def test_returns_to_low_rate_after_stop_frames() -> None:
    changes: list[MotionMode] = []
    detector = MotionDetector(start_frames=2, stop_frames=40)
    detector.add_listener(changes.append)
    for frame in _alternating(3):
        detector.observe(frame)
    assert detector.mode is MotionMode.NORMAL_RATE

    still = _frame(0)
    for _ in range(39):
        detector.observe(still)
    assert detector.mode is MotionMode.NORMAL_RATE
    detector.observe(still)

    assert detector.mode is MotionMode.LOW_RATE
    assert changes == [MotionMode.NORMAL_RATE, MotionMode.LOW_RATE]


def test_threshold_is_strictly_greater() -> None:
    detector = MotionDetector(threshold_percent=50.0, pixel_threshold=30, start_frames=1)
    base = np.zeros((16, 16, 3), dtype=np.uint8)
    half = base.copy()
    # Sampled pixels are at every 16th position; change exactly half of them.
    half.reshape(-1, 3)[::32, 0] = 200

    detector.observe(base)
    detector.observe(half)

    assert detector.snapshot()["last_changed_percent"] == pytest.approx(50.0)
    assert detector.mode is MotionMode.LOW_RATE


def test_small_pixel_changes_are_ignored() -> None:
    detector = MotionDetector(pixel_threshold=30, start_frames=1)
    detector.observe(_frame(100))
    detector.observe(_frame(130))
    assert detector.motion_run == 0
    assert detector.still_run == 1


def test_shape_change_rebaselines() -> None:
    detector = MotionDetector(start_frames=1)
    detector.observe(_frame(0))
    detector.observe(_frame(255, width=32, height=32))
    assert detector.mode is MotionMode.LOW_RATE
    assert detector.motion_run == 0


def test_requested_reset_applies_on_next_observation() -> None:
    detector = MotionDetector(start_frames=2)
    for frame in _alternating(3):
        detector.observe(frame)
    assert detector.mode is MotionMode.NORMAL_RATE

    detector.request_reset()
    assert detector.mode is MotionMode.NORMAL_RATE
    detector.observe(_frame(255))

    assert detector.mode is MotionMode.LOW_RATE
    assert detector.motion_run == 0


def test_reset_notifies_listeners_when_leaving_normal_rate() -> None:
    seen: list[MotionMode] = []
    detector = MotionDetector(start_frames=2)
    detector.add_listener(seen.append)
    for frame in _alternating(3):
        detector.observe(frame)

    detector.request_reset()
    detector.observe(_frame(255))
    detector.reset()

    assert seen == [MotionMode.NORMAL_RATE, MotionMode.LOW_RATE]
    assert detector.mode is MotionMode.LOW_RATE


def test_failing_listener_does_not_break_detection() -> None:
    seen: list[MotionMode] = []

    def _broken(mode: MotionMode) -> None:
        raise RuntimeError("boom")

    detector = MotionDetector(start_frames=1)
    detector.add_listener(_broken)
    detector.add_listener(seen.append)
    for frame in _alternating(2):
        detector.observe(frame)

    assert seen == [MotionMode.NORMAL_RATE]


def test_from_settings_and_validation() -> None:
    detector = MotionDetector.from_settings(MotionSettings(threshold_percent=2.5, start_frames=3))
    assert detector.threshold_percent == pytest.approx(2.5)
    assert detector.start_frames == 3
    with pytest.raises(ValueError):
        MotionDetector(pixel_threshold=300)
