"""Frame differencing motion detection with hysteresis."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np

from .config import MotionSettings


logger = logging.getLogger(__name__)

SAMPLE_STRIDE_PIXELS = 16


class MotionMode(str, Enum):
    """Recording rate requested by the detector."""

    NORMAL_RATE = "normal"
    LOW_RATE = "low"


ModeListener = Callable[[MotionMode], None]


def sample_frame(frame: np.ndarray, stride: int = SAMPLE_STRIDE_PIXELS) -> np.ndarray:
    """Return every ``stride``-th pixel of the first channel in raster order."""

    array = np.asarray(frame)
    if array.ndim == 3:
        channel = array[:, :, 0]
    elif array.ndim == 2:
        channel = array
    else:
        raise ValueError("Expected a 2D or 3D frame for motion sampling")
    height, width = channel.shape
    size = (width * height) // stride
    return channel.reshape(-1)[::stride][:size].astype(np.int16)


@dataclass
class MotionDetector:
    """Turns per-frame change measurements into rate decisions.

    A frame counts as motion when the share of sampled pixels whose value
    changed by more than ``pixel_threshold`` exceeds ``threshold_percent``.
    The mode only switches after ``start_frames`` consecutive motion frames
    (to :attr:`MotionMode.NORMAL_RATE`) or ``stop_frames`` consecutive still
    frames (back to :attr:`MotionMode.LOW_RATE`).

    :meth:`observe` must be called from a single thread. Other threads ask
    for a reset through :meth:`request_reset`, which is applied on the next
    observation.
    """

    threshold_percent: float = 1.0
    pixel_threshold: int = 30
    start_frames: int = 10
    stop_frames: int = 40
    _previous: np.ndarray | None = field(init=False, default=None, repr=False)
    _motion_run: int = field(init=False, default=0)
    _still_run: int = field(init=False, default=0)
    _mode: MotionMode = field(init=False, default=MotionMode.LOW_RATE)
    _last_percent: float | None = field(init=False, default=None)
    _frames: int = field(init=False, default=0)
    _transitions: int = field(init=False, default=0)
    _listeners: list[ModeListener] = field(init=False, default_factory=list, repr=False)
    _reset_requested: threading.Event = field(init=False, default_factory=threading.Event, repr=False)

    def __post_init__(self) -> None:
        settings = MotionSettings(
            threshold_percent=self.threshold_percent,
            pixel_threshold=self.pixel_threshold,
            start_frames=self.start_frames,
            stop_frames=self.stop_frames,
        )
        self.threshold_percent = settings.threshold_percent

    @classmethod
    def from_settings(cls, settings: MotionSettings) -> "MotionDetector":
        return cls(
            threshold_percent=settings.threshold_percent,
            pixel_threshold=settings.pixel_threshold,
            start_frames=settings.start_frames,
            stop_frames=settings.stop_frames,
        )

    @property
    def mode(self) -> MotionMode:
        return self._mode

    @property
    def motion_run(self) -> int:
        return self._motion_run

    @property
    def still_run(self) -> int:
        return self._still_run

    def add_listener(self, listener: ModeListener) -> None:
        self._listeners.append(listener)

    def request_reset(self) -> None:
        self._reset_requested.set()

    def reset(self) -> None:
        """Forget the previous sample and counters and return to low rate.

        Listeners are told about the return to low rate like any other switch.
        """

        self._reset_requested.clear()
        self._previous = None
        self._motion_run = 0
        self._still_run = 0
        self._last_percent = None
        if self._mode is not MotionMode.LOW_RATE:
            self._switch(MotionMode.LOW_RATE)

    def changed_percent(self, sample: np.ndarray) -> float | None:
        previous = self._previous
        if previous is None or previous.shape != sample.shape or sample.size == 0:
            return None
        changed = np.count_nonzero(np.abs(sample - previous) > self.pixel_threshold)
        return changed * 100.0 / sample.size

    def observe(self, frame: np.ndarray) -> None:
        if self._reset_requested.is_set():
            self.reset()
        sample = sample_frame(frame)
        percent = self.changed_percent(sample)
        self._previous = sample
        self._frames += 1
        self._last_percent = percent
        if percent is None:
            return
        if percent > self.threshold_percent:
            self._motion_run += 1
            self._still_run = 0
            if self._mode is MotionMode.LOW_RATE and self._motion_run >= self.start_frames:
                self._switch(MotionMode.NORMAL_RATE)
        else:
            self._still_run += 1
            self._motion_run = 0
            if self._mode is MotionMode.NORMAL_RATE and self._still_run >= self.stop_frames:
                self._switch(MotionMode.LOW_RATE)

    def _switch(self, mode: MotionMode) -> None:
        self._mode = mode
        self._transitions += 1
        logger.debug("Motion mode changed to %s", mode.value)
        for listener in list(self._listeners):
            try:
                listener(mode)
            except Exception:
                logger.exception("Motion mode listener failed")

    def snapshot(self) -> dict[str, object]:
        """Return a JSON-serialisable view of the detector state."""

        return {
            "mode": self._mode.value,
            "motion": self._mode is MotionMode.NORMAL_RATE,
            "threshold_percent": float(self.threshold_percent),
            "pixel_threshold": int(self.pixel_threshold),
            "start_frames": int(self.start_frames),
            "stop_frames": int(self.stop_frames),
            "motion_run": int(self._motion_run),
            "still_run": int(self._still_run),
            "last_changed_percent": self._last_percent,
            "frames": int(self._frames),
            "transitions": int(self._transitions),
        }


__all__ = ["MotionDetector", "MotionMode", "sample_frame"]
