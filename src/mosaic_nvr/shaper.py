"""Frame dropping and timestamp rewriting for the recording branch."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from .graph import Buffer, Pad, ProbeReturn
from .motion import MotionMode


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TimestampState:
    last_input: int | None = None
    accumulated: int = 0
    drop_counter: int = 0
    kept: int = 0
    dropped: int = 0


class FrameRateShaper:
    """Decides per buffer whether it reaches the encoder and when.

    In :attr:`MotionMode.LOW_RATE` one buffer out of ``keep_every`` is kept
    and the time between kept buffers is divided by ``compression`` so quiet
    periods play back quickly. A negative drop counter is a grace period in
    which every buffer is kept; it is used right after a recording starts so
    the forced keyframe survives.

    Output timestamps start at zero after :meth:`reset` and never decrease:
    a backwards input timestamp only moves the baseline.
    """

    def __init__(
        self,
        *,
        keep_every: int = 25,
        compression: int = 10,
        mode: MotionMode = MotionMode.LOW_RATE,
    ) -> None:
        if keep_every < 1:
            raise ValueError("keep_every must be at least 1")
        if compression < 1:
            raise ValueError("compression must be at least 1")
        self.keep_every = int(keep_every)
        self.compression = int(compression)
        self._mode = mode
        self._mode_lock = threading.Lock()
        self._state = TimestampState()

    @property
    def mode(self) -> MotionMode:
        with self._mode_lock:
            return self._mode

    @property
    def state(self) -> TimestampState:
        return self._state

    def set_mode(self, mode: MotionMode) -> bool:
        """Switch rate mode; returns ``False`` when already in ``mode``."""

        with self._mode_lock:
            if mode is self._mode:
                return False
            self._mode = mode
        logger.debug("Frame rate shaper switched to %s", mode.value)
        return True

    def reset(self, *, grace: int = 0, mode: MotionMode | None = None) -> None:
        """Start a new output timeline.

        Must only be called while no buffers are flowing, i.e. with the
        recording gate closed.
        """

        if grace < 0:
            raise ValueError("grace must not be negative")
        if mode is not None:
            self.set_mode(mode)
        self._state = TimestampState(drop_counter=-int(grace))

    def should_keep(self) -> bool:
        state = self._state
        if self.mode is MotionMode.NORMAL_RATE:
            state.drop_counter = 0
            return True
        if state.drop_counter < 0:
            state.drop_counter += 1
            return True
        state.drop_counter += 1
        if state.drop_counter < self.keep_every:
            return False
        state.drop_counter = 0
        return True

    def rewrite(self, buffer: Buffer) -> None:
        pts = buffer.pts
        if pts is None:
            return
        state = self._state
        if state.last_input is None:
            state.last_input = pts
            state.accumulated = 0
        elif pts < state.last_input:
            state.last_input = pts
        else:
            delta = pts - state.last_input
            state.last_input = pts
            if self.mode is MotionMode.LOW_RATE:
                delta //= self.compression
            state.accumulated += delta
        buffer.pts = state.accumulated
        buffer.duration = None

    def process(self, buffer: Buffer) -> Buffer | None:
        """Return the rewritten buffer, or ``None`` when it is dropped."""

        if not self.should_keep():
            self._state.dropped += 1
            return None
        self.rewrite(buffer)
        self._state.kept += 1
        return buffer

    def probe(self, pad: Pad, buffer: Buffer) -> ProbeReturn:
        """Pad probe adapter installed in front of the encoder."""

        return ProbeReturn.OK if self.process(buffer) is not None else ProbeReturn.DROP

    def snapshot(self) -> dict[str, object]:
        state = self._state
        return {
            "mode": self.mode.value,
            "keep_every": self.keep_every,
            "compression": self.compression,
            "accumulated_ns": state.accumulated,
            "drop_counter": state.drop_counter,
            "kept": state.kept,
            "dropped": state.dropped,
        }


__all__ = ["FrameRateShaper", "TimestampState"]
