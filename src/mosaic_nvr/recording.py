"""Recording branch control: gate, file rotation and encoder generations."""
from __future__ import annotations

import itertools
import logging
import re
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Deque

from .config import CameraConfig
from .graph import Event, Graph, GraphError, Stage, StageFactory, Valve
from .motion import MotionDetector, MotionMode
from .shaper import FrameRateShaper


logger = logging.getLogger(__name__)

RECORDING_EXTENSION = "mkv"
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class RecordingError(RuntimeError):
    """Raised when a recording could not be started."""


class RecordingState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"


def _now() -> datetime:
    return datetime.now().astimezone()


def sanitize_camera_name(name: str, index: int) -> str:
    """Return a filesystem safe version of a camera's display name."""

    cleaned = _UNSAFE_NAME_CHARS.sub("_", (name or "").strip())
    return cleaned or f"Camera_{index + 1}"


def build_recording_path(
    directory: Path,
    camera_name: str,
    index: int,
    started_at: datetime,
    *,
    extension: str = RECORDING_EXTENSION,
) -> Path:
    base = f"{sanitize_camera_name(camera_name, index)}_{started_at:%Y-%m-%d_%H-%M-%S}"
    candidate = directory / f"{base}.{extension}"
    for suffix in itertools.count(1):
        if not candidate.exists():
            break
        candidate = directory / f"{base}_{suffix}.{extension}"
    return candidate


@dataclass(slots=True)
class RecordingSession:
    """One output file, from gate open to gate close."""

    path: Path
    started_at: datetime
    generation: int
    ended_at: datetime | None = None
    size_bytes: int | None = None
    discarded: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "path": str(self.path),
            "name": self.path.name,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "size_bytes": self.size_bytes,
            "discarded": self.discarded,
            "generation": self.generation,
        }


@dataclass(slots=True)
class _Generation:
    number: int
    encoder: Stage
    muxer: Stage
    sink: Stage
    recording: bool

    @property
    def stages(self) -> tuple[Stage, Stage, Stage]:
        return (self.encoder, self.muxer, self.sink)


class RecordingController:
    """Owns the gated recording branch of one stream session.

    Every recording gets its own generation of encoder, muxer and sink
    stages. While closed, a standby generation ending in a discard sink keeps
    the branch linked; opening swaps its sink for a file sink, closing drains
    and destroys the whole generation before the next standby is attached.
    """

    def __init__(
        self,
        *,
        graph: Graph,
        factory: StageFactory,
        upstream: Stage,
        valve: Valve,
        shaper: FrameRateShaper,
        camera: CameraConfig,
        motion: MotionDetector | None = None,
        clock: Callable[[], datetime] = _now,
        history_size: int = 20,
    ) -> None:
        if upstream.src_pad is None:
            raise ValueError("Recording upstream stage needs a src pad")
        self._graph = graph
        self._factory = factory
        self._upstream = upstream
        self._valve = valve
        self._shaper = shaper
        self._camera = camera
        self._motion = motion
        self._clock = clock
        self._lock = threading.RLock()
        self._state = RecordingState.CLOSED
        self._generation: _Generation | None = None
        self._generation_ids = itertools.count(1)
        self._current: RecordingSession | None = None
        self._history: Deque[RecordingSession] = deque(maxlen=history_size)
        self._probe_id = upstream.src_pad.add_probe(shaper.probe)

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is RecordingState.OPEN

    @property
    def current(self) -> RecordingSession | None:
        return self._current

    @property
    def generation(self) -> int | None:
        generation = self._generation
        return generation.number if generation is not None else None

    @property
    def generation_stages(self) -> tuple[Stage, ...]:
        generation = self._generation
        return generation.stages if generation is not None else ()

    def history(self) -> list[RecordingSession]:
        with self._lock:
            return list(self._history)

    # ------------------------------ operations -----------------------------
    def prepare(self) -> None:
        """Attach the standby generation; called while building the graph."""

        with self._lock:
            if self._generation is None:
                self._generation = self._attach_generation(recording=False)

    def set_active(self, active: bool) -> RecordingSession | None:
        """Open or close the recording gate.

        Returns the new session when opening, the finalized session when
        closing and ``None`` when nothing changed.
        """

        with self._lock:
            if active:
                if self._state is RecordingState.OPEN:
                    return None
                return self._open()
            if self._state is RecordingState.CLOSED:
                return None
            return self._close()

    def rotate(self) -> RecordingSession | None:
        """Finish the current file and continue in a new one."""

        with self._lock:
            if self._state is not RecordingState.OPEN:
                return None
            finished = self._close()
            self._open()
            return finished

    def on_motion_mode_changed(self, mode: MotionMode) -> None:
        if self._shaper.set_mode(mode):
            logger.info(
                "%s recording rate switched to %s", self._camera.display_name, mode.value
            )

    def poll(self, now: datetime | None = None) -> RecordingSession | None:
        """Rotate the open recording once it exceeds the segment length."""

        segment = self._camera.recording.segment_seconds
        if segment <= 0:
            return None
        with self._lock:
            current = self._current
            if self._state is not RecordingState.OPEN or current is None:
                return None
            elapsed = ((now or self._clock()) - current.started_at).total_seconds()
            if elapsed < segment:
                return None
            logger.info("Rotating %s after %.0fs", current.path.name, elapsed)
            return self.rotate()

    def update_camera(self, camera: CameraConfig) -> None:
        """Apply new recording settings; they take effect with the next file."""

        with self._lock:
            self._camera = camera
            if self._state is not RecordingState.CLOSED:
                return
            self._apply_shaper_settings()
            generation = self._generation
            if generation is not None:
                self._generation = None
                self._detach_generation(generation)
                self._attach_standby()

    def shutdown(self) -> RecordingSession | None:
        """Close any open recording and remove the recording stages."""

        with self._lock:
            finished = self._close() if self._state is not RecordingState.CLOSED else None
            generation = self._generation
            self._generation = None
            if generation is not None:
                self._detach_generation(generation)
            self._upstream.src_pad.remove_probe(self._probe_id)
            return finished

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            current = self._current
            return {
                "state": self._state.value,
                "active": self._state is RecordingState.OPEN,
                "generation": self.generation,
                "current": current.to_dict() if current is not None else None,
                "shaper": self._shaper.snapshot(),
                "history": [session.to_dict() for session in self._history],
            }

    # ----------------------------- implementation --------------------------
    def _open(self) -> RecordingSession:
        self._state = RecordingState.OPENING
        started_at = self._clock()
        directory = self._camera.recording.directory
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path = build_recording_path(
                directory, self._camera.display_name, self._camera.index, started_at
            )
            generation = self._generation
            if generation is not None and not generation.recording:
                self._swap_in_file_sink(generation, path)
            else:
                generation = self._attach_generation(recording=True, location=path)
                self._generation = generation
        except (GraphError, OSError) as exc:
            self._state = RecordingState.CLOSED
            self._discard_generation()
            self._attach_standby()
            logger.error("Could not start recording for %s: %s", self._camera.display_name, exc)
            if isinstance(exc, GraphError):
                raise
            raise RecordingError(f"Could not start recording: {exc}") from exc

        if self._motion is not None:
            self._motion.request_reset()
        self._apply_shaper_settings()
        self._shaper.reset(grace=self._camera.recording.grace_frames, mode=MotionMode.LOW_RATE)
        self._valve.set_drop(False)
        self._valve.send_downstream(Event.force_key_unit())
        session = RecordingSession(path=path, started_at=started_at, generation=generation.number)
        self._current = session
        self._state = RecordingState.OPEN
        logger.info("Recording started for %s: %s", self._camera.display_name, path)
        return session

    def _close(self) -> RecordingSession | None:
        self._state = RecordingState.CLOSING
        self._valve.set_drop(True)
        self._valve.send_downstream(Event.eos())
        generation = self._generation
        self._generation = None
        if generation is not None:
            self._detach_generation(generation)
        session = self._current
        self._current = None
        if session is not None:
            self._finalize(session)
        if self._motion is not None:
            self._motion.request_reset()
        self._state = RecordingState.CLOSED
        self._attach_standby()
        return session

    def _finalize(self, session: RecordingSession) -> None:
        session.ended_at = self._clock()
        try:
            size = session.path.stat().st_size
        except FileNotFoundError:
            size = 0
        session.size_bytes = size
        minimum = self._camera.recording.min_bytes
        if size < minimum:
            try:
                session.path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove empty recording %s: %s", session.path, exc)
            else:
                session.discarded = True
                logger.info(
                    "Discarded recording %s (%d bytes, minimum %d)", session.path.name, size, minimum
                )
        else:
            logger.info("Recording finished: %s (%d bytes)", session.path, size)
        self._history.append(session)

    def _apply_shaper_settings(self) -> None:
        settings = self._camera.recording
        self._shaper.keep_every = settings.keep_every
        self._shaper.compression = settings.compression

    def _attach_standby(self) -> None:
        try:
            self._generation = self._attach_generation(recording=False)
        except GraphError as exc:
            # The next open builds a fresh generation and reports the failure.
            logger.warning(
                "Could not prepare recording stages for %s: %s", self._camera.display_name, exc
            )

    def _stage_name(self, number: int, role: str) -> str:
        return f"rec{self._camera.index}-g{number}-{role}"

    def _make_sink(self, number: int, *, recording: bool, location: Path | None) -> Stage:
        if recording:
            return self._factory.make(
                "filesink", self._stage_name(number, "filesink"), location=location
            )
        return self._factory.make("discardsink", self._stage_name(number, "discardsink"))

    def _attach_generation(self, *, recording: bool, location: Path | None = None) -> _Generation:
        number = next(self._generation_ids)
        settings = self._camera.recording
        encoder = self._factory.make(
            "encoder",
            self._stage_name(number, "encoder"),
            codec=settings.codec,
            preference=settings.encoder,
            bitrate_kbps=settings.bitrate_kbps,
            gop_size=settings.gop_size,
            fps=settings.fps,
        )
        muxer = self._factory.make("muxer", self._stage_name(number, "muxer"))
        sink = self._make_sink(number, recording=recording, location=location)
        stages = (encoder, muxer, sink)
        self._graph.add(*stages)
        try:
            self._graph.link(self._upstream, encoder)
            self._graph.link_many(*stages)
            for stage in reversed(stages):
                stage.sync_state_with_parent()
        except Exception:
            for stage in stages:
                self._graph.remove(stage)
            raise
        logger.debug("Attached recording generation %d for %s", number, self._camera.display_name)
        return _Generation(number, encoder, muxer, sink, recording)

    def _swap_in_file_sink(self, generation: _Generation, location: Path) -> None:
        self._graph.remove(generation.sink)
        sink = self._make_sink(generation.number, recording=True, location=location)
        self._graph.add(sink)
        try:
            self._graph.link(generation.muxer, sink)
            sink.sync_state_with_parent()
        except Exception:
            self._graph.remove(sink)
            raise
        generation.sink = sink
        generation.recording = True

    def _detach_generation(self, generation: _Generation) -> None:
        self._graph.unlink(self._upstream, generation.encoder)
        for stage in generation.stages:
            if stage.graph is self._graph:
                self._graph.remove(stage)
        logger.debug("Removed recording generation %d", generation.number)

    def _discard_generation(self) -> None:
        generation = self._generation
        self._generation = None
        if generation is not None:
            self._detach_generation(generation)


__all__ = [
    "RECORDING_EXTENSION",
    "RecordingController",
    "RecordingError",
    "RecordingSession",
    "RecordingState",
    "build_recording_path",
    "sanitize_camera_name",
]
