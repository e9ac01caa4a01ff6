"""Per-camera media graph ownership."""
from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable

from .config import DEFAULT_CONNECT_TIMEOUT_S, CameraConfig, Resolution
from .graph import (
    BusMessage,
    Graph,
    GraphError,
    MessageType,
    Pad,
    Stage,
    StageFactory,
    StageState,
    StreamRuntimeError,
)
from .motion import MotionDetector, MotionMode
from .recording import RecordingController, RecordingError, RecordingSession
from .shaper import FrameRateShaper
from .stages import LiveFrame, default_factory, redact_uri


logger = logging.getLogger(__name__)

NETWORK_QUEUE_SIZE = 3
LIVE_QUEUE_SIZE = 2
RECORD_QUEUE_SIZE = 10

DisplayCallback = Callable[[int, LiveFrame], None]
MessageCallback = Callable[["StreamSession", BusMessage], None]
RecordingCallback = Callable[["StreamSession", RecordingSession], None]


class SessionState(str, Enum):
    IDLE = "idle"
    INGESTING = "ingesting"
    ERROR = "error"


@dataclass(slots=True)
class StreamFlags:
    """Control and status flags of one stream."""

    recording_active: bool = False
    live_view_enabled: bool = True
    motion_mode: MotionMode = MotionMode.LOW_RATE
    state: SessionState = SessionState.IDLE
    last_error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "recording_active": self.recording_active,
            "live_view_enabled": self.live_view_enabled,
            "motion_mode": self.motion_mode.value,
            "state": self.state.value,
            "last_error": self.last_error,
        }


def _dimensions(resolution: Resolution | None) -> dict[str, int]:
    if resolution is None:
        return {}
    return {"width": resolution.width, "height": resolution.height}


@dataclass(slots=True)
class _SessionGraph:
    graph: Graph
    framesink: Stage
    recording: RecordingController


class StreamSession:
    """Owns the graph of one camera from network source to the two branches.

    ``source -> queue -> decoder -> tee`` feeds a leaky live branch ending in
    a frame sink and a gated recording branch managed by a
    :class:`RecordingController`. The source and decoder only expose their
    output pads once the stream format is known, so those links are made by
    pad-added continuations.
    """

    def __init__(
        self,
        camera: CameraConfig,
        *,
        factory: StageFactory | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_S,
        display: DisplayCallback | None = None,
        on_message: MessageCallback | None = None,
        on_recording_finished: RecordingCallback | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._camera = camera
        self._uri = camera.uri
        self._factory = factory or default_factory()
        self._connect_timeout = float(connect_timeout)
        self._display = display
        self._on_message = on_message
        self._on_recording_finished = on_recording_finished
        self._clock = clock
        self._lock = threading.RLock()
        self._flags_lock = threading.Lock()
        self._flags = StreamFlags(recording_active=camera.recording.enabled)
        self._active: _SessionGraph | None = None
        self.motion = MotionDetector.from_settings(camera.motion)
        self.motion.add_listener(self._on_motion_mode_changed)

    # ------------------------------ properties -----------------------------
    @property
    def index(self) -> int:
        return self._camera.index

    @property
    def camera(self) -> CameraConfig:
        return self._camera

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def state(self) -> SessionState:
        with self._flags_lock:
            return self._flags.state

    @property
    def graph(self) -> Graph | None:
        active = self._active
        return active.graph if active is not None else None

    @property
    def recording(self) -> RecordingController | None:
        active = self._active
        return active.recording if active is not None else None

    def flags(self) -> StreamFlags:
        with self._flags_lock:
            return replace(self._flags)

    def _update_flags(self, **changes: object) -> None:
        with self._flags_lock:
            for key, value in changes.items():
                setattr(self._flags, key, value)

    # ------------------------------ lifecycle ------------------------------
    def start(self, uri: str | None = None) -> None:
        """Build the graph for ``uri`` and start ingesting.

        Either the whole graph runs afterwards or nothing does: on failure the
        partially built graph is torn down and the session stays idle.
        """

        with self._lock:
            if uri is not None:
                self._uri = uri.strip()
            if self._active is not None:
                logger.debug("Stream %d already ingesting", self.index)
                return
            if not self._uri:
                raise ValueError(f"No stream URI configured for {self._camera.display_name}")
            self.motion.request_reset()
            try:
                active = self._build(self._uri)
            except GraphError:
                self._update_flags(state=SessionState.IDLE)
                raise
            try:
                active.graph.bus.add_watch(functools.partial(self._on_bus_message, active.graph))
                active.graph.set_state(StageState.PLAYING)
            except Exception as exc:
                self._teardown(active)
                active.graph.bus.remove_watch()
                self._update_flags(state=SessionState.IDLE)
                logger.error("Stream %d failed to start: %s", self.index, exc)
                if isinstance(exc, GraphError):
                    raise
                raise StreamRuntimeError(
                    f"Could not start {self._camera.display_name}: {exc}", debug=repr(exc)
                ) from exc
            self._active = active
            self._update_flags(state=SessionState.INGESTING, last_error=None)
            logger.info("Stream %d ingesting %s", self.index, redact_uri(self._uri))
            if self.flags().recording_active:
                try:
                    active.recording.set_active(True)
                except (GraphError, RecordingError) as exc:
                    logger.error("Stream %d could not resume recording: %s", self.index, exc)
                    self._update_flags(last_error=str(exc))

    def stop(self) -> RecordingSession | None:
        """Stop the graph; an open recording is finalized first."""

        with self._lock:
            active = self._active
            self._active = None
            self._update_flags(state=SessionState.IDLE)
            if active is None:
                return None
            finished = self._teardown(active)
            logger.info("Stream %d stopped", self.index)
        # The bus thread may be waiting for the lock; join it only after release.
        active.graph.bus.remove_watch()
        return finished

    def restart(self, uri: str | None = None) -> None:
        self.stop()
        self.start(uri)

    def _teardown(self, active: _SessionGraph) -> RecordingSession | None:
        finished = None
        try:
            finished = active.recording.shutdown()
        except Exception:
            logger.exception("Stream %d failed to close its recording", self.index)
        active.graph.set_state(StageState.NULL)
        return finished

    # ---------------------------- graph assembly ---------------------------
    def _build(self, uri: str) -> _SessionGraph:
        camera = self._camera
        prefix = f"cam{camera.index}-"
        make = self._factory.make
        graph = Graph(f"camera{camera.index}")

        source = make(
            "rtspsrc",
            f"{prefix}source",
            location=uri,
            transport=camera.transport,
            latency_ms=camera.latency_ms,
            connect_timeout=self._connect_timeout,
        )
        queue_net = make(
            "queue", f"{prefix}queue-net", max_size_buffers=NETWORK_QUEUE_SIZE, leaky="downstream"
        )
        decoder = make("decoder", f"{prefix}decoder")
        tee = make("tee", f"{prefix}tee")
        queue_live = make(
            "queue", f"{prefix}queue-live", max_size_buffers=LIVE_QUEUE_SIZE, leaky="downstream"
        )
        live_convert = make(
            "videoconvert", f"{prefix}live-convert", **_dimensions(camera.live.resolution)
        )
        framesink = make(
            "framesink", f"{prefix}framesink", on_frame=self._on_live_frame, max_fps=camera.live.fps
        )
        queue_record = make(
            "queue", f"{prefix}queue-record", max_size_buffers=RECORD_QUEUE_SIZE, leaky="no"
        )
        valve = make("valve", f"{prefix}valve", drop=True)
        record_convert = make(
            "videoconvert", f"{prefix}record-convert", **_dimensions(camera.recording.resolution)
        )

        # Upstream to downstream; the graph starts sinks first.
        graph.add(
            source,
            queue_net,
            decoder,
            tee,
            queue_live,
            live_convert,
            framesink,
            queue_record,
            valve,
            record_convert,
        )
        graph.link(queue_net, decoder)
        graph.link(tee, queue_live, src_pad=tee.request_pad().name)
        graph.link_many(queue_live, live_convert, framesink)
        graph.link(tee, queue_record, src_pad=tee.request_pad().name)
        graph.link_many(queue_record, valve, record_convert)
        source.connect_pad_added(functools.partial(self._link_resolved_pad, queue_net, True))
        decoder.connect_pad_added(functools.partial(self._link_resolved_pad, tee, False))

        recording = camera.recording
        shaper = FrameRateShaper(keep_every=recording.keep_every, compression=recording.compression)
        options = {"clock": self._clock} if self._clock is not None else {}
        controller = RecordingController(
            graph=graph,
            factory=self._factory,
            upstream=record_convert,
            valve=valve,
            shaper=shaper,
            camera=camera,
            motion=self.motion,
            **options,
        )
        controller.prepare()
        return _SessionGraph(graph, framesink, controller)

    def _link_resolved_pad(self, target: Stage, video_only: bool, stage: Stage, pad: Pad) -> None:
        caps = pad.caps
        if video_only and (caps is None or not caps.is_video):
            logger.debug("Ignoring %s pad %s", caps.media if caps else "unknown", pad.full_name)
            return
        sink = target.sink_pad
        if sink is None or sink.is_linked or pad.is_linked:
            logger.debug("Pad %s resolved again; already linked", pad.full_name)
            return
        pad.link(sink)
        logger.debug("Linked %s to %s", pad.full_name, sink.full_name)

    # ------------------------------ callbacks ------------------------------
    def _on_live_frame(self, frame: LiveFrame) -> None:
        self.motion.observe(frame.data)
        display = self._display
        if display is None or not self.flags().live_view_enabled:
            return
        try:
            display(self.index, frame)
        except Exception:
            logger.exception("Display callback failed for stream %d", self.index)

    def _on_motion_mode_changed(self, mode: MotionMode) -> None:
        self._update_flags(motion_mode=mode)
        controller = self.recording
        if controller is not None:
            controller.on_motion_mode_changed(mode)

    def _on_bus_message(self, graph: Graph, message: BusMessage) -> None:
        finished = None
        if message.type is MessageType.WARNING:
            logger.warning("Stream %d warning from %s: %s", self.index, message.source, message.text)
        elif message.type in (MessageType.ERROR, MessageType.EOS):
            failed, finished = self._fail(graph, message)
            if not failed:
                logger.debug("Ignoring %s from stopped graph %s", message.type.value, graph.name)
                return
        else:
            logger.debug("Stream %d %s from %s", self.index, message.type.value, message.source)
            return
        callback = self._on_message
        if callback is not None:
            callback(self, message)
        recording_callback = self._on_recording_finished
        if finished is not None and recording_callback is not None:
            recording_callback(self, finished)

    def _fail(self, graph: Graph, message: BusMessage) -> tuple[bool, RecordingSession | None]:
        text = message.text or "Stream ended"
        with self._lock:
            active = self._active
            if active is None or active.graph is not graph:
                return False, None
            self._active = None
            logger.error("Stream %d failed (%s): %s", self.index, message.source, text)
            finished = self._teardown(active)
            self._update_flags(state=SessionState.ERROR, last_error=text)
        graph.bus.remove_watch()
        return True, finished

    # ------------------------------- control -------------------------------
    def set_recording_active(self, active: bool) -> RecordingSession | None:
        """Request recording on or off; it is applied at once while ingesting."""

        with self._lock:
            previous = self.flags().recording_active
            self._update_flags(recording_active=bool(active))
            controller = self.recording
            if controller is None:
                return None
            try:
                return controller.set_active(bool(active))
            except Exception:
                self._update_flags(recording_active=previous)
                raise

    def set_live_view_enabled(self, enabled: bool) -> None:
        self._update_flags(live_view_enabled=bool(enabled))

    def latest_frame(self) -> LiveFrame | None:
        active = self._active
        if active is None:
            return None
        return active.framesink.latest()

    def poll(self) -> RecordingSession | None:
        with self._lock:
            controller = self.recording
            if controller is None:
                return None
            return controller.poll()

    def update_camera(self, camera: CameraConfig) -> None:
        """Adopt settings that do not change the graph layout.

        A changed source URI is used by the next :meth:`start`; restarting a
        running graph is up to the caller.
        """

        if camera.index != self._camera.index:
            raise ValueError("Camera index cannot change")
        with self._lock:
            if camera.uri:
                self._uri = camera.uri
            self._camera = camera
            motion = camera.motion
            self.motion.threshold_percent = motion.threshold_percent
            self.motion.pixel_threshold = motion.pixel_threshold
            self.motion.start_frames = motion.start_frames
            self.motion.stop_frames = motion.stop_frames
            self.motion.request_reset()
            controller = self.recording
            if controller is not None:
                controller.update_camera(camera)

    def snapshot(self) -> dict[str, object]:
        flags = self.flags()
        controller = self.recording
        return {
            "index": self.index,
            "name": self._camera.display_name,
            "uri": redact_uri(self._uri) if self._uri else None,
            **flags.to_dict(),
            "motion": self.motion.snapshot(),
            "recording": controller.snapshot() if controller is not None else None,
        }


__all__ = ["SessionState", "StreamFlags", "StreamSession"]
