"""Multi-stream supervision and control entry points."""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable

from .config import MAX_STREAMS, CameraConfig, SupervisorSettings
from .event_log import EventLog
from .graph import BusMessage, GraphError, MessageType, StageFactory
from .recording import RecordingError, RecordingSession
from .session import DisplayCallback, SessionState, StreamSession
from .stages import LiveFrame, default_factory, redact_uri


logger = logging.getLogger(__name__)


class UnknownStreamError(LookupError):
    """Raised when an index does not name a configured stream."""

    def __init__(self, index: int) -> None:
        super().__init__(f"Unknown stream index {index}")
        self.index = index


_SEVERITY_BY_MESSAGE = {
    MessageType.ERROR: "error",
    MessageType.EOS: "error",
    MessageType.WARNING: "warning",
}


class SessionSupervisor:
    """Holds one :class:`StreamSession` per camera and exposes the controls.

    Runtime failures of a stream are recorded in the event sink and leave the
    stream in the error state until it is started again; they are never
    retried automatically.
    """

    def __init__(
        self,
        settings: SupervisorSettings | None = None,
        *,
        event_log: EventLog | None = None,
        factory: StageFactory | None = None,
        display: DisplayCallback | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or SupervisorSettings()
        self._event_log = event_log or EventLog(max_entries=self._settings.event_log_size)
        self._factory = factory or default_factory()
        self._display = display
        self._clock = clock
        self._lock = threading.RLock()
        self._sessions: dict[int, StreamSession] = {}
        self._closed = False
        for camera in self._settings.cameras:
            self._sessions[camera.index] = self._create_session(camera)

    @property
    def settings(self) -> SupervisorSettings:
        return self._settings

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def indices(self) -> list[int]:
        with self._lock:
            return sorted(self._sessions)

    def _create_session(self, camera: CameraConfig) -> StreamSession:
        return StreamSession(
            camera,
            factory=self._factory,
            connect_timeout=self._settings.connect_timeout_s,
            display=self._display,
            on_message=self._on_session_message,
            on_recording_finished=self._on_recording_finished,
            clock=self._clock,
        )

    def session(self, index: int) -> StreamSession:
        with self._lock:
            session = self._sessions.get(index)
        if session is None:
            raise UnknownStreamError(index)
        return session

    def _record(
        self,
        severity: str,
        event: str,
        message: str,
        *,
        stream: int | None = None,
        source: str | None = None,
        details: dict[str, object | None] | None = None,
    ) -> None:
        self._event_log.record(
            severity, event, message, stream=stream, source=source, details=details
        )

    # ------------------------------ lifecycle ------------------------------
    def start(self, index: int, uri: str | None = None) -> dict[str, object]:
        session = self.session(index)
        try:
            session.start(uri)
        except (GraphError, ValueError) as exc:
            self._record(
                "error", "start_failed", str(exc), stream=index, details={"type": type(exc).__name__}
            )
            raise
        self._record(
            "info", "started", f"Ingesting {redact_uri(session.uri)}", stream=index
        )
        return session.snapshot()

    def stop(self, index: int) -> dict[str, object]:
        session = self.session(index)
        finished = session.stop()
        if finished is not None:
            self._record_finished(index, finished)
        self._record("info", "stopped", f"{session.camera.display_name} stopped", stream=index)
        return session.snapshot()

    def restart(self, index: int, uri: str | None = None) -> dict[str, object]:
        self.stop(index)
        return self.start(index, uri)

    def start_all(self) -> None:
        """Start every camera with a URI when auto start is configured.

        Cameras flagged to record on start begin recording as soon as their
        graph runs. Failures are logged and recorded, not raised.
        """

        if not self._settings.auto_start:
            return
        for index in self.indices:
            session = self.session(index)
            if not session.uri:
                continue
            try:
                self.start(index)
            except (GraphError, ValueError) as exc:
                logger.error("Auto start of stream %d failed: %s", index, exc)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sessions = list(self._sessions.values())
        for session in sessions:
            try:
                finished = session.stop()
            except Exception:
                logger.exception("Failed to stop stream %d", session.index)
                continue
            if finished is not None:
                self._record_finished(session.index, finished)

    # ------------------------------- control -------------------------------
    def set_recording_active(self, index: int, active: bool) -> dict[str, object]:
        session = self.session(index)
        try:
            result = session.set_recording_active(active)
        except (GraphError, RecordingError) as exc:
            self._record("error", "recording_failed", str(exc), stream=index)
            raise
        if result is not None:
            if active:
                self._record(
                    "info",
                    "recording_started",
                    f"Recording to {result.path.name}",
                    stream=index,
                    details={"path": str(result.path)},
                )
            else:
                self._record_finished(index, result)
        return session.snapshot()

    def set_live_view_enabled(self, index: int, enabled: bool) -> dict[str, object]:
        session = self.session(index)
        session.set_live_view_enabled(enabled)
        return session.snapshot()

    def latest_frame(self, index: int) -> LiveFrame | None:
        return self.session(index).latest_frame()

    def update_camera(self, camera: CameraConfig) -> bool:
        """Apply a new camera definition; returns ``True`` when it restarted.

        Changes to the source or to either branch's graph layout restart a
        running stream. Other recording and motion changes apply to the next
        recording without interrupting it.
        """

        with self._lock:
            session = self._sessions.get(camera.index)
            if session is None:
                if len(self._sessions) >= MAX_STREAMS:
                    raise ValueError(f"At most {MAX_STREAMS} streams are supported")
                self._sessions[camera.index] = self._create_session(camera)
                self._record("info", "configured", "Stream added", stream=camera.index)
                return False
        previous = session.camera
        running_uri = session.uri
        needs_restart = (
            (bool(camera.uri) and camera.uri != running_uri)
            or camera.transport != previous.transport
            or camera.latency_ms != previous.latency_ms
            or camera.live != previous.live
            or camera.recording.resolution != previous.recording.resolution
        )
        session.update_camera(camera)
        self._record("info", "configured", "Stream configuration updated", stream=camera.index)
        if session.state is not SessionState.INGESTING or not needs_restart:
            return False
        self.restart(camera.index)
        return True

    def poll(self) -> None:
        """Housekeeping: rotate recordings that reached their segment length."""

        for index in self.indices:
            try:
                finished = self.session(index).poll()
            except (GraphError, RecordingError) as exc:
                logger.error("Recording rotation failed for stream %d: %s", index, exc)
                self._record("error", "rotation_failed", str(exc), stream=index)
                continue
            if finished is not None:
                self._record_finished(index, finished)

    # ------------------------------- status --------------------------------
    def status(self, index: int) -> dict[str, object]:
        return self.session(index).snapshot()

    def statuses(self) -> list[dict[str, object]]:
        return [self.session(index).snapshot() for index in self.indices]

    # ------------------------------- events --------------------------------
    def _record_finished(self, index: int, finished: RecordingSession) -> None:
        if finished.discarded:
            self._record(
                "info",
                "recording_discarded",
                f"Discarded {finished.path.name} ({finished.size_bytes} bytes)",
                stream=index,
                details={"path": str(finished.path), "size_bytes": finished.size_bytes},
            )
            return
        self._record(
            "info",
            "recording_finished",
            f"Saved {finished.path.name}",
            stream=index,
            details={"path": str(finished.path), "size_bytes": finished.size_bytes},
        )

    def _on_recording_finished(self, session: StreamSession, finished: RecordingSession) -> None:
        self._record_finished(session.index, finished)

    def _on_session_message(self, session: StreamSession, message: BusMessage) -> None:
        severity = _SEVERITY_BY_MESSAGE.get(message.type, "info")
        text = message.text or ("Stream ended" if message.type is MessageType.EOS else "")
        logger.debug("Stream %d %s from %s: %s", session.index, severity, message.source, text)
        details: dict[str, object | None] = {"debug": message.debug}
        details.update(message.details)
        self._record(
            severity,
            f"stream_{message.type.value}",
            text,
            stream=session.index,
            source=message.source,
            details=details,
        )


__all__ = ["SessionSupervisor", "UnknownStreamError"]
