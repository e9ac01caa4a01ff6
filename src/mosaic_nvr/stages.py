"""PyAV backed stages for ingest, conversion, encoding and file output."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Any, Callable, Iterable
from urllib.parse import urlsplit, urlunsplit

import numpy as np

try:  # pragma: no cover - dependency availability varies by platform
    import av  # type: ignore
    from av import VideoFrame
    from av.video.frame import PictureType
except ImportError as exc:  # pragma: no cover - dependency availability varies
    av = None  # type: ignore[assignment]
    VideoFrame = None  # type: ignore[assignment]
    PictureType = None  # type: ignore[assignment]
    _AV_IMPORT_ERROR: ImportError | None = exc
else:  # pragma: no cover - dependency availability varies
    _AV_IMPORT_ERROR = None

from .graph import (
    Buffer,
    Caps,
    Event,
    EventType,
    FlowReturn,
    MessageType,
    Pad,
    PadDirection,
    Query,
    QueryType,
    Queue,
    Stage,
    StageFactory,
    Tee,
    Valve,
)
from .imaging import looks_blank, prepare_rgb_frame
from .video_encoding import EncoderBackend, select_encoder_backend


logger = logging.getLogger(__name__)

NANOSECONDS_PER_SECOND = 1_000_000_000
ENCODER_TIME_BASE = Fraction(1, 1000)
_NS_PER_ENCODER_TICK = NANOSECONDS_PER_SECOND // 1000


def _require_av(purpose: str) -> None:
    if av is None:  # pragma: no cover - dependency availability varies
        raise RuntimeError(f"PyAV is required for {purpose}") from _AV_IMPORT_ERROR


def to_nanoseconds(pts: int | None, time_base: Fraction | None) -> int | None:
    if pts is None or time_base is None:
        return None
    return int(Fraction(pts) * Fraction(time_base) * NANOSECONDS_PER_SECOND)


def redact_uri(uri: str) -> str:
    """Hide credentials embedded in a stream URI."""

    try:
        parts = urlsplit(uri)
    except ValueError:
        return uri
    if not parts.username and not parts.password:
        return uri
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))


# --------------------------------------------------------------------------
# Ingest
# --------------------------------------------------------------------------
class RtspSource(Stage):
    """Network source that demuxes an RTSP (or any FFmpeg readable) URI.

    Output pads appear only once the remote format is known: one pad per
    container stream, carrying caps such as ``video/h264`` or ``audio/aac``.
    """

    factory_name = "rtspsrc"

    def __init__(
        self,
        name: str | None = None,
        *,
        location: str = "",
        transport: str = "tcp",
        latency_ms: int = 200,
        connect_timeout: float = 5.0,
        read_timeout: float | None = None,
        stop_timeout: float = 2.0,
    ) -> None:
        super().__init__(name)
        if connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        self.location = location
        self.transport = transport
        self.latency_ms = int(latency_ms)
        self.connect_timeout = float(connect_timeout)
        self.read_timeout = float(read_timeout) if read_timeout is not None else self.connect_timeout
        self.stop_timeout = float(stop_timeout)
        self.packets = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def open_options(self) -> dict[str, str]:
        return {
            "rtsp_transport": self.transport,
            "timeout": str(int(self.connect_timeout * 1_000_000)),
            "max_delay": str(int(self.latency_ms * 1000)),
            "fflags": "nobuffer",
        }

    def start(self) -> None:
        _require_av("stream ingest")
        if not self.location:
            raise ValueError("No source location configured")
        self._stop_event.clear()
        thread = threading.Thread(target=self._run, name=f"{self.name}-ingest", daemon=True)
        self._thread = thread
        thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=self.stop_timeout)
        if thread.is_alive():
            logger.warning(
                "Source %s did not stop within %.1fs; abandoning its ingest thread",
                redact_uri(self.location),
                self.stop_timeout,
            )

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def _run(self) -> None:
        assert av is not None
        display = redact_uri(self.location)
        try:
            container = av.open(
                self.location,
                options=self.open_options(),
                timeout=(self.connect_timeout, self.read_timeout),
            )
        except (av.FFmpegError, OSError) as exc:
            if not self.stopping:
                self.post_error(f"Could not open resource {display} for reading", debug=str(exc))
            return
        try:
            pads = self._expose_streams(container)
            if self.stopping:
                return
            linked = [
                stream
                for stream in container.streams
                if stream.index in pads and pads[stream.index].is_linked
            ]
            if not linked:
                self.post_error(f"No usable video stream found in {display}")
                return
            for packet in container.demux(*linked):
                if self.stopping:
                    return
                if packet.dts is None:
                    continue
                pad = pads[packet.stream.index]
                self.packets += 1
                pad.push(
                    Buffer(
                        packet,
                        pts=to_nanoseconds(packet.pts, packet.time_base),
                        keyframe=bool(packet.is_keyframe),
                    )
                )
            if not self.stopping:
                for pad in pads.values():
                    pad.push_event(Event.eos())
                self.post_message(MessageType.EOS, f"End of stream from {display}")
        except av.FFmpegError as exc:
            if not self.stopping:
                self.post_error(f"Stream {display} failed: {exc}", debug=repr(exc))
        finally:
            try:
                container.close()
            except Exception:  # pragma: no cover - close failures are not actionable
                logger.debug("Failed to close input container for %s", display, exc_info=True)

    def _expose_streams(self, container: Any) -> dict[int, Pad]:
        pads: dict[int, Pad] = {}
        for stream in container.streams:
            if stream.type not in {"video", "audio"}:
                continue
            context = stream.codec_context
            extradata = getattr(context, "extradata", None)
            fields: dict[str, Any] = {
                "codec": context.name,
                "time_base": stream.time_base,
                "stream_index": stream.index,
                "extradata": bytes(extradata) if extradata else None,
            }
            if stream.type == "video":
                fields["width"] = context.width
                fields["height"] = context.height
            pad = self.add_pad(f"src_{stream.index}", PadDirection.SRC)
            pad.caps = Caps(f"{stream.type}/{context.name}", fields)
            pads[stream.index] = pad
            self.expose_pad(pad)
        return pads


class Decoder(Stage):
    """Decodes compressed packets into RGB ``numpy`` frames.

    The ``src`` pad is created after the first frame resolves the output
    format. Isolated decode failures are warnings; ``max_errors``
    consecutive failures become an error.
    """

    factory_name = "decoder"

    def __init__(self, name: str | None = None, *, max_errors: int = 10) -> None:
        super().__init__(name)
        if max_errors < 1:
            raise ValueError("max_errors must be at least 1")
        self.max_errors = int(max_errors)
        self.frames = 0
        self._errors = 0
        self._codec: Any = None
        self._time_base: Fraction | None = None
        self._src: Pad | None = None
        self.add_pad("sink", PadDirection.SINK)

    def start(self) -> None:
        _require_av("decoding")
        self._errors = 0

    def stop(self) -> None:
        self._codec = None

    def _ensure_codec(self, pad: Pad) -> Any:
        if self._codec is not None:
            return self._codec
        caps = pad.caps
        if caps is None or not caps.get("codec"):
            raise RuntimeError("Decoder received data before the stream format was known")
        assert av is not None
        codec = av.CodecContext.create(caps.get("codec"), "r")
        extradata = caps.get("extradata")
        if extradata:
            codec.extradata = extradata
        try:
            codec.thread_type = "AUTO"
        except Exception:  # pragma: no cover - not every decoder supports threading
            pass
        self._codec = codec
        self._time_base = caps.get("time_base")
        return codec

    def _output_pad(self, width: int, height: int) -> Pad:
        if self._src is None:
            pad = self.add_pad("src", PadDirection.SRC)
            pad.caps = Caps("video/x-raw", {"format": "RGB", "width": width, "height": height})
            self._src = pad
            self.expose_pad(pad)
        return self._src

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        assert av is not None
        codec = self._ensure_codec(pad)
        try:
            frames = codec.decode(buffer.data)
        except av.FFmpegError as exc:
            self._errors += 1
            if self._errors >= self.max_errors:
                self.post_error(
                    f"Decoding failed {self._errors} times in a row", debug=str(exc)
                )
                return FlowReturn.ERROR
            self.post_warning("Could not decode packet", debug=str(exc))
            return FlowReturn.OK
        self._errors = 0
        for frame in frames:
            array = frame.to_ndarray(format="rgb24")
            pts = to_nanoseconds(frame.pts, self._time_base)
            if pts is None:
                pts = buffer.pts
            src = self._output_pad(frame.width, frame.height)
            self.frames += 1
            result = src.push(Buffer(array, pts=pts))
            if result in (FlowReturn.ERROR, FlowReturn.FLUSHING):
                return result
        return FlowReturn.OK


# --------------------------------------------------------------------------
# Raw video
# --------------------------------------------------------------------------
def convert_frame(frame: np.ndarray, width: int | None, height: int | None) -> np.ndarray:
    """Return ``frame`` as packed RGB scaled to ``width`` x ``height``."""

    array = prepare_rgb_frame(frame)
    if width is None or height is None:
        return array
    if array.shape[1] == width and array.shape[0] == height:
        return array
    _require_av("scaling")
    assert VideoFrame is not None
    video = VideoFrame.from_ndarray(array, format="rgb24")
    return video.reformat(width=int(width), height=int(height), format="rgb24").to_ndarray()


class VideoConvert(Stage):
    """Colour conversion and scaling of raw frames."""

    factory_name = "videoconvert"

    def __init__(
        self,
        name: str | None = None,
        *,
        width: int | None = None,
        height: int | None = None,
    ) -> None:
        super().__init__(name)
        if (width is None) != (height is None):
            raise ValueError("width and height must be given together")
        if width is not None and (width <= 0 or height <= 0):
            raise ValueError("Target dimensions must be positive")
        self.width = width
        self.height = height
        self.add_pad("sink", PadDirection.SINK)
        self.add_pad("src", PadDirection.SRC)

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        buffer.data = convert_frame(buffer.data, self.width, self.height)
        src = self.src_pad
        assert src is not None
        return src.push(buffer)


@dataclass(frozen=True, slots=True)
class LiveFrame:
    """Image handed to the display collaborator."""

    data: np.ndarray
    pts: int | None = None
    pixel_format: str = "RGB"

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    def to_bytes(self) -> bytes:
        return np.ascontiguousarray(self.data).tobytes()


class FrameSink(Stage):
    """Application sink that keeps only the most recent frame.

    The first ``warmup_frames`` frames and frames whose leading bytes are
    mostly zero (typical of corrupted green or black decoder output) are
    skipped. ``max_fps`` throttles delivery using buffer timestamps.
    """

    factory_name = "framesink"

    def __init__(
        self,
        name: str | None = None,
        *,
        on_frame: Callable[[LiveFrame], None] | None = None,
        warmup_frames: int = 5,
        max_fps: float | None = None,
        skip_blank_frames: bool = True,
        blank_probe_bytes: int = 1000,
        blank_ratio: float = 0.5,
    ) -> None:
        super().__init__(name)
        if warmup_frames < 0:
            raise ValueError("warmup_frames must not be negative")
        if max_fps is not None and max_fps <= 0:
            raise ValueError("max_fps must be positive")
        self.on_frame = on_frame
        self.warmup_frames = int(warmup_frames)
        self.max_fps = max_fps
        self.skip_blank_frames = skip_blank_frames
        self.blank_probe_bytes = int(blank_probe_bytes)
        self.blank_ratio = float(blank_ratio)
        self.received = 0
        self.delivered = 0
        self.skipped = 0
        self._last_pts: int | None = None
        self._latest: LiveFrame | None = None
        self._latest_lock = threading.Lock()
        self.add_pad("sink", PadDirection.SINK)

    def latest(self) -> LiveFrame | None:
        with self._latest_lock:
            return self._latest

    def start(self) -> None:
        self.received = 0
        self._last_pts = None

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        self.received += 1
        if self.received <= self.warmup_frames:
            self.skipped += 1
            return FlowReturn.OK
        frame = np.asarray(buffer.data)
        if self.skip_blank_frames and looks_blank(
            frame, probe_bytes=self.blank_probe_bytes, ratio=self.blank_ratio
        ):
            self.skipped += 1
            return FlowReturn.OK
        if self._throttled(buffer.pts):
            return FlowReturn.OK
        live = LiveFrame(frame, buffer.pts)
        with self._latest_lock:
            self._latest = live
        self.delivered += 1
        callback = self.on_frame
        if callback is not None:
            callback(live)
        return FlowReturn.OK

    def _throttled(self, pts: int | None) -> bool:
        if self.max_fps is None or pts is None:
            return False
        last = self._last_pts
        if last is not None and last <= pts < last + NANOSECONDS_PER_SECOND / self.max_fps:
            return True
        self._last_pts = pts
        return False


# --------------------------------------------------------------------------
# Encoding and output
# --------------------------------------------------------------------------
class VideoEncoder(Stage):
    """Encodes RGB frames to H.264/H.265 packets.

    The codec context is obtained from downstream with a
    :attr:`QueryType.CODEC_CONTEXT` query so the muxer's stream owns it and
    the container header carries the encoder's parameter sets.
    """

    factory_name = "encoder"

    def __init__(
        self,
        name: str | None = None,
        *,
        codec: str = "h264",
        bitrate_kbps: int = 1000,
        gop_size: int = 30,
        fps: int = 25,
        preference: str | None = None,
        backend: EncoderBackend | None = None,
    ) -> None:
        super().__init__(name)
        _require_av("encoding")
        if backend is None:
            backend, attempted = select_encoder_backend(codec, preference)
            if backend is None:
                raise RuntimeError(
                    f"No {codec} encoder is available (tried {', '.join(attempted) or 'none'})"
                )
        self.backend = backend
        self.bitrate_kbps = int(bitrate_kbps)
        self.gop_size = int(gop_size)
        self.fps = int(fps)
        self.frames = 0
        self.keyframe_requests = 0
        self._context: Any = None
        self._force_keyframe = True
        self._last_pts: int | None = None
        self.add_pad("sink", PadDirection.SINK)
        self.add_pad("src", PadDirection.SRC)

    def stop(self) -> None:
        self._context = None

    def handle_event(self, pad: Pad, event: Event) -> bool:
        if event.type is EventType.FORCE_KEY_UNIT:
            self._force_keyframe = True
            self.keyframe_requests += 1
            return True
        if event.type is EventType.EOS:
            self._flush()
        return super().handle_event(pad, event)

    def _open(self, width: int, height: int) -> Any:
        src = self.src_pad
        assert src is not None
        query = Query(QueryType.CODEC_CONTEXT, {"codec": self.backend.codec, "rate": self.fps})
        if not src.query(query) or query.result is None:
            raise RuntimeError("Downstream did not provide an encoding context")
        context = query.result
        context.width = width
        context.height = height
        context.pix_fmt = "yuv420p"
        context.time_base = ENCODER_TIME_BASE
        context.framerate = Fraction(self.fps, 1)
        context.bit_rate = self.bitrate_kbps * 1000
        context.gop_size = self.gop_size
        try:
            context.max_b_frames = 0
        except Exception:  # pragma: no cover - property may be read-only
            pass
        options = self.backend.codec_options()
        if options:
            try:
                context.options = options
            except Exception:  # pragma: no cover - some codecs do not expose options
                logger.debug("Encoder %s did not accept options %s", self.backend.codec, options)
        self._context = context
        self._last_pts = None
        return context

    def _next_pts(self, pts_ns: int | None) -> int:
        last = self._last_pts
        if pts_ns is None:
            candidate = 0 if last is None else last + 1
        else:
            candidate = pts_ns // _NS_PER_ENCODER_TICK
        if last is not None and candidate <= last:
            candidate = last + 1
        self._last_pts = candidate
        return candidate

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        assert VideoFrame is not None and PictureType is not None
        rgb = prepare_rgb_frame(buffer.data, even=True)
        height, width = rgb.shape[:2]
        context = self._context or self._open(width, height)
        frame = VideoFrame.from_ndarray(rgb, format="rgb24").reformat(
            width=context.width, height=context.height, format="yuv420p"
        )
        frame.pts = self._next_pts(buffer.pts)
        frame.time_base = ENCODER_TIME_BASE
        try:
            frame.pict_type = PictureType.I if self._force_keyframe else PictureType.NONE
        except Exception:  # pragma: no cover - pict_type may be immutable
            pass
        self._force_keyframe = False
        self.frames += 1
        return self._push_packets(context.encode(frame))

    def _push_packets(self, packets: Iterable[Any]) -> FlowReturn:
        src = self.src_pad
        assert src is not None
        for packet in packets:
            packet.time_base = ENCODER_TIME_BASE
            pts = packet.pts * _NS_PER_ENCODER_TICK if packet.pts is not None else None
            result = src.push(Buffer(packet, pts=pts, keyframe=bool(packet.is_keyframe)))
            if result is FlowReturn.ERROR:
                return result
        return FlowReturn.OK

    def _flush(self) -> None:
        context = self._context
        if context is None:
            return
        self._push_packets(context.encode(None))
        self._context = None


class _PadWriter:
    """Write-only, non-seekable file object feeding a stage's src pad."""

    def __init__(self, emit: Callable[[bytes], None]) -> None:
        self._emit = emit
        self.bytes_written = 0
        self.closed = False

    def write(self, data: bytes | memoryview) -> int:
        chunk = bytes(data)
        self.bytes_written += len(chunk)
        self._emit(chunk)
        return len(chunk)

    def flush(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class MatroskaMuxer(Stage):
    """Muxes encoded packets into a Matroska byte stream."""

    factory_name = "muxer"

    def __init__(self, name: str | None = None, *, container_format: str = "matroska") -> None:
        super().__init__(name)
        _require_av("muxing")
        self.container_format = container_format
        self.packets = 0
        self._container: Any = None
        self._stream: Any = None
        self.add_pad("sink", PadDirection.SINK)
        self.add_pad("src", PadDirection.SRC)

    def handle_query(self, pad: Pad, query: Query) -> bool:
        if query.type is not QueryType.CODEC_CONTEXT:
            return super().handle_query(pad, query)
        assert av is not None
        if self._stream is None:
            container = av.open(_PadWriter(self._emit), mode="w", format=self.container_format)
            rate = query.params.get("rate")
            self._stream = container.add_stream(query.params["codec"], rate=rate)
            self._container = container
        query.result = self._stream.codec_context
        return True

    def _emit(self, chunk: bytes) -> None:
        src = self.src_pad
        assert src is not None
        src.push(Buffer(chunk))

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        if self._container is None:
            raise RuntimeError("Muxer received packets before the encoder negotiated a stream")
        packet = buffer.data
        packet.stream = self._stream
        self._container.mux(packet)
        self.packets += 1
        return FlowReturn.OK

    def handle_event(self, pad: Pad, event: Event) -> bool:
        if event.type is EventType.EOS:
            self._finish()
        return super().handle_event(pad, event)

    def stop(self) -> None:
        try:
            self._finish()
        except Exception:  # pragma: no cover - teardown best effort
            logger.debug("Failed to close muxer %s", self.name, exc_info=True)

    def _finish(self) -> None:
        container = self._container
        self._container = None
        self._stream = None
        if container is not None:
            container.close()


class FileSink(Stage):
    """Writes incoming byte buffers to ``location``.

    The file is created when the stage starts and closed on EOS or stop.
    """

    factory_name = "filesink"

    def __init__(self, name: str | None = None, *, location: Path | str) -> None:
        super().__init__(name)
        if not str(location).strip():
            raise ValueError("FileSink requires a location")
        self.location = Path(location)
        self.bytes_written = 0
        self._handle: Any = None
        self.add_pad("sink", PadDirection.SINK)

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        self.location.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.location.open("wb")
        self.bytes_written = 0

    def stop(self) -> None:
        with self._stream_lock:
            self._close()

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        handle = self._handle
        if handle is None:
            return FlowReturn.FLUSHING
        data = bytes(buffer.data)
        handle.write(data)
        self.bytes_written += len(data)
        return FlowReturn.OK

    def handle_event(self, pad: Pad, event: Event) -> bool:
        if event.type is EventType.EOS:
            self._close()
        return True

    def _close(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.flush()
            handle.close()


class DiscardSink(Stage):
    """Accepts and drops everything."""

    factory_name = "discardsink"

    def __init__(self, name: str | None = None) -> None:
        super().__init__(name)
        self.buffers = 0
        self.bytes_discarded = 0
        self.add_pad("sink", PadDirection.SINK)

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        self.buffers += 1
        if isinstance(buffer.data, (bytes, bytearray, memoryview)):
            self.bytes_discarded += len(buffer.data)
        return FlowReturn.OK

    def handle_event(self, pad: Pad, event: Event) -> bool:
        return True


def default_factory() -> StageFactory:
    """Return a factory knowing every built-in stage."""

    factory = StageFactory()
    for stage_type in (
        Queue,
        Tee,
        Valve,
        RtspSource,
        Decoder,
        VideoConvert,
        FrameSink,
        VideoEncoder,
        MatroskaMuxer,
        FileSink,
        DiscardSink,
    ):
        factory.register(stage_type.factory_name, stage_type)
    return factory


__all__ = [
    "Decoder",
    "DiscardSink",
    "ENCODER_TIME_BASE",
    "FileSink",
    "FrameSink",
    "LiveFrame",
    "MatroskaMuxer",
    "NANOSECONDS_PER_SECOND",
    "RtspSource",
    "VideoConvert",
    "VideoEncoder",
    "convert_frame",
    "default_factory",
    "redact_uri",
    "to_nanoseconds",
]
