"""Configuration management for Mosaic NVR."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Mapping, Sequence

from .video_encoding import encoder_choices, normalise_encoder_choice

MAX_STREAMS = 9
DEFAULT_CONNECT_TIMEOUT_S = 5.0
DEFAULT_RECORDINGS_DIR = Path(os.environ.get("MOSAIC_NVR_RECORDINGS_DIR", "recordings"))
DEFAULT_CONFIG_PATH = Path(os.environ.get("MOSAIC_NVR_CONFIG", "data/cameras.json"))

RTSP_TRANSPORTS = ("tcp", "udp")
RECORDING_CODECS = ("h264", "h265")


@dataclass(frozen=True, slots=True)
class Resolution:
    """Represents a frame size in pixels."""

    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Resolution dimensions must be positive integers")

    def as_tuple(self) -> tuple[int, int]:
        return (int(self.width), int(self.height))

    def key(self) -> str:
        return f"{self.width}x{self.height}"


RESOLUTION_PRESETS: dict[str, Resolution] = {
    "360p": Resolution(640, 360),
    "480p": Resolution(854, 480),
    "720p": Resolution(1280, 720),
    "1080p": Resolution(1920, 1080),
}

DEFAULT_LIVE_RESOLUTION = Resolution(1280, 720)
DEFAULT_RECORDING_RESOLUTION = Resolution(1280, 720)


@dataclass(frozen=True, slots=True)
class LiveSettings:
    """Frame size and rate delivered to the display collaborator."""

    resolution: Resolution | None = DEFAULT_LIVE_RESOLUTION
    fps: int = 15

    def __post_init__(self) -> None:
        if self.fps < 1 or self.fps > 60:
            raise ValueError("Live view fps must be between 1 and 60")

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolution": self.resolution.key() if self.resolution is not None else "source",
            "fps": int(self.fps),
        }


@dataclass(frozen=True, slots=True)
class MotionSettings:
    """Thresholds used by the motion detector hysteresis."""

    threshold_percent: float = 1.0
    pixel_threshold: int = 30
    start_frames: int = 10
    stop_frames: int = 40

    def __post_init__(self) -> None:
        try:
            threshold = float(self.threshold_percent)
        except (TypeError, ValueError) as exc:  # pragma: no cover - defensive branch
            raise ValueError("Motion threshold must be numeric") from exc
        if not math.isfinite(threshold) or threshold < 0 or threshold > 100:
            raise ValueError("Motion threshold must be between 0 and 100 percent")
        if self.pixel_threshold < 0 or self.pixel_threshold > 255:
            raise ValueError("Pixel threshold must be between 0 and 255")
        if self.start_frames < 1:
            raise ValueError("Motion start frames must be at least 1")
        if self.stop_frames < 1:
            raise ValueError("Motion stop frames must be at least 1")
        object.__setattr__(self, "threshold_percent", threshold)

    def to_dict(self) -> dict[str, Any]:
        return {
            "threshold_percent": float(self.threshold_percent),
            "pixel_threshold": int(self.pixel_threshold),
            "start_frames": int(self.start_frames),
            "stop_frames": int(self.stop_frames),
        }


@dataclass(frozen=True, slots=True)
class RecordingSettings:
    """Encoder, shaping and file handling options for the recording branch."""

    resolution: Resolution | None = DEFAULT_RECORDING_RESOLUTION
    bitrate_kbps: int = 1000
    codec: str = "h264"
    encoder: str = "auto"
    gop_size: int = 30
    fps: int = 25
    keep_every: int = 25
    compression: int = 10
    grace_frames: int = 20
    min_bytes: int = 5120
    segment_seconds: int = 0
    enabled: bool = False
    output_dir: Path | None = None

    def __post_init__(self) -> None:
        codec = str(self.codec).strip().lower()
        if codec not in RECORDING_CODECS:
            raise ValueError(f"Unsupported recording codec: {self.codec}")
        object.__setattr__(self, "codec", codec)
        encoder = normalise_encoder_choice(self.encoder)
        if encoder not in encoder_choices():
            raise ValueError(f"Unknown recording encoder: {self.encoder}")
        object.__setattr__(self, "encoder", encoder)
        if self.bitrate_kbps < 16 or self.bitrate_kbps > 100_000:
            raise ValueError("Recording bitrate must be between 16 and 100000 kbps")
        if self.gop_size < 1:
            raise ValueError("GOP size must be at least 1")
        if self.fps < 1 or self.fps > 120:
            raise ValueError("Recording fps must be between 1 and 120")
        if self.keep_every < 1:
            raise ValueError("Low rate keep ratio must be at least 1")
        if self.compression < 1:
            raise ValueError("Low rate compression must be at least 1")
        if self.grace_frames < 0:
            raise ValueError("Grace frames must not be negative")
        if self.min_bytes < 0:
            raise ValueError("Minimum recording size must not be negative")
        if self.segment_seconds < 0:
            raise ValueError("Segment length must not be negative")
        if self.output_dir is not None and not isinstance(self.output_dir, Path):
            object.__setattr__(self, "output_dir", Path(self.output_dir))

    @property
    def directory(self) -> Path:
        return self.output_dir if self.output_dir is not None else DEFAULT_RECORDINGS_DIR

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolution": self.resolution.key() if self.resolution is not None else "source",
            "bitrate_kbps": int(self.bitrate_kbps),
            "codec": self.codec,
            "encoder": self.encoder,
            "gop_size": int(self.gop_size),
            "fps": int(self.fps),
            "keep_every": int(self.keep_every),
            "compression": int(self.compression),
            "grace_frames": int(self.grace_frames),
            "min_bytes": int(self.min_bytes),
            "segment_seconds": int(self.segment_seconds),
            "enabled": bool(self.enabled),
            "output_dir": str(self.output_dir) if self.output_dir is not None else None,
        }


@dataclass(frozen=True, slots=True)
class CameraConfig:
    """Everything needed to run one camera stream."""

    index: int
    name: str = ""
    uri: str = ""
    transport: str = "tcp"
    latency_ms: int = 200
    live: LiveSettings = field(default_factory=LiveSettings)
    motion: MotionSettings = field(default_factory=MotionSettings)
    recording: RecordingSettings = field(default_factory=RecordingSettings)

    def __post_init__(self) -> None:
        if self.index < 0 or self.index >= MAX_STREAMS:
            raise ValueError(f"Camera index must be between 0 and {MAX_STREAMS - 1}")
        transport = str(self.transport).strip().lower()
        if transport not in RTSP_TRANSPORTS:
            raise ValueError(f"Unsupported RTSP transport: {self.transport}")
        object.__setattr__(self, "transport", transport)
        if self.latency_ms < 0:
            raise ValueError("Latency must not be negative")
        object.__setattr__(self, "name", str(self.name).strip())
        object.__setattr__(self, "uri", str(self.uri).strip())

    @property
    def display_name(self) -> str:
        return self.name or f"Camera {self.index + 1}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": int(self.index),
            "name": self.name,
            "uri": self.uri,
            "transport": self.transport,
            "latency_ms": int(self.latency_ms),
            "live": self.live.to_dict(),
            "motion": self.motion.to_dict(),
            "recording": self.recording.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class SupervisorSettings:
    """Top level configuration document."""

    cameras: tuple[CameraConfig, ...] = ()
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S
    auto_start: bool = False
    event_log_path: str | None = None
    event_log_size: int = 500

    def __post_init__(self) -> None:
        if not math.isfinite(self.connect_timeout_s) or self.connect_timeout_s <= 0:
            raise ValueError("Connection timeout must be a positive number of seconds")
        if self.event_log_size <= 0:
            raise ValueError("Event log size must be positive")
        seen: set[int] = set()
        for camera in self.cameras:
            if camera.index in seen:
                raise ValueError(f"Duplicate camera index {camera.index}")
            seen.add(camera.index)

    def camera(self, index: int) -> CameraConfig | None:
        for camera in self.cameras:
            if camera.index == index:
                return camera
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connect_timeout_s": float(self.connect_timeout_s),
            "auto_start": bool(self.auto_start),
            "event_log": {"path": self.event_log_path, "max_entries": int(self.event_log_size)},
            "cameras": [camera.to_dict() for camera in self.cameras],
        }


# ------------------------------ parse helpers ------------------------------
def _parse_resolution(value: Any, *, default: Resolution | None) -> Resolution | None:
    if value is None:
        return default
    if isinstance(value, Resolution):
        return Resolution(value.width, value.height)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        if text in {"source", "native"}:
            return None
        normalised = text.replace("×", "x")
        preset = RESOLUTION_PRESETS.get(normalised)
        if preset:
            return preset
        if "x" in normalised:
            width_text, height_text = normalised.split("x", 1)
            try:
                return Resolution(int(width_text.strip()), int(height_text.strip()))
            except ValueError as exc:
                raise ValueError("Resolution values must be integers") from exc
        raise ValueError(f"Unknown resolution preset: {value}")
    if isinstance(value, Mapping):
        width_raw = value.get("width")
        height_raw = value.get("height")
        if width_raw is None or height_raw is None:
            raise ValueError("Resolution mapping must include 'width' and 'height'")
        try:
            return Resolution(int(width_raw), int(height_raw))
        except (TypeError, ValueError) as exc:
            raise ValueError("Resolution width and height must be integers") from exc
    if isinstance(value, (Sequence, Iterable)):
        items = list(value)
        if len(items) != 2:
            raise ValueError("Resolution sequence must contain width and height")
        try:
            return Resolution(int(items[0]), int(items[1]))
        except (TypeError, ValueError) as exc:
            raise ValueError("Resolution width and height must be integers") from exc
    raise ValueError("Unsupported resolution value")


def _parse_int(value: Any, *, name: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _parse_float(value: Any, *, name: str, default: float) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(number):
        raise ValueError(f"{name} must be finite")
    return number


def _parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off", ""}:
            return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"'{key}' settings must be provided as a mapping")
    return value


def _parse_live_settings(value: Mapping[str, Any], *, default: LiveSettings) -> LiveSettings:
    resolution = _parse_resolution(value.get("resolution"), default=default.resolution)
    fps = _parse_int(value.get("fps"), name="Live view fps", default=default.fps)
    return LiveSettings(resolution=resolution, fps=fps)


def _parse_motion_settings(
    value: Mapping[str, Any], *, default: MotionSettings
) -> MotionSettings:
    return MotionSettings(
        threshold_percent=_parse_float(
            value.get("threshold_percent", value.get("threshold")),
            name="Motion threshold",
            default=default.threshold_percent,
        ),
        pixel_threshold=_parse_int(
            value.get("pixel_threshold"), name="Pixel threshold", default=default.pixel_threshold
        ),
        start_frames=_parse_int(
            value.get("start_frames"), name="Motion start frames", default=default.start_frames
        ),
        stop_frames=_parse_int(
            value.get("stop_frames"), name="Motion stop frames", default=default.stop_frames
        ),
    )


def _parse_recording_settings(
    value: Mapping[str, Any], *, default: RecordingSettings
) -> RecordingSettings:
    output_dir_raw = value.get("output_dir")
    if output_dir_raw is None:
        output_dir = default.output_dir
    elif isinstance(output_dir_raw, (str, Path)) and str(output_dir_raw).strip():
        output_dir = Path(str(output_dir_raw).strip())
    else:
        raise ValueError("Recording output directory must be a path")
    return RecordingSettings(
        resolution=_parse_resolution(value.get("resolution"), default=default.resolution),
        bitrate_kbps=_parse_int(
            value.get("bitrate_kbps", value.get("bitrate")),
            name="Recording bitrate",
            default=default.bitrate_kbps,
        ),
        codec=str(value.get("codec", default.codec)),
        encoder=str(value.get("encoder") or default.encoder),
        gop_size=_parse_int(value.get("gop_size"), name="GOP size", default=default.gop_size),
        fps=_parse_int(value.get("fps"), name="Recording fps", default=default.fps),
        keep_every=_parse_int(
            value.get("keep_every"), name="Low rate keep ratio", default=default.keep_every
        ),
        compression=_parse_int(
            value.get("compression"), name="Low rate compression", default=default.compression
        ),
        grace_frames=_parse_int(
            value.get("grace_frames"), name="Grace frames", default=default.grace_frames
        ),
        min_bytes=_parse_int(
            value.get("min_bytes"), name="Minimum recording size", default=default.min_bytes
        ),
        segment_seconds=_parse_int(
            value.get("segment_seconds"), name="Segment length", default=default.segment_seconds
        ),
        enabled=_parse_bool(value.get("enabled"), default=default.enabled),
        output_dir=output_dir,
    )


def parse_camera_config(
    value: Mapping[str, Any] | CameraConfig,
    *,
    index: int | None = None,
    default: CameraConfig | None = None,
) -> CameraConfig:
    """Build a :class:`CameraConfig` from a JSON style mapping.

    Missing keys fall back to ``default`` (or the built-in defaults), so the
    same helper serves both full documents and partial updates.
    """

    if isinstance(value, CameraConfig):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Camera configuration must be provided as a mapping")
    if index is None:
        index = _parse_int(
            value.get("index"),
            name="Camera index",
            default=default.index if default is not None else 0,
        )
    base = default if default is not None else CameraConfig(index=index)
    recording_payload = dict(_section(value, "recording"))
    if "output_dir" not in recording_payload and value.get("output_dir") is not None:
        recording_payload["output_dir"] = value.get("output_dir")
    return CameraConfig(
        index=index,
        name=str(value.get("name", base.name)),
        uri=str(value.get("uri", value.get("rtsp_url", base.uri))),
        transport=str(value.get("transport", base.transport)),
        latency_ms=_parse_int(value.get("latency_ms"), name="Latency", default=base.latency_ms),
        live=_parse_live_settings(_section(value, "live"), default=base.live),
        motion=_parse_motion_settings(_section(value, "motion"), default=base.motion),
        recording=_parse_recording_settings(recording_payload, default=base.recording),
    )


def parse_settings(payload: Mapping[str, Any]) -> SupervisorSettings:
    if not isinstance(payload, Mapping):
        raise ValueError("Configuration file must contain a JSON object")
    cameras_raw = payload.get("cameras", [])
    if not isinstance(cameras_raw, Sequence) or isinstance(cameras_raw, (str, bytes)):
        raise ValueError("'cameras' must be a list")
    if len(cameras_raw) > MAX_STREAMS:
        raise ValueError(f"At most {MAX_STREAMS} cameras are supported")
    cameras = []
    for position, entry in enumerate(cameras_raw):
        if not isinstance(entry, Mapping):
            raise ValueError("Each camera entry must be a mapping")
        index = _parse_int(entry.get("index"), name="Camera index", default=position)
        cameras.append(parse_camera_config(entry, index=index))
    log_section = _section(payload, "event_log")
    log_path = log_section.get("path")
    return SupervisorSettings(
        cameras=tuple(cameras),
        connect_timeout_s=_parse_float(
            payload.get("connect_timeout_s"),
            name="Connection timeout",
            default=DEFAULT_CONNECT_TIMEOUT_S,
        ),
        auto_start=_parse_bool(payload.get("auto_start"), default=False),
        event_log_path=str(log_path) if log_path else None,
        event_log_size=_parse_int(
            log_section.get("max_entries"), name="Event log size", default=500
        ),
    )


def load_settings(path: Path | str) -> SupervisorSettings:
    """Read settings from ``path``; a missing file yields the defaults."""

    config_path = Path(path)
    if not config_path.exists():
        return SupervisorSettings()
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid configuration JSON in {config_path}") from exc
    return parse_settings(payload)


class ConfigStore:
    """Stores the camera configuration on disk with thread-safety."""

    def __init__(self, config_path: Path | str = DEFAULT_CONFIG_PATH) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._settings = load_settings(self._path)

    @property
    def path(self) -> Path:
        return self._path

    def get_settings(self) -> SupervisorSettings:
        with self._lock:
            return self._settings

    def get_camera(self, index: int) -> CameraConfig | None:
        with self._lock:
            return self._settings.camera(index)

    def set_camera(self, data: Mapping[str, Any] | CameraConfig, *, index: int) -> CameraConfig:
        with self._lock:
            current = self._settings.camera(index)
            camera = parse_camera_config(data, index=index, default=current)
            cameras: Dict[int, CameraConfig] = {item.index: item for item in self._settings.cameras}
            cameras[index] = camera
            self._settings = replace(
                self._settings, cameras=tuple(cameras[key] for key in sorted(cameras))
            )
            self._save()
        return camera

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._settings.to_dict(), indent=2), encoding="utf-8")


__all__ = [
    "CameraConfig",
    "ConfigStore",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_CONNECT_TIMEOUT_S",
    "DEFAULT_RECORDINGS_DIR",
    "LiveSettings",
    "MAX_STREAMS",
    "MotionSettings",
    "RESOLUTION_PRESETS",
    "RecordingSettings",
    "Resolution",
    "SupervisorSettings",
    "load_settings",
    "parse_camera_config",
    "parse_settings",
]
