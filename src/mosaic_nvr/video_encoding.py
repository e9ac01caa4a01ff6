"""Recording encoder discovery helpers."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterator

try:  # pragma: no cover - dependency availability varies
    import av  # type: ignore
except ImportError:  # pragma: no cover - dependency availability varies
    av = None  # type: ignore[assignment]


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncoderBackend:
    """Represents a concrete encoder implementation for one codec family."""

    key: str
    codec: str
    family: str
    label: str
    hardware: bool = False

    def codec_options(self) -> dict[str, str]:
        if self.codec in {"libx264", "libx265"}:
            return {"preset": "ultrafast", "tune": "zerolatency"}
        if self.codec.endswith("_nvenc"):
            return {"preset": "p1", "tune": "ll", "zerolatency": "1"}
        return {}


_ENCODER_BACKENDS: tuple[EncoderBackend, ...] = (
    EncoderBackend("libx264", "libx264", "h264", "libx264 (software)"),
    EncoderBackend("v4l2m2m", "h264_v4l2m2m", "h264", "V4L2 M2M H.264 (hardware)", hardware=True),
    EncoderBackend("nvenc", "h264_nvenc", "h264", "NVENC H.264 (NVIDIA hardware)", hardware=True),
    EncoderBackend("libx265", "libx265", "h265", "libx265 (software)"),
    EncoderBackend("v4l2m2m", "hevc_v4l2m2m", "h265", "V4L2 M2M H.265 (hardware)", hardware=True),
    EncoderBackend("nvenc", "hevc_nvenc", "h265", "NVENC H.265 (NVIDIA hardware)", hardware=True),
)

_ENCODER_ALIASES = {
    "auto": "auto",
    "default": "auto",
    "hardware": "hardware",
    "software": "software",
    "x264": "libx264",
    "x265": "libx265",
}


def list_encoder_backends(family: str | None = None) -> tuple[EncoderBackend, ...]:
    if family is None:
        return _ENCODER_BACKENDS
    return tuple(backend for backend in _ENCODER_BACKENDS if backend.family == family)


def normalise_encoder_choice(choice: str | None) -> str:
    """Normalise a user-provided encoder choice string."""

    if not choice:
        return "auto"
    key = choice.strip().lower()
    if not key:
        return "auto"
    return _ENCODER_ALIASES.get(key, key)


def encoder_choices() -> frozenset[str]:
    """Return every normalised encoder preference that names something real."""

    choices = {"auto", "hardware", "software"}
    for backend in _ENCODER_BACKENDS:
        choices.update((backend.key, backend.codec))
    return frozenset(choices)


def _iter_candidate_backends(family: str, preference: str) -> Iterator[EncoderBackend]:
    backends = list_encoder_backends(family)
    if preference == "hardware":
        preferred = [backend for backend in backends if backend.hardware]
    elif preference == "software":
        preferred = [backend for backend in backends if not backend.hardware]
    elif preference == "auto":
        preferred = []
    else:
        preferred = [
            backend for backend in backends if preference in {backend.key, backend.codec}
        ]
        if not preferred:
            logger.debug("Unknown %s encoder preference %r; falling back to auto", family, preference)
    yield from preferred
    for backend in backends:
        if backend not in preferred:
            yield backend


def _probe_backend(backend: EncoderBackend) -> bool:
    if av is None:  # pragma: no cover - dependency availability varies
        return False
    try:
        context = av.CodecContext.create(backend.codec, "w")
    except av.FFmpegError as exc:  # pragma: no cover - codec probing failure
        logger.debug("Codec %s unavailable: %s", backend.codec, exc)
        return False
    except Exception as exc:  # pragma: no cover - unknown codec names raise ValueError
        logger.debug("Failed to initialise codec %s: %s", backend.codec, exc)
        return False
    if not getattr(context, "is_encoder", True):
        logger.debug("Codec %s is not an encoder", backend.codec)
        return False
    return True


def select_encoder_backend(
    family: str,
    preference: str | None = None,
) -> tuple[EncoderBackend | None, tuple[str, ...]]:
    """Select an encoder for ``family`` ("h264" or "h265").

    Returns ``(backend, attempted_codecs)``; ``backend`` is ``None`` when no
    usable encoder was found.
    """

    normalised = normalise_encoder_choice(preference)
    attempted: list[str] = []
    for backend in _iter_candidate_backends(family, normalised):
        attempted.append(backend.codec)
        if _probe_backend(backend):
            logger.debug("Selected %s encoder %s", family, backend.codec)
            return backend, tuple(attempted)
    return None, tuple(attempted)


__all__ = [
    "EncoderBackend",
    "encoder_choices",
    "list_encoder_backends",
    "normalise_encoder_choice",
    "select_encoder_backend",
]
