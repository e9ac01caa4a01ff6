"""Frame helpers shared by the sinks, the encoder and the snapshot endpoint."""
from __future__ import annotations

import inspect

import numpy as np


try:  # pragma: no cover - dependency availability varies by platform
    import simplejpeg
except ImportError as exc:  # pragma: no cover - dependency availability varies
    simplejpeg = None
    _SIMPLEJPEG_IMPORT_ERROR = exc
    _JPEG_OPTIONS: frozenset[str] = frozenset()
else:  # pragma: no cover - dependency availability varies
    _SIMPLEJPEG_IMPORT_ERROR = None
    try:  # pragma: no cover - C-extension signature may be opaque
        _JPEG_OPTIONS = frozenset(inspect.signature(simplejpeg.encode_jpeg).parameters)
    except (TypeError, ValueError):  # pragma: no cover - C-extension signature unsupported
        _JPEG_OPTIONS = frozenset()


def prepare_rgb_frame(frame: np.ndarray | list, *, even: bool = False) -> np.ndarray:
    """Return ``frame`` as a contiguous ``uint8`` array with three channels.

    Grey frames are expanded and an alpha channel is dropped. With ``even``
    the last row and column are cropped as needed so both dimensions suit
    4:2:0 encoders.
    """

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.stack((array,) * 3, axis=-1)
    elif array.ndim != 3:
        raise ValueError("Expected a 2D or 3D video frame")
    elif array.shape[2] == 1:
        array = np.concatenate((array,) * 3, axis=2)
    elif array.shape[2] > 3:
        array = array[:, :, :3]
    if even:
        height, width = array.shape[:2]
        array = array[: height - height % 2, : width - width % 2]
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    return np.ascontiguousarray(array)


def looks_blank(frame: np.ndarray, *, probe_bytes: int = 1000, ratio: float = 0.5) -> bool:
    """Heuristic for corrupted decoder output: mostly zero leading bytes."""

    head = np.asarray(frame).reshape(-1)[:probe_bytes]
    if head.size == 0:
        return True
    return int(np.count_nonzero(head == 0)) > head.size * ratio


def encode_frame_to_jpeg(frame: np.ndarray | list, *, quality: int = 85) -> bytes:
    if simplejpeg is None:  # pragma: no cover - dependency availability varies
        raise RuntimeError("simplejpeg is required for snapshots") from _SIMPLEJPEG_IMPORT_ERROR
    if not 1 <= quality <= 100:
        raise ValueError("JPEG quality must be between 1 and 100")
    options: dict[str, object] = {"quality": int(quality), "colorspace": "RGB"}
    if "fastdct" in _JPEG_OPTIONS:
        options["fastdct"] = True
    return simplejpeg.encode_jpeg(prepare_rgb_frame(frame), **options)


__all__ = ["encode_frame_to_jpeg", "looks_blank", "prepare_rgb_frame"]
