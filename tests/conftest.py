from __future__ import annotations

import time
from typing import Callable

import numpy as np
import pytest

from mosaic_nvr.graph import (
    Buffer,
    Caps,
    Event,
    EventType,
    FlowReturn,
    Pad,
    PadDirection,
    Stage,
    StageFactory,
)
from mosaic_nvr.stages import default_factory


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def frame(value: int = 128, *, width: int = 64, height: int = 48) -> np.ndarray:
    return np.full((height, width, 3), value, dtype=np.uint8)


class PushSource(Stage):
    """Source with a static ``src`` pad that tests push into directly."""

    factory_name = "pushsrc"

    def __init__(self, name: str | None = None) -> None:
        super().__init__(name)
        self.add_pad("src", PadDirection.SRC)

    def push(self, data, pts: int | None = None) -> FlowReturn:
        return self.src_pad.push(Buffer(data, pts=pts))


class FakeRtspSource(Stage):
    """Exposes a video (and optionally an audio) pad once started."""

    factory_name = "rtspsrc"
    with_audio = True
    fail_on_start: str | None = None

    def __init__(
        self,
        name: str | None = None,
        *,
        location: str = "",
        transport: str = "tcp",
        latency_ms: int = 200,
        connect_timeout: float = 5.0,
    ) -> None:
        super().__init__(name)
        self.location = location
        self.transport = transport
        self.connect_timeout = connect_timeout
        self.video_pad: Pad | None = None

    def start(self) -> None:
        if self.fail_on_start:
            raise RuntimeError(self.fail_on_start)
        if self.video_pad is None:
            if self.with_audio:
                audio = self.add_pad("src_1", PadDirection.SRC)
                audio.caps = Caps("audio/aac", {"codec": "aac"})
                self.expose_pad(audio)
            video = self.add_pad("src_0", PadDirection.SRC)
            video.caps = Caps("video/h264", {"codec": "h264", "width": 64, "height": 48})
            self.video_pad = video
            self.expose_pad(video)
            # A second announcement of the same pad must be harmless.
            self.expose_pad(video)

    def emit(self, data, pts: int | None = None) -> FlowReturn:
        assert self.video_pad is not None
        return self.video_pad.push(Buffer(data, pts=pts))

    def fail(self, text: str = "connection lost") -> None:
        self.post_error(text, debug="socket closed")


class FakeDecoder(Stage):
    """Passes numpy frames through, exposing ``src`` on the first frame."""

    factory_name = "decoder"

    def __init__(self, name: str | None = None) -> None:
        super().__init__(name)
        self.add_pad("sink", PadDirection.SINK)

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        src = self.src_pad
        if src is None:
            height, width = buffer.data.shape[:2]
            src = self.add_pad("src", PadDirection.SRC)
            src.caps = Caps("video/x-raw", {"width": width, "height": height})
            self.expose_pad(src)
        return src.push(buffer)


class FakeEncoder(Stage):
    """Turns every frame into ``packet_size`` bytes and logs what it saw."""

    factory_name = "encoder"
    packet_size = 1024
    fail_on_create: str | None = None

    def __init__(self, name: str | None = None, **properties) -> None:
        if self.fail_on_create:
            raise RuntimeError(self.fail_on_create)
        super().__init__(name)
        self.properties = properties
        self.log: list[tuple[str, int | None]] = []
        self.add_pad("sink", PadDirection.SINK)
        self.add_pad("src", PadDirection.SRC)

    @property
    def frame_pts(self) -> list[int | None]:
        return [pts for kind, pts in self.log if kind == "frame"]

    def handle_event(self, pad: Pad, event: Event) -> bool:
        if event.type is EventType.FORCE_KEY_UNIT:
            self.log.append(("keyframe", None))
            return True
        if event.type is EventType.EOS:
            self.log.append(("eos", None))
        return super().handle_event(pad, event)

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        self.log.append(("frame", buffer.pts))
        return self.src_pad.push(Buffer(b"\x01" * self.packet_size, pts=buffer.pts))


class FakeMuxer(Stage):
    factory_name = "muxer"

    def __init__(self, name: str | None = None) -> None:
        super().__init__(name)
        self.add_pad("sink", PadDirection.SINK)
        self.add_pad("src", PadDirection.SRC)

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        return self.src_pad.push(buffer)


@pytest.fixture
def factory() -> StageFactory:
    """Built-in stages with network, codec and container stages replaced."""

    stage_factory = default_factory().copy()
    for stage_type in (FakeRtspSource, FakeDecoder, FakeEncoder, FakeMuxer, PushSource):
        stage_factory.register(stage_type.factory_name, stage_type)
    return stage_factory
