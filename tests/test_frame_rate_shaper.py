from __future__ import annotations

import pytest

from mosaic_nvr.graph import Buffer, ProbeReturn
from mosaic_nvr.motion import MotionMode
from mosaic_nvr.shaper import FrameRateShaper


FRAME_NS = 40_000_000


def _buffers(count: int, *, start: int = 5_000_000_000) -> list[Buffer]:
    return [Buffer(b"", pts=start + position * FRAME_NS, duration=FRAME_NS) for position in range(count)]


def _kept(shaper: FrameRateShaper, buffers: list[Buffer]) -> list[Buffer]:
    return [buffer for buffer in buffers if shaper.process(buffer) is not None]


def test_first_timestamp_after_reset_is_zero() -> None:
    shaper = FrameRateShaper()
    shaper.reset(grace=20)

    kept = _kept(shaper, _buffers(3))

    assert kept[0].pts == 0
    assert all(buffer.duration is None for buffer in kept)


def test_low_rate_compresses_time() -> None:
    shaper = FrameRateShaper(compression=10)
    shaper.reset(grace=20)

    kept = _kept(shaper, _buffers(3))

    assert [buffer.pts for buffer in kept] == [0, 4_000_000, 8_000_000]


def test_normal_rate_keeps_everything_in_real_time() -> None:
    shaper = FrameRateShaper(mode=MotionMode.NORMAL_RATE)

    kept = _kept(shaper, _buffers(30))

    assert len(kept) == 30
    assert [buffer.pts for buffer in kept[:3]] == [0, FRAME_NS, 2 * FRAME_NS]


def test_low_rate_keeps_one_in_twenty_five() -> None:
    shaper = FrameRateShaper(keep_every=25, compression=10)
    shaper.reset(grace=0)

    kept = _kept(shaper, _buffers(100))

    assert len(kept) == 4
    # 25 frames of 40ms between kept buffers, shown ten times faster.
    assert [buffer.pts for buffer in kept] == [0, 100_000_000, 200_000_000, 300_000_000]
    assert shaper.state.dropped == 96


def test_grace_keeps_first_twenty_and_drops_the_next() -> None:
    shaper = FrameRateShaper(keep_every=25)
    shaper.reset(grace=20)
    buffers = _buffers(21)

    decisions = [shaper.process(buffer) is not None for buffer in buffers]

    assert decisions == [True] * 20 + [False]


def test_switching_to_normal_rate_resets_drop_counter() -> None:
    shaper = FrameRateShaper(keep_every=25)
    shaper.reset(grace=0)
    _kept(shaper, _buffers(10))
    assert shaper.state.drop_counter == 10

    assert shaper.set_mode(MotionMode.NORMAL_RATE) is True
    assert shaper.set_mode(MotionMode.NORMAL_RATE) is False
    shaper.process(Buffer(b"", pts=1))

    assert shaper.state.drop_counter == 0


def test_backwards_timestamp_rebaselines_without_going_back() -> None:
    shaper = FrameRateShaper(mode=MotionMode.NORMAL_RATE)
    pts_values = [10 * FRAME_NS, 11 * FRAME_NS, 3 * FRAME_NS, 4 * FRAME_NS]

    outputs = [shaper.process(Buffer(b"", pts=pts)).pts for pts in pts_values]

    assert outputs == [0, FRAME_NS, FRAME_NS, 2 * FRAME_NS]


def test_output_timestamps_never_decrease() -> None:
    shaper = FrameRateShaper(mode=MotionMode.NORMAL_RATE)
    pts_values = [100, 250, 90, 400, 50, 60, 1000]

    outputs = [shaper.process(Buffer(b"", pts=pts)).pts for pts in pts_values]

    assert outputs == sorted(outputs)
    assert outputs[0] == 0


def test_missing_timestamp_passes_unchanged() -> None:
    shaper = FrameRateShaper(mode=MotionMode.NORMAL_RATE)
    buffer = Buffer(b"", pts=None, duration=FRAME_NS)

    assert shaper.process(buffer) is buffer
    assert buffer.pts is None
    assert buffer.duration == FRAME_NS


def test_reset_restarts_timeline() -> None:
    shaper = FrameRateShaper(mode=MotionMode.NORMAL_RATE)
    _kept(shaper, _buffers(5))

    shaper.reset(grace=20, mode=MotionMode.LOW_RATE)
    kept = _kept(shaper, _buffers(2, start=9_000_000_000))

    assert shaper.mode is MotionMode.LOW_RATE
    assert kept[0].pts == 0


def test_probe_reports_drop() -> None:
    shaper = FrameRateShaper(keep_every=2)
    shaper.reset(grace=0)

    assert shaper.probe(None, Buffer(b"", pts=0)) is ProbeReturn.DROP
    assert shaper.probe(None, Buffer(b"", pts=FRAME_NS)) is ProbeReturn.OK


def test_invalid_configuration_is_rejected() -> None:
    with pytest.raises(ValueError):
        FrameRateShaper(keep_every=0)
    with pytest.raises(ValueError):
        FrameRateShaper(compression=0)
    with pytest.raises(ValueError):
        FrameRateShaper().reset(grace=-1)
