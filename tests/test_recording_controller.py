from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

from conftest import FakeEncoder, frame
from mosaic_nvr.config import CameraConfig, RecordingSettings
from mosaic_nvr.graph import EventType, Graph, StageCreationError, StageState
from mosaic_nvr.motion import MotionDetector, MotionMode
from mosaic_nvr.recording import (
    RecordingController,
    RecordingState,
    build_recording_path,
    sanitize_camera_name,
)
from mosaic_nvr.shaper import FrameRateShaper


FRAME_NS = 40_000_000


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


def _setup(tmp_path: Path, factory, **recording_options) -> SimpleNamespace:
    settings = RecordingSettings(resolution=None, output_dir=tmp_path, **recording_options)
    camera = CameraConfig(index=0, name="Front Door", recording=settings)
    graph = Graph("test")
    source = factory.make("pushsrc", "source")
    valve = factory.make("valve", "valve", drop=True)
    convert = factory.make("videoconvert", "record-convert")
    graph.add(source, valve, convert)
    graph.link_many(source, valve, convert)
    shaper = FrameRateShaper(keep_every=settings.keep_every, compression=settings.compression)
    motion = MotionDetector()
    clock = _Clock(datetime(2024, 5, 1, 12, 30, 0))
    controller = RecordingController(
        graph=graph,
        factory=factory,
        upstream=convert,
        valve=valve,
        shaper=shaper,
        camera=camera,
        motion=motion,
        clock=clock,
    )
    controller.prepare()
    graph.set_state(StageState.PLAYING)
    return SimpleNamespace(
        graph=graph,
        source=source,
        valve=valve,
        shaper=shaper,
        motion=motion,
        clock=clock,
        controller=controller,
        camera=camera,
    )


def _push_frames(env: SimpleNamespace, count: int, *, start: int = 0) -> None:
    for position in range(start, start + count):
        env.source.push(frame(), pts=1_000_000_000 + position * FRAME_NS)


def _encoder(env: SimpleNamespace) -> FakeEncoder:
    encoder = env.controller.generation_stages[0]
    assert isinstance(encoder, FakeEncoder)
    return encoder


def test_sanitize_camera_name_replaces_unsafe_characters() -> None:
    assert sanitize_camera_name("Front Door/2", 0) == "Front_Door_2"
    assert sanitize_camera_name("yard-cam_1", 3) == "yard-cam_1"
    assert sanitize_camera_name("   ", 4) == "Camera_5"


def test_build_recording_path_avoids_collisions(tmp_path: Path) -> None:
    started = datetime(2024, 5, 1, 8, 5, 9)
    first = build_recording_path(tmp_path, "Garage", 0, started)
    assert first.name == "Garage_2024-05-01_08-05-09.mkv"
    first.write_bytes(b"")
    second = build_recording_path(tmp_path, "Garage", 0, started)
    assert second.name == "Garage_2024-05-01_08-05-09_1.mkv"


def test_standby_generation_discards_while_closed(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory)
    assert env.controller.state is RecordingState.CLOSED
    assert env.controller.generation == 1
    sink = env.controller.generation_stages[2]
    assert sink.factory_name == "discardsink"

    _push_frames(env, 5)

    assert env.valve.dropped == 5
    assert _encoder(env).frame_pts == []
    assert list(tmp_path.iterdir()) == []


def test_open_requests_keyframe_after_gate_opens(tmp_path: Path, factory, monkeypatch) -> None:
    env = _setup(tmp_path, factory)
    sent: list[tuple[EventType, bool]] = []
    original = env.valve.send_downstream

    def _spy(event):
        sent.append((event.type, env.valve.drop))
        return original(event)

    monkeypatch.setattr(env.valve, "send_downstream", _spy)

    session = env.controller.set_active(True)

    assert session is not None
    assert session.path == tmp_path / "Front_Door_2024-05-01_12-30-00.mkv"
    assert env.controller.state is RecordingState.OPEN
    assert sent == [(EventType.FORCE_KEY_UNIT, False)]
    _push_frames(env, 3)
    encoder = _encoder(env)
    assert encoder.log[0] == ("keyframe", None)
    assert encoder.frame_pts[0] == 0
    assert encoder.frame_pts == sorted(encoder.frame_pts)


def test_each_recording_builds_a_new_generation(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory)

    first = env.controller.set_active(True)
    first_stages = env.controller.generation_stages
    env.controller.set_active(False)
    env.clock.now += timedelta(seconds=5)
    second = env.controller.set_active(True)
    second_stages = env.controller.generation_stages

    assert first is not None and second is not None
    assert second.generation > first.generation
    assert not set(map(id, first_stages)) & set(map(id, second_stages))
    for stage in first_stages:
        assert stage.graph is None
        assert env.graph.get(stage.name) is None
    assert second.path != first.path


def test_small_recordings_are_deleted(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory, min_bytes=5120)
    session = env.controller.set_active(True)
    _push_frames(env, 3)

    finished = env.controller.set_active(False)

    assert finished is session
    assert finished.size_bytes == 3 * FakeEncoder.packet_size
    assert finished.discarded is True
    assert not finished.path.exists()
    assert env.controller.history() == [finished]


def test_large_recordings_are_kept(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory, min_bytes=5120)
    env.controller.set_active(True)
    _push_frames(env, 10)

    finished = env.controller.set_active(False)

    assert finished is not None
    assert finished.discarded is False
    assert finished.path.exists()
    assert finished.path.stat().st_size == 10 * FakeEncoder.packet_size
    assert finished.ended_at is not None


def test_closing_without_frames_still_finalizes(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory)
    env.controller.set_active(True)
    encoder = _encoder(env)

    finished = env.controller.set_active(False)

    assert finished is not None
    assert finished.size_bytes == 0
    assert finished.discarded is True
    assert ("eos", None) in encoder.log
    assert env.valve.drop is True
    assert env.controller.state is RecordingState.CLOSED
    assert env.controller.generation_stages[2].factory_name == "discardsink"


def test_set_active_is_idempotent(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory)
    assert env.controller.set_active(False) is None
    assert env.controller.set_active(True) is not None
    generation = env.controller.generation
    assert env.controller.set_active(True) is None
    assert env.controller.generation == generation


def test_grace_period_keeps_first_frames_then_thins(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory, grace_frames=20, keep_every=25)
    env.controller.set_active(True)

    _push_frames(env, 21)
    assert len(_encoder(env).frame_pts) == 20

    _push_frames(env, 24, start=21)
    assert len(_encoder(env).frame_pts) == 21


def test_motion_mode_change_only_touches_shaper(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory)

    env.controller.on_motion_mode_changed(MotionMode.NORMAL_RATE)

    assert env.shaper.mode is MotionMode.NORMAL_RATE
    assert env.controller.state is RecordingState.CLOSED
    assert env.valve.drop is True


def test_opening_resets_shaper_to_low_rate(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory)
    env.shaper.set_mode(MotionMode.NORMAL_RATE)

    env.controller.set_active(True)

    assert env.shaper.mode is MotionMode.LOW_RATE
    assert env.shaper.state.drop_counter == -env.camera.recording.grace_frames


def test_sink_creation_failure_leaves_controller_closed(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory)

    def _broken_sink(name=None, **properties):
        raise OSError("read-only file system")

    original = factory.copy()
    factory.register("filesink", _broken_sink)

    with pytest.raises(StageCreationError):
        env.controller.set_active(True)

    assert env.controller.state is RecordingState.CLOSED
    assert env.controller.current is None
    assert env.valve.drop is True
    assert env.controller.history() == []

    factory.register("filesink", lambda name=None, **props: original.make("filesink", name, **props))
    session = env.controller.set_active(True)
    assert session is not None
    assert env.controller.state is RecordingState.OPEN


def test_poll_rotates_after_segment_length(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory, segment_seconds=60)
    first = env.controller.set_active(True)

    env.clock.now += timedelta(seconds=30)
    assert env.controller.poll() is None

    env.clock.now += timedelta(seconds=31)
    finished = env.controller.poll()

    assert finished is first
    current = env.controller.current
    assert current is not None
    assert current.generation > first.generation
    assert current.path.name == "Front_Door_2024-05-01_12-31-01.mkv"
    assert env.controller.state is RecordingState.OPEN


def test_update_camera_applies_to_next_recording(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory)
    recording = replace(env.camera.recording, keep_every=5, bitrate_kbps=2000, encoder="x265")
    updated = replace(env.camera, recording=recording)

    env.controller.update_camera(updated)

    assert env.shaper.keep_every == 5
    assert _encoder(env).properties["bitrate_kbps"] == 2000
    assert _encoder(env).properties["preference"] == "libx265"


def test_update_camera_during_recording_waits_for_next_file(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory, keep_every=25, compression=10)
    env.controller.set_active(True)
    updated = replace(env.camera, recording=replace(env.camera.recording, keep_every=5, compression=4))

    env.controller.update_camera(updated)

    assert env.shaper.keep_every == 25
    assert env.shaper.compression == 10

    env.controller.rotate()

    assert env.shaper.keep_every == 5
    assert env.shaper.compression == 4


def test_shutdown_closes_recording_and_removes_stages(tmp_path: Path, factory) -> None:
    env = _setup(tmp_path, factory)
    env.controller.set_active(True)
    stages = env.controller.generation_stages

    finished = env.controller.shutdown()

    assert finished is not None
    assert env.controller.generation_stages == ()
    assert all(stage.graph is None for stage in stages)
