"""FastAPI application exposing the stream supervisor."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, TypeVar

from fastapi import FastAPI, HTTPException, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .config import DEFAULT_CONFIG_PATH, MAX_STREAMS, ConfigStore
from .event_log import EventLog
from .graph import GraphError, StageFactory
from .imaging import encode_frame_to_jpeg
from .recording import RecordingError
from .supervisor import SessionSupervisor, UnknownStreamError
from .version import APP_VERSION


T = TypeVar("T")


class StartPayload(BaseModel):
    uri: str | None = None


class UriPayload(BaseModel):
    uri: str = Field(min_length=1)


class RecordingPayload(BaseModel):
    active: bool


class LiveViewPayload(BaseModel):
    enabled: bool


class CameraConfigPayload(BaseModel):
    name: str | None = Field(default=None, max_length=128)
    uri: str | None = None
    transport: str | None = None
    latency_ms: int | None = None
    live: dict[str, Any] | None = None
    motion: dict[str, Any] | None = None
    recording: dict[str, Any] | None = None


def create_app(
    config_path: Path | str = DEFAULT_CONFIG_PATH,
    *,
    supervisor: SessionSupervisor | None = None,
    stage_factory: StageFactory | None = None,
    poll_interval: float = 1.0,
) -> FastAPI:
    app = FastAPI(title="Mosaic NVR", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_store = ConfigStore(Path(config_path))
    if supervisor is None:
        settings = config_store.get_settings()
        event_log = EventLog(settings.event_log_path, max_entries=settings.event_log_size)
        supervisor = SessionSupervisor(settings, event_log=event_log, factory=stage_factory)
    nvr = supervisor
    poll_task: asyncio.Task | None = None

    app.state.supervisor = nvr
    app.state.config_store = config_store

    async def _call(func: Callable[..., T], *args: Any) -> T:
        try:
            return await run_in_threadpool(func, *args)
        except UnknownStreamError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except (GraphError, RecordingError) as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    async def _poll_loop() -> None:  # pragma: no cover - timing dependent
        while True:
            await asyncio.sleep(poll_interval)
            try:
                await run_in_threadpool(nvr.poll)
            except Exception:
                logger.exception("Supervisor housekeeping failed")

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        nonlocal poll_task
        nvr.event_log.record("info", "startup", "Mosaic NVR starting up.")
        await run_in_threadpool(nvr.start_all)
        if poll_interval > 0:
            poll_task = asyncio.create_task(_poll_loop())

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        nonlocal poll_task
        if poll_task is not None:
            poll_task.cancel()
            try:
                await poll_task
            except asyncio.CancelledError:
                pass
            poll_task = None
        await run_in_threadpool(nvr.close)
        nvr.event_log.record("info", "shutdown", "Mosaic NVR shut down.")

    @app.get("/api/streams")
    async def list_streams() -> dict[str, object]:
        streams = await run_in_threadpool(nvr.statuses)
        return {"streams": streams, "max_streams": MAX_STREAMS}

    @app.get("/api/streams/{index}")
    async def get_stream(index: int) -> dict[str, object]:
        return await _call(nvr.status, index)

    @app.post("/api/streams/{index}/start")
    async def start_stream(index: int, payload: StartPayload | None = None) -> dict[str, object]:
        uri = payload.uri if payload is not None else None
        return await _call(nvr.start, index, uri)

    @app.post("/api/streams/{index}/stop")
    async def stop_stream(index: int) -> dict[str, object]:
        return await _call(nvr.stop, index)

    @app.post("/api/streams/{index}/uri")
    async def change_stream_uri(index: int, payload: UriPayload) -> dict[str, object]:
        return await _call(nvr.restart, index, payload.uri.strip())

    @app.post("/api/streams/{index}/recording")
    async def set_recording(index: int, payload: RecordingPayload) -> dict[str, object]:
        return await _call(nvr.set_recording_active, index, payload.active)

    @app.post("/api/streams/{index}/live")
    async def set_live_view(index: int, payload: LiveViewPayload) -> dict[str, object]:
        return await _call(nvr.set_live_view_enabled, index, payload.enabled)

    @app.put("/api/streams/{index}/config")
    async def update_stream_config(index: int, payload: CameraConfigPayload) -> dict[str, object]:
        data = payload.model_dump(exclude_none=True)
        if not data:
            raise HTTPException(status_code=400, detail="No camera settings provided")
        camera = await _call(lambda: config_store.set_camera(data, index=index))
        restarted = await _call(nvr.update_camera, camera)
        status = await _call(nvr.status, index)
        return {"camera": camera.to_dict(), "restarted": restarted, "status": status}

    @app.get("/api/streams/{index}/snapshot")
    async def stream_snapshot(index: int) -> Response:
        frame = await _call(nvr.latest_frame, index)
        if frame is None:
            raise HTTPException(status_code=404, detail="No frame available")
        try:
            payload = await run_in_threadpool(encode_frame_to_jpeg, frame.data)
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Snapshot encoding failed")
            raise HTTPException(status_code=500, detail="Failed to encode snapshot") from exc
        response = Response(content=payload, media_type="image/jpeg")
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        return response

    @app.get("/api/events")
    async def get_events(
        limit: int = 100, stream: int | None = None, severity: str | None = None
    ) -> dict[str, object]:
        entries = await run_in_threadpool(
            nvr.event_log.tail, limit, stream=stream, severity=severity
        )
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    return app


__all__ = ["create_app"]
