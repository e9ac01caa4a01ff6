"""Threaded dataflow graph used to wire media stages together.

Stages exchange :class:`Buffer` objects through linked :class:`Pad` pairs.
Delivery is synchronous: pushing on a source pad runs the peer stage's
``chain`` on the calling thread. :class:`Queue` stages introduce worker thread
boundaries, so a session's source, network queue and branch queues each
stream on their own thread while control calls stay on the caller's thread.
Runtime problems are reported on the graph :class:`Bus` rather than raised
into the streaming threads.
"""
from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Deque, Iterator, Mapping


logger = logging.getLogger(__name__)


class GraphError(RuntimeError):
    """Base error for graph construction and control failures."""


class StageCreationError(GraphError):
    """Raised when a required stage cannot be instantiated."""


class LinkError(GraphError):
    """Raised when two pads cannot be connected."""


class StreamRuntimeError(GraphError):
    """Error reported asynchronously by a running stage."""

    def __init__(self, message: str, *, source: str | None = None, debug: str | None = None) -> None:
        super().__init__(message)
        self.source = source
        self.debug = debug


class FlowReturn(Enum):
    OK = "ok"
    NOT_LINKED = "not-linked"
    FLUSHING = "flushing"
    ERROR = "error"


class ProbeReturn(Enum):
    OK = "ok"
    DROP = "drop"


class PadDirection(Enum):
    SRC = "src"
    SINK = "sink"


class StageState(Enum):
    NULL = "null"
    PLAYING = "playing"


# --------------------------------------------------------------------------
# Data carried between stages
# --------------------------------------------------------------------------
@dataclass(slots=True)
class Buffer:
    """A unit of media data. Timestamps are integer nanoseconds."""

    data: Any
    pts: int | None = None
    duration: int | None = None
    keyframe: bool = False

    def copy(self) -> "Buffer":
        return replace(self)


@dataclass(frozen=True, slots=True)
class Caps:
    """Describes the media format flowing through a pad."""

    media: str
    fields: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    @property
    def is_video(self) -> bool:
        return self.media.startswith("video/")


class EventType(Enum):
    CAPS = "caps"
    FORCE_KEY_UNIT = "force-key-unit"
    EOS = "eos"


@dataclass(frozen=True, slots=True)
class Event:
    type: EventType
    caps: Caps | None = None

    @classmethod
    def caps_event(cls, caps: Caps) -> "Event":
        return cls(EventType.CAPS, caps)

    @classmethod
    def force_key_unit(cls) -> "Event":
        return cls(EventType.FORCE_KEY_UNIT)

    @classmethod
    def eos(cls) -> "Event":
        return cls(EventType.EOS)


class QueryType(Enum):
    CODEC_CONTEXT = "codec-context"


@dataclass(slots=True)
class Query:
    """Question sent downstream; the answering stage fills ``result``."""

    type: QueryType
    params: Mapping[str, Any] = field(default_factory=dict)
    result: Any = None


class MessageType(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    EOS = "eos"
    STATE_CHANGED = "state-changed"
    ELEMENT = "element"


@dataclass(frozen=True, slots=True)
class BusMessage:
    type: MessageType
    source: str
    text: str = ""
    debug: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def as_error(self) -> StreamRuntimeError:
        return StreamRuntimeError(self.text, source=self.source, debug=self.debug)


Probe = Callable[["Pad", Buffer], ProbeReturn]


# --------------------------------------------------------------------------
# Pads
# --------------------------------------------------------------------------
class Pad:
    """Connection point of a stage. Source pads push, sink pads receive."""

    def __init__(self, name: str, direction: PadDirection, owner: "Stage") -> None:
        self.name = name
        self.direction = direction
        self.owner = owner
        self.caps: Caps | None = None
        self._peer: Pad | None = None
        self._probes: dict[int, Probe] = {}
        self._probe_ids = itertools.count(1)
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<Pad {self.full_name}>"

    @property
    def full_name(self) -> str:
        return f"{self.owner.name}:{self.name}"

    @property
    def peer(self) -> "Pad | None":
        return self._peer

    @property
    def is_linked(self) -> bool:
        return self._peer is not None

    def link(self, sink: "Pad") -> None:
        if self.direction is not PadDirection.SRC or sink.direction is not PadDirection.SINK:
            raise LinkError(f"Cannot link {self.full_name} to {sink.full_name}: wrong pad directions")
        if sink.owner is self.owner:
            raise LinkError(f"Cannot link {self.owner.name} to itself")
        graph = self.owner.graph
        if graph is None or graph is not sink.owner.graph:
            raise LinkError(f"{self.owner.name} and {sink.owner.name} are not in the same graph")
        with self._lock, sink._lock:
            if self._peer is not None:
                raise LinkError(f"{self.full_name} is already linked")
            if sink._peer is not None:
                raise LinkError(f"{sink.full_name} is already linked")
            self._peer = sink
            sink._peer = self
            if self.caps is not None:
                sink.caps = self.caps

    def unlink(self) -> None:
        peer = self._peer
        if peer is None:
            return
        with self._lock:
            self._peer = None
        with peer._lock:
            peer._peer = None

    def add_probe(self, callback: Probe) -> int:
        with self._lock:
            probe_id = next(self._probe_ids)
            self._probes[probe_id] = callback
        return probe_id

    def remove_probe(self, probe_id: int) -> None:
        with self._lock:
            self._probes.pop(probe_id, None)

    def _run_probes(self, buffer: Buffer) -> bool:
        if not self._probes:
            return True
        for callback in list(self._probes.values()):
            if callback(self, buffer) is ProbeReturn.DROP:
                return False
        return True

    def push(self, buffer: Buffer) -> FlowReturn:
        peer = self._peer
        if peer is None:
            return FlowReturn.NOT_LINKED
        if not self._run_probes(buffer) or not peer._run_probes(buffer):
            return FlowReturn.OK
        return peer.owner._receive_buffer(peer, buffer)

    def push_event(self, event: Event) -> bool:
        if event.type is EventType.CAPS:
            self.caps = event.caps
        peer = self._peer
        if peer is None:
            return False
        if event.type is EventType.CAPS:
            peer.caps = event.caps
        return peer.owner._receive_event(peer, event)

    def query(self, query: Query) -> bool:
        peer = self._peer
        if peer is None:
            return False
        return peer.owner.handle_query(peer, query)


# --------------------------------------------------------------------------
# Stages
# --------------------------------------------------------------------------
_stage_ids = itertools.count()

PadAddedCallback = Callable[["Stage", Pad], None]


class Stage:
    """Base class for every processing stage in a :class:`Graph`."""

    factory_name = "stage"

    def __init__(self, name: str | None = None) -> None:
        self.name = name or f"{self.factory_name}{next(_stage_ids)}"
        self._pads: dict[str, Pad] = {}
        self._graph: Graph | None = None
        self._state = StageState.NULL
        self._state_lock = threading.RLock()
        self._stream_lock = threading.RLock()
        self._pad_added: list[PadAddedCallback] = []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {self._state.value}>"

    # ------------------------------ properties -----------------------------
    @property
    def graph(self) -> "Graph | None":
        return self._graph

    @property
    def state(self) -> StageState:
        return self._state

    @property
    def pads(self) -> list[Pad]:
        return list(self._pads.values())

    @property
    def sink_pad(self) -> Pad | None:
        return self._pads.get("sink")

    @property
    def src_pad(self) -> Pad | None:
        return self._pads.get("src")

    def get_pad(self, name: str) -> Pad | None:
        return self._pads.get(name)

    def src_pads(self) -> Iterator[Pad]:
        return (pad for pad in list(self._pads.values()) if pad.direction is PadDirection.SRC)

    # --------------------------------- pads --------------------------------
    def add_pad(self, name: str, direction: PadDirection) -> Pad:
        if name in self._pads:
            raise ValueError(f"{self.name} already has a pad named {name!r}")
        pad = Pad(name, direction, self)
        self._pads[name] = pad
        return pad

    def remove_pad(self, pad: Pad) -> None:
        pad.unlink()
        self._pads.pop(pad.name, None)

    def connect_pad_added(self, callback: PadAddedCallback) -> None:
        self._pad_added.append(callback)

    def expose_pad(self, pad: Pad) -> None:
        """Announce a pad whose format became known while running."""

        for callback in list(self._pad_added):
            try:
                callback(self, pad)
            except Exception as exc:
                logger.exception("pad-added handler failed for %s", pad.full_name)
                self.post_error(f"Could not handle new pad {pad.full_name}", debug=str(exc))

    # -------------------------------- state --------------------------------
    def set_state(self, state: StageState) -> None:
        with self._state_lock:
            if state is self._state:
                return
            if state is StageState.PLAYING:
                self._state = StageState.PLAYING
                try:
                    self.start()
                except Exception:
                    self._state = StageState.NULL
                    raise
            else:
                self._state = StageState.NULL
                self.stop()

    def sync_state_with_parent(self) -> None:
        if self._graph is not None:
            self.set_state(self._graph.state)

    def start(self) -> None:
        """Acquire resources; called when entering ``PLAYING``."""

    def stop(self) -> None:
        """Release resources; called when returning to ``NULL``."""

    # ------------------------------- dataflow ------------------------------
    def _receive_buffer(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        if self._state is not StageState.PLAYING:
            return FlowReturn.FLUSHING
        with self._stream_lock:
            try:
                return self.chain(pad, buffer)
            except Exception as exc:
                logger.debug("Stage %s failed to process a buffer", self.name, exc_info=True)
                self.post_error(f"{self.name} failed to process data: {exc}", debug=repr(exc))
                return FlowReturn.ERROR

    def _receive_event(self, pad: Pad, event: Event) -> bool:
        if self._state is not StageState.PLAYING:
            return False
        with self._stream_lock:
            try:
                return self.handle_event(pad, event)
            except Exception as exc:
                logger.debug("Stage %s failed to handle %s", self.name, event.type, exc_info=True)
                self.post_error(
                    f"{self.name} failed to handle {event.type.value}: {exc}", debug=repr(exc)
                )
                return False

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        raise NotImplementedError

    def handle_event(self, pad: Pad, event: Event) -> bool:
        handled = False
        for src in self.src_pads():
            handled = src.push_event(event) or handled
        return handled

    def handle_query(self, pad: Pad, query: Query) -> bool:
        for src in self.src_pads():
            if src.query(query):
                return True
        return False

    # -------------------------------- messages -----------------------------
    def post_message(
        self,
        message_type: MessageType,
        text: str = "",
        *,
        debug: str | None = None,
        **details: Any,
    ) -> None:
        graph = self._graph
        if graph is None:
            logger.debug("%s message from detached stage %s: %s", message_type.value, self.name, text)
            return
        graph.bus.post(BusMessage(message_type, self.name, text, debug, details))

    def post_error(self, text: str, *, debug: str | None = None, **details: Any) -> None:
        self.post_message(MessageType.ERROR, text, debug=debug, **details)

    def post_warning(self, text: str, *, debug: str | None = None, **details: Any) -> None:
        self.post_message(MessageType.WARNING, text, debug=debug, **details)


class Queue(Stage):
    """Bounded hand-off between threads.

    ``leaky="downstream"`` discards the oldest queued buffer when full, which
    keeps live branches current. ``leaky="no"`` blocks the upstream thread
    until space frees up. Events are never discarded.
    """

    factory_name = "queue"

    def __init__(
        self,
        name: str | None = None,
        *,
        max_size_buffers: int = 200,
        leaky: str = "no",
    ) -> None:
        super().__init__(name)
        if max_size_buffers <= 0:
            raise ValueError("max_size_buffers must be positive")
        if leaky not in {"no", "downstream"}:
            raise ValueError("leaky must be 'no' or 'downstream'")
        self.max_size_buffers = int(max_size_buffers)
        self.leaky = leaky
        self.dropped = 0
        self._items: Deque[Buffer | Event] = deque()
        self._cond = threading.Condition()
        self._flushing = True
        self._thread: threading.Thread | None = None
        self.add_pad("sink", PadDirection.SINK)
        self.add_pad("src", PadDirection.SRC)

    @property
    def level(self) -> int:
        with self._cond:
            return sum(1 for item in self._items if isinstance(item, Buffer))

    def start(self) -> None:
        with self._cond:
            self._flushing = False
            self._items.clear()
        thread = threading.Thread(target=self._run, name=f"{self.name}-worker", daemon=True)
        self._thread = thread
        thread.start()

    def stop(self) -> None:
        with self._cond:
            self._flushing = True
            self._items.clear()
            self._cond.notify_all()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
            if thread.is_alive():  # pragma: no cover - depends on downstream behaviour
                logger.warning("Queue %s worker did not stop within 2s", self.name)

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        with self._cond:
            while not self._flushing and self._buffer_count() >= self.max_size_buffers:
                if self.leaky == "downstream":
                    self._drop_oldest_buffer()
                    break
                self._cond.wait(0.1)
            if self._flushing:
                return FlowReturn.FLUSHING
            self._items.append(buffer)
            self._cond.notify_all()
        return FlowReturn.OK

    def handle_event(self, pad: Pad, event: Event) -> bool:
        with self._cond:
            if self._flushing:
                return False
            self._items.append(event)
            self._cond.notify_all()
        return True

    def _buffer_count(self) -> int:
        return sum(1 for item in self._items if isinstance(item, Buffer))

    def _drop_oldest_buffer(self) -> None:
        for position, item in enumerate(self._items):
            if isinstance(item, Buffer):
                del self._items[position]
                self.dropped += 1
                return

    def _run(self) -> None:
        src = self.src_pad
        assert src is not None
        while True:
            with self._cond:
                while not self._items and not self._flushing:
                    self._cond.wait(0.5)
                if self._flushing:
                    return
                item = self._items.popleft()
                self._cond.notify_all()
            if isinstance(item, Event):
                src.push_event(item)
            else:
                src.push(item)


class Tee(Stage):
    """Fan-out junction: every buffer is offered to all request pads.

    Branches that are not linked are skipped, so either branch can be
    detached without stalling the other.
    """

    factory_name = "tee"

    def __init__(self, name: str | None = None) -> None:
        super().__init__(name)
        self._pad_ids = itertools.count()
        self.add_pad("sink", PadDirection.SINK)

    def request_pad(self) -> Pad:
        return self.add_pad(f"src_{next(self._pad_ids)}", PadDirection.SRC)

    def release_pad(self, pad: Pad) -> None:
        self.remove_pad(pad)

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        for src in self.src_pads():
            src.push(buffer.copy())
        return FlowReturn.OK


class Valve(Stage):
    """Gate that either forwards or discards buffers. Events always pass."""

    factory_name = "valve"

    def __init__(self, name: str | None = None, *, drop: bool = True) -> None:
        super().__init__(name)
        self._drop = bool(drop)
        self.dropped = 0
        self.add_pad("sink", PadDirection.SINK)
        self.add_pad("src", PadDirection.SRC)

    @property
    def drop(self) -> bool:
        return self._drop

    def set_drop(self, drop: bool) -> None:
        # The stream lock is held while a buffer travels downstream, so
        # acquiring it means nothing is in flight past the valve.
        with self._stream_lock:
            self._drop = bool(drop)

    def send_downstream(self, event: Event) -> bool:
        """Push ``event`` past the valve, serialised with buffer delivery."""

        src = self.src_pad
        assert src is not None
        with self._stream_lock:
            return src.push_event(event)

    def chain(self, pad: Pad, buffer: Buffer) -> FlowReturn:
        if self._drop:
            self.dropped += 1
            return FlowReturn.OK
        src = self.src_pad
        assert src is not None
        return src.push(buffer)


# --------------------------------------------------------------------------
# Bus
# --------------------------------------------------------------------------
class Bus:
    """Asynchronous message channel from stages to the owning session."""

    def __init__(self, name: str = "bus") -> None:
        self.name = name
        self._queue: "queue.Queue[BusMessage | None]" = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def post(self, message: BusMessage) -> None:
        self._queue.put(message)

    def pop(self, timeout: float | None = None) -> BusMessage | None:
        try:
            message = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return message

    @property
    def has_watch(self) -> bool:
        return self._thread is not None

    def add_watch(self, callback: Callable[[BusMessage], None]) -> None:
        with self._lock:
            if self._thread is not None:
                raise GraphError(f"{self.name} already has a watch")
            thread = threading.Thread(
                target=self._dispatch, args=(callback,), name=f"{self.name}-watch", daemon=True
            )
            self._thread = thread
        thread.start()

    def remove_watch(self, *, timeout: float = 2.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(None)
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _dispatch(self, callback: Callable[[BusMessage], None]) -> None:
        while True:
            message = self._queue.get()
            if message is None:
                return
            try:
                callback(message)
            except Exception:
                logger.exception("Bus watch for %s failed on %s", self.name, message.type.value)


# --------------------------------------------------------------------------
# Graph container
# --------------------------------------------------------------------------
class Graph:
    """Owns a set of stages, their links and the shared bus.

    Stages are kept in insertion order, which callers use to express the
    upstream to downstream direction: on start the most downstream stage is
    started first, on stop sources are stopped first.
    """

    def __init__(self, name: str = "graph") -> None:
        self.name = name
        self.bus = Bus(f"{name}-bus")
        self._stages: dict[str, Stage] = {}
        self._state = StageState.NULL
        self._lock = threading.RLock()

    @property
    def state(self) -> StageState:
        return self._state

    @property
    def stages(self) -> list[Stage]:
        with self._lock:
            return list(self._stages.values())

    def get(self, name: str) -> Stage | None:
        with self._lock:
            return self._stages.get(name)

    def add(self, *stages: Stage) -> None:
        with self._lock:
            for stage in stages:
                if stage.graph is not None:
                    raise GraphError(f"{stage.name} already belongs to a graph")
                if stage.name in self._stages:
                    raise GraphError(f"Duplicate stage name {stage.name!r} in {self.name}")
            for stage in stages:
                stage._graph = self
                self._stages[stage.name] = stage

    def remove(self, stage: Stage) -> None:
        with self._lock:
            if self._stages.get(stage.name) is not stage:
                raise GraphError(f"{stage.name} is not part of {self.name}")
            stage.set_state(StageState.NULL)
            for pad in stage.pads:
                pad.unlink()
            del self._stages[stage.name]
            stage._graph = None

    def link(
        self,
        upstream: Stage,
        downstream: Stage,
        *,
        src_pad: str = "src",
        sink_pad: str = "sink",
    ) -> None:
        src = upstream.get_pad(src_pad)
        sink = downstream.get_pad(sink_pad)
        if src is None:
            raise LinkError(f"{upstream.name} has no pad {src_pad!r}")
        if sink is None:
            raise LinkError(f"{downstream.name} has no pad {sink_pad!r}")
        src.link(sink)

    def link_many(self, *stages: Stage) -> None:
        for upstream, downstream in zip(stages, stages[1:]):
            self.link(upstream, downstream)

    def unlink(self, upstream: Stage, downstream: Stage) -> None:
        for pad in upstream.src_pads():
            peer = pad.peer
            if peer is not None and peer.owner is downstream:
                pad.unlink()

    def set_state(self, state: StageState) -> None:
        with self._lock:
            previous = self._state
            if state is previous:
                return
            ordered = list(self._stages.values())
            if state is StageState.PLAYING:
                self._state = StageState.PLAYING
                started: list[Stage] = []
                try:
                    for stage in reversed(ordered):
                        stage.set_state(StageState.PLAYING)
                        started.append(stage)
                except Exception:
                    self._state = StageState.NULL
                    for stage in reversed(started):
                        try:
                            stage.set_state(StageState.NULL)
                        except Exception:  # pragma: no cover - best effort rollback
                            logger.exception("Failed to roll back %s", stage.name)
                    raise
            else:
                self._state = StageState.NULL
                for stage in ordered:
                    try:
                        stage.set_state(StageState.NULL)
                    except Exception:
                        logger.exception("Failed to stop stage %s", stage.name)
        self.bus.post(
            BusMessage(
                MessageType.STATE_CHANGED,
                self.name,
                details={"old": previous.value, "new": state.value},
            )
        )


# --------------------------------------------------------------------------
# Factory
# --------------------------------------------------------------------------
StageConstructor = Callable[..., Stage]


class StageFactory:
    """Registry turning factory names into stage instances."""

    def __init__(self, constructors: Mapping[str, StageConstructor] | None = None) -> None:
        self._constructors: dict[str, StageConstructor] = dict(constructors or {})
        self._lock = threading.Lock()

    def register(self, factory_name: str, constructor: StageConstructor) -> None:
        with self._lock:
            self._constructors[factory_name] = constructor

    def available(self, factory_name: str) -> bool:
        with self._lock:
            return factory_name in self._constructors

    def copy(self) -> "StageFactory":
        with self._lock:
            return StageFactory(self._constructors)

    def make(self, factory_name: str, name: str | None = None, **properties: Any) -> Stage:
        with self._lock:
            constructor = self._constructors.get(factory_name)
        if constructor is None:
            raise StageCreationError(f"No stage available for {factory_name!r}")
        try:
            return constructor(name=name, **properties)
        except StageCreationError:
            raise
        except (RuntimeError, ValueError, TypeError, OSError) as exc:
            raise StageCreationError(f"Failed to create {factory_name!r} stage: {exc}") from exc


__all__ = [
    "Buffer",
    "Bus",
    "BusMessage",
    "Caps",
    "Event",
    "EventType",
    "FlowReturn",
    "Graph",
    "GraphError",
    "LinkError",
    "MessageType",
    "Pad",
    "PadDirection",
    "ProbeReturn",
    "Query",
    "QueryType",
    "Queue",
    "Stage",
    "StageCreationError",
    "StageFactory",
    "StageState",
    "StreamRuntimeError",
    "Tee",
    "Valve",
]
