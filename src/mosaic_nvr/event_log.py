"""Bounded stream event log used as the supervisor's error sink."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable


logger = logging.getLogger(__name__)

SEVERITIES = ("info", "warning", "error")


@dataclass(slots=True)
class StreamEvent:
    """One notable occurrence reported by a stream or the supervisor."""

    timestamp: float
    severity: str
    event: str
    message: str
    stream: int | None = None
    source: str | None = None
    details: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "severity": self.severity,
            "event": self.event,
            "message": self.message,
        }
        if self.stream is not None:
            payload["stream"] = self.stream
        if self.source:
            payload["source"] = self.source
        if self.details:
            payload["details"] = self.details
        return payload


class EventLog:
    """Thread-safe, size bounded event log with optional JSONL persistence."""

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[StreamEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        severity: str,
        event: str,
        message: str,
        *,
        stream: int | None = None,
        source: str | None = None,
        details: dict[str, object | None] | None = None,
    ) -> StreamEvent:
        """Append an event and return the stored entry."""

        level = severity.strip().lower() if isinstance(severity, str) else ""
        if level not in SEVERITIES:
            level = "info"
        entry = StreamEvent(
            timestamp=time.time(),
            severity=level,
            event=event,
            message=message,
            stream=stream,
            source=source,
            details=self._clean_details(details),
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        stream: int | None = None,
        severity: str | None = None,
    ) -> list[StreamEvent]:
        """Return the most recent entries, optionally filtered."""

        with self._lock:
            entries: Iterable[StreamEvent] = list(self._entries)
        if stream is not None:
            entries = [entry for entry in entries if entry.stream == stream]
        if severity:
            wanted = severity.strip().lower()
            entries = [entry for entry in entries if entry.severity == wanted]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            entries = entries[-limit_value:]
        return entries

    # ----------------------------- implementation --------------------------
    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = self._deserialize(payload)
            if entry is not None:
                self._entries.append(entry)

    @staticmethod
    def _deserialize(payload: object) -> StreamEvent | None:
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        severity = payload.get("severity")
        if severity not in SEVERITIES:
            severity = "info"
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        stream = payload.get("stream")
        source = payload.get("source")
        details = payload.get("details")
        return StreamEvent(
            timestamp=timestamp,
            severity=severity,
            event=event,
            message=message,
            stream=stream if isinstance(stream, int) else None,
            source=source if isinstance(source, str) else None,
            details=details if isinstance(details, dict) else None,
        )

    def _append_persistent(self, entry: StreamEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)

    @staticmethod
    def _clean_details(
        details: dict[str, object | None] | None,
    ) -> dict[str, object | None] | None:
        if not details:
            return None
        cleaned = {key: value for key, value in details.items() if value is not None}
        return cleaned or None


__all__ = ["EventLog", "SEVERITIES", "StreamEvent"]
