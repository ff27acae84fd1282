"""
Structured lifecycle events for scopessh.

Sessions and channels report each lifecycle transition as an Event that can
be collected in memory (tests, inspection) and/or appended to a JSONL file.

Event types:
- CONNECT: session connect attempted/established
- DISCONNECT: session closed
- CHANNEL_OPEN: channel opened or connected on a session
- CHANNEL_CLOSE: channel disconnected
- EXEC: remote command completed (buffered or streamed)
- ERROR: any failure surfaced to the caller

Each event records a Unix timestamp in milliseconds and a flat data dict.
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterator

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Lifecycle event types."""
    CONNECT = "CONNECT"
    DISCONNECT = "DISCONNECT"
    CHANNEL_OPEN = "CHANNEL_OPEN"
    CHANNEL_CLOSE = "CHANNEL_CLOSE"
    EXEC = "EXEC"
    ERROR = "ERROR"


@dataclass
class Event:
    """A single lifecycle record."""
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        valid_types = {e.value for e in EventType}
        assert self.event_type in valid_types, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {valid_types}"
        assert self.timestamp > 0, \
            f"Timestamp must be positive, got {self.timestamp}"

    def to_json(self) -> str:
        """Serialise event to a single JSON line."""
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        """Deserialise event from a JSON line."""
        data = json.loads(json_str)
        return cls(
            event_type=data["event_type"],
            timestamp=data["timestamp"],
            data=data.get("data", {}),
        )


class EventCollector:
    """Collects events in memory for tests and inspection."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Return a copy of the collected events."""
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        """Get all events of a specific type."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return [e for e in self._events if e.event_type == event_type]


class JSONLEventWriter:
    """Appends events to a JSONL file, one JSON object per line."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None

    def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None

    def emit(self, event: Event) -> None:
        assert self._file is not None, "Writer not opened. Call open() first."
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def __enter__(self) -> "JSONLEventWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Dispatches events to an optional in-memory collector and JSONL file.

    One emitter is owned by an SSHEngine and shared by every session and
    channel created from it. The JSONL file is opened lazily on first emit
    so an engine that never connects never creates a log file.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        self._collector = collector
        self._jsonl_path = Path(jsonl_path) if jsonl_path else None
        self._jsonl_writer: JSONLEventWriter | None = None

    @property
    def collector(self) -> EventCollector | None:
        return self._collector

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """Create an event, dispatch it to every sink and return it."""
        if isinstance(event_type, EventType):
            event_type = event_type.value

        event = Event(event_type=event_type, data=data)
        logger.debug("%s %s", event_type, data)

        if self._collector:
            self._collector.emit(event)

        if self._jsonl_path is not None:
            if self._jsonl_writer is None:
                self._jsonl_writer = JSONLEventWriter(self._jsonl_path)
                self._jsonl_writer.open()
            self._jsonl_writer.emit(event)

        return event

    def close(self) -> None:
        """Close the JSONL file if one was opened."""
        if self._jsonl_writer:
            self._jsonl_writer.close()
            self._jsonl_writer = None

    @contextmanager
    def timed_event(
        self,
        event_type: str | EventType,
        **initial_data: Any,
    ) -> Iterator[dict[str, Any]]:
        """
        Time a block and emit one event on exit with duration_ms added.

        Usage:
            with emitter.timed_event(EventType.EXEC, command="echo hi") as data:
                text = await drain_to_string(stream)
                data["stdout_len"] = len(text)
        """
        start_ms = time.time() * 1000
        event_data = dict(initial_data)

        try:
            yield event_data
        finally:
            event_data["duration_ms"] = (time.time() * 1000) - start_ms
            self.emit(event_type, **event_data)


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Read all events from a JSONL file."""
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                events.append(Event.from_json(line))
    return events
