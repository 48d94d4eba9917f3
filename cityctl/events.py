"""Append-only lifecycle events.

Events are simple, synchronous records of what the controller did. The file
recorder appends JSON lines to .gc/events.jsonl, one object per line, in the
same shape the rest of the city tooling reads. Recording is best-effort:
failures are logged but never raised to the caller.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# Event types emitted by the controller
AGENT_STARTED = "agent.started"
AGENT_STOPPED = "agent.stopped"
AGENT_QUARANTINED = "agent.quarantined"
AGENT_IDLE_KILLED = "agent.idle_killed"
AUTOMATION_FIRED = "automation.fired"
AUTOMATION_COMPLETED = "automation.completed"
AUTOMATION_FAILED = "automation.failed"
CONTROLLER_STARTED = "controller.started"
CONTROLLER_STOPPED = "controller.stopped"


@dataclass
class Event:
    """A single recorded occurrence."""
    type: str
    actor: str
    subject: str = ""
    message: str = ""
    seq: int = 0
    ts: str = field(default_factory=lambda: datetime.now(tz=timezone.utc).isoformat())

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        known = {"type", "actor", "subject", "message", "seq", "ts"}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)


class EventRecorder(ABC):
    """Records events. Safe for concurrent use."""

    @abstractmethod
    def record(self, event_type: str, actor: str, subject: str = "", message: str = "") -> None:
        """Record one event. Must never raise."""

    def read(self, after_seq: int = 0, event_type: str | None = None) -> list[Event]:
        """Return recorded events with seq > after_seq, optionally filtered by type."""
        return []

    def latest_seq(self) -> int:
        return 0


class _DiscardRecorder(EventRecorder):
    def record(self, event_type: str, actor: str, subject: str = "", message: str = "") -> None:
        pass


# Silently drops all events
DISCARD: EventRecorder = _DiscardRecorder()


class MemoryEventRecorder(EventRecorder):
    """Keeps events in a list. Used by tests and dry runs."""

    def __init__(self):
        self.events: list[Event] = []
        self._lock = threading.Lock()

    def record(self, event_type: str, actor: str, subject: str = "", message: str = "") -> None:
        with self._lock:
            self.events.append(
                Event(type=event_type, actor=actor, subject=subject,
                      message=message, seq=len(self.events) + 1)
            )

    def read(self, after_seq: int = 0, event_type: str | None = None) -> list[Event]:
        with self._lock:
            return [
                e for e in self.events
                if e.seq > after_seq and (event_type is None or e.type == event_type)
            ]

    def latest_seq(self) -> int:
        with self._lock:
            return len(self.events)

    def types(self) -> list[str]:
        """Event types in recording order."""
        return [e.type for e in self.events]

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]


class FileEventRecorder(EventRecorder):
    """Appends events as JSON lines to a file.

    The sequence number continues from the last line already in the file so
    seq stays monotonic across controller restarts.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._seq: int | None = None

    def _load_seq(self) -> int:
        if not self.path.exists():
            return 0
        last = 0
        try:
            with open(self.path) as f:
                for line in f:
                    try:
                        last = max(last, int(json.loads(line).get("seq", 0)))
                    except (json.JSONDecodeError, ValueError, TypeError, AttributeError):
                        continue
        except OSError as e:
            logger.warning("Could not read %s: %s", self.path, e)
        return last

    def record(self, event_type: str, actor: str, subject: str = "", message: str = "") -> None:
        try:
            with self._lock:
                if self._seq is None:
                    self._seq = self._load_seq()
                self._seq += 1
                event = Event(type=event_type, actor=actor, subject=subject,
                              message=message, seq=self._seq)
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a") as f:
                    f.write(json.dumps(event.to_dict()) + "\n")
        except OSError as e:
            logger.warning("Event %s for %s not recorded: %s", event_type, subject, e)

    def read(self, after_seq: int = 0, event_type: str | None = None) -> list[Event]:
        if not self.path.exists():
            return []
        events = []
        with self._lock, open(self.path) as f:
            for line in f:
                try:
                    event = Event.from_dict(json.loads(line))
                except (json.JSONDecodeError, TypeError):
                    continue
                if event.seq <= after_seq:
                    continue
                if event_type is not None and event.type != event_type:
                    continue
                events.append(event)
        return events

    def latest_seq(self) -> int:
        with self._lock:
            if self._seq is None:
                self._seq = self._load_seq()
            return self._seq
