from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    METADATA = "METADATA"
    THINKING = "THINKING"
    INTERMEDIATE = "INTERMEDIATE"
    REPORT = "REPORT"


class SignalType(str, Enum):
    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"
    DISCONNECT = "disconnect"
    STATUS = "status"
    COMPLETE = "complete"
    ERROR = "error"


def dump_json(data: Any) -> str:
    """Compact JSON matching what browser clients produce with JSON.stringify."""
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False, default=str)


def event_name(event: EventKind | SignalType | str) -> str:
    return event.value if isinstance(event, Enum) else str(event)


@dataclass
class SSEEvent:
    event: EventKind | SignalType | str
    data: Any = field(default_factory=dict)
    id: int | str | None = None

    def format(self) -> str:
        block = ""
        if self.id is not None:
            block += f"id: {self.id}\n"
        block += f"event: {event_name(self.event)}\n"
        block += f"data: {dump_json(self.data)}\n\n"
        return block

    def encode(self) -> bytes:
        return self.format().encode("utf-8")


@dataclass(slots=True)
class Frame:
    """One decoded unit of the upstream event-stream protocol."""

    event: str | None = None
    data: Any = None
    id: str | None = None


@dataclass(slots=True)
class NormalizedEvent:
    kind: EventKind
    payload: Any
    source_sequence: int = 0
    metadata: dict[str, Any] | None = None
